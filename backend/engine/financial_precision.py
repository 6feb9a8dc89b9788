"""
DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places for money, 4 for land area)
2. Safe financial calculations
3. Value validation (no negative amounts)
4. Rounding at calculation boundary only
5. Percentage and even splits with the rounding remainder pushed to the
   last part
"""

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation
from typing import List, Sequence, Union
from bson import Decimal128
import logging

from engine.errors import ValidationError

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

AREA_QUANTIZE_PATTERN = Decimal('0.0001')
AREA_EPSILON = Decimal('0.0001')

ZERO = Decimal('0')
HUNDRED = Decimal('100')

Numeric = Union[float, int, str, Decimal]


class FinancialPrecisionError(ValidationError):
    """Raised when financial precision validation fails"""
    code = "PRECISION_ERROR"


class NegativeValueError(ValidationError):
    """Raised when a negative financial value is detected"""
    code = "NEGATIVE_VALUE"


def to_decimal(value) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise FinancialPrecisionError(f"Not a valid number: {value!r}")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places (ROUND_HALF_UP).
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Numeric) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    rounded = round_financial(value)
    return float(rounded)


def round_area(value: Numeric) -> Decimal:
    """Round a land area to 4 decimal places."""
    return to_decimal(value).quantize(AREA_QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def area_to_float(value: Numeric) -> float:
    return float(round_area(value))


def area_exceeds(requested: Numeric, available: Numeric) -> bool:
    """True when `requested` is larger than `available` beyond the area epsilon."""
    return to_decimal(requested) - to_decimal(available) > AREA_EPSILON


def validate_non_negative(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is not negative.
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value < ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}",
            {"field": field_name, "value": float(decimal_value)}
        )


def validate_positive(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is strictly positive (> 0).
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value <= ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}",
            {"field": field_name, "value": float(decimal_value)}
        )


def validate_percentage(value: Numeric, field_name: str) -> Decimal:
    """Percent in the closed range 0..100."""
    decimal_value = to_decimal(value)
    if decimal_value < ZERO or decimal_value > HUNDRED:
        raise ValidationError(
            f"'{field_name}' must be between 0 and 100: {value}",
            {"field": field_name, "value": float(decimal_value)}
        )
    return decimal_value


def safe_multiply(a: Numeric, b: Numeric) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def safe_divide(numerator: Numeric, denominator: Numeric) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == ZERO:
        return ZERO
    return to_decimal(numerator) / denom


def safe_subtract(a: Numeric, b: Numeric) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = ZERO
    for v in values:
        result += to_decimal(v)
    return result


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 10) = 100
    """
    return safe_multiply(to_decimal(amount), safe_divide(to_decimal(percentage), HUNDRED))


def split_by_percentages(total: Numeric, percentages: Sequence[Numeric]) -> List[Decimal]:
    """
    Split `total` into parts proportional to `percentages` (which must sum to 100).

    Every part except the last is rounded to the cent; the last part takes
    whatever is left so the parts always sum exactly to the rounded total.
    Example: split_by_percentages(1000.01, [10, 70, 15, 5])
             -> [100.00, 700.01, 150.00, 50.00]
    """
    if not percentages:
        raise ValidationError("At least one percentage is required")

    pcts = [to_decimal(p) for p in percentages]
    for p in pcts:
        if p <= ZERO:
            raise ValidationError(
                f"Percentages must be positive: {float(p)}",
                {"percentages": [float(x) for x in pcts]}
            )
    if sum(pcts, ZERO) != HUNDRED:
        raise ValidationError(
            "Percentages must sum to 100",
            {"percentages": [float(x) for x in pcts], "sum": float(sum(pcts, ZERO))}
        )

    rounded_total = round_financial(total)
    parts = [round_financial(calculate_percentage(rounded_total, p)) for p in pcts[:-1]]
    parts.append(rounded_total - sum(parts, ZERO))
    if parts[-1] < ZERO:
        raise ValidationError(
            f"Amount {float(rounded_total)} is too small to split into {len(pcts)} parts",
            {"total": float(rounded_total)}
        )
    return parts


def split_evenly(total: Numeric, count: int) -> List[Decimal]:
    """
    Split `total` into `count` instalments: every part but the last is
    total / count truncated to the cent, the last takes the remainder.
    Example: split_evenly(1000, 3) -> [333.33, 333.33, 333.34]
    """
    if count < 1:
        raise ValidationError("At least one instalment is required", {"count": count})
    rounded_total = round_financial(total)
    part = (rounded_total / count).quantize(QUANTIZE_PATTERN, rounding=ROUND_DOWN)
    if part <= ZERO:
        raise ValidationError(
            f"Amount {float(rounded_total)} is too small to split into {count} parts",
            {"total": float(rounded_total), "count": count}
        )
    parts = [part] * (count - 1)
    parts.append(rounded_total - part * (count - 1))
    return parts
