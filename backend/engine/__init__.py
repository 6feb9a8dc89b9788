"""
Sale & Financial-Integrity Engine
"""
from .errors import (
    EngineError,
    ValidationError,
    NotFoundError,
    PermissionDeniedError,
    InvalidStateError,
    InsufficientAreaError,
    OverpaymentError,
    OverrefundError,
    ConcurrencyConflictError,
    InvariantViolationError
)

from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    round_area,
    calculate_percentage,
    split_by_percentages,
    split_evenly
)

from .events import (
    EventDispatcher,
    RECEIPT_APPROVED,
    EXPENSE_APPROVED,
    CANCELLATION_APPROVED,
    REFUND_RECORDED
)

from .config import EngineConfig, load_engine_config
from .sales_engine import SalesEngine

__all__ = [
    # Errors
    'EngineError',
    'ValidationError',
    'NotFoundError',
    'PermissionDeniedError',
    'InvalidStateError',
    'InsufficientAreaError',
    'OverpaymentError',
    'OverrefundError',
    'ConcurrencyConflictError',
    'InvariantViolationError',
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'round_area',
    'calculate_percentage',
    'split_by_percentages',
    'split_evenly',
    # Events
    'EventDispatcher',
    'RECEIPT_APPROVED',
    'EXPENSE_APPROVED',
    'CANCELLATION_APPROVED',
    'REFUND_RECORDED',
    # Wiring
    'EngineConfig',
    'load_engine_config',
    'SalesEngine',
]
