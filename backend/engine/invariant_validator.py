"""
FINANCIAL INVARIANT VALIDATOR

Enforces the constraints that must hold after every mutation:
1. RS Number: sold + allocated + remaining == total, no negative counter
2. RS Number: sum of consuming plot areas == sold + allocated
3. Sale: paid + due == total_price, sum(planned) == total_price,
   sum(stage received) == paid, 0 <= stage received <= stage planned
4. Sale: paid == sum of approved receipts

The counter/amount checks are pure and run before each write; the
recomputing checks read base tables and back the integrity job.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Any, Dict, List
import logging

from engine.errors import InvariantViolationError
from engine.financial_precision import (
    AREA_EPSILON, ZERO, area_to_float, round_area, round_financial, to_decimal, to_float
)

logger = logging.getLogger(__name__)

CONSUMING_BUCKETS = ("allocated", "sold")


def area_counter_violations(total, sold, allocated, remaining) -> List[Dict[str, Any]]:
    total, sold, allocated, remaining = (
        to_decimal(total), to_decimal(sold), to_decimal(allocated), to_decimal(remaining)
    )
    violations = []

    for name, value in (("sold_area", sold), ("allocated_area", allocated), ("remaining_area", remaining)):
        if value < -AREA_EPSILON:
            violations.append({
                "type": "NEGATIVE_AREA",
                "message": f"{name} ({area_to_float(value)}) is negative",
                "field": name,
                "value": area_to_float(value)
            })

    if abs(sold + allocated + remaining - total) > AREA_EPSILON:
        violations.append({
            "type": "AREA_MISMATCH",
            "message": (
                f"sold ({area_to_float(sold)}) + allocated ({area_to_float(allocated)}) + "
                f"remaining ({area_to_float(remaining)}) != total ({area_to_float(total)})"
            ),
            "total_area": area_to_float(total),
            "accounted_area": area_to_float(sold + allocated + remaining)
        })
    return violations


def sale_amount_violations(sale: Dict[str, Any]) -> List[Dict[str, Any]]:
    total = round_financial(sale["total_price"])
    paid = round_financial(sale.get("paid_amount", 0))
    due = round_financial(sale.get("due_amount", 0))
    stages = sale.get("stages", [])
    violations = []

    if paid + due != total:
        violations.append({
            "type": "PAID_DUE_MISMATCH",
            "message": f"paid ({to_float(paid)}) + due ({to_float(due)}) != total_price ({to_float(total)})",
        })
    if due < ZERO:
        violations.append({"type": "NEGATIVE_DUE", "message": f"due_amount ({to_float(due)}) is negative"})

    if stages:
        planned = sum((round_financial(s["planned_amount"]) for s in stages), ZERO)
        received = sum((round_financial(s.get("received_amount", 0)) for s in stages), ZERO)
        if planned != total:
            violations.append({
                "type": "STAGE_PLAN_MISMATCH",
                "message": f"sum of planned stage amounts ({to_float(planned)}) != total_price ({to_float(total)})",
            })
        if received != paid:
            violations.append({
                "type": "STAGE_RECEIVED_MISMATCH",
                "message": f"sum of stage receipts ({to_float(received)}) != paid_amount ({to_float(paid)})",
            })
        for stage in stages:
            stage_received = round_financial(stage.get("received_amount", 0))
            if stage_received < ZERO or stage_received > round_financial(stage["planned_amount"]):
                violations.append({
                    "type": "STAGE_OVERFILL",
                    "message": f"stage '{stage['name']}' received {to_float(stage_received)} "
                               f"outside 0..{to_float(stage['planned_amount'])}",
                })
    return violations


def _raise_if_any(violations: List[Dict[str, Any]], subject: Dict[str, Any]) -> None:
    if violations:
        raise InvariantViolationError(
            violation_type="MULTIPLE_VIOLATIONS" if len(violations) > 1 else violations[0]["type"],
            message="Financial invariant violation(s) detected",
            details={**subject, "violations": violations}
        )


class FinancialInvariantValidator:
    """
    Centralized invariant enforcement.

    Used before EVERY counter or amount write to ensure data integrity.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    def validate_area_counters(self, rs_number: str, total, sold, allocated, remaining) -> bool:
        _raise_if_any(
            area_counter_violations(total, sold, allocated, remaining),
            {"rs_number": rs_number}
        )
        return True

    def validate_sale(self, sale: Dict[str, Any]) -> bool:
        _raise_if_any(
            sale_amount_violations(sale),
            {"sale_number": sale.get("sale_number")}
        )
        return True

    # =========================================================================
    # RECOMPUTING CHECKS (read base tables)
    # =========================================================================

    async def rs_number_violations(self, rs: Dict[str, Any], session=None) -> List[Dict[str, Any]]:
        violations = area_counter_violations(
            rs["total_area"], rs["sold_area"], rs["allocated_area"], rs["remaining_area"]
        )

        sums = {bucket: Decimal('0') for bucket in CONSUMING_BUCKETS}
        cursor = self.db.plots.find(
            {"rs_number_id": rs["_id"], "area_bucket": {"$in": list(CONSUMING_BUCKETS)}},
            session=session
        )
        async for plot in cursor:
            sums[plot["area_bucket"]] += to_decimal(plot["area"])

        for bucket in CONSUMING_BUCKETS:
            stored = to_decimal(rs[f"{bucket}_area"])
            if abs(round_area(sums[bucket]) - stored) > AREA_EPSILON:
                violations.append({
                    "type": f"{bucket.upper()}_AREA_DRIFT",
                    "message": f"{bucket}_area ({area_to_float(stored)}) != sum of {bucket} plots "
                               f"({area_to_float(sums[bucket])})",
                    "stored": area_to_float(stored),
                    "calculated": area_to_float(sums[bucket])
                })
        return violations

    async def sale_violations(self, sale: Dict[str, Any], session=None) -> List[Dict[str, Any]]:
        violations = sale_amount_violations(sale)

        approved = Decimal('0')
        cursor = self.db.receipts.find(
            {"sale_id": sale["_id"], "approval_status": "Approved", "is_active": True},
            session=session
        )
        async for receipt in cursor:
            approved += to_decimal(receipt["amount"])

        paid = round_financial(sale.get("paid_amount", 0))
        if round_financial(approved) != paid:
            violations.append({
                "type": "PAID_RECEIPTS_DRIFT",
                "message": f"paid_amount ({to_float(paid)}) != sum of approved receipts ({to_float(approved)})",
                "stored": to_float(paid),
                "calculated": to_float(approved)
            })
        return violations

    async def validate_rs_number(self, rs: Dict[str, Any], session=None) -> bool:
        _raise_if_any(await self.rs_number_violations(rs, session), {"rs_number": rs.get("rs_number")})
        return True
