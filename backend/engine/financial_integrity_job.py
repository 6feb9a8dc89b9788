"""
FINANCIAL INTEGRITY JOB

Background job that verifies stored counters against the records they are
derived from:

1. RS Number area counters vs the plots holding allocated / sold area
2. Sale paid / due / stage amounts vs approved receipts
3. Bank and cash balances vs opening balance plus account movements

Mismatches are logged and reported. Nothing is auto-fixed.

Usage:
    job = FinancialIntegrityJob(db)
    report = await job.run()
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List
from motor.motor_asyncio import AsyncIOMotorDatabase
import logging

from engine.accounts import BANK, CASH, CREDIT
from engine.financial_precision import round_financial, to_decimal, to_float
from engine.invariant_validator import FinancialInvariantValidator

logger = logging.getLogger(__name__)


class FinancialIntegrityJob:
    """
    Compares stored aggregate values against values recalculated from base
    collections. Reports mismatches but does NOT auto-fix.
    """

    TOLERANCE = Decimal('0.01')

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.validator = FinancialInvariantValidator(db)
        self.mismatches: List[Dict[str, Any]] = []
        self.checked: Dict[str, int] = {}

    async def run(self) -> Dict[str, Any]:
        start_time = datetime.utcnow()
        self.mismatches = []
        self.checked = {"rs_numbers": 0, "sales": 0, "accounts": 0}

        logger.info("[INTEGRITY] Starting financial integrity check...")

        async for rs in self.db.rs_numbers.find({}):
            self.checked["rs_numbers"] += 1
            self._record("RS_NUMBER", rs["_id"], rs.get("rs_number"),
                         await self.validator.rs_number_violations(rs))

        async for sale in self.db.sales.find({}):
            self.checked["sales"] += 1
            self._record("SALE", sale["_id"], sale.get("sale_number"),
                         await self.validator.sale_violations(sale))

        for account_type in (BANK, CASH):
            collection = self.db.bank_accounts if account_type == BANK else self.db.cash_accounts
            async for account in collection.find({}):
                self.checked["accounts"] += 1
                self._record(
                    f"{account_type.upper()}_ACCOUNT", account["_id"],
                    account.get("account_number") or account.get("name"),
                    await self._balance_violations(account_type, account)
                )

        end_time = datetime.utcnow()
        report = {
            "job_name": "FinancialIntegrityJob",
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round((end_time - start_time).total_seconds() * 1000, 2),
            "checked": dict(self.checked),
            "mismatches_found": len(self.mismatches),
            "mismatches": self.mismatches
        }

        if self.mismatches:
            logger.warning(
                f"[INTEGRITY] Completed with {len(self.mismatches)} mismatches "
                f"out of {sum(self.checked.values())} records"
            )
        else:
            logger.info(f"[INTEGRITY] Completed successfully. All {sum(self.checked.values())} records verified.")
        return report

    def _record(self, entity_type: str, entity_id, label, violations: List[Dict[str, Any]]) -> None:
        if not violations:
            return
        self.mismatches.append({
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "label": label,
            "checked_at": datetime.utcnow().isoformat(),
            "violations": violations
        })
        logger.warning(f"[INTEGRITY] MISMATCH on {entity_type} {label}: {len(violations)} violation(s)")
        for v in violations:
            logger.warning(f"  - {v['type']}: {v['message']}")

    async def _balance_violations(self, account_type: str, account: Dict[str, Any]) -> List[Dict[str, Any]]:
        expected = to_decimal(account.get("opening_balance", 0))
        cursor = self.db.account_movements.find({"account_type": account_type, "account_id": account["_id"]})
        async for movement in cursor:
            amount = to_decimal(movement["amount"])
            expected += amount if movement["direction"] == CREDIT else -amount

        stored = round_financial(account.get("current_balance", 0))
        expected = round_financial(expected)
        if abs(stored - expected) > self.TOLERANCE:
            return [{
                "type": "BALANCE_DRIFT",
                "message": f"current_balance ({to_float(stored)}) != opening balance plus movements "
                           f"({to_float(expected)})",
                "stored": to_float(stored),
                "calculated": to_float(expected)
            }]
        return []


async def run_integrity_check(db: AsyncIOMotorDatabase) -> Dict[str, Any]:
    job = FinancialIntegrityJob(db)
    return await job.run()
