"""
INSTALMENT SCHEDULES

A schedule spreads a sale's Installments stage over dated instalments
(monthly, quarterly, half-yearly or yearly). Rows never take payments of
their own: whenever an approved receipt lands on the sale, the stage's
received amount is re-allocated over the rows in instalment order, so money
is only ever recorded in the sale ledger.

Row status at a given date:
    Paid      paid_amount >= amount
    Missed    nothing paid and more than 30 days past due
    Overdue   past due otherwise
    Partial   something paid, not yet due
    Pending   nothing paid, not yet due
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import calendar
import logging

from engine.documents import new_document, to_datetime, to_object_id
from engine.errors import ConcurrencyConflictError, InvalidStateError, NotFoundError, ValidationError
from engine.financial_precision import ZERO, round_financial, split_evenly, to_decimal, to_float, validate_positive
from engine.sale_ledger import SaleLedger, SaleStatus, sale_lock_key
from engine.unit_of_work import UnitOfWork, UnitOfWorkContext
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)

INSTALLMENT_STAGE = "Installments"
MISSED_AFTER_DAYS = 30

FREQUENCY_MONTHS = {
    "Monthly": 1,
    "Quarterly": 3,
    "Half-Yearly": 6,
    "Yearly": 12,
}


class InstallmentStatus:
    PENDING = "Pending"
    PARTIAL = "Partial"
    PAID = "Paid"
    OVERDUE = "Overdue"
    MISSED = "Missed"

    ALL = (PENDING, PARTIAL, PAID, OVERDUE, MISSED)
    LATE = (OVERDUE, MISSED)


# =============================================================================
# PURE CALCULATORS
# =============================================================================

def add_months(value: datetime, months: int) -> datetime:
    """Same day `months` later, clamped to the end of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def installment_status(amount, paid, due_date: datetime, as_of: datetime) -> str:
    amount, paid = round_financial(amount), round_financial(paid)
    if paid >= amount:
        return InstallmentStatus.PAID
    if due_date < as_of:
        if paid <= ZERO and (as_of - due_date).days > MISSED_AFTER_DAYS:
            return InstallmentStatus.MISSED
        return InstallmentStatus.OVERDUE
    if paid > ZERO:
        return InstallmentStatus.PARTIAL
    return InstallmentStatus.PENDING


def build_schedule(total, count: int, frequency: str, start_date: datetime) -> List[Dict[str, Any]]:
    if frequency not in FREQUENCY_MONTHS:
        raise ValidationError(
            f"Frequency must be one of {', '.join(FREQUENCY_MONTHS)}",
            {"frequency": frequency}
        )
    step = FREQUENCY_MONTHS[frequency]
    return [
        {
            "installment_number": number,
            "due_date": add_months(start_date, (number - 1) * step),
            "amount": amount,
        }
        for number, amount in enumerate(split_evenly(total, count), start=1)
    ]


def allocate_received(amounts: List[Any], received) -> List[Any]:
    """Fill instalments in order with `received`; returns the paid part of each."""
    left = round_financial(received)
    paid = []
    for amount in amounts:
        portion = min(round_financial(amount), max(left, ZERO))
        paid.append(portion)
        left -= portion
    return paid


def find_installment_stage(sale: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for stage in sale.get("stages", []):
        if stage["name"] == INSTALLMENT_STAGE:
            return stage
    return None


# =============================================================================
# SERVICE
# =============================================================================

class InstallmentScheduleService:

    def __init__(self, uow: UnitOfWork, version_lock: VersionLockEngine, sales: SaleLedger):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock
        self.sales = sales

    async def get_installment(self, installment_id, session=None) -> Dict[str, Any]:
        oid = to_object_id(installment_id, "INSTALLMENT")
        doc = await self.db.installment_schedules.find_one({"_id": oid}, session=session)
        if not doc:
            raise NotFoundError("INSTALLMENT", installment_id)
        return doc

    async def list_installments(
        self,
        sale_id=None,
        client_id=None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 50
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"is_active": True}
        if sale_id:
            query["sale_id"] = to_object_id(sale_id, "SALE")
        if client_id:
            query["client_id"] = to_object_id(client_id, "CLIENT")
        if status:
            query["status"] = status
        total = await self.db.installment_schedules.count_documents(query)
        cursor = self.db.installment_schedules.find(query).sort(
            [("due_date", 1), ("installment_number", 1)]
        ).skip((page - 1) * limit).limit(limit)
        return await cursor.to_list(length=limit), total

    async def _rows_for_sale(self, sale_id, session=None) -> List[Dict[str, Any]]:
        cursor = self.db.installment_schedules.find(
            {"sale_id": sale_id, "is_active": True}, session=session
        ).sort("installment_number", 1)
        return await cursor.to_list(length=None)

    # =========================================================================
    # SCHEDULE
    # =========================================================================

    async def create_schedule(
        self,
        sale_id,
        number_of_installments: int,
        user_id: str,
        frequency: str = "Monthly",
        start_date: Optional[datetime] = None,
        total_amount=None,
        notes: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Spread the Installments stage (or `total_amount` of it) over
        `number_of_installments` rows, one every `frequency`.
        """
        sale = await self.sales.get_sale(sale_id)
        async with self.uow.begin(sale_lock_key(sale["_id"])) as ctx:
            sale = await self.sales.get_sale(sale_id, session=ctx.session)
            if sale["status"] not in SaleStatus.RECEIVABLE:
                raise InvalidStateError(
                    f"Sale {sale['sale_number']} is {sale['status']}; schedules need an Active or On Hold sale",
                    {"status": sale["status"]}
                )
            stage = find_installment_stage(sale)
            if stage is None:
                raise ValidationError(f"Sale {sale['sale_number']} has no {INSTALLMENT_STAGE} stage")

            planned = round_financial(stage["planned_amount"])
            total = planned if total_amount is None else round_financial(total_amount)
            validate_positive(total, "total_amount")
            if total > planned:
                raise ValidationError(
                    f"Schedule total {to_float(total)} exceeds the {INSTALLMENT_STAGE} stage ({to_float(planned)})",
                    {"total_amount": to_float(total), "stage_amount": to_float(planned)}
                )
            if await self._rows_for_sale(sale["_id"], session=ctx.session):
                raise InvalidStateError(f"Sale {sale['sale_number']} already has an instalment schedule")

            as_of = datetime.utcnow()
            plan = build_schedule(total, number_of_installments, frequency,
                                  to_datetime(start_date) or as_of)
            paid = allocate_received([row["amount"] for row in plan], stage["received_amount"])

            rows = []
            for row, paid_part in zip(plan, paid):
                doc = new_document({
                    "sale_id": sale["_id"],
                    "sale_number": sale["sale_number"],
                    "client_id": sale["client_id"],
                    "installment_number": row["installment_number"],
                    "frequency": frequency,
                    "due_date": row["due_date"],
                    "amount": to_float(row["amount"]),
                    "paid_amount": to_float(paid_part),
                    "status": installment_status(row["amount"], paid_part, row["due_date"], as_of),
                    "notes": notes,
                }, user_id)
                rows.append(await ctx.insert("installment_schedules", doc))

            ctx.audit("SALE", sale["_id"], "SCHEDULE_CREATE", user_id,
                      new_value={"installments": len(rows), "frequency": frequency,
                                 "total_amount": to_float(total)},
                      module_name="INSTALLMENTS")

        logger.info(
            f"[INSTALLMENT] {len(rows)} {frequency.lower()} instalments for {sale['sale_number']} "
            f"totalling {to_float(total)}"
        )
        return rows

    async def sync_sale(self, ctx: UnitOfWorkContext, sale: Dict[str, Any], as_of: Optional[datetime] = None) -> int:
        """
        Re-allocate the Installments stage over the sale's rows inside the
        caller's unit of work (caller holds the sale lock).
        """
        stage = find_installment_stage(sale)
        rows = await self._rows_for_sale(sale["_id"], session=ctx.session)
        if stage is None or not rows:
            return 0

        as_of = as_of or datetime.utcnow()
        paid = allocate_received([row["amount"] for row in rows], stage["received_amount"])
        changed = 0
        for row, paid_part in zip(rows, paid):
            fields = {
                "paid_amount": to_float(paid_part),
                "status": installment_status(row["amount"], paid_part, row["due_date"], as_of),
            }
            if fields["paid_amount"] == row["paid_amount"] and fields["status"] == row["status"]:
                continue
            if fields["status"] == InstallmentStatus.PAID and not row.get("paid_date"):
                fields["paid_date"] = as_of
            await self.version_lock.apply("INSTALLMENT", row, fields, session=ctx.session)
            changed += 1
        return changed

    async def close_for_sale(self, ctx: UnitOfWorkContext, sale_id, user_id: str) -> int:
        """Deactivate a cancelled sale's rows (caller holds the sale lock)."""
        rows = await self._rows_for_sale(sale_id, session=ctx.session)
        for row in rows:
            await self.version_lock.apply(
                "INSTALLMENT", row,
                {"is_active": False, "closed_reason": "Sale cancelled", "closed_by": user_id},
                session=ctx.session
            )
        if rows:
            logger.info(f"[INSTALLMENT] Closed {len(rows)} instalments of sale {sale_id}")
        return len(rows)

    async def refresh_statuses(self, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """Move unpaid rows past their due date to Overdue or Missed."""
        as_of = to_datetime(as_of) or datetime.utcnow()
        stale = await self.db.installment_schedules.find({
            "is_active": True,
            "status": {"$in": [InstallmentStatus.PENDING, InstallmentStatus.PARTIAL, InstallmentStatus.OVERDUE]},
            "due_date": {"$lt": as_of},
        }).to_list(length=None)

        updated = 0
        skipped = []
        for sale_id in sorted({row["sale_id"] for row in stale}, key=str):
            try:
                async with self.uow.begin(sale_lock_key(sale_id)) as ctx:
                    for row in await self._rows_for_sale(sale_id, session=ctx.session):
                        status = installment_status(row["amount"], row["paid_amount"], row["due_date"], as_of)
                        if status != row["status"]:
                            await self.version_lock.apply("INSTALLMENT", row, {"status": status},
                                                          session=ctx.session)
                            updated += 1
            except ConcurrencyConflictError as e:
                logger.warning(f"[INSTALLMENT] Skipped sale {sale_id}: {e.message}")
                skipped.append(str(sale_id))

        logger.info(f"[INSTALLMENT] Status refresh as of {as_of:%Y-%m-%d}: {updated} updated")
        return {"as_of": as_of, "updated": updated, "skipped_sales": skipped}

    # =========================================================================
    # REPORTING
    # =========================================================================

    def _with_live_status(self, rows: List[Dict[str, Any]], as_of: datetime) -> List[Dict[str, Any]]:
        for row in rows:
            row["status"] = installment_status(row["amount"], row["paid_amount"], row["due_date"], as_of)
            if row["due_date"] < as_of and row["status"] != InstallmentStatus.PAID:
                row["days_overdue"] = (as_of - row["due_date"]).days
        return rows

    async def overdue(self, client_id=None, as_of: Optional[datetime] = None) -> List[Dict[str, Any]]:
        as_of = to_datetime(as_of) or datetime.utcnow()
        query: Dict[str, Any] = {"is_active": True, "due_date": {"$lt": as_of}}
        if client_id:
            query["client_id"] = to_object_id(client_id, "CLIENT")
        rows = await self.db.installment_schedules.find(query).sort("due_date", 1).to_list(length=None)
        return [r for r in self._with_live_status(rows, as_of) if r["status"] in InstallmentStatus.LATE]

    async def client_statement(self, client_id, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        as_of = to_datetime(as_of) or datetime.utcnow()
        oid = to_object_id(client_id, "CLIENT")
        client = await self.db.clients.find_one({"_id": oid})
        if not client:
            raise NotFoundError("CLIENT", client_id)

        rows = await self.db.installment_schedules.find(
            {"client_id": oid, "is_active": True}
        ).sort([("due_date", 1), ("installment_number", 1)]).to_list(length=None)
        rows = self._with_live_status(rows, as_of)

        total_due = sum((to_decimal(r["amount"]) for r in rows), ZERO)
        total_paid = sum((to_decimal(r["paid_amount"]) for r in rows), ZERO)
        return {
            "client_id": oid,
            "client_name": client.get("name"),
            "as_of": as_of,
            "installments": rows,
            "summary": {
                "total_installments": len(rows),
                "paid_count": sum(1 for r in rows if r["status"] == InstallmentStatus.PAID),
                "overdue_count": sum(1 for r in rows if r["status"] in InstallmentStatus.LATE),
                "total_due": to_float(total_due),
                "total_paid": to_float(total_paid),
                "total_outstanding": to_float(total_due - total_paid),
            },
        }
