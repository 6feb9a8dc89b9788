"""
SALE LEDGER

A Sale ties a Client to a Plot at a total price split into an ordered stage
plan. Approved receipts are applied through a deterministic waterfall: each
stage is filled up to its planned amount before anything spills into the
next one.

Invariants (checked before every write):
    paid_amount + due_amount == total_price
    sum(stage planned_amount) == total_price
    sum(stage received_amount) == paid_amount
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
import copy
import logging
import re

from engine.atomic_numbering import AtomicDocumentNumbering, SALE_PREFIX
from engine.documents import new_document, to_datetime, to_object_id
from engine.errors import (
    InvalidStateError, NotFoundError, OverpaymentError, ValidationError
)
from engine.financial_precision import (
    ZERO, round_financial, split_by_percentages, to_decimal, to_float, validate_positive
)
from engine.invariant_validator import FinancialInvariantValidator
from engine.land_allocator import LandAllocator, PlotStatus, plot_lock_key, rs_lock_key
from engine.settings_service import SettingsService
from engine.state_machine import StateMachine
from engine.unit_of_work import UnitOfWork, UnitOfWorkContext
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)


class SaleStatus:
    ACTIVE = "Active"
    ON_HOLD = "On Hold"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    ALL = (ACTIVE, ON_HOLD, COMPLETED, CANCELLED)
    RECEIVABLE = (ACTIVE, ON_HOLD)


class StageStatus:
    PENDING = "Pending"
    PARTIAL = "Partial"
    COMPLETED = "Completed"


DEFAULT_STAGE_PLAN = (
    ("Booking", 10),
    ("Installments", 70),
    ("Registration", 15),
    ("Handover", 5),
)


async def _restore_guard(sale: Dict[str, Any], context: Dict[str, Any]) -> Tuple[bool, str]:
    if context.get("cancellation_rejected"):
        return True, ""
    return False, "A cancelled sale can only be restored when its pending cancellation is rejected"


def build_sale_machine() -> StateMachine:
    machine = StateMachine("sale")
    machine.register(SaleStatus.ACTIVE, SaleStatus.COMPLETED, description="Fully paid")
    machine.register(SaleStatus.ACTIVE, SaleStatus.ON_HOLD, description="Put on hold")
    machine.register(SaleStatus.ON_HOLD, SaleStatus.ACTIVE, description="Resume")
    machine.register(SaleStatus.ACTIVE, SaleStatus.CANCELLED, description="Cancellation requested")
    machine.register(SaleStatus.ON_HOLD, SaleStatus.CANCELLED, description="Cancellation requested")
    machine.register(SaleStatus.CANCELLED, SaleStatus.ACTIVE, guard=_restore_guard,
                     description="Cancellation rejected")
    machine.register(SaleStatus.CANCELLED, SaleStatus.ON_HOLD, guard=_restore_guard,
                     description="Cancellation rejected")
    return machine


sale_machine = build_sale_machine()


# =============================================================================
# PURE CALCULATORS
# =============================================================================

def normalize_stage_plan(plan: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    """
    Accept (name, percentage) tuples or dicts with name / percentage /
    optional due_date and return a list of dicts.
    """
    plan = plan or DEFAULT_STAGE_PLAN
    items = []
    for entry in plan:
        if isinstance(entry, dict):
            items.append({
                "name": (entry.get("name") or "").strip(),
                "percentage": entry.get("percentage"),
                "due_date": to_datetime(entry.get("due_date")),
            })
        else:
            name, percentage = entry
            items.append({"name": name, "percentage": percentage, "due_date": None})

    names = [item["name"] for item in items]
    if any(not name for name in names):
        raise ValidationError("Every stage needs a name")
    if len(set(names)) != len(names):
        raise ValidationError("Stage names must be unique", {"stages": names})
    return items


def stage_status(planned, received) -> str:
    planned, received = round_financial(planned), round_financial(received)
    if received <= ZERO:
        return StageStatus.PENDING
    if received >= planned:
        return StageStatus.COMPLETED
    return StageStatus.PARTIAL


def build_stages(total_price, plan: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    """
    Split total_price over the stage plan. Each stage gets
    round(total * pct / 100); the last stage absorbs the rounding remainder.
    """
    items = normalize_stage_plan(plan)
    amounts = split_by_percentages(total_price, [item["percentage"] for item in items])

    stages = []
    for item, planned in zip(items, amounts):
        stages.append({
            "name": item["name"],
            "percentage": float(to_decimal(item["percentage"])),
            "planned_amount": to_float(planned),
            "received_amount": 0.0,
            "due_amount": to_float(planned),
            "status": stage_status(planned, ZERO),
            "due_date": item["due_date"],
        })
    return stages


def outstanding(stages: List[Dict[str, Any]]) -> Decimal:
    return sum(
        (round_financial(s["planned_amount"]) - round_financial(s["received_amount"]) for s in stages),
        ZERO
    )


def apply_waterfall(stages: List[Dict[str, Any]], amount) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Distribute `amount` over `stages` in plan order.

    Returns (new_stages, allocations) without touching the input. Raises
    OverpaymentError when amount exceeds the total outstanding.
    """
    amount = round_financial(amount)
    validate_positive(amount, "amount")

    due = outstanding(stages)
    if amount > due:
        raise OverpaymentError(amount, due)

    new_stages = copy.deepcopy(stages)
    allocations = []
    left = amount
    for stage in new_stages:
        if left <= ZERO:
            break
        planned = round_financial(stage["planned_amount"])
        received = round_financial(stage["received_amount"])
        room = planned - received
        if room <= ZERO:
            continue
        portion = min(room, left)
        received += portion
        left -= portion
        stage["received_amount"] = to_float(received)
        stage["due_amount"] = to_float(planned - received)
        stage["status"] = stage_status(planned, received)
        allocations.append({"stage": stage["name"], "amount": to_float(portion)})

    return new_stages, allocations


def derive_status(current_status: str, stages: List[Dict[str, Any]]) -> str:
    """Completed when every stage is Completed and the sale is Active."""
    if current_status == SaleStatus.ACTIVE and stages and all(
        s["status"] == StageStatus.COMPLETED for s in stages
    ):
        return SaleStatus.COMPLETED
    return current_status


def sale_lock_key(sale_id) -> str:
    return f"sale:{sale_id}"


# =============================================================================
# SALE LEDGER
# =============================================================================

class SaleLedger:

    def __init__(
        self,
        uow: UnitOfWork,
        version_lock: VersionLockEngine,
        validator: FinancialInvariantValidator,
        allocator: LandAllocator,
        numbering: AtomicDocumentNumbering,
        settings: SettingsService
    ):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock
        self.validator = validator
        self.allocator = allocator
        self.numbering = numbering
        self.settings = settings

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_sale(self, sale_id, session=None) -> Dict[str, Any]:
        oid = to_object_id(sale_id, "SALE")
        sale = await self.db.sales.find_one({"_id": oid}, session=session)
        if not sale:
            raise NotFoundError("SALE", sale_id)
        return sale

    async def list_sales(
        self,
        status: Optional[str] = None,
        client_id=None,
        plot_id=None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"is_active": True}
        if status:
            query["status"] = status
        if client_id:
            query["client_id"] = to_object_id(client_id, "CLIENT")
        if plot_id:
            query["plot_id"] = to_object_id(plot_id, "PLOT")
        if search:
            query["sale_number"] = {"$regex": re.escape(search.strip()), "$options": "i"}

        total = await self.db.sales.count_documents(query)
        cursor = self.db.sales.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return await cursor.to_list(length=limit), total

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_sale(
        self,
        client_id,
        plot_id,
        total_price,
        user_id: str,
        sale_date: Optional[datetime] = None,
        stages: Optional[Sequence[Any]] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        total = round_financial(total_price)
        validate_positive(total, "total_price")
        plan = build_stages(total, stages)

        plot = await self.allocator.get_plot(plot_id)
        async with self.uow.begin(rs_lock_key(plot["rs_number_id"]), plot_lock_key(plot["_id"])) as ctx:
            plot = await self.allocator.get_plot(plot_id, session=ctx.session)
            if not plot.get("is_active", True) or plot["status"] != PlotStatus.AVAILABLE:
                raise InvalidStateError(
                    f"Plot {plot['plot_number']} is {plot['status']}; a sale needs an Available plot",
                    {"status": plot["status"]}
                )
            client = await ctx.db.clients.find_one(
                {"_id": to_object_id(client_id, "CLIENT"), "is_active": True}, session=ctx.session
            )
            if not client:
                raise NotFoundError("CLIENT", client_id)

            sale_date = to_datetime(sale_date) or datetime.utcnow()
            sale_number = await self.numbering.generate_document_number(SALE_PREFIX, session=ctx.session)
            sale = new_document({
                "sale_number": sale_number,
                "client_id": client["_id"],
                "plot_id": plot["_id"],
                "rs_number_id": plot["rs_number_id"],
                "total_price": to_float(total),
                "paid_amount": 0.0,
                "due_amount": to_float(total),
                "status": SaleStatus.ACTIVE,
                "sale_date": sale_date,
                "stages": plan,
                "status_history": [],
                "cancellation_id": None,
                "notes": notes,
            }, user_id)
            self.validator.validate_sale(sale)
            # plot and RS counters, then the sale; a failure undoes both
            await self.allocator.apply_mark_sold(ctx, plot, client["_id"], sale_date, user_id)
            await ctx.insert("sales", sale)
            ctx.audit("SALE", sale["_id"], "CREATE", user_id,
                      new_value={"sale_number": sale_number, "total_price": sale["total_price"],
                                 "plot_id": str(plot["_id"]), "client_id": str(client["_id"])},
                      module_name="SALES")

        logger.info(f"[SALE] Created {sale_number} for plot {plot['plot_number']} at {sale['total_price']}")
        return sale

    # =========================================================================
    # RECEIPTS
    # =========================================================================

    def check_receivable(self, sale: Dict[str, Any], amount) -> None:
        """Raise unless `amount` could be applied to `sale` right now."""
        if sale["status"] not in SaleStatus.RECEIVABLE:
            raise InvalidStateError(
                f"Sale {sale['sale_number']} is {sale['status']}; receipts need an Active or On Hold sale",
                {"status": sale["status"]}
            )
        amount = round_financial(amount)
        due = round_financial(sale["due_amount"])
        if amount > due:
            raise OverpaymentError(amount, due, sale["sale_number"])

    async def apply_approved_receipt(self, sale_id, amount, user_id: str) -> Dict[str, Any]:
        sale = await self.get_sale(sale_id)
        async with self.uow.begin(sale_lock_key(sale["_id"])) as ctx:
            sale = await self.get_sale(sale_id, session=ctx.session)
            result = await self.apply_receipt(ctx, sale, amount, user_id)
        return result

    async def apply_receipt(
        self,
        ctx: UnitOfWorkContext,
        sale: Dict[str, Any],
        amount,
        user_id: str,
        receipt_id=None
    ) -> Dict[str, Any]:
        """Waterfall `amount` into `sale` inside the caller's unit of work."""
        self.check_receivable(sale, amount)
        try:
            stages, allocations = apply_waterfall(sale["stages"], amount)
        except OverpaymentError as e:
            e.details["sale_number"] = sale["sale_number"]
            raise

        amount = round_financial(amount)
        paid = round_financial(sale["paid_amount"]) + amount
        due = round_financial(sale["total_price"]) - paid
        old_status = sale["status"]
        new_status = derive_status(old_status, stages)

        fields = {
            "stages": stages,
            "paid_amount": to_float(paid),
            "due_amount": to_float(due),
            "status": new_status,
        }
        self.validator.validate_sale({**sale, **fields})

        push = None
        if new_status != old_status:
            sale_machine.validate_transition(old_status, new_status)
            push = {"status_history": sale_machine.get_history_entry(
                old_status, new_status, user_id, {"reason": "Fully paid"}
            )}

        await self.version_lock.apply(
            "SALE", sale, fields, session=ctx.session,
            expected={"status": old_status}, push=push
        )
        ctx.audit("SALE", sale["_id"], "RECEIPT_APPLIED", user_id,
                  {"paid_amount": to_float(paid - amount), "status": old_status},
                  {"paid_amount": sale["paid_amount"], "status": new_status,
                   "receipt_id": str(receipt_id) if receipt_id else None},
                  module_name="SALES")

        logger.info(
            f"[SALE] Applied {to_float(amount)} to {sale['sale_number']}: "
            f"paid={sale['paid_amount']} due={sale['due_amount']} status={new_status}"
        )
        return {"sale": sale, "allocations": allocations}

    # =========================================================================
    # STATUS CHANGES
    # =========================================================================

    def compute_status(self, sale: Dict[str, Any]) -> str:
        return derive_status(sale["status"], sale.get("stages", []))

    async def put_on_hold(self, sale_id, user_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self._manual_transition(sale_id, SaleStatus.ON_HOLD, user_id, reason)

    async def resume(self, sale_id, user_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self._manual_transition(sale_id, SaleStatus.ACTIVE, user_id, reason)

    async def _manual_transition(self, sale_id, to_state: str, user_id: str, reason: Optional[str]) -> Dict[str, Any]:
        sale = await self.get_sale(sale_id)
        async with self.uow.begin(sale_lock_key(sale["_id"])) as ctx:
            sale = await self.get_sale(sale_id, session=ctx.session)
            old_status = sale["status"]
            if old_status == SaleStatus.CANCELLED:
                raise InvalidStateError(
                    f"Sale {sale['sale_number']} is Cancelled",
                    {"status": old_status, "cancellation_id": str(sale.get("cancellation_id"))}
                )
            sale_machine.validate_transition(old_status, to_state)

            new_status = to_state
            history = [sale_machine.get_history_entry(old_status, to_state, user_id, {"reason": reason})]
            if to_state == SaleStatus.ACTIVE:
                derived = derive_status(SaleStatus.ACTIVE, sale["stages"])
                if derived != SaleStatus.ACTIVE:
                    history.append(sale_machine.get_history_entry(
                        SaleStatus.ACTIVE, derived, user_id, {"reason": "Fully paid"}
                    ))
                    new_status = derived

            await self._write_status(ctx, sale, old_status, new_status, history)
            ctx.audit("SALE", sale["_id"], "STATUS_CHANGE", user_id,
                      {"status": old_status}, {"status": new_status, "reason": reason},
                      module_name="SALES")

        logger.info(f"[SALE] {sale['sale_number']}: {old_status} -> {new_status}")
        return sale

    async def _write_status(
        self,
        ctx: UnitOfWorkContext,
        sale: Dict[str, Any],
        old_status: str,
        new_status: str,
        history: List[Dict[str, Any]],
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        fields = {"status": new_status}
        fields.update(extra or {})
        await self.version_lock.apply(
            "SALE", sale, fields, session=ctx.session, expected={"status": old_status},
            push={"status_history": history[0]}
        )
        # Further entries go one write at a time so $push stays a single element
        for entry in history[1:]:
            await self.version_lock.apply(
                "SALE", sale, {}, session=ctx.session, push={"status_history": entry}
            )

    # =========================================================================
    # CANCELLATION STEPS (caller holds sale lock)
    # =========================================================================

    async def mark_cancellation_pending(self, ctx, sale, cancellation_id, user_id: str) -> None:
        old_status = sale["status"]
        sale_machine.validate_transition(old_status, SaleStatus.CANCELLED)
        entry = sale_machine.get_history_entry(
            old_status, SaleStatus.CANCELLED, user_id,
            {"reason": "Cancellation requested", "cancellation_id": str(cancellation_id)}
        )
        await self._write_status(ctx, sale, old_status, SaleStatus.CANCELLED, [entry],
                                 {"cancellation_id": cancellation_id})

    async def restore_after_rejection(self, ctx, sale, prior_status: str, user_id: str) -> None:
        old_status = sale["status"]
        await sale_machine.transition(sale, prior_status, session=ctx, context={"cancellation_rejected": True})
        entry = sale_machine.get_history_entry(
            old_status, prior_status, user_id, {"reason": "Cancellation rejected"}
        )
        await self._write_status(ctx, sale, old_status, prior_status, [entry], {"cancellation_id": None})

    async def finalize_cancellation(self, ctx, sale, user_id: str) -> None:
        if sale["status"] != SaleStatus.CANCELLED:
            raise InvalidStateError(f"Sale {sale['sale_number']} is not pending cancellation")
        await self.version_lock.apply(
            "SALE", sale, {"cancelled_at": datetime.utcnow(), "cancelled_by": user_id},
            session=ctx.session, expected={"status": SaleStatus.CANCELLED}
        )

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def overdue_installments(
        self,
        as_of: Optional[datetime] = None,
        reminder_days: Optional[int] = None
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Stages of Active sales with outstanding dues that are past their due
        date (overdue) or fall due within `reminder_days` (upcoming).
        """
        as_of = to_datetime(as_of) or datetime.utcnow()
        if reminder_days is None:
            reminder_days = await self.settings.get_reminder_days()
        horizon = as_of + timedelta(days=reminder_days)

        overdue, upcoming = [], []
        client_ids = set()
        cursor = self.db.sales.find({"status": SaleStatus.ACTIVE, "is_active": True})
        async for sale in cursor:
            for stage in sale.get("stages", []):
                due_date = stage.get("due_date")
                if not due_date or round_financial(stage["due_amount"]) <= ZERO:
                    continue
                row = {
                    "sale_id": sale["_id"],
                    "sale_number": sale["sale_number"],
                    "client_id": sale["client_id"],
                    "stage": stage["name"],
                    "due_date": due_date,
                    "due_amount": stage["due_amount"],
                }
                if due_date < as_of:
                    row["days_overdue"] = (as_of - due_date).days
                    overdue.append(row)
                    client_ids.add(sale["client_id"])
                elif due_date <= horizon:
                    row["days_until_due"] = (due_date - as_of).days
                    upcoming.append(row)
                    client_ids.add(sale["client_id"])

        if client_ids:
            clients = await self.db.clients.find({"_id": {"$in": list(client_ids)}}).to_list(length=None)
            contacts = {c["_id"]: {"client_name": c.get("name"), "client_phone": c.get("phone")} for c in clients}
            for row in overdue + upcoming:
                row.update(contacts.get(row["client_id"], {}))

        overdue.sort(key=lambda r: r["due_date"])
        upcoming.sort(key=lambda r: r["due_date"])
        return {"as_of": as_of, "reminder_days": reminder_days, "overdue": overdue, "upcoming": upcoming}

    async def sale_stats(self) -> Dict[str, Any]:
        sales = await self.db.sales.find({"is_active": True}).to_list(length=None)
        now = datetime.utcnow()
        month_start = datetime(now.year, now.month, 1)

        by_status = {status: 0 for status in SaleStatus.ALL}
        total_price = paid = due = ZERO
        this_month = 0
        for sale in sales:
            by_status[sale["status"]] = by_status.get(sale["status"], 0) + 1
            total_price += to_decimal(sale["total_price"])
            paid += to_decimal(sale["paid_amount"])
            due += to_decimal(sale["due_amount"])
            if sale.get("sale_date") and sale["sale_date"] >= month_start:
                this_month += 1

        return {
            "total_sales": len(sales),
            "by_status": by_status,
            "total_amount": to_float(total_price),
            "total_paid": to_float(paid),
            "total_due": to_float(due),
            "sales_this_month": this_month,
        }
