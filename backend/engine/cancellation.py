"""
CANCELLATION & REFUND CALCULATOR

    total_paid          = sale.paid_amount at request time
    office_charge       = total_paid * office_charge_percent / 100
    refundable_amount   = total_paid - office_charge - other_deductions

A request provisionally cancels the Sale (no more receipts can land on it)
and remembers its prior status. Rejection restores that status; approval
releases the Plot back to the RS Number and makes the cancellation final.
Refunds are then paid out in one or more instalments up to the refundable
amount.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

from engine.accounts import AccountBook, account_lock_key, resolve_account_type
from engine.documents import new_document, to_datetime, to_object_id
from engine.errors import InvalidStateError, NotFoundError, OverrefundError, ValidationError
from engine.events import CANCELLATION_APPROVED, REFUND_RECORDED
from engine.financial_precision import (
    ZERO, calculate_percentage, round_financial, to_decimal, to_float,
    validate_non_negative, validate_percentage, validate_positive
)
from engine.installments import InstallmentScheduleService
from engine.land_allocator import LandAllocator, plot_lock_key, rs_lock_key
from engine.receipts import PAYMENT_METHODS
from engine.sale_ledger import SaleLedger, SaleStatus, sale_lock_key
from engine.settings_service import SettingsService
from engine.state_machine import StateMachine
from engine.unit_of_work import UnitOfWork, UnitOfWorkContext
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)


class CancellationStatus:
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PARTIAL_REFUND = "Partial Refund"
    REFUNDED = "Refunded"

    ALL = (PENDING, APPROVED, REJECTED, PARTIAL_REFUND, REFUNDED)
    OPEN = (PENDING, APPROVED, PARTIAL_REFUND, REFUNDED)
    REFUNDABLE = (APPROVED, PARTIAL_REFUND)


def build_cancellation_machine() -> StateMachine:
    s = CancellationStatus
    machine = StateMachine("cancellation")
    machine.register(s.PENDING, s.APPROVED, description="Approved")
    machine.register(s.PENDING, s.REFUNDED, description="Approved with nothing to refund")
    machine.register(s.PENDING, s.REJECTED, description="Rejected")
    machine.register(s.APPROVED, s.PARTIAL_REFUND, description="Refund payment")
    machine.register(s.APPROVED, s.REFUNDED, description="Refund payment")
    machine.register(s.PARTIAL_REFUND, s.PARTIAL_REFUND, description="Refund payment")
    machine.register(s.PARTIAL_REFUND, s.REFUNDED, description="Refund payment")
    return machine


cancellation_machine = build_cancellation_machine()


# =============================================================================
# PURE CALCULATORS
# =============================================================================

def calculate_refund(total_paid, office_charge_percent, other_deductions=0) -> Dict[str, Decimal]:
    total_paid = round_financial(total_paid)
    validate_non_negative(total_paid, "total_paid")
    percent = validate_percentage(office_charge_percent, "office_charge_percent")
    deductions = round_financial(other_deductions or 0)
    validate_non_negative(deductions, "other_deductions")

    office_charge = round_financial(calculate_percentage(total_paid, percent))
    refundable = total_paid - office_charge - deductions
    if refundable < ZERO:
        raise ValidationError(
            "Deductions exceed the amount paid",
            {
                "total_paid": to_float(total_paid),
                "office_charge_amount": to_float(office_charge),
                "other_deductions": to_float(deductions),
            }
        )
    return {
        "total_paid": total_paid,
        "office_charge_percent": percent,
        "office_charge_amount": office_charge,
        "other_deductions": deductions,
        "refundable_amount": refundable,
    }


def status_after_approval(refundable) -> str:
    """Refunds are only paid after approval, so nothing is refunded yet."""
    if round_financial(refundable) <= ZERO:
        return CancellationStatus.REFUNDED
    return CancellationStatus.APPROVED


def status_after_refund(refunded, refundable) -> str:
    if round_financial(refunded) >= round_financial(refundable):
        return CancellationStatus.REFUNDED
    return CancellationStatus.PARTIAL_REFUND


def cancellation_lock_key(cancellation_id) -> str:
    return f"cancellation:{cancellation_id}"


# =============================================================================
# SERVICE
# =============================================================================

class CancellationService:

    def __init__(
        self,
        uow: UnitOfWork,
        version_lock: VersionLockEngine,
        sales: SaleLedger,
        allocator: LandAllocator,
        settings: SettingsService,
        accounts: AccountBook,
        installments: InstallmentScheduleService
    ):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock
        self.sales = sales
        self.allocator = allocator
        self.settings = settings
        self.accounts = accounts
        self.installments = installments

    async def get_cancellation(self, cancellation_id, session=None) -> Dict[str, Any]:
        oid = to_object_id(cancellation_id, "CANCELLATION")
        doc = await self.db.cancellations.find_one({"_id": oid}, session=session)
        if not doc:
            raise NotFoundError("CANCELLATION", cancellation_id)
        return doc

    async def list_cancellations(
        self,
        status: Optional[str] = None,
        sale_id=None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"is_active": True}
        if status:
            query["status"] = status
        if sale_id:
            query["sale_id"] = to_object_id(sale_id, "SALE")
        total = await self.db.cancellations.count_documents(query)
        cursor = self.db.cancellations.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return await cursor.to_list(length=limit), total

    # =========================================================================
    # REQUEST
    # =========================================================================

    async def request_cancellation(
        self,
        sale_id,
        reason: str,
        user_id: str,
        cancellation_date: Optional[datetime] = None,
        office_charge_percent=None,
        other_deductions=0,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")

        sale = await self.sales.get_sale(sale_id)
        async with self.uow.begin(sale_lock_key(sale["_id"])) as ctx:
            if office_charge_percent is None:
                office_charge_percent = await self.settings.get_office_charge_percent(session=ctx.session)

            sale = await self.sales.get_sale(sale_id, session=ctx.session)
            if sale["status"] not in SaleStatus.RECEIVABLE:
                raise InvalidStateError(
                    f"Sale {sale['sale_number']} is {sale['status']}; only Active or On Hold sales can be cancelled",
                    {"status": sale["status"]}
                )
            existing = await ctx.db.cancellations.find_one(
                {"sale_id": sale["_id"], "is_active": True, "status": {"$in": list(CancellationStatus.OPEN)}},
                session=ctx.session
            )
            if existing:
                raise InvalidStateError(
                    f"Sale {sale['sale_number']} already has a {existing['status']} cancellation",
                    {"cancellation_id": str(existing["_id"])}
                )

            figures = calculate_refund(sale["paid_amount"], office_charge_percent, other_deductions)
            doc = new_document({
                "sale_id": sale["_id"],
                "sale_number": sale["sale_number"],
                "client_id": sale["client_id"],
                "plot_id": sale["plot_id"],
                "cancellation_date": to_datetime(cancellation_date) or datetime.utcnow(),
                "reason": reason.strip(),
                "total_paid": to_float(figures["total_paid"]),
                "office_charge_percent": float(figures["office_charge_percent"]),
                "office_charge_amount": to_float(figures["office_charge_amount"]),
                "other_deductions": to_float(figures["other_deductions"]),
                "refundable_amount": to_float(figures["refundable_amount"]),
                "refunded_amount": 0.0,
                "remaining_refund": to_float(figures["refundable_amount"]),
                "prior_sale_status": sale["status"],
                "status": CancellationStatus.PENDING,
                "refund_payments": [],
                "notes": notes,
            }, user_id)
            await ctx.insert("cancellations", doc)

            await self.sales.mark_cancellation_pending(ctx, sale, doc["_id"], user_id)
            ctx.audit("CANCELLATION", doc["_id"], "CREATE", user_id,
                      new_value={"sale_number": sale["sale_number"],
                                 "refundable_amount": doc["refundable_amount"]},
                      module_name="CANCELLATIONS")

        logger.info(
            f"[CANCEL] Requested for {sale['sale_number']}: paid={doc['total_paid']} "
            f"office_charge={doc['office_charge_amount']} refundable={doc['refundable_amount']}"
        )
        return doc

    # =========================================================================
    # DECISION
    # =========================================================================

    async def approve(self, cancellation_id, user_id: str, remarks: Optional[str] = None) -> Dict[str, Any]:
        doc = await self.get_cancellation(cancellation_id)
        plot = await self.allocator.get_plot(doc["plot_id"])
        keys = (
            cancellation_lock_key(doc["_id"]), sale_lock_key(doc["sale_id"]),
            plot_lock_key(plot["_id"]), rs_lock_key(plot["rs_number_id"]),
        )
        async with self.uow.begin(*keys) as ctx:
            doc = await self.get_cancellation(cancellation_id, session=ctx.session)
            old_status = doc["status"]
            if old_status != CancellationStatus.PENDING:
                raise InvalidStateError(
                    f"Cancellation is {old_status}; only Pending cancellations can be approved",
                    {"status": old_status}
                )
            new_status = status_after_approval(doc["refundable_amount"])
            cancellation_machine.validate_transition(old_status, new_status)

            sale = await self.sales.get_sale(doc["sale_id"], session=ctx.session)
            plot = await self.allocator.get_plot(doc["plot_id"], session=ctx.session)

            await self.allocator.apply_release(ctx, plot, user_id)
            await self.sales.finalize_cancellation(ctx, sale, user_id)
            await self.installments.close_for_sale(ctx, sale["_id"], user_id)
            # the status claim goes last so a failed step leaves it Pending
            await self.version_lock.apply(
                "CANCELLATION", doc,
                {
                    "status": new_status,
                    "approved_by": user_id,
                    "approved_at": datetime.utcnow(),
                    "approval_remarks": remarks,
                },
                session=ctx.session,
                expected={"status": old_status}
            )

            ctx.audit("CANCELLATION", doc["_id"], "APPROVE", user_id,
                      {"status": old_status}, {"status": new_status, "remarks": remarks},
                      module_name="CANCELLATIONS")
            ctx.emit(CANCELLATION_APPROVED, {
                "cancellation_id": str(doc["_id"]),
                "sale_id": str(sale["_id"]),
                "sale_number": sale["sale_number"],
                "client_id": str(sale["client_id"]),
                "plot_id": str(plot["_id"]),
                "refundable_amount": doc["refundable_amount"],
            })

        logger.info(f"[CANCEL] Approved cancellation of {doc['sale_number']}; plot {plot['plot_number']} released")
        return doc

    async def reject(self, cancellation_id, user_id: str, reason: str) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        doc = await self.get_cancellation(cancellation_id)
        async with self.uow.begin(cancellation_lock_key(doc["_id"]), sale_lock_key(doc["sale_id"])) as ctx:
            doc = await self.get_cancellation(cancellation_id, session=ctx.session)
            old_status = doc["status"]
            if old_status != CancellationStatus.PENDING:
                raise InvalidStateError(
                    f"Cancellation is {old_status}; only Pending cancellations can be rejected",
                    {"status": old_status}
                )
            cancellation_machine.validate_transition(old_status, CancellationStatus.REJECTED)

            sale = await self.sales.get_sale(doc["sale_id"], session=ctx.session)
            await self.version_lock.apply(
                "CANCELLATION", doc,
                {
                    "status": CancellationStatus.REJECTED,
                    "rejected_by": user_id,
                    "rejected_at": datetime.utcnow(),
                    "rejection_reason": reason.strip(),
                },
                session=ctx.session,
                expected={"status": old_status}
            )
            await self.sales.restore_after_rejection(ctx, sale, doc["prior_sale_status"], user_id)
            ctx.audit("CANCELLATION", doc["_id"], "REJECT", user_id,
                      {"status": old_status}, {"status": CancellationStatus.REJECTED, "reason": reason},
                      module_name="CANCELLATIONS")

        logger.info(f"[CANCEL] Rejected cancellation of {doc['sale_number']}; sale back to {doc['prior_sale_status']}")
        return doc

    # =========================================================================
    # REFUNDS
    # =========================================================================

    async def record_refund_payment(
        self,
        cancellation_id,
        amount,
        user_id: str,
        method: str = "Bank Transfer",
        payment_date: Optional[datetime] = None,
        account_type: Optional[str] = None,
        account_id=None,
        reference: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        amount = round_financial(amount)
        validate_positive(amount, "amount")
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Payment method must be one of {PAYMENT_METHODS}")
        if account_id:
            resolve_account_type(account_type)
            account_id = to_object_id(account_id, "ACCOUNT")

        doc = await self.get_cancellation(cancellation_id)
        keys = [cancellation_lock_key(doc["_id"])]
        if account_id:
            keys.append(account_lock_key(account_type, account_id))

        async with self.uow.begin(*keys) as ctx:
            doc = await self.get_cancellation(cancellation_id, session=ctx.session)
            await self.apply_refund(
                ctx, doc, amount, user_id,
                method=method, payment_date=payment_date,
                account_type=account_type, account_id=account_id,
                reference=reference, notes=notes
            )

        logger.info(
            f"[CANCEL] Refund {to_float(amount)} on {doc['sale_number']}: "
            f"{doc['refunded_amount']}/{doc['refundable_amount']} ({doc['status']})"
        )
        return doc

    async def apply_refund(
        self,
        ctx: UnitOfWorkContext,
        doc: Dict[str, Any],
        amount,
        user_id: str,
        method: str,
        payment_date: Optional[datetime] = None,
        account_type: Optional[str] = None,
        account_id=None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        refund_id=None
    ) -> Dict[str, Any]:
        """
        Pay `amount` out of cancellation `doc` inside the caller's unit of
        work. The caller holds the cancellation lock (and the account lock
        when an account is given).
        """
        amount = round_financial(amount)
        old_status = doc["status"]
        if old_status not in CancellationStatus.REFUNDABLE:
            raise InvalidStateError(
                f"Cancellation is {old_status}; refunds need an Approved or Partial Refund cancellation",
                {"status": old_status}
            )

        refundable = round_financial(doc["refundable_amount"])
        refunded = round_financial(doc["refunded_amount"])
        remaining = refundable - refunded
        if amount > remaining:
            raise OverrefundError(amount, remaining)

        refunded += amount
        new_status = status_after_refund(refunded, refundable)
        cancellation_machine.validate_transition(old_status, new_status)

        if account_id:
            await self.accounts.debit(ctx, account_type, account_id, amount,
                                      "CANCELLATION", doc["_id"], user_id)

        payment = {
            "amount": to_float(amount),
            "method": method,
            "payment_date": to_datetime(payment_date) or datetime.utcnow(),
            "account_type": account_type if account_id else None,
            "account_id": account_id,
            "reference": reference,
            "notes": notes,
            "refund_id": refund_id,
            "recorded_by": user_id,
            "recorded_at": datetime.utcnow(),
        }
        await self.version_lock.apply(
            "CANCELLATION", doc,
            {
                "refunded_amount": to_float(refunded),
                "remaining_refund": to_float(refundable - refunded),
                "status": new_status,
            },
            session=ctx.session,
            expected={"status": old_status},
            push={"refund_payments": payment}
        )
        ctx.audit("CANCELLATION", doc["_id"], "REFUND", user_id,
                  {"refunded_amount": to_float(refunded - amount), "status": old_status},
                  {"refunded_amount": doc["refunded_amount"], "status": new_status},
                  module_name="CANCELLATIONS")
        ctx.emit(REFUND_RECORDED, {
            "cancellation_id": str(doc["_id"]),
            "refund_id": str(refund_id) if refund_id else None,
            "sale_number": doc["sale_number"],
            "client_id": str(doc["client_id"]),
            "amount": to_float(amount),
            "refunded_amount": doc["refunded_amount"],
            "remaining_refund": doc["remaining_refund"],
            "status": new_status,
        })
        return payment

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def cancellation_stats(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"is_active": True}
        date_query = {}
        if from_date:
            date_query["$gte"] = to_datetime(from_date)
        if to_date:
            date_query["$lte"] = to_datetime(to_date)
        if date_query:
            query["cancellation_date"] = date_query

        docs = await self.db.cancellations.find(query).to_list(length=None)
        by_status = {status: 0 for status in CancellationStatus.ALL}
        refundable = refunded = office = ZERO
        for doc in docs:
            by_status[doc["status"]] = by_status.get(doc["status"], 0) + 1
            if doc["status"] == CancellationStatus.REJECTED:
                continue
            refundable += to_decimal(doc["refundable_amount"])
            refunded += to_decimal(doc["refunded_amount"])
            office += to_decimal(doc["office_charge_amount"])

        return {
            "total_cancellations": len(docs),
            "by_status": by_status,
            "total_refundable": to_float(refundable),
            "total_refunded": to_float(refunded),
            "total_office_charge": to_float(office),
            "outstanding_refunds": to_float(refundable - refunded),
        }
