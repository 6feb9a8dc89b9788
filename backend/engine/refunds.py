"""
REFUND INSTALMENTS

The refundable amount of an approved cancellation can be paid out through a
schedule of refund instalments. Each instalment is its own document that
passes the same two approval gates as receipts and expenses before it may be
paid. Paying it records the payment on the cancellation (and debits the
paying account) in one unit of work.

    approval_status   Draft -> Pending Accounts -> Pending HOF -> Approved | Rejected
    status            Pending -> Paid
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from engine.accounts import account_lock_key, resolve_account_type
from engine.approval_workflow import ApprovalHooks, ApprovalStatus, ApprovalWorkflow, doc_lock_key
from engine.atomic_numbering import AtomicDocumentNumbering, REFUND_PREFIX
from engine.cancellation import CancellationService, CancellationStatus, cancellation_lock_key
from engine.documents import new_document, to_datetime, to_object_id
from engine.errors import InvalidStateError, OverrefundError
from engine.financial_precision import ZERO, round_financial, split_evenly, to_decimal, to_float
from engine.installments import add_months
from engine.receipts import validate_instrument
from engine.unit_of_work import UnitOfWork, UnitOfWorkContext
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)


class RefundStatus:
    PENDING = "Pending"
    PAID = "Paid"


class RefundService:

    def __init__(
        self,
        uow: UnitOfWork,
        version_lock: VersionLockEngine,
        cancellations: CancellationService,
        numbering: AtomicDocumentNumbering
    ):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock
        self.cancellations = cancellations
        self.numbering = numbering
        self.workflow = ApprovalWorkflow(
            "REFUND", uow, version_lock,
            ApprovalHooks(
                validate_submit=self._validate_against_cancellation,
                validate_approval=self._validate_against_cancellation,
                lock_keys=self._lock_keys,
            ),
            status_field="approval_status",
            number_field="refund_number",
        )

    def _lock_keys(self, refund: Dict[str, Any]) -> List[str]:
        return [cancellation_lock_key(refund["cancellation_id"])]

    async def _validate_against_cancellation(self, ctx: UnitOfWorkContext, refund: Dict[str, Any]) -> None:
        cancellation = await self.cancellations.get_cancellation(refund["cancellation_id"], session=ctx.session)
        if cancellation["status"] not in CancellationStatus.REFUNDABLE:
            raise InvalidStateError(
                f"Cancellation of {cancellation['sale_number']} is {cancellation['status']}",
                {"status": cancellation["status"]}
            )
        amount = round_financial(refund["amount"])
        remaining = round_financial(cancellation["remaining_refund"])
        if amount > remaining:
            raise OverrefundError(amount, remaining)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_refund(self, refund_id, session=None) -> Dict[str, Any]:
        return await self.workflow.get(refund_id, session=session)

    async def list_refunds(
        self,
        cancellation_id=None,
        status: Optional[str] = None,
        approval_status: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"is_active": True}
        if cancellation_id:
            query["cancellation_id"] = to_object_id(cancellation_id, "CANCELLATION")
        if status:
            query["status"] = status
        if approval_status:
            query["approval_status"] = approval_status
        total = await self.db.refunds.count_documents(query)
        cursor = self.db.refunds.find(query).sort("due_date", 1).skip((page - 1) * limit).limit(limit)
        return await cursor.to_list(length=limit), total

    async def _scheduled_amount(self, cancellation_id, session=None):
        """Unpaid instalments that are not rejected still claim their amount."""
        cursor = self.db.refunds.find({
            "cancellation_id": cancellation_id,
            "is_active": True,
            "status": RefundStatus.PENDING,
            "approval_status": {"$ne": ApprovalStatus.REJECTED},
        }, session=session)
        return sum([to_decimal(r["amount"]) async for r in cursor], ZERO)

    # =========================================================================
    # SCHEDULE
    # =========================================================================

    async def create_schedule(
        self,
        cancellation_id,
        number_of_installments: int,
        actor: Dict[str, Any],
        start_date: Optional[datetime] = None,
        notes: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Split what is still unscheduled of the refund into monthly drafts."""
        doc = await self.cancellations.get_cancellation(cancellation_id)
        async with self.uow.begin(cancellation_lock_key(doc["_id"])) as ctx:
            doc = await self.cancellations.get_cancellation(cancellation_id, session=ctx.session)
            if doc["status"] not in CancellationStatus.REFUNDABLE:
                raise InvalidStateError(
                    f"Cancellation is {doc['status']}; refund schedules need an Approved or Partial Refund cancellation",
                    {"status": doc["status"]}
                )
            scheduled = await self._scheduled_amount(doc["_id"], session=ctx.session)
            unscheduled = round_financial(doc["remaining_refund"]) - scheduled
            if unscheduled <= ZERO:
                raise InvalidStateError(
                    f"The refund for {doc['sale_number']} is already fully scheduled",
                    {"remaining_refund": doc["remaining_refund"], "scheduled": to_float(scheduled)}
                )

            first_due = to_datetime(start_date) or datetime.utcnow()
            refunds = []
            for number, amount in enumerate(split_evenly(unscheduled, number_of_installments), start=1):
                refund_number = await self.numbering.generate_document_number(REFUND_PREFIX, session=ctx.session)
                refund = new_document({
                    "refund_number": refund_number,
                    "cancellation_id": doc["_id"],
                    "sale_number": doc["sale_number"],
                    "client_id": doc["client_id"],
                    "installment_number": number,
                    "due_date": add_months(first_due, number - 1),
                    "amount": to_float(amount),
                    "status": RefundStatus.PENDING,
                    "approval_status": ApprovalStatus.DRAFT,
                    "approval_history": [],
                    "notes": notes,
                }, actor.get("user_id"))
                refunds.append(await ctx.insert("refunds", refund))
                ctx.audit("REFUND", refund["_id"], "CREATE", actor.get("user_id"),
                          new_value={"refund_number": refund_number, "amount": refund["amount"],
                                     "cancellation_id": str(doc["_id"])},
                          module_name="REFUNDS")

        logger.info(
            f"[REFUND] Scheduled {to_float(unscheduled)} for {doc['sale_number']} "
            f"in {len(refunds)} instalments"
        )
        return refunds

    async def delete_refund(self, refund_id, actor: Dict[str, Any]) -> Dict[str, Any]:
        return await self.workflow.delete_draft(refund_id, actor)

    # =========================================================================
    # WORKFLOW
    # =========================================================================

    async def submit(self, refund_id, actor: Dict[str, Any]) -> Dict[str, Any]:
        return await self.workflow.submit(refund_id, actor)

    async def approve(self, refund_id, actor: Dict[str, Any], remarks: Optional[str] = None) -> Dict[str, Any]:
        return await self.workflow.approve(refund_id, actor, remarks)

    async def reject(self, refund_id, actor: Dict[str, Any], remarks: str) -> Dict[str, Any]:
        return await self.workflow.reject(refund_id, actor, remarks)

    async def approval_queue(self, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.workflow.approval_queue(actor)

    # =========================================================================
    # PAYMENT
    # =========================================================================

    async def mark_paid(
        self,
        refund_id,
        actor: Dict[str, Any],
        method: str = "Bank Transfer",
        payment_date: Optional[datetime] = None,
        account_type: Optional[str] = None,
        account_id=None,
        instrument_details: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        instrument_details = validate_instrument(method, instrument_details)
        if account_id:
            resolve_account_type(account_type)
            account_id = to_object_id(account_id, "ACCOUNT")

        refund = await self.get_refund(refund_id)
        keys = [doc_lock_key(refund["_id"]), cancellation_lock_key(refund["cancellation_id"])]
        if account_id:
            keys.append(account_lock_key(account_type, account_id))

        async with self.uow.begin(*keys) as ctx:
            refund = await self.get_refund(refund_id, session=ctx.session)
            if refund["approval_status"] != ApprovalStatus.APPROVED:
                raise InvalidStateError(
                    f"Refund {refund['refund_number']} is {refund['approval_status']}; only approved refunds can be paid",
                    {"approval_status": refund["approval_status"]}
                )
            if refund["status"] != RefundStatus.PENDING or not refund.get("is_active", True):
                raise InvalidStateError(
                    f"Refund {refund['refund_number']} has already been paid",
                    {"status": refund["status"]}
                )

            cancellation = await self.cancellations.get_cancellation(refund["cancellation_id"], session=ctx.session)
            payment = await self.cancellations.apply_refund(
                ctx, cancellation, refund["amount"], actor.get("user_id"),
                method=method, payment_date=payment_date,
                account_type=account_type, account_id=account_id,
                reference=reference, notes=notes, refund_id=refund["_id"]
            )
            await self.version_lock.apply(
                "REFUND", refund,
                {
                    "status": RefundStatus.PAID,
                    "paid_date": payment["payment_date"],
                    "paid_by": actor.get("user_id"),
                    "payment_method": method,
                    "instrument_details": instrument_details,
                    "account_type": payment["account_type"],
                    "account_id": account_id,
                    "reference": reference,
                },
                session=ctx.session,
                expected={"status": RefundStatus.PENDING, "approval_status": ApprovalStatus.APPROVED}
            )
            ctx.audit("REFUND", refund["_id"], "PAY", actor.get("user_id"),
                      {"status": RefundStatus.PENDING}, {"status": RefundStatus.PAID, "amount": refund["amount"]},
                      module_name="REFUNDS")

        logger.info(
            f"[REFUND] Paid {refund['refund_number']} ({refund['amount']}) on {refund['sale_number']}; "
            f"cancellation now {cancellation['status']}"
        )
        return refund

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def refund_stats(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"is_active": True}
        due = {}
        if from_date:
            due["$gte"] = to_datetime(from_date)
        if to_date:
            due["$lte"] = to_datetime(to_date)
        if due:
            query["due_date"] = due

        refunds = await self.db.refunds.find(query).to_list(length=None)
        paid = [r for r in refunds if r["status"] == RefundStatus.PAID]
        return {
            "total_refunds": len(refunds),
            "pending_refunds": len(refunds) - len(paid),
            "paid_refunds": len(paid),
            "total_amount": to_float(sum((to_decimal(r["amount"]) for r in refunds), ZERO)),
            "paid_amount": to_float(sum((to_decimal(r["amount"]) for r in paid), ZERO)),
            "pending_approvals": sum(1 for r in refunds if r["approval_status"] in ApprovalStatus.PENDING),
        }
