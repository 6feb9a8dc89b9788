"""
RECEIPTS

Client payments against a Sale. A receipt only changes the Sale once it has
passed both approval gates; at that point the amount is waterfalled into the
Sale's stages, re-spread over its instalment schedule and, when a deposit
account is given, credited to it, all in the approval's unit of work.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from engine.accounts import AccountBook, account_lock_key, resolve_account_type
from engine.approval_workflow import ApprovalHooks, ApprovalStatus, ApprovalWorkflow
from engine.atomic_numbering import AtomicDocumentNumbering, RECEIPT_PREFIX
from engine.documents import new_document, to_datetime, to_object_id
from engine.errors import ValidationError
from engine.events import RECEIPT_APPROVED
from engine.financial_precision import round_financial, to_float, validate_positive
from engine.installments import InstallmentScheduleService
from engine.sale_ledger import SaleLedger, sale_lock_key
from engine.unit_of_work import UnitOfWork, UnitOfWorkContext
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)

RECEIPT_TYPES = ("Booking", "Installment", "Registration", "Handover", "Other")
PAYMENT_METHODS = ("Cash", "Bank Transfer", "Cheque", "PDC", "Mobile Wallet")
INSTRUMENT_METHODS = ("Cheque", "PDC")

EDITABLE_FIELDS = (
    "receipt_type", "amount", "method", "instrument_details",
    "account_type", "account_id", "receipt_date", "notes",
)


def validate_instrument(method: str, instrument_details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Cheque and PDC payments need the bank name and cheque number."""
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Payment method must be one of {PAYMENT_METHODS}", {"method": method})
    details = dict(instrument_details or {})
    if method in INSTRUMENT_METHODS:
        missing = [f for f in ("bank_name", "cheque_number") if not (details.get(f) or "").strip()]
        if missing:
            raise ValidationError(
                f"{method} payments require {' and '.join(missing)}",
                {"missing": missing}
            )
    if not details:
        return None
    if details.get("cheque_date"):
        details["cheque_date"] = to_datetime(details["cheque_date"])
    return details


def account_ref(data: Dict[str, Any]) -> Optional[Tuple[str, Any]]:
    if not data.get("account_id"):
        return None
    account_type = data.get("account_type")
    resolve_account_type(account_type)
    return account_type, to_object_id(data["account_id"], "ACCOUNT")


class ReceiptService:

    def __init__(
        self,
        uow: UnitOfWork,
        version_lock: VersionLockEngine,
        sales: SaleLedger,
        accounts: AccountBook,
        numbering: AtomicDocumentNumbering,
        installments: InstallmentScheduleService
    ):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock
        self.sales = sales
        self.installments = installments
        self.accounts = accounts
        self.numbering = numbering
        self.workflow = ApprovalWorkflow(
            "RECEIPT", uow, version_lock,
            ApprovalHooks(
                validate_submit=self._validate_against_sale,
                validate_approval=self._validate_against_sale,
                apply_approval=self._apply_to_sale,
                lock_keys=self._lock_keys,
            ),
            status_field="approval_status",
            number_field="receipt_number",
        )

    def _lock_keys(self, receipt: Dict[str, Any]) -> List[str]:
        keys = [sale_lock_key(receipt["sale_id"])]
        if receipt.get("account_id"):
            keys.append(account_lock_key(receipt["account_type"], receipt["account_id"]))
        return keys

    # =========================================================================
    # HOOKS
    # =========================================================================

    async def _validate_against_sale(self, ctx: UnitOfWorkContext, receipt: Dict[str, Any]) -> None:
        sale = await self.sales.get_sale(receipt["sale_id"], session=ctx.session)
        self.sales.check_receivable(sale, receipt["amount"])
        if receipt.get("account_id"):
            await self.accounts.require_active(receipt["account_type"], receipt["account_id"], session=ctx.session)

    async def _apply_to_sale(self, ctx: UnitOfWorkContext, receipt: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        sale = await self.sales.get_sale(receipt["sale_id"], session=ctx.session)
        applied = await self.sales.apply_receipt(
            ctx, sale, receipt["amount"], actor.get("user_id"), receipt_id=receipt["_id"]
        )
        await self.installments.sync_sale(ctx, sale)

        if receipt.get("account_id"):
            await self.accounts.credit(
                ctx, receipt["account_type"], receipt["account_id"], receipt["amount"],
                "RECEIPT", receipt["_id"], actor.get("user_id")
            )

        ctx.emit(RECEIPT_APPROVED, {
            "receipt_id": str(receipt["_id"]),
            "receipt_number": receipt["receipt_number"],
            "sale_id": str(sale["_id"]),
            "sale_number": sale["sale_number"],
            "client_id": str(sale["client_id"]),
            "amount": receipt["amount"],
            "paid_amount": sale["paid_amount"],
            "due_amount": sale["due_amount"],
            "sale_status": sale["status"],
            "allocations": applied["allocations"],
        })
        return {
            "fields": {"posted_to_ledger": True, "allocations": applied["allocations"]},
            "sale_status": sale["status"],
        }

    # =========================================================================
    # CRUD
    # =========================================================================

    async def get_receipt(self, receipt_id, session=None) -> Dict[str, Any]:
        return await self.workflow.get(receipt_id, session=session)

    async def list_receipts(
        self,
        sale_id=None,
        client_id=None,
        approval_status: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"is_active": True}
        if sale_id:
            query["sale_id"] = to_object_id(sale_id, "SALE")
        if client_id:
            query["client_id"] = to_object_id(client_id, "CLIENT")
        if approval_status:
            query["approval_status"] = approval_status
        total = await self.db.receipts.count_documents(query)
        cursor = self.db.receipts.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return await cursor.to_list(length=limit), total

    def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        amount = round_financial(data["amount"])
        validate_positive(amount, "amount")
        receipt_type = data.get("receipt_type", "Installment")
        if receipt_type not in RECEIPT_TYPES:
            raise ValidationError(f"Receipt type must be one of {RECEIPT_TYPES}")
        method = data.get("method", "Cash")
        ref = account_ref(data)
        return {
            "receipt_type": receipt_type,
            "amount": to_float(amount),
            "method": method,
            "instrument_details": validate_instrument(method, data.get("instrument_details")),
            "account_type": ref[0] if ref else None,
            "account_id": ref[1] if ref else None,
            "receipt_date": to_datetime(data.get("receipt_date")) or datetime.utcnow(),
            "notes": data.get("notes"),
        }

    async def create_receipt(self, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        fields = self._normalize(data)
        sale = await self.sales.get_sale(data["sale_id"])
        if data.get("client_id") and to_object_id(data["client_id"], "CLIENT") != sale["client_id"]:
            raise ValidationError(
                f"Client does not match sale {sale['sale_number']}",
                {"sale_client_id": str(sale["client_id"])}
            )

        lock_keys = [sale_lock_key(sale["_id"])]
        async with self.uow.begin(*lock_keys) as ctx:
            sale = await self.sales.get_sale(sale["_id"], session=ctx.session)
            self.sales.check_receivable(sale, fields["amount"])
            if fields["account_id"]:
                await self.accounts.require_active(fields["account_type"], fields["account_id"], session=ctx.session)

            receipt_number = await self.numbering.generate_document_number(RECEIPT_PREFIX, session=ctx.session)
            receipt = new_document({
                "receipt_number": receipt_number,
                "sale_id": sale["_id"],
                "client_id": sale["client_id"],
                **fields,
                "approval_status": ApprovalStatus.DRAFT,
                "approval_history": [],
                "posted_to_ledger": False,
            }, actor.get("user_id"))
            await ctx.insert("receipts", receipt)
            ctx.audit("RECEIPT", receipt["_id"], "CREATE", actor.get("user_id"),
                      new_value={"receipt_number": receipt_number, "amount": fields["amount"],
                                 "sale_number": sale["sale_number"]},
                      module_name="RECEIPTS")

        logger.info(f"[RECEIPT] Created {receipt_number} for {fields['amount']} on {sale['sale_number']}")
        return receipt

    async def update_receipt(self, receipt_id, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        current = await self.get_receipt(receipt_id)
        merged = {k: current.get(k) for k in EDITABLE_FIELDS}
        merged.update({k: v for k, v in data.items() if k in EDITABLE_FIELDS})
        fields = self._normalize(merged)
        if fields["account_id"] != current.get("account_id"):
            raise ValidationError("Deposit account cannot be changed; delete and recreate the receipt")
        return await self.workflow.update_draft(
            receipt_id, actor, fields, validate=self._validate_against_sale
        )

    async def delete_receipt(self, receipt_id, actor: Dict[str, Any]) -> Dict[str, Any]:
        return await self.workflow.delete_draft(receipt_id, actor)

    # =========================================================================
    # WORKFLOW
    # =========================================================================

    async def submit(self, receipt_id, actor: Dict[str, Any]) -> Dict[str, Any]:
        return await self.workflow.submit(receipt_id, actor)

    async def approve(self, receipt_id, actor: Dict[str, Any], remarks: Optional[str] = None) -> Dict[str, Any]:
        return await self.workflow.approve(receipt_id, actor, remarks)

    async def reject(self, receipt_id, actor: Dict[str, Any], remarks: str) -> Dict[str, Any]:
        return await self.workflow.reject(receipt_id, actor, remarks)

    async def approval_queue(self, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.workflow.approval_queue(actor)
