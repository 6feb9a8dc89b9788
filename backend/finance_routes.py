# Finance API Endpoints
#
# Receipts and Expenses (two-tier approval), expense categories, the cheque
# register, bank / cash
# accounts, system settings, the integrity check and the audit trail.

from fastapi import APIRouter, Depends, Query, status
from datetime import datetime
from typing import Optional
import logging

from audit_service import AuditService
from auth import get_current_user
from engine.accounts import BANK, CASH
from engine.documents import serialize_doc
from engine.sales_engine import SalesEngine
from models import (
    ReceiptCreate, ReceiptUpdate,
    ExpenseCategoryCreate, ExpenseCreate, ExpenseUpdate, ApprovalAction,
    BankAccountCreate, CashAccountCreate, SystemSettingUpsert,
    ChequeCreate, ChequeUpdate, ChequeClear, ChequeBounce, ChequeCancel, InstallmentRefresh
)
from permissions import PermissionChecker, FINANCE_WRITERS, APPROVERS, ADMIN_ONLY

logger = logging.getLogger(__name__)


def _payload(model) -> dict:
    data = model.model_dump(exclude_none=True)
    if "instrument_details" in data and not data["instrument_details"]:
        data.pop("instrument_details")
    return data


def create_finance_routes(
    engine: SalesEngine,
    audit_service: AuditService,
    permission_checker: PermissionChecker
) -> APIRouter:
    """Create finance API router"""

    router = APIRouter(prefix="/api", tags=["Finance"])
    receipts = engine.receipts
    expenses = engine.expenses
    accounts = engine.accounts
    cheques = engine.cheques

    # ============================================
    # RECEIPT ENDPOINTS
    # ============================================

    @router.post("/receipts", status_code=status.HTTP_201_CREATED)
    async def create_receipt(
        data: ReceiptCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        """Create Draft receipt (checked against the sale's due amount)"""
        receipt = await receipts.create_receipt(_payload(data), current_user)
        return serialize_doc(receipt)

    @router.get("/receipts")
    async def list_receipts(
        sale_id: Optional[str] = None,
        client_id: Optional[str] = None,
        approval_status: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
        current_user: dict = Depends(get_current_user)
    ):
        items, total = await receipts.list_receipts(sale_id, client_id, approval_status, page, limit)
        return {"items": [serialize_doc(i) for i in items], "total": total, "page": page, "limit": limit}

    @router.get("/receipts/approval-queue")
    async def receipt_queue(current_user: dict = Depends(get_current_user)):
        return [serialize_doc(r) for r in await receipts.approval_queue(current_user)]

    @router.get("/receipts/{receipt_id}")
    async def get_receipt(receipt_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await receipts.get_receipt(receipt_id))

    @router.put("/receipts/{receipt_id}")
    async def update_receipt(
        receipt_id: str,
        data: ReceiptUpdate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        receipt = await receipts.update_receipt(receipt_id, _payload(data), current_user)
        return serialize_doc(receipt)

    @router.delete("/receipts/{receipt_id}")
    async def delete_receipt(
        receipt_id: str,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        """Soft delete of a Draft or Rejected receipt"""
        receipt = await receipts.delete_receipt(receipt_id, current_user)
        return serialize_doc(receipt)

    @router.post("/receipts/{receipt_id}/submit")
    async def submit_receipt(
        receipt_id: str,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await receipts.submit(receipt_id, current_user))

    @router.post("/receipts/{receipt_id}/approve")
    async def approve_receipt(
        receipt_id: str,
        data: ApprovalAction,
        current_user: dict = Depends(permission_checker.require(*APPROVERS))
    ):
        return serialize_doc(await receipts.approve(receipt_id, current_user, data.remarks))

    @router.post("/receipts/{receipt_id}/reject")
    async def reject_receipt(
        receipt_id: str,
        data: ApprovalAction,
        current_user: dict = Depends(permission_checker.require(*APPROVERS))
    ):
        return serialize_doc(await receipts.reject(receipt_id, current_user, data.remarks))

    # ============================================
    # EXPENSE CATEGORY ENDPOINTS
    # ============================================

    @router.post("/expense-categories", status_code=status.HTTP_201_CREATED)
    async def create_category(
        data: ExpenseCategoryCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        category = await expenses.create_category(data.name, current_user["user_id"], data.description)
        return serialize_doc(category)

    @router.get("/expense-categories")
    async def list_categories(current_user: dict = Depends(get_current_user)):
        return [serialize_doc(c) for c in await expenses.list_categories()]

    @router.delete("/expense-categories/{category_id}")
    async def deactivate_category(
        category_id: str,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        return serialize_doc(await expenses.deactivate_category(category_id, current_user["user_id"]))

    # ============================================
    # EXPENSE ENDPOINTS
    # ============================================

    @router.post("/expenses", status_code=status.HTTP_201_CREATED)
    async def create_expense(
        data: ExpenseCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await expenses.create_expense(_payload(data), current_user))

    @router.get("/expenses")
    async def list_expenses(
        expense_status: Optional[str] = Query(None, alias="status"),
        category_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
        current_user: dict = Depends(get_current_user)
    ):
        items, total = await expenses.list_expenses(expense_status, category_id, start_date, end_date, page, limit)
        return {"items": [serialize_doc(i) for i in items], "total": total, "page": page, "limit": limit}

    @router.get("/expenses/stats")
    async def expense_stats(
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        current_user: dict = Depends(get_current_user)
    ):
        return await expenses.expense_stats(start_date, end_date)

    @router.get("/expenses/approval-queue")
    async def expense_queue(current_user: dict = Depends(get_current_user)):
        return [serialize_doc(e) for e in await expenses.approval_queue(current_user)]

    @router.get("/expenses/{expense_id}")
    async def get_expense(expense_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await expenses.get_expense(expense_id))

    @router.put("/expenses/{expense_id}")
    async def update_expense(
        expense_id: str,
        data: ExpenseUpdate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await expenses.update_expense(expense_id, _payload(data), current_user))

    @router.delete("/expenses/{expense_id}")
    async def delete_expense(
        expense_id: str,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await expenses.delete_expense(expense_id, current_user))

    @router.post("/expenses/{expense_id}/submit")
    async def submit_expense(
        expense_id: str,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await expenses.submit(expense_id, current_user))

    @router.post("/expenses/{expense_id}/approve")
    async def approve_expense(
        expense_id: str,
        data: ApprovalAction,
        current_user: dict = Depends(permission_checker.require(*APPROVERS))
    ):
        return serialize_doc(await expenses.approve(expense_id, current_user, data.remarks))

    @router.post("/expenses/{expense_id}/reject")
    async def reject_expense(
        expense_id: str,
        data: ApprovalAction,
        current_user: dict = Depends(permission_checker.require(*APPROVERS))
    ):
        return serialize_doc(await expenses.reject(expense_id, current_user, data.remarks))

    # ============================================
    # CHEQUE REGISTER ENDPOINTS
    # ============================================

    @router.post("/cheques", status_code=status.HTTP_201_CREATED)
    async def create_cheque(
        data: ChequeCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await cheques.create_cheque(data.model_dump(), current_user["user_id"]))

    @router.get("/cheques")
    async def list_cheques(
        cheque_status: Optional[str] = Query(None, alias="status"),
        cheque_type: Optional[str] = None,
        client_id: Optional[str] = None,
        sale_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
        current_user: dict = Depends(get_current_user)
    ):
        items, total = await cheques.list_cheques(
            cheque_status, cheque_type, client_id, sale_id, from_date, to_date, page, limit
        )
        return {"items": [serialize_doc(i) for i in items], "total": total, "page": page, "limit": limit}

    @router.get("/cheques/due")
    async def due_cheques(as_of: Optional[datetime] = None, current_user: dict = Depends(get_current_user)):
        return [serialize_doc(c) for c in await cheques.due_cheques(as_of)]

    @router.get("/cheques/upcoming")
    async def upcoming_cheques(
        days: int = Query(7, ge=0, le=365),
        as_of: Optional[datetime] = None,
        current_user: dict = Depends(get_current_user)
    ):
        return [serialize_doc(c) for c in await cheques.upcoming_cheques(days, as_of)]

    @router.get("/cheques/stats")
    async def cheque_stats(current_user: dict = Depends(get_current_user)):
        return await cheques.cheque_stats()

    @router.post("/cheques/refresh-status")
    async def refresh_cheque_statuses(
        data: InstallmentRefresh,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        result = await cheques.refresh_statuses(data.as_of)
        result["as_of"] = result["as_of"].isoformat()
        return result

    @router.get("/cheques/{cheque_id}")
    async def get_cheque(cheque_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await cheques.get_cheque(cheque_id))

    @router.put("/cheques/{cheque_id}")
    async def update_cheque(
        cheque_id: str,
        data: ChequeUpdate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        """Edit an open cheque; the status is re-derived from the due date"""
        cheque = await cheques.update_cheque(cheque_id, data.model_dump(exclude_none=True), current_user["user_id"])
        return serialize_doc(cheque)

    @router.delete("/cheques/{cheque_id}")
    async def delete_cheque(
        cheque_id: str,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await cheques.delete_cheque(cheque_id, current_user["user_id"]))

    @router.post("/cheques/{cheque_id}/clear")
    async def clear_cheque(
        cheque_id: str,
        data: ChequeClear,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await cheques.mark_cleared(cheque_id, current_user["user_id"], data.cleared_date))

    @router.post("/cheques/{cheque_id}/bounce")
    async def bounce_cheque(
        cheque_id: str,
        data: ChequeBounce,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        cheque = await cheques.mark_bounced(cheque_id, current_user["user_id"], data.reason, data.bounce_date)
        return serialize_doc(cheque)

    @router.post("/cheques/{cheque_id}/cancel")
    async def cancel_cheque(
        cheque_id: str,
        data: ChequeCancel,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await cheques.cancel(cheque_id, current_user["user_id"], data.reason))

    # ============================================
    # ACCOUNT ENDPOINTS
    # ============================================

    @router.post("/accounts/bank", status_code=status.HTTP_201_CREATED)
    async def create_bank_account(
        data: BankAccountCreate,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        return serialize_doc(await accounts.create_bank_account(data.model_dump(), current_user["user_id"]))

    @router.post("/accounts/cash", status_code=status.HTTP_201_CREATED)
    async def create_cash_account(
        data: CashAccountCreate,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        return serialize_doc(await accounts.create_cash_account(data.model_dump(), current_user["user_id"]))

    @router.get("/accounts")
    async def list_accounts(current_user: dict = Depends(get_current_user)):
        return {
            BANK: [serialize_doc(a) for a in await accounts.list_accounts(BANK)],
            CASH: [serialize_doc(a) for a in await accounts.list_accounts(CASH)],
        }

    @router.get("/accounts/{account_type}/{account_id}")
    async def get_account(account_type: str, account_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await accounts.get_account(account_type, account_id))

    @router.get("/accounts/{account_type}/{account_id}/movements")
    async def account_movements(
        account_type: str,
        account_id: str,
        limit: int = Query(100, ge=1, le=500),
        current_user: dict = Depends(get_current_user)
    ):
        return [serialize_doc(m) for m in await accounts.movements(account_type, account_id, limit)]

    @router.delete("/accounts/{account_type}/{account_id}")
    async def deactivate_account(
        account_type: str,
        account_id: str,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        return serialize_doc(await accounts.deactivate(account_type, account_id, current_user["user_id"]))

    # ============================================
    # SETTINGS, INTEGRITY, AUDIT
    # ============================================

    @router.get("/settings")
    async def list_settings(category: Optional[str] = None, current_user: dict = Depends(get_current_user)):
        return [serialize_doc(s) for s in await engine.settings.list_settings(category)]

    @router.put("/settings/{key}")
    async def upsert_setting(
        key: str,
        data: SystemSettingUpsert,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        setting = await engine.settings.upsert(
            key, data.value, current_user["user_id"],
            setting_type=data.type, category=data.category, description=data.description
        )
        return serialize_doc(setting)

    @router.post("/integrity/check")
    async def integrity_check(current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))):
        """Recompute counters from base records and report mismatches (no auto-fix)"""
        return await engine.run_integrity_check()

    @router.get("/audit-logs")
    async def audit_logs(
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = Query(100, ge=1, le=500),
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        logs = await audit_service.get_audit_logs(entity_type, entity_id, limit=limit)
        return [serialize_doc(log) for log in logs]

    return router
