"""
EXPENSES & EXPENSE CATEGORIES

Expenses follow the same two-tier approval as receipts. Final approval
debits the paying bank or cash account, if one is referenced.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging
import re

from engine.accounts import AccountBook, account_lock_key
from engine.approval_workflow import ApprovalHooks, ApprovalStatus, ApprovalWorkflow
from engine.atomic_numbering import AtomicDocumentNumbering, EXPENSE_PREFIX
from engine.documents import new_document, to_datetime, to_object_id
from engine.errors import InvalidStateError, NotFoundError, ValidationError
from engine.events import EXPENSE_APPROVED
from engine.financial_precision import ZERO, round_financial, to_decimal, to_float, validate_positive
from engine.receipts import account_ref, validate_instrument
from engine.unit_of_work import UnitOfWork, UnitOfWorkContext
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)

EXPENSE_PAYMENT_METHODS = ("Cash", "Bank Transfer", "Cheque", "Mobile Wallet")

EDITABLE_FIELDS = (
    "category_id", "amount", "expense_date", "vendor", "description",
    "payment_method", "instrument_details", "account_type", "account_id",
)


class ExpenseService:

    def __init__(
        self,
        uow: UnitOfWork,
        version_lock: VersionLockEngine,
        accounts: AccountBook,
        numbering: AtomicDocumentNumbering
    ):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock
        self.accounts = accounts
        self.numbering = numbering
        self.workflow = ApprovalWorkflow(
            "EXPENSE", uow, version_lock,
            ApprovalHooks(
                validate_approval=self._validate_account,
                apply_approval=self._debit_account,
                lock_keys=self._lock_keys,
            ),
            status_field="status",
            number_field="expense_number",
        )

    def _lock_keys(self, expense: Dict[str, Any]) -> List[str]:
        if expense.get("account_id"):
            return [account_lock_key(expense["account_type"], expense["account_id"])]
        return []

    async def _validate_account(self, ctx: UnitOfWorkContext, expense: Dict[str, Any]) -> None:
        if expense.get("account_id"):
            await self.accounts.require_active(expense["account_type"], expense["account_id"], session=ctx.session)

    async def _debit_account(self, ctx: UnitOfWorkContext, expense: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        if expense.get("account_id"):
            account = await self.accounts.debit(
                ctx, expense["account_type"], expense["account_id"], expense["amount"],
                "EXPENSE", expense["_id"], actor.get("user_id")
            )
            balance = account["current_balance"]
        else:
            balance = None
        ctx.emit(EXPENSE_APPROVED, {
            "expense_id": str(expense["_id"]),
            "expense_number": expense["expense_number"],
            "category_id": str(expense["category_id"]),
            "amount": expense["amount"],
            "account_type": expense.get("account_type"),
            "account_id": str(expense["account_id"]) if expense.get("account_id") else None,
            "account_balance": balance,
        })
        return {"account_balance": balance}

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    async def create_category(self, name: str, user_id: str, description: Optional[str] = None) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Category name is required")
        existing = await self.db.expense_categories.find_one(
            {"name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}}
        )
        if existing:
            raise ValidationError(f"Expense category {name} already exists")
        doc = new_document({"name": name, "description": description}, user_id)
        result = await self.db.expense_categories.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.info(f"[EXPENSE] Created category {name}")
        return doc

    async def list_categories(self, active_only: bool = True) -> List[Dict[str, Any]]:
        query = {"is_active": True} if active_only else {}
        return await self.db.expense_categories.find(query).sort("name", 1).to_list(length=None)

    async def deactivate_category(self, category_id, user_id: str) -> Dict[str, Any]:
        category = await self._category(category_id)
        in_use = await self.db.expenses.count_documents({
            "category_id": category["_id"],
            "is_active": True,
            "status": {"$in": [ApprovalStatus.DRAFT, *ApprovalStatus.PENDING]},
        })
        if in_use:
            raise InvalidStateError(
                f"Category {category['name']} has {in_use} open expense(s)",
                {"open_expenses": in_use}
            )
        await self.version_lock.apply("EXPENSE_CATEGORY", category, {"is_active": False})
        return category

    async def _category(self, category_id, active: bool = False) -> Dict[str, Any]:
        query: Dict[str, Any] = {"_id": to_object_id(category_id, "EXPENSE_CATEGORY")}
        if active:
            query["is_active"] = True
        category = await self.db.expense_categories.find_one(query)
        if not category:
            raise NotFoundError("EXPENSE_CATEGORY", category_id)
        return category

    # =========================================================================
    # EXPENSES
    # =========================================================================

    async def get_expense(self, expense_id, session=None) -> Dict[str, Any]:
        return await self.workflow.get(expense_id, session=session)

    async def list_expenses(
        self,
        status: Optional[str] = None,
        category_id=None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        query = self._query(status, category_id, start_date, end_date)
        total = await self.db.expenses.count_documents(query)
        cursor = self.db.expenses.find(query).sort("expense_date", -1).skip((page - 1) * limit).limit(limit)
        return await cursor.to_list(length=limit), total

    def _query(self, status, category_id, start_date, end_date) -> Dict[str, Any]:
        query: Dict[str, Any] = {"is_active": True}
        if status:
            query["status"] = status
        if category_id:
            query["category_id"] = to_object_id(category_id, "EXPENSE_CATEGORY")
        date_query = {}
        if start_date:
            date_query["$gte"] = to_datetime(start_date)
        if end_date:
            date_query["$lte"] = to_datetime(end_date)
        if date_query:
            query["expense_date"] = date_query
        return query

    async def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        amount = round_financial(data["amount"])
        validate_positive(amount, "amount")
        category = await self._category(data["category_id"], active=True)
        method = data.get("payment_method", "Cash")
        if method not in EXPENSE_PAYMENT_METHODS:
            raise ValidationError(f"Payment method must be one of {EXPENSE_PAYMENT_METHODS}")
        ref = account_ref(data)
        if ref:
            await self.accounts.require_active(ref[0], ref[1])
        return {
            "category_id": category["_id"],
            "amount": to_float(amount),
            "expense_date": to_datetime(data.get("expense_date")) or datetime.utcnow(),
            "vendor": data.get("vendor"),
            "description": data.get("description"),
            "payment_method": method,
            "instrument_details": validate_instrument(method, data.get("instrument_details")),
            "account_type": ref[0] if ref else None,
            "account_id": ref[1] if ref else None,
        }

    async def create_expense(self, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        fields = await self._normalize(data)
        async with self.uow.begin() as ctx:
            expense_number = await self.numbering.generate_document_number(EXPENSE_PREFIX, session=ctx.session)
            expense = new_document({
                "expense_number": expense_number,
                **fields,
                "status": ApprovalStatus.DRAFT,
                "approval_history": [],
            }, actor.get("user_id"))
            await ctx.insert("expenses", expense)
            ctx.audit("EXPENSE", expense["_id"], "CREATE", actor.get("user_id"),
                      new_value={"expense_number": expense_number, "amount": fields["amount"]},
                      module_name="EXPENSES")

        logger.info(f"[EXPENSE] Created {expense_number} for {fields['amount']}")
        return expense

    async def update_expense(self, expense_id, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        current = await self.get_expense(expense_id)
        merged = {k: current.get(k) for k in EDITABLE_FIELDS}
        merged.update({k: v for k, v in data.items() if k in EDITABLE_FIELDS})
        fields = await self._normalize(merged)
        if fields["account_id"] != current.get("account_id"):
            raise ValidationError("Paying account cannot be changed; delete and recreate the expense")
        return await self.workflow.update_draft(expense_id, actor, fields)

    async def delete_expense(self, expense_id, actor: Dict[str, Any]) -> Dict[str, Any]:
        return await self.workflow.delete_draft(expense_id, actor)

    async def submit(self, expense_id, actor: Dict[str, Any]) -> Dict[str, Any]:
        return await self.workflow.submit(expense_id, actor)

    async def approve(self, expense_id, actor: Dict[str, Any], remarks: Optional[str] = None) -> Dict[str, Any]:
        return await self.workflow.approve(expense_id, actor, remarks)

    async def reject(self, expense_id, actor: Dict[str, Any], remarks: str) -> Dict[str, Any]:
        return await self.workflow.reject(expense_id, actor, remarks)

    async def approval_queue(self, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.workflow.approval_queue(actor)

    async def expense_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Totals of approved expenses, overall and per category."""
        query = self._query(ApprovalStatus.APPROVED, None, start_date, end_date)
        expenses = await self.db.expenses.find(query).to_list(length=None)

        total = ZERO
        per_category: Dict[Any, Dict[str, Any]] = {}
        for expense in expenses:
            amount = to_decimal(expense["amount"])
            total += amount
            bucket = per_category.setdefault(expense["category_id"], {"count": 0, "total": ZERO})
            bucket["count"] += 1
            bucket["total"] += amount

        names = {}
        if per_category:
            categories = await self.db.expense_categories.find(
                {"_id": {"$in": list(per_category.keys())}}
            ).to_list(length=None)
            names = {c["_id"]: c["name"] for c in categories}

        by_category = sorted(
            (
                {
                    "category_id": str(cid),
                    "category_name": names.get(cid),
                    "count": v["count"],
                    "total_amount": to_float(v["total"]),
                }
                for cid, v in per_category.items()
            ),
            key=lambda row: row["total_amount"],
            reverse=True,
        )
        return {
            "total_expenses": len(expenses),
            "total_amount": to_float(total),
            "by_category": by_category,
        }
