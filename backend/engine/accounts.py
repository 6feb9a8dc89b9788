"""
BANK & CASH ACCOUNTS

current_balance changes only through `credit` / `debit`, which run inside
the unit of work of an approval or refund. Every movement is also written to
`account_movements` so the integrity job can rebuild balances.
"""

from typing import Any, Dict, List, Optional
import logging

from engine.documents import new_document, to_object_id
from engine.errors import InvalidStateError, NotFoundError, ValidationError
from engine.financial_precision import (
    to_decimal, to_float, round_financial, validate_non_negative, validate_positive
)
from engine.unit_of_work import UnitOfWork, UnitOfWorkContext
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)

BANK = "bank"
CASH = "cash"

ENTITY_TYPES = {BANK: "BANK_ACCOUNT", CASH: "CASH_ACCOUNT"}
BANK_ACCOUNT_KINDS = ("Savings", "Current")

CREDIT = "credit"
DEBIT = "debit"


def account_lock_key(account_type: str, account_id) -> str:
    return f"account:{account_type}:{account_id}"


def resolve_account_type(account_type: str) -> str:
    if account_type not in ENTITY_TYPES:
        raise ValidationError(
            f"Unknown account type: {account_type}",
            {"allowed": sorted(ENTITY_TYPES)}
        )
    return ENTITY_TYPES[account_type]


class AccountBook:

    def __init__(self, uow: UnitOfWork, version_lock: VersionLockEngine):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock

    def _collection(self, account_type: str):
        return self.version_lock.collection(resolve_account_type(account_type))

    # =========================================================================
    # ACCOUNT MASTER DATA
    # =========================================================================

    async def create_bank_account(self, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        account_number = (data.get("account_number") or "").strip()
        if not account_number:
            raise ValidationError("Account number is required")
        if data.get("account_kind", "Savings") not in BANK_ACCOUNT_KINDS:
            raise ValidationError(f"Account kind must be one of {BANK_ACCOUNT_KINDS}")
        opening = to_decimal(data.get("opening_balance", 0))
        validate_non_negative(opening, "opening_balance")

        existing = await self.db.bank_accounts.find_one({"account_number": account_number})
        if existing:
            raise ValidationError(f"Bank account {account_number} already exists")

        doc = new_document({
            "bank_name": data["bank_name"],
            "branch": data.get("branch"),
            "account_number": account_number,
            "account_name": data["account_name"],
            "account_kind": data.get("account_kind", "Savings"),
            "opening_balance": to_float(opening),
            "current_balance": to_float(opening),
            "description": data.get("description"),
        }, user_id)
        result = await self.db.bank_accounts.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.info(f"[ACCOUNTS] Created bank account {account_number}")
        return doc

    async def create_cash_account(self, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Cash account name is required")
        opening = to_decimal(data.get("opening_balance", 0))
        validate_non_negative(opening, "opening_balance")

        existing = await self.db.cash_accounts.find_one({"name": name})
        if existing:
            raise ValidationError(f"Cash account {name} already exists")

        doc = new_document({
            "name": name,
            "description": data.get("description"),
            "opening_balance": to_float(opening),
            "current_balance": to_float(opening),
        }, user_id)
        result = await self.db.cash_accounts.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.info(f"[ACCOUNTS] Created cash account {name}")
        return doc

    async def get_account(self, account_type: str, account_id, session=None) -> Dict[str, Any]:
        collection = self._collection(account_type)
        oid = to_object_id(account_id, ENTITY_TYPES[account_type])
        account = await collection.find_one({"_id": oid}, session=session)
        if not account:
            raise NotFoundError(ENTITY_TYPES[account_type], account_id)
        return account

    async def require_active(self, account_type: str, account_id, session=None) -> Dict[str, Any]:
        account = await self.get_account(account_type, account_id, session=session)
        if not account.get("is_active", True):
            raise InvalidStateError(
                f"{ENTITY_TYPES[account_type]} {account_id} is inactive",
                {"account_type": account_type, "id": str(account_id)}
            )
        return account

    async def list_accounts(self, account_type: str, active_only: bool = True) -> List[Dict[str, Any]]:
        query = {"is_active": True} if active_only else {}
        return await self._collection(account_type).find(query).sort("created_at", 1).to_list(length=None)

    async def movements(self, account_type: str, account_id, limit: int = 100) -> List[Dict[str, Any]]:
        oid = to_object_id(account_id, ENTITY_TYPES.get(account_type, "Account"))
        cursor = self.db.account_movements.find(
            {"account_type": account_type, "account_id": oid}
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def deactivate(self, account_type: str, account_id, user_id: str) -> Dict[str, Any]:
        account = await self.get_account(account_type, account_id)
        async with self.uow.begin(account_lock_key(account_type, account["_id"])) as ctx:
            account = await self.get_account(account_type, account_id, session=ctx.session)
            await self.version_lock.apply(
                ENTITY_TYPES[account_type], account,
                {"is_active": False},
                session=ctx.session
            )
            ctx.audit(ENTITY_TYPES[account_type], account["_id"], "DEACTIVATE", user_id,
                      {"is_active": True}, {"is_active": False}, module_name="ACCOUNTS")
        return account

    # =========================================================================
    # BALANCE MOVEMENTS (inside a unit of work only)
    # =========================================================================

    async def credit(
        self,
        ctx: UnitOfWorkContext,
        account_type: str,
        account_id,
        amount,
        reference_type: str,
        reference_id,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._move(ctx, CREDIT, account_type, account_id, amount,
                                reference_type, reference_id, user_id)

    async def debit(
        self,
        ctx: UnitOfWorkContext,
        account_type: str,
        account_id,
        amount,
        reference_type: str,
        reference_id,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._move(ctx, DEBIT, account_type, account_id, amount,
                                reference_type, reference_id, user_id)

    async def _move(self, ctx, direction, account_type, account_id, amount,
                    reference_type, reference_id, user_id):
        validate_positive(amount, "amount")
        account = await self.require_active(account_type, account_id, session=ctx.session)

        old_balance = to_decimal(account["current_balance"])
        delta = round_financial(amount)
        new_balance = old_balance + delta if direction == CREDIT else old_balance - delta

        await self.version_lock.apply(
            ENTITY_TYPES[account_type], account,
            {"current_balance": to_float(new_balance)},
            session=ctx.session
        )
        await ctx.insert("account_movements", new_document({
            "account_type": account_type,
            "account_id": account["_id"],
            "direction": direction,
            "amount": to_float(delta),
            "balance_after": to_float(new_balance),
            "reference_type": reference_type,
            "reference_id": to_object_id(reference_id),
        }, user_id))

        logger.info(
            f"[ACCOUNTS] {direction} {to_float(delta)} on {account_type}:{account['_id']} "
            f"({reference_type} {reference_id}) balance {to_float(old_balance)} -> {to_float(new_balance)}"
        )
        return account
