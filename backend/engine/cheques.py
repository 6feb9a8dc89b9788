"""
CHEQUE REGISTER

Tracks paper instruments (current and post-dated cheques) received from
clients or issued for refunds, from receipt of the cheque until it clears,
bounces or is cancelled. The register only follows the instrument; money
moves through receipts and refunds.

    Pending / Due Today / Overdue   open, derived from the due date
    Cleared | Bounced | Cancelled   final
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging

from engine.documents import new_document, to_datetime, to_object_id
from engine.errors import InvalidStateError, NotFoundError, ValidationError
from engine.financial_precision import ZERO, round_financial, to_decimal, to_float, validate_positive
from engine.state_machine import StateMachine
from engine.unit_of_work import UnitOfWork
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "cheque_number", "bank_name", "branch_name", "cheque_type",
    "issue_date", "due_date", "amount", "notes",
)


class ChequeStatus:
    PENDING = "Pending"
    DUE_TODAY = "Due Today"
    OVERDUE = "Overdue"
    CLEARED = "Cleared"
    BOUNCED = "Bounced"
    CANCELLED = "Cancelled"

    ALL = (PENDING, DUE_TODAY, OVERDUE, CLEARED, BOUNCED, CANCELLED)
    OPEN = (PENDING, DUE_TODAY, OVERDUE)


class ChequeType:
    PDC = "PDC"
    CURRENT = "Current"

    ALL = (PDC, CURRENT)


def build_cheque_machine() -> StateMachine:
    s = ChequeStatus
    machine = StateMachine("cheque")
    for src in s.OPEN:
        for dst in s.OPEN:
            if src != dst:
                machine.register(src, dst, description="Due date reached")
        machine.register(src, s.CLEARED, description="Cleared")
        machine.register(src, s.BOUNCED, description="Bounced")
        machine.register(src, s.CANCELLED, description="Cancelled")
    return machine


cheque_machine = build_cheque_machine()


def cheque_lock_key(cheque_id) -> str:
    return f"cheque:{cheque_id}"


def _day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def open_status(due_date: datetime, as_of: datetime) -> str:
    """Status of an uncleared cheque on the calendar day of `as_of`."""
    due, today = _day(due_date), _day(as_of)
    if due == today:
        return ChequeStatus.DUE_TODAY
    if due < today:
        return ChequeStatus.OVERDUE
    return ChequeStatus.PENDING


def normalize_cheque(data: Dict[str, Any]) -> Dict[str, Any]:
    fields = {k: data.get(k) for k in EDITABLE_FIELDS}
    for key, label in (("cheque_number", "Cheque number"), ("bank_name", "Bank name")):
        fields[key] = (fields[key] or "").strip()
        if not fields[key]:
            raise ValidationError(f"{label} is required")
    fields["cheque_type"] = fields["cheque_type"] or ChequeType.CURRENT
    if fields["cheque_type"] not in ChequeType.ALL:
        raise ValidationError(f"Cheque type must be one of {ChequeType.ALL}", {"cheque_type": fields["cheque_type"]})

    fields["issue_date"] = to_datetime(fields["issue_date"])
    fields["due_date"] = to_datetime(fields["due_date"])
    if not fields["issue_date"] or not fields["due_date"]:
        raise ValidationError("Issue date and due date are required")
    if _day(fields["due_date"]) < _day(fields["issue_date"]):
        raise ValidationError("Due date cannot be before the issue date")

    amount = round_financial(fields["amount"] if fields["amount"] is not None else 0)
    validate_positive(amount, "amount")
    fields["amount"] = to_float(amount)
    return fields


class ChequeRegister:

    def __init__(self, uow: UnitOfWork, version_lock: VersionLockEngine):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock

    async def get_cheque(self, cheque_id, session=None) -> Dict[str, Any]:
        oid = to_object_id(cheque_id, "CHEQUE")
        doc = await self.db.cheques.find_one({"_id": oid, "is_active": True}, session=session)
        if not doc:
            raise NotFoundError("CHEQUE", cheque_id)
        return doc

    async def list_cheques(
        self,
        status: Optional[str] = None,
        cheque_type: Optional[str] = None,
        client_id=None,
        sale_id=None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"is_active": True}
        if status:
            query["status"] = status
        if cheque_type:
            query["cheque_type"] = cheque_type
        if client_id:
            query["client_id"] = to_object_id(client_id, "CLIENT")
        if sale_id:
            query["sale_id"] = to_object_id(sale_id, "SALE")
        due = {}
        if from_date:
            due["$gte"] = to_datetime(from_date)
        if to_date:
            due["$lte"] = to_datetime(to_date)
        if due:
            query["due_date"] = due
        total = await self.db.cheques.count_documents(query)
        cursor = self.db.cheques.find(query).sort("due_date", 1).skip((page - 1) * limit).limit(limit)
        return await cursor.to_list(length=limit), total

    # =========================================================================
    # REGISTER
    # =========================================================================

    async def create_cheque(self, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        fields = normalize_cheque(data)
        if not data.get("client_id"):
            raise ValidationError("Client is required")
        client_id = to_object_id(data["client_id"], "CLIENT")
        if not await self.db.clients.find_one({"_id": client_id}):
            raise NotFoundError("CLIENT", data["client_id"])

        links = {}
        for key, entity_type, collection in (
            ("sale_id", "SALE", "sales"),
            ("receipt_id", "RECEIPT", "receipts"),
            ("refund_id", "REFUND", "refunds"),
        ):
            if data.get(key):
                links[key] = to_object_id(data[key], entity_type)
                if not await self.db[collection].find_one({"_id": links[key]}):
                    raise NotFoundError(entity_type, data[key])
            else:
                links[key] = None

        async with self.uow.begin() as ctx:
            cheque = new_document({
                **fields,
                **links,
                "client_id": client_id,
                "status": open_status(fields["due_date"], datetime.utcnow()),
            }, user_id)
            await ctx.insert("cheques", cheque)
            ctx.audit("CHEQUE", cheque["_id"], "CREATE", user_id,
                      new_value={"cheque_number": cheque["cheque_number"], "amount": cheque["amount"],
                                 "due_date": cheque["due_date"].isoformat()},
                      module_name="CHEQUES")

        logger.info(
            f"[CHEQUE] Registered {cheque['cheque_type']} cheque {cheque['cheque_number']} "
            f"({cheque['bank_name']}) for {cheque['amount']} due {cheque['due_date']:%Y-%m-%d}"
        )
        return cheque

    async def update_cheque(self, cheque_id, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        doc = await self.get_cheque(cheque_id)
        async with self.uow.begin(cheque_lock_key(doc["_id"])) as ctx:
            doc = await self.get_cheque(cheque_id, session=ctx.session)
            if doc["status"] not in ChequeStatus.OPEN:
                raise InvalidStateError(
                    f"Cheque {doc['cheque_number']} is {doc['status']} and can no longer be edited",
                    {"status": doc["status"]}
                )
            merged = {k: doc.get(k) for k in EDITABLE_FIELDS}
            merged.update({k: v for k, v in data.items() if k in EDITABLE_FIELDS and v is not None})
            fields = normalize_cheque(merged)
            fields["status"] = open_status(fields["due_date"], datetime.utcnow())

            old_value = {k: doc.get(k) for k in fields}
            await self.version_lock.apply(
                "CHEQUE", doc, fields, session=ctx.session, expected={"status": doc["status"]}
            )
            ctx.audit("CHEQUE", doc["_id"], "UPDATE", user_id, old_value, fields, module_name="CHEQUES")
        return doc

    async def delete_cheque(self, cheque_id, user_id: str) -> Dict[str, Any]:
        """Soft delete; a cleared cheque backs a recorded payment and stays."""
        doc = await self.get_cheque(cheque_id)
        async with self.uow.begin(cheque_lock_key(doc["_id"])) as ctx:
            doc = await self.get_cheque(cheque_id, session=ctx.session)
            if doc["status"] == ChequeStatus.CLEARED:
                raise InvalidStateError(f"Cheque {doc['cheque_number']} has cleared and cannot be deleted")
            await self.version_lock.apply("CHEQUE", doc, {"is_active": False, "deleted_by": user_id},
                                          session=ctx.session)
            ctx.audit("CHEQUE", doc["_id"], "DEACTIVATE", user_id,
                      {"is_active": True}, {"is_active": False}, module_name="CHEQUES")
        return doc

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    async def _close(self, cheque_id, to_state: str, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        doc = await self.get_cheque(cheque_id)
        async with self.uow.begin(cheque_lock_key(doc["_id"])) as ctx:
            doc = await self.get_cheque(cheque_id, session=ctx.session)
            from_state = doc["status"]
            cheque_machine.validate_transition(from_state, to_state)
            await self.version_lock.apply(
                "CHEQUE", doc, {"status": to_state, **fields},
                session=ctx.session, expected={"status": from_state}
            )
            ctx.audit("CHEQUE", doc["_id"], to_state.upper(), user_id,
                      {"status": from_state}, {"status": to_state}, module_name="CHEQUES")

        logger.info(f"[CHEQUE] {doc['cheque_number']}: {from_state} -> {to_state} by {user_id}")
        return doc

    async def mark_cleared(self, cheque_id, user_id: str, cleared_date: Optional[datetime] = None) -> Dict[str, Any]:
        return await self._close(cheque_id, ChequeStatus.CLEARED, user_id, {
            "cleared_date": to_datetime(cleared_date) or datetime.utcnow(),
            "cleared_by": user_id,
        })

    async def mark_bounced(self, cheque_id, user_id: str, reason: str,
                           bounce_date: Optional[datetime] = None) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise ValidationError("Bounce reason is required")
        return await self._close(cheque_id, ChequeStatus.BOUNCED, user_id, {
            "bounce_date": to_datetime(bounce_date) or datetime.utcnow(),
            "bounce_reason": reason.strip(),
            "bounced_by": user_id,
        })

    async def cancel(self, cheque_id, user_id: str, reason: str) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required")
        return await self._close(cheque_id, ChequeStatus.CANCELLED, user_id, {
            "cancelled_date": datetime.utcnow(),
            "cancelled_reason": reason.strip(),
            "cancelled_by": user_id,
        })

    async def refresh_statuses(self, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """Move open cheques between Pending, Due Today and Overdue."""
        as_of = to_datetime(as_of) or datetime.utcnow()
        cheques = await self.db.cheques.find(
            {"is_active": True, "status": {"$in": list(ChequeStatus.OPEN)}}
        ).to_list(length=None)

        updated = 0
        for cheque in cheques:
            status = open_status(cheque["due_date"], as_of)
            if status == cheque["status"]:
                continue
            async with self.uow.begin(cheque_lock_key(cheque["_id"])) as ctx:
                doc = await self.get_cheque(cheque["_id"], session=ctx.session)
                if doc["status"] != cheque["status"]:
                    continue
                await self.version_lock.apply(
                    "CHEQUE", doc, {"status": status},
                    session=ctx.session, expected={"status": doc["status"]}
                )
                updated += 1

        logger.info(f"[CHEQUE] Status refresh as of {as_of:%Y-%m-%d}: {updated} updated")
        return {"as_of": as_of, "updated": updated}

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def due_cheques(self, as_of: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Open cheques due on or before the day of `as_of`."""
        as_of = to_datetime(as_of) or datetime.utcnow()
        return await self.db.cheques.find({
            "is_active": True,
            "status": {"$in": list(ChequeStatus.OPEN)},
            "due_date": {"$lt": _day(as_of) + timedelta(days=1)},
        }).sort("due_date", 1).to_list(length=None)

    async def upcoming_cheques(self, days: int = 7, as_of: Optional[datetime] = None) -> List[Dict[str, Any]]:
        as_of = to_datetime(as_of) or datetime.utcnow()
        today = _day(as_of)
        return await self.db.cheques.find({
            "is_active": True,
            "status": {"$in": [ChequeStatus.PENDING, ChequeStatus.DUE_TODAY]},
            "due_date": {"$gte": today, "$lt": today + timedelta(days=days + 1)},
        }).sort("due_date", 1).to_list(length=None)

    async def cheque_stats(self) -> Dict[str, Any]:
        cheques = await self.db.cheques.find({"is_active": True}).to_list(length=None)

        def total(statuses) -> float:
            return to_float(sum((to_decimal(c["amount"]) for c in cheques if c["status"] in statuses), ZERO))

        by_status = {
            status: sum(1 for c in cheques if c["status"] == status) for status in ChequeStatus.ALL
        }
        return {
            "total_cheques": len(cheques),
            "total_amount": total(ChequeStatus.ALL),
            "cleared_amount": total((ChequeStatus.CLEARED,)),
            "pending_amount": total(ChequeStatus.OPEN),
            "by_status": by_status,
        }
