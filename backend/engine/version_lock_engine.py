"""
VERSION & LOCK ENGINE

Provides:
1. Version-checked conditional updates (optimistic locking on `version`)
2. Expected-state filters so a transition can only be claimed once
3. In-memory refresh of the caller's document after a successful write
4. No hard delete protection for financial entities
5. A write journal that undoes a failed unit of work when it runs without
   a MongoDB transaction
"""

from contextvars import ContextVar
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from engine.errors import ConcurrencyConflictError, PermissionDeniedError

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "RS_NUMBER": "rs_numbers",
    "PLOT": "plots",
    "CLIENT": "clients",
    "SALE": "sales",
    "RECEIPT": "receipts",
    "EXPENSE": "expenses",
    "EXPENSE_CATEGORY": "expense_categories",
    "CANCELLATION": "cancellations",
    "REFUND": "refunds",
    "INSTALLMENT": "installment_schedules",
    "CHEQUE": "cheques",
    "BANK_ACCOUNT": "bank_accounts",
    "CASH_ACCOUNT": "cash_accounts",
    "SYSTEM_SETTING": "system_settings",
}

# Financial entities are never hard deleted; they are deactivated instead.
FINANCIAL_ENTITY_TYPES = {
    "SALE",
    "RECEIPT",
    "EXPENSE",
    "CANCELLATION",
    "REFUND",
    "BANK_ACCOUNT",
    "CASH_ACCOUNT",
}


class HardDeleteBlockedError(PermissionDeniedError):
    """Raised when trying to hard delete a financial entity"""
    code = "HARD_DELETE_BLOCKED"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Hard delete of {entity_type} {entity_id} is blocked. "
            f"Use status-based soft disable instead.",
            {"entity_type": entity_type, "id": str(entity_id)}
        )


# =============================================================================
# WRITE JOURNAL
# =============================================================================

_MISSING = object()


class WriteJournal:
    """
    Undo log for a unit of work that runs without a transaction.

    Each successful versioned write records the field values it replaced and
    the version it produced; each insert records the new _id. `rollback`
    replays the log backwards. An update is only undone while the document
    still carries the version this unit of work wrote, so a later writer's
    change is never overwritten.
    """

    def __init__(self):
        self._entries: List[Dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def record_update(
        self,
        collection: str,
        doc_id,
        written_version: int,
        prior: Dict[str, Any],
        pushed: Optional[List[str]] = None
    ) -> None:
        self._entries.append({
            "op": "update",
            "collection": collection,
            "_id": doc_id,
            "written_version": written_version,
            "prior": prior,
            "pushed": pushed or [],
        })

    def record_insert(self, collection: str, doc_id) -> None:
        self._entries.append({"op": "insert", "collection": collection, "_id": doc_id})

    async def rollback(self, db: AsyncIOMotorDatabase) -> int:
        """Undo recorded writes newest first; returns how many were undone."""
        undone = 0
        for entry in reversed(self._entries):
            collection = db[entry["collection"]]
            try:
                if entry["op"] == "insert":
                    result = await collection.delete_one({"_id": entry["_id"]})
                    matched = result.deleted_count
                else:
                    restore = {k: v for k, v in entry["prior"].items() if v is not _MISSING}
                    update: Dict[str, Any] = {"$set": restore}
                    unset = {k: "" for k, v in entry["prior"].items() if v is _MISSING}
                    if unset:
                        update["$unset"] = unset
                    if entry["pushed"]:
                        update["$pop"] = {key: 1 for key in entry["pushed"]}
                    result = await collection.update_one(
                        {"_id": entry["_id"], "version": entry["written_version"]}, update
                    )
                    matched = result.matched_count
            except PyMongoError as e:
                logger.error(f"[VERSION_LOCK] Undo failed on {entry['collection']} {entry['_id']}: {e}")
                continue
            if matched:
                undone += 1
            else:
                logger.error(
                    f"[VERSION_LOCK] Could not undo {entry['op']} on {entry['collection']} "
                    f"{entry['_id']}; it changed after this unit of work wrote it"
                )
        self._entries.clear()
        logger.warning(f"[VERSION_LOCK] Rolled back {undone} write(s)")
        return undone


# Journal of the unit of work running in the current task, if it needs one.
active_journal: ContextVar[Optional[WriteJournal]] = ContextVar("active_journal", default=None)


class VersionLockEngine:
    """
    Conditional writes keyed on (_id, version).

    Every mutation of a versioned document goes through `apply`. A zero match
    means someone else changed the document (or its status) since it was
    read, and the caller gets ConcurrencyConflictError.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    def collection(self, entity_type: str):
        name = COLLECTIONS.get(entity_type)
        if name is None:
            raise KeyError(f"Unknown entity type: {entity_type}")
        return self.db[name]

    async def apply(
        self,
        entity_type: str,
        doc: Dict[str, Any],
        set_fields: Dict[str, Any],
        session=None,
        expected: Optional[Dict[str, Any]] = None,
        push: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Write `set_fields` (and optional `$push` entries) to `doc` if its
        version and the `expected` field values are unchanged.

        On success `doc` is updated in place (fields, pushed entries,
        version + 1) and returned, so several writes inside one unit of work
        can chain off the same dict.
        """
        now = datetime.utcnow()
        query = {"_id": doc["_id"], "version": doc.get("version", 0)}
        if expected:
            query.update(expected)

        fields = dict(set_fields)
        fields["updated_at"] = now
        update: Dict[str, Any] = {"$set": fields, "$inc": {"version": 1}}
        if push:
            update["$push"] = push

        result = await self.collection(entity_type).update_one(query, update, session=session)

        if result.matched_count == 0:
            logger.warning(
                f"[VERSION_LOCK] Conflict on {entity_type} {doc['_id']} "
                f"at version {doc.get('version', 0)}"
            )
            raise ConcurrencyConflictError(entity_type, doc["_id"])

        journal = active_journal.get()
        if journal is not None:
            prior = {k: doc.get(k, _MISSING) for k in fields}
            prior["version"] = doc.get("version", 0)
            journal.record_update(
                self.collection(entity_type).name, doc["_id"],
                doc.get("version", 0) + 1, prior, list(push or {})
            )

        doc.update(fields)
        doc["version"] = doc.get("version", 0) + 1
        for key, value in (push or {}).items():
            doc.setdefault(key, []).append(value)
        return doc

    def block_hard_delete(self, entity_type: str, entity_id: str):
        """
        Block hard delete - always raises HardDeleteBlockedError.
        Financial entities must use soft disable.
        """
        raise HardDeleteBlockedError(entity_type, entity_id)
