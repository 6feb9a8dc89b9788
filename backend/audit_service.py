"""
AUDIT TRAIL
Insert-only log of every engine mutation. Entries are written after the unit
of work commits, so an aborted operation leaves no trace here. Writing the
trail is best effort: a failed insert is logged and never undoes the
business change it describes.
"""
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson.errors import InvalidDocument
from pymongo.errors import PyMongoError
from datetime import datetime
from typing import Optional, Dict, Any, Iterable, List
import logging

from engine.version_lock_engine import FINANCIAL_ENTITY_TYPES, HardDeleteBlockedError

logger = logging.getLogger(__name__)


def changed_fields(old_value: Optional[Dict[str, Any]], new_value: Optional[Dict[str, Any]]) -> List[str]:
    if not old_value or not new_value:
        return []
    keys = set(old_value) | set(new_value)
    return sorted(k for k in keys if old_value.get(k) != new_value.get(k))


class AuditService:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    def build_entry(
        self,
        module_name: str,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        # Sales, receipts, expenses, cancellations and accounts end in a
        # terminal status or are deactivated; a DELETE entry for them means a
        # caller bypassed that rule.
        if action_type == "DELETE" and entity_type in FINANCIAL_ENTITY_TYPES:
            raise HardDeleteBlockedError(entity_type, entity_id)

        return {
            "module_name": module_name,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "action_type": action_type,
            "changed_fields": changed_fields(old_value, new_value),
            "old_value_json": old_value,
            "new_value_json": new_value,
            "user_id": user_id,
            "timestamp": datetime.utcnow()
        }

    async def record(self, entries: Iterable[Dict[str, Any]]) -> None:
        """Insert already built entries, in the order the mutations happened"""
        entries = list(entries)
        if not entries:
            return
        try:
            await self.collection.insert_many(entries, ordered=True)
        except (PyMongoError, InvalidDocument) as e:
            logger.error(f"[AUDIT] Failed to write {len(entries)} audit entries: {e}")
            return
        for entry in entries:
            logger.info(
                f"[AUDIT] {entry['action_type']} on {entry['entity_type']}:{entry['entity_id']} "
                f"by user:{entry['user_id']}"
            )

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100
    ):
        """Newest first"""
        query = {}
        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id
        if user_id:
            query["user_id"] = user_id

        logs = await self.collection.find(query).sort("timestamp", -1).limit(limit).to_list(length=limit)
        for log in logs:
            log["audit_id"] = str(log.pop("_id"))
        return logs
