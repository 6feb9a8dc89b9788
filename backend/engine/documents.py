"""Helpers shared by every engine service for MongoDB documents."""

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
from bson import ObjectId, Decimal128
from bson.errors import InvalidId

from engine.errors import NotFoundError


def to_object_id(value: Any, entity: str = "Document") -> ObjectId:
    """Parse an id; a malformed id is reported as not found."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(entity, value)


def to_datetime(value: Any) -> Optional[datetime]:
    """
    BSON has no plain date type; promote dates to midnight datetimes.
    Aware datetimes become naive UTC, matching what MongoDB hands back.
    """
    if value is None:
        return value
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return value


def new_document(fields: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
    """Stamp a fresh document with audit timestamps and version 0."""
    now = datetime.utcnow()
    doc = dict(fields)
    doc.setdefault("is_active", True)
    if user_id is not None:
        doc["created_by"] = user_id
    doc["version"] = 0
    doc["created_at"] = now
    doc["updated_at"] = now
    return doc


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if key == "_id":
            result["id"] = str(value)
        elif isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, Decimal128):
            result[key] = float(value.to_decimal())
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else float(item.to_decimal()) if isinstance(item, Decimal128)
                else str(item) if isinstance(item, ObjectId)
                else item.isoformat() if isinstance(item, datetime)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result
