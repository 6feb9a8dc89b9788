"""
SYSTEM SETTINGS

Business settings live in the `system_settings` collection and fall back to
environment defaults. They are read at the start of every operation that
needs them, never cached across operations.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from engine.documents import new_document
from engine.errors import ValidationError
from engine.financial_precision import to_decimal, validate_percentage

logger = logging.getLogger(__name__)

OFFICE_CHARGE_KEY = "DEFAULT_OFFICE_CHARGE_PERCENT"
REMINDER_DAYS_KEY = "INSTALLMENT_REMINDER_DAYS"

SETTING_TYPES = ("string", "number", "boolean", "json")

# key -> (default value, type, category, description)
DEFAULT_SETTINGS = {
    OFFICE_CHARGE_KEY: (
        10, "number", "finance",
        "Default office charge percentage deducted on sale cancellation"
    ),
    REMINDER_DAYS_KEY: (
        3, "number", "sms",
        "Days before an installment due date to send a reminder"
    ),
}


class SettingsService:

    def __init__(self, db: AsyncIOMotorDatabase, overrides: Optional[Dict[str, Any]] = None):
        self.db = db
        self.defaults = {key: spec[0] for key, spec in DEFAULT_SETTINGS.items()}
        for key, value in (overrides or {}).items():
            if value is not None:
                self.defaults[key] = value

    async def get(self, key: str, session=None) -> Any:
        doc = await self.db.system_settings.find_one({"key": key}, session=session)
        if doc is not None:
            return doc["value"]
        return self.defaults.get(key)

    async def get_office_charge_percent(self, session=None) -> Decimal:
        value = await self.get(OFFICE_CHARGE_KEY, session=session)
        return validate_percentage(value, OFFICE_CHARGE_KEY)

    async def get_reminder_days(self, session=None) -> int:
        value = await self.get(REMINDER_DAYS_KEY, session=session)
        try:
            days = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{REMINDER_DAYS_KEY} must be an integer: {value!r}")
        if days < 0:
            raise ValidationError(f"{REMINDER_DAYS_KEY} cannot be negative: {days}")
        return days

    def _validate(self, key: str, value: Any, setting_type: str) -> Any:
        if setting_type not in SETTING_TYPES:
            raise ValidationError(f"Unknown setting type: {setting_type}")
        if setting_type == "number":
            if isinstance(value, bool):
                raise ValidationError(f"Setting {key} must be a number")
            try:
                value = float(to_decimal(value))
            except ValidationError:
                raise ValidationError(f"Setting {key} must be a number: {value!r}")
        elif setting_type == "boolean" and not isinstance(value, bool):
            raise ValidationError(f"Setting {key} must be true or false")
        if key == OFFICE_CHARGE_KEY:
            validate_percentage(value, key)
        if key == REMINDER_DAYS_KEY and (float(value) < 0 or float(value) != int(value)):
            raise ValidationError(f"{REMINDER_DAYS_KEY} must be a non-negative whole number")
        return value

    async def upsert(
        self,
        key: str,
        value: Any,
        user_id: str,
        setting_type: Optional[str] = None,
        category: Optional[str] = None,
        description: Optional[str] = None
    ) -> Dict[str, Any]:
        key = key.strip().upper()
        known = DEFAULT_SETTINGS.get(key)
        # Recognised keys keep their declared type
        setting_type = known[1] if known else (setting_type or "string")
        value = self._validate(key, value, setting_type)

        existing = await self.db.system_settings.find_one({"key": key})
        fields = {
            "key": key,
            "value": value,
            "type": setting_type,
            "category": category or (known[2] if known else "general"),
            "description": description or (known[3] if known else ""),
            "updated_by": user_id,
        }
        if existing:
            await self.db.system_settings.update_one(
                {"_id": existing["_id"]},
                {"$set": fields, "$inc": {"version": 1}}
            )
            logger.info(f"[SETTINGS] Updated {key} = {value!r}")
        else:
            await self.db.system_settings.insert_one(new_document(fields, user_id))
            logger.info(f"[SETTINGS] Created {key} = {value!r}")

        return await self.db.system_settings.find_one({"key": key})

    async def list_settings(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        """Stored settings merged with defaults that have never been stored."""
        query = {"category": category} if category else {}
        stored = await self.db.system_settings.find(query).sort("key", 1).to_list(length=None)
        seen = {s["key"] for s in stored}
        for key, (_, setting_type, cat, description) in DEFAULT_SETTINGS.items():
            if key in seen or (category and category != cat):
                continue
            stored.append({
                "key": key,
                "value": self.defaults[key],
                "type": setting_type,
                "category": cat,
                "description": description,
                "is_default": True
            })
        return stored
