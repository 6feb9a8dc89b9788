"""
Client registry and system settings.
"""
from decimal import Decimal

import pytest

from engine.config import load_engine_config
from engine.errors import InvalidStateError, ValidationError
from engine.sales_engine import SalesEngine
from engine.settings_service import OFFICE_CHARGE_KEY, REMINDER_DAYS_KEY
from tests.conftest import ADMIN


class TestClients:
    """Client master data"""

    async def test_email_is_lower_cased(self, client_doc):
        assert client_doc["email"] == "rahim@example.com"
        assert client_doc["version"] == 0

    @pytest.mark.parametrize("data", [
        {"name": "", "phone": "+8801711999999"},
        {"name": "Nasima", "phone": "call me"},
        {"name": "Nasima", "phone": "+8801711999999", "email": "nasima.example.com"},
    ])
    async def test_invalid_client(self, engine, data):
        with pytest.raises(ValidationError):
            await engine.clients.create_client(data, ADMIN["user_id"])

    async def test_phone_must_be_unique(self, engine, client_doc):
        with pytest.raises(ValidationError):
            await engine.clients.create_client({"name": "Other", "phone": client_doc["phone"]}, ADMIN["user_id"])

    async def test_update_and_search(self, engine, client_doc):
        updated = await engine.clients.update_client(
            client_doc["_id"], {"address": "House 12, Road 5, Dhanmondi"}, ADMIN["user_id"]
        )
        assert updated["address"] == "House 12, Road 5, Dhanmondi"
        assert updated["version"] == 1

        items, total = await engine.clients.list_clients(search="rahim")
        assert total == 1
        assert items[0]["_id"] == client_doc["_id"]

    async def test_client_with_open_sale_stays_active(self, engine, client_doc, sale):
        with pytest.raises(InvalidStateError):
            await engine.clients.deactivate_client(client_doc["_id"], ADMIN["user_id"])

    async def test_deactivated_client_hidden(self, engine, client_doc):
        await engine.clients.deactivate_client(client_doc["_id"], ADMIN["user_id"])
        items, total = await engine.clients.list_clients()
        assert total == 0


class TestSettings:
    """Business settings with environment fallbacks"""

    async def test_defaults(self, engine):
        assert await engine.settings.get_office_charge_percent() == 10
        assert await engine.settings.get_reminder_days() == 3

    async def test_environment_overrides(self, db):
        config = load_engine_config({OFFICE_CHARGE_KEY: "12.5", REMINDER_DAYS_KEY: "7"})
        engine = SalesEngine(None, db, config=config)
        assert await engine.settings.get_office_charge_percent() == Decimal("12.5")
        assert await engine.settings.get_reminder_days() == 7

    async def test_stored_value_wins(self, engine):
        await engine.settings.upsert(REMINDER_DAYS_KEY, 5, ADMIN["user_id"])
        assert await engine.settings.get_reminder_days() == 5

    @pytest.mark.parametrize("key,value", [
        (OFFICE_CHARGE_KEY, 120),
        (OFFICE_CHARGE_KEY, "ten"),
        (REMINDER_DAYS_KEY, -1),
        (REMINDER_DAYS_KEY, 2.5),
    ])
    async def test_invalid_values(self, engine, key, value):
        with pytest.raises(ValidationError):
            await engine.settings.upsert(key, value, ADMIN["user_id"])

    async def test_list_includes_unstored_defaults(self, engine):
        await engine.settings.upsert("sms_sender_id", "GREENVALLEY", ADMIN["user_id"])
        keys = [s["key"] for s in await engine.settings.list_settings()]
        assert set(keys) == {"SMS_SENDER_ID", OFFICE_CHARGE_KEY, REMINDER_DAYS_KEY}


class TestConfig:
    """Environment parsing"""

    def test_defaults(self):
        config = load_engine_config({})
        assert config.db_name == "land_sales"
        assert config.use_transactions is False
        assert config.cors_origins == ["*"]

    def test_values(self):
        config = load_engine_config({
            "MONGO_URL": "mongodb://db:27017",
            "DB_NAME": "sales",
            "MONGO_TRANSACTIONS": "True",
            "CORS_ORIGINS": "https://a.example.com, https://b.example.com",
        })
        assert config.mongo_url == "mongodb://db:27017"
        assert config.db_name == "sales"
        assert config.use_transactions is True
        assert config.cors_origins == ["https://a.example.com", "https://b.example.com"]
