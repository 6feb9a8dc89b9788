"""
Cheque register: status from the due date, clearing, bouncing and
cancelling, and the due / upcoming lists.
"""
from datetime import datetime, timedelta

import pytest

from engine.cheques import ChequeStatus, ChequeType
from engine.errors import InvalidStateError, NotFoundError, ValidationError
from tests.conftest import ADMIN

USER = ADMIN["user_id"]


def cheque_data(client_doc, due_in_days=10, **extra):
    today = datetime.utcnow()
    data = {
        "cheque_number": "004512",
        "bank_name": "Sonali Bank",
        "branch_name": "Motijheel",
        "cheque_type": ChequeType.PDC,
        "issue_date": today - timedelta(days=30),
        "due_date": today + timedelta(days=due_in_days),
        "amount": 150000,
        "client_id": client_doc["_id"],
    }
    data.update(extra)
    return data


class TestRegisterCheque:

    async def test_status_follows_the_due_date(self, engine, client_doc):
        future = await engine.cheques.create_cheque(cheque_data(client_doc, 10), USER)
        today = await engine.cheques.create_cheque(cheque_data(client_doc, 0, cheque_number="004513"), USER)
        past = await engine.cheques.create_cheque(cheque_data(client_doc, -3, cheque_number="004514"), USER)

        assert future["status"] == ChequeStatus.PENDING
        assert today["status"] == ChequeStatus.DUE_TODAY
        assert past["status"] == ChequeStatus.OVERDUE
        assert future["amount"] == 150000.0
        assert future["sale_id"] is None

    async def test_links_to_the_sale(self, engine, client_doc, sale):
        cheque = await engine.cheques.create_cheque(cheque_data(client_doc, sale_id=str(sale["_id"])), USER)
        items, total = await engine.cheques.list_cheques(sale_id=sale["_id"])
        assert total == 1
        assert items[0]["_id"] == cheque["_id"]

    async def test_due_date_before_issue_date(self, engine, client_doc):
        data = cheque_data(client_doc)
        data["due_date"] = data["issue_date"] - timedelta(days=1)
        with pytest.raises(ValidationError):
            await engine.cheques.create_cheque(data, USER)

    async def test_bad_type_and_amount(self, engine, client_doc):
        with pytest.raises(ValidationError):
            await engine.cheques.create_cheque(cheque_data(client_doc, cheque_type="Bearer"), USER)
        with pytest.raises(ValidationError):
            await engine.cheques.create_cheque(cheque_data(client_doc, amount=0), USER)

    async def test_unknown_client(self, engine, client_doc):
        data = cheque_data(client_doc, client_id="64b000000000000000000000")
        with pytest.raises(NotFoundError):
            await engine.cheques.create_cheque(data, USER)


class TestChequeOutcomes:

    async def test_clear_once(self, engine, client_doc):
        cheque = await engine.cheques.create_cheque(cheque_data(client_doc), USER)
        cleared = await engine.cheques.mark_cleared(cheque["_id"], USER, datetime(2030, 1, 5))
        assert cleared["status"] == ChequeStatus.CLEARED
        assert cleared["cleared_date"] == datetime(2030, 1, 5)

        with pytest.raises(InvalidStateError):
            await engine.cheques.mark_cleared(cheque["_id"], USER)
        with pytest.raises(InvalidStateError):
            await engine.cheques.cancel(cheque["_id"], USER, "Client asked")

    async def test_bounce_needs_a_reason(self, engine, client_doc):
        cheque = await engine.cheques.create_cheque(cheque_data(client_doc), USER)
        with pytest.raises(ValidationError):
            await engine.cheques.mark_bounced(cheque["_id"], USER, "  ")

        bounced = await engine.cheques.mark_bounced(cheque["_id"], USER, "Insufficient funds")
        assert bounced["status"] == ChequeStatus.BOUNCED
        assert bounced["bounce_reason"] == "Insufficient funds"

    async def test_cancel(self, engine, client_doc):
        cheque = await engine.cheques.create_cheque(cheque_data(client_doc), USER)
        cancelled = await engine.cheques.cancel(cheque["_id"], USER, "Replaced by transfer")
        assert cancelled["status"] == ChequeStatus.CANCELLED
        assert cancelled["cancelled_by"] == USER

    async def test_only_open_cheques_are_edited(self, engine, client_doc):
        cheque = await engine.cheques.create_cheque(cheque_data(client_doc), USER)
        moved = await engine.cheques.update_cheque(
            cheque["_id"], {"due_date": datetime.utcnow() - timedelta(days=2), "amount": 90000}, USER
        )
        assert moved["status"] == ChequeStatus.OVERDUE
        assert moved["amount"] == 90000.0

        await engine.cheques.mark_cleared(cheque["_id"], USER)
        with pytest.raises(InvalidStateError):
            await engine.cheques.update_cheque(cheque["_id"], {"amount": 1}, USER)

    async def test_cleared_cheque_is_kept(self, engine, client_doc):
        kept = await engine.cheques.create_cheque(cheque_data(client_doc), USER)
        dropped = await engine.cheques.create_cheque(cheque_data(client_doc, cheque_number="004513"), USER)
        await engine.cheques.mark_cleared(kept["_id"], USER)

        with pytest.raises(InvalidStateError):
            await engine.cheques.delete_cheque(kept["_id"], USER)
        await engine.cheques.delete_cheque(dropped["_id"], USER)
        with pytest.raises(NotFoundError):
            await engine.cheques.get_cheque(dropped["_id"])


class TestChequeCalendar:

    async def test_refresh_as_of(self, engine, client_doc):
        soon = await engine.cheques.create_cheque(cheque_data(client_doc, 2), USER)
        later = await engine.cheques.create_cheque(cheque_data(client_doc, 20, cheque_number="004513"), USER)

        as_of = soon["due_date"]
        result = await engine.cheques.refresh_statuses(as_of)
        assert result["updated"] == 1
        assert (await engine.cheques.get_cheque(soon["_id"]))["status"] == ChequeStatus.DUE_TODAY
        assert (await engine.cheques.get_cheque(later["_id"]))["status"] == ChequeStatus.PENDING

        result = await engine.cheques.refresh_statuses(as_of + timedelta(days=1))
        assert result["updated"] == 1
        assert (await engine.cheques.get_cheque(soon["_id"]))["status"] == ChequeStatus.OVERDUE

    async def test_due_and_upcoming(self, engine, client_doc):
        overdue = await engine.cheques.create_cheque(cheque_data(client_doc, -3), USER)
        week = await engine.cheques.create_cheque(cheque_data(client_doc, 5, cheque_number="004513"), USER)
        await engine.cheques.create_cheque(cheque_data(client_doc, 40, cheque_number="004514"), USER)

        assert [c["_id"] for c in await engine.cheques.due_cheques()] == [overdue["_id"]]
        assert [c["_id"] for c in await engine.cheques.upcoming_cheques(7)] == [week["_id"]]
        assert len(await engine.cheques.upcoming_cheques(60)) == 2

    async def test_stats(self, engine, client_doc):
        first = await engine.cheques.create_cheque(cheque_data(client_doc), USER)
        await engine.cheques.create_cheque(cheque_data(client_doc, cheque_number="004513", amount=50000), USER)
        await engine.cheques.mark_cleared(first["_id"], USER)

        stats = await engine.cheques.cheque_stats()
        assert stats["total_cheques"] == 2
        assert stats["total_amount"] == 200000.0
        assert stats["cleared_amount"] == 150000.0
        assert stats["pending_amount"] == 50000.0
        assert stats["by_status"][ChequeStatus.CLEARED] == 1
        assert stats["by_status"][ChequeStatus.PENDING] == 1
