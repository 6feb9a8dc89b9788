"""
Units of work without a MongoDB transaction: a step that fails part way
leaves nothing behind, and concurrent requests on the same records settle
on exactly one outcome.
"""
import asyncio

import pytest

from engine.accounts import BANK
from engine.approval_workflow import ApprovalStatus
from engine.cancellation import CancellationStatus
from engine.config import EngineConfig
from engine.errors import ConcurrencyConflictError, InsufficientAreaError, InvalidStateError
from engine.events import RECEIPT_APPROVED
from engine.land_allocator import PlotStatus
from engine.refunds import RefundStatus
from engine.sale_ledger import SaleStatus
from engine.sales_engine import SalesEngine
from engine.version_lock_engine import WriteJournal, active_journal
from tests.conftest import ACCOUNTS, ADMIN, HOF, approve_through_both_gates, approved_receipt

LOSERS = (ConcurrencyConflictError, InvalidStateError)


def fail_writes_to(monkeypatch, engine, entity_type):
    """Make every versioned write to `entity_type` lose to a concurrent writer."""
    real_apply = engine.version_lock.apply

    async def apply(kind, doc, *args, **kwargs):
        if kind == entity_type:
            raise ConcurrencyConflictError(kind, doc["_id"])
        return await real_apply(kind, doc, *args, **kwargs)

    monkeypatch.setattr(engine.version_lock, "apply", apply)


async def receipt_at_hof(engine, sale, amount, **extra):
    receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": amount, **extra}, ADMIN)
    await engine.receipts.submit(receipt["_id"], ADMIN)
    return await engine.receipts.approve(receipt["_id"], ACCOUNTS)


class TestFailedUnitOfWork:
    """A failure part way through leaves every record as it was"""

    async def test_final_approval_failing_on_the_sale(self, engine, monkeypatch, sale):
        receipt = await receipt_at_hof(engine, sale, 100000)
        fail_writes_to(monkeypatch, engine, "SALE")
        with pytest.raises(ConcurrencyConflictError):
            await engine.receipts.approve(receipt["_id"], HOF)

        stored = await engine.receipts.get_receipt(receipt["_id"])
        assert stored["approval_status"] == ApprovalStatus.PENDING_HOF
        assert stored["posted_to_ledger"] is False
        stored_sale = await engine.sales.get_sale(sale["_id"])
        assert stored_sale["due_amount"] == 1000000.0

        monkeypatch.undo()
        receipt = await engine.receipts.approve(receipt["_id"], HOF)
        assert receipt["approval_status"] == ApprovalStatus.APPROVED
        assert (await engine.sales.get_sale(sale["_id"]))["due_amount"] == 900000.0

    async def test_final_approval_failing_on_the_claim(self, engine, db, audit_service, monkeypatch,
                                                       sale, bank_account):
        published = []

        async def capture(payload):
            published.append(payload)

        engine.events.subscribe(RECEIPT_APPROVED, capture)
        await engine.installments.create_schedule(sale["_id"], 7, ADMIN["user_id"])
        receipt = await receipt_at_hof(engine, sale, 250000, account_type=BANK, account_id=bank_account["_id"])

        fail_writes_to(monkeypatch, engine, "RECEIPT")
        with pytest.raises(ConcurrencyConflictError):
            await engine.receipts.approve(receipt["_id"], HOF)

        stored_sale = await engine.sales.get_sale(sale["_id"])
        assert stored_sale["paid_amount"] == 0.0
        assert {s["received_amount"] for s in stored_sale["stages"]} == {0.0}
        assert stored_sale["version"] == sale["version"]

        account = await engine.accounts.get_account(BANK, bank_account["_id"])
        assert account["current_balance"] == 50000.0
        assert await db.account_movements.count_documents({"reference_type": "RECEIPT"}) == 0

        rows, _ = await engine.installments.list_installments(sale_id=sale["_id"])
        assert {r["paid_amount"] for r in rows} == {0.0}

        assert published == []
        logs = await audit_service.get_audit_logs(entity_type="RECEIPT", entity_id=str(receipt["_id"]))
        assert sorted(log["action_type"] for log in logs) == ["APPROVED", "CREATE", "SUBMITTED"]

    async def test_create_sale_failing_on_the_plot(self, engine, db, monkeypatch, rs_number, plot, client_doc):
        fail_writes_to(monkeypatch, engine, "PLOT")
        with pytest.raises(ConcurrencyConflictError):
            await engine.sales.create_sale(client_doc["_id"], plot["_id"], 1_000_000, ADMIN["user_id"])

        assert await db.sales.count_documents({}) == 0
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert (rs["sold_area"], rs["allocated_area"], rs["remaining_area"]) == (0.0, 30.0, 70.0)
        assert (await engine.land.get_plot(plot["_id"]))["status"] == PlotStatus.AVAILABLE

    async def test_cancellation_approval_failing_on_the_claim(self, engine, monkeypatch, rs_number, plot, sale):
        await engine.installments.create_schedule(sale["_id"], 7, ADMIN["user_id"])
        doc = await engine.cancellations.request_cancellation(sale["_id"], "Client relocating", ADMIN["user_id"])

        fail_writes_to(monkeypatch, engine, "CANCELLATION")
        with pytest.raises(ConcurrencyConflictError):
            await engine.cancellations.approve(doc["_id"], HOF["user_id"])

        doc = await engine.cancellations.get_cancellation(doc["_id"])
        assert doc["status"] == CancellationStatus.PENDING
        assert (await engine.land.get_plot(plot["_id"]))["status"] == PlotStatus.SOLD
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert rs["sold_area"] == 30.0
        stored_sale = await engine.sales.get_sale(sale["_id"])
        assert stored_sale.get("cancelled_by") is None
        _, total = await engine.installments.list_installments(sale_id=sale["_id"])
        assert total == 7

    async def test_refund_payment_failing_on_the_claim(self, engine, monkeypatch, sale, bank_account):
        await approved_receipt(engine, sale, 500000)
        doc = await engine.cancellations.request_cancellation(sale["_id"], "Client relocating", ADMIN["user_id"])
        await engine.cancellations.approve(doc["_id"], HOF["user_id"])
        refunds = await engine.refunds.create_schedule(doc["_id"], 10, ADMIN)
        await approve_through_both_gates(engine.refunds, refunds[0]["_id"])

        fail_writes_to(monkeypatch, engine, "REFUND")
        with pytest.raises(ConcurrencyConflictError):
            await engine.refunds.mark_paid(refunds[0]["_id"], ADMIN, account_type=BANK,
                                           account_id=bank_account["_id"])

        doc = await engine.cancellations.get_cancellation(doc["_id"])
        assert (doc["status"], doc["refunded_amount"], doc["refund_payments"]) == (
            CancellationStatus.APPROVED, 0.0, []
        )
        account = await engine.accounts.get_account(BANK, bank_account["_id"])
        assert account["current_balance"] == 50000.0
        assert (await engine.refunds.get_refund(refunds[0]["_id"]))["status"] == RefundStatus.PENDING


class TestWriteJournal:
    """Undo log replay"""

    async def test_later_writer_is_never_overwritten(self, engine, plot):
        plot = await engine.land.get_plot(plot["_id"])
        journal = WriteJournal()
        token = active_journal.set(journal)
        try:
            await engine.version_lock.apply("PLOT", plot, {"notes": "first"})
        finally:
            active_journal.reset(token)

        later = await engine.land.get_plot(plot["_id"])
        await engine.version_lock.apply("PLOT", later, {"notes": "second"})

        assert await journal.rollback(engine.db) == 0
        assert (await engine.land.get_plot(plot["_id"]))["notes"] == "second"

    async def test_unset_fields_and_pushed_entries(self, engine, plot):
        plot = await engine.land.get_plot(plot["_id"])
        version = plot["version"]
        journal = WriteJournal()
        token = active_journal.set(journal)
        try:
            await engine.version_lock.apply(
                "PLOT", plot, {"hold_reason": "Survey"}, push={"history": {"event": "hold"}}
            )
        finally:
            active_journal.reset(token)

        assert await journal.rollback(engine.db) == 1
        stored = await engine.land.get_plot(plot["_id"])
        assert "hold_reason" not in stored
        assert stored["history"] == []
        assert stored["version"] == version


class TestConcurrentRequests:
    """Requests started together in one worker"""

    async def test_two_final_approvals_post_once(self, engine, sale):
        receipt = await receipt_at_hof(engine, sale, 100000)
        results = await asyncio.gather(
            engine.receipts.approve(receipt["_id"], HOF),
            engine.receipts.approve(receipt["_id"], ADMIN),
            return_exceptions=True
        )
        assert sum(isinstance(r, dict) for r in results) == 1
        assert sum(isinstance(r, LOSERS) for r in results) == 1

        stored_sale = await engine.sales.get_sale(sale["_id"])
        assert stored_sale["paid_amount"] == 100000.0
        assert stored_sale["due_amount"] == 900000.0

    async def test_two_plots_cannot_overdraw_the_rs_number(self, engine, rs_number):
        results = await asyncio.gather(
            engine.land.create_plot(rs_number["_id"], "P-A", 60, ADMIN["user_id"]),
            engine.land.create_plot(rs_number["_id"], "P-B", 60, ADMIN["user_id"]),
            return_exceptions=True
        )
        assert sum(isinstance(r, InsufficientAreaError) for r in results) == 1

        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert rs["allocated_area"] == 60.0
        assert rs["remaining_area"] == 40.0

    async def test_one_plot_sold_once(self, engine, db, plot, client_doc):
        results = await asyncio.gather(
            engine.sales.create_sale(client_doc["_id"], plot["_id"], 1_000_000, ADMIN["user_id"]),
            engine.sales.create_sale(client_doc["_id"], plot["_id"], 1_100_000, ADMIN["user_id"]),
            return_exceptions=True
        )
        assert sum(isinstance(r, dict) for r in results) == 1
        assert await db.sales.count_documents({"plot_id": plot["_id"]}) == 1


class TestSeparateWorkers:
    """Two engines on one database do not share in-process locks"""

    @pytest.fixture
    def other_engine(self, db, audit_service):
        return SalesEngine(None, db, config=EngineConfig(), audit_service=audit_service)

    async def test_stale_writer_loses_and_leaves_nothing(self, engine, other_engine, plot, sale):
        stale_sale = await other_engine.sales.get_sale(sale["_id"])
        await engine.sales.put_on_hold(sale["_id"], ADMIN["user_id"], "Awaiting documents")

        stored_plot = await other_engine.land.get_plot(plot["_id"])
        plot_version = stored_plot["version"]
        with pytest.raises(ConcurrencyConflictError):
            async with other_engine.uow.begin() as ctx:
                await other_engine.version_lock.apply("PLOT", stored_plot, {"notes": "Corner plot"},
                                                      session=ctx.session)
                await other_engine.version_lock.apply("SALE", stale_sale, {"notes": "Stale"},
                                                      session=ctx.session)

        stored_plot = await engine.land.get_plot(plot["_id"])
        assert (stored_plot["notes"], stored_plot["version"]) == (None, plot_version)
        stored_sale = await engine.sales.get_sale(sale["_id"])
        assert stored_sale["status"] == SaleStatus.ON_HOLD
        assert stored_sale.get("notes") != "Stale"

    async def test_rejection_in_one_worker_beats_approval_in_another(
        self, engine, other_engine, db, monkeypatch, sale, bank_account
    ):
        receipt = await receipt_at_hof(engine, sale, 100000, account_type=BANK, account_id=bank_account["_id"])
        real_apply = other_engine.version_lock.apply

        async def apply(kind, doc, *args, **kwargs):
            if kind == "RECEIPT":
                # the other worker runs outside this unit of work
                token = active_journal.set(None)
                try:
                    await engine.receipts.reject(receipt["_id"], HOF, "Duplicate entry")
                finally:
                    active_journal.reset(token)
            return await real_apply(kind, doc, *args, **kwargs)

        monkeypatch.setattr(other_engine.version_lock, "apply", apply)
        with pytest.raises(ConcurrencyConflictError):
            await other_engine.receipts.approve(receipt["_id"], HOF)

        stored = await engine.receipts.get_receipt(receipt["_id"])
        assert stored["approval_status"] == ApprovalStatus.REJECTED
        assert stored["posted_to_ledger"] is False
        stored_sale = await engine.sales.get_sale(sale["_id"])
        assert stored_sale["paid_amount"] == 0.0
        account = await engine.accounts.get_account(BANK, bank_account["_id"])
        assert account["current_balance"] == 50000.0
        assert await db.account_movements.count_documents({"reference_type": "RECEIPT"}) == 0
