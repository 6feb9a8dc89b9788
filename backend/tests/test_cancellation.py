"""
Sale cancellation: request, decision, plot release and staged refunds.
"""
import pytest
import pytest_asyncio

from engine.accounts import BANK
from engine.cancellation import CancellationStatus
from engine.errors import InvalidStateError, OverrefundError, ValidationError
from engine.events import CANCELLATION_APPROVED, REFUND_RECORDED
from engine.land_allocator import AreaBucket, PlotStatus
from engine.sale_ledger import SaleStatus
from tests.conftest import ADMIN, HOF, approved_receipt


@pytest_asyncio.fixture
async def paid_sale(engine, sale):
    await approved_receipt(engine, sale, 500000)
    return await engine.sales.get_sale(sale["_id"])


async def request(engine, sale, **kwargs):
    return await engine.cancellations.request_cancellation(
        sale["_id"], "Client relocating", ADMIN["user_id"], **kwargs
    )


class TestRequest:
    """Requesting a cancellation"""

    async def test_refund_figures_use_default_office_charge(self, engine, paid_sale):
        doc = await request(engine, paid_sale)
        assert doc["status"] == CancellationStatus.PENDING
        assert doc["total_paid"] == 500000.0
        assert doc["office_charge_percent"] == 10.0
        assert doc["office_charge_amount"] == 50000.0
        assert doc["refundable_amount"] == 450000.0
        assert doc["remaining_refund"] == 450000.0
        assert doc["prior_sale_status"] == SaleStatus.ACTIVE

    async def test_sale_is_provisionally_cancelled(self, engine, paid_sale):
        doc = await request(engine, paid_sale)
        sale = await engine.sales.get_sale(paid_sale["_id"])
        assert sale["status"] == SaleStatus.CANCELLED
        assert sale["cancellation_id"] == doc["_id"]

    async def test_office_charge_from_settings(self, engine, paid_sale):
        await engine.settings.upsert("DEFAULT_OFFICE_CHARGE_PERCENT", 5, ADMIN["user_id"])
        doc = await request(engine, paid_sale, other_deductions=1000)
        assert doc["office_charge_amount"] == 25000.0
        assert doc["refundable_amount"] == 474000.0

    async def test_explicit_office_charge(self, engine, paid_sale):
        doc = await request(engine, paid_sale, office_charge_percent=0)
        assert doc["refundable_amount"] == 500000.0

    async def test_reason_required(self, engine, paid_sale):
        with pytest.raises(ValidationError):
            await engine.cancellations.request_cancellation(paid_sale["_id"], " ", ADMIN["user_id"])

    async def test_one_open_cancellation_per_sale(self, engine, paid_sale):
        await request(engine, paid_sale)
        with pytest.raises(InvalidStateError):
            await request(engine, paid_sale)

    async def test_completed_sale_cannot_be_cancelled(self, engine, sale):
        await approved_receipt(engine, sale, 1_000_000)
        with pytest.raises(InvalidStateError):
            await request(engine, sale)


class TestDecision:
    """Approving or rejecting a pending cancellation"""

    async def test_approve_releases_plot(self, engine, rs_number, plot, paid_sale):
        received = []

        async def capture(payload):
            received.append(payload)

        engine.events.subscribe(CANCELLATION_APPROVED, capture)
        doc = await request(engine, paid_sale)
        doc = await engine.cancellations.approve(doc["_id"], HOF["user_id"], "Agreed with client")
        assert doc["status"] == CancellationStatus.APPROVED

        plot = await engine.land.get_plot(plot["_id"])
        assert plot["status"] == PlotStatus.AVAILABLE
        assert plot["area_bucket"] == AreaBucket.NONE
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert (rs["sold_area"], rs["allocated_area"], rs["remaining_area"]) == (0.0, 0.0, 100.0)

        sale = await engine.sales.get_sale(paid_sale["_id"])
        assert sale["status"] == SaleStatus.CANCELLED
        assert sale["cancelled_by"] == HOF["user_id"]
        assert received[0]["refundable_amount"] == 450000.0

    async def test_released_plot_can_be_resold(self, engine, plot, client_doc, paid_sale):
        doc = await request(engine, paid_sale)
        await engine.cancellations.approve(doc["_id"], HOF["user_id"])
        sale = await engine.sales.create_sale(client_doc["_id"], plot["_id"], 1_200_000, ADMIN["user_id"])
        assert sale["status"] == SaleStatus.ACTIVE

    async def test_reject_restores_sale(self, engine, plot, paid_sale):
        await engine.sales.put_on_hold(paid_sale["_id"], ADMIN["user_id"])
        doc = await request(engine, paid_sale)
        assert doc["prior_sale_status"] == SaleStatus.ON_HOLD

        with pytest.raises(ValidationError):
            await engine.cancellations.reject(doc["_id"], HOF["user_id"], "")
        doc = await engine.cancellations.reject(doc["_id"], HOF["user_id"], "Client changed mind")
        assert doc["status"] == CancellationStatus.REJECTED

        sale = await engine.sales.get_sale(paid_sale["_id"])
        assert sale["status"] == SaleStatus.ON_HOLD
        assert sale["cancellation_id"] is None
        plot = await engine.land.get_plot(plot["_id"])
        assert plot["status"] == PlotStatus.SOLD

    async def test_new_request_after_rejection(self, engine, paid_sale):
        doc = await request(engine, paid_sale)
        await engine.cancellations.reject(doc["_id"], HOF["user_id"], "Not agreed")
        again = await request(engine, paid_sale)
        assert again["status"] == CancellationStatus.PENDING

    async def test_decided_cancellation_is_final(self, engine, paid_sale):
        doc = await request(engine, paid_sale)
        await engine.cancellations.approve(doc["_id"], HOF["user_id"])
        with pytest.raises(InvalidStateError):
            await engine.cancellations.approve(doc["_id"], HOF["user_id"])
        with pytest.raises(InvalidStateError):
            await engine.cancellations.reject(doc["_id"], HOF["user_id"], "Too late")

    async def test_nothing_paid_means_nothing_to_refund(self, engine, sale):
        doc = await request(engine, sale)
        doc = await engine.cancellations.approve(doc["_id"], HOF["user_id"])
        assert doc["status"] == CancellationStatus.REFUNDED


class TestRefunds:
    """Paying the refundable amount back"""

    async def test_refund_must_wait_for_approval(self, engine, paid_sale):
        doc = await request(engine, paid_sale)
        with pytest.raises(InvalidStateError):
            await engine.cancellations.record_refund_payment(doc["_id"], 1000, ADMIN["user_id"])

    async def test_overrefund_refused(self, engine, paid_sale):
        doc = await request(engine, paid_sale)
        await engine.cancellations.approve(doc["_id"], HOF["user_id"])
        with pytest.raises(OverrefundError) as exc:
            await engine.cancellations.record_refund_payment(doc["_id"], 500000, ADMIN["user_id"])
        assert exc.value.remaining == 450000.0

        doc = await engine.cancellations.get_cancellation(doc["_id"])
        assert doc["refunded_amount"] == 0.0
        assert doc["refund_payments"] == []

    async def test_partial_then_full_refund(self, engine, paid_sale, bank_account):
        received = []

        async def capture(payload):
            received.append(payload)

        engine.events.subscribe(REFUND_RECORDED, capture)
        doc = await request(engine, paid_sale)
        await engine.cancellations.approve(doc["_id"], HOF["user_id"])

        doc = await engine.cancellations.record_refund_payment(
            doc["_id"], 40000, ADMIN["user_id"], account_type=BANK, account_id=bank_account["_id"]
        )
        assert doc["status"] == CancellationStatus.PARTIAL_REFUND
        assert doc["remaining_refund"] == 410000.0

        doc = await engine.cancellations.record_refund_payment(doc["_id"], 410000, ADMIN["user_id"], method="Cash")
        assert doc["status"] == CancellationStatus.REFUNDED
        assert doc["refunded_amount"] == 450000.0
        assert doc["remaining_refund"] == 0.0
        assert [p["amount"] for p in doc["refund_payments"]] == [40000.0, 410000.0]

        account = await engine.accounts.get_account(BANK, bank_account["_id"])
        assert account["current_balance"] == 10000.0
        assert [e["status"] for e in received] == [CancellationStatus.PARTIAL_REFUND, CancellationStatus.REFUNDED]

        with pytest.raises(InvalidStateError):
            await engine.cancellations.record_refund_payment(doc["_id"], 1, ADMIN["user_id"])

    async def test_unknown_payment_method(self, engine, paid_sale):
        doc = await request(engine, paid_sale)
        await engine.cancellations.approve(doc["_id"], HOF["user_id"])
        with pytest.raises(ValidationError):
            await engine.cancellations.record_refund_payment(doc["_id"], 10, ADMIN["user_id"], method="Gold")


class TestCancellationStats:
    """Refund totals"""

    async def test_rejected_requests_excluded_from_totals(self, engine, paid_sale):
        rejected = await request(engine, paid_sale)
        await engine.cancellations.reject(rejected["_id"], HOF["user_id"], "Not agreed")
        doc = await request(engine, paid_sale)
        await engine.cancellations.approve(doc["_id"], HOF["user_id"])
        await engine.cancellations.record_refund_payment(doc["_id"], 100000, ADMIN["user_id"])

        stats = await engine.cancellations.cancellation_stats()
        assert stats["total_cancellations"] == 2
        assert stats["by_status"][CancellationStatus.REJECTED] == 1
        assert stats["by_status"][CancellationStatus.PARTIAL_REFUND] == 1
        assert stats["total_refundable"] == 450000.0
        assert stats["total_refunded"] == 100000.0
        assert stats["total_office_charge"] == 50000.0
        assert stats["outstanding_refunds"] == 350000.0
