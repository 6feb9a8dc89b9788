"""
RS Number area accounting and plot lifecycle.
"""
import pytest

from engine.errors import InsufficientAreaError, InvalidStateError, ValidationError
from engine.land_allocator import AreaBucket, PlotStatus
from tests.conftest import ADMIN


def counters(rs):
    return rs["total_area"], rs["sold_area"], rs["allocated_area"], rs["remaining_area"]


class TestRSNumbers:
    """RS Number registration"""

    async def test_create_normalizes_and_fills_remaining(self, rs_number):
        assert rs_number["rs_number"] == "RS-101"
        assert counters(rs_number) == (100.0, 0.0, 0.0, 100.0)
        assert rs_number["version"] == 0

    async def test_duplicate_rs_number_rejected(self, engine, rs_number):
        with pytest.raises(ValidationError):
            await engine.land.create_rs_number(
                {"rs_number": " RS-101 ", "total_area": 10, "unit_type": "Katha"}, ADMIN["user_id"]
            )

    async def test_unknown_unit_type_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.land.create_rs_number(
                {"rs_number": "RS-9", "total_area": 10, "unit_type": "Hectare"}, ADMIN["user_id"]
            )

    async def test_search(self, engine, rs_number):
        items, total = await engine.land.list_rs_numbers(search="green")
        assert total == 1
        assert items[0]["_id"] == rs_number["_id"]


class TestPlotAllocation:
    """Carving plots out of an RS Number"""

    async def test_plot_consumes_allocated_area(self, engine, rs_number, plot):
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert counters(rs) == (100.0, 0.0, 30.0, 70.0)
        assert plot["area_bucket"] == AreaBucket.ALLOCATED
        assert plot["status"] == PlotStatus.AVAILABLE

    async def test_allocation_beyond_remaining_is_refused(self, engine, rs_number, plot):
        with pytest.raises(InsufficientAreaError) as exc:
            await engine.land.create_plot(rs_number["_id"], "P-2", 70.5, ADMIN["user_id"])
        assert exc.value.details["rs_number"] == "RS-101"

        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert counters(rs) == (100.0, 0.0, 30.0, 70.0)

    async def test_exact_remaining_can_be_allocated(self, engine, rs_number, plot):
        await engine.land.create_plot(rs_number["_id"], "P-2", 70, ADMIN["user_id"])
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert rs["remaining_area"] == 0.0

    async def test_duplicate_plot_number(self, engine, rs_number, plot):
        with pytest.raises(ValidationError):
            await engine.land.create_plot(rs_number["_id"], "P-1", 5, ADMIN["user_id"])

    async def test_plot_without_area_consumption(self, engine, rs_number):
        plot = await engine.land.create_plot(
            rs_number["_id"], "P-9", 5, ADMIN["user_id"], consume_area=False
        )
        assert plot["area_bucket"] == AreaBucket.NONE
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert rs["remaining_area"] == 100.0

    async def test_sold_plot_at_creation_needs_client(self, engine, rs_number):
        with pytest.raises(ValidationError):
            await engine.land.create_plot(
                rs_number["_id"], "P-3", 5, ADMIN["user_id"], status=PlotStatus.SOLD
            )

    async def test_sold_plot_at_creation_uses_sold_bucket(self, engine, rs_number, client_doc):
        plot = await engine.land.create_plot(
            rs_number["_id"], "P-3", 5, ADMIN["user_id"],
            status=PlotStatus.SOLD, client_id=client_doc["_id"]
        )
        assert plot["area_bucket"] == AreaBucket.SOLD
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert counters(rs) == (100.0, 5.0, 0.0, 95.0)


class TestPlotChanges:
    """Resizing, status changes, selling and releasing"""

    async def test_grow_and_shrink(self, engine, rs_number, plot):
        await engine.land.resize_plot(plot["_id"], 45, ADMIN["user_id"])
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert counters(rs) == (100.0, 0.0, 45.0, 55.0)

        await engine.land.resize_plot(plot["_id"], 20, ADMIN["user_id"])
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert counters(rs) == (100.0, 0.0, 20.0, 80.0)

    async def test_grow_beyond_remaining(self, engine, plot):
        with pytest.raises(InsufficientAreaError):
            await engine.land.resize_plot(plot["_id"], 101, ADMIN["user_id"])

    async def test_manual_status_cannot_be_sold(self, engine, plot):
        with pytest.raises(InvalidStateError):
            await engine.land.set_plot_status(plot["_id"], PlotStatus.SOLD, ADMIN["user_id"])

    async def test_reserve_then_block(self, engine, plot):
        reserved = await engine.land.set_plot_status(plot["_id"], PlotStatus.RESERVED, ADMIN["user_id"])
        assert reserved["reservation_date"] is not None
        blocked = await engine.land.set_plot_status(plot["_id"], PlotStatus.BLOCKED, ADMIN["user_id"])
        assert blocked["status"] == PlotStatus.BLOCKED
        assert blocked["version"] == 2

    async def test_mark_sold_then_release(self, engine, rs_number, plot, client_doc):
        sold = await engine.land.mark_sold(plot["_id"], client_doc["_id"], ADMIN["user_id"])
        assert sold["status"] == PlotStatus.SOLD
        assert sold["area_bucket"] == AreaBucket.SOLD
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert counters(rs) == (100.0, 30.0, 0.0, 70.0)

        released = await engine.land.release(plot["_id"], ADMIN["user_id"])
        assert released["status"] == PlotStatus.AVAILABLE
        assert released["area_bucket"] == AreaBucket.NONE
        assert released["client_id"] is None
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert counters(rs) == (100.0, 0.0, 0.0, 100.0)

    async def test_released_plot_takes_area_again_when_sold(self, engine, rs_number, plot, client_doc):
        await engine.land.mark_sold(plot["_id"], client_doc["_id"], ADMIN["user_id"])
        await engine.land.release(plot["_id"], ADMIN["user_id"])
        await engine.land.mark_sold(plot["_id"], client_doc["_id"], ADMIN["user_id"])
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert counters(rs) == (100.0, 30.0, 0.0, 70.0)

    async def test_sold_plot_cannot_be_deactivated(self, engine, plot, client_doc):
        await engine.land.mark_sold(plot["_id"], client_doc["_id"], ADMIN["user_id"])
        with pytest.raises(InvalidStateError):
            await engine.land.deactivate_plot(plot["_id"], ADMIN["user_id"])

    async def test_deactivate_returns_area(self, engine, rs_number, plot):
        await engine.land.deactivate_plot(plot["_id"], ADMIN["user_id"])
        rs = await engine.land.get_rs_number(rs_number["_id"])
        assert counters(rs) == (100.0, 0.0, 0.0, 100.0)
        await engine.land.deactivate_rs_number(rs_number["_id"], ADMIN["user_id"])

    async def test_rs_number_with_active_plots_stays_active(self, engine, rs_number, plot):
        with pytest.raises(InvalidStateError):
            await engine.land.deactivate_rs_number(rs_number["_id"], ADMIN["user_id"])


class TestAreaCorrection:
    """Correcting an RS Number's total area"""

    async def test_correction_recomputes_remaining(self, engine, rs_number, plot):
        rs = await engine.land.correct_total_area(rs_number["_id"], 120, ADMIN["user_id"], "Survey")
        assert counters(rs) == (120.0, 0.0, 30.0, 90.0)

    async def test_correction_below_used_area(self, engine, rs_number, plot):
        with pytest.raises(InsufficientAreaError):
            await engine.land.correct_total_area(rs_number["_id"], 29, ADMIN["user_id"])


class TestPlotStats:
    """Per-status plot summary"""

    async def test_stats_for_one_rs_number(self, engine, rs_number, plot):
        await engine.land.create_plot(rs_number["_id"], "P-2", 10, ADMIN["user_id"], status=PlotStatus.BLOCKED)
        stats = await engine.land.plot_stats(rs_number["_id"])
        assert stats["total_plots"] == 2
        assert stats["by_status"][PlotStatus.AVAILABLE] == {"count": 1, "area": 30.0}
        assert stats["by_status"][PlotStatus.BLOCKED] == {"count": 1, "area": 10.0}
        assert stats["rs_number"] == "RS-101"
        assert stats["remaining_area"] == 60.0
