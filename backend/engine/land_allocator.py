"""
LAND ALLOCATOR

Owns RS Numbers (registered land parcels) and the Plots carved out of them.

Each RS Number keeps three counters that always add up to its total area:

    sold_area + allocated_area + remaining_area == total_area

A Plot records in `area_bucket` which counter currently holds its area:
    allocated - carved out, not sold yet
    sold      - sold to a client
    none      - created without consuming area (or released / deactivated)

All operations on one RS Number hold the `rs:<id>` lock and write through
version-checked updates.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging
import re

from engine.documents import new_document, to_datetime, to_object_id
from engine.errors import (
    InsufficientAreaError, InvalidStateError, NotFoundError, ValidationError
)
from engine.financial_precision import (
    ZERO, area_exceeds, area_to_float, round_area, to_decimal
)
from engine.invariant_validator import FinancialInvariantValidator
from engine.state_machine import StateMachine
from engine.unit_of_work import UnitOfWork, UnitOfWorkContext
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)


class PlotStatus:
    AVAILABLE = "Available"
    RESERVED = "Reserved"
    SOLD = "Sold"
    BLOCKED = "Blocked"

    ALL = (AVAILABLE, RESERVED, SOLD, BLOCKED)


class AreaBucket:
    ALLOCATED = "allocated"
    SOLD = "sold"
    NONE = "none"


UNIT_TYPES = ("Acre", "Katha", "Sq Ft", "Decimal", "Bigha")


def build_plot_machine() -> StateMachine:
    machine = StateMachine("plot")
    manual = (PlotStatus.AVAILABLE, PlotStatus.RESERVED, PlotStatus.BLOCKED)
    for src in manual:
        for dst in manual:
            if src != dst:
                machine.register(src, dst, description="Manual status change")
    machine.register(PlotStatus.AVAILABLE, PlotStatus.SOLD, description="Sale")
    machine.register(PlotStatus.RESERVED, PlotStatus.SOLD, description="Sale of reserved plot")
    machine.register(PlotStatus.SOLD, PlotStatus.AVAILABLE, description="Release on cancellation")
    return machine


plot_machine = build_plot_machine()


# =============================================================================
# AREA LEDGER (pure)
# =============================================================================

@dataclass
class AreaLedger:
    """The three area counters of one RS Number, as Decimals."""

    total: Decimal
    sold: Decimal
    allocated: Decimal
    remaining: Decimal

    @classmethod
    def from_doc(cls, rs: Dict[str, Any]) -> "AreaLedger":
        return cls(
            total=to_decimal(rs["total_area"]),
            sold=to_decimal(rs.get("sold_area", 0)),
            allocated=to_decimal(rs.get("allocated_area", 0)),
            remaining=to_decimal(rs.get("remaining_area", 0)),
        )

    @property
    def used(self) -> Decimal:
        return self.sold + self.allocated

    def _get(self, bucket: str) -> Decimal:
        return self.sold if bucket == AreaBucket.SOLD else self.allocated

    def _set(self, bucket: str, value: Decimal) -> None:
        if bucket == AreaBucket.SOLD:
            self.sold = round_area(value)
        elif bucket == AreaBucket.ALLOCATED:
            self.allocated = round_area(value)
        else:
            raise ValueError(f"Not a consuming bucket: {bucket}")

    def take(self, bucket: str, area) -> None:
        """Move `area` from remaining into `bucket`."""
        area = round_area(area)
        if area_exceeds(area, self.remaining):
            raise InsufficientAreaError(area, self.remaining)
        self.remaining = round_area(self.remaining - area)
        self._set(bucket, self._get(bucket) + area)

    def give_back(self, bucket: str, area) -> None:
        """Return `area` held by `bucket` to remaining."""
        area = round_area(area)
        self._set(bucket, self._get(bucket) - area)
        self.remaining = round_area(self.remaining + area)

    def move(self, src: str, dst: str, area) -> None:
        area = round_area(area)
        self._set(src, self._get(src) - area)
        self._set(dst, self._get(dst) + area)

    def resize(self, bucket: str, delta) -> None:
        """Grow (delta > 0, from remaining) or shrink `bucket`."""
        delta = round_area(delta)
        if delta > ZERO and area_exceeds(delta, self.remaining):
            raise InsufficientAreaError(delta, self.remaining)
        self._set(bucket, self._get(bucket) + delta)
        self.remaining = round_area(self.remaining - delta)

    def correct_total(self, new_total) -> None:
        new_total = round_area(new_total)
        if area_exceeds(self.used, new_total):
            raise InsufficientAreaError(
                new_total, self.used,
                message=(
                    f"Total area {area_to_float(new_total)} is below the area already "
                    f"sold or allocated ({area_to_float(self.used)})"
                )
            )
        self.total = new_total
        self.remaining = round_area(new_total - self.used)

    def to_fields(self) -> Dict[str, float]:
        return {
            "total_area": area_to_float(self.total),
            "sold_area": area_to_float(self.sold),
            "allocated_area": area_to_float(self.allocated),
            "remaining_area": area_to_float(self.remaining),
        }


def normalize_rs_number(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "").strip()).upper()


def rs_lock_key(rs_id) -> str:
    return f"rs:{rs_id}"


def plot_lock_key(plot_id) -> str:
    return f"plot:{plot_id}"


# =============================================================================
# LAND ALLOCATOR
# =============================================================================

class LandAllocator:

    def __init__(
        self,
        uow: UnitOfWork,
        version_lock: VersionLockEngine,
        validator: FinancialInvariantValidator
    ):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock
        self.validator = validator

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_rs_number(self, rs_id, session=None) -> Dict[str, Any]:
        oid = to_object_id(rs_id, "RS_NUMBER")
        rs = await self.db.rs_numbers.find_one({"_id": oid}, session=session)
        if not rs:
            raise NotFoundError("RS_NUMBER", rs_id)
        return rs

    async def get_plot(self, plot_id, session=None) -> Dict[str, Any]:
        oid = to_object_id(plot_id, "PLOT")
        plot = await self.db.plots.find_one({"_id": oid}, session=session)
        if not plot:
            raise NotFoundError("PLOT", plot_id)
        return plot

    async def list_rs_numbers(
        self,
        search: Optional[str] = None,
        active_only: bool = True,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {}
        if active_only:
            query["is_active"] = True
        if search:
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query["$or"] = [{"rs_number": pattern}, {"project_name": pattern}, {"location": pattern}]

        total = await self.db.rs_numbers.count_documents(query)
        cursor = self.db.rs_numbers.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return await cursor.to_list(length=limit), total

    async def list_plots(
        self,
        rs_number_id=None,
        status: Optional[str] = None,
        client_id=None,
        active_only: bool = True
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if active_only:
            query["is_active"] = True
        if rs_number_id:
            query["rs_number_id"] = to_object_id(rs_number_id, "RS_NUMBER")
        if status:
            query["status"] = status
        if client_id:
            query["client_id"] = to_object_id(client_id, "CLIENT")
        return await self.db.plots.find(query).sort("plot_number", 1).to_list(length=None)

    async def plot_stats(self, rs_number_id=None) -> Dict[str, Any]:
        """Plot counts and areas per status, for one RS Number or all of them."""
        plots = await self.list_plots(rs_number_id=rs_number_id)
        by_status = {status: {"count": 0, "area": ZERO} for status in PlotStatus.ALL}
        for plot in plots:
            bucket = by_status.setdefault(plot["status"], {"count": 0, "area": ZERO})
            bucket["count"] += 1
            bucket["area"] += to_decimal(plot["area"])

        stats: Dict[str, Any] = {
            "total_plots": len(plots),
            "by_status": {
                status: {"count": v["count"], "area": area_to_float(v["area"])}
                for status, v in by_status.items()
            },
        }
        if rs_number_id:
            rs = await self.get_rs_number(rs_number_id)
            stats["rs_number"] = rs["rs_number"]
            stats.update(AreaLedger.from_doc(rs).to_fields())
        return stats

    # =========================================================================
    # RS NUMBERS
    # =========================================================================

    async def create_rs_number(self, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        rs_number = normalize_rs_number(data.get("rs_number"))
        if not rs_number:
            raise ValidationError("RS Number is required")
        total = round_area(data.get("total_area"))
        if total <= ZERO:
            raise ValidationError("Total area must be greater than 0", {"total_area": area_to_float(total)})
        unit_type = data.get("unit_type")
        if unit_type not in UNIT_TYPES:
            raise ValidationError(f"Unit type must be one of {UNIT_TYPES}", {"unit_type": unit_type})

        async with self.uow.begin(f"rs-number:{rs_number}") as ctx:
            existing = await ctx.db.rs_numbers.find_one({"rs_number": rs_number}, session=ctx.session)
            if existing:
                raise ValidationError(f"RS Number {rs_number} already exists", {"rs_number": rs_number})

            doc = new_document({
                "rs_number": rs_number,
                "project_name": data.get("project_name"),
                "location": data.get("location"),
                "unit_type": unit_type,
                "total_area": area_to_float(total),
                "sold_area": 0.0,
                "allocated_area": 0.0,
                "remaining_area": area_to_float(total),
                "description": data.get("description"),
            }, user_id)
            await ctx.insert("rs_numbers", doc)
            ctx.audit("RS_NUMBER", doc["_id"], "CREATE", user_id,
                      new_value={"rs_number": rs_number, "total_area": doc["total_area"]},
                      module_name="LAND")

        logger.info(f"[LAND] Created RS Number {rs_number} with {doc['total_area']} {unit_type}")
        return doc

    async def update_rs_number(self, rs_id, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        """Descriptive fields only; area goes through correct_total_area."""
        allowed = {k: data[k] for k in ("project_name", "location", "description") if k in data}
        if not allowed:
            raise ValidationError("Nothing to update")

        rs = await self.get_rs_number(rs_id)
        async with self.uow.begin(rs_lock_key(rs["_id"])) as ctx:
            rs = await self.get_rs_number(rs_id, session=ctx.session)
            old = {k: rs.get(k) for k in allowed}
            await self.version_lock.apply("RS_NUMBER", rs, allowed, session=ctx.session)
            ctx.audit("RS_NUMBER", rs["_id"], "UPDATE", user_id, old, allowed, module_name="LAND")
        return rs

    async def correct_total_area(self, rs_id, new_total, user_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        new_total = round_area(new_total)
        if new_total <= ZERO:
            raise ValidationError("Total area must be greater than 0")

        rs = await self.get_rs_number(rs_id)
        async with self.uow.begin(rs_lock_key(rs["_id"])) as ctx:
            rs = await self.get_rs_number(rs_id, session=ctx.session)
            ledger = AreaLedger.from_doc(rs)
            old_total = area_to_float(ledger.total)
            try:
                ledger.correct_total(new_total)
            except InsufficientAreaError as e:
                e.details["rs_number"] = rs["rs_number"]
                raise

            self.validator.validate_area_counters(
                rs["rs_number"], ledger.total, ledger.sold, ledger.allocated, ledger.remaining
            )
            await self.version_lock.apply("RS_NUMBER", rs, ledger.to_fields(), session=ctx.session)
            ctx.audit("RS_NUMBER", rs["_id"], "AREA_CORRECTION", user_id,
                      {"total_area": old_total},
                      {"total_area": rs["total_area"], "reason": reason},
                      module_name="LAND")

        logger.info(f"[LAND] Corrected total area of {rs['rs_number']}: {old_total} -> {rs['total_area']}")
        return rs

    async def deactivate_rs_number(self, rs_id, user_id: str) -> Dict[str, Any]:
        rs = await self.get_rs_number(rs_id)
        async with self.uow.begin(rs_lock_key(rs["_id"])) as ctx:
            rs = await self.get_rs_number(rs_id, session=ctx.session)
            active_plots = await ctx.db.plots.count_documents(
                {"rs_number_id": rs["_id"], "is_active": True}, session=ctx.session
            )
            if active_plots:
                raise InvalidStateError(
                    f"Cannot deactivate RS Number {rs['rs_number']} with {active_plots} active plot(s)",
                    {"active_plots": active_plots}
                )
            await self.version_lock.apply("RS_NUMBER", rs, {"is_active": False}, session=ctx.session)
            ctx.audit("RS_NUMBER", rs["_id"], "DEACTIVATE", user_id, module_name="LAND")
        return rs

    # =========================================================================
    # PLOTS
    # =========================================================================

    async def create_plot(
        self,
        rs_id,
        plot_number: str,
        area,
        user_id: str,
        status: str = PlotStatus.AVAILABLE,
        consume_area: bool = True,
        client_id=None,
        sale_date: Optional[datetime] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        plot_number = (plot_number or "").strip()
        if not plot_number:
            raise ValidationError("Plot number is required")
        area = round_area(area)
        if area <= ZERO:
            raise ValidationError("Plot area must be greater than 0", {"area": area_to_float(area)})
        if status not in PlotStatus.ALL:
            raise ValidationError(f"Plot status must be one of {PlotStatus.ALL}")
        if status == PlotStatus.SOLD:
            if not client_id:
                raise ValidationError("Client is required for a Sold plot")
            if not consume_area:
                raise ValidationError("A Sold plot must consume area")

        rs = await self.get_rs_number(rs_id)
        async with self.uow.begin(rs_lock_key(rs["_id"])) as ctx:
            rs = await self.get_rs_number(rs_id, session=ctx.session)
            if not rs.get("is_active", True):
                raise InvalidStateError(f"RS Number {rs['rs_number']} is inactive")

            duplicate = await ctx.db.plots.find_one(
                {"rs_number_id": rs["_id"], "plot_number": plot_number, "is_active": True},
                session=ctx.session
            )
            if duplicate:
                raise ValidationError(
                    f"Plot {plot_number} already exists under RS Number {rs['rs_number']}",
                    {"plot_number": plot_number}
                )

            bucket = AreaBucket.NONE
            if consume_area:
                bucket = AreaBucket.SOLD if status == PlotStatus.SOLD else AreaBucket.ALLOCATED
                ledger = AreaLedger.from_doc(rs)
                try:
                    ledger.take(bucket, area)
                except InsufficientAreaError as e:
                    e.details["rs_number"] = rs["rs_number"]
                    raise
                self.validator.validate_area_counters(
                    rs["rs_number"], ledger.total, ledger.sold, ledger.allocated, ledger.remaining
                )
                await self.version_lock.apply("RS_NUMBER", rs, ledger.to_fields(), session=ctx.session)

            now = datetime.utcnow()
            plot = new_document({
                "rs_number_id": rs["_id"],
                "plot_number": plot_number,
                "area": area_to_float(area),
                "status": status,
                "area_bucket": bucket,
                "client_id": to_object_id(client_id, "CLIENT") if client_id else None,
                "sale_date": to_datetime(sale_date) or (now if status == PlotStatus.SOLD else None),
                "reservation_date": now if status == PlotStatus.RESERVED else None,
                "notes": notes,
            }, user_id)
            await ctx.insert("plots", plot)
            ctx.audit("PLOT", plot["_id"], "CREATE", user_id,
                      new_value={"plot_number": plot_number, "area": plot["area"],
                                 "status": status, "area_bucket": bucket},
                      module_name="LAND")

        logger.info(
            f"[LAND] Created plot {plot_number} ({plot['area']}) under {rs['rs_number']}, "
            f"bucket={bucket}, remaining={rs['remaining_area']}"
        )
        return plot

    async def resize_plot(self, plot_id, new_area, user_id: str) -> Dict[str, Any]:
        new_area = round_area(new_area)
        if new_area <= ZERO:
            raise ValidationError("Plot area must be greater than 0")

        plot = await self.get_plot(plot_id)
        async with self.uow.begin(rs_lock_key(plot["rs_number_id"]), plot_lock_key(plot["_id"])) as ctx:
            plot = await self._active_plot(plot_id, ctx)
            rs = await self.get_rs_number(plot["rs_number_id"], session=ctx.session)
            old_area = to_decimal(plot["area"])
            delta = new_area - old_area

            if plot["area_bucket"] != AreaBucket.NONE and delta != ZERO:
                ledger = AreaLedger.from_doc(rs)
                try:
                    ledger.resize(plot["area_bucket"], delta)
                except InsufficientAreaError as e:
                    e.details["rs_number"] = rs["rs_number"]
                    raise
                self.validator.validate_area_counters(
                    rs["rs_number"], ledger.total, ledger.sold, ledger.allocated, ledger.remaining
                )
                await self.version_lock.apply("RS_NUMBER", rs, ledger.to_fields(), session=ctx.session)

            await self.version_lock.apply("PLOT", plot, {"area": area_to_float(new_area)}, session=ctx.session)
            ctx.audit("PLOT", plot["_id"], "RESIZE", user_id,
                      {"area": area_to_float(old_area)}, {"area": plot["area"]}, module_name="LAND")

        logger.info(f"[LAND] Resized plot {plot['plot_number']}: {area_to_float(old_area)} -> {plot['area']}")
        return plot

    async def set_plot_status(self, plot_id, status: str, user_id: str) -> Dict[str, Any]:
        """Manual Available / Reserved / Blocked changes. Sold is owned by sales."""
        if status not in PlotStatus.ALL:
            raise ValidationError(f"Plot status must be one of {PlotStatus.ALL}")
        if status == PlotStatus.SOLD:
            raise InvalidStateError("A plot can only become Sold through a sale")

        plot = await self.get_plot(plot_id)
        async with self.uow.begin(plot_lock_key(plot["_id"])) as ctx:
            plot = await self._active_plot(plot_id, ctx)
            old_status = plot["status"]
            if old_status == PlotStatus.SOLD:
                raise InvalidStateError(
                    f"Plot {plot['plot_number']} is Sold; cancel the sale to release it"
                )
            plot_machine.validate_transition(old_status, status)

            fields: Dict[str, Any] = {"status": status}
            fields["reservation_date"] = datetime.utcnow() if status == PlotStatus.RESERVED else None
            await self.version_lock.apply(
                "PLOT", plot, fields, session=ctx.session, expected={"status": old_status}
            )
            ctx.audit("PLOT", plot["_id"], "STATUS_CHANGE", user_id,
                      {"status": old_status}, {"status": status}, module_name="LAND")
        return plot

    async def deactivate_plot(self, plot_id, user_id: str) -> Dict[str, Any]:
        plot = await self.get_plot(plot_id)
        async with self.uow.begin(rs_lock_key(plot["rs_number_id"]), plot_lock_key(plot["_id"])) as ctx:
            plot = await self._active_plot(plot_id, ctx)
            if plot["status"] == PlotStatus.SOLD:
                raise InvalidStateError(f"Cannot deactivate Sold plot {plot['plot_number']}")

            if plot["area_bucket"] != AreaBucket.NONE:
                rs = await self.get_rs_number(plot["rs_number_id"], session=ctx.session)
                ledger = AreaLedger.from_doc(rs)
                ledger.give_back(plot["area_bucket"], plot["area"])
                self.validator.validate_area_counters(
                    rs["rs_number"], ledger.total, ledger.sold, ledger.allocated, ledger.remaining
                )
                await self.version_lock.apply("RS_NUMBER", rs, ledger.to_fields(), session=ctx.session)

            await self.version_lock.apply(
                "PLOT", plot,
                {"is_active": False, "area_bucket": AreaBucket.NONE},
                session=ctx.session
            )
            ctx.audit("PLOT", plot["_id"], "DEACTIVATE", user_id, module_name="LAND")
        return plot

    async def mark_sold(self, plot_id, client_id, user_id: str, sale_date: Optional[datetime] = None) -> Dict[str, Any]:
        plot = await self.get_plot(plot_id)
        async with self.uow.begin(rs_lock_key(plot["rs_number_id"]), plot_lock_key(plot["_id"])) as ctx:
            plot = await self._active_plot(plot_id, ctx)
            client = await ctx.db.clients.find_one(
                {"_id": to_object_id(client_id, "CLIENT"), "is_active": True}, session=ctx.session
            )
            if not client:
                raise NotFoundError("CLIENT", client_id)
            await self.apply_mark_sold(ctx, plot, client["_id"], sale_date, user_id)
        return plot

    async def release(self, plot_id, user_id: str) -> Dict[str, Any]:
        plot = await self.get_plot(plot_id)
        async with self.uow.begin(rs_lock_key(plot["rs_number_id"]), plot_lock_key(plot["_id"])) as ctx:
            plot = await self._active_plot(plot_id, ctx)
            await self.apply_release(ctx, plot, user_id)
        return plot

    # =========================================================================
    # IN-TRANSACTION STEPS (caller holds rs + plot locks)
    # =========================================================================

    async def apply_mark_sold(
        self,
        ctx: UnitOfWorkContext,
        plot: Dict[str, Any],
        client_id,
        sale_date: Optional[datetime],
        user_id: str
    ) -> Dict[str, Any]:
        old_status = plot["status"]
        if old_status not in (PlotStatus.AVAILABLE, PlotStatus.RESERVED):
            raise InvalidStateError(
                f"Plot {plot['plot_number']} is {old_status}; only Available or Reserved plots can be sold",
                {"status": old_status}
            )
        plot_machine.validate_transition(old_status, PlotStatus.SOLD)

        rs = await self.get_rs_number(plot["rs_number_id"], session=ctx.session)
        ledger = AreaLedger.from_doc(rs)
        if plot["area_bucket"] == AreaBucket.ALLOCATED:
            ledger.move(AreaBucket.ALLOCATED, AreaBucket.SOLD, plot["area"])
        elif plot["area_bucket"] == AreaBucket.NONE:
            try:
                ledger.take(AreaBucket.SOLD, plot["area"])
            except InsufficientAreaError as e:
                e.details["rs_number"] = rs["rs_number"]
                raise
        self.validator.validate_area_counters(
            rs["rs_number"], ledger.total, ledger.sold, ledger.allocated, ledger.remaining
        )
        await self.version_lock.apply("RS_NUMBER", rs, ledger.to_fields(), session=ctx.session)

        await self.version_lock.apply(
            "PLOT", plot,
            {
                "status": PlotStatus.SOLD,
                "area_bucket": AreaBucket.SOLD,
                "client_id": to_object_id(client_id, "CLIENT"),
                "sale_date": to_datetime(sale_date) or datetime.utcnow(),
            },
            session=ctx.session,
            expected={"status": old_status}
        )
        ctx.audit("PLOT", plot["_id"], "MARK_SOLD", user_id,
                  {"status": old_status}, {"status": PlotStatus.SOLD, "client_id": str(client_id)},
                  module_name="LAND")
        logger.info(f"[LAND] Plot {plot['plot_number']} sold; {rs['rs_number']} sold_area={rs['sold_area']}")
        return plot

    async def apply_release(self, ctx: UnitOfWorkContext, plot: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        old_status = plot["status"]
        if old_status != PlotStatus.AVAILABLE:
            plot_machine.validate_transition(old_status, PlotStatus.AVAILABLE)

        if plot["area_bucket"] != AreaBucket.NONE:
            rs = await self.get_rs_number(plot["rs_number_id"], session=ctx.session)
            ledger = AreaLedger.from_doc(rs)
            ledger.give_back(plot["area_bucket"], plot["area"])
            self.validator.validate_area_counters(
                rs["rs_number"], ledger.total, ledger.sold, ledger.allocated, ledger.remaining
            )
            await self.version_lock.apply("RS_NUMBER", rs, ledger.to_fields(), session=ctx.session)

        await self.version_lock.apply(
            "PLOT", plot,
            {
                "status": PlotStatus.AVAILABLE,
                "area_bucket": AreaBucket.NONE,
                "client_id": None,
                "sale_date": None,
                "reservation_date": None,
            },
            session=ctx.session,
            expected={"status": old_status}
        )
        ctx.audit("PLOT", plot["_id"], "RELEASE", user_id,
                  {"status": old_status}, {"status": PlotStatus.AVAILABLE}, module_name="LAND")
        logger.info(f"[LAND] Released plot {plot['plot_number']} back to remaining area")
        return plot

    async def _active_plot(self, plot_id, ctx: UnitOfWorkContext) -> Dict[str, Any]:
        plot = await self.get_plot(plot_id, session=ctx.session)
        if not plot.get("is_active", True):
            raise InvalidStateError(f"Plot {plot['plot_number']} is inactive")
        return plot
