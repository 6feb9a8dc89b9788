# Land & Client API Endpoints
#
# RS Numbers, Plots and Clients. Area counters only ever move through the
# LandAllocator; there is no endpoint that writes them directly.

from fastapi import APIRouter, Depends, Query, status
from typing import Optional
import logging

from auth import get_current_user
from engine.documents import serialize_doc
from engine.sales_engine import SalesEngine
from models import (
    RSNumberCreate, RSNumberUpdate, AreaCorrection,
    PlotCreate, PlotResize, PlotStatusUpdate,
    ClientCreate, ClientUpdate
)
from permissions import PermissionChecker, FINANCE_WRITERS, ADMIN_ONLY

logger = logging.getLogger(__name__)


def create_land_routes(engine: SalesEngine, permission_checker: PermissionChecker) -> APIRouter:
    """Create land and client API router"""

    router = APIRouter(prefix="/api", tags=["Land"])
    land = engine.land
    clients = engine.clients

    # ============================================
    # RS NUMBER ENDPOINTS
    # ============================================

    @router.post("/rs-numbers", status_code=status.HTTP_201_CREATED)
    async def create_rs_number(
        data: RSNumberCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        rs = await land.create_rs_number(data.model_dump(), current_user["user_id"])
        return serialize_doc(rs)

    @router.get("/rs-numbers")
    async def list_rs_numbers(
        search: Optional[str] = None,
        active_only: bool = True,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
        current_user: dict = Depends(get_current_user)
    ):
        items, total = await land.list_rs_numbers(search, active_only, page, limit)
        return {"items": [serialize_doc(i) for i in items], "total": total, "page": page, "limit": limit}

    @router.get("/rs-numbers/{rs_id}")
    async def get_rs_number(rs_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await land.get_rs_number(rs_id))

    @router.put("/rs-numbers/{rs_id}")
    async def update_rs_number(
        rs_id: str,
        data: RSNumberUpdate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        rs = await land.update_rs_number(rs_id, data.model_dump(exclude_none=True), current_user["user_id"])
        return serialize_doc(rs)

    @router.post("/rs-numbers/{rs_id}/correct-area")
    async def correct_total_area(
        rs_id: str,
        data: AreaCorrection,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        """Explicit total area correction (Admin only)"""
        rs = await land.correct_total_area(rs_id, data.total_area, current_user["user_id"], data.reason)
        return serialize_doc(rs)

    @router.delete("/rs-numbers/{rs_id}")
    async def deactivate_rs_number(
        rs_id: str,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        rs = await land.deactivate_rs_number(rs_id, current_user["user_id"])
        return serialize_doc(rs)

    @router.get("/rs-numbers/{rs_id}/stats")
    async def rs_number_stats(rs_id: str, current_user: dict = Depends(get_current_user)):
        return await land.plot_stats(rs_id)

    # ============================================
    # PLOT ENDPOINTS
    # ============================================

    @router.post("/plots", status_code=status.HTTP_201_CREATED)
    async def create_plot(
        data: PlotCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        plot = await land.create_plot(
            data.rs_number_id, data.plot_number, data.area, current_user["user_id"],
            status=data.status, consume_area=data.consume_area, client_id=data.client_id,
            sale_date=data.sale_date, notes=data.notes
        )
        return serialize_doc(plot)

    @router.get("/plots")
    async def list_plots(
        rs_number_id: Optional[str] = None,
        plot_status: Optional[str] = Query(None, alias="status"),
        client_id: Optional[str] = None,
        current_user: dict = Depends(get_current_user)
    ):
        plots = await land.list_plots(rs_number_id, plot_status, client_id)
        return [serialize_doc(p) for p in plots]

    @router.get("/plots/stats")
    async def plot_stats(current_user: dict = Depends(get_current_user)):
        return await land.plot_stats()

    @router.get("/plots/{plot_id}")
    async def get_plot(plot_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await land.get_plot(plot_id))

    @router.post("/plots/{plot_id}/resize")
    async def resize_plot(
        plot_id: str,
        data: PlotResize,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        plot = await land.resize_plot(plot_id, data.area, current_user["user_id"])
        return serialize_doc(plot)

    @router.post("/plots/{plot_id}/status")
    async def set_plot_status(
        plot_id: str,
        data: PlotStatusUpdate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        plot = await land.set_plot_status(plot_id, data.status, current_user["user_id"])
        return serialize_doc(plot)

    @router.delete("/plots/{plot_id}")
    async def deactivate_plot(
        plot_id: str,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        plot = await land.deactivate_plot(plot_id, current_user["user_id"])
        return serialize_doc(plot)

    # ============================================
    # CLIENT ENDPOINTS
    # ============================================

    @router.post("/clients", status_code=status.HTTP_201_CREATED)
    async def create_client(
        data: ClientCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        client = await clients.create_client(data.model_dump(), current_user["user_id"])
        return serialize_doc(client)

    @router.get("/clients")
    async def list_clients(
        search: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
        current_user: dict = Depends(get_current_user)
    ):
        items, total = await clients.list_clients(search, True, page, limit)
        return {"items": [serialize_doc(i) for i in items], "total": total, "page": page, "limit": limit}

    @router.get("/clients/{client_id}")
    async def get_client(client_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await clients.get_client(client_id))

    @router.put("/clients/{client_id}")
    async def update_client(
        client_id: str,
        data: ClientUpdate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        client = await clients.update_client(client_id, data.model_dump(exclude_none=True), current_user["user_id"])
        return serialize_doc(client)

    @router.delete("/clients/{client_id}")
    async def deactivate_client(
        client_id: str,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        client = await clients.deactivate_client(client_id, current_user["user_id"])
        return serialize_doc(client)

    return router
