# Sale & Cancellation API Endpoints
#
# Sales are never deleted. Cancellation goes through request -> approve /
# reject, followed by refund payments once approved. Refunds can also be
# scheduled as instalments that pass the receipt approval gates before payment.

from fastapi import APIRouter, Depends, Query, status
from datetime import datetime
from typing import Optional
import logging

from auth import get_current_user
from engine.documents import serialize_doc
from engine.sales_engine import SalesEngine
from models import (
    SaleCreate, SaleStatusChange,
    CancellationCreate, CancellationReject, RefundPaymentCreate, ApprovalAction,
    RefundScheduleCreate, RefundPay, InstallmentScheduleCreate, InstallmentRefresh
)
from permissions import PermissionChecker, FINANCE_WRITERS, APPROVERS, ADMIN_ONLY

logger = logging.getLogger(__name__)


def create_sale_routes(engine: SalesEngine, permission_checker: PermissionChecker) -> APIRouter:
    """Create sale and cancellation API router"""

    router = APIRouter(prefix="/api", tags=["Sales"])
    sales = engine.sales
    cancellations = engine.cancellations

    # ============================================
    # SALE ENDPOINTS
    # ============================================

    @router.post("/sales", status_code=status.HTTP_201_CREATED)
    async def create_sale(
        data: SaleCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        """Create sale; the plot is marked Sold in the same unit of work"""
        stages = [s.model_dump() for s in data.stages] if data.stages else None
        sale = await sales.create_sale(
            data.client_id, data.plot_id, data.total_price, current_user["user_id"],
            sale_date=data.sale_date, stages=stages, notes=data.notes
        )
        return serialize_doc(sale)

    @router.get("/sales")
    async def list_sales(
        sale_status: Optional[str] = Query(None, alias="status"),
        client_id: Optional[str] = None,
        plot_id: Optional[str] = None,
        search: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
        current_user: dict = Depends(get_current_user)
    ):
        items, total = await sales.list_sales(sale_status, client_id, plot_id, search, page, limit)
        return {"items": [serialize_doc(i) for i in items], "total": total, "page": page, "limit": limit}

    @router.get("/sales/stats")
    async def sale_stats(current_user: dict = Depends(get_current_user)):
        return await sales.sale_stats()

    @router.get("/sales/{sale_id}")
    async def get_sale(sale_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await sales.get_sale(sale_id))

    @router.post("/sales/{sale_id}/hold")
    async def put_on_hold(
        sale_id: str,
        data: SaleStatusChange,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        sale = await sales.put_on_hold(sale_id, current_user["user_id"], data.reason)
        return serialize_doc(sale)

    @router.post("/sales/{sale_id}/resume")
    async def resume(
        sale_id: str,
        data: SaleStatusChange,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        sale = await sales.resume(sale_id, current_user["user_id"], data.reason)
        return serialize_doc(sale)

    @router.delete("/sales/{sale_id}")
    async def delete_sale(sale_id: str, current_user: dict = Depends(get_current_user)):
        """Sales are financial records; hard delete is always refused"""
        await sales.get_sale(sale_id)
        engine.version_lock.block_hard_delete("SALE", sale_id)

    @router.get("/installments/overdue")
    async def overdue_installments(
        as_of: Optional[datetime] = None,
        reminder_days: Optional[int] = Query(None, ge=0),
        current_user: dict = Depends(get_current_user)
    ):
        """Overdue and upcoming installment stages for the reminder scheduler"""
        result = await sales.overdue_installments(as_of, reminder_days)
        return {
            "as_of": result["as_of"].isoformat(),
            "reminder_days": result["reminder_days"],
            "overdue": [serialize_doc(r) for r in result["overdue"]],
            "upcoming": [serialize_doc(r) for r in result["upcoming"]],
        }

    # ============================================
    # CANCELLATION ENDPOINTS
    # ============================================

    @router.post("/cancellations", status_code=status.HTTP_201_CREATED)
    async def request_cancellation(
        data: CancellationCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        cancellation = await cancellations.request_cancellation(
            data.sale_id, data.reason, current_user["user_id"],
            cancellation_date=data.cancellation_date,
            office_charge_percent=data.office_charge_percent,
            other_deductions=data.other_deductions,
            notes=data.notes
        )
        return serialize_doc(cancellation)

    @router.get("/cancellations")
    async def list_cancellations(
        cancellation_status: Optional[str] = Query(None, alias="status"),
        sale_id: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
        current_user: dict = Depends(get_current_user)
    ):
        items, total = await cancellations.list_cancellations(cancellation_status, sale_id, page, limit)
        return {"items": [serialize_doc(i) for i in items], "total": total, "page": page, "limit": limit}

    @router.get("/cancellations/stats")
    async def cancellation_stats(
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        current_user: dict = Depends(get_current_user)
    ):
        return await cancellations.cancellation_stats(from_date, to_date)

    @router.get("/cancellations/{cancellation_id}")
    async def get_cancellation(cancellation_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await cancellations.get_cancellation(cancellation_id))

    @router.post("/cancellations/{cancellation_id}/approve")
    async def approve_cancellation(
        cancellation_id: str,
        data: ApprovalAction,
        current_user: dict = Depends(permission_checker.require(*APPROVERS))
    ):
        cancellation = await cancellations.approve(cancellation_id, current_user["user_id"], data.remarks)
        return serialize_doc(cancellation)

    @router.post("/cancellations/{cancellation_id}/reject")
    async def reject_cancellation(
        cancellation_id: str,
        data: CancellationReject,
        current_user: dict = Depends(permission_checker.require(*APPROVERS))
    ):
        cancellation = await cancellations.reject(cancellation_id, current_user["user_id"], data.reason)
        return serialize_doc(cancellation)

    @router.post("/cancellations/{cancellation_id}/refunds")
    async def record_refund_payment(
        cancellation_id: str,
        data: RefundPaymentCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        cancellation = await cancellations.record_refund_payment(
            cancellation_id, data.amount, current_user["user_id"],
            method=data.method, payment_date=data.payment_date,
            account_type=data.account_type, account_id=data.account_id,
            reference=data.reference, notes=data.notes
        )
        return serialize_doc(cancellation)

    @router.delete("/cancellations/{cancellation_id}")
    async def delete_cancellation(
        cancellation_id: str,
        current_user: dict = Depends(permission_checker.require(*ADMIN_ONLY))
    ):
        await cancellations.get_cancellation(cancellation_id)
        engine.version_lock.block_hard_delete("CANCELLATION", cancellation_id)

    # ============================================
    # REFUND INSTALMENT ENDPOINTS
    # ============================================

    @router.post("/refunds/schedule", status_code=status.HTTP_201_CREATED)
    async def schedule_refunds(
        data: RefundScheduleCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        """Split the unscheduled refund of a cancellation into Draft instalments"""
        refunds = await engine.refunds.create_schedule(
            data.cancellation_id, data.number_of_installments, current_user,
            start_date=data.start_date, notes=data.notes
        )
        return [serialize_doc(r) for r in refunds]

    @router.get("/refunds")
    async def list_refunds(
        cancellation_id: Optional[str] = None,
        refund_status: Optional[str] = Query(None, alias="status"),
        approval_status: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
        current_user: dict = Depends(get_current_user)
    ):
        items, total = await engine.refunds.list_refunds(
            cancellation_id, refund_status, approval_status, page, limit
        )
        return {"items": [serialize_doc(i) for i in items], "total": total, "page": page, "limit": limit}

    @router.get("/refunds/approval-queue")
    async def refund_approval_queue(current_user: dict = Depends(get_current_user)):
        return [serialize_doc(r) for r in await engine.refunds.approval_queue(current_user)]

    @router.get("/refunds/stats")
    async def refund_stats(
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        current_user: dict = Depends(get_current_user)
    ):
        return await engine.refunds.refund_stats(from_date, to_date)

    @router.get("/refunds/{refund_id}")
    async def get_refund(refund_id: str, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await engine.refunds.get_refund(refund_id))

    @router.delete("/refunds/{refund_id}")
    async def delete_refund(
        refund_id: str,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        """Soft delete of a Draft or Rejected refund instalment"""
        return serialize_doc(await engine.refunds.delete_refund(refund_id, current_user))

    @router.post("/refunds/{refund_id}/submit")
    async def submit_refund(
        refund_id: str,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        return serialize_doc(await engine.refunds.submit(refund_id, current_user))

    @router.post("/refunds/{refund_id}/approve")
    async def approve_refund(
        refund_id: str,
        data: ApprovalAction,
        current_user: dict = Depends(permission_checker.require(*APPROVERS))
    ):
        return serialize_doc(await engine.refunds.approve(refund_id, current_user, data.remarks))

    @router.post("/refunds/{refund_id}/reject")
    async def reject_refund(
        refund_id: str,
        data: ApprovalAction,
        current_user: dict = Depends(permission_checker.require(*APPROVERS))
    ):
        return serialize_doc(await engine.refunds.reject(refund_id, current_user, data.remarks))

    @router.post("/refunds/{refund_id}/pay")
    async def pay_refund(
        refund_id: str,
        data: RefundPay,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        """Pay an approved instalment; the cancellation and account move with it"""
        details = data.instrument_details.model_dump(exclude_none=True) if data.instrument_details else None
        refund = await engine.refunds.mark_paid(
            refund_id, current_user,
            method=data.method, payment_date=data.payment_date,
            account_type=data.account_type, account_id=data.account_id,
            instrument_details=details or None,
            reference=data.reference, notes=data.notes
        )
        return serialize_doc(refund)

    # ============================================
    # INSTALMENT SCHEDULE ENDPOINTS
    # ============================================

    @router.post("/installment-schedules", status_code=status.HTTP_201_CREATED)
    async def create_installment_schedule(
        data: InstallmentScheduleCreate,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        rows = await engine.installments.create_schedule(
            data.sale_id, data.number_of_installments, current_user["user_id"],
            frequency=data.frequency, start_date=data.start_date,
            total_amount=data.total_amount, notes=data.notes
        )
        return [serialize_doc(r) for r in rows]

    @router.get("/installment-schedules")
    async def list_installment_schedules(
        sale_id: Optional[str] = None,
        client_id: Optional[str] = None,
        installment_status: Optional[str] = Query(None, alias="status"),
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=500),
        current_user: dict = Depends(get_current_user)
    ):
        items, total = await engine.installments.list_installments(
            sale_id, client_id, installment_status, page, limit
        )
        return {"items": [serialize_doc(i) for i in items], "total": total, "page": page, "limit": limit}

    @router.get("/installment-schedules/overdue")
    async def overdue_schedule_rows(
        client_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
        current_user: dict = Depends(get_current_user)
    ):
        rows = await engine.installments.overdue(client_id, as_of)
        return [serialize_doc(r) for r in rows]

    @router.post("/installment-schedules/refresh-status")
    async def refresh_installment_statuses(
        data: InstallmentRefresh,
        current_user: dict = Depends(permission_checker.require(*FINANCE_WRITERS))
    ):
        result = await engine.installments.refresh_statuses(data.as_of)
        result["as_of"] = result["as_of"].isoformat()
        return result

    @router.get("/clients/{client_id}/statement")
    async def client_statement(
        client_id: str,
        as_of: Optional[datetime] = None,
        current_user: dict = Depends(get_current_user)
    ):
        """Instalment rows of every active schedule of the client"""
        return serialize_doc(await engine.installments.client_statement(client_id, as_of))

    return router
