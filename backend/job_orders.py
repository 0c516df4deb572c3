"""
Job Order API Router

Create, query and move job orders through their approval lifecycle.
All business rules live in job_order_service; history and audit events are
written after the response via a background task.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

import job_order_service
from audit_service import AuditTrail, get_audit_trail
from auth import AuthenticatedUser, require_permission
from config import settings
from database import get_db
from models import JobOrderStatus, Permission
from schemas import (
    ApprovalDecision,
    ApprovalRecord,
    CancelRequest,
    JobOrderCreate,
    JobOrderCreatedResponse,
    JobOrderDetailResponse,
    JobOrderHistoryResponse,
    JobOrderListResponse,
    JobOrderUpdate,
)

router = APIRouter(prefix="/api/job-orders", tags=["Job Orders"])


@router.get("", response_model=JobOrderListResponse)
async def list_job_orders(
    branch_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    vehicle_id: Optional[int] = None,
    status: Optional[JobOrderStatus] = None,
    search: Optional[str] = None,
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=settings.MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
    current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_JOB_ORDERS)),
    db: AsyncSession = Depends(get_db),
):
    """List job orders in the caller's branches, newest first"""
    orders, total = await job_order_service.list_job_orders(
        db, current_user,
        branch_id=branch_id,
        customer_id=customer_id,
        vehicle_id=vehicle_id,
        status=status,
        search=search,
        limit=limit,
        offset=offset,
    )
    return {"data": orders, "pagination": {"total": total, "limit": limit, "offset": offset}}


@router.get("/{order_id}", response_model=JobOrderDetailResponse)
async def get_job_order(
    order_id: int,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_JOB_ORDERS)),
    db: AsyncSession = Depends(get_db),
):
    return await job_order_service.get_job_order(db, current_user, order_id)


@router.get("/{order_id}/history", response_model=List[JobOrderHistoryResponse])
async def get_job_order_history(
    order_id: int,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_JOB_ORDERS)),
    db: AsyncSession = Depends(get_db),
):
    return await job_order_service.get_job_order_history(db, current_user, order_id)


@router.post("", response_model=JobOrderCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_job_order(
    data: JobOrderCreate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.CREATE_JOB_ORDER)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    """Create a job order; prices are resolved and snapshotted per line"""
    async with trail.track_failures(current_user, "CREATE", "JOB_ORDER"):
        order, warnings = await job_order_service.create_job_order(db, current_user, data, trail)

    background_tasks.add_task(trail.dispatch)

    response = JobOrderCreatedResponse.model_validate(order)
    response.warnings = warnings
    return response


@router.put("/{order_id}", response_model=JobOrderDetailResponse)
async def update_job_order(
    order_id: int,
    data: JobOrderUpdate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.EDIT_JOB_ORDER_NOTES)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "UPDATE", "JOB_ORDER", order_id):
        order = await job_order_service.update_job_order(db, current_user, order_id, data, trail)
    background_tasks.add_task(trail.dispatch)
    return order


@router.patch("/{order_id}/request-approval", response_model=JobOrderDetailResponse)
async def request_approval(
    order_id: int,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.REQUEST_APPROVAL)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    """Send a created or rejected order to the customer for approval"""
    async with trail.track_failures(current_user, "REQUEST_APPROVAL", "JOB_ORDER", order_id):
        order = await job_order_service.request_approval(db, current_user, order_id, trail)
    background_tasks.add_task(trail.dispatch)
    return order


@router.patch("/{order_id}/record-approval", response_model=JobOrderDetailResponse)
async def record_approval(
    order_id: int,
    data: ApprovalRecord,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.RECORD_APPROVAL)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    """Record the customer's approve/reject decision on a pending order"""
    action = "APPROVE" if data.decision == ApprovalDecision.APPROVED else "REJECT"
    async with trail.track_failures(current_user, action, "JOB_ORDER", order_id):
        order = await job_order_service.record_approval(
            db, current_user, order_id, data.decision, data.notes, trail
        )
    background_tasks.add_task(trail.dispatch)
    return order


@router.patch("/{order_id}/cancel", response_model=JobOrderDetailResponse)
async def cancel_job_order(
    order_id: int,
    background_tasks: BackgroundTasks,
    data: Optional[CancelRequest] = None,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.CANCEL_JOB_ORDER)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    reason = data.reason if data else None
    async with trail.track_failures(current_user, "CANCEL", "JOB_ORDER", order_id):
        order = await job_order_service.cancel_job_order(db, current_user, order_id, reason, trail)
    background_tasks.add_task(trail.dispatch)
    return order


@router.delete("/{order_id}")
async def delete_job_order(
    order_id: int,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.DELETE_JOB_ORDER)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "DELETE", "JOB_ORDER", order_id):
        await job_order_service.delete_job_order(db, current_user, order_id, trail)
    background_tasks.add_task(trail.dispatch)
    return {"message": "Job order deleted successfully"}
