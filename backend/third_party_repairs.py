"""
Third-Party Repair API Router

Outsourced repair lines attached to a job order. They are payable on top of
the order but never change its total_amount. Each mutation is recorded on the
parent order's history.
"""

import logging
from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_
from typing import Optional

from audit_service import AuditTrail, HistoryEvent, get_audit_trail
from auth import AuthenticatedUser, apply_branch_scope, ensure_branch_access, require_permission
from config import settings
from database import get_db
from exceptions import Conflict, NotFound, ValidationFailed
from models import JobOrder, JobOrderStatus, Permission, ThirdPartyRepair
from schemas import (
    ThirdPartyRepairCreate,
    ThirdPartyRepairListResponse,
    ThirdPartyRepairResponse,
    ThirdPartyRepairUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/third-party-repairs", tags=["Third-Party Repairs"])


def _repair_values(repair: ThirdPartyRepair) -> dict:
    return {
        "repair_id": repair.id,
        "provider_name": repair.provider_name,
        "description": repair.description,
        "cost": repair.cost,
        "repair_date": repair.repair_date.isoformat() if repair.repair_date else None,
        "notes": repair.notes,
    }


def _required_text(field: str, value: Optional[str], label: str) -> str:
    if value is None or not value.strip():
        raise ValidationFailed(field, f"{label} is required")
    return value.strip()


def _valid_cost(value: Optional[float]) -> float:
    if value is None or value < 0:
        raise ValidationFailed("cost", "Valid cost is required")
    return value


async def _get_parent_order(db: AsyncSession, user: AuthenticatedUser, job_order_id: int) -> JobOrder:
    order = await db.get(JobOrder, job_order_id)
    if order is None:
        raise NotFound("Job order not found")
    ensure_branch_access(user, order.branch_id, "Job order")
    return order


def _ensure_order_open(order: JobOrder):
    if order.status == JobOrderStatus.CANCELLED:
        raise Conflict(
            "Repairs cannot be changed on a cancelled job order",
            current_status=JobOrderStatus.CANCELLED.value,
        )


async def _get_repair(db: AsyncSession, user: AuthenticatedUser, repair_id: int) -> tuple[ThirdPartyRepair, JobOrder]:
    repair = await db.get(ThirdPartyRepair, repair_id)
    if repair is None:
        raise NotFound("Third-party repair not found")
    order = await db.get(JobOrder, repair.job_order_id)
    if order is None:
        raise NotFound("Third-party repair not found")
    ensure_branch_access(user, order.branch_id, "Third-party repair")
    return repair, order


@router.get("", response_model=ThirdPartyRepairListResponse)
async def list_repairs(
    job_order_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=settings.MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_REPAIRS)),
    db: AsyncSession = Depends(get_db),
):
    """List repairs on orders in the caller's branches"""
    query = select(ThirdPartyRepair).join(JobOrder, ThirdPartyRepair.job_order_id == JobOrder.id)
    query = apply_branch_scope(query, JobOrder.branch_id, current_user)

    if job_order_id is not None:
        query = query.where(ThirdPartyRepair.job_order_id == job_order_id)
    if search:
        term = f"%{search}%"
        query = query.where(or_(
            ThirdPartyRepair.provider_name.ilike(term),
            ThirdPartyRepair.description.ilike(term),
        ))

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()

    result = await db.execute(
        query.order_by(ThirdPartyRepair.repair_date.desc(), ThirdPartyRepair.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return {
        "data": result.scalars().all(),
        "pagination": {"total": total, "limit": limit, "offset": offset},
    }


@router.get("/{repair_id}", response_model=ThirdPartyRepairResponse)
async def get_repair(
    repair_id: int,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_REPAIRS)),
    db: AsyncSession = Depends(get_db),
):
    repair, _ = await _get_repair(db, current_user, repair_id)
    return repair


@router.post("", response_model=ThirdPartyRepairResponse, status_code=status.HTTP_201_CREATED)
async def create_repair(
    data: ThirdPartyRepairCreate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_REPAIRS)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "CREATE", "THIRD_PARTY_REPAIR"):
        order = await _get_parent_order(db, current_user, data.job_order_id)

        provider_name = _required_text("provider_name", data.provider_name, "Provider name")
        description = _required_text("description", data.description, "Description")
        cost = _valid_cost(data.cost)
        if data.repair_date is None:
            raise ValidationFailed("repair_date", "Repair date is required")

        _ensure_order_open(order)

        repair = ThirdPartyRepair(
            job_order_id=order.id,
            provider_name=provider_name,
            description=description,
            cost=cost,
            repair_date=data.repair_date,
            notes=(data.notes or "").strip() or None,
            created_by=current_user.id,
        )
        db.add(repair)
        await db.commit()
        await db.refresh(repair)

        trail.emit(HistoryEvent(
            job_order_id=order.id,
            action="REPAIR_ADDED",
            performed_by=current_user.id,
            details=_repair_values(repair),
        ))
        logger.info(f"Third-party repair {repair.id} added to job order {order.id} by user {current_user.id}")

    background_tasks.add_task(trail.dispatch)
    return repair


@router.put("/{repair_id}", response_model=ThirdPartyRepairResponse)
async def update_repair(
    repair_id: int,
    data: ThirdPartyRepairUpdate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_REPAIRS)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "UPDATE", "THIRD_PARTY_REPAIR", repair_id):
        repair, order = await _get_repair(db, current_user, repair_id)

        changes = data.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationFailed(None, "No fields to update")
        _ensure_order_open(order)

        if "provider_name" in changes:
            changes["provider_name"] = _required_text("provider_name", changes["provider_name"], "Provider name")
        if "description" in changes:
            changes["description"] = _required_text("description", changes["description"], "Description")
        if "cost" in changes:
            changes["cost"] = _valid_cost(changes["cost"])
        if "repair_date" in changes and changes["repair_date"] is None:
            raise ValidationFailed("repair_date", "Repair date is required")
        if "notes" in changes:
            changes["notes"] = (changes["notes"] or "").strip() or None

        old_values = _repair_values(repair)
        for key, value in changes.items():
            setattr(repair, key, value)
        await db.commit()
        await db.refresh(repair)

        trail.emit(HistoryEvent(
            job_order_id=order.id,
            action="REPAIR_UPDATED",
            performed_by=current_user.id,
            details={"old": old_values, "new": _repair_values(repair)},
        ))
        logger.info(f"Third-party repair {repair.id} updated by user {current_user.id}")

    background_tasks.add_task(trail.dispatch)
    return repair


@router.delete("/{repair_id}")
async def delete_repair(
    repair_id: int,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_REPAIRS)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "DELETE", "THIRD_PARTY_REPAIR", repair_id):
        repair, order = await _get_repair(db, current_user, repair_id)
        _ensure_order_open(order)

        old_values = _repair_values(repair)
        await db.delete(repair)
        await db.commit()

        trail.emit(HistoryEvent(
            job_order_id=order.id,
            action="REPAIR_REMOVED",
            performed_by=current_user.id,
            details=old_values,
        ))
        logger.info(f"Third-party repair {repair_id} removed from job order {order.id} by user {current_user.id}")

    background_tasks.add_task(trail.dispatch)
    return {"message": "Third-party repair deleted successfully"}
