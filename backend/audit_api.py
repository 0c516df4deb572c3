"""
Audit Log API Router

Read access to the global audit log. HM sees every entry; POC supervisors
see entries performed from their own branches.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, desc
from datetime import datetime, timedelta
from typing import List, Optional

from auth import AuthenticatedUser, apply_branch_scope, require_permission
from config import settings
from database import get_db
from models import AuditLog, Permission, utcnow
from schemas import AuditLogListResponse, AuditLogResponse, AuditStatsResponse

router = APIRouter(prefix="/api/audit", tags=["Audit"])


@router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    user_id: Optional[int] = None,
    branch_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=settings.MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
    current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_AUDIT_LOGS)),
    db: AsyncSession = Depends(get_db),
):
    """Get audit logs with filtering and pagination"""
    query = apply_branch_scope(select(AuditLog), AuditLog.performed_by_branch_id, current_user)

    # Apply filters
    if action:
        query = query.where(AuditLog.action == action)
    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.where(AuditLog.entity_id == entity_id)
    if user_id:
        query = query.where(AuditLog.performed_by_user_id == user_id)
    if branch_id:
        query = query.where(AuditLog.performed_by_branch_id == branch_id)
    if start_date:
        query = query.where(AuditLog.created_at >= start_date)
    if end_date:
        query = query.where(AuditLog.created_at <= end_date)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()

    result = await db.execute(
        query.order_by(desc(AuditLog.created_at), desc(AuditLog.id)).offset(offset).limit(limit)
    )
    return {
        "data": result.scalars().all(),
        "pagination": {"total": total, "limit": limit, "offset": offset},
    }


@router.get("/entity/{entity_type}/{entity_id}", response_model=List[AuditLogResponse])
async def get_entity_audit_logs(
    entity_type: str,
    entity_id: str,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_AUDIT_DETAILS)),
    db: AsyncSession = Depends(get_db),
):
    """Full audit history of one entity"""
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(desc(AuditLog.created_at), desc(AuditLog.id))
    )
    return result.scalars().all()


@router.get("/user/{user_id}", response_model=List[AuditLogResponse])
async def get_user_audit_logs(
    user_id: int,
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=settings.MAX_PAGE_LIMIT),
    current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_AUDIT_DETAILS)),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.performed_by_user_id == user_id)
        .order_by(desc(AuditLog.created_at), desc(AuditLog.id))
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/stats", response_model=AuditStatsResponse)
async def get_audit_stats(
    days: int = Query(7, ge=1, le=365),
    current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_AUDIT_DETAILS)),
    db: AsyncSession = Depends(get_db),
):
    """Event counts over the last N days"""
    since = utcnow() - timedelta(days=days)
    window = AuditLog.created_at >= since

    by_action = await db.execute(
        select(AuditLog.action, func.count(AuditLog.id)).where(window).group_by(AuditLog.action)
    )
    by_entity_type = await db.execute(
        select(AuditLog.entity_type, func.count(AuditLog.id)).where(window).group_by(AuditLog.entity_type)
    )
    failed = await db.execute(
        select(func.count(AuditLog.id)).where(window, AuditLog.status == "FAILED")
    )

    action_counts = {action: count for action, count in by_action.all()}
    return {
        "days": days,
        "since": since,
        "total": sum(action_counts.values()),
        "failed": failed.scalar_one(),
        "by_action": action_counts,
        "by_entity_type": {entity_type: count for entity_type, count in by_entity_type.all()},
    }
