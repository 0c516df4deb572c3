"""
Pricing API Router

Branch-specific pricing rules (labor and packaging) and the resolver used
while building job orders.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

import pricing_service
from audit_service import AuditTrail, get_audit_trail
from auth import AuthenticatedUser, ensure_branch_access, require_permission
from config import settings
from database import get_db
from models import Permission, PricingType, RecordStatus
from schemas import (
    PricingMatrixCreate,
    PricingMatrixListResponse,
    PricingMatrixResponse,
    PricingMatrixUpdate,
    ResolvedPricingResponse,
)

router = APIRouter(prefix="/api/pricing", tags=["Pricing"])


@router.get("", response_model=PricingMatrixListResponse)
async def list_pricing_rules(
    branch_id: Optional[int] = None,
    catalog_item_id: Optional[int] = None,
    pricing_type: Optional[PricingType] = None,
    status: Optional[RecordStatus] = None,
    search: Optional[str] = None,
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=settings.MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
    current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_PRICING)),
    db: AsyncSession = Depends(get_db),
):
    rules, total = await pricing_service.list_pricing_rules(
        db, current_user,
        branch_id=branch_id,
        catalog_item_id=catalog_item_id,
        pricing_type=pricing_type,
        status=status,
        search=search,
        limit=limit,
        offset=offset,
    )
    return {"data": rules, "pagination": {"total": total, "limit": limit, "offset": offset}}


@router.get("/resolve/{catalog_item_id}", response_model=ResolvedPricingResponse)
async def resolve_pricing(
    catalog_item_id: int,
    branch_id: int,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.RESOLVE_PRICING)),
    db: AsyncSession = Depends(get_db),
):
    """Resolve base, labor and packaging prices for a catalog item at a branch"""
    ensure_branch_access(current_user, branch_id, "Branch")
    resolved = await pricing_service.resolve_pricing(db, catalog_item_id, branch_id)
    return resolved.to_response()


@router.get("/{rule_id}", response_model=PricingMatrixResponse)
async def get_pricing_rule(
    rule_id: int,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_PRICING)),
    db: AsyncSession = Depends(get_db),
):
    return await pricing_service.get_pricing_rule(db, current_user, rule_id)


@router.post("", response_model=PricingMatrixResponse, status_code=status.HTTP_201_CREATED)
async def create_pricing_rule(
    data: PricingMatrixCreate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_PRICING)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "CREATE", "PRICING_MATRIX"):
        rule = await pricing_service.create_pricing_rule(db, current_user, data, trail)
    background_tasks.add_task(trail.dispatch)
    return rule


@router.put("/{rule_id}", response_model=PricingMatrixResponse)
async def update_pricing_rule(
    rule_id: int,
    data: PricingMatrixUpdate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_PRICING)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "UPDATE", "PRICING_MATRIX", rule_id):
        rule = await pricing_service.update_pricing_rule(db, current_user, rule_id, data, trail)
    background_tasks.add_task(trail.dispatch)
    return rule


@router.delete("/{rule_id}")
async def delete_pricing_rule(
    rule_id: int,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_PRICING)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "DELETE", "PRICING_MATRIX", rule_id):
        await pricing_service.delete_pricing_rule(db, current_user, rule_id, trail)
    background_tasks.add_task(trail.dispatch)
    return {"message": "Pricing rule deleted successfully"}
