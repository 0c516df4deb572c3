"""
Pricing resolution and pricing matrix management.

A line price is the catalog item's base price plus at most one active labor
rule and one active packaging rule for the branch. A missing rule contributes
nothing and is reported as a warning, never as an error.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit_service import AuditEvent, AuditTrail
from auth import AuthenticatedUser, apply_branch_scope, ensure_branch_access, ensure_branch_membership
from exceptions import Conflict, NotFound, ValidationFailed
from models import Branch, CatalogItem, PricingMatrix, PricingType, RecordStatus
from schemas import PricingMatrixCreate, PricingMatrixUpdate

logger = logging.getLogger(__name__)


@dataclass
class ResolvedPricing:
    """Base/labor/packaging triple for one catalog item at one branch"""
    catalog_item: CatalogItem
    branch_id: int
    rules: List[PricingMatrix]
    base: float
    labor: Optional[float] = None
    packaging: Optional[float] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    @property
    def unit_price(self) -> float:
        return self.base + (self.labor or 0.0) + (self.packaging or 0.0)

    def line_total(self, quantity: int) -> float:
        return self.unit_price * quantity

    def to_response(self) -> dict:
        return {
            "catalog_item": self.catalog_item,
            "pricing_rules": self.rules,
            "resolved_prices": {
                "base_price": self.base,
                "labor": self.labor,
                "packaging": self.packaging,
            },
            "warnings": list(self.warnings),
            "has_warnings": self.has_warnings,
        }


async def get_catalog_item_for_branch(db: AsyncSession, catalog_item_id: int, branch_id: int) -> CatalogItem:
    """Active catalog item visible at the branch (global, or owned by it)"""
    item = await db.get(CatalogItem, catalog_item_id)
    if item is None or item.status != RecordStatus.ACTIVE:
        raise NotFound(f"Catalog item {catalog_item_id} not found")
    if not item.is_global and item.branch_id != branch_id:
        raise NotFound(f"Catalog item {catalog_item_id} not found")
    return item


async def resolve_pricing(db: AsyncSession, catalog_item_id: int, branch_id: int) -> ResolvedPricing:
    """
    Resolve the price triple for a catalog item at a branch.

    Read-only. With several active rules of one type the lowest id wins, so
    repeated calls over the same rule set always agree.
    """
    item = await get_catalog_item_for_branch(db, catalog_item_id, branch_id)

    result = await db.execute(
        select(PricingMatrix)
        .where(
            PricingMatrix.catalog_item_id == item.id,
            PricingMatrix.branch_id == branch_id,
            PricingMatrix.status == RecordStatus.ACTIVE,
        )
        .order_by(PricingMatrix.id)
    )
    rules = list(result.scalars().all())

    resolved = ResolvedPricing(
        catalog_item=item,
        branch_id=branch_id,
        rules=rules,
        base=item.base_price,
    )

    for pricing_type in PricingType:
        rule = next((r for r in rules if r.pricing_type == pricing_type), None)
        if rule is None:
            message = f"No active {pricing_type.value} pricing for '{item.name}' at branch {branch_id}"
            resolved.warnings.append(message)
            logger.warning(message)
        else:
            setattr(resolved, pricing_type.value, rule.price)

    return resolved


# =============================================================================
# PRICING MATRIX MANAGEMENT
# =============================================================================

def _rule_values(rule: PricingMatrix) -> dict:
    return {
        "catalog_item_id": rule.catalog_item_id,
        "branch_id": rule.branch_id,
        "pricing_type": PricingType(rule.pricing_type).value,
        "price": rule.price,
        "status": RecordStatus(rule.status).value,
        "description": rule.description,
    }


async def _load_rule(db: AsyncSession, rule_id: int) -> Optional[PricingMatrix]:
    result = await db.execute(
        select(PricingMatrix)
        .options(selectinload(PricingMatrix.catalog_item), selectinload(PricingMatrix.branch))
        .where(PricingMatrix.id == rule_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _ensure_single_active(
    db: AsyncSession,
    catalog_item_id: int,
    branch_id: int,
    pricing_type: PricingType,
    exclude_id: Optional[int] = None,
):
    query = select(PricingMatrix.id).where(
        PricingMatrix.catalog_item_id == catalog_item_id,
        PricingMatrix.branch_id == branch_id,
        PricingMatrix.pricing_type == pricing_type,
        PricingMatrix.status == RecordStatus.ACTIVE,
    )
    if exclude_id is not None:
        query = query.where(PricingMatrix.id != exclude_id)

    if (await db.execute(query)).first() is not None:
        raise Conflict(
            f"An active {PricingType(pricing_type).value} pricing rule already exists "
            f"for this catalog item at this branch"
        )


async def list_pricing_rules(
    db: AsyncSession,
    user: AuthenticatedUser,
    *,
    branch_id: Optional[int] = None,
    catalog_item_id: Optional[int] = None,
    pricing_type: Optional[PricingType] = None,
    status: Optional[RecordStatus] = None,
    search: Optional[str] = None,
    limit: int,
    offset: int,
) -> tuple[list[PricingMatrix], int]:
    query = apply_branch_scope(select(PricingMatrix), PricingMatrix.branch_id, user)

    if branch_id is not None:
        query = query.where(PricingMatrix.branch_id == branch_id)
    if catalog_item_id is not None:
        query = query.where(PricingMatrix.catalog_item_id == catalog_item_id)
    if pricing_type is not None:
        query = query.where(PricingMatrix.pricing_type == pricing_type)
    if status is not None:
        query = query.where(PricingMatrix.status == status)
    if search:
        query = query.where(PricingMatrix.description.ilike(f"%{search}%"))

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()

    result = await db.execute(
        query.options(selectinload(PricingMatrix.catalog_item), selectinload(PricingMatrix.branch))
        .order_by(PricingMatrix.created_at.desc(), PricingMatrix.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_pricing_rule(db: AsyncSession, user: AuthenticatedUser, rule_id: int) -> PricingMatrix:
    rule = await _load_rule(db, rule_id)
    if rule is None:
        raise NotFound("Pricing rule not found")
    ensure_branch_access(user, rule.branch_id, "Pricing rule")
    return rule


async def create_pricing_rule(
    db: AsyncSession,
    user: AuthenticatedUser,
    data: PricingMatrixCreate,
    trail: AuditTrail,
) -> PricingMatrix:
    ensure_branch_membership(user, data.branch_id)

    if data.price < 0:
        raise ValidationFailed("price", "Price must be a non-negative number")

    if await db.get(Branch, data.branch_id) is None:
        raise NotFound("Branch not found")
    if await db.get(CatalogItem, data.catalog_item_id) is None:
        raise NotFound("Catalog item not found")

    if data.status == RecordStatus.ACTIVE:
        await _ensure_single_active(db, data.catalog_item_id, data.branch_id, data.pricing_type)

    rule = PricingMatrix(**data.model_dump(), created_by=user.id)
    db.add(rule)
    await db.commit()

    trail.emit(AuditEvent.by(user, "CREATE", "PRICING_MATRIX", rule.id, new_values=_rule_values(rule)))
    logger.info(f"Pricing rule {rule.id} created by user {user.id} for branch {rule.branch_id}")

    return await _load_rule(db, rule.id)


async def update_pricing_rule(
    db: AsyncSession,
    user: AuthenticatedUser,
    rule_id: int,
    data: PricingMatrixUpdate,
    trail: AuditTrail,
) -> PricingMatrix:
    rule = await get_pricing_rule(db, user, rule_id)

    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationFailed(None, "No fields to update")

    for required in ("pricing_type", "price", "status"):
        if required in changes and changes[required] is None:
            raise ValidationFailed(required, f"{required} cannot be empty")
    if "price" in changes and changes["price"] < 0:
        raise ValidationFailed("price", "Price must be a non-negative number")

    new_type = changes.get("pricing_type", rule.pricing_type)
    new_status = changes.get("status", rule.status)
    if new_status == RecordStatus.ACTIVE:
        await _ensure_single_active(db, rule.catalog_item_id, rule.branch_id, new_type, exclude_id=rule.id)

    old_values = _rule_values(rule)
    for key, value in changes.items():
        setattr(rule, key, value)
    await db.commit()

    trail.emit(AuditEvent.by(
        user, "UPDATE", "PRICING_MATRIX", rule.id,
        old_values=old_values,
        new_values=_rule_values(rule),
    ))
    logger.info(f"Pricing rule {rule.id} updated by user {user.id}: {sorted(changes)}")

    return await _load_rule(db, rule.id)


async def delete_pricing_rule(db: AsyncSession, user: AuthenticatedUser, rule_id: int, trail: AuditTrail):
    rule = await get_pricing_rule(db, user, rule_id)
    old_values = _rule_values(rule)

    await db.delete(rule)
    await db.commit()

    trail.emit(AuditEvent.by(user, "DELETE", "PRICING_MATRIX", rule_id, old_values=old_values))
    logger.info(f"Pricing rule {rule_id} deleted by user {user.id}")
