"""
Job order aggregate.

Creation resolves and snapshots prices for every line, then persists the order
and its items in one transaction. Status changes go through the state machine
and are written with a compare-and-swap on the current status, so a stale
request can never overwrite a newer decision.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit_service import AuditEvent, AuditTrail, HistoryEvent
from auth import AuthenticatedUser, apply_branch_scope, ensure_branch_access, ensure_branch_membership
from config import settings
from exceptions import Conflict, NotFound, ValidationFailed
from models import Branch, Customer, JobOrder, JobOrderHistory, JobOrderItem, JobOrderStatus, Vehicle, utcnow
from pricing_service import resolve_pricing
from schemas import ApprovalDecision, JobOrderCreate, JobOrderUpdate
from state_machine import JobOrderAction, ensure_editable, next_status

logger = logging.getLogger(__name__)

DETAIL_OPTIONS = (
    selectinload(JobOrder.branch),
    selectinload(JobOrder.customer),
    selectinload(JobOrder.vehicle),
    selectinload(JobOrder.items),
    selectinload(JobOrder.repairs),
)


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return text.strip() or None


async def load_job_order(db: AsyncSession, order_id: int) -> Optional[JobOrder]:
    """Fresh read of an order with references, items and repairs"""
    result = await db.execute(
        select(JobOrder)
        .options(*DETAIL_OPTIONS)
        .where(JobOrder.id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_job_order(db: AsyncSession, user: AuthenticatedUser, order_id: int) -> JobOrder:
    order = await load_job_order(db, order_id)
    if order is None:
        raise NotFound("Job order not found")
    ensure_branch_access(user, order.branch_id, "Job order")
    return order


async def list_job_orders(
    db: AsyncSession,
    user: AuthenticatedUser,
    *,
    branch_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    vehicle_id: Optional[int] = None,
    status: Optional[JobOrderStatus] = None,
    search: Optional[str] = None,
    limit: int,
    offset: int,
) -> tuple[list[JobOrder], int]:
    """Newest first, restricted to the caller's branches"""
    query = apply_branch_scope(select(JobOrder), JobOrder.branch_id, user)

    if branch_id is not None:
        query = query.where(JobOrder.branch_id == branch_id)
    if customer_id is not None:
        query = query.where(JobOrder.customer_id == customer_id)
    if vehicle_id is not None:
        query = query.where(JobOrder.vehicle_id == vehicle_id)
    if status is not None:
        query = query.where(JobOrder.status == status)
    if search:
        term = f"%{search}%"
        query = query.where(or_(JobOrder.order_number.ilike(term), JobOrder.notes.ilike(term)))

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()

    result = await db.execute(
        query.order_by(JobOrder.created_at.desc(), JobOrder.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def create_job_order(
    db: AsyncSession,
    user: AuthenticatedUser,
    data: JobOrderCreate,
    trail: AuditTrail,
) -> tuple[JobOrder, list[str]]:
    """
    Create an order in status `created`.

    Returns the loaded order and the non-fatal pricing warnings gathered while
    resolving its lines.
    """
    ensure_branch_membership(user, data.branch_id)

    if not data.items:
        raise ValidationFailed("items", "At least one item is required")

    quantities = []
    for index, line in enumerate(data.items):
        quantity = 1 if line.quantity is None else line.quantity
        if quantity < 1:
            raise ValidationFailed(f"items[{index}].quantity", "Quantity must be at least 1")
        quantities.append(quantity)

    branch = await db.get(Branch, data.branch_id)
    if branch is None or not branch.is_active:
        raise NotFound("Branch not found")

    customer = await db.get(Customer, data.customer_id)
    if customer is None:
        raise NotFound("Customer not found")
    if customer.branch_id != branch.id:
        raise ValidationFailed("customer_id", "Customer does not belong to the selected branch")

    vehicle = await db.get(Vehicle, data.vehicle_id)
    if vehicle is None:
        raise NotFound("Vehicle not found")
    if vehicle.customer_id != customer.id:
        raise ValidationFailed("vehicle_id", "Vehicle does not belong to the selected customer")

    warnings: list[str] = []
    items = []
    for line, quantity in zip(data.items, quantities):
        resolved = await resolve_pricing(db, line.catalog_item_id, branch.id)
        warnings.extend(resolved.warnings)
        items.append(JobOrderItem(
            catalog_item_id=resolved.catalog_item.id,
            catalog_item_name=resolved.catalog_item.name,
            catalog_item_type=resolved.catalog_item.type,
            quantity=quantity,
            base_price=resolved.base,
            labor_price=resolved.labor,
            packaging_price=resolved.packaging,
            line_total=resolved.line_total(quantity),
        ))

    order = JobOrder(
        # Replaced once the id is known
        order_number=f"{settings.ORDER_NUMBER_PREFIX}-TMP-{uuid.uuid4().hex}",
        branch_id=branch.id,
        customer_id=customer.id,
        vehicle_id=vehicle.id,
        status=JobOrderStatus.CREATED,
        total_amount=sum(item.line_total for item in items),
        notes=_clean(data.notes),
        created_by=user.id,
        items=items,
    )
    db.add(order)
    await db.flush()
    order.order_number = f"{settings.ORDER_NUMBER_PREFIX}-{branch.code}-{order.id:06d}"
    await db.commit()

    trail.emit(HistoryEvent(
        job_order_id=order.id,
        action=JobOrderAction.CREATE.value,
        performed_by=user.id,
        to_status=JobOrderStatus.CREATED.value,
        details={
            "order_number": order.order_number,
            "total_amount": order.total_amount,
            "item_count": len(items),
        },
    ))
    logger.info(
        f"Job order {order.order_number} created by user {user.id} "
        f"(items: {len(items)}, total: {order.total_amount:.2f}, warnings: {len(warnings)})"
    )

    return await load_job_order(db, order.id), warnings


async def update_job_order(
    db: AsyncSession,
    user: AuthenticatedUser,
    order_id: int,
    data: JobOrderUpdate,
    trail: AuditTrail,
) -> JobOrder:
    """Notes-only edit; items, prices and totals are never touched"""
    order = await get_job_order(db, user, order_id)

    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationFailed(None, "No fields to update")
    ensure_editable(order.status)

    old_notes = order.notes
    order.notes = _clean(changes.get("notes"))
    await db.commit()

    trail.emit(HistoryEvent(
        job_order_id=order.id,
        action=JobOrderAction.UPDATE.value,
        performed_by=user.id,
        details={"old_notes": old_notes, "new_notes": order.notes},
    ))
    logger.info(f"Job order {order.order_number} notes updated by user {user.id}")

    return await load_job_order(db, order.id)


async def _transition(
    db: AsyncSession,
    user: AuthenticatedUser,
    order_id: int,
    action: JobOrderAction,
    trail: AuditTrail,
    values: Optional[dict] = None,
    details: Optional[dict] = None,
) -> JobOrder:
    order = await get_job_order(db, user, order_id)
    current = JobOrderStatus(order.status)
    target = next_status(current, action)

    result = await db.execute(
        update(JobOrder)
        .where(JobOrder.id == order.id, JobOrder.status == current)
        .values(status=target, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # Someone else moved the order first
        await db.rollback()
        latest = await load_job_order(db, order.id)
        if latest is None:
            raise NotFound("Job order not found")
        next_status(latest.status, action)
        raise Conflict(
            "Job order was modified by another request, reload and retry",
            current_status=JobOrderStatus(latest.status).value,
        )
    await db.commit()

    trail.emit(HistoryEvent(
        job_order_id=order.id,
        action=action.value,
        performed_by=user.id,
        from_status=current.value,
        to_status=target.value,
        details=details,
    ))
    logger.info(f"Job order {order.order_number}: {current.value} -> {target.value} by user {user.id}")

    return await load_job_order(db, order.id)


async def request_approval(db: AsyncSession, user: AuthenticatedUser, order_id: int, trail: AuditTrail) -> JobOrder:
    return await _transition(db, user, order_id, JobOrderAction.REQUEST_APPROVAL, trail)


async def record_approval(
    db: AsyncSession,
    user: AuthenticatedUser,
    order_id: int,
    decision: ApprovalDecision,
    notes: Optional[str],
    trail: AuditTrail,
) -> JobOrder:
    """One-shot customer decision on a pending order"""
    action = JobOrderAction.APPROVE if decision == ApprovalDecision.APPROVED else JobOrderAction.REJECT
    notes = _clean(notes)
    return await _transition(
        db, user, order_id, action, trail,
        values={
            "approved_at": utcnow(),
            "approved_by": user.id,
            "approval_notes": notes,
        },
        details={"decision": decision.value, "approval_notes": notes},
    )


async def cancel_job_order(
    db: AsyncSession,
    user: AuthenticatedUser,
    order_id: int,
    reason: Optional[str],
    trail: AuditTrail,
) -> JobOrder:
    reason = _clean(reason)
    return await _transition(
        db, user, order_id, JobOrderAction.CANCEL, trail,
        details={"reason": reason} if reason else None,
    )


async def delete_job_order(db: AsyncSession, user: AuthenticatedUser, order_id: int, trail: AuditTrail):
    """
    Hard delete. Items, repairs and the order's history go with it, so the
    deletion itself is recorded in the global audit log.
    """
    result = await db.execute(
        select(JobOrder)
        .options(
            selectinload(JobOrder.items),
            selectinload(JobOrder.repairs),
            selectinload(JobOrder.history),
        )
        .where(JobOrder.id == order_id)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound("Job order not found")
    ensure_branch_access(user, order.branch_id, "Job order")

    snapshot = {
        "order_number": order.order_number,
        "branch_id": order.branch_id,
        "status": JobOrderStatus(order.status).value,
        "total_amount": order.total_amount,
    }

    await db.delete(order)
    await db.commit()

    trail.emit(AuditEvent.by(user, "DELETE", "JOB_ORDER", order_id, old_values=snapshot))
    logger.info(f"Job order {snapshot['order_number']} deleted by user {user.id}")


async def get_job_order_history(db: AsyncSession, user: AuthenticatedUser, order_id: int) -> list[JobOrderHistory]:
    """Timeline of one order, oldest first"""
    await get_job_order(db, user, order_id)
    result = await db.execute(
        select(JobOrderHistory)
        .where(JobOrderHistory.job_order_id == order_id)
        .order_by(JobOrderHistory.created_at, JobOrderHistory.id)
    )
    return list(result.scalars().all())
