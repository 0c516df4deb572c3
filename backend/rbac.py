"""
RBAC Administration API Router

Role and branch assignment management for staff profiles.

Guards applied to every mutation:
- role ceiling: callers only grant or revoke roles at or below their own
  highest level, and only manage users whose highest role is within it
- branch scope: non-HM callers only manage users and branches they share
- callers never deactivate or delete their own account
"""

import logging
from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.orm import selectinload
from typing import List

from audit_service import AuditEvent, AuditTrail, get_audit_trail
from auth import (
    ROLE_DESCRIPTIONS,
    AuthenticatedUser,
    ensure_branch_membership,
    ensure_role_ceiling,
    level_of,
    require_permission,
)
from database import get_db
from exceptions import AccessDenied, Conflict, NotFound, ValidationFailed
from models import Branch, Permission, User, UserBranchAssignment, UserRole, UserRoleAssignment
from schemas import (
    BranchesUpdate,
    RoleInfo,
    RolesUpdate,
    StatusUpdate,
    UserProfileCreate,
    UserProfileResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rbac", tags=["RBAC"])


# =============================================================================
# HELPERS
# =============================================================================

def _snapshot(user: User) -> dict:
    return {
        "email": user.email,
        "is_active": user.is_active,
        "roles": sorted(UserRole(r.role).value for r in user.roles),
        "branch_ids": sorted(a.branch_id for a in user.branch_assignments),
        "primary_branch_id": next((a.branch_id for a in user.branch_assignments if a.is_primary), None),
    }


async def _load_user(db: AsyncSession, user_id: int):
    result = await db.execute(
        select(User)
        .options(
            selectinload(User.roles),
            selectinload(User.branch_assignments).selectinload(UserBranchAssignment.branch),
        )
        .where(User.id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _get_manageable_user(db: AsyncSession, current_user: AuthenticatedUser, user_id: int) -> User:
    """Target user, provided the caller's scope and role ceiling cover them"""
    target = await _load_user(db, user_id)
    if target is None:
        raise NotFound("User not found")

    if not current_user.is_head_manager:
        target_branches = {a.branch_id for a in target.branch_assignments}
        if target.id != current_user.id and target_branches.isdisjoint(current_user.branch_ids):
            raise NotFound("User not found")

    ensure_role_ceiling(current_user, [r.role for r in target.roles])
    return target


def _unique(values: list) -> list:
    return list(dict.fromkeys(values))


async def _ensure_branches_exist(db: AsyncSession, branch_ids: List[int]):
    if not branch_ids:
        return
    result = await db.execute(select(Branch.id).where(Branch.id.in_(branch_ids)))
    missing = set(branch_ids) - set(result.scalars().all())
    if missing:
        raise NotFound(f"Branch not found: {sorted(missing)[0]}")


def _primary_for(branch_ids: List[int], primary_branch_id) -> int:
    if primary_branch_id is None:
        return branch_ids[0] if branch_ids else None
    if primary_branch_id not in branch_ids:
        raise ValidationFailed("primary_branch_id", "Primary branch must be one of the assigned branches")
    return primary_branch_id


# =============================================================================
# ROUTES
# =============================================================================

@router.get("/roles", response_model=List[RoleInfo])
async def list_roles(
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_USERS)),
):
    """Role catalog, highest authority first"""
    roles = sorted(UserRole, key=level_of, reverse=True)
    return [
        RoleInfo(
            code=role,
            name=ROLE_DESCRIPTIONS[role][0],
            description=ROLE_DESCRIPTIONS[role][1],
            level=level_of(role),
        )
        for role in roles
    ]


@router.get("/users", response_model=List[UserProfileResponse])
async def list_users(
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_USERS)),
    db: AsyncSession = Depends(get_db),
):
    """HM sees every user; other managers see users sharing one of their branches"""
    query = select(User).options(
        selectinload(User.roles),
        selectinload(User.branch_assignments).selectinload(UserBranchAssignment.branch),
    )
    if not current_user.is_head_manager:
        shared = select(UserBranchAssignment.user_id).where(
            UserBranchAssignment.branch_id.in_(sorted(current_user.branch_ids))
        )
        query = query.where(User.id.in_(shared))

    result = await db.execute(query.order_by(User.full_name, User.id))
    return result.scalars().all()


@router.post("/users", response_model=UserProfileResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    data: UserProfileCreate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_USERS)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    """Register the profile of a user already known to the identity provider"""
    async with trail.track_failures(current_user, "CREATE", "USER"):
        roles = _unique(data.roles)
        if not roles:
            raise ValidationFailed("roles", "At least one role is required")
        ensure_role_ceiling(current_user, roles)

        branch_ids = _unique(data.branch_ids)
        if not current_user.is_head_manager and not branch_ids:
            raise ValidationFailed("branch_ids", "At least one branch is required")
        for branch_id in branch_ids:
            ensure_branch_membership(current_user, branch_id)
        await _ensure_branches_exist(db, branch_ids)
        primary_branch_id = _primary_for(branch_ids, data.primary_branch_id)

        email = data.email.lower()
        existing = await db.execute(select(User.id).where(User.email == email))
        if existing.first() is not None:
            raise Conflict("A user with this email already exists")

        user = User(
            email=email,
            full_name=data.full_name.strip(),
            phone=data.phone,
            is_active=True,
            roles=[UserRoleAssignment(role=role) for role in roles],
            branch_assignments=[
                UserBranchAssignment(branch_id=branch_id, is_primary=branch_id == primary_branch_id)
                for branch_id in branch_ids
            ],
        )
        db.add(user)
        await db.commit()

        user = await _load_user(db, user.id)
        trail.emit(AuditEvent.by(current_user, "CREATE", "USER", user.id, new_values=_snapshot(user)))
        logger.info(f"User {user.email} registered by user {current_user.id} with roles {[r.value for r in roles]}")

    background_tasks.add_task(trail.dispatch)
    return user


@router.put("/users/{user_id}/roles", response_model=UserProfileResponse)
async def update_user_roles(
    user_id: int,
    data: RolesUpdate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_USERS)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    """Replace a user's role set"""
    async with trail.track_failures(current_user, "UPDATE_ROLES", "USER", user_id):
        target = await _get_manageable_user(db, current_user, user_id)

        roles = _unique(data.roles)
        if not roles:
            raise ValidationFailed("roles", "User must have at least one role")

        current_roles = {UserRole(r.role) for r in target.roles}
        added = set(roles) - current_roles
        removed = current_roles - set(roles)
        ensure_role_ceiling(current_user, added | removed)

        old_values = _snapshot(target)
        for assignment in list(target.roles):
            if UserRole(assignment.role) in removed:
                target.roles.remove(assignment)
        for role in roles:
            if role in added:
                target.roles.append(UserRoleAssignment(role=role))
        await db.commit()

        target = await _load_user(db, user_id)
        trail.emit(AuditEvent.by(
            current_user, "UPDATE_ROLES", "USER", user_id,
            old_values=old_values,
            new_values=_snapshot(target),
        ))
        logger.info(f"Roles of user {user_id} set to {[r.value for r in roles]} by user {current_user.id}")

    background_tasks.add_task(trail.dispatch)
    return target


@router.put("/users/{user_id}/branches", response_model=UserProfileResponse)
async def update_user_branches(
    user_id: int,
    data: BranchesUpdate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_USERS)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    """Replace a user's branch assignments; the first branch is primary unless one is named"""
    async with trail.track_failures(current_user, "UPDATE_BRANCHES", "USER", user_id):
        target = await _get_manageable_user(db, current_user, user_id)

        branch_ids = _unique(data.branch_ids)
        primary_branch_id = _primary_for(branch_ids, data.primary_branch_id)
        current_branches = {a.branch_id for a in target.branch_assignments}
        for branch_id in set(branch_ids) ^ current_branches:
            ensure_branch_membership(current_user, branch_id)
        await _ensure_branches_exist(db, branch_ids)

        old_values = _snapshot(target)
        for assignment in list(target.branch_assignments):
            if assignment.branch_id not in branch_ids:
                target.branch_assignments.remove(assignment)
            else:
                assignment.is_primary = assignment.branch_id == primary_branch_id
        for branch_id in branch_ids:
            if branch_id not in current_branches:
                target.branch_assignments.append(
                    UserBranchAssignment(branch_id=branch_id, is_primary=branch_id == primary_branch_id)
                )
        await db.commit()

        target = await _load_user(db, user_id)
        trail.emit(AuditEvent.by(
            current_user, "UPDATE_BRANCHES", "USER", user_id,
            old_values=old_values,
            new_values=_snapshot(target),
        ))
        logger.info(f"Branches of user {user_id} set to {branch_ids} by user {current_user.id}")

    background_tasks.add_task(trail.dispatch)
    return target


@router.put("/users/{user_id}/status", response_model=UserProfileResponse)
async def update_user_status(
    user_id: int,
    data: StatusUpdate,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_USERS)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "UPDATE_STATUS", "USER", user_id):
        if user_id == current_user.id and not data.is_active:
            raise AccessDenied("Cannot deactivate your own account")

        target = await _get_manageable_user(db, current_user, user_id)
        old_values = _snapshot(target)
        target.is_active = data.is_active
        await db.commit()

        target = await _load_user(db, user_id)
        trail.emit(AuditEvent.by(
            current_user, "UPDATE_STATUS", "USER", user_id,
            old_values=old_values,
            new_values=_snapshot(target),
        ))
        logger.info(f"User {user_id} {'activated' if data.is_active else 'deactivated'} by user {current_user.id}")

    background_tasks.add_task(trail.dispatch)
    return target


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: int,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(require_permission(Permission.MANAGE_USERS)),
    db: AsyncSession = Depends(get_db),
    trail: AuditTrail = Depends(get_audit_trail),
):
    async with trail.track_failures(current_user, "DELETE", "USER", user_id):
        if user_id == current_user.id:
            raise AccessDenied("Cannot delete your own account")

        target = await _get_manageable_user(db, current_user, user_id)
        old_values = _snapshot(target)
        await db.delete(target)
        await db.commit()

        trail.emit(AuditEvent.by(current_user, "DELETE", "USER", user_id, old_values=old_values))
        logger.info(f"User {user_id} deleted by user {current_user.id}")

    background_tasks.add_task(trail.dispatch)
    return {"message": "User deleted successfully"}
