from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from config import settings
from database import get_db
from exceptions import AccessDenied, NotFound
from models import User, UserRole, Permission

# Tokens are issued by the identity provider; this service only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token")


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity context for one request"""
    id: int
    email: str
    full_name: str
    roles: FrozenSet[UserRole]
    branch_ids: FrozenSet[int]
    primary_branch_id: Optional[int] = None

    @property
    def is_head_manager(self) -> bool:
        return UserRole.HM in self.roles

    @property
    def max_level(self) -> int:
        return max_level(self.roles)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token (tooling and tests; production tokens come from the identity provider)"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def build_authenticated_user(user: User) -> AuthenticatedUser:
    """Flatten a loaded profile (roles + branch assignments) into the request identity"""
    primary_branch_id = None
    for assignment in user.branch_assignments:
        if assignment.is_primary:
            primary_branch_id = assignment.branch_id
            break
    if primary_branch_id is None and user.branch_assignments:
        primary_branch_id = user.branch_assignments[0].branch_id

    return AuthenticatedUser(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        roles=frozenset(r.role for r in user.roles),
        branch_ids=frozenset(a.branch_id for a in user.branch_assignments),
        primary_branch_id=primary_branch_id,
    )


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> AuthenticatedUser:
    """Get the current authenticated user with roles and branch assignments"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            raise credentials_exception
        user_id = int(subject)
    except (JWTError, ValueError):
        raise credentials_exception

    result = await db.execute(
        select(User)
        .options(selectinload(User.roles), selectinload(User.branch_assignments))
        .where(User.id == user_id)
    )
    user = result.scalar_one_or_none()

    if user is None:
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated"
        )

    return build_authenticated_user(user)


# =============================================================================
# ROLE-BASED ACCESS CONTROL (RBAC) SYSTEM
# =============================================================================

# Total order over roles; higher = broader authority
ROLE_LEVELS = {
    UserRole.T: 1,
    UserRole.R: 2,
    UserRole.JS: 3,
    UserRole.POC: 4,
    UserRole.HM: 5,
}

ROLE_DESCRIPTIONS = {
    UserRole.HM: ("Head Manager", "Full system access, user and branch management, multi-branch oversight"),
    UserRole.POC: ("POC Supervisor", "Branch operations, approvals, and staff management"),
    UserRole.JS: ("Junior Supervisor", "Daily operations and technician supervision"),
    UserRole.R: ("Receptionist", "Customer intake, quotations, and recording customer decisions"),
    UserRole.T: ("Technician", "Job execution and status updates"),
}

ALL_STAFF = frozenset(UserRole)
ORDER_MANAGERS = frozenset({UserRole.POC, UserRole.JS, UserRole.R})
FRONT_DESK = frozenset({UserRole.POC, UserRole.R})
PRICING_MANAGERS = frozenset({UserRole.HM, UserRole.POC, UserRole.JS, UserRole.R})

# Permission-Role Mapping
PERMISSION_ROLES = {
    Permission.VIEW_JOB_ORDERS: ALL_STAFF,
    Permission.CREATE_JOB_ORDER: ORDER_MANAGERS,
    Permission.EDIT_JOB_ORDER_NOTES: ORDER_MANAGERS | {UserRole.T},
    Permission.REQUEST_APPROVAL: ORDER_MANAGERS,
    Permission.RECORD_APPROVAL: FRONT_DESK,
    Permission.CANCEL_JOB_ORDER: ORDER_MANAGERS,
    Permission.DELETE_JOB_ORDER: ORDER_MANAGERS,
    Permission.VIEW_PRICING: ALL_STAFF,
    Permission.RESOLVE_PRICING: PRICING_MANAGERS,
    Permission.MANAGE_PRICING: PRICING_MANAGERS,
    Permission.MANAGE_REPAIRS: ALL_STAFF,
    Permission.VIEW_AUDIT_LOGS: frozenset({UserRole.HM, UserRole.POC}),
    Permission.VIEW_AUDIT_DETAILS: frozenset({UserRole.HM}),
    Permission.MANAGE_USERS: frozenset({UserRole.HM, UserRole.POC}),
}


def level_of(role: UserRole) -> int:
    """Authority level of a role. Every ceiling check goes through this."""
    return ROLE_LEVELS[UserRole(role)]


def max_level(roles: Iterable[UserRole]) -> int:
    return max((level_of(role) for role in roles), default=0)


def authorize(user: AuthenticatedUser, required_roles: Iterable[UserRole]) -> bool:
    """True when the caller holds at least one of the required roles"""
    return not user.roles.isdisjoint(required_roles)


def branch_scope(user: AuthenticatedUser) -> Optional[FrozenSet[int]]:
    """
    Returns None for HM (all branches), the assigned branch ids otherwise.

    Used to filter list queries server-side for non-HM users.
    """
    if user.is_head_manager:
        return None
    return user.branch_ids


def can_access_branch(user: AuthenticatedUser, branch_id: Optional[int]) -> bool:
    scope = branch_scope(user)
    if scope is None:
        return True
    return branch_id is not None and branch_id in scope


def apply_branch_scope(query, column, user: AuthenticatedUser):
    """Restrict a select() to the caller's branches"""
    scope = branch_scope(user)
    if scope is None:
        return query
    return query.where(column.in_(sorted(scope)))


def ensure_branch_access(user: AuthenticatedUser, branch_id: Optional[int], entity: str = "Resource"):
    """
    Verify that an entity fetched by id is inside the caller's branch scope.
    Out-of-scope entities are reported as missing so ids cannot be enumerated.
    """
    if not can_access_branch(user, branch_id):
        raise NotFound(f"{entity} not found")


def ensure_branch_membership(user: AuthenticatedUser, branch_id: Optional[int]):
    """Reject writes that name a branch the caller is not assigned to"""
    if not can_access_branch(user, branch_id):
        raise AccessDenied("You do not have access to this branch")


def ensure_role_ceiling(user: AuthenticatedUser, roles: Iterable[UserRole]):
    """Reject granting or revoking roles above the caller's own level"""
    ceiling = user.max_level
    for role in roles:
        if level_of(role) > ceiling:
            raise AccessDenied(f"Cannot manage role {UserRole(role).value} above your own level")


def require_permission(permission: Permission):
    """
    Dependency factory for permission checks. Returns the authenticated user.

    Usage:
        @router.get("/", ...)
        async def list_orders(current_user: AuthenticatedUser = Depends(require_permission(Permission.VIEW_JOB_ORDERS))):
            ...
    """
    allowed_roles = PERMISSION_ROLES[permission]

    async def checker(current_user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if not authorize(current_user, allowed_roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission '{permission.value}' required"
            )
        return current_user
    return checker
