"""
Audit and history trail.

Services emit events while they work. The trail writes them only after the
business transaction has committed, each event in its own session, so a
failing audit write is logged and dropped without touching the primary
operation.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional, Union

from database import async_session_maker
from exceptions import ServiceError
from models import AuditLog, JobOrderHistory

logger = logging.getLogger(__name__)


@dataclass
class HistoryEvent:
    """One row of a job order's own timeline"""
    job_order_id: int
    action: str
    performed_by: Optional[int]
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    details: Optional[dict] = None

    def to_row(self) -> JobOrderHistory:
        return JobOrderHistory(
            job_order_id=self.job_order_id,
            action=self.action,
            from_status=self.from_status,
            to_status=self.to_status,
            performed_by=self.performed_by,
            details=self.details,
        )


@dataclass
class AuditEvent:
    """One row of the global administrative audit log"""
    action: str
    entity_type: str
    entity_id: Optional[str]
    performed_by_user_id: Optional[int]
    performed_by_branch_id: Optional[int]
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    status: str = "SUCCESS"

    @classmethod
    def by(
        cls,
        user,
        action: str,
        entity_type: str,
        entity_id: Any = None,
        old_values: Optional[dict] = None,
        new_values: Optional[dict] = None,
        status: str = "SUCCESS",
    ) -> "AuditEvent":
        return cls(
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            performed_by_user_id=user.id if user else None,
            performed_by_branch_id=user.primary_branch_id if user else None,
            old_values=old_values,
            new_values=new_values,
            status=status,
        )

    def to_row(self) -> AuditLog:
        return AuditLog(
            action=self.action,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            performed_by_user_id=self.performed_by_user_id,
            performed_by_branch_id=self.performed_by_branch_id,
            old_values=self.old_values,
            new_values=self.new_values,
            status=self.status,
        )


TrailEvent = Union[HistoryEvent, AuditEvent]


class AuditTrail:
    """Collects events during a request and writes them after the commit"""

    def __init__(self, session_factory=async_session_maker):
        self._session_factory = session_factory
        self._pending: list[TrailEvent] = []

    @property
    def pending(self) -> tuple:
        return tuple(self._pending)

    def emit(self, event: TrailEvent):
        self._pending.append(event)

    async def dispatch(self) -> int:
        """Write pending events. Returns how many were stored; never raises."""
        events, self._pending = self._pending, []
        written = 0
        for event in events:
            try:
                async with self._session_factory() as session:
                    session.add(event.to_row())
                    await session.commit()
                written += 1
            except Exception:
                logger.exception(
                    f"Failed to write {type(event).__name__} '{event.action}'; "
                    f"the primary operation is not affected"
                )
        return written

    @asynccontextmanager
    async def track_failures(self, user, action: str, entity_type: str, entity_id: Any = None):
        """
        Wrap a mutation. Services emit only after their commit, so whatever is
        pending when an error escapes describes stored work and is written
        before the error propagates. Deterministic service errors pass through;
        anything unexpected is also recorded as a FAILED audit entry.
        """
        try:
            yield
        except ServiceError:
            await self.dispatch()
            raise
        except Exception as e:
            self.emit(AuditEvent.by(
                user, action, entity_type, entity_id,
                new_values={"error": str(e)},
                status="FAILED",
            ))
            await self.dispatch()
            raise


def get_audit_trail() -> AuditTrail:
    """Dependency: one trail per request"""
    return AuditTrail()
