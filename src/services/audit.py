"""
Centralized Audit Service

Audit trail for chat reads and writes, quiz assignment changes, calendar
connections and therapist assignment. Each entry records the actor, the
resource, the action and when it happened.
"""

from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import structlog

from src.models.audit_log import AuditLog, AuditEventType, AuditAction
from src.models.base import utc_now

logger = structlog.get_logger(__name__)


def _to_uuid(value) -> Optional[UUID]:
    """UUID from a string or UUID; None passes through."""
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


class AuditService:
    """
    Writes audit entries.

    Every entry is emitted as a structlog ``audit_event``. Entries are also
    stored in ``audit_logs`` when a session factory is given.

    Args:
        session_factory: Optional SQLAlchemy session factory.
    """

    def __init__(self, session_factory: Optional[Callable] = None) -> None:
        self._session_factory = session_factory

    def record(
        self,
        event_type: str,
        actor_id,
        resource_type: str,
        resource_id,
        action: str,
        details: Optional[dict[str, Any]] = None,
        ip_address: str = "unknown",
    ) -> AuditLog:
        """
        Build, store and emit one audit entry.

        Raises:
            ValueError: ``actor_id`` or ``resource_id`` is not a UUID.
        """
        entry = AuditLog(
            id=uuid4(),
            event_type=event_type,
            user_id=_to_uuid(actor_id),
            resource_type=resource_type,
            resource_id=_to_uuid(resource_id),
            action=action,
            ip_address=ip_address,
            details=dict(details or {}),
            created_at=utc_now(),
        )

        if self._session_factory is not None:
            self._persist(entry)

        logger.info(
            "audit_event",
            event_type=entry.event_type,
            user_id=str(entry.user_id) if entry.user_id else None,
            resource_type=entry.resource_type,
            resource_id=str(entry.resource_id) if entry.resource_id else None,
            action=entry.action,
            ip_address=entry.ip_address,
        )
        return entry

    def _persist(self, entry: AuditLog) -> None:
        session = self._session_factory()
        try:
            session.add(entry)
            session.commit()
            session.refresh(entry)
        except Exception:
            session.rollback()
            logger.error("audit_persist_failed", event_type=entry.event_type, action=entry.action)
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def log_phi_access(
        self,
        user_id: str,
        resource_type: str,
        resource_id: str,
        action: str = AuditAction.READ,
        details: Optional[dict[str, Any]] = None,
        ip_address: str = "unknown",
    ) -> AuditLog:
        """A thread or client record was read."""
        return self.record(AuditEventType.PHI_ACCESS, user_id, resource_type, resource_id, action, details, ip_address)

    def log_phi_modification(
        self,
        user_id: str,
        resource_type: str,
        resource_id: str,
        action: str,
        details: Optional[dict[str, Any]] = None,
        ip_address: str = "unknown",
    ) -> AuditLog:
        """A chat message was written."""
        return self.record(AuditEventType.PHI_UPDATE, user_id, resource_type, resource_id, action, details, ip_address)

    def log_assignment_change(
        self,
        therapist_id: str,
        assignment_id: str,
        client_id: str,
        action: str,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditLog:
        """A quiz assignment was created, revoked or rescheduled."""
        return self.record(
            AuditEventType.ASSIGNMENT_CHANGE,
            therapist_id,
            "quiz_assignment",
            assignment_id,
            action,
            {"client_id": str(client_id), **(details or {})},
        )

    def log_integration_change(
        self,
        therapist_id: str,
        action: str,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditLog:
        """Calendar connected or disconnected, including forced disconnects."""
        return self.record(
            AuditEventType.INTEGRATION_CHANGE,
            therapist_id,
            "calendly_integration",
            None,
            action,
            details,
        )

    def log_permission_change(self, admin_id: str, user_id: str, therapist_id: str) -> AuditLog:
        """An admin assigned a therapist to a client."""
        return self.record(
            AuditEventType.PERMISSION_CHANGE,
            admin_id,
            "user",
            user_id,
            AuditAction.ASSIGN,
            {"therapist_id": str(therapist_id)},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_audit_trail(
        self,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditLog]:
        """Stored entries matching every given filter, newest first."""
        if self._session_factory is None:
            return []

        criteria = [
            (AuditLog.resource_type, resource_type),
            (AuditLog.resource_id, _to_uuid(resource_id)),
            (AuditLog.user_id, _to_uuid(user_id)),
            (AuditLog.event_type, event_type),
        ]

        session = self._session_factory()
        try:
            query = session.query(AuditLog)
            for column, value in criteria:
                if value is not None:
                    query = query.filter(column == value)
            return query.order_by(AuditLog.created_at.desc()).limit(limit).all()
        finally:
            session.close()
