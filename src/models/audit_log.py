"""
AuditLog model - Audit trail for chat, assignment and calendar actions.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Column, DateTime, String
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from src.models.base import Base, JSONType, utc_now


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class AuditLog(Base):
    """SQLAlchemy model for audit_logs table."""

    __tablename__ = "audit_logs"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    event_type = Column(String(100), nullable=False, index=True)
    user_id = Column(PG_UUID(as_uuid=True), nullable=True, index=True)  # Nullable for system events
    resource_type = Column(String(100), nullable=False, index=True)
    resource_id = Column(PG_UUID(as_uuid=True), nullable=True)
    action = Column(String(50), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 max length
    details = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, event_type={self.event_type}, action={self.action})>"


# =============================================================================
# Pydantic Schemas
# =============================================================================

class AuditLogRead(BaseModel):
    """Schema for reading audit log data."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str
    resource_type: str
    action: str
    user_id: Optional[UUID] = None
    resource_id: Optional[UUID] = None
    ip_address: Optional[str] = None
    details: dict[str, Any] = {}
    created_at: datetime


# =============================================================================
# Audit Event Types (Constants)
# =============================================================================

class AuditEventType:
    """Standard audit event types."""
    # Chat content
    PHI_ACCESS = "phi_access"
    PHI_UPDATE = "phi_update"

    # Care plan changes
    ASSIGNMENT_CHANGE = "assignment_change"

    # Integrations
    INTEGRATION_CHANGE = "integration_change"

    # Authorization events
    ACCESS_DENIED = "access_denied"
    PERMISSION_CHANGE = "permission_change"


class AuditAction:
    """Standard audit actions."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    REVOKE = "revoke"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    ASSIGN = "assign"
