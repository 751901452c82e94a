"""
Appointment model - Scheduled therapy sessions synced from Calendly.

Appointments are upserted by the Calendly webhook and keyed by the external
event URI. Sessions created without a calendar event have no URI; the unique
constraint ignores NULLs so many such rows may coexist.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from src.models.base import Base, JSONType, utc_now


# =============================================================================
# Enums
# =============================================================================

class AppointmentStatus(str, Enum):
    """Booking status as reported by the calendar provider."""
    SCHEDULED = "scheduled"
    CANCELED = "canceled"
    RESCHEDULED = "rescheduled"


class SessionStage(str, Enum):
    """Position of a session relative to now. Derived, never stored."""
    CURRENT = "current"
    UPCOMING = "upcoming"
    PREVIOUS = "previous"


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class Appointment(Base):
    """SQLAlchemy model for appointments table."""

    __tablename__ = "appointments"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    # Participants are resolved best-effort from webhook tracking data
    user_id = Column(PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    therapist_id = Column(PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    user_name = Column(String(255), nullable=True)
    user_email = Column(String(320), nullable=True, index=True)
    therapist_name = Column(String(255), nullable=True)
    therapist_email = Column(String(320), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True, index=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    timezone = Column(String(100), nullable=True)
    session_type = Column(String(255), nullable=True)
    status = Column(SQLEnum(AppointmentStatus), nullable=False, default=AppointmentStatus.SCHEDULED, index=True)
    calendly_event_uri = Column(String(2048), nullable=True, unique=True)
    calendly_invitee_uri = Column(String(2048), nullable=True, index=True)
    tracking = Column(JSONType, nullable=True)
    raw_payload = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_appointments_therapist_user", "therapist_id", "user_id"),
    )

    user = relationship("User", foreign_keys=[user_id])
    therapist = relationship("User", foreign_keys=[therapist_id])

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, therapist_id={self.therapist_id}, "
            f"user_id={self.user_id}, status={self.status})>"
        )


# =============================================================================
# Pydantic Schemas
# =============================================================================

class AppointmentRead(BaseModel):
    """Schema for a stored booking (therapist bookings list)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: Optional[UUID] = None
    therapist_id: Optional[UUID] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    timezone: Optional[str] = None
    session_type: Optional[str] = None
    status: AppointmentStatus
    calendly_event_uri: Optional[str] = None


class SessionView(BaseModel):
    """A session as shown to a client or therapist, with derived stage."""
    id: str
    scheduled_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    timezone: str = ""
    session_type: str = "Therapy Session"
    therapist_name: Optional[str] = None
    status: str = AppointmentStatus.SCHEDULED.value
    stage: SessionStage = SessionStage.UPCOMING
    join_url: str = ""
    reschedule_url: str = ""
    cancel_url: str = ""


class SessionPartition(BaseModel):
    """A client's sessions split by stage."""
    current: Optional[SessionView] = None
    next: Optional[SessionView] = None
    upcoming: list[SessionView] = Field(default_factory=list)


class TodaySession(BaseModel):
    """A therapist dashboard row for one calendar event today."""
    id: str
    client_name: str
    user_id: Optional[UUID] = None
    service: str = "Therapy Session"
    channel: str = "Session"
    status: str
    status_label: str
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


class TodaySessions(BaseModel):
    """Today's sessions for a therapist, earliest surfaced as highlight."""
    date: datetime
    highlight: Optional[TodaySession] = None
    sessions: list[TodaySession] = Field(default_factory=list)


class WebhookResult(BaseModel):
    """Outcome of ingesting one Calendly webhook delivery."""
    status: str
    message: str = ""
    appointment_id: Optional[UUID] = None
