"""
TherapistProfile model - One-to-one extension of a therapist user.

Owns the therapist's Calendly OAuth credentials. ``calendly_connected`` and
token presence are tracked independently: a connected profile whose tokens
were cleared is in the reconnect-required state.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from src.models.base import Base, utc_now


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class TherapistProfile(Base):
    """SQLAlchemy model for therapist_profiles table."""

    __tablename__ = "therapist_profiles"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    display_name = Column(String(255), nullable=True)
    title = Column(String(255), nullable=False, default="Therapist")
    bio = Column(String(800), nullable=True)

    calendly_url = Column(String(2048), nullable=True)
    calendly_connected = Column(Boolean, nullable=False, default=False)
    calendly_user_uri = Column(String(2048), nullable=True, index=True)
    calendly_organization_uri = Column(String(2048), nullable=True)
    calendly_connected_at = Column(DateTime(timezone=True), nullable=True)
    calendly_access_token = Column(Text, nullable=True)
    calendly_refresh_token = Column(Text, nullable=True)
    calendly_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    user = relationship("User", back_populates="therapist_profile")

    def __repr__(self) -> str:
        return f"<TherapistProfile(user_id={self.user_id}, calendly_connected={self.calendly_connected})>"


# =============================================================================
# Pydantic Schemas
# =============================================================================

class TherapistProfileRead(BaseModel):
    """Snapshot of a therapist profile, including calendar credentials.

    Never returned to clients directly; API layers project the safe fields.
    """
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    display_name: Optional[str] = None
    title: str = "Therapist"
    bio: Optional[str] = None
    calendly_url: Optional[str] = None
    calendly_connected: bool = False
    calendly_user_uri: Optional[str] = None
    calendly_organization_uri: Optional[str] = None
    calendly_connected_at: Optional[datetime] = None
    calendly_access_token: Optional[str] = None
    calendly_refresh_token: Optional[str] = None
    calendly_token_expires_at: Optional[datetime] = None


class CalendarConnectionStatus(BaseModel):
    """Connection state reported to the therapist dashboard."""
    calendly_connected: bool
    reconnect_required: bool
    calendly_user_uri: str = ""
    calendly_organization_uri: str = ""
    calendly_url: str = ""
    calendly_connected_at: Optional[datetime] = None


class AssignedTherapistRead(BaseModel):
    """Therapist card shown to a client."""
    therapist_user_id: UUID
    display_name: str
    title: str = "Therapist"
    bio: str = ""
    calendly_url: str = ""
