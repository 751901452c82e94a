"""
User model - Clients, therapists and admins.

A client (role ``user``) carries a weak reference to the therapist currently
assigned to them. Only an admin changes that reference.
"""

from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, String, Table
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from src.models.base import Base, utc_now


# =============================================================================
# Enums
# =============================================================================

class UserRole(str, Enum):
    """Role fixed at signup."""
    USER = "user"
    THERAPIST = "therapist"
    ADMIN = "admin"


# =============================================================================
# Association Tables
# =============================================================================

# Composite primary keys make quiz grants an idempotent set-add.
user_accessible_quizzes = Table(
    "user_accessible_quizzes",
    Base.metadata,
    Column("user_id", PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("quiz_id", PG_UUID(as_uuid=True), ForeignKey("quizzes.id", ondelete="CASCADE"), primary_key=True),
)

user_attempted_quizzes = Table(
    "user_attempted_quizzes",
    Base.metadata,
    Column("user_id", PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("quiz_id", PG_UUID(as_uuid=True), ForeignKey("quizzes.id", ondelete="CASCADE"), primary_key=True),
)


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class User(Base):
    """SQLAlchemy model for users table."""

    __tablename__ = "users"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False, default="")
    email = Column(String(320), nullable=False, unique=True, index=True)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.USER, index=True)
    has_onboarded = Column(Boolean, nullable=False, default=False)
    assigned_therapist_id = Column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    # Relationships
    assigned_therapist = relationship("User", remote_side=[id])
    therapist_profile = relationship("TherapistProfile", back_populates="user", uselist=False)
    accessible_quizzes = relationship("Quiz", secondary=user_accessible_quizzes)
    attempted_quizzes = relationship("Quiz", secondary=user_attempted_quizzes)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role={self.role})>"


# =============================================================================
# Pydantic Schemas
# =============================================================================

class UserRead(BaseModel):
    """Schema for reading user identity."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str = ""
    email: str
    role: UserRole
    has_onboarded: bool = False
    assigned_therapist_id: Optional[UUID] = None


class ParticipantRead(BaseModel):
    """Minimal participant card used in thread and roster views."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[UUID] = None
    name: str = ""
    email: str = ""


class AssignTherapistRequest(BaseModel):
    """Admin request to assign a therapist to a client."""
    therapist_user_id: str = Field(..., description="User id of the therapist")
