"""
TherapistQuizAssignment model - A quiz a therapist has assigned to a client.

Lifecycle: assigned -> in_progress -> completed, or assigned/in_progress ->
revoked. ``completed`` and ``revoked`` are terminal. Overdue is a read-time
view computed from ``due_at``; it is never stored.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from src.models.base import Base, utc_now
from src.models.quiz import QuizRead
from src.models.user import ParticipantRead


# =============================================================================
# Enums
# =============================================================================

class AssignmentStatus(str, Enum):
    """Stored lifecycle state of an assignment."""
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REVOKED = "revoked"


class EffectiveStatus(str, Enum):
    """Stored status plus the derived ``overdue`` view."""
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REVOKED = "revoked"
    OVERDUE = "overdue"


ACTIVE_ASSIGNMENT_STATUSES = frozenset({AssignmentStatus.ASSIGNED, AssignmentStatus.IN_PROGRESS})
TERMINAL_ASSIGNMENT_STATUSES = frozenset({AssignmentStatus.COMPLETED, AssignmentStatus.REVOKED})

NOTE_MAX_LENGTH = 1200


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class TherapistQuizAssignment(Base):
    """SQLAlchemy model for therapist_quiz_assignments table."""

    __tablename__ = "therapist_quiz_assignments"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    therapist_id = Column(PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    quiz_id = Column(PG_UUID(as_uuid=True), ForeignKey("quizzes.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(SQLEnum(AssignmentStatus), nullable=False, default=AssignmentStatus.ASSIGNED, index=True)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    due_at = Column(DateTime(timezone=True), nullable=True, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    note = Column(String(NOTE_MAX_LENGTH), nullable=False, default="")
    source = Column(String(50), nullable=False, default="therapist_manual")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_quiz_assignments_therapist_user_assigned", "therapist_id", "user_id", "assigned_at"),
        Index("ix_quiz_assignments_therapist_user_quiz_status", "therapist_id", "user_id", "quiz_id", "status"),
    )

    quiz = relationship("Quiz")

    def __repr__(self) -> str:
        return (
            f"<TherapistQuizAssignment(id={self.id}, user_id={self.user_id}, "
            f"quiz_id={self.quiz_id}, status={self.status})>"
        )


# =============================================================================
# Pydantic Schemas
# =============================================================================

class QuizAssignmentCreate(BaseModel):
    """Therapist request to assign a quiz."""
    quiz_id: str = Field(..., description="Quiz to assign")
    due_at: Optional[str] = Field(None, description="ISO-8601 due date; defaults to 7 days out")
    note: Optional[str] = Field(None, description="Instructions for the client")


class QuizAssignmentUpdate(BaseModel):
    """Therapist changes to an assignment.

    An explicit ``due_at: null`` clears the due date; omitting the field
    leaves it untouched, so callers check ``model_fields_set``.
    """
    status: Optional[str] = Field(None, description="Only 'revoked' may be set manually")
    due_at: Optional[str] = Field(None, description="ISO-8601 due date, or null/empty to clear")


class QuizAssignmentRead(BaseModel):
    """An assignment as shown to the therapist, with derived status."""
    id: UUID
    user_id: UUID
    therapist_id: UUID
    quiz: QuizRead
    status: AssignmentStatus
    effective_status: EffectiveStatus
    is_overdue: bool
    source: str = "therapist_manual"
    note: str = ""
    assigned_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class QuizSummary(BaseModel):
    """Partition of a client's assignments. Buckets sum to ``total``."""
    model_config = ConfigDict(frozen=True)

    total: int = 0
    pending: int = 0
    completed: int = 0
    overdue: int = 0
    revoked: int = 0


class QuizAssignmentResult(BaseModel):
    """A single assignment with the client's refreshed summary."""
    assignment: QuizAssignmentRead
    summary: QuizSummary


class ClientQuizAssignments(BaseModel):
    """All of one client's assignments from one therapist."""
    client: ParticipantRead
    summary: QuizSummary
    assignments: list[QuizAssignmentRead] = Field(default_factory=list)
