"""
Quiz model - Psychometric quizzes that therapists assign to clients.

Question content lives with the quiz authoring tools; only the fields the
assignment engine reads are modelled here.
"""

from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, Integer, String
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from src.models.base import Base, utc_now


class QuizType(str, Enum):
    """Kind of quiz."""
    MCQ = "mcq"
    WRITTEN = "written"
    MIXED = "mixed"
    POLL = "poll"
    PERSONALITY_TEST = "personality_test"


class Quiz(Base):
    """SQLAlchemy model for quizzes table."""

    __tablename__ = "quizzes"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    title = Column(String(255), nullable=False)
    type = Column(SQLEnum(QuizType), nullable=False)
    estimated_minutes = Column(Integer, nullable=True)
    question_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<Quiz(id={self.id}, title={self.title!r}, is_active={self.is_active})>"


class QuizRead(BaseModel):
    """Quiz card embedded in assignment and library views."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[UUID] = None
    title: str = "Untitled Quiz"
    type: str = ""
    estimated_minutes: Optional[int] = None
    is_active: bool = True

    @field_validator("type", mode="before")
    @classmethod
    def enum_to_value(cls, v):
        """Store the plain quiz type string."""
        if isinstance(v, Enum):
            return v.value
        return v or ""
