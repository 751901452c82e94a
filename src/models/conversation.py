"""
TherapyConversation model - Encrypted chat thread between a client and
their therapist.

One thread per (user, therapist) pair, enforced by a unique constraint.
Messages store AES-GCM ciphertext, IV and auth tag, never plaintext, and are
append-only. Only the newest ``MAX_THREAD_MESSAGES`` are retained.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from src.models.base import Base, utc_now
from src.models.user import ParticipantRead

MAX_THREAD_MESSAGES = 500
MAX_MESSAGE_LENGTH = 2000
UNDECRYPTABLE_PLACEHOLDER = "[Unable to decrypt message]"


# =============================================================================
# SQLAlchemy Models
# =============================================================================

class TherapyConversation(Base):
    """SQLAlchemy model for therapy_conversations table."""

    __tablename__ = "therapy_conversations"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    therapist_id = Column(PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "therapist_id", name="uq_therapy_conversations_user_therapist"),
    )

    user = relationship("User", foreign_keys=[user_id])
    therapist = relationship("User", foreign_keys=[therapist_id])
    messages = relationship(
        "TherapyMessage",
        back_populates="conversation",
        order_by="TherapyMessage.seq",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<TherapyConversation(id={self.id}, user_id={self.user_id}, therapist_id={self.therapist_id})>"


class TherapyMessage(Base):
    """SQLAlchemy model for therapy_messages table."""

    __tablename__ = "therapy_messages"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    conversation_id = Column(
        PG_UUID(as_uuid=True),
        ForeignKey("therapy_conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    seq = Column(Integer, nullable=False)
    sender_id = Column(PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    text_cipher = Column(Text, nullable=False)
    text_iv = Column(String(64), nullable=False)
    text_auth_tag = Column(String(64), nullable=False)
    key_version = Column(Integer, nullable=False, default=1)
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("conversation_id", "seq", name="uq_therapy_messages_conversation_seq"),
        Index("ix_therapy_messages_conversation_sent", "conversation_id", "sent_at"),
    )

    conversation = relationship("TherapyConversation", back_populates="messages")
    sender = relationship("User")

    def __repr__(self) -> str:
        return f"<TherapyMessage(id={self.id}, conversation_id={self.conversation_id}, seq={self.seq})>"


# =============================================================================
# Pydantic Schemas
# =============================================================================

class SendMessageRequest(BaseModel):
    """Request to send a chat message."""
    text: str = Field("", description="Plaintext message; encrypted before storage")
    user_id: Optional[str] = Field(None, description="Target client (therapist callers only)")


class MessageSender(BaseModel):
    """Sender card for one message, relative to the reader."""
    id: Optional[UUID] = None
    name: str = ""
    role: str = ""
    is_me: bool = False


class MessageView(BaseModel):
    """A decrypted message."""
    id: UUID
    text: str
    sent_at: Optional[datetime] = None
    sender: MessageSender


class ThreadParticipants(BaseModel):
    """Both sides of a thread."""
    user: ParticipantRead
    therapist: ParticipantRead


class ThreadView(BaseModel):
    """A thread as shown to one reader."""
    id: UUID
    participants: ThreadParticipants
    messages: list[MessageView] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class SentMessage(BaseModel):
    """Result of sending a message."""
    conversation_id: UUID
    message: Optional[MessageView] = None
    updated_at: Optional[datetime] = None
