"""
Therapy Chat Thread Manager

Encrypted one-to-one chat between a client and their assigned therapist:
- Participant resolution and access control
- Idempotent thread creation per (user, therapist) pair
- Message append with bounded history (newest 500 kept)
- Read projection that survives undecryptable messages

Message text is encrypted with ChatCrypto before it reaches the database
and is never logged.
"""

import re
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import exc as sa_exc, func
from sqlalchemy.orm import joinedload, selectinload

from src.models.audit_log import AuditAction
from src.models.base import as_utc, utc_now
from src.models.conversation import (
    MAX_MESSAGE_LENGTH,
    MAX_THREAD_MESSAGES,
    UNDECRYPTABLE_PLACEHOLDER,
    MessageSender,
    MessageView,
    SentMessage,
    ThreadParticipants,
    ThreadView,
    TherapyConversation,
    TherapyMessage,
)
from src.models.user import ParticipantRead, User, UserRole
from src.services.access import parse_uuid
from src.services.audit import AuditService
from src.services.chat_crypto import MISSING_KEY_MESSAGE, ChatCrypto, get_chat_crypto
from src.services.errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    IntegrityError,
    NotFoundError,
    TetherError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_APPEND_ATTEMPTS = 3


def clean_message_text(text) -> str:
    """
    Strip control characters and surrounding whitespace, then validate.

    Raises:
        ValidationError: Empty or longer than 2000 characters.
    """
    cleaned = _CONTROL_CHARS.sub("", str(text or "")).strip()
    if not cleaned:
        raise ValidationError("text is required")
    if len(cleaned) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message is too long (max {MAX_MESSAGE_LENGTH} chars).")
    return cleaned


class ChatThreadService:
    """
    Manages therapy conversations and their encrypted messages.

    Args:
        session_factory: SQLAlchemy session factory.
        crypto: Message cipher. Defaults to the process-wide ChatCrypto.
        audit_service: Optional audit service.
    """

    def __init__(
        self,
        session_factory: Callable,
        crypto: Optional[ChatCrypto] = None,
        audit_service: Optional[AuditService] = None,
    ):
        self._session_factory = session_factory
        self._crypto = crypto or get_chat_crypto()
        self._audit = audit_service or AuditService(session_factory=session_factory)

    def _require_crypto(self) -> None:
        if not self._crypto.is_ready():
            raise ConfigurationError(MISSING_KEY_MESSAGE)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def resolve_participants(
        self,
        requester_id,
        requester_role: str,
        target_user_id=None,
    ) -> tuple[UUID, UUID]:
        """
        Work out which (user, therapist) thread the requester may open.

        A client always gets the thread with their assigned therapist. A
        therapist names the client, who must be assigned to them.

        Returns:
            (user_id, therapist_id)

        Raises:
            AuthenticationError: Requester unknown.
            ValidationError: No therapist assigned, or missing/invalid target.
            NotFoundError: Target is not a client.
            AuthorizationError: Target not assigned to this therapist, or
                requester is neither a client nor a therapist.
        """
        requester_uuid = parse_uuid(requester_id, "user id")
        role = str(requester_role or "").strip().lower()

        db = self._session_factory()
        try:
            if role == UserRole.USER.value:
                requester = db.get(User, requester_uuid)
                if requester is None or requester.role != UserRole.USER:
                    raise AuthenticationError("User not found.")
                if requester.assigned_therapist_id is None:
                    raise ValidationError("No therapist assigned to this user.")
                return requester.id, requester.assigned_therapist_id

            if role == UserRole.THERAPIST.value:
                raw_target = str(target_user_id or "").strip()
                if not raw_target:
                    raise ValidationError("user_id is required for therapist chat access.")
                target_uuid = parse_uuid(raw_target, "user_id")

                target = db.get(User, target_uuid)
                if target is None or target.role != UserRole.USER:
                    raise NotFoundError("Target user not found.")
                if target.assigned_therapist_id != requester_uuid:
                    raise AuthorizationError("This user is not assigned to this therapist.")
                return target.id, requester_uuid

            raise AuthorizationError("Only users and therapists can access therapy chat.")
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Threads and messages
    # ------------------------------------------------------------------

    def get_or_create_thread(self, user_id, therapist_id) -> UUID:
        """
        Return the conversation id for the pair, creating it if absent.

        The unique (user_id, therapist_id) constraint decides concurrent
        creates: the loser rolls back and reads the winner's row.
        """
        user_uuid = parse_uuid(user_id, "user id")
        therapist_uuid = parse_uuid(therapist_id, "therapist id")

        db = self._session_factory()
        try:
            existing = self._find_thread(db, user_uuid, therapist_uuid)
            if existing is not None:
                return existing.id

            conversation = TherapyConversation(user_id=user_uuid, therapist_id=therapist_uuid)
            db.add(conversation)
            try:
                db.commit()
            except sa_exc.IntegrityError:
                db.rollback()
                existing = self._find_thread(db, user_uuid, therapist_uuid)
                if existing is None:
                    raise
                return existing.id

            logger.info("therapy_conversation_created", conversation_id=str(conversation.id))
            return conversation.id
        finally:
            db.close()

    @staticmethod
    def _find_thread(db, user_id: UUID, therapist_id: UUID) -> Optional[TherapyConversation]:
        return (
            db.query(TherapyConversation)
            .filter(
                TherapyConversation.user_id == user_id,
                TherapyConversation.therapist_id == therapist_id,
            )
            .first()
        )

    @staticmethod
    def _last_seq(db, conversation_id: UUID) -> int:
        return (
            db.query(func.max(TherapyMessage.seq))
            .filter(TherapyMessage.conversation_id == conversation_id)
            .scalar()
        ) or 0

    def append_message(
        self,
        conversation_id,
        sender_id,
        text,
        now: Optional[datetime] = None,
    ) -> UUID:
        """
        Encrypt and append a message, evicting the oldest beyond 500.

        Returns:
            The new message id.

        Raises:
            ValidationError: Empty or oversized text.
            ConfigurationError: No encryption key.
            NotFoundError: Conversation missing.
        """
        now = now or utc_now()
        cleaned = clean_message_text(text)
        encrypted = self._crypto.encrypt(cleaned)
        conversation_uuid = parse_uuid(conversation_id, "conversation id")
        sender_uuid = parse_uuid(sender_id, "sender id")

        for attempt in range(1, _APPEND_ATTEMPTS + 1):
            db = self._session_factory()
            try:
                conversation = db.get(TherapyConversation, conversation_uuid)
                if conversation is None:
                    raise NotFoundError("Conversation not found.")

                last_seq = self._last_seq(db, conversation_uuid)
                message = TherapyMessage(
                    conversation_id=conversation_uuid,
                    seq=last_seq + 1,
                    sender_id=sender_uuid,
                    text_cipher=encrypted.cipher,
                    text_iv=encrypted.iv,
                    text_auth_tag=encrypted.auth_tag,
                    key_version=encrypted.key_version,
                    sent_at=now,
                )
                db.add(message)
                db.flush()

                evicted = self._evict_overflow(db, conversation_uuid)
                conversation.updated_at = now
                db.commit()

                if evicted:
                    logger.info(
                        "therapy_messages_evicted",
                        conversation_id=str(conversation_uuid),
                        count=evicted,
                    )
                return message.id
            except sa_exc.IntegrityError:
                # Another writer took this seq
                db.rollback()
                if attempt == _APPEND_ATTEMPTS:
                    raise
            except TetherError:
                raise
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    @staticmethod
    def _evict_overflow(db, conversation_id: UUID) -> int:
        total = (
            db.query(func.count(TherapyMessage.id))
            .filter(TherapyMessage.conversation_id == conversation_id)
            .scalar()
        )
        overflow = total - MAX_THREAD_MESSAGES
        if overflow <= 0:
            return 0

        stale_ids = [
            row.id
            for row in db.query(TherapyMessage.id)
            .filter(TherapyMessage.conversation_id == conversation_id)
            .order_by(TherapyMessage.seq.asc())
            .limit(overflow)
        ]
        db.query(TherapyMessage).filter(TherapyMessage.id.in_(stale_ids)).delete(synchronize_session=False)
        return len(stale_ids)

    def _decrypt_or_placeholder(self, message: TherapyMessage) -> str:
        try:
            return self._crypto.decrypt(message.text_cipher, message.text_iv, message.text_auth_tag)
        except IntegrityError:
            logger.warning(
                "therapy_message_undecryptable",
                conversation_id=str(message.conversation_id),
                message_id=str(message.id),
            )
            return UNDECRYPTABLE_PLACEHOLDER

    def _message_view(self, message: TherapyMessage, reader_id: UUID) -> MessageView:
        sender = message.sender
        return MessageView(
            id=message.id,
            text=self._decrypt_or_placeholder(message),
            sent_at=as_utc(message.sent_at),
            sender=MessageSender(
                id=message.sender_id,
                name=(sender.name if sender is not None else "") or "",
                role=sender.role.value if sender is not None and sender.role else "",
                is_me=message.sender_id == reader_id,
            ),
        )

    def project_for_reader(self, conversation_id, reader_id) -> ThreadView:
        """
        Decrypt a thread for one reader, oldest message first.

        A message that fails to decrypt is shown as a placeholder; the rest
        of the thread is unaffected.
        """
        conversation_uuid = parse_uuid(conversation_id, "conversation id")
        reader_uuid = parse_uuid(reader_id, "reader id")

        db = self._session_factory()
        try:
            conversation = (
                db.query(TherapyConversation)
                .options(
                    joinedload(TherapyConversation.user),
                    joinedload(TherapyConversation.therapist),
                    selectinload(TherapyConversation.messages).joinedload(TherapyMessage.sender),
                )
                .filter(TherapyConversation.id == conversation_uuid)
                .first()
            )
            if conversation is None:
                raise NotFoundError("Conversation not found.")

            return ThreadView(
                id=conversation.id,
                participants=ThreadParticipants(
                    user=ParticipantRead.model_validate(conversation.user),
                    therapist=ParticipantRead.model_validate(conversation.therapist),
                ),
                messages=[self._message_view(m, reader_uuid) for m in conversation.messages],
                updated_at=as_utc(conversation.updated_at),
            )
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Request-level operations
    # ------------------------------------------------------------------

    def get_thread(
        self,
        requester_id,
        requester_role: str,
        target_user_id=None,
        ip_address: str = "unknown",
    ) -> ThreadView:
        """Open (creating if needed) and decrypt the requester's thread."""
        self._require_crypto()

        user_id, therapist_id = self.resolve_participants(requester_id, requester_role, target_user_id)
        conversation_id = self.get_or_create_thread(user_id, therapist_id)
        thread = self.project_for_reader(conversation_id, requester_id)

        self._audit.log_phi_access(
            user_id=str(requester_id),
            resource_type="therapy_conversation",
            resource_id=str(conversation_id),
            details={"message_count": len(thread.messages)},
            ip_address=ip_address,
        )
        return thread

    def send_message(
        self,
        requester_id,
        requester_role: str,
        text,
        target_user_id=None,
        now: Optional[datetime] = None,
        ip_address: str = "unknown",
    ) -> SentMessage:
        """Validate, encrypt and store a message from the requester."""
        self._require_crypto()

        user_id, therapist_id = self.resolve_participants(requester_id, requester_role, target_user_id)
        cleaned = clean_message_text(text)

        conversation_id = self.get_or_create_thread(user_id, therapist_id)
        message_id = self.append_message(conversation_id, requester_id, cleaned, now=now)

        reader_uuid = parse_uuid(requester_id, "user id")
        db = self._session_factory()
        try:
            message = (
                db.query(TherapyMessage)
                .options(joinedload(TherapyMessage.sender), joinedload(TherapyMessage.conversation))
                .filter(TherapyMessage.id == message_id)
                .first()
            )
            result = SentMessage(
                conversation_id=conversation_id,
                message=self._message_view(message, reader_uuid) if message is not None else None,
                updated_at=as_utc(message.conversation.updated_at) if message is not None else None,
            )
        finally:
            db.close()

        self._audit.log_phi_modification(
            user_id=str(requester_id),
            resource_type="therapy_message",
            resource_id=str(message_id),
            action=AuditAction.CREATE,
            details={"conversation_id": str(conversation_id)},
            ip_address=ip_address,
        )
        return result
