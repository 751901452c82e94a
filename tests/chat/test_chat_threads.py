"""
Therapy Chat Tests

Tests verify:
1. AES-GCM round trip and tamper detection
2. Key parsing (hex, base64, invalid)
3. Participant resolution and access control
4. Idempotent thread creation and sequence retries under contention
5. Bounded history (newest 500 kept)
6. Undecryptable messages become placeholders without failing the thread
"""

import base64
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import exc as sa_exc

from src.models.base import utc_now
from src.models.conversation import (
    MAX_THREAD_MESSAGES,
    UNDECRYPTABLE_PLACEHOLDER,
    TherapyConversation,
    TherapyMessage,
)
from src.models.user import UserRole
from src.services.audit import AuditService
from src.services.chat_crypto import ChatCrypto, parse_key
from src.services.chat_threads import ChatThreadService, clean_message_text
from src.services.errors import (
    AuthorizationError,
    ConfigurationError,
    IntegrityError,
    NotFoundError,
    ValidationError,
)

TEST_CHAT_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def crypto():
    return ChatCrypto(key=TEST_CHAT_KEY)


@pytest.fixture
def audit():
    return MagicMock(spec=AuditService)


@pytest.fixture
def service(session_factory, crypto, audit):
    return ChatThreadService(session_factory=session_factory, crypto=crypto, audit_service=audit)


def _tamper(b64_value: str) -> str:
    raw = bytearray(base64.b64decode(b64_value))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


# =============================================================================
# ChatCrypto
# =============================================================================

class TestChatCrypto:
    """AES-256-GCM message encryption."""

    def test_round_trip(self, crypto):
        encrypted = crypto.encrypt("hello")
        assert crypto.decrypt(encrypted.cipher, encrypted.iv, encrypted.auth_tag) == "hello"

    def test_fresh_nonce_per_message(self, crypto):
        first = crypto.encrypt("same text")
        second = crypto.encrypt("same text")
        assert first.iv != second.iv
        assert first.cipher != second.cipher

    def test_nonce_and_tag_lengths(self, crypto):
        encrypted = crypto.encrypt("hello")
        assert len(base64.b64decode(encrypted.iv)) == 12
        assert len(base64.b64decode(encrypted.auth_tag)) == 16

    def test_tampered_tag_fails(self, crypto):
        encrypted = crypto.encrypt("hello")
        with pytest.raises(IntegrityError):
            crypto.decrypt(encrypted.cipher, encrypted.iv, _tamper(encrypted.auth_tag))

    def test_tampered_cipher_fails(self, crypto):
        encrypted = crypto.encrypt("hello")
        with pytest.raises(IntegrityError):
            crypto.decrypt(_tamper(encrypted.cipher), encrypted.iv, encrypted.auth_tag)

    def test_missing_field_fails(self, crypto):
        encrypted = crypto.encrypt("hello")
        with pytest.raises(IntegrityError):
            crypto.decrypt(encrypted.cipher, "", encrypted.auth_tag)

    def test_malformed_base64_fails(self, crypto):
        encrypted = crypto.encrypt("hello")
        with pytest.raises(IntegrityError):
            crypto.decrypt("!!not-base64!!", encrypted.iv, encrypted.auth_tag)

    def test_wrong_key_fails(self, crypto):
        encrypted = crypto.encrypt("hello")
        other = ChatCrypto(key="ff" * 32)
        with pytest.raises(IntegrityError):
            other.decrypt(encrypted.cipher, encrypted.iv, encrypted.auth_tag)

    def test_missing_key_refuses_to_encrypt(self, monkeypatch):
        monkeypatch.delenv("CHAT_ENCRYPTION_KEY", raising=False)
        crypto = ChatCrypto()
        assert crypto.is_ready() is False
        with pytest.raises(ConfigurationError):
            crypto.encrypt("hello")

    def test_parse_key_formats(self):
        raw = bytes(range(32))
        assert parse_key(raw.hex()) == raw
        assert parse_key(base64.b64encode(raw).decode()) == raw
        assert parse_key(base64.b64encode(b"short").decode()) is None
        assert parse_key("") is None
        assert parse_key(None) is None


# =============================================================================
# Text validation
# =============================================================================

class TestCleanMessageText:

    def test_strips_control_characters_and_whitespace(self):
        assert clean_message_text("  hi\x00 there\x07  ") == "hi there"

    def test_keeps_newlines_and_tabs(self):
        assert clean_message_text("line one\n\tline two") == "line one\n\tline two"

    def test_empty_rejected(self):
        with pytest.raises(ValidationError, match="text is required"):
            clean_message_text("  \x01  ")

    def test_too_long_rejected(self):
        with pytest.raises(ValidationError, match="max 2000"):
            clean_message_text("x" * 2001)

    def test_exactly_max_accepted(self):
        assert len(clean_message_text("x" * 2000)) == 2000


# =============================================================================
# Participant resolution
# =============================================================================

class TestResolveParticipants:

    def test_client_gets_assigned_therapist(self, service, client_id, therapist_id):
        assert service.resolve_participants(client_id, "user") == (client_id, therapist_id)

    def test_client_without_therapist_rejected(self, service, make_user):
        lonely = make_user()
        with pytest.raises(ValidationError, match="No therapist assigned"):
            service.resolve_participants(lonely, "user")

    def test_therapist_must_name_client(self, service, therapist_id):
        with pytest.raises(ValidationError, match="user_id is required"):
            service.resolve_participants(therapist_id, "therapist")

    def test_therapist_opens_assigned_client(self, service, client_id, therapist_id):
        assert service.resolve_participants(therapist_id, "therapist", str(client_id)) == (client_id, therapist_id)

    def test_therapist_cannot_open_other_client(self, service, make_user, therapist_id):
        other_therapist = make_user(role=UserRole.THERAPIST)
        stranger = make_user(therapist_id=other_therapist)
        with pytest.raises(AuthorizationError):
            service.resolve_participants(therapist_id, "therapist", str(stranger))

    def test_therapist_target_must_be_client(self, service, make_user, therapist_id):
        admin = make_user(role=UserRole.ADMIN)
        with pytest.raises(NotFoundError):
            service.resolve_participants(therapist_id, "therapist", str(admin))

    def test_admin_rejected(self, service, make_user):
        admin = make_user(role=UserRole.ADMIN)
        with pytest.raises(AuthorizationError):
            service.resolve_participants(admin, "admin")


# =============================================================================
# Threads
# =============================================================================

class TestThreads:

    def test_get_or_create_is_idempotent(self, service, session_factory, client_id, therapist_id):
        first = service.get_or_create_thread(client_id, therapist_id)
        second = service.get_or_create_thread(client_id, therapist_id)
        assert first == second

        db = session_factory()
        try:
            assert db.query(TherapyConversation).count() == 1
        finally:
            db.close()

    def test_concurrent_create_returns_winner(self, service, session_factory, monkeypatch, client_id, therapist_id):
        winner = service.get_or_create_thread(client_id, therapist_id)

        lookup = ChatThreadService._find_thread
        misses = [None]

        def stale_lookup(db, user_id, therapist_id):
            if misses:
                return misses.pop()
            return lookup(db, user_id, therapist_id)

        monkeypatch.setattr(ChatThreadService, "_find_thread", staticmethod(stale_lookup))
        assert service.get_or_create_thread(client_id, therapist_id) == winner

        db = session_factory()
        try:
            assert db.query(TherapyConversation).count() == 1
        finally:
            db.close()

    def test_seq_collision_retries_with_next_seq(self, service, session_factory, monkeypatch, client_id, therapist_id):
        conversation_id = service.get_or_create_thread(client_id, therapist_id)
        service.append_message(conversation_id, client_id, "first")

        last_seq = ChatThreadService._last_seq
        stale = [0]

        def racing_last_seq(db, conversation_id):
            if stale:
                return stale.pop()
            return last_seq(db, conversation_id)

        monkeypatch.setattr(ChatThreadService, "_last_seq", staticmethod(racing_last_seq))
        service.append_message(conversation_id, client_id, "second")

        db = session_factory()
        try:
            seqs = [row.seq for row in db.query(TherapyMessage).order_by(TherapyMessage.seq)]
            assert seqs == [1, 2]
        finally:
            db.close()

    def test_seq_collision_gives_up_after_retries(self, service, session_factory, monkeypatch, client_id, therapist_id):
        conversation_id = service.get_or_create_thread(client_id, therapist_id)
        service.append_message(conversation_id, client_id, "first")

        monkeypatch.setattr(ChatThreadService, "_last_seq", staticmethod(lambda db, conversation_id: 0))
        with pytest.raises(sa_exc.IntegrityError):
            service.append_message(conversation_id, client_id, "second")

        db = session_factory()
        try:
            assert db.query(TherapyMessage).count() == 1
        finally:
            db.close()

    def test_send_then_read_both_sides(self, service, client_id, therapist_id):
        sent = service.send_message(client_id, "user", "  I had a rough week\x00 ")
        assert sent.message.text == "I had a rough week"
        assert sent.message.sender.is_me is True

        client_view = service.get_thread(client_id, "user")
        therapist_view = service.get_thread(therapist_id, "therapist", str(client_id))

        assert client_view.id == therapist_view.id == sent.conversation_id
        assert [m.text for m in client_view.messages] == ["I had a rough week"]
        assert client_view.messages[0].sender.is_me is True
        assert therapist_view.messages[0].sender.is_me is False
        assert therapist_view.messages[0].sender.role == "user"

    def test_messages_stored_encrypted(self, service, session_factory, client_id):
        service.send_message(client_id, "user", "secret words")
        db = session_factory()
        try:
            stored = db.query(TherapyMessage).one()
            assert "secret words" not in stored.text_cipher
            assert stored.text_iv and stored.text_auth_tag
        finally:
            db.close()

    def test_send_audits_modification(self, service, audit, client_id):
        service.send_message(client_id, "user", "hello")
        audit.log_phi_modification.assert_called_once()

    def test_get_thread_audits_access(self, service, audit, client_id):
        service.get_thread(client_id, "user")
        audit.log_phi_access.assert_called_once()

    def test_missing_key_blocks_thread(self, session_factory, audit, client_id, monkeypatch):
        monkeypatch.delenv("CHAT_ENCRYPTION_KEY", raising=False)
        service = ChatThreadService(session_factory=session_factory, crypto=ChatCrypto(), audit_service=audit)
        with pytest.raises(ConfigurationError):
            service.get_thread(client_id, "user")

    def test_append_to_missing_conversation(self, service, client_id):
        with pytest.raises(NotFoundError):
            service.append_message("00000000-0000-0000-0000-000000000000", client_id, "hello")

    def test_history_bounded(self, service, session_factory, client_id, therapist_id):
        conversation_id = service.get_or_create_thread(client_id, therapist_id)
        start = utc_now() - timedelta(days=1)
        for i in range(MAX_THREAD_MESSAGES + 1):
            service.append_message(conversation_id, client_id, f"m{i}", now=start + timedelta(seconds=i))

        db = session_factory()
        try:
            seqs = [
                row.seq
                for row in db.query(TherapyMessage.seq)
                .filter(TherapyMessage.conversation_id == conversation_id)
                .order_by(TherapyMessage.seq)
            ]
        finally:
            db.close()

        assert len(seqs) == MAX_THREAD_MESSAGES
        assert seqs[0] == 2
        assert seqs[-1] == MAX_THREAD_MESSAGES + 1

        thread = service.project_for_reader(conversation_id, client_id)
        assert thread.messages[0].text == "m1"
        assert thread.messages[-1].text == f"m{MAX_THREAD_MESSAGES}"

    def test_tampered_message_becomes_placeholder(self, service, session_factory, client_id, therapist_id):
        conversation_id = service.get_or_create_thread(client_id, therapist_id)
        service.append_message(conversation_id, client_id, "first")
        bad_id = service.append_message(conversation_id, therapist_id, "second")
        service.append_message(conversation_id, client_id, "third")

        db = session_factory()
        try:
            bad = db.get(TherapyMessage, bad_id)
            bad.text_auth_tag = _tamper(bad.text_auth_tag)
            db.commit()
        finally:
            db.close()

        thread = service.project_for_reader(conversation_id, client_id)
        assert [m.text for m in thread.messages] == ["first", UNDECRYPTABLE_PLACEHOLDER, "third"]
