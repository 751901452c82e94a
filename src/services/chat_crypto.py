"""
Chat Encryption Service

AES-256-GCM encryption for therapy chat messages.

Each message is stored as three base64 fields that must always travel
together:
    text_cipher   - ciphertext without the tag
    text_iv       - 12-byte random nonce, fresh per message
    text_auth_tag - 16-byte GCM authentication tag

The key is a single process-wide secret from ``CHAT_ENCRYPTION_KEY``,
given either as 64 hex characters or as base64 of 32 raw bytes. Without
it the chat subsystem refuses to run rather than storing plaintext.
"""

import base64
import binascii
import os
import re
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.services.errors import ConfigurationError, IntegrityError

_NONCE_LENGTH = 12  # 96-bit nonce for AES-GCM
_TAG_LENGTH = 16
_KEY_LENGTH = 32
_HEX_KEY_RE = re.compile(r"^[a-fA-F0-9]{64}$")

KEY_VERSION = 1
MISSING_KEY_MESSAGE = (
    "Secure chat encryption is not configured. Set CHAT_ENCRYPTION_KEY in backend env."
)


@dataclass(frozen=True)
class EncryptedText:
    """Encrypted message fields as persisted."""
    cipher: str
    iv: str
    auth_tag: str
    key_version: int = KEY_VERSION


def parse_key(raw: Optional[str]) -> Optional[bytes]:
    """Decode a configured key, or return None if it is absent or invalid."""
    raw = (raw or "").strip()
    if not raw:
        return None

    if _HEX_KEY_RE.match(raw):
        return bytes.fromhex(raw)

    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        return None
    return key if len(key) == _KEY_LENGTH else None


class ChatCrypto:
    """
    Encrypts and decrypts chat text with a fixed AES-256 key.

    Args:
        key: Raw key string (hex or base64). Falls back to the
            ``CHAT_ENCRYPTION_KEY`` environment variable.
    """

    def __init__(self, key: Optional[str] = None):
        raw = key if key is not None else os.environ.get("CHAT_ENCRYPTION_KEY")
        self._key = parse_key(raw)

    def is_ready(self) -> bool:
        """Whether a valid 256-bit key is configured."""
        return self._key is not None

    def _aesgcm(self) -> AESGCM:
        if self._key is None:
            raise ConfigurationError(MISSING_KEY_MESSAGE)
        return AESGCM(self._key)

    def encrypt(self, plaintext: str) -> EncryptedText:
        """
        Encrypt *plaintext* under a fresh random nonce.

        Raises:
            ConfigurationError: If no key is configured.
        """
        aesgcm = self._aesgcm()
        nonce = os.urandom(_NONCE_LENGTH)
        ct_with_tag = aesgcm.encrypt(nonce, (plaintext or "").encode("utf-8"), None)

        return EncryptedText(
            cipher=base64.b64encode(ct_with_tag[:-_TAG_LENGTH]).decode("ascii"),
            iv=base64.b64encode(nonce).decode("ascii"),
            auth_tag=base64.b64encode(ct_with_tag[-_TAG_LENGTH:]).decode("ascii"),
        )

    def decrypt(
        self,
        cipher: Optional[str],
        iv: Optional[str],
        auth_tag: Optional[str],
    ) -> str:
        """
        Decrypt a stored message.

        Raises:
            ConfigurationError: If no key is configured.
            IntegrityError: If any field is missing or malformed, or the
                authentication tag does not verify.
        """
        aesgcm = self._aesgcm()

        if cipher is None or not iv or not auth_tag:
            raise IntegrityError("Encrypted message is incomplete")

        try:
            ct = base64.b64decode(cipher, validate=True)
            nonce = base64.b64decode(iv, validate=True)
            tag = base64.b64decode(auth_tag, validate=True)
        except (binascii.Error, ValueError) as e:
            raise IntegrityError(f"Encrypted message is malformed: {e}") from e

        if len(nonce) != _NONCE_LENGTH or len(tag) != _TAG_LENGTH:
            raise IntegrityError("Encrypted message has an invalid nonce or tag length")

        try:
            plaintext_bytes = aesgcm.decrypt(nonce, ct + tag, None)
        except InvalidTag as e:
            raise IntegrityError("Message authentication failed") from e

        try:
            return plaintext_bytes.decode("utf-8")
        except UnicodeDecodeError as e:
            raise IntegrityError("Decrypted message is not valid UTF-8") from e


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_chat_crypto: Optional[ChatCrypto] = None


def get_chat_crypto() -> ChatCrypto:
    """Return the process-wide ChatCrypto, reading the key on first use."""
    global _chat_crypto
    if _chat_crypto is None:
        _chat_crypto = ChatCrypto()
    return _chat_crypto


def set_chat_crypto(crypto: Optional[ChatCrypto]) -> None:
    """Replace the process-wide ChatCrypto (for testing)."""
    global _chat_crypto
    _chat_crypto = crypto
