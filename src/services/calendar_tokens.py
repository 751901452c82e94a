"""
Calendar Token Manager

Owns the Calendly OAuth token lifecycle for each therapist:
- Connect flow (signed state, code exchange, identity lookup)
- Silent refresh of expired access tokens
- Forced disconnect when the provider reports a revoked grant
- Connection status and manual disconnect

Refreshes for one therapist are serialized in-process; different
therapists never wait on each other.
"""

import os
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode, urlparse, urlunparse, parse_qsl
from uuid import UUID

import structlog
from jose import JWTError, jwt

from src.models.audit_log import AuditAction
from src.models.base import as_utc, utc_now
from src.models.therapist_profile import (
    CalendarConnectionStatus,
    TherapistProfile,
    TherapistProfileRead,
)
from src.services.access import parse_uuid
from src.services.audit import AuditService
from src.services.calendly_client import CalendlyAPIError, CalendlyClient
from src.services.errors import (
    CalendarProviderError,
    ConfigurationError,
    InvalidGrantError,
    NotConnectedError,
    ReconnectRequiredError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

STATE_TOKEN_TYPE = "calendly_oauth_state"
STATE_TOKEN_TTL = timedelta(minutes=10)
STATE_ALGORITHM = "HS256"
DEFAULT_EXPIRES_IN = 3600  # seconds, when the provider omits expires_in
DEFAULT_FRONTEND_REDIRECT = "http://localhost:5173/connect-calendly"


def _to_uuid(value) -> UUID:
    return parse_uuid(value, "therapist id")


def _expires_at(token_data: dict, now: datetime) -> datetime:
    try:
        expires_in = int(token_data.get("expires_in") or DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN
    return now + timedelta(seconds=expires_in)


class CalendarTokenManager:
    """
    Manages Calendly credentials stored on therapist profiles.

    Args:
        session_factory: SQLAlchemy session factory.
        client: Calendly API client. Defaults to one built from env.
        audit_service: Optional audit service.
        state_secret: HMAC secret for OAuth state tokens. Defaults to
            ``OAUTH_STATE_SECRET``.
    """

    def __init__(
        self,
        session_factory: Callable,
        client: Optional[CalendlyClient] = None,
        audit_service: Optional[AuditService] = None,
        state_secret: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self._client = client or CalendlyClient()
        self._audit = audit_service or AuditService(session_factory=session_factory)
        self._state_secret = state_secret or os.environ.get("OAUTH_STATE_SECRET", "")
        self._locks: dict[UUID, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def client(self) -> CalendlyClient:
        return self._client

    def _lock_for(self, therapist_id: UUID) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(therapist_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[therapist_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Profile access
    # ------------------------------------------------------------------

    def get_profile(self, therapist_id) -> Optional[TherapistProfileRead]:
        """Load a therapist profile snapshot, or None."""
        db = self._session_factory()
        try:
            profile = (
                db.query(TherapistProfile)
                .filter(TherapistProfile.user_id == _to_uuid(therapist_id))
                .first()
            )
            return TherapistProfileRead.model_validate(profile) if profile else None
        finally:
            db.close()

    def _update_profile(self, therapist_id: UUID, upsert: bool = False, **fields) -> None:
        db = self._session_factory()
        try:
            profile = db.query(TherapistProfile).filter(TherapistProfile.user_id == therapist_id).first()
            if profile is None:
                if not upsert:
                    return
                profile = TherapistProfile(user_id=therapist_id)
                db.add(profile)
            for key, value in fields.items():
                setattr(profile, key, value)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def ensure_valid_token(self, profile: TherapistProfileRead, now: Optional[datetime] = None) -> str:
        """
        Return a usable access token, refreshing it if it has expired.

        Args:
            profile: Snapshot of the therapist profile.
            now: Reference time (defaults to current UTC time).

        Returns:
            The current or freshly refreshed access token.

        Raises:
            NotConnectedError: No access token stored.
            ReconnectRequiredError: Token expired and no refresh token stored.
            InvalidGrantError: Provider revoked the grant; credentials cleared.
            CalendarProviderError: Refresh failed for any other reason.
        """
        now = now or utc_now()

        if not profile.calendly_access_token:
            raise NotConnectedError("Calendly access token is missing. Please reconnect Calendly.")

        expires_at = as_utc(profile.calendly_token_expires_at)
        if expires_at is None or expires_at > now:
            return profile.calendly_access_token

        if not profile.calendly_refresh_token:
            raise ReconnectRequiredError("Calendly token expired. Please reconnect Calendly.")

        therapist_id = _to_uuid(profile.user_id)
        with self._lock_for(therapist_id):
            refresh_token = profile.calendly_refresh_token

            # Another request may have refreshed while we waited on the lock
            stored = self.get_profile(therapist_id)
            if stored is not None:
                stored_expiry = as_utc(stored.calendly_token_expires_at)
                if stored.calendly_access_token and stored_expiry is not None and stored_expiry > now:
                    return stored.calendly_access_token
                if not stored.calendly_refresh_token:
                    raise ReconnectRequiredError("Calendly token expired. Please reconnect Calendly.")
                refresh_token = stored.calendly_refresh_token

            return self._refresh(therapist_id, refresh_token, now)

    def _refresh(self, therapist_id: UUID, refresh_token: str, now: datetime) -> str:
        try:
            token_data = self._client.refresh_token(refresh_token)
        except CalendlyAPIError as e:
            if e.is_invalid_grant:
                logger.warning("calendly_grant_revoked", therapist_id=str(therapist_id))
                self.clear_credentials(therapist_id)
                raise InvalidGrantError(
                    "Calendly authorization was revoked or expired. Please reconnect Calendly."
                ) from e
            logger.error(
                "calendly_token_refresh_failed",
                therapist_id=str(therapist_id),
                status_code=e.status_code,
            )
            raise CalendarProviderError(str(e)) from e

        access_token = token_data["access_token"]
        expires_at = _expires_at(token_data, now)
        self._update_profile(
            therapist_id,
            calendly_access_token=access_token,
            # Keep the previous refresh token when the provider does not rotate it
            calendly_refresh_token=token_data.get("refresh_token") or refresh_token,
            calendly_token_expires_at=expires_at,
        )
        logger.info(
            "calendly_token_refreshed",
            therapist_id=str(therapist_id),
            expires_at=expires_at.isoformat(),
        )
        return access_token

    def clear_credentials(self, therapist_id) -> None:
        """Disconnect after a revoked grant. Identity URIs are kept."""
        therapist_id = _to_uuid(therapist_id)
        self._update_profile(
            therapist_id,
            calendly_connected=False,
            calendly_access_token=None,
            calendly_refresh_token=None,
            calendly_token_expires_at=None,
        )
        self._audit.log_integration_change(
            therapist_id=str(therapist_id),
            action=AuditAction.DISCONNECT,
            details={"reason": "invalid_grant"},
        )

    # ------------------------------------------------------------------
    # Connect flow
    # ------------------------------------------------------------------

    def _require_state_secret(self) -> str:
        if not self._state_secret:
            raise ConfigurationError("OAuth state secret is not configured. Set OAUTH_STATE_SECRET.")
        return self._state_secret

    def create_state(self, therapist_id, now: Optional[datetime] = None) -> str:
        """Sign a short-lived state token binding the OAuth flow to a therapist."""
        now = now or utc_now()
        claims = {
            "therapist_id": str(therapist_id),
            "type": STATE_TOKEN_TYPE,
            "exp": now + STATE_TOKEN_TTL,
        }
        return jwt.encode(claims, self._require_state_secret(), algorithm=STATE_ALGORITHM)

    def parse_state(self, state: str) -> Optional[UUID]:
        """Return the therapist id from a valid state token, else None."""
        try:
            claims = jwt.decode(state, self._require_state_secret(), algorithms=[STATE_ALGORITHM])
        except JWTError:
            return None

        if claims.get("type") != STATE_TOKEN_TYPE or not claims.get("therapist_id"):
            return None
        try:
            return UUID(str(claims["therapist_id"]))
        except ValueError:
            return None

    def build_connect_url(self, therapist_id) -> str:
        """Authorization URL for a therapist to connect Calendly."""
        return self._client.authorization_url(self.create_state(therapist_id))

    def complete_connect(self, code: str, state: str, now: Optional[datetime] = None) -> CalendarConnectionStatus:
        """
        Finish the OAuth callback: exchange the code and store credentials.

        Raises:
            ValidationError: Missing code/state or invalid state.
            CalendarProviderError: Provider rejected the exchange.
        """
        now = now or utc_now()
        if not code or not state:
            raise ValidationError("Missing OAuth code or state.")

        therapist_id = self.parse_state(state)
        if therapist_id is None:
            raise ValidationError("Invalid OAuth state.")

        try:
            token_data = self._client.exchange_code(code)
            calendly_user = self._client.get_current_user(token_data["access_token"])
        except CalendlyAPIError as e:
            raise CalendarProviderError(str(e)) from e

        user_uri = calendly_user.get("uri") or ""
        organization_uri = calendly_user.get("current_organization") or ""
        scheduling_url = calendly_user.get("scheduling_url") or ""
        connected = bool(user_uri or organization_uri or scheduling_url)

        self._update_profile(
            therapist_id,
            upsert=True,
            calendly_connected=connected,
            calendly_user_uri=user_uri,
            calendly_organization_uri=organization_uri,
            calendly_url=scheduling_url,
            calendly_connected_at=now if connected else None,
            calendly_access_token=token_data.get("access_token"),
            calendly_refresh_token=token_data.get("refresh_token"),
            calendly_token_expires_at=_expires_at(token_data, now),
        )
        self._audit.log_integration_change(
            therapist_id=str(therapist_id),
            action=AuditAction.CONNECT,
            details={"connected": connected},
        )
        logger.info("calendly_connected", therapist_id=str(therapist_id), connected=connected)
        return self.connection_status(therapist_id)

    @staticmethod
    def callback_redirect_url(status: str, message: Optional[str] = None) -> str:
        """Front-end URL that receives the outcome of the OAuth callback."""
        base = os.environ.get("CALENDLY_CONNECT_REDIRECT_FRONTEND", DEFAULT_FRONTEND_REDIRECT)
        parts = urlparse(base)
        query = dict(parse_qsl(parts.query))
        query["status"] = status
        if message:
            query["message"] = message
        return urlunparse(parts._replace(query=urlencode(query)))

    # ------------------------------------------------------------------
    # Status / disconnect
    # ------------------------------------------------------------------

    def connection_status(self, therapist_id) -> CalendarConnectionStatus:
        """Report whether the integration is usable or needs a reconnect."""
        profile = self.get_profile(therapist_id)
        if profile is None:
            return CalendarConnectionStatus(calendly_connected=False, reconnect_required=False)

        has_token = bool(profile.calendly_access_token or profile.calendly_refresh_token)
        has_identity = bool(
            profile.calendly_user_uri or profile.calendly_organization_uri or profile.calendly_url
        )

        return CalendarConnectionStatus(
            calendly_connected=bool(profile.calendly_connected and has_identity and has_token),
            reconnect_required=bool(profile.calendly_connected and has_identity and not has_token),
            calendly_user_uri=profile.calendly_user_uri or "",
            calendly_organization_uri=profile.calendly_organization_uri or "",
            calendly_url=profile.calendly_url or "",
            calendly_connected_at=as_utc(profile.calendly_connected_at),
        )

    def disconnect(self, therapist_id) -> None:
        """Clear every stored calendar field for a therapist."""
        therapist_id = _to_uuid(therapist_id)
        self._update_profile(
            therapist_id,
            upsert=True,
            calendly_connected=False,
            calendly_user_uri=None,
            calendly_organization_uri=None,
            calendly_url=None,
            calendly_connected_at=None,
            calendly_access_token=None,
            calendly_refresh_token=None,
            calendly_token_expires_at=None,
        )
        self._audit.log_integration_change(
            therapist_id=str(therapist_id),
            action=AuditAction.DISCONNECT,
            details={"reason": "therapist_request"},
        )
        logger.info("calendly_disconnected", therapist_id=str(therapist_id))
