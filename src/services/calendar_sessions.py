"""
Calendar Event Reconciler

Maps Calendly scheduled events and stored appointments into session views:
- Today's sessions for the therapist dashboard
- Live fallback lookup for clients with no stored sessions
- Webhook ingestion (invitee.created / invitee.canceled)
- Therapist bookings list

Provider fields are read through ordered fallback paths: the first
non-blank value wins and a missing path never raises.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional
from uuid import UUID

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import joinedload

from src.models.appointment import (
    Appointment,
    AppointmentRead,
    AppointmentStatus,
    SessionStage,
    SessionView,
    TodaySession,
    TodaySessions,
    WebhookResult,
)
from src.models.base import as_utc, parse_datetime, utc_now
from src.models.therapist_profile import TherapistProfile, TherapistProfileRead
from src.models.user import User
from src.services.access import parse_uuid
from src.services.calendar_tokens import CalendarTokenManager
from src.services.calendly_client import CalendlyAPIError
from src.services.errors import CalendarError, CalendarProviderError, NotConnectedError

logger = structlog.get_logger(__name__)

FALLBACK_LOOKBACK = timedelta(hours=6)
UPCOMING_LABEL_WINDOW_MINUTES = 120
DEFAULT_SESSION_TYPE = "Therapy Session"
DEFAULT_CLIENT_NAME = "Booked Client"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Fallback-path helpers
# =============================================================================

Path = tuple[Any, ...]

# Webhook body paths, relative to body["payload"]
EVENT_URI_PATHS: tuple[Path, ...] = (("event",), ("scheduled_event", "uri"))
INVITEE_URI_PATHS: tuple[Path, ...] = (("uri",), ("invitee", "uri"))
TRACKING_PATHS: tuple[Path, ...] = (
    ("tracking",),
    ("invitee", "tracking"),
    ("scheduled_event", "tracking"),
)
USER_ID_ANSWER_PATHS: tuple[Path, ...] = (
    ("questions_and_answers", 0, "answer"),
    ("questions_and_answers", 0, "value"),
)
CALENDAR_USER_URI_PATHS: tuple[Path, ...] = (
    ("scheduled_event", "event_memberships", 0, "user"),
    ("event_memberships", 0, "user"),
    ("scheduled_event", "created_by"),
)
EMAIL_PATHS: tuple[Path, ...] = (("email",), ("invitee", "email"))
NAME_PATHS: tuple[Path, ...] = (("name",), ("invitee", "name"))
TIMEZONE_PATHS: tuple[Path, ...] = (("timezone",), ("scheduled_event", "timezone"))
SESSION_TYPE_PATHS: tuple[Path, ...] = (("scheduled_event", "name"), ("event_type", "name"))

# Stored raw webhook body paths, used by session overviews
JOIN_URL_PATHS: tuple[Path, ...] = (
    ("payload", "scheduled_event", "location", "join_url"),
    ("payload", "scheduled_event", "location", "location"),
)
RESCHEDULE_URL_PATHS: tuple[Path, ...] = (
    ("payload", "reschedule_url"),
    ("payload", "invitee", "reschedule_url"),
)
CANCEL_URL_PATHS: tuple[Path, ...] = (
    ("payload", "cancel_url"),
    ("payload", "invitee", "cancel_url"),
)

# Live event paths
EVENT_JOIN_URL_PATHS: tuple[Path, ...] = (
    ("location", "join_url"),
    ("location", "location"),
    ("location", "additional_info"),
)


def dig(data: Any, *path: Any) -> Any:
    """Follow *path* through nested dicts/lists, returning None when it breaks."""
    for key in path:
        if isinstance(key, int):
            if not isinstance(data, list) or len(data) <= key:
                return None
            data = data[key]
        else:
            if not isinstance(data, dict):
                return None
            data = data.get(key)
    return data


def first_string(values: Iterable[Any]) -> str:
    """First non-blank string in *values*, trimmed, else ''."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def first_string_at(data: Any, paths: Iterable[Path]) -> str:
    return first_string(dig(data, *path) for path in paths)


def first_dict_at(data: Any, paths: Iterable[Path]) -> dict:
    for path in paths:
        value = dig(data, *path)
        if isinstance(value, dict) and value:
            return value
    return {}


def _as_uuid_or_none(value: str) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


def session_links(raw_payload: Optional[dict]) -> dict[str, str]:
    """Join / reschedule / cancel URLs from a stored webhook body."""
    return {
        "join_url": first_string_at(raw_payload, JOIN_URL_PATHS),
        "reschedule_url": first_string_at(raw_payload, RESCHEDULE_URL_PATHS),
        "cancel_url": first_string_at(raw_payload, CANCEL_URL_PATHS),
    }


# =============================================================================
# Pure derivations
# =============================================================================

def derive_stage(
    start: Optional[datetime],
    end: Optional[datetime],
    now: datetime,
    started_without_end_is_previous: bool = True,
) -> SessionStage:
    """
    Position of a session relative to *now*.

    ``current`` when start <= now <= end, ``previous`` when the end has
    passed (or, unless disabled, the session started and has no end),
    otherwise ``upcoming``.
    """
    start, end = as_utc(start), as_utc(end)

    if start is not None and end is not None and start <= now <= end:
        return SessionStage.CURRENT
    if end is not None and now > end:
        return SessionStage.PREVIOUS
    if started_without_end_is_previous and end is None and start is not None and now > start:
        return SessionStage.PREVIOUS
    return SessionStage.UPCOMING


def compute_session_status(
    start: Optional[datetime],
    end: Optional[datetime],
    now: datetime,
) -> tuple[str, str]:
    """Dashboard status and label for an event window."""
    start, end = as_utc(start), as_utc(end)

    if end is not None and now >= end:
        return "completed", "Completed"
    if start is not None and end is not None and start <= now < end:
        return "active", "In Progress"
    if start is not None:
        minutes_until = max(0, math.floor((start - now).total_seconds() / 60 + 0.5))
        if minutes_until <= UPCOMING_LABEL_WINDOW_MINUTES:
            return "upcoming", f"{minutes_until}m until"
    return "upcoming", "Upcoming"


def session_channel(event: dict) -> str:
    """Human label for how an event takes place."""
    location_type = str(dig(event, "location", "type") or "").lower()

    if any(kind in location_type for kind in ("zoom", "google_conference", "microsoft_teams")):
        return "Video Call"
    if "phone" in location_type:
        return "Audio Call"
    if "in_person" in location_type:
        return "In Person"
    return "Session"


def event_to_session_view(
    event: dict,
    invitee: Optional[dict],
    therapist_name: str,
    now: datetime,
) -> SessionView:
    """Map a live Calendly event and its invitee into a client session view."""
    scheduled_at = parse_datetime(event.get("start_time"))
    ends_at = parse_datetime(event.get("end_time"))
    invitee = invitee or {}

    return SessionView(
        id=first_string((event.get("uri"), event.get("uuid"))),
        scheduled_at=scheduled_at,
        ends_at=ends_at,
        timezone="UTC" if scheduled_at else "",
        session_type=first_string((event.get("name"),)) or DEFAULT_SESSION_TYPE,
        therapist_name=therapist_name,
        status=AppointmentStatus.SCHEDULED.value,
        stage=derive_stage(scheduled_at, ends_at, now),
        join_url=first_string_at(event, EVENT_JOIN_URL_PATHS),
        reschedule_url=first_string((invitee.get("reschedule_url"),)),
        cancel_url=first_string((invitee.get("cancel_url"),)),
    )


def _sort_key(value: Optional[datetime]) -> datetime:
    return as_utc(value) or _EPOCH


def _iso_z(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# =============================================================================
# Service
# =============================================================================

class CalendarSessionService:
    """
    Reconciles Calendly events with stored appointments.

    Args:
        session_factory: SQLAlchemy session factory.
        token_manager: Token manager that owns the Calendly client.
    """

    def __init__(self, session_factory: Callable, token_manager: CalendarTokenManager):
        self._session_factory = session_factory
        self._tokens = token_manager
        self._client = token_manager.client

    # ------------------------------------------------------------------
    # Today's sessions
    # ------------------------------------------------------------------

    def fetch_today_sessions(self, therapist_id, now: Optional[datetime] = None) -> TodaySessions:
        """
        Today's Calendly events for a therapist, earliest first.

        Raises:
            NotConnectedError: Calendar not connected.
            ReconnectRequiredError: Token expired and cannot be refreshed.
            CalendarProviderError: Provider call failed.
        """
        now = now or utc_now()
        profile = self._tokens.get_profile(therapist_id)
        if profile is None or not profile.calendly_connected or not profile.calendly_user_uri:
            raise NotConnectedError("Calendly is not connected for this therapist.")

        access_token = self._tokens.ensure_valid_token(profile, now=now)

        day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start.replace(hour=23, minute=59, second=59, microsecond=999000)

        try:
            events = self._client.list_scheduled_events(
                access_token,
                profile.calendly_user_uri,
                min_start_time=_iso_z(day_start),
                max_start_time=_iso_z(day_end),
            )
        except CalendlyAPIError as e:
            raise CalendarProviderError(str(e)) from e

        known = self._appointments_by_event_uri(
            [event.get("uri") for event in events if event.get("uri")]
        )

        sessions: list[TodaySession] = []
        for event in events:
            event_uri = event.get("uri") or ""
            appointment = known.get(event_uri) if event_uri else None

            client_name = ""
            user_id = None
            if appointment is not None:
                client_name = first_string((appointment["user_name"], appointment["cached_name"]))
                user_id = appointment["user_id"]
            if not client_name:
                client_name = self._invitee_display_name(access_token, event_uri)

            starts_at = parse_datetime(event.get("start_time"))
            ends_at = parse_datetime(event.get("end_time"))
            status, status_label = compute_session_status(starts_at, ends_at, now)

            sessions.append(TodaySession(
                id=first_string((event_uri, event.get("uuid"))) or f"session-{len(sessions) + 1}",
                client_name=client_name or DEFAULT_CLIENT_NAME,
                user_id=user_id,
                service=first_string((event.get("name"),)) or DEFAULT_SESSION_TYPE,
                channel=session_channel(event),
                status=status,
                status_label=status_label,
                starts_at=starts_at,
                ends_at=ends_at,
            ))

        sessions.sort(key=lambda s: _sort_key(s.starts_at))

        logger.info(
            "calendly_today_sessions_fetched",
            therapist_id=str(therapist_id),
            session_count=len(sessions),
        )
        return TodaySessions(date=now, highlight=sessions[0] if sessions else None, sessions=sessions)

    def _appointments_by_event_uri(self, event_uris: list[str]) -> dict[str, dict]:
        """Participant identity of stored appointments, in one query."""
        if not event_uris:
            return {}

        db = self._session_factory()
        try:
            rows = (
                db.query(Appointment)
                .options(joinedload(Appointment.user))
                .filter(Appointment.calendly_event_uri.in_(event_uris))
                .all()
            )
            return {
                row.calendly_event_uri: {
                    "user_id": row.user_id,
                    "user_name": row.user.name if row.user is not None else None,
                    "cached_name": row.user_name,
                }
                for row in rows
            }
        finally:
            db.close()

    def _invitee_display_name(self, access_token: str, event_uri: str) -> str:
        try:
            invitee = self._client.get_first_invitee(access_token, event_uri)
        except CalendlyAPIError:
            return ""
        invitee = invitee or {}
        return first_string((invitee.get("name"), invitee.get("email")))

    # ------------------------------------------------------------------
    # Live fallback
    # ------------------------------------------------------------------

    def fallback_lookup(
        self,
        client_email: str,
        profile: TherapistProfileRead,
        therapist_name: str,
        now: Optional[datetime] = None,
    ) -> list[SessionView]:
        """
        Best-effort live lookup of a client's sessions with a therapist.

        Never raises for calendar problems: token failures, listing failures
        and per-event invitee failures degrade to fewer or no results.
        """
        now = now or utc_now()
        email = (client_email or "").strip().lower()
        if not email or not profile.calendly_user_uri:
            return []

        try:
            access_token = self._tokens.ensure_valid_token(profile, now=now)
        except CalendarError as e:
            logger.info(
                "calendly_fallback_skipped",
                therapist_id=str(profile.user_id),
                reason=type(e).__name__,
            )
            return []

        try:
            events = self._client.list_scheduled_events(
                access_token,
                profile.calendly_user_uri,
                min_start_time=_iso_z(now - FALLBACK_LOOKBACK),
            )
        except CalendlyAPIError as e:
            logger.warning(
                "calendly_fallback_events_failed",
                therapist_id=str(profile.user_id),
                status_code=e.status_code,
            )
            return []

        sessions = []
        for event in events:
            try:
                invitee = self._client.get_first_invitee(access_token, event.get("uri") or "")
            except CalendlyAPIError:
                continue

            invitee_email = str((invitee or {}).get("email") or "").strip().lower()
            if not invitee_email or invitee_email != email:
                continue

            sessions.append(event_to_session_view(event, invitee, therapist_name, now))

        sessions.sort(key=lambda s: _sort_key(s.scheduled_at))
        return sessions

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    def ingest_webhook(self, body: dict) -> WebhookResult:
        """
        Upsert an appointment from a Calendly webhook delivery.

        Idempotent on the event URI. Deliveries without one are ignored.
        """
        body = body if isinstance(body, dict) else {}
        event_type = body.get("event")
        payload = body.get("payload") if isinstance(body.get("payload"), dict) else {}

        event_uri = first_string_at(payload, EVENT_URI_PATHS)
        if not event_uri:
            logger.info("calendly_webhook_ignored", event_type=event_type)
            return WebhookResult(status="ignored", message="No calendly event uri.")

        tracking = first_dict_at(payload, TRACKING_PATHS)
        user_ref = first_string((
            tracking.get("utm_content"),
            *(dig(payload, *path) for path in USER_ID_ANSWER_PATHS),
        ))
        therapist_ref = first_string((tracking.get("utm_term"),))
        status = (
            AppointmentStatus.CANCELED
            if event_type == "invitee.canceled"
            else AppointmentStatus.SCHEDULED
        )

        db = self._session_factory()
        try:
            user_id = self._existing_user_id(db, _as_uuid_or_none(user_ref))
            therapist_id = self._existing_user_id(db, _as_uuid_or_none(therapist_ref))
            if therapist_id is None:
                therapist_id = self._therapist_by_calendar_uri(
                    db, first_string_at(payload, CALENDAR_USER_URI_PATHS)
                )

            therapist_name, therapist_email = "", ""
            if therapist_id is not None:
                therapist = db.get(User, therapist_id)
                if therapist is not None:
                    therapist_name, therapist_email = therapist.name or "", therapist.email or ""

            fields = {
                "user_id": user_id,
                "therapist_id": therapist_id,
                "user_name": first_string_at(payload, NAME_PATHS),
                "user_email": first_string_at(payload, EMAIL_PATHS).lower(),
                "therapist_name": therapist_name,
                "therapist_email": therapist_email,
                "scheduled_at": parse_datetime(dig(payload, "scheduled_event", "start_time")),
                "ends_at": parse_datetime(dig(payload, "scheduled_event", "end_time")),
                "timezone": first_string_at(payload, TIMEZONE_PATHS),
                "session_type": first_string_at(payload, SESSION_TYPE_PATHS),
                "status": status,
                "calendly_invitee_uri": first_string_at(payload, INVITEE_URI_PATHS),
                "tracking": tracking,
                "raw_payload": body,
            }

            appointment = self._find_appointment(db, event_uri)
            if appointment is None:
                appointment = Appointment(calendly_event_uri=event_uri, **fields)
                db.add(appointment)
                try:
                    db.commit()
                except sa_exc.IntegrityError:
                    # A concurrent delivery inserted the same event first
                    db.rollback()
                    appointment = self._find_appointment(db, event_uri)
                    if appointment is None:
                        raise
                    self._apply(appointment, fields)
                    db.commit()
            else:
                self._apply(appointment, fields)
                db.commit()

            logger.info(
                "calendly_webhook_ingested",
                event_type=event_type,
                appointment_id=str(appointment.id),
                status=status.value,
                has_user=user_id is not None,
                has_therapist=therapist_id is not None,
            )
            return WebhookResult(status="success", appointment_id=appointment.id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _find_appointment(db, event_uri: str) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.calendly_event_uri == event_uri).first()

    @staticmethod
    def _apply(appointment: Appointment, fields: dict) -> None:
        for key, value in fields.items():
            setattr(appointment, key, value)

    @staticmethod
    def _existing_user_id(db, user_id: Optional[UUID]) -> Optional[UUID]:
        if user_id is None:
            return None
        return user_id if db.get(User, user_id) is not None else None

    @staticmethod
    def _therapist_by_calendar_uri(db, calendar_user_uri: str) -> Optional[UUID]:
        if not calendar_user_uri:
            return None
        profile = (
            db.query(TherapistProfile)
            .filter(TherapistProfile.calendly_user_uri == calendar_user_uri)
            .first()
        )
        return profile.user_id if profile else None

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def list_bookings(self, therapist_id) -> list[AppointmentRead]:
        """A therapist's stored appointments ordered by start time."""
        db = self._session_factory()
        try:
            rows = (
                db.query(Appointment)
                .filter(Appointment.therapist_id == parse_uuid(therapist_id, "therapist id"))
                .order_by(Appointment.scheduled_at.asc())
                .all()
            )
            return [AppointmentRead.model_validate(row) for row in rows]
        finally:
            db.close()
