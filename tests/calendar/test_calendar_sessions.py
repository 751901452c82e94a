"""
Calendar Event Reconciler Tests

Tests verify:
1. Stage and dashboard status derivations
2. Today's sessions (ordering, name resolution, highlight)
3. Reconnect-required never reaches the provider
4. Live fallback degrades instead of failing
5. Webhook upsert is idempotent on the event URI, including concurrent inserts
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from src.models.appointment import Appointment, AppointmentStatus, SessionStage
from src.models.therapist_profile import TherapistProfile
from src.models.user import UserRole
from src.services.calendar_sessions import (
    CalendarSessionService,
    compute_session_status,
    derive_stage,
    dig,
    first_string_at,
    session_channel,
    session_links,
)
from src.services.calendar_tokens import CalendarTokenManager
from src.services.calendly_client import CalendlyAPIError, CalendlyClient
from src.services.errors import CalendarProviderError, NotConnectedError, ReconnectRequiredError


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
CALENDAR_USER = "https://api.calendly.com/users/RIVERA"


def _event(uri, start, minutes=50, name="Therapy Session", location_type="zoom"):
    return {
        "uri": uri,
        "name": name,
        "start_time": start.strftime("%Y-%m-%dT%H:%M:%S.000000Z"),
        "end_time": (start + timedelta(minutes=minutes)).strftime("%Y-%m-%dT%H:%M:%S.000000Z"),
        "location": {"type": location_type, "join_url": f"{uri}/join"},
    }


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def calendly():
    return MagicMock(spec=CalendlyClient)


@pytest.fixture
def token_manager(session_factory, calendly):
    return CalendarTokenManager(session_factory=session_factory, client=calendly, state_secret="secret")


@pytest.fixture
def service(session_factory, token_manager):
    return CalendarSessionService(session_factory=session_factory, token_manager=token_manager)


@pytest.fixture
def connect(session_factory):
    """Attach a Calendly profile to a therapist."""

    def _connect(therapist_id, refresh="refresh", expires_at=NOW + timedelta(hours=1)):
        db = session_factory()
        try:
            db.add(TherapistProfile(
                user_id=therapist_id,
                display_name="Dr. Rivera",
                calendly_connected=True,
                calendly_user_uri=CALENDAR_USER,
                calendly_access_token="access",
                calendly_refresh_token=refresh,
                calendly_token_expires_at=expires_at,
            ))
            db.commit()
        finally:
            db.close()

    return _connect


# =============================================================================
# Derivations
# =============================================================================

class TestDeriveStage:

    def test_current_inclusive_bounds(self):
        assert derive_stage(NOW, NOW + timedelta(hours=1), NOW) == SessionStage.CURRENT
        assert derive_stage(NOW - timedelta(hours=1), NOW, NOW) == SessionStage.CURRENT

    def test_previous_after_end(self):
        ended = NOW - timedelta(hours=2)
        assert derive_stage(ended - timedelta(hours=1), ended, NOW) == SessionStage.PREVIOUS

    def test_upcoming(self):
        assert derive_stage(NOW + timedelta(hours=1), NOW + timedelta(hours=2), NOW) == SessionStage.UPCOMING

    def test_started_without_end(self):
        started = NOW - timedelta(minutes=10)
        assert derive_stage(started, None, NOW) == SessionStage.PREVIOUS
        assert derive_stage(started, None, NOW, started_without_end_is_previous=False) == SessionStage.UPCOMING

    def test_naive_times_are_utc(self):
        start = (NOW - timedelta(minutes=5)).replace(tzinfo=None)
        end = (NOW + timedelta(minutes=5)).replace(tzinfo=None)
        assert derive_stage(start, end, NOW) == SessionStage.CURRENT


class TestComputeSessionStatus:

    def test_completed(self):
        assert compute_session_status(NOW - timedelta(hours=1), NOW, NOW) == ("completed", "Completed")

    def test_active(self):
        assert compute_session_status(NOW - timedelta(minutes=5), NOW + timedelta(minutes=5), NOW) == (
            "active",
            "In Progress",
        )

    def test_soon(self):
        start = NOW + timedelta(minutes=45)
        assert compute_session_status(start, start + timedelta(hours=1), NOW) == ("upcoming", "45m until")

    def test_half_minute_rounds_up(self):
        start = NOW + timedelta(seconds=150)
        assert compute_session_status(start, start + timedelta(hours=1), NOW) == ("upcoming", "3m until")

    def test_later(self):
        start = NOW + timedelta(hours=5)
        assert compute_session_status(start, start + timedelta(hours=1), NOW) == ("upcoming", "Upcoming")


class TestHelpers:

    def test_dig_tolerates_missing_paths(self):
        data = {"a": [{"b": "value"}]}
        assert dig(data, "a", 0, "b") == "value"
        assert dig(data, "a", 3, "b") is None
        assert dig(data, "x", "y") is None
        assert dig(None, "a") is None

    def test_first_string_at_skips_blank(self):
        data = {"name": "   ", "invitee": {"name": " Sam "}}
        assert first_string_at(data, (("name",), ("invitee", "name"))) == "Sam"

    @pytest.mark.parametrize("location_type,label", [
        ("zoom", "Video Call"),
        ("google_conference", "Video Call"),
        ("outbound_call", "Session"),
        ("inbound_phone_call", "Audio Call"),
        ("physical_in_person", "In Person"),
        ("", "Session"),
    ])
    def test_channel(self, location_type, label):
        assert session_channel({"location": {"type": location_type}}) == label

    def test_session_links(self):
        raw = {"payload": {
            "scheduled_event": {"location": {"join_url": "https://zoom.us/j/1"}},
            "invitee": {"reschedule_url": "https://calendly.com/r", "cancel_url": "https://calendly.com/c"},
        }}
        assert session_links(raw) == {
            "join_url": "https://zoom.us/j/1",
            "reschedule_url": "https://calendly.com/r",
            "cancel_url": "https://calendly.com/c",
        }
        assert session_links(None) == {"join_url": "", "reschedule_url": "", "cancel_url": ""}


# =============================================================================
# Today's sessions
# =============================================================================

class TestFetchTodaySessions:

    def test_not_connected(self, service, therapist_id, calendly):
        with pytest.raises(NotConnectedError, match="not connected"):
            service.fetch_today_sessions(therapist_id, now=NOW)
        calendly.list_scheduled_events.assert_not_called()

    def test_reconnect_required_skips_provider(self, service, connect, therapist_id, calendly):
        connect(therapist_id, refresh=None, expires_at=NOW - timedelta(minutes=1))

        with pytest.raises(ReconnectRequiredError):
            service.fetch_today_sessions(therapist_id, now=NOW)

        calendly.refresh_token.assert_not_called()
        calendly.list_scheduled_events.assert_not_called()

    def test_sessions_sorted_and_named(self, service, session_factory, connect, therapist_id, client_id, calendly):
        connect(therapist_id)
        later = _event("https://api.calendly.com/scheduled_events/LATER", NOW + timedelta(hours=4))
        sooner = _event(
            "https://api.calendly.com/scheduled_events/SOONER",
            NOW + timedelta(minutes=30),
            location_type="inbound_phone_call",
        )
        calendly.list_scheduled_events.return_value = [later, sooner]
        calendly.get_first_invitee.return_value = {"name": "Walk In", "email": "walkin@example.com"}

        db = session_factory()
        try:
            db.add(Appointment(
                user_id=client_id,
                therapist_id=therapist_id,
                calendly_event_uri=later["uri"],
                status=AppointmentStatus.SCHEDULED,
            ))
            db.commit()
        finally:
            db.close()

        today = service.fetch_today_sessions(therapist_id, now=NOW)

        assert [s.id for s in today.sessions] == [sooner["uri"], later["uri"]]
        assert today.highlight.id == sooner["uri"]
        assert today.sessions[0].client_name == "Walk In"
        assert today.sessions[0].channel == "Audio Call"
        assert today.sessions[0].status_label == "30m until"
        assert today.sessions[1].client_name == "Alex Client"
        assert today.sessions[1].user_id == client_id

        calendly.get_first_invitee.assert_called_once_with("access", sooner["uri"])
        kwargs = calendly.list_scheduled_events.call_args.kwargs
        assert kwargs["min_start_time"] == "2026-03-10T00:00:00.000Z"
        assert kwargs["max_start_time"] == "2026-03-10T23:59:59.999Z"

    def test_invitee_failure_falls_back_to_default_name(self, service, connect, therapist_id, calendly):
        connect(therapist_id)
        calendly.list_scheduled_events.return_value = [
            _event("https://api.calendly.com/scheduled_events/X", NOW + timedelta(hours=1))
        ]
        calendly.get_first_invitee.side_effect = CalendlyAPIError("boom", status_code=500)

        today = service.fetch_today_sessions(therapist_id, now=NOW)
        assert today.sessions[0].client_name == "Booked Client"

    def test_listing_failure_surfaces(self, service, connect, therapist_id, calendly):
        connect(therapist_id)
        calendly.list_scheduled_events.side_effect = CalendlyAPIError("boom", status_code=502)
        with pytest.raises(CalendarProviderError):
            service.fetch_today_sessions(therapist_id, now=NOW)

    def test_empty_day(self, service, connect, therapist_id, calendly):
        connect(therapist_id)
        calendly.list_scheduled_events.return_value = []
        today = service.fetch_today_sessions(therapist_id, now=NOW)
        assert today.sessions == []
        assert today.highlight is None


# =============================================================================
# Live fallback
# =============================================================================

class TestFallbackLookup:

    def test_matches_client_email(self, service, token_manager, connect, therapist_id, calendly):
        connect(therapist_id)
        mine = _event("https://api.calendly.com/scheduled_events/MINE", NOW + timedelta(days=1))
        theirs = _event("https://api.calendly.com/scheduled_events/THEIRS", NOW + timedelta(hours=2))
        broken = _event("https://api.calendly.com/scheduled_events/BROKEN", NOW + timedelta(hours=3))
        calendly.list_scheduled_events.return_value = [theirs, broken, mine]

        def invitee(token, uri):
            if uri == broken["uri"]:
                raise CalendlyAPIError("boom")
            if uri == mine["uri"]:
                return {"email": "ALEX@example.com", "reschedule_url": "https://calendly.com/r"}
            return {"email": "someone@example.com"}

        calendly.get_first_invitee.side_effect = invitee

        sessions = service.fallback_lookup(
            "alex@example.com", token_manager.get_profile(therapist_id), "Dr. Rivera", now=NOW
        )

        assert [s.id for s in sessions] == [mine["uri"]]
        assert sessions[0].therapist_name == "Dr. Rivera"
        assert sessions[0].reschedule_url == "https://calendly.com/r"
        assert sessions[0].join_url == f"{mine['uri']}/join"
        assert sessions[0].stage == SessionStage.UPCOMING

    def test_token_problem_degrades_to_empty(self, service, token_manager, connect, therapist_id, calendly):
        connect(therapist_id, refresh=None, expires_at=NOW - timedelta(minutes=1))
        assert service.fallback_lookup("alex@example.com", token_manager.get_profile(therapist_id), "Dr. Rivera", now=NOW) == []
        calendly.list_scheduled_events.assert_not_called()

    def test_listing_failure_degrades_to_empty(self, service, token_manager, connect, therapist_id, calendly):
        connect(therapist_id)
        calendly.list_scheduled_events.side_effect = CalendlyAPIError("boom", status_code=500)
        assert service.fallback_lookup("alex@example.com", token_manager.get_profile(therapist_id), "Dr. Rivera", now=NOW) == []


# =============================================================================
# Webhook
# =============================================================================

def _webhook(event_type="invitee.created", client_id=None, therapist_id=None, uri="https://api.calendly.com/scheduled_events/EVT"):
    tracking = {}
    if client_id:
        tracking["utm_content"] = str(client_id)
    if therapist_id:
        tracking["utm_term"] = str(therapist_id)
    return {
        "event": event_type,
        "payload": {
            "uri": f"{uri}/invitees/INV",
            "email": "Alex@Example.com",
            "name": "Alex Client",
            "timezone": "America/New_York",
            "tracking": tracking,
            "scheduled_event": {
                "uri": uri,
                "name": "Intake",
                "start_time": "2026-03-11T15:00:00.000000Z",
                "end_time": "2026-03-11T15:50:00.000000Z",
                "event_memberships": [{"user": CALENDAR_USER}],
            },
        },
    }


class TestIngestWebhook:

    def test_ignored_without_event_uri(self, service):
        result = service.ingest_webhook({"event": "invitee.created", "payload": {}})
        assert result.status == "ignored"

    def test_creates_appointment(self, service, session_factory, client_id, therapist_id):
        result = service.ingest_webhook(_webhook(client_id=client_id, therapist_id=therapist_id))
        assert result.status == "success"

        db = session_factory()
        try:
            appointment = db.get(Appointment, result.appointment_id)
            assert appointment.user_id == client_id
            assert appointment.therapist_id == therapist_id
            assert appointment.user_email == "alex@example.com"
            assert appointment.session_type == "Intake"
            assert appointment.timezone == "America/New_York"
            assert appointment.status == AppointmentStatus.SCHEDULED
            assert appointment.therapist_name == "Dr. Rivera"
        finally:
            db.close()

    def test_redelivery_and_cancel_update_same_row(self, service, session_factory, client_id, therapist_id):
        first = service.ingest_webhook(_webhook(client_id=client_id, therapist_id=therapist_id))
        again = service.ingest_webhook(_webhook(client_id=client_id, therapist_id=therapist_id))
        canceled = service.ingest_webhook(_webhook("invitee.canceled", client_id=client_id, therapist_id=therapist_id))

        assert first.appointment_id == again.appointment_id == canceled.appointment_id

        db = session_factory()
        try:
            assert db.query(Appointment).count() == 1
            assert db.query(Appointment).one().status == AppointmentStatus.CANCELED
        finally:
            db.close()

    def test_therapist_resolved_from_calendar_uri(self, service, session_factory, connect, therapist_id):
        connect(therapist_id)
        result = service.ingest_webhook(_webhook())

        db = session_factory()
        try:
            appointment = db.get(Appointment, result.appointment_id)
            assert appointment.therapist_id == therapist_id
            assert appointment.user_id is None
        finally:
            db.close()

    def test_unknown_or_malformed_ids_not_linked(self, service, session_factory):
        body = _webhook(client_id="not-a-uuid", therapist_id="00000000-0000-0000-0000-000000000000")
        result = service.ingest_webhook(body)

        db = session_factory()
        try:
            appointment = db.get(Appointment, result.appointment_id)
            assert appointment.user_id is None
            assert appointment.therapist_id is None
        finally:
            db.close()

    def test_user_id_from_questions_and_answers(self, service, session_factory, client_id):
        body = _webhook()
        body["payload"]["questions_and_answers"] = [{"question": "User ID", "answer": str(client_id)}]
        result = service.ingest_webhook(body)

        db = session_factory()
        try:
            assert db.get(Appointment, result.appointment_id).user_id == client_id
        finally:
            db.close()

    def test_concurrent_insert_updates_existing_row(self, service, session_factory, monkeypatch, client_id, therapist_id):
        first = service.ingest_webhook(_webhook(client_id=client_id, therapist_id=therapist_id))

        lookup = CalendarSessionService._find_appointment
        misses = [None]

        def stale_lookup(db, event_uri):
            if misses:
                return misses.pop()
            return lookup(db, event_uri)

        monkeypatch.setattr(CalendarSessionService, "_find_appointment", staticmethod(stale_lookup))
        canceled = service.ingest_webhook(_webhook("invitee.canceled", client_id=client_id, therapist_id=therapist_id))

        assert canceled.appointment_id == first.appointment_id
        db = session_factory()
        try:
            assert db.query(Appointment).count() == 1
            assert db.query(Appointment).one().status == AppointmentStatus.CANCELED
        finally:
            db.close()


class TestListBookings:

    def test_ordered_by_start(self, service, client_id, therapist_id):
        service.ingest_webhook(_webhook(
            client_id=client_id, therapist_id=therapist_id, uri="https://api.calendly.com/scheduled_events/B"
        ))
        late = _webhook(client_id=client_id, therapist_id=therapist_id, uri="https://api.calendly.com/scheduled_events/A")
        late["payload"]["scheduled_event"]["start_time"] = "2026-03-20T15:00:00.000000Z"
        service.ingest_webhook(late)

        bookings = service.list_bookings(therapist_id)
        assert [b.calendly_event_uri for b in bookings] == [
            "https://api.calendly.com/scheduled_events/B",
            "https://api.calendly.com/scheduled_events/A",
        ]
