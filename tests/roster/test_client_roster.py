"""
Client Roster Tests

Tests verify:
1. Roster filters run after aggregation (totals describe filtered rows)
2. Sorting, pagination and LIKE escaping in search
3. Client overview stage partition
4. A client's own session overview and the live calendar fallback
5. Admin therapist assignment
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from src.models.appointment import Appointment, AppointmentStatus, SessionStage, SessionView
from src.models.audit_log import AuditLog
from src.models.quiz_assignment import AssignmentStatus, TherapistQuizAssignment
from src.models.therapist_profile import TherapistProfile
from src.models.user import User, UserRole, user_attempted_quizzes
from src.services.calendar_sessions import CalendarSessionService
from src.services.client_roster import (
    ClientRosterService,
    RosterFilters,
    RosterSort,
    escape_like,
    parse_positive_int,
    session_summary,
)
from src.services.errors import AuthorizationError, NotFoundError, ValidationError


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sessions_service():
    mock = MagicMock(spec=CalendarSessionService)
    mock.fallback_lookup.return_value = []
    return mock


@pytest.fixture
def service(session_factory, sessions_service):
    return ClientRosterService(session_factory=session_factory, session_service=sessions_service)


@pytest.fixture
def add_assignments(session_factory, make_quiz):
    """Give a client ``count`` assignments in ``status``."""
    quiz_id = None

    def _add(therapist_id, client_id, count, status=AssignmentStatus.ASSIGNED, due_at=None):
        nonlocal quiz_id
        if quiz_id is None:
            quiz_id = make_quiz()
        db = session_factory()
        try:
            for _ in range(count):
                db.add(TherapistQuizAssignment(
                    user_id=client_id,
                    therapist_id=therapist_id,
                    quiz_id=quiz_id,
                    status=status,
                    assigned_at=NOW - timedelta(days=1),
                    due_at=due_at or NOW + timedelta(days=3),
                    updated_at=NOW - timedelta(days=1),
                ))
            db.commit()
        finally:
            db.close()
        return quiz_id

    return _add


@pytest.fixture
def add_appointment(session_factory):

    def _add(therapist_id, client_id, start, minutes=50, status=AppointmentStatus.SCHEDULED, **extra):
        db = session_factory()
        try:
            appointment = Appointment(
                user_id=client_id,
                therapist_id=therapist_id,
                scheduled_at=start,
                ends_at=start + timedelta(minutes=minutes) if minutes is not None else None,
                status=status,
                **extra,
            )
            db.add(appointment)
            db.commit()
            return appointment.id
        finally:
            db.close()

    return _add


# =============================================================================
# Helpers
# =============================================================================

class TestHelpers:

    def test_escape_like(self):
        assert escape_like("100%_a\\b") == "100\\%\\_a\\\\b"

    @pytest.mark.parametrize("value,expected", [
        ("3", 3), (0, 10), ("-2", 10), ("abc", 10), (None, 10), ("500", 100),
    ])
    def test_parse_positive_int(self, value, expected):
        assert parse_positive_int(value, 10) == expected

    def test_session_summary(self):
        def appt(start_offset, minutes=50, status=AppointmentStatus.SCHEDULED):
            start = NOW + start_offset
            return Appointment(scheduled_at=start, ends_at=start + timedelta(minutes=minutes), status=status)

        appointments = [
            appt(timedelta(days=2)),
            appt(timedelta(days=1)),
            appt(timedelta(hours=-5)),
            appt(timedelta(days=-3)),
            appt(timedelta(hours=3), status=AppointmentStatus.CANCELED),
        ]
        next_at, last_at = session_summary(appointments, NOW)
        assert next_at == NOW + timedelta(days=1)
        assert last_at == NOW - timedelta(hours=5) + timedelta(minutes=50)


# =============================================================================
# Roster
# =============================================================================

class TestListClients:

    def test_has_pending_filter_and_desc_sort(self, service, make_user, therapist_id, add_assignments):
        zero = make_user(name="Zero", therapist_id=therapist_id)
        two = make_user(name="Two", therapist_id=therapist_id)
        one = make_user(name="One", therapist_id=therapist_id)
        add_assignments(therapist_id, two, 2)
        add_assignments(therapist_id, one, 1)
        add_assignments(therapist_id, zero, 1, status=AssignmentStatus.COMPLETED)

        page = service.list_clients(
            therapist_id,
            filters=RosterFilters(quiz_status="has_pending"),
            sort=RosterSort(sort_by="pending_quiz_count", sort_dir="desc"),
            now=NOW,
        )

        assert [row.pending_quiz_count for row in page.data] == [2, 1]
        assert [row.id for row in page.data] == [two, one]
        assert page.total == 2
        assert page.pagination.total_pages == 1

    def test_only_own_clients(self, service, make_user, therapist_id):
        make_user(name="Mine", therapist_id=therapist_id)
        other = make_user(role=UserRole.THERAPIST)
        make_user(name="Theirs", therapist_id=other)

        page = service.list_clients(therapist_id, now=NOW)
        assert [row.name for row in page.data] == ["Mine"]

    def test_search_escapes_wildcards(self, service, make_user, therapist_id):
        make_user(name="100% Focus", therapist_id=therapist_id)
        make_user(name="1000 Focus", therapist_id=therapist_id)
        make_user(name="snake_case", therapist_id=therapist_id)
        make_user(name="snakeXcase", therapist_id=therapist_id)

        assert [r.name for r in service.list_clients(
            therapist_id, filters=RosterFilters(search="100%"), now=NOW
        ).data] == ["100% Focus"]
        assert [r.name for r in service.list_clients(
            therapist_id, filters=RosterFilters(search="e_c"), now=NOW
        ).data] == ["snake_case"]

    def test_search_matches_email_case_insensitive(self, service, make_user, therapist_id):
        make_user(name="Jordan", email="jordan.lee@example.com", therapist_id=therapist_id)
        make_user(name="Casey", therapist_id=therapist_id)

        page = service.list_clients(therapist_id, filters=RosterFilters(search="JORDAN.LEE"), now=NOW)
        assert [r.name for r in page.data] == ["Jordan"]

    def test_onboarding_filter(self, service, make_user, therapist_id):
        make_user(name="Done", therapist_id=therapist_id, has_onboarded=True)
        make_user(name="Pending", therapist_id=therapist_id)

        completed = service.list_clients(therapist_id, filters=RosterFilters(onboarding_status="completed"), now=NOW)
        pending = service.list_clients(therapist_id, filters=RosterFilters(onboarding_status="pending"), now=NOW)
        assert [r.name for r in completed.data] == ["Done"]
        assert [r.name for r in pending.data] == ["Pending"]

    def test_session_filters(self, service, make_user, therapist_id, add_appointment):
        booked = make_user(name="Booked", therapist_id=therapist_id)
        make_user(name="Idle", therapist_id=therapist_id)
        add_appointment(therapist_id, booked, NOW + timedelta(days=2))

        upcoming = service.list_clients(therapist_id, filters=RosterFilters(session_status="upcoming"), now=NOW)
        idle = service.list_clients(therapist_id, filters=RosterFilters(session_status="no_upcoming"), now=NOW)

        assert [r.name for r in upcoming.data] == ["Booked"]
        assert upcoming.data[0].next_session_at == NOW + timedelta(days=2)
        assert [r.name for r in idle.data] == ["Idle"]

    def test_overdue_and_none_assigned_filters(self, service, make_user, therapist_id, add_assignments):
        late = make_user(name="Late", therapist_id=therapist_id)
        make_user(name="Fresh", therapist_id=therapist_id)
        add_assignments(therapist_id, late, 1, due_at=NOW - timedelta(days=1))

        overdue = service.list_clients(therapist_id, filters=RosterFilters(quiz_status="overdue"), now=NOW)
        none = service.list_clients(therapist_id, filters=RosterFilters(quiz_status="none_assigned"), now=NOW)

        assert [r.name for r in overdue.data] == ["Late"]
        assert overdue.data[0].overdue_quiz_count == 1
        assert overdue.data[0].pending_quiz_count == 0
        assert [r.name for r in none.data] == ["Fresh"]

    def test_name_sort_is_case_insensitive(self, service, make_user, therapist_id):
        for name in ("bravo", "Alpha", "charlie"):
            make_user(name=name, therapist_id=therapist_id)

        page = service.list_clients(therapist_id, now=NOW)
        assert [r.name for r in page.data] == ["Alpha", "bravo", "charlie"]

    def test_name_sort_ignores_accents(self, service, make_user, therapist_id):
        for name in ("Zed", "Émile", "eve"):
            make_user(name=name, therapist_id=therapist_id)

        page = service.list_clients(therapist_id, now=NOW)
        assert [r.name for r in page.data] == ["Émile", "eve", "Zed"]

    def test_unknown_sort_falls_back_to_name(self, service, make_user, therapist_id):
        for name in ("B", "A"):
            make_user(name=name, therapist_id=therapist_id)
        page = service.list_clients(therapist_id, sort=RosterSort(sort_by="drop table"), now=NOW)
        assert [r.name for r in page.data] == ["A", "B"]

    def test_pagination(self, service, make_user, therapist_id):
        for i in range(5):
            make_user(name=f"Client {i}", therapist_id=therapist_id)

        page = service.list_clients(therapist_id, page="2", limit="2", now=NOW)
        assert [r.name for r in page.data] == ["Client 2", "Client 3"]
        assert page.results == 2
        assert page.total == 5
        assert page.pagination.total_pages == 3

        beyond = service.list_clients(therapist_id, page=9, limit=2, now=NOW)
        assert beyond.data == []
        assert beyond.total == 5

    def test_last_activity_uses_latest_source(self, service, make_user, therapist_id, add_appointment, add_assignments):
        client = make_user(name="Active", therapist_id=therapist_id)
        add_appointment(therapist_id, client, NOW - timedelta(hours=3), minutes=60)
        add_assignments(therapist_id, client, 1)

        row = service.list_clients(therapist_id, now=NOW).data[0]
        assert row.last_session_at == NOW - timedelta(hours=2)
        assert row.last_activity_at == NOW - timedelta(hours=2)


# =============================================================================
# Overview
# =============================================================================

class TestClientOverview:

    def test_recently_ended_session_is_previous(self, service, therapist_id, client_id, add_appointment):
        add_appointment(therapist_id, client_id, NOW - timedelta(hours=3), minutes=60)

        overview = service.client_overview(therapist_id, client_id, now=NOW)

        assert overview.sessions.current is None
        assert overview.sessions.next is None
        assert len(overview.sessions.previous) == 1
        assert overview.sessions.previous[0].stage == SessionStage.PREVIOUS
        assert overview.sessions.previous[0].session_type == "Session"

    def test_current_and_next(self, service, therapist_id, client_id, add_appointment):
        add_appointment(therapist_id, client_id, NOW - timedelta(minutes=10))
        soon = add_appointment(therapist_id, client_id, NOW + timedelta(days=1))
        add_appointment(therapist_id, client_id, NOW + timedelta(hours=2), status=AppointmentStatus.CANCELED)

        overview = service.client_overview(therapist_id, client_id, now=NOW)

        assert overview.sessions.current is not None
        assert overview.sessions.next.id == str(soon)
        assert len(overview.sessions.all) == 3

    def test_quizzes_and_attempts(self, service, session_factory, therapist_id, client_id, add_assignments):
        quiz_id = add_assignments(therapist_id, client_id, 2)
        add_assignments(therapist_id, client_id, 1, status=AssignmentStatus.COMPLETED)

        db = session_factory()
        try:
            db.execute(user_attempted_quizzes.insert().values(user_id=client_id, quiz_id=quiz_id))
            db.commit()
        finally:
            db.close()

        overview = service.client_overview(therapist_id, client_id, now=NOW)

        assert overview.quizzes.summary.total == 3
        assert len(overview.quizzes.active_assignments) == 2
        assert len(overview.quizzes.completed_assignments) == 1
        assert [q.id for q in overview.attempted_quizzes] == [quiz_id]

    def test_overview_audited(self, service, session_factory, therapist_id, client_id):
        service.client_overview(therapist_id, client_id, now=NOW)
        db = session_factory()
        try:
            entry = db.query(AuditLog).filter(AuditLog.resource_type == "client_overview").one()
            assert entry.resource_id == client_id
        finally:
            db.close()

    def test_not_assigned(self, service, make_user, client_id):
        other = make_user(role=UserRole.THERAPIST)
        with pytest.raises(AuthorizationError):
            service.client_overview(other, client_id, now=NOW)

    def test_missing_client(self, service, therapist_id):
        with pytest.raises(NotFoundError):
            service.client_overview(therapist_id, uuid4(), now=NOW)

    def test_malformed_client_id(self, service, therapist_id):
        with pytest.raises(ValidationError):
            service.client_overview(therapist_id, "nope", now=NOW)


# =============================================================================
# Client's own sessions
# =============================================================================

class TestClientSessionOverview:

    def test_stored_sessions_by_id_and_email(self, service, therapist_id, client_id, add_appointment, sessions_service):
        add_appointment(therapist_id, client_id, NOW + timedelta(days=1))
        add_appointment(therapist_id, None, NOW + timedelta(days=2), user_email="alex@example.com")

        overview = service.client_session_overview(client_id, now=NOW)

        assert len(overview.upcoming) == 2
        assert overview.next.scheduled_at == NOW + timedelta(days=1)
        assert overview.next.therapist_name == "Dr. Rivera"
        sessions_service.fallback_lookup.assert_not_called()

    def test_falls_back_to_live_calendar(self, service, session_factory, therapist_id, client_id, sessions_service):
        db = session_factory()
        try:
            db.add(TherapistProfile(
                user_id=therapist_id,
                calendly_connected=True,
                calendly_user_uri="https://api.calendly.com/users/RIVERA",
                calendly_access_token="access",
            ))
            db.commit()
        finally:
            db.close()

        live = SessionView(id="evt", scheduled_at=NOW + timedelta(hours=5), stage=SessionStage.UPCOMING)
        sessions_service.fallback_lookup.return_value = [live]

        overview = service.client_session_overview(client_id, now=NOW)

        assert overview.next.id == "evt"
        args = sessions_service.fallback_lookup.call_args
        assert args.args[0] == "alex@example.com"
        assert args.args[2] == "Dr. Rivera"

    def test_no_fallback_without_connected_calendar(self, service, client_id, sessions_service):
        overview = service.client_session_overview(client_id, now=NOW)
        assert overview.current is None
        assert overview.upcoming == []
        sessions_service.fallback_lookup.assert_not_called()

    def test_therapist_rejected(self, service, therapist_id):
        with pytest.raises(AuthorizationError):
            service.client_session_overview(therapist_id, now=NOW)


# =============================================================================
# Therapist assignment
# =============================================================================

class TestAssignTherapist:

    def test_admin_assigns(self, service, session_factory, make_user, therapist_id):
        admin = make_user(role=UserRole.ADMIN)
        client = make_user(name="New Client")

        result = service.assign_therapist(admin, client, str(therapist_id))

        assert result.assigned_therapist_id == therapist_id
        db = session_factory()
        try:
            assert db.get(User, client).assigned_therapist_id == therapist_id
            assert db.query(AuditLog).filter(AuditLog.event_type == "permission_change").count() == 1
        finally:
            db.close()

    def test_non_admin_rejected(self, service, therapist_id, client_id):
        with pytest.raises(AuthorizationError):
            service.assign_therapist(therapist_id, client_id, str(therapist_id))

    def test_target_must_be_therapist(self, service, make_user, client_id):
        admin = make_user(role=UserRole.ADMIN)
        another_client = make_user()
        with pytest.raises(ValidationError, match="not a therapist"):
            service.assign_therapist(admin, client_id, str(another_client))

    def test_missing_therapist_id(self, service, make_user, client_id):
        admin = make_user(role=UserRole.ADMIN)
        with pytest.raises(ValidationError, match="required"):
            service.assign_therapist(admin, client_id, "")


class TestAssignedTherapist:

    def test_card_uses_profile(self, service, session_factory, therapist_id, client_id):
        db = session_factory()
        try:
            db.add(TherapistProfile(
                user_id=therapist_id,
                display_name="Dr. M. Rivera",
                title="Licensed Clinical Psychologist",
                calendly_url="https://calendly.com/dr-rivera",
            ))
            db.commit()
        finally:
            db.close()

        card = service.assigned_therapist(client_id)
        assert card.display_name == "Dr. M. Rivera"
        assert card.title == "Licensed Clinical Psychologist"
        assert card.calendly_url == "https://calendly.com/dr-rivera"

    def test_card_without_profile(self, service, therapist_id, client_id):
        card = service.assigned_therapist(client_id)
        assert card.display_name == "Dr. Rivera"
        assert card.title == "Therapist"

    def test_unassigned(self, service, make_user):
        assert service.assigned_therapist(make_user()) is None
