"""
Client Roster Aggregator

Builds the therapist dashboard views of assigned clients:
- Filterable, sortable, paginated roster rows
- Per-client overview (sessions by stage, quiz assignments, attempted quizzes)
- A client's own session overview, with a live calendar fallback
- Admin assignment of a therapist to a client

Quiz and session filters run after the per-client join, so totals and
page counts describe the filtered rows.
"""

import math
import unicodedata
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import joinedload

from src.models.appointment import (
    Appointment,
    AppointmentStatus,
    SessionPartition,
    SessionStage,
    SessionView,
)
from src.models.audit_log import AuditAction
from src.models.base import as_utc, utc_now
from src.models.quiz import QuizRead
from src.models.quiz_assignment import (
    ACTIVE_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    QuizAssignmentRead,
    QuizSummary,
    TherapistQuizAssignment,
)
from src.models.therapist_profile import (
    AssignedTherapistRead,
    TherapistProfile,
    TherapistProfileRead,
)
from src.models.user import User, UserRole
from src.services.access import ensure_client_access, parse_uuid
from src.services.audit import AuditService
from src.services.calendar_sessions import CalendarSessionService, derive_stage, session_links
from src.services.errors import AuthorizationError, NotFoundError, TetherError, ValidationError
from src.services.quiz_assignments import map_assignment, summarize

logger = structlog.get_logger(__name__)

__all__ = [
    "ClientRosterService",
    "ensure_client_access",
    "session_summary",
]

SORT_KEYS = frozenset({"name", "next_session_at", "pending_quiz_count", "last_activity_at"})
DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Schemas
# =============================================================================

class RosterFilters(BaseModel):
    """Roster filters. Unknown values behave like ``all``."""
    search: str = ""
    onboarding_status: str = "all"
    quiz_status: str = "all"
    session_status: str = "all"


class RosterSort(BaseModel):
    """Roster ordering. Unknown keys fall back to ``name``."""
    sort_by: str = "name"
    sort_dir: str = "asc"


class ClientRosterRow(BaseModel):
    """One client on the therapist dashboard."""
    id: UUID
    name: str
    email: str = ""
    has_onboarded: bool = False
    assigned_therapist_id: Optional[UUID] = None
    next_session_at: Optional[datetime] = None
    last_session_at: Optional[datetime] = None
    pending_quiz_count: int = 0
    completed_quiz_count: int = 0
    overdue_quiz_count: int = 0
    total_quiz_assignments: int = 0
    last_activity_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ClientRosterPage(BaseModel):
    """A page of roster rows."""
    results: int
    total: int
    pagination: Pagination
    data: list[ClientRosterRow] = Field(default_factory=list)


class OverviewClient(BaseModel):
    id: UUID
    name: str = ""
    email: str = ""
    has_onboarded: bool = False


class OverviewSessions(BaseModel):
    current: Optional[SessionView] = None
    next: Optional[SessionView] = None
    previous: list[SessionView] = Field(default_factory=list)
    all: list[SessionView] = Field(default_factory=list)


class OverviewQuizzes(BaseModel):
    summary: QuizSummary
    active_assignments: list[QuizAssignmentRead] = Field(default_factory=list)
    completed_assignments: list[QuizAssignmentRead] = Field(default_factory=list)
    all_assignments: list[QuizAssignmentRead] = Field(default_factory=list)


class ClientOverview(BaseModel):
    """Everything a therapist sees on one client's page."""
    client: OverviewClient
    sessions: OverviewSessions
    quizzes: OverviewQuizzes
    attempted_quizzes: list[QuizRead] = Field(default_factory=list)


class TherapistAssignment(BaseModel):
    """Result of an admin assigning a therapist."""
    user_id: UUID
    assigned_therapist_id: UUID


# =============================================================================
# Helpers
# =============================================================================

def escape_like(text: str) -> str:
    """Escape LIKE wildcards so user text matches literally (escape char ``\\``)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def parse_positive_int(value, fallback: int, minimum: int = 1, maximum: int = MAX_PAGE_LIMIT) -> int:
    """Integer clamped to ``maximum``; values below ``minimum`` use ``fallback``."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    if parsed < minimum:
        return fallback
    return min(parsed, maximum)


def session_summary(
    appointments: list[Appointment],
    now: datetime,
) -> tuple[Optional[datetime], Optional[datetime]]:
    """
    Next and last session times for one client.

    Returns:
        (next_session_at, last_session_at): earliest start among sessions
        not yet ended, and latest end among ended sessions. Canceled
        sessions are ignored.
    """
    next_session_at = None
    last_session_at = None

    for appointment in appointments:
        if appointment.status == AppointmentStatus.CANCELED:
            continue

        start = as_utc(appointment.scheduled_at)
        end = as_utc(appointment.ends_at) or start
        if end is None:
            continue

        if end >= now:
            if start is not None and (next_session_at is None or start < next_session_at):
                next_session_at = start
        elif last_session_at is None or end > last_session_at:
            last_session_at = end

    return next_session_at, last_session_at


def latest_assignment_activity(assignments: list[TherapistQuizAssignment]) -> Optional[datetime]:
    """Most recent assignment timestamp (updated, completed, revoked, started, assigned)."""
    latest = None
    for assignment in assignments:
        stamp = as_utc(
            assignment.updated_at
            or assignment.completed_at
            or assignment.revoked_at
            or assignment.started_at
            or assignment.assigned_at
        )
        if stamp is not None and (latest is None or stamp > latest):
            latest = stamp
    return latest


def _name_key(row: ClientRosterRow) -> str:
    """Accent- and case-insensitive sort key, so "Émile" sorts with "e"."""
    decomposed = unicodedata.normalize("NFKD", row.name or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def _date_key(value: Optional[datetime]) -> datetime:
    return as_utc(value) or _EPOCH


_SORTERS: dict[str, Callable[[ClientRosterRow], object]] = {
    "name": _name_key,
    "next_session_at": lambda row: _date_key(row.next_session_at),
    "pending_quiz_count": lambda row: row.pending_quiz_count,
    "last_activity_at": lambda row: _date_key(row.last_activity_at),
}


def _partition(sessions: list[SessionView]) -> SessionPartition:
    upcoming = [s for s in sessions if s.stage == SessionStage.UPCOMING]
    return SessionPartition(
        current=next((s for s in sessions if s.stage == SessionStage.CURRENT), None),
        next=upcoming[0] if upcoming else None,
        upcoming=upcoming,
    )


# =============================================================================
# Service
# =============================================================================

class ClientRosterService:
    """
    Aggregates appointments and quiz assignments per client.

    Args:
        session_factory: SQLAlchemy session factory.
        session_service: Optional calendar reconciler used for the live
            fallback in ``client_session_overview``.
        audit_service: Optional audit service.
    """

    def __init__(
        self,
        session_factory: Callable,
        session_service: Optional[CalendarSessionService] = None,
        audit_service: Optional[AuditService] = None,
    ):
        self._session_factory = session_factory
        self._sessions = session_service
        self._audit = audit_service or AuditService(session_factory=session_factory)

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    def list_clients(
        self,
        therapist_id,
        filters: Optional[RosterFilters] = None,
        sort: Optional[RosterSort] = None,
        page=1,
        limit=DEFAULT_PAGE_LIMIT,
        now: Optional[datetime] = None,
    ) -> ClientRosterPage:
        """
        Paginated roster rows for a therapist's assigned clients.

        Args:
            therapist_id: Requesting therapist.
            filters: Search, onboarding, quiz and session filters.
            sort: Sort key and direction.
            page: 1-indexed page.
            limit: Page size, 1-100.
            now: Reference time.
        """
        now = now or utc_now()
        filters = filters or RosterFilters()
        sort = sort or RosterSort()
        therapist_uuid = parse_uuid(therapist_id, "therapist id")

        page = parse_positive_int(page, 1, maximum=1_000_000)
        limit = parse_positive_int(limit, DEFAULT_PAGE_LIMIT)
        sort_by = sort.sort_by.strip() if sort.sort_by.strip() in SORT_KEYS else "name"
        descending = sort.sort_dir.strip().lower() == "desc"

        db = self._session_factory()
        try:
            query = db.query(User).filter(
                User.role == UserRole.USER,
                User.assigned_therapist_id == therapist_uuid,
            )

            search = filters.search.strip()
            if search:
                pattern = f"%{escape_like(search)}%"
                query = query.filter(or_(
                    User.name.ilike(pattern, escape="\\"),
                    User.email.ilike(pattern, escape="\\"),
                ))

            onboarding = filters.onboarding_status.strip().lower()
            if onboarding == "completed":
                query = query.filter(User.has_onboarded.is_(True))
            elif onboarding == "pending":
                query = query.filter(User.has_onboarded.is_(False))

            clients = query.order_by(User.created_at.asc(), User.id.asc()).all()
            client_ids = [client.id for client in clients]

            appointments_by_client: dict[UUID, list[Appointment]] = {}
            assignments_by_client: dict[UUID, list[TherapistQuizAssignment]] = {}
            if client_ids:
                for appointment in db.query(Appointment).filter(
                    Appointment.therapist_id == therapist_uuid,
                    Appointment.user_id.in_(client_ids),
                ):
                    appointments_by_client.setdefault(appointment.user_id, []).append(appointment)

                for assignment in db.query(TherapistQuizAssignment).filter(
                    TherapistQuizAssignment.therapist_id == therapist_uuid,
                    TherapistQuizAssignment.user_id.in_(client_ids),
                ):
                    assignments_by_client.setdefault(assignment.user_id, []).append(assignment)

            rows = [
                self._roster_row(
                    client,
                    appointments_by_client.get(client.id, []),
                    assignments_by_client.get(client.id, []),
                    now,
                )
                for client in clients
            ]
        finally:
            db.close()

        quiz_status = filters.quiz_status.strip().lower()
        if quiz_status == "has_pending":
            rows = [row for row in rows if row.pending_quiz_count > 0]
        elif quiz_status == "overdue":
            rows = [row for row in rows if row.overdue_quiz_count > 0]
        elif quiz_status == "none_assigned":
            rows = [row for row in rows if row.total_quiz_assignments == 0]

        session_status = filters.session_status.strip().lower()
        if session_status == "upcoming":
            rows = [row for row in rows if row.next_session_at is not None]
        elif session_status == "no_upcoming":
            rows = [row for row in rows if row.next_session_at is None]

        rows = sorted(rows, key=_SORTERS[sort_by], reverse=descending)

        total = len(rows)
        offset = (page - 1) * limit
        paged = rows[offset:offset + limit]

        return ClientRosterPage(
            results=len(paged),
            total=total,
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit) if total else 0,
            ),
            data=paged,
        )

    @staticmethod
    def _roster_row(
        client: User,
        appointments: list[Appointment],
        assignments: list[TherapistQuizAssignment],
        now: datetime,
    ) -> ClientRosterRow:
        next_session_at, last_session_at = session_summary(appointments, now)
        quizzes = summarize(assignments, now)

        candidates = [
            stamp
            for stamp in (last_session_at, latest_assignment_activity(assignments))
            if stamp is not None
        ]

        return ClientRosterRow(
            id=client.id,
            name=client.name or "Unnamed User",
            email=client.email or "",
            has_onboarded=bool(client.has_onboarded),
            assigned_therapist_id=client.assigned_therapist_id,
            next_session_at=next_session_at,
            last_session_at=last_session_at,
            pending_quiz_count=quizzes.pending,
            completed_quiz_count=quizzes.completed,
            overdue_quiz_count=quizzes.overdue,
            total_quiz_assignments=quizzes.total,
            last_activity_at=max(candidates) if candidates else None,
        )

    # ------------------------------------------------------------------
    # Therapist's view of one client
    # ------------------------------------------------------------------

    def client_overview(self, therapist_id, client_id, now: Optional[datetime] = None) -> ClientOverview:
        """
        Sessions, quiz assignments and attempted quizzes for one client.

        Raises:
            ValidationError: Malformed client id.
            NotFoundError: Client missing.
            AuthorizationError: Client not assigned to this therapist.
        """
        now = now or utc_now()

        db = self._session_factory()
        try:
            client = ensure_client_access(db, therapist_id, client_id)
            therapist_uuid = parse_uuid(therapist_id, "therapist id")

            appointments = (
                db.query(Appointment)
                .filter(
                    Appointment.therapist_id == therapist_uuid,
                    Appointment.user_id == client.id,
                )
                .order_by(Appointment.scheduled_at.asc())
                .all()
            )
            assignments = (
                db.query(TherapistQuizAssignment)
                .options(joinedload(TherapistQuizAssignment.quiz))
                .filter(
                    TherapistQuizAssignment.therapist_id == therapist_uuid,
                    TherapistQuizAssignment.user_id == client.id,
                )
                .order_by(TherapistQuizAssignment.assigned_at.desc())
                .all()
            )

            sessions = [
                self._session_view(
                    appointment,
                    now,
                    therapist_name=None,
                    default_type="Session",
                    started_without_end_is_previous=False,
                )
                for appointment in appointments
            ]
            mapped = [map_assignment(assignment, now) for assignment in assignments]

            overview = ClientOverview(
                client=OverviewClient(
                    id=client.id,
                    name=client.name or "",
                    email=client.email or "",
                    has_onboarded=bool(client.has_onboarded),
                ),
                sessions=OverviewSessions(
                    current=next(
                        (s for s in sessions if s.stage == SessionStage.CURRENT and s.status != AppointmentStatus.CANCELED.value),
                        None,
                    ),
                    next=next(
                        (s for s in sessions if s.stage == SessionStage.UPCOMING and s.status != AppointmentStatus.CANCELED.value),
                        None,
                    ),
                    previous=sorted(
                        (s for s in sessions if s.stage == SessionStage.PREVIOUS),
                        key=lambda s: _date_key(s.scheduled_at),
                        reverse=True,
                    ),
                    all=sessions,
                ),
                quizzes=OverviewQuizzes(
                    summary=summarize(assignments, now),
                    active_assignments=[a for a in mapped if a.status in ACTIVE_ASSIGNMENT_STATUSES],
                    completed_assignments=[a for a in mapped if a.status == AssignmentStatus.COMPLETED],
                    all_assignments=mapped,
                ),
                attempted_quizzes=[QuizRead.model_validate(quiz) for quiz in client.attempted_quizzes],
            )
        finally:
            db.close()

        self._audit.log_phi_access(
            user_id=str(therapist_uuid),
            resource_type="client_overview",
            resource_id=str(overview.client.id),
        )
        return overview

    @staticmethod
    def _session_view(
        appointment: Appointment,
        now: datetime,
        therapist_name: Optional[str],
        default_type: str,
        started_without_end_is_previous: bool,
    ) -> SessionView:
        status = appointment.status or AppointmentStatus.SCHEDULED
        return SessionView(
            id=str(appointment.id),
            scheduled_at=as_utc(appointment.scheduled_at),
            ends_at=as_utc(appointment.ends_at),
            timezone=appointment.timezone or "",
            session_type=appointment.session_type or default_type,
            therapist_name=therapist_name,
            status=AppointmentStatus(status).value,
            stage=derive_stage(
                appointment.scheduled_at,
                appointment.ends_at,
                now,
                started_without_end_is_previous=started_without_end_is_previous,
            ),
            **session_links(appointment.raw_payload),
        )

    # ------------------------------------------------------------------
    # Client's own view
    # ------------------------------------------------------------------

    def client_session_overview(self, user_id, now: Optional[datetime] = None) -> SessionPartition:
        """
        A client's current, next and upcoming sessions.

        Stored sessions are matched by user id or e-mail. When there are
        none, the assigned therapist's calendar is queried live.
        """
        now = now or utc_now()
        user_uuid = parse_uuid(user_id, "user id")

        db = self._session_factory()
        try:
            user = db.get(User, user_uuid)
            if user is None:
                raise NotFoundError("User not found.")
            if user.role != UserRole.USER:
                raise AuthorizationError("Only users can access session overview.")

            email = (user.email or "").strip().lower()
            appointments = (
                db.query(Appointment)
                .options(joinedload(Appointment.therapist))
                .filter(
                    Appointment.status != AppointmentStatus.CANCELED,
                    or_(Appointment.user_id == user.id, Appointment.user_email == email),
                )
                .order_by(Appointment.scheduled_at.asc())
                .all()
            )
            sessions = [
                self._session_view(
                    appointment,
                    now,
                    therapist_name=(
                        (appointment.therapist.name if appointment.therapist is not None else None)
                        or appointment.therapist_name
                        or "Therapist"
                    ),
                    default_type="Therapy Session",
                    started_without_end_is_previous=True,
                )
                for appointment in appointments
            ]

            fallback_source = None
            if not any(s.stage in (SessionStage.CURRENT, SessionStage.UPCOMING) for s in sessions):
                fallback_source = self._fallback_source(db, user)
        finally:
            db.close()

        if fallback_source is not None and self._sessions is not None:
            profile, therapist_name = fallback_source
            live = self._sessions.fallback_lookup(email, profile, therapist_name, now=now)
            return _partition(live)

        return _partition(sessions)

    @staticmethod
    def _fallback_source(db, user: User) -> Optional[tuple[TherapistProfileRead, str]]:
        if user.assigned_therapist_id is None:
            return None

        profile = (
            db.query(TherapistProfile)
            .filter(TherapistProfile.user_id == user.assigned_therapist_id)
            .first()
        )
        if profile is None or not profile.calendly_connected or not profile.calendly_user_uri:
            return None

        therapist = db.get(User, user.assigned_therapist_id)
        therapist_name = (therapist.name if therapist is not None else "") or "Therapist"
        return TherapistProfileRead.model_validate(profile), therapist_name

    # ------------------------------------------------------------------
    # Therapist assignment
    # ------------------------------------------------------------------

    def assign_therapist(self, admin_id, user_id, therapist_user_id) -> TherapistAssignment:
        """
        Admin assigns a therapist to a client.

        Raises:
            AuthorizationError: Caller is not an admin.
            ValidationError: Missing/invalid ids or wrong roles.
            NotFoundError: Client or therapist missing.
        """
        admin_uuid = parse_uuid(admin_id, "admin id")
        if not therapist_user_id:
            raise ValidationError("therapist_user_id is required.")
        user_uuid = parse_uuid(user_id, "user id")
        therapist_uuid = parse_uuid(therapist_user_id, "therapist_user_id")

        db = self._session_factory()
        try:
            admin = db.get(User, admin_uuid)
            if admin is None or admin.role != UserRole.ADMIN:
                raise AuthorizationError("Only admins can assign therapists.")

            target = db.get(User, user_uuid)
            if target is None:
                raise NotFoundError("User not found.")
            if target.role != UserRole.USER:
                raise ValidationError('Only users with role "user" can be assigned a therapist.')

            therapist = db.get(User, therapist_uuid)
            if therapist is None:
                raise NotFoundError("Therapist user not found.")
            if therapist.role != UserRole.THERAPIST:
                raise ValidationError("Provided therapist_user_id is not a therapist.")

            target.assigned_therapist_id = therapist.id
            db.commit()
        except TetherError:
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self._audit.log_permission_change(
            admin_id=str(admin_uuid),
            user_id=str(user_uuid),
            therapist_id=str(therapist_uuid),
        )
        logger.info("therapist_assigned", user_id=str(user_uuid), therapist_id=str(therapist_uuid))
        return TherapistAssignment(user_id=user_uuid, assigned_therapist_id=therapist_uuid)

    def assigned_therapist(self, user_id) -> Optional[AssignedTherapistRead]:
        """The therapist card for a client, or None when unassigned."""
        user_uuid = parse_uuid(user_id, "user id")

        db = self._session_factory()
        try:
            user = db.get(User, user_uuid)
            if user is None:
                raise NotFoundError("User not found.")
            if user.assigned_therapist_id is None:
                return None

            therapist = db.get(User, user.assigned_therapist_id)
            if therapist is None:
                return None

            profile = (
                db.query(TherapistProfile)
                .filter(TherapistProfile.user_id == therapist.id)
                .first()
            )
            return AssignedTherapistRead(
                therapist_user_id=therapist.id,
                display_name=(profile.display_name if profile else None) or therapist.name or "",
                title=(profile.title if profile else None) or "Therapist",
                bio=(profile.bio if profile else None) or "",
                calendly_url=(profile.calendly_url if profile else None) or "",
            )
        finally:
            db.close()
