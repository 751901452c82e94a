"""
Quiz Assignment Engine

Therapists assign quizzes to their clients and track progress:
- Assignment with a default one-week due date
- Revocation and due date changes (validated before any write)
- Per-client listing with status filters and a summary
- Client-side start transition (assigned -> in_progress)

Overdue is derived at read time from ``due_at`` and never stored.
"""

import math
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

import structlog
from sqlalchemy import exc as sa_exc, insert, select

from src.models.audit_log import AuditAction
from src.models.base import as_utc, parse_datetime, utc_now
from src.models.quiz import Quiz, QuizRead
from src.models.quiz_assignment import (
    ACTIVE_ASSIGNMENT_STATUSES,
    NOTE_MAX_LENGTH,
    TERMINAL_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    ClientQuizAssignments,
    EffectiveStatus,
    QuizAssignmentRead,
    QuizAssignmentResult,
    QuizSummary,
    TherapistQuizAssignment,
)
from src.models.user import ParticipantRead, user_accessible_quizzes
from src.services.access import ensure_client_access, parse_uuid
from src.services.audit import AuditService
from src.services.errors import (
    InvalidTransitionError,
    NotFoundError,
    TetherError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

__all__ = [
    "DEFAULT_DUE_PERIOD",
    "QuizAssignmentService",
    "effective_status",
    "map_assignment",
    "parse_datetime",
    "summarize",
]

DEFAULT_DUE_PERIOD = timedelta(days=7)
STATUS_FILTERS = frozenset({"all", "assigned", "in_progress", "completed", "revoked", "overdue"})


# =============================================================================
# Pure derivations
# =============================================================================

def effective_status(status, due_at: Optional[datetime], now: datetime) -> EffectiveStatus:
    """
    Stored status, or ``overdue`` when an active assignment is past due.

    Completed and revoked assignments are never overdue.
    """
    status = AssignmentStatus(status)
    due_at = as_utc(due_at)
    if due_at is not None and status in ACTIVE_ASSIGNMENT_STATUSES and due_at < now:
        return EffectiveStatus.OVERDUE
    return EffectiveStatus(status.value)


def summarize(assignments: Iterable[Any], now: datetime) -> QuizSummary:
    """Partition assignments into exactly one bucket each."""
    total = pending = completed = overdue = revoked = 0

    for assignment in assignments:
        total += 1
        status = AssignmentStatus(assignment.status)
        if status == AssignmentStatus.COMPLETED:
            completed += 1
        elif status == AssignmentStatus.REVOKED:
            revoked += 1
        elif effective_status(status, assignment.due_at, now) == EffectiveStatus.OVERDUE:
            overdue += 1
        elif status in ACTIVE_ASSIGNMENT_STATUSES:
            pending += 1

    return QuizSummary(
        total=total,
        pending=pending,
        completed=completed,
        overdue=overdue,
        revoked=revoked,
    )


def map_assignment(assignment: TherapistQuizAssignment, now: datetime) -> QuizAssignmentRead:
    """Assignment row (with its quiz loaded) to the therapist-facing view."""
    current = effective_status(assignment.status, assignment.due_at, now)
    quiz = assignment.quiz

    return QuizAssignmentRead(
        id=assignment.id,
        user_id=assignment.user_id,
        therapist_id=assignment.therapist_id,
        quiz=QuizRead.model_validate(quiz) if quiz is not None else QuizRead(id=assignment.quiz_id),
        status=assignment.status,
        effective_status=current,
        is_overdue=current == EffectiveStatus.OVERDUE,
        source=assignment.source or "therapist_manual",
        note=assignment.note or "",
        assigned_at=as_utc(assignment.assigned_at),
        due_at=as_utc(assignment.due_at),
        started_at=as_utc(assignment.started_at),
        completed_at=as_utc(assignment.completed_at),
        revoked_at=as_utc(assignment.revoked_at),
        updated_at=as_utc(assignment.updated_at),
    )


def estimated_minutes(quiz: Quiz) -> int:
    if quiz.estimated_minutes is not None:
        return quiz.estimated_minutes
    return max(5, math.ceil((quiz.question_count or 0) * 1.5))


# =============================================================================
# Service
# =============================================================================

class QuizAssignmentService:
    """
    Therapist quiz assignments backed by SQLAlchemy.

    Args:
        session_factory: SQLAlchemy session factory.
        audit_service: Optional audit service.
    """

    def __init__(self, session_factory: Callable, audit_service: Optional[AuditService] = None):
        self._session_factory = session_factory
        self._audit = audit_service or AuditService(session_factory=session_factory)

    @staticmethod
    def _client_assignments(db, therapist_id, client_id) -> list[TherapistQuizAssignment]:
        return (
            db.query(TherapistQuizAssignment)
            .filter(
                TherapistQuizAssignment.therapist_id == therapist_id,
                TherapistQuizAssignment.user_id == client_id,
            )
            .order_by(TherapistQuizAssignment.assigned_at.desc())
            .all()
        )

    @staticmethod
    def _grant_quiz_access(db, user_id, quiz_id) -> None:
        """Add the quiz to the client's accessible set, if not already there."""
        granted = db.execute(
            select(user_accessible_quizzes).where(
                user_accessible_quizzes.c.user_id == user_id,
                user_accessible_quizzes.c.quiz_id == quiz_id,
            )
        ).first()
        if granted is not None:
            return

        try:
            db.execute(insert(user_accessible_quizzes).values(user_id=user_id, quiz_id=quiz_id))
            db.commit()
        except sa_exc.IntegrityError:
            # Granted concurrently
            db.rollback()

    def assign(
        self,
        therapist_id,
        client_id,
        quiz_id,
        due_at=None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QuizAssignmentResult:
        """
        Assign a quiz to a client.

        Args:
            therapist_id: Requesting therapist.
            client_id: Client, who must be assigned to the therapist.
            quiz_id: Active quiz to assign.
            due_at: Optional due date (datetime or ISO string). Defaults to
                one week after ``now``.
            note: Optional instructions, at most 1200 characters.
            now: Reference time.

        Returns:
            The new assignment and the client's refreshed summary.

        Raises:
            ValidationError: Bad id, bad due date, oversized note, inactive quiz.
            AuthorizationError: Client not assigned to this therapist.
            NotFoundError: Client or quiz missing.
        """
        now = now or utc_now()

        if not quiz_id:
            raise ValidationError("quiz_id is required.")
        quiz_uuid = parse_uuid(quiz_id, "quiz id")

        due_provided = due_at is not None and due_at != ""
        parsed_due = parse_datetime(due_at) if due_provided else now + DEFAULT_DUE_PERIOD
        if parsed_due is None:
            raise ValidationError("Invalid due_at date.")

        normalized_note = str(note or "").strip()
        if len(normalized_note) > NOTE_MAX_LENGTH:
            raise ValidationError(f"Assignment note must be at most {NOTE_MAX_LENGTH} characters.")

        db = self._session_factory()
        try:
            client = ensure_client_access(db, therapist_id, client_id)
            therapist_uuid = parse_uuid(therapist_id, "therapist id")

            quiz = db.get(Quiz, quiz_uuid)
            if quiz is None:
                raise NotFoundError("Quiz not found.")
            if not quiz.is_active:
                raise ValidationError("Quiz is not active and cannot be assigned.")

            assignment = TherapistQuizAssignment(
                user_id=client.id,
                therapist_id=therapist_uuid,
                quiz_id=quiz.id,
                status=AssignmentStatus.ASSIGNED,
                assigned_at=now,
                due_at=parsed_due,
                note=normalized_note,
                source="therapist_manual",
                created_at=now,
                updated_at=now,
            )
            db.add(assignment)
            db.commit()

            self._grant_quiz_access(db, client.id, quiz.id)

            result = QuizAssignmentResult(
                assignment=map_assignment(assignment, now),
                summary=summarize(self._client_assignments(db, therapist_uuid, client.id), now),
            )
        except TetherError:
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self._audit.log_assignment_change(
            therapist_id=str(therapist_uuid),
            assignment_id=str(result.assignment.id),
            client_id=str(client_id),
            action=AuditAction.CREATE,
            details={"quiz_id": str(quiz_uuid), "has_note": bool(normalized_note)},
        )
        logger.info(
            "quiz_assigned",
            therapist_id=str(therapist_uuid),
            assignment_id=str(result.assignment.id),
        )
        return result

    def update_assignment(
        self,
        therapist_id,
        client_id,
        assignment_id,
        changes: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> QuizAssignmentResult:
        """
        Revoke an assignment and/or change its due date.

        ``changes`` holds only the fields the caller supplied: ``status``
        (must be ``revoked``) and ``due_at`` (None or "" clears it). Every
        field is validated before anything is written.

        Raises:
            ValidationError: Bad id, status other than revoked, bad date.
            InvalidTransitionError: Assignment already completed or revoked.
            AuthorizationError: Client not assigned to this therapist.
            NotFoundError: Client or assignment missing.
        """
        now = now or utc_now()

        db = self._session_factory()
        try:
            client = ensure_client_access(db, therapist_id, client_id)
            therapist_uuid = parse_uuid(therapist_id, "therapist id")
            assignment_uuid = parse_uuid(assignment_id, "assignment id")

            assignment = (
                db.query(TherapistQuizAssignment)
                .filter(
                    TherapistQuizAssignment.id == assignment_uuid,
                    TherapistQuizAssignment.therapist_id == therapist_uuid,
                    TherapistQuizAssignment.user_id == client.id,
                )
                .first()
            )
            if assignment is None:
                raise NotFoundError("Quiz assignment not found.")

            revoke = False
            if "status" in changes:
                if changes["status"] != AssignmentStatus.REVOKED.value:
                    raise ValidationError('Only status "revoked" can be set manually.')
                current = AssignmentStatus(assignment.status)
                if current in TERMINAL_ASSIGNMENT_STATUSES:
                    raise InvalidTransitionError(
                        f"{current.value.capitalize()} assignments cannot be revoked."
                    )
                revoke = True

            due_change = False
            new_due = None
            if "due_at" in changes:
                due_change = True
                raw_due = changes["due_at"]
                if raw_due is not None and raw_due != "":
                    new_due = parse_datetime(raw_due)
                    if new_due is None:
                        raise ValidationError("Invalid due_at date.")

            if revoke:
                assignment.status = AssignmentStatus.REVOKED
                assignment.revoked_at = now
            if due_change:
                assignment.due_at = new_due
            assignment.updated_at = now
            db.commit()

            result = QuizAssignmentResult(
                assignment=map_assignment(assignment, now),
                summary=summarize(self._client_assignments(db, therapist_uuid, client.id), now),
            )
        except TetherError:
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self._audit.log_assignment_change(
            therapist_id=str(therapist_uuid),
            assignment_id=str(assignment_uuid),
            client_id=str(client_id),
            action=AuditAction.REVOKE if revoke else AuditAction.UPDATE,
            details={"due_at_changed": due_change},
        )
        return result

    def list_for_client(
        self,
        therapist_id,
        client_id,
        status_filter: str = "all",
        now: Optional[datetime] = None,
    ) -> ClientQuizAssignments:
        """
        A client's assignments from this therapist, newest first.

        The summary always covers every assignment; ``status_filter``
        narrows only the rows, by effective status.
        """
        now = now or utc_now()
        status_filter = str(status_filter or "all").strip().lower()

        db = self._session_factory()
        try:
            client = ensure_client_access(db, therapist_id, client_id)
            if status_filter not in STATUS_FILTERS:
                raise ValidationError("Invalid status filter.")

            rows = self._client_assignments(db, parse_uuid(therapist_id, "therapist id"), client.id)
            mapped = [map_assignment(row, now) for row in rows]
            if status_filter != "all":
                mapped = [row for row in mapped if row.effective_status.value == status_filter]

            return ClientQuizAssignments(
                client=ParticipantRead.model_validate(client),
                summary=summarize(rows, now),
                assignments=mapped,
            )
        finally:
            db.close()

    def mark_started(self, user_id, quiz_ids: Iterable[Any], now: Optional[datetime] = None) -> int:
        """
        Move the client's ``assigned`` assignments for *quiz_ids* to in_progress.

        Other states are left untouched. Invalid ids are skipped.

        Returns:
            Number of assignments started.
        """
        now = now or utc_now()
        user_uuid = parse_uuid(user_id, "user id")

        valid_ids = []
        for quiz_id in quiz_ids or []:
            try:
                valid_ids.append(parse_uuid(quiz_id, "quiz id"))
            except ValidationError:
                continue
        if not valid_ids:
            return 0

        db = self._session_factory()
        try:
            updated = (
                db.query(TherapistQuizAssignment)
                .filter(
                    TherapistQuizAssignment.user_id == user_uuid,
                    TherapistQuizAssignment.quiz_id.in_(valid_ids),
                    TherapistQuizAssignment.status == AssignmentStatus.ASSIGNED,
                )
                .update(
                    {
                        TherapistQuizAssignment.status: AssignmentStatus.IN_PROGRESS,
                        TherapistQuizAssignment.started_at: now,
                        TherapistQuizAssignment.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if updated:
            logger.info("quiz_assignments_started", user_id=str(user_uuid), count=updated)
        return updated

    def quiz_library(self) -> list[QuizRead]:
        """Active quizzes a therapist can assign, ordered by title."""
        db = self._session_factory()
        try:
            quizzes = (
                db.query(Quiz)
                .filter(Quiz.is_active.is_(True))
                .order_by(Quiz.title.asc())
                .all()
            )
            return [
                QuizRead(
                    id=quiz.id,
                    title=quiz.title or "Untitled Quiz",
                    type=quiz.type.value if quiz.type else "",
                    estimated_minutes=estimated_minutes(quiz),
                    is_active=quiz.is_active,
                )
                for quiz in quizzes
            ]
        finally:
            db.close()
