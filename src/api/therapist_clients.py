"""
Therapist Client API Endpoints

- Roster of assigned clients (search, filters, sort, pagination)
- Client overview
- Quiz assignments: list, assign, revoke / reschedule
- Quiz library

SECURITY: Therapist role required; every client route re-checks that the
client is assigned to the caller.
"""

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import Caller, get_caller, get_quiz_service, get_roster_service, require_role
from src.models.quiz_assignment import QuizAssignmentCreate, QuizAssignmentUpdate
from src.services.client_roster import RosterFilters, RosterSort


router = APIRouter(prefix="/therapist", tags=["therapist"])


def therapist_caller(caller: Caller = Depends(get_caller)) -> Caller:
    require_role(caller, "therapist", "Only therapists can access assigned clients.")
    return caller


@router.get("/clients")
def list_clients(
    search: str = Query("", description="Substring of name or email"),
    onboarding_status: str = Query("all", description="all|completed|pending"),
    quiz_status: str = Query("all", description="all|has_pending|overdue|none_assigned"),
    session_status: str = Query("all", description="all|upcoming|no_upcoming"),
    sort_by: str = Query("name", description="name|next_session_at|pending_quiz_count|last_activity_at"),
    sort_dir: str = Query("asc", description="asc|desc"),
    page: str = Query("1"),
    limit: str = Query("10"),
    caller: Caller = Depends(therapist_caller),
):
    """Paginated roster rows for the caller's clients."""
    roster = get_roster_service().list_clients(
        therapist_id=caller.user_id,
        filters=RosterFilters(
            search=search,
            onboarding_status=onboarding_status,
            quiz_status=quiz_status,
            session_status=session_status,
        ),
        sort=RosterSort(sort_by=sort_by, sort_dir=sort_dir),
        page=page,
        limit=limit,
    )
    return {"status": "success", "data": roster}


@router.get("/clients/{client_id}/overview")
def client_overview(client_id: str, caller: Caller = Depends(therapist_caller)):
    """Sessions, quiz assignments and attempted quizzes for one client."""
    overview = get_roster_service().client_overview(caller.user_id, client_id)
    return {"status": "success", "data": overview}


@router.get("/clients/{client_id}/quiz-assignments")
def list_quiz_assignments(
    client_id: str,
    status: str = Query("all", description="all|assigned|in_progress|completed|revoked|overdue"),
    caller: Caller = Depends(therapist_caller),
):
    """The client's assignments from the caller, newest first."""
    assignments = get_quiz_service().list_for_client(caller.user_id, client_id, status_filter=status)
    return {"status": "success", "data": assignments}


@router.post("/clients/{client_id}/quiz-assignments", status_code=201)
def assign_quiz(
    client_id: str,
    data: QuizAssignmentCreate,
    caller: Caller = Depends(therapist_caller),
):
    """Assign a quiz to the client (due in 7 days unless given)."""
    result = get_quiz_service().assign(
        therapist_id=caller.user_id,
        client_id=client_id,
        quiz_id=data.quiz_id,
        due_at=data.due_at,
        note=data.note,
    )
    return {"status": "success", "data": result}


@router.patch("/clients/{client_id}/quiz-assignments/{assignment_id}")
def update_quiz_assignment(
    client_id: str,
    assignment_id: str,
    data: QuizAssignmentUpdate,
    caller: Caller = Depends(therapist_caller),
):
    """Revoke an assignment and/or change or clear its due date."""
    changes = {field: getattr(data, field) for field in data.model_fields_set}
    result = get_quiz_service().update_assignment(
        therapist_id=caller.user_id,
        client_id=client_id,
        assignment_id=assignment_id,
        changes=changes,
    )
    return {"status": "success", "data": result}


@router.get("/quizzes")
def quiz_library(caller: Caller = Depends(therapist_caller)):
    """Active quizzes available to assign."""
    quizzes = get_quiz_service().quiz_library()
    return {"status": "success", "results": len(quizzes), "data": quizzes}
