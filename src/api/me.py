"""
Client Self-Service API Endpoints

- Own session overview (with live calendar fallback)
- Assigned therapist card
- Start quizzes (moves assigned quiz assignments to in_progress)
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.api.dependencies import Caller, get_caller, get_quiz_service, get_roster_service, require_role


router = APIRouter(prefix="/me", tags=["me"])


class StartQuizzesRequest(BaseModel):
    """Quizzes the client has opened."""
    quiz_ids: list[str] = Field(default_factory=list)


@router.get("/sessions")
def my_sessions(caller: Caller = Depends(get_caller)):
    """Current, next and upcoming sessions for the caller."""
    require_role(caller, "user", "Only users can access session overview.")
    return {"status": "success", "data": get_roster_service().client_session_overview(caller.user_id)}


@router.get("/therapist")
def my_therapist(caller: Caller = Depends(get_caller)):
    """The caller's assigned therapist, or null."""
    return {"status": "success", "data": get_roster_service().assigned_therapist(caller.user_id)}


@router.post("/quizzes/start")
def start_quizzes(data: StartQuizzesRequest, caller: Caller = Depends(get_caller)):
    """Record that the caller opened these quizzes."""
    started = get_quiz_service().mark_started(caller.user_id, data.quiz_ids)
    return {"status": "success", "data": {"started": started}}
