"""
Calendly API Endpoints

- OAuth connect URL and callback
- Connection status and disconnect
- Today's sessions and stored bookings
- Webhook receiver (no caller identity; Calendly posts directly)
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import RedirectResponse
import structlog

from src.api.dependencies import (
    Caller,
    get_caller,
    get_calendar_session_service,
    get_token_manager,
    require_role,
)
from src.services.calendar_tokens import CalendarTokenManager
from src.services.errors import TetherError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/calendly", tags=["calendly"])


def therapist_caller(caller: Caller = Depends(get_caller)) -> Caller:
    require_role(caller, "therapist", "Only therapists can manage Calendly.")
    return caller


@router.get("/connect-url")
def get_connect_url(caller: Caller = Depends(therapist_caller)):
    """Authorization URL that starts the Calendly OAuth flow."""
    auth_url = get_token_manager().build_connect_url(caller.user_id)
    return {"status": "success", "data": {"auth_url": auth_url}}


@router.get("/callback")
def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
):
    """
    Calendly redirects here after consent.

    Always answers with a redirect to the front-end carrying the outcome.
    """
    try:
        get_token_manager().complete_connect(code or "", state or "")
    except TetherError as e:
        logger.warning("calendly_connect_failed", error_type=type(e).__name__)
        return RedirectResponse(CalendarTokenManager.callback_redirect_url("error", e.message))

    return RedirectResponse(CalendarTokenManager.callback_redirect_url("success"))


@router.get("/status")
def connection_status(caller: Caller = Depends(therapist_caller)):
    """Whether Calendly is connected or needs reconnecting."""
    return {"status": "success", "data": get_token_manager().connection_status(caller.user_id)}


@router.get("/today-sessions")
def today_sessions(caller: Caller = Depends(therapist_caller)):
    """Today's Calendly events, earliest first."""
    sessions = get_calendar_session_service().fetch_today_sessions(caller.user_id)
    return {"status": "success", "data": sessions}


@router.get("/bookings")
def my_bookings(caller: Caller = Depends(therapist_caller)):
    """Stored appointments for the therapist."""
    bookings = get_calendar_session_service().list_bookings(caller.user_id)
    return {"status": "success", "results": len(bookings), "data": bookings}


@router.post("/disconnect")
def disconnect(caller: Caller = Depends(therapist_caller)):
    """Clear every stored Calendly field for the therapist."""
    get_token_manager().disconnect(caller.user_id)
    return {"status": "success", "message": "Calendly disconnected successfully."}


@router.post("/webhook")
def webhook(body: dict[str, Any] = Body(default_factory=dict)):
    """Calendly invitee.created / invitee.canceled deliveries."""
    result = get_calendar_session_service().ingest_webhook(body)
    return result.model_dump(mode="json", exclude_none=True)
