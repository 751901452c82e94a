"""
Therapy Chat API Endpoints

- Open the caller's encrypted thread
- Send a message

Both routes are rate limited before authentication: by the X-User-Id header
when present, else by client address.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from src.api.dependencies import Caller, client_ip, get_caller, get_chat_service
from src.models.conversation import SendMessageRequest
from src.services.rate_limit import get_chat_rate_limiter


def chat_rate_limit(request: Request, x_user_id: Optional[str] = Header(None)) -> None:
    """Count the request against the chat limit, authenticated or not."""
    get_chat_rate_limiter().check(
        user_id=(x_user_id or "").strip() or None,
        client_ip=client_ip(request),
    )


router = APIRouter(
    prefix="/therapy-chat",
    tags=["therapy-chat"],
    dependencies=[Depends(chat_rate_limit)],
)


@router.get("/thread")
def get_thread(
    user_id: Optional[str] = Query(None, description="Client id (therapist callers only)"),
    caller: Caller = Depends(get_caller),
):
    """
    Get the caller's thread, creating it if needed.

    SECURITY: Clients see the thread with their assigned therapist only.
    Therapists must name a client assigned to them.
    """
    thread = get_chat_service().get_thread(
        requester_id=caller.user_id,
        requester_role=caller.role,
        target_user_id=user_id,
        ip_address=caller.ip_address,
    )
    return {"status": "success", "data": thread}


@router.post("/messages", status_code=201)
def send_message(
    data: SendMessageRequest,
    user_id: Optional[str] = Query(None, description="Client id (therapist callers only)"),
    caller: Caller = Depends(get_caller),
):
    """Send an encrypted message on the caller's thread."""
    sent = get_chat_service().send_message(
        requester_id=caller.user_id,
        requester_role=caller.role,
        text=data.text,
        target_user_id=data.user_id or user_id,
        ip_address=caller.ip_address,
    )
    return {"status": "success", "data": sent}
