"""
Shared API dependencies.

Caller identity comes from the ``X-User-Id`` / ``X-User-Role`` headers set
by the upstream auth gateway. Services are module-level singletons built
lazily on first use and replaceable in tests via the ``set_*`` functions.
"""

from typing import Optional

from fastapi import Header, Request
from pydantic import BaseModel

from src.models.base import get_session_factory
from src.services.calendar_sessions import CalendarSessionService
from src.services.calendar_tokens import CalendarTokenManager
from src.services.chat_threads import ChatThreadService
from src.services.client_roster import ClientRosterService
from src.services.errors import AuthenticationError, AuthorizationError
from src.services.quiz_assignments import QuizAssignmentService


# =============================================================================
# Caller identity
# =============================================================================

class Caller(BaseModel):
    """Authenticated caller as asserted by the gateway."""
    user_id: str
    role: str
    ip_address: str = "unknown"


def get_caller(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Caller:
    """Resolve the caller or raise AuthenticationError."""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("You are not logged in. Please log in to get access.")
    return Caller(
        user_id=x_user_id.strip(),
        role=(x_user_role or "").strip().lower(),
        ip_address=client_ip(request) or "unknown",
    )


def client_ip(request: Request) -> Optional[str]:
    """First forwarded address, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def require_role(caller: Caller, role: str, message: str) -> None:
    if caller.role != role:
        raise AuthorizationError(message)


# =============================================================================
# Module-level services (for dependency injection)
# =============================================================================

_token_manager: Optional[CalendarTokenManager] = None
_calendar_session_service: Optional[CalendarSessionService] = None
_quiz_service: Optional[QuizAssignmentService] = None
_roster_service: Optional[ClientRosterService] = None
_chat_service: Optional[ChatThreadService] = None


def get_token_manager() -> CalendarTokenManager:
    """Get or create the calendar token manager."""
    global _token_manager
    if _token_manager is None:
        _token_manager = CalendarTokenManager(session_factory=get_session_factory())
    return _token_manager


def set_token_manager(manager: Optional[CalendarTokenManager]) -> None:
    """Set the calendar token manager (for testing)."""
    global _token_manager
    _token_manager = manager


def get_calendar_session_service() -> CalendarSessionService:
    """Get or create the calendar event reconciler."""
    global _calendar_session_service
    if _calendar_session_service is None:
        _calendar_session_service = CalendarSessionService(
            session_factory=get_session_factory(),
            token_manager=get_token_manager(),
        )
    return _calendar_session_service


def set_calendar_session_service(service: Optional[CalendarSessionService]) -> None:
    """Set the calendar event reconciler (for testing)."""
    global _calendar_session_service
    _calendar_session_service = service


def get_quiz_service() -> QuizAssignmentService:
    """Get or create the quiz assignment service."""
    global _quiz_service
    if _quiz_service is None:
        _quiz_service = QuizAssignmentService(session_factory=get_session_factory())
    return _quiz_service


def set_quiz_service(service: Optional[QuizAssignmentService]) -> None:
    """Set the quiz assignment service (for testing)."""
    global _quiz_service
    _quiz_service = service


def get_roster_service() -> ClientRosterService:
    """Get or create the client roster service."""
    global _roster_service
    if _roster_service is None:
        _roster_service = ClientRosterService(
            session_factory=get_session_factory(),
            session_service=get_calendar_session_service(),
        )
    return _roster_service


def set_roster_service(service: Optional[ClientRosterService]) -> None:
    """Set the client roster service (for testing)."""
    global _roster_service
    _roster_service = service


def get_chat_service() -> ChatThreadService:
    """Get or create the chat thread service."""
    global _chat_service
    if _chat_service is None:
        _chat_service = ChatThreadService(session_factory=get_session_factory())
    return _chat_service


def set_chat_service(service: Optional[ChatThreadService]) -> None:
    """Set the chat thread service (for testing)."""
    global _chat_service
    _chat_service = service
