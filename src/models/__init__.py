# Tether Models Package
# SQLAlchemy ORM models with Pydantic schemas

from src.models.base import Base, as_utc, get_engine, get_session_factory, parse_datetime, utc_now
from src.models.user import User, UserRead, UserRole, ParticipantRead, AssignTherapistRequest
from src.models.quiz import Quiz, QuizRead, QuizType
from src.models.therapist_profile import (
    AssignedTherapistRead,
    CalendarConnectionStatus,
    TherapistProfile,
    TherapistProfileRead,
)
from src.models.appointment import (
    Appointment,
    AppointmentRead,
    AppointmentStatus,
    SessionPartition,
    SessionStage,
    SessionView,
    TodaySession,
    TodaySessions,
    WebhookResult,
)
from src.models.quiz_assignment import (
    AssignmentStatus,
    ClientQuizAssignments,
    EffectiveStatus,
    QuizAssignmentCreate,
    QuizAssignmentRead,
    QuizAssignmentResult,
    QuizAssignmentUpdate,
    QuizSummary,
    TherapistQuizAssignment,
)
from src.models.conversation import (
    MessageView,
    SendMessageRequest,
    SentMessage,
    TherapyConversation,
    TherapyMessage,
    ThreadView,
)
from src.models.audit_log import AuditLog, AuditLogRead, AuditAction, AuditEventType

__all__ = [
    # Base
    "Base",
    "as_utc",
    "get_engine",
    "get_session_factory",
    "parse_datetime",
    "utc_now",
    # User
    "User",
    "UserRead",
    "UserRole",
    "ParticipantRead",
    "AssignTherapistRequest",
    # Quiz
    "Quiz",
    "QuizRead",
    "QuizType",
    # Therapist Profile
    "AssignedTherapistRead",
    "CalendarConnectionStatus",
    "TherapistProfile",
    "TherapistProfileRead",
    # Appointment
    "Appointment",
    "AppointmentRead",
    "AppointmentStatus",
    "SessionPartition",
    "SessionStage",
    "SessionView",
    "TodaySession",
    "TodaySessions",
    "WebhookResult",
    # Quiz Assignment
    "AssignmentStatus",
    "ClientQuizAssignments",
    "EffectiveStatus",
    "QuizAssignmentCreate",
    "QuizAssignmentRead",
    "QuizAssignmentResult",
    "QuizAssignmentUpdate",
    "QuizSummary",
    "TherapistQuizAssignment",
    # Conversation
    "MessageView",
    "SendMessageRequest",
    "SentMessage",
    "TherapyConversation",
    "TherapyMessage",
    "ThreadView",
    # Audit Log
    "AuditLog",
    "AuditLogRead",
    "AuditAction",
    "AuditEventType",
]
