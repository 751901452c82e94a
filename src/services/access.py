"""
Therapist-client access checks shared by the roster, quiz and chat services.
"""

from uuid import UUID

from src.models.user import User, UserRole
from src.services.errors import AuthorizationError, NotFoundError, ValidationError


def parse_uuid(value, label: str = "id") -> UUID:
    """Parse an identifier or raise ``ValidationError('Invalid <label>.')``."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value or "").strip())
    except ValueError:
        raise ValidationError(f"Invalid {label}.")


def ensure_client_access(db, therapist_id, client_id) -> User:
    """
    Load a client the therapist is currently assigned to.

    Raises:
        ValidationError: Malformed client id.
        NotFoundError: No such user, or the user is not a client.
        AuthorizationError: Client is assigned to someone else (or nobody).
    """
    client_uuid = parse_uuid(client_id, "client id")

    client = db.get(User, client_uuid)
    if client is None or client.role != UserRole.USER:
        raise NotFoundError("Client not found.")

    if client.assigned_therapist_id is None or client.assigned_therapist_id != parse_uuid(therapist_id, "therapist id"):
        raise AuthorizationError("This client is not assigned to this therapist.")

    return client
