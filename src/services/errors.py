"""
Tether error taxonomy.

Every domain failure is a ``TetherError`` carrying the HTTP status the API
layer responds with. Services raise these directly; routers never inspect
message text to pick a status code.
"""


class TetherError(Exception):
    """Base class for all domain errors."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TetherError):
    """Malformed input: bad id, bad date, oversized text."""
    status_code = 400


class InvalidTransitionError(ValidationError):
    """A status change that the assignment lifecycle forbids."""
    pass


class AuthenticationError(TetherError):
    """Caller identity missing or unusable."""
    status_code = 401


class AuthorizationError(TetherError):
    """Role mismatch, client not assigned, thread access denied."""
    status_code = 403


class NotFoundError(TetherError):
    """Target client, quiz, assignment or conversation does not exist."""
    status_code = 404


class RateLimitError(TetherError):
    """Caller exceeded the request window."""
    status_code = 429


class ConfigurationError(TetherError):
    """Missing encryption key or provider credentials."""
    status_code = 500


class CalendarError(TetherError):
    """Base class for calendar integration failures."""
    status_code = 400


class NotConnectedError(CalendarError):
    """Therapist has no calendar access token."""
    pass


class ReconnectRequiredError(CalendarError):
    """Token expired and cannot be refreshed without the therapist."""
    pass


class InvalidGrantError(ReconnectRequiredError):
    """Provider rejected the refresh token; stored credentials were cleared."""
    pass


class CalendarProviderError(CalendarError):
    """Provider call failed for a reason other than a revoked grant."""
    pass


class IntegrityError(TetherError):
    """Chat ciphertext failed authentication or was malformed.

    Recovered per message during thread projection; never surfaced as a
    request failure.
    """
    status_code = 500
