"""
Calendly API Client

Thin wrapper over Calendly's OAuth and REST endpoints. Every non-2xx
response raises ``CalendlyAPIError`` carrying the decoded error payload so
callers can tell a revoked grant apart from a transient failure.

Never log access or refresh tokens.
"""

import os
from typing import Any, Optional
from urllib.parse import urlencode

import requests
from requests.exceptions import RequestException

from src.services.errors import ConfigurationError

_INVALID_GRANT_MESSAGES = (
    "authorization grant is invalid",
    "expired",
    "revoked",
)


def is_invalid_grant(payload: Optional[dict]) -> bool:
    """Heuristic: does an OAuth error payload mean the grant is gone for good?"""
    payload = payload or {}
    error_code = str(payload.get("error") or "").lower()
    message = str(payload.get("error_description") or payload.get("message") or "").lower()

    return error_code == "invalid_grant" or any(m in message for m in _INVALID_GRANT_MESSAGES)


class CalendlyAPIError(Exception):
    """Exception for Calendly API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}

    @property
    def is_invalid_grant(self) -> bool:
        return is_invalid_grant(self.payload)


class CalendlyClient:
    """
    Client for Calendly OAuth and the v2 REST API.

    Credentials default to ``CALENDLY_CLIENT_ID``, ``CALENDLY_CLIENT_SECRET``
    and ``CALENDLY_REDIRECT_URI``.
    """

    API_URL = "https://api.calendly.com"
    AUTH_URL = "https://auth.calendly.com/oauth/authorize"
    TOKEN_URL = "https://auth.calendly.com/oauth/token"  # noqa: S105 - OAuth endpoint URL

    DEFAULT_TIMEOUT = 10  # seconds
    EVENTS_PAGE_SIZE = 50

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.client_id = client_id or os.environ.get("CALENDLY_CLIENT_ID", "")
        self.client_secret = client_secret or os.environ.get("CALENDLY_CLIENT_SECRET", "")
        self.redirect_uri = redirect_uri or os.environ.get("CALENDLY_REDIRECT_URI", "")
        self.timeout = timeout or float(os.environ.get("CALENDLY_HTTP_TIMEOUT", self.DEFAULT_TIMEOUT))

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        """Build the URL that starts the OAuth consent flow."""
        if not self.client_id or not self.redirect_uri:
            raise ConfigurationError(
                "Calendly OAuth is not configured. Missing client id or redirect uri."
            )

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for an access/refresh token pair."""
        return self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }, "Failed to exchange Calendly OAuth code.")

    def refresh_token(self, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token for a new token pair."""
        return self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }, "Failed to refresh Calendly access token.")

    def _token_request(self, form: dict[str, str], fallback_message: str) -> dict[str, Any]:
        try:
            response = requests.post(
                self.TOKEN_URL,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except RequestException as e:
            raise CalendlyAPIError(f"Request failed: {str(e)}") from e

        data = self._json(response)
        if not response.ok or not data.get("access_token"):
            raise CalendlyAPIError(
                data.get("error_description") or data.get("message") or fallback_message,
                status_code=response.status_code,
                payload=data,
            )
        return data

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    def get_current_user(self, access_token: str) -> dict[str, Any]:
        """Return the ``resource`` of ``/users/me``."""
        data = self._get(
            f"{self.API_URL}/users/me",
            access_token,
            params=None,
            fallback_message="Failed to fetch Calendly user information.",
        )
        return data.get("resource") or {}

    def list_scheduled_events(
        self,
        access_token: str,
        user_uri: str,
        min_start_time: str,
        max_start_time: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """List active events for *user_uri*, earliest first."""
        params = {
            "user": user_uri,
            "min_start_time": min_start_time,
            "status": "active",
            "sort": "start_time:asc",
            "count": str(self.EVENTS_PAGE_SIZE),
        }
        if max_start_time:
            params["max_start_time"] = max_start_time

        data = self._get(
            f"{self.API_URL}/scheduled_events",
            access_token,
            params=params,
            fallback_message="Failed to fetch Calendly scheduled events.",
        )
        return data.get("collection") or []

    def get_first_invitee(self, access_token: str, event_uri: str) -> Optional[dict[str, Any]]:
        """Return the earliest-created invitee of an event, or None."""
        if not event_uri:
            return None

        data = self._get(
            f"{event_uri}/invitees",
            access_token,
            params={"count": "1", "sort": "created_at:asc"},
            fallback_message="Failed to fetch Calendly event invitees.",
        )
        collection = data.get("collection") or []
        return collection[0] if collection else None

    def _get(
        self,
        url: str,
        access_token: str,
        params: Optional[dict[str, str]],
        fallback_message: str,
    ) -> dict[str, Any]:
        try:
            response = requests.get(
                url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                params=params,
                timeout=self.timeout,
            )
        except RequestException as e:
            raise CalendlyAPIError(f"Request failed: {str(e)}") from e

        data = self._json(response)
        if not response.ok:
            raise CalendlyAPIError(
                data.get("message") or fallback_message,
                status_code=response.status_code,
                payload=data,
            )
        return data

    @staticmethod
    def _json(response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
