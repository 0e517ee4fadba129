"""Exception types raised by the console backend.

Every error carries the HTTP status it maps to; the app-level exception
handlers in ``main.py`` turn them into JSON error bodies.
"""

from typing import Any, Optional


class ConsoleError(Exception):
    """Base exception for all console errors."""

    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict:
        return {"error": self.message}


class AuthenticationError(ConsoleError):
    """Keystone rejected the credentials or could not be reached."""

    def to_body(self) -> dict:
        return {"error": "Failed to sign in and get token", "detail": self.message}


class NotSignedInError(AuthenticationError):
    """No session could be established for an authenticated call."""


class ValidationError(ConsoleError):
    """A required request field is missing or malformed."""

    http_status = 400

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{field} is required")
        self.field = field

    def to_body(self) -> dict:
        return {"error": self.message, "field": self.field}


class NotFoundError(ConsoleError):
    """Name-to-id resolution found no match."""

    http_status = 404


class UpstreamError(ConsoleError):
    """A cloud service answered with a non-2xx status."""

    def __init__(self, status: int, body: Any, message: Optional[str] = None) -> None:
        super().__init__(message or f"Upstream request failed with HTTP {status}")
        self.status = status
        self.body = body

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return self.status

    def to_body(self) -> dict:
        if isinstance(self.body, dict) and self.body:
            return self.body
        if self.body:
            return {"error": self.message, "body": self.body}
        return {"error": self.message}


class NetworkError(ConsoleError):
    """No response from a cloud service within the timeout."""
