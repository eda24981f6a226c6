"""Error taxonomy shared by the intake server, the dispatch core and the outbound clients.

Every failure the relay raises on purpose is a ``RelayError`` subclass carrying an
``ErrorKind``, an HTTP-ish status code and a ``details`` dict (vendor diagnostics such as
the queue API's response body). ``error_from_status`` turns an outbound HTTP status into
the matching subclass.
"""

from typing import Any, Literal

ErrorKind = Literal[
    "VALIDATION_ERROR",
    "AUTHENTICATION_ERROR",
    "AUTHORIZATION_ERROR",
    "NOT_FOUND_ERROR",
    "CONFLICT_ERROR",
    "RATE_LIMIT_ERROR",
    "EXTERNAL_SERVICE_ERROR",
    "INTERNAL_ERROR",
]


class RelayError(Exception):
    """Base class for all relay errors."""

    kind: ErrorKind = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable error body."""
        return {
            "type": self.kind,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status_code={self.status_code})"


class ValidationError(RelayError):
    kind = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(RelayError):
    kind = "AUTHENTICATION_ERROR"
    status_code = 401


class AuthorizationError(RelayError):
    kind = "AUTHORIZATION_ERROR"
    status_code = 403


class NotFoundError(RelayError):
    kind = "NOT_FOUND_ERROR"
    status_code = 404


class ConflictError(RelayError):
    kind = "CONFLICT_ERROR"
    status_code = 409


class RateLimitError(RelayError):
    kind = "RATE_LIMIT_ERROR"
    status_code = 429

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details.setdefault("retry_after", retry_after)


class ExternalServiceError(RelayError):
    kind = "EXTERNAL_SERVICE_ERROR"
    status_code = 502


class InternalError(RelayError):
    kind = "INTERNAL_ERROR"
    status_code = 500


def is_batch_fatal(error: BaseException) -> bool:
    """True for credential failures, which abort every remaining notification in a batch."""
    return isinstance(error, (AuthenticationError, AuthorizationError))


def error_from_status(
    status: int,
    message: str,
    details: dict[str, Any] | None = None,
    retry_after: float | None = None,
) -> RelayError:
    """Map an outbound HTTP status onto the error taxonomy."""
    if status in (400, 422):
        return ValidationError(message, details)
    if status == 401:
        return AuthenticationError(message, details)
    if status == 403:
        return AuthorizationError(message, details)
    if status == 404:
        return NotFoundError(message, details)
    if status == 409:
        return ConflictError(message, details)
    if status == 429:
        return RateLimitError(message, details, retry_after=retry_after)
    if status >= 500:
        return ExternalServiceError(message, details, status_code=status)
    return InternalError(message, details)
