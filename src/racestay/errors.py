"""Error taxonomy shared by the server, the workers and the client SDK.

Every error carries a stable ``code`` that travels over the wire in the JSON
body ``{"detail": ..., "code": ...}`` so the client can raise the same class
the server raised.
"""

from __future__ import annotations

from typing import Any


class RaceStayError(Exception):
    """Base class for all domain errors."""

    code = "server"
    status_code = 500

    def __init__(self, message: str = "", **context: Any) -> None:  # noqa: ANN401
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.context:
            body["context"] = self.context
        return body


class ValidationError(RaceStayError):
    """Malformed input (empty message, missing field, bad dates)."""

    code = "validation"
    status_code = 400


class InsufficientPointsError(ValidationError):
    """Voluntary spend exceeds the freshly computed balance."""

    code = "insufficient_points"


class UnauthorizedError(RaceStayError):
    """Caller is not a party to the booking or message."""

    code = "unauthorized"
    status_code = 403


class NotFoundError(RaceStayError):
    code = "not_found"
    status_code = 404


class InvalidTransitionError(RaceStayError):
    """Current booking status does not permit the requested operation."""

    code = "invalid_transition"
    status_code = 409


class ConflictError(RaceStayError):
    """A conditional update found stale state: another actor changed it first."""

    code = "conflict"
    status_code = 409


class OperationInProgressError(RaceStayError):
    """A mutation for the same entity is already in flight on this client."""

    code = "in_progress"
    status_code = 429


class ExpiredError(RaceStayError):
    """The host response deadline has passed."""

    code = "expired"
    status_code = 410


class NetworkError(RaceStayError):
    """Transport failure between client and server. Never raised by the server."""

    code = "network"
    status_code = 503


class ServerError(RaceStayError):
    """Unexpected backing-store or server failure."""

    code = "server"
    status_code = 500


ERROR_CLASSES: dict[str, type[RaceStayError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        InsufficientPointsError,
        UnauthorizedError,
        NotFoundError,
        InvalidTransitionError,
        ConflictError,
        OperationInProgressError,
        ExpiredError,
        NetworkError,
        ServerError,
    )
}


def error_from_payload(payload: dict[str, Any], status_code: int) -> RaceStayError:
    """Rebuild a domain error from an HTTP error body."""
    code = payload.get("code")
    detail = payload.get("detail")
    message = detail if isinstance(detail, str) else "Request failed"
    cls = ERROR_CLASSES.get(code or "")
    if cls is None:
        if status_code == 422:
            cls = ValidationError
        elif status_code in (401, 403):
            cls = UnauthorizedError
        elif status_code == 404:
            cls = NotFoundError
        else:
            cls = ServerError
    return cls(message, **(payload.get("context") or {}))


def is_retryable(exc: BaseException) -> bool:
    """Only transport failures are retried, and only for reads."""
    return isinstance(exc, NetworkError)
