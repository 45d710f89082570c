"""Error kinds and the single exception type raised by the data layer.

Every failure that leaves this package is an ``AnchorError`` carrying an
``ErrorKind``. Only ``ErrorKind.NETWORK`` is retried by the gateway; the
other kinds are surfaced to the caller on the first occurrence.
"""

import re
from enum import Enum

import httpx


class ErrorKind(Enum):
    """Types of failures for differentiated handling."""

    NETWORK = "network"  # Timeout, connection failure, HTTP 5xx, HTTP 429
    VALIDATION = "validation"  # Rejected locally before any request is made
    CONFLICT = "conflict"  # HTTP 409, Postgres unique violation
    NOT_FOUND = "not_found"  # HTTP 404, no row for .single()
    PERMISSION = "permission"  # HTTP 401/403, row-level policy denial
    REMOTE = "remote"  # Any other rejection by the server


class AnchorError(Exception):
    """Failure of a single data-layer operation."""

    def __init__(self, kind: ErrorKind, message: str, code: str | None = None, partial: bool = False):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        # Set when an earlier write of the same operation already succeeded
        self.partial = partial

    def __repr__(self) -> str:
        return f"AnchorError({self.kind.value}, {self.message!r})"

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.NETWORK

    @classmethod
    def wrap(cls, exc: Exception, context: str, partial: bool | None = None) -> "AnchorError":
        """Add context to a lower-level error, keeping its kind."""
        if isinstance(exc, AnchorError):
            if partial is None:
                partial = exc.partial
            return cls(exc.kind, f"{context}: {exc.message}", exc.code, partial)
        if isinstance(exc, httpx.TimeoutException):
            return cls(ErrorKind.NETWORK, f"{context}: request timed out")
        if isinstance(exc, httpx.HTTPError):
            return cls(ErrorKind.NETWORK, f"{context}: {exc}")
        return cls(ErrorKind.REMOTE, f"{context}: {exc}")


def validation_error(message: str) -> AnchorError:
    return AnchorError(ErrorKind.VALIDATION, message)


# Postgres / PostgREST error codes that map to a specific kind
_CODE_KINDS = {
    "23505": ErrorKind.CONFLICT,  # unique_violation
    "23503": ErrorKind.CONFLICT,  # foreign_key_violation
    "23514": ErrorKind.VALIDATION,  # check_violation (note length, color)
    "42501": ErrorKind.PERMISSION,  # insufficient_privilege (RLS)
    "PGRST116": ErrorKind.NOT_FOUND,  # .single() matched no rows
    "PGRST301": ErrorKind.PERMISSION,  # JWT expired / invalid
}


def classify_response(status_code: int, body: dict | None) -> AnchorError:
    """
    Build an AnchorError from a non-2xx REST response.

    Args:
        status_code: HTTP status of the response
        body: Decoded JSON error body, if any (PostgREST sends
            ``{"code", "message", "details", "hint"}``)

    Returns:
        AnchorError with the matching kind
    """
    body = body or {}
    code = body.get("code")
    message = body.get("message") or f"HTTP {status_code}"

    if code in _CODE_KINDS:
        return AnchorError(_CODE_KINDS[code], message, code)

    if status_code == 429 or status_code >= 500:
        kind = ErrorKind.NETWORK
    elif status_code == 409:
        kind = ErrorKind.CONFLICT
    elif status_code == 404:
        kind = ErrorKind.NOT_FOUND
    elif status_code in (401, 403):
        kind = ErrorKind.PERMISSION
    else:
        kind = ErrorKind.REMOTE

    return AnchorError(kind, message, code)


DUPLICATE_URL_PATTERN = re.compile(r"unique_user_normalized_url|duplicate key.*normalized_url", re.IGNORECASE)

# Short user-facing messages, by kind
_FRIENDLY = {
    ErrorKind.NETWORK: "Unable to connect. Check your internet connection and try again.",
    ErrorKind.VALIDATION: None,  # validation messages are already user-facing
    ErrorKind.CONFLICT: "That already exists.",
    ErrorKind.NOT_FOUND: "That item no longer exists.",
    ErrorKind.PERMISSION: "Your session has expired. Please sign in again.",
    ErrorKind.REMOTE: "Something went wrong. Please try again.",
}


def is_duplicate_url_error(error: AnchorError) -> bool:
    """Check if a conflict was raised by the per-user normalized URL constraint."""
    return error.kind is ErrorKind.CONFLICT and bool(DUPLICATE_URL_PATTERN.search(error.message))


def friendly_message(error: Exception) -> str:
    """Convert an error into a message suitable for showing to the user."""
    if not isinstance(error, AnchorError):
        return _FRIENDLY[ErrorKind.REMOTE]

    if error.kind is ErrorKind.VALIDATION:
        # Strip the operation context, keep the validator's own wording
        return error.message.rsplit(": ", 1)[-1]

    if is_duplicate_url_error(error):
        return "You've already saved this link."

    if error.kind is ErrorKind.NETWORK and "timed out" in error.message:
        return "Request timed out. Please try again."

    return _FRIENDLY[error.kind]
