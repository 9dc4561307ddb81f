"""Error taxonomy shared by every migration component."""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Classification carried by errors and per-record outcomes."""
    STRUCTURAL = "structural"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    AUTH = "auth"
    DATA = "data"
    CONCURRENCY = "concurrency"
    CONNECTIVITY = "connectivity"
    NOT_FOUND = "not_found"


# Platform error codes that indicate a retryable condition
RETRYABLE_ERROR_CODES = frozenset({
    "REQUEST_LIMIT_EXCEEDED",
    "CONCURRENT_REQUEST_LIMIT_EXCEEDED",
    "SERVER_UNAVAILABLE",
    "REQUEST_TIMEOUT",
    "UNABLE_TO_LOCK_ROW",
})

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

AUTH_ERROR_CODES = frozenset({
    "INVALID_SESSION_ID",
    "INVALID_AUTH_HEADER",
    "INVALID_GRANT",
})


class MigrationError(Exception):
    """Base class for all migration errors."""
    kind = ErrorKind.CONNECTIVITY

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class StructuralError(MigrationError):
    """A template is malformed and cannot be registered."""
    kind = ErrorKind.STRUCTURAL


class ValidationError(MigrationError):
    """Pre-flight validation failed; the run is blocked."""
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, result: Any = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.result = result


class TransientApiError(MigrationError):
    """Retryable network, rate-limit or server-side condition."""
    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, {"status_code": status_code, "error_code": error_code})
        self.status_code = status_code
        self.error_code = error_code
        self.retry_after = retry_after


class AuthError(MigrationError):
    """Credential expired, revoked or otherwise unusable."""
    kind = ErrorKind.AUTH

    def __init__(
        self,
        message: str,
        org_id: Optional[str] = None,
        reconnect_required: bool = False,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, {"org_id": org_id, "reconnect_required": reconnect_required})
        self.org_id = org_id
        self.reconnect_required = reconnect_required
        self.status_code = status_code


class DataError(MigrationError):
    """A single record was rejected; recorded, never fatal to a step."""
    kind = ErrorKind.DATA

    def __init__(self, message: str, record_id: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(message, {"record_id": record_id, "error_code": error_code})
        self.record_id = record_id
        self.error_code = error_code


class ConcurrencyError(MigrationError):
    """The duplicate-run guard was tripped."""
    kind = ErrorKind.CONCURRENCY


class ConnectivityError(MigrationError):
    """Non-retryable transport or request failure."""
    kind = ErrorKind.CONNECTIVITY

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message, {"status_code": status_code, "error_code": error_code})
        self.status_code = status_code
        self.error_code = error_code


class NotFoundError(MigrationError):
    """A project, session, template or organisation does not exist."""
    kind = ErrorKind.NOT_FOUND


def is_retryable_code(error_code: Optional[str]) -> bool:
    """Check whether a platform error code is worth retrying."""
    return bool(error_code) and error_code.upper() in RETRYABLE_ERROR_CODES


def _first_error(body: Any) -> Dict[str, Any]:
    """Pull the first error entry out of a platform error payload."""
    if isinstance(body, list) and body:
        entry = body[0]
        return entry if isinstance(entry, dict) else {"message": str(entry)}
    if isinstance(body, dict):
        return body
    if body:
        return {"message": str(body)}
    return {}


def classify_response(
    status_code: int,
    body: Any,
    retry_after: Optional[float] = None,
) -> MigrationError:
    """
    Turn an HTTP error response into the matching taxonomy error.

    Args:
        status_code: HTTP status of the response
        body: Decoded JSON body (list of errors, OAuth error dict or text)
        retry_after: Seconds from a Retry-After header, if any

    Returns:
        An AuthError, TransientApiError or ConnectivityError instance
    """
    entry = _first_error(body)
    error_code = entry.get("errorCode") or entry.get("error")
    message = entry.get("message") or entry.get("error_description") or f"HTTP {status_code}"
    code = error_code.upper() if isinstance(error_code, str) else None

    if status_code == 401 or code in AUTH_ERROR_CODES:
        return AuthError(f"Authentication failed: {message}", status_code=status_code)

    if status_code in RETRYABLE_STATUS_CODES or is_retryable_code(code):
        return TransientApiError(
            f"Transient platform error ({code or status_code}): {message}",
            status_code=status_code,
            error_code=code,
            retry_after=retry_after,
        )

    return ConnectivityError(
        f"Platform request failed ({code or status_code}): {message}",
        status_code=status_code,
        error_code=code,
    )


def format_errors(errors: List[Dict[str, Any]]) -> str:
    """Join platform error entries into a single readable message."""
    parts = []
    for error in errors:
        code = error.get("statusCode") or error.get("errorCode")
        message = error.get("message", "")
        fields = error.get("fields") or []
        text = f"{code}: {message}" if code else message
        if fields:
            text += f" [{', '.join(fields)}]"
        parts.append(text)
    return "; ".join(parts)
