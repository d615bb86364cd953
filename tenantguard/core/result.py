"""
Typed operation results.

Services return ``Ok(value)`` or ``Err(kind, message)`` instead of raising, so
every route must handle each failure kind explicitly.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced by the identity services."""

    # Refresh token engine (all collapse to 401 at the API boundary)
    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    REVOKED = "revoked"
    REUSE_DETECTED = "reuse_detected"
    INACTIVE_USER = "inactive_user"

    # Password login
    INVALID_CREDENTIALS = "invalid_credentials"

    # Impersonation manager
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    ALREADY_IMPERSONATING = "already_impersonating"
    INVALID_STATE = "invalid_state"

    # Credential store timeout / connection failure
    UNAVAILABLE = "unavailable"


REFRESH_ERROR_KINDS = frozenset(
    {
        ErrorKind.INVALID_TOKEN,
        ErrorKind.EXPIRED,
        ErrorKind.REVOKED,
        ErrorKind.REUSE_DETECTED,
        ErrorKind.INACTIVE_USER,
    }
)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err
