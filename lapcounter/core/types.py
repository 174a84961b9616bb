"""
Core Type Definitions for the Lap Counter

Implements the Result/Either monad used for exception-free control flow
across the store adapter, reconciler and HTTP handlers, plus the small
identity and timestamp helpers every layer shares.

Design Principles:
- Fallible I/O returns Result, never raises for expected failures
- Identifiers are opaque strings (random UUID4 text)
- All timestamps are timezone-aware UTC datetimes in memory and
  ISO-8601 strings with a 'Z' suffix on the wire
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    Optional,
    TypeVar,
    Union,
)
from uuid import uuid4

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type
U = TypeVar("U")  # Transform result type


# =============================================================================
# RESULT MONAD
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result.

    Immutable container for the value of a successful operation.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """Extract value. Safe to call after an is_ok() check."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return value, ignoring default."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply transformation to the success value."""
        return Ok(fn(self.value))

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Chain another fallible operation."""
        return fn(self.value)

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result.

    Carries the error object unchanged through map/flat_map chains.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Unwrapping an error is a programming error.

        Raises:
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        return self

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Union[Ok[T], Err[E]]


# =============================================================================
# IDENTIFIERS
# =============================================================================
SessionId = str
ParticipantId = str


def generate_id() -> str:
    """Fresh opaque identifier for a session or participant."""
    return str(uuid4())


def parse_id(value: Any, kind: str = "id") -> Result[str, str]:
    """
    Validate an identifier received from a client.

    Identifiers are opaque, but they end up inside object-store keys, so
    anything that could escape the key prefix is refused.
    """
    if not isinstance(value, str) or not value.strip():
        return Err(f"{kind} must be a non-empty string")
    value = value.strip()
    if "/" in value or "\\" in value or ".." in value:
        return Err(f"{kind} contains illegal characters")
    return Ok(value)


# =============================================================================
# TIMESTAMPS
# =============================================================================
def utc_now() -> datetime:
    """Current time, UTC, truncated to milliseconds (the wire precision)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def format_timestamp(value: datetime) -> str:
    """
    Serialize to ISO-8601 UTC with millisecond precision.

    Example: 2024-05-01T09:30:00.125Z
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp; None passes through.

    Accepts the 'Z' suffix as well as explicit offsets. Naive values are
    taken to be UTC. Sub-millisecond digits are dropped to match the
    precision format_timestamp writes.

    Raises:
        ValueError: If the string is not ISO-8601
    """
    if value is None:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(timezone.utc)
    return parsed.replace(microsecond=(parsed.microsecond // 1000) * 1000)


Clock = Callable[[], datetime]
