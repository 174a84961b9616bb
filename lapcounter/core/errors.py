"""
Error Hierarchy for the Lap Counter

Design Principles:
- Expected failures travel inside Result values, not as raised exceptions
- Every error carries a stable code, so HTTP mapping never parses messages
- Errors keep their cause for logging but never leak it to API clients

Taxonomy:
- ValidationError:        bad creation/request input       (4xx, never retried)
- NotFoundError:          session or participant absent    (404, never retried)
- InvalidTransitionError: status move the lifecycle forbids (409, never retried)
- TransientStoreError:    object store read/write failure  (retried, then 5xx)
- ConsistencyWarning:     post-write verification mismatch (non-fatal unless strict)

Usage:
    result = await store.load(session_id)
    match result:
        case Ok(session):
            ...
        case Err(NotFoundError() as e):
            return Response.error(e.message, status=404)
        case Err(e):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from lapcounter.core.types import format_timestamp, utc_now


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    - 1xxx: Validation
    - 2xxx: Lookup
    - 3xxx: Lifecycle
    - 4xxx: Storage
    - 5xxx: Consistency
    - 9xxx: Internal and client-side
    """

    VALIDATION_FAILED = 1001
    MALFORMED_REQUEST = 1002

    SESSION_NOT_FOUND = 2001
    PARTICIPANT_NOT_FOUND = 2002

    INVALID_TRANSITION = 3001

    STORE_READ_FAILED = 4001
    STORE_WRITE_FAILED = 4002
    STORE_CORRUPT_DOCUMENT = 4003
    SAVE_FAILED = 4004

    CONSISTENCY_MISMATCH = 5001

    INTERNAL = 9001
    TRANSPORT_FAILED = 9002

    @property
    def http_status(self) -> int:
        """HTTP status an API response should use for this code."""
        family = self.value // 1000
        if family == 1:
            return 400
        if family == 2:
            return 404
        if family == 3:
            return 409
        return 500


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class LapCounterError(Exception):
    """
    Base class for all lap counter errors.

    Provides:
    - Unique error id for correlating an API response with a log line
    - Error code for programmatic handling
    - Cause for root cause analysis (logged, never serialized)
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utc_now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return self.code.http_status

    @property
    def retryable(self) -> bool:
        """Only store failures are worth another attempt."""
        return False

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and structured logs."""
        return {
            "error": self.message,
            "code": self.code.name,
            "errorId": self.error_id,
            "timestamp": format_timestamp(self.timestamp),
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# VALIDATION ERRORS
# =============================================================================
@dataclass
class ValidationError(LapCounterError):
    """Input rejected before any state was touched."""

    @classmethod
    def invalid_field(cls, field_name: str, reason: str, value: Any = None) -> ValidationError:
        return cls(
            code=ErrorCode.VALIDATION_FAILED,
            message=f"Invalid {field_name}: {reason}",
            context={"field": field_name, "value": str(value)[:100], "reason": reason},
        )

    @classmethod
    def malformed(cls, reason: str, cause: Optional[BaseException] = None) -> ValidationError:
        return cls(
            code=ErrorCode.MALFORMED_REQUEST,
            message=f"Malformed request: {reason}",
            cause=cause,
            context={"reason": reason},
        )


# =============================================================================
# LOOKUP ERRORS
# =============================================================================
@dataclass
class NotFoundError(LapCounterError):
    """Referenced session or participant does not exist."""

    @classmethod
    def session(cls, session_id: str) -> NotFoundError:
        return cls(
            code=ErrorCode.SESSION_NOT_FOUND,
            message="Session not found",
            context={"session_id": session_id},
        )

    @classmethod
    def participant(cls, session_id: str, participant_id: str) -> NotFoundError:
        return cls(
            code=ErrorCode.PARTICIPANT_NOT_FOUND,
            message="Participant not found",
            context={"session_id": session_id, "participant_id": participant_id},
        )


# =============================================================================
# LIFECYCLE ERRORS
# =============================================================================
@dataclass
class InvalidTransitionError(LapCounterError):
    """Requested status change is not allowed from the current status."""

    @classmethod
    def status(cls, from_status: str, to_status: str, reason: str = "") -> InvalidTransitionError:
        suffix = f": {reason}" if reason else ""
        return cls(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"Cannot move session from {from_status} to {to_status}{suffix}",
            context={"from": from_status, "to": to_status},
        )


# =============================================================================
# STORAGE ERRORS
# =============================================================================
@dataclass
class TransientStoreError(LapCounterError):
    """
    Object store read or write failed.

    Retried by the reconciler; surfaces to callers only after the retry
    budget is spent (as SAVE_FAILED).
    """

    @property
    def retryable(self) -> bool:
        return self.code != ErrorCode.SAVE_FAILED

    @classmethod
    def read_failed(cls, key: str, cause: Optional[BaseException] = None) -> TransientStoreError:
        return cls(
            code=ErrorCode.STORE_READ_FAILED,
            message=f"Failed to read '{key}' from object store",
            cause=cause,
            context={"key": key},
        )

    @classmethod
    def write_failed(cls, key: str, cause: Optional[BaseException] = None) -> TransientStoreError:
        return cls(
            code=ErrorCode.STORE_WRITE_FAILED,
            message=f"Failed to write '{key}' to object store",
            cause=cause,
            context={"key": key},
        )

    @classmethod
    def corrupt_document(cls, key: str, reason: str) -> TransientStoreError:
        """Stored bytes could not be decoded (possibly a torn or partial read)."""
        return cls(
            code=ErrorCode.STORE_CORRUPT_DOCUMENT,
            message=f"Stored document '{key}' is unreadable: {reason}",
            context={"key": key, "reason": reason},
        )

    @classmethod
    def save_failed(cls, session_id: str, attempts: int, last_error: str) -> TransientStoreError:
        return cls(
            code=ErrorCode.SAVE_FAILED,
            message=f"Failed to update session after {attempts} attempts",
            context={"session_id": session_id, "attempts": attempts, "last_error": last_error},
        )


# =============================================================================
# CONSISTENCY
# =============================================================================
@dataclass
class ConsistencyWarning(LapCounterError):
    """Re-read after a successful write did not show what was written."""

    @classmethod
    def mismatch(cls, session_id: str, detail: str) -> ConsistencyWarning:
        return cls(
            code=ErrorCode.CONSISTENCY_MISMATCH,
            message=f"Write verification mismatch: {detail}",
            context={"session_id": session_id, "detail": detail},
        )
