"""
Core module: Result type, errors, configuration, constants.
"""

from lapcounter.core.types import Result, Ok, Err, generate_id, utc_now
from lapcounter.core.errors import (
    ErrorCode,
    LapCounterError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    TransientStoreError,
    ConsistencyWarning,
)
from lapcounter.core.config import LapCounterConfig

__all__ = [
    "Result",
    "Ok",
    "Err",
    "generate_id",
    "utc_now",
    "ErrorCode",
    "LapCounterError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "TransientStoreError",
    "ConsistencyWarning",
    "LapCounterConfig",
]
