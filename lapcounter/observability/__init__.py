"""
Observability module: structured logging with request correlation.
"""

from lapcounter.observability.logging import (
    JsonFormatter,
    LogLevel,
    StructuredLogger,
    current_context,
    log_context,
    setup_logging,
)

__all__ = [
    "JsonFormatter",
    "LogLevel",
    "StructuredLogger",
    "current_context",
    "log_context",
    "setup_logging",
]
