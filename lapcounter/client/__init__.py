"""
Client module: optimistic session mirror and server transports.
"""

from lapcounter.client.mirror import (
    Committed,
    OptimisticMirror,
    Rejected,
    Reverted,
    SubmitResult,
)
from lapcounter.client.transport import HttpTransport, LocalTransport, SessionTransport

__all__ = [
    "Committed",
    "HttpTransport",
    "LocalTransport",
    "OptimisticMirror",
    "Rejected",
    "Reverted",
    "SessionTransport",
    "SubmitResult",
]
