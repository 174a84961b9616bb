"""
Live Lap Counter

Tracks lap-counting races: a session has a fixed lap target and a roster
of participants who add laps or finish while the session moves
setup → running → finished.

Layers:
- Race: pure state machine over frozen Session/Participant values
- Storage: session store adapter over an eventually consistent blob store
  (memory, filesystem, S3, Redis), one record per participant
- Reconciler: load-apply-save with retry, backoff and write verification
- API: JSON endpoints served by aiohttp
- Client: optimistic mirror with commit-or-revert submits

License: MIT
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from lapcounter.core.types import Result, Ok, Err
from lapcounter.core.errors import (
    LapCounterError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    TransientStoreError,
    ConsistencyWarning,
)
from lapcounter.core.config import LapCounterConfig
from lapcounter.race import (
    LapAction,
    Participant,
    Session,
    SessionStatus,
    apply_lap,
    create_session,
    start_session,
)
from lapcounter.storage import SessionStore, InMemoryObjectStore
from lapcounter.reconciler import ReconcileOutcome, SessionReconciler
from lapcounter.client import OptimisticMirror, Committed, Reverted, Rejected

__all__ = [
    "__version__",
    # Result monad
    "Result",
    "Ok",
    "Err",
    # Errors
    "LapCounterError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "TransientStoreError",
    "ConsistencyWarning",
    # Config
    "LapCounterConfig",
    # Race
    "LapAction",
    "Participant",
    "Session",
    "SessionStatus",
    "apply_lap",
    "create_session",
    "start_session",
    # Storage
    "SessionStore",
    "InMemoryObjectStore",
    # Reconciler
    "ReconcileOutcome",
    "SessionReconciler",
    # Client
    "OptimisticMirror",
    "Committed",
    "Reverted",
    "Rejected",
]
