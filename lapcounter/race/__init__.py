"""
Race module: session/participant data model and the pure state machine.
"""

from lapcounter.race.models import (
    LapAction,
    Participant,
    Session,
    SessionStatus,
    check_invariants,
)
from lapcounter.race.state_machine import (
    apply_lap,
    create_session,
    evaluate_completion,
    merge_participant,
    merge_participants,
    merge_session_fields,
    settle_completion,
    standings,
    start_session,
)

__all__ = [
    "LapAction",
    "Participant",
    "Session",
    "SessionStatus",
    "check_invariants",
    "apply_lap",
    "create_session",
    "evaluate_completion",
    "merge_participant",
    "merge_participants",
    "merge_session_fields",
    "settle_completion",
    "standings",
    "start_session",
]
