"""
Race State Machine: Session Lifecycle and Participant Transitions

States:
    SETUP    → Created, roster fixed, no clock running
    RUNNING  → Race in progress, laps being recorded
    FINISHED → Every participant finished (terminal)

Transitions:
    SETUP   → RUNNING  : START         (explicit start request)
    RUNNING → FINISHED : ALL_FINISHED  (derived; re-checked after every
                                        participant change)

Participant actions:
    addLap : +1 lap, saturating at totalLaps; reaching the target finishes
             the participant and stamps finishTime
    finish : finish now regardless of laps (withdrew / DNF); idempotent

Design:
    - Pure functions over frozen Session values; no I/O, no hidden clock
      (every function that stamps time takes `now`)
    - Guards validate transition preconditions, as a table
    - Fallible operations return Result with a LapCounterError
    - Finished participants and the FINISHED status never revert
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, Optional

from lapcounter.core import constants as C
from lapcounter.core.errors import (
    InvalidTransitionError,
    LapCounterError,
    NotFoundError,
    ValidationError,
)
from lapcounter.core.types import Result, Ok, Err, generate_id, parse_timestamp
from lapcounter.race.models import LapAction, Participant, Session, SessionStatus


# =============================================================================
# TRANSITION TABLE
# =============================================================================
@dataclass(frozen=True, slots=True)
class StatusTransition:
    """A permitted status move and the trigger that causes it."""
    from_status: SessionStatus
    to_status: SessionStatus
    trigger: str


START = "START"
ALL_FINISHED = "ALL_FINISHED"

VALID_TRANSITIONS: frozenset[StatusTransition] = frozenset({
    StatusTransition(SessionStatus.SETUP, SessionStatus.RUNNING, START),
    StatusTransition(SessionStatus.RUNNING, SessionStatus.FINISHED, ALL_FINISHED),
})


class TransitionGuard:
    """
    Guard condition for a status transition.

    All guards registered for a transition must pass before it executes.
    """

    __slots__ = ("_name", "_predicate", "_error_message")

    def __init__(
        self,
        name: str,
        predicate: Callable[[Session], bool],
        error_message: str,
    ) -> None:
        self._name = name
        self._predicate = predicate
        self._error_message = error_message

    def evaluate(self, session: Session) -> Result[None, str]:
        if self._predicate(session):
            return Ok(None)
        return Err(self._error_message)

    @property
    def name(self) -> str:
        return self._name


_GUARDS: dict[str, tuple[TransitionGuard, ...]] = {
    START: (
        TransitionGuard(
            "has_participants",
            lambda s: len(s.participants) > 0,
            "session has no participants",
        ),
    ),
    ALL_FINISHED: (
        TransitionGuard(
            "all_finished",
            lambda s: s.all_finished,
            "not every participant has finished",
        ),
    ),
}


def find_transition(
    from_status: SessionStatus,
    to_status: SessionStatus,
) -> Optional[StatusTransition]:
    for t in VALID_TRANSITIONS:
        if t.from_status is from_status and t.to_status is to_status:
            return t
    return None


def advance_status(
    session: Session,
    target: SessionStatus,
    now: datetime,
) -> Result[Session, InvalidTransitionError]:
    """
    Move the session to `target` if the table and its guards allow it.

    Stamps startTime on START and endTime on ALL_FINISHED; an existing
    timestamp is never overwritten.
    """
    transition = find_transition(session.status, target)
    if transition is None:
        return Err(InvalidTransitionError.status(session.status.value, target.value))

    for guard in _GUARDS.get(transition.trigger, ()):
        verdict = guard.evaluate(session)
        if verdict.is_err():
            return Err(InvalidTransitionError.status(
                session.status.value, target.value, verdict.error,
            ))

    if transition.trigger == START:
        return Ok(replace(
            session,
            status=target,
            start_time=session.start_time or now,
        ))
    return Ok(replace(
        session,
        status=target,
        end_time=session.end_time or now,
    ))


# =============================================================================
# CREATION
# =============================================================================
def create_session(
    name: Any,
    total_laps: Any,
    participant_names: Any,
    now: datetime,
    id_factory: Callable[[], str] = generate_id,
) -> Result[Session, ValidationError]:
    """
    Validate creation input and build a fresh SETUP session.

    Blank participant names are dropped before the emptiness check;
    surviving names are trimmed.
    """
    if not isinstance(name, str) or not name.strip():
        return Err(ValidationError.invalid_field("name", "must be a non-empty string", name))
    if len(name.strip()) > C.MAX_NAME_LENGTH:
        return Err(ValidationError.invalid_field("name", f"longer than {C.MAX_NAME_LENGTH} characters"))

    if isinstance(total_laps, bool) or not isinstance(total_laps, int):
        return Err(ValidationError.invalid_field("totalLaps", "must be an integer", total_laps))
    if total_laps < 1:
        return Err(ValidationError.invalid_field("totalLaps", "must be at least 1", total_laps))
    if total_laps > C.MAX_TOTAL_LAPS:
        return Err(ValidationError.invalid_field(
            "totalLaps", f"must be at most {C.MAX_TOTAL_LAPS}", total_laps,
        ))

    if not isinstance(participant_names, (list, tuple)):
        return Err(ValidationError.invalid_field(
            "participantNames", "must be a list of strings", participant_names,
        ))
    if any(not isinstance(n, str) for n in participant_names):
        return Err(ValidationError.invalid_field("participantNames", "entries must be strings"))

    names = [n.strip() for n in participant_names if n.strip()]
    if not names:
        return Err(ValidationError.invalid_field("participantNames", "at least one name is required"))
    if len(names) > C.MAX_PARTICIPANTS:
        return Err(ValidationError.invalid_field(
            "participantNames", f"at most {C.MAX_PARTICIPANTS} participants",
        ))
    if any(len(n) > C.MAX_NAME_LENGTH for n in names):
        return Err(ValidationError.invalid_field(
            "participantNames", f"names longer than {C.MAX_NAME_LENGTH} characters",
        ))

    return Ok(Session(
        id=id_factory(),
        name=name.strip(),
        total_laps=total_laps,
        participants=tuple(Participant(id=id_factory(), name=n) for n in names),
        status=SessionStatus.SETUP,
        created_at=now,
    ))


# =============================================================================
# TRANSITIONS
# =============================================================================
def start_session(session: Session, now: datetime) -> Result[Session, InvalidTransitionError]:
    """SETUP → RUNNING. Any other starting status is an invalid transition."""
    return advance_status(session, SessionStatus.RUNNING, now)


def evaluate_completion(session: Session, now: datetime) -> Session:
    """Finish a RUNNING session once every participant has finished."""
    if session.status is SessionStatus.RUNNING and session.all_finished:
        return advance_status(session, SessionStatus.FINISHED, now).unwrap()
    return session


def settle_completion(session: Session) -> Session:
    """
    Completion check for a session assembled from stored records.

    Two writers can each finish one of the last two participants without
    either seeing the other, leaving the summary RUNNING. Reads repair that:
    endTime becomes the latest participant finishTime, so the result does
    not depend on when the read happens.
    """
    if session.status is not SessionStatus.RUNNING or not session.all_finished:
        return session
    times = [p.finish_time for p in session.participants if p.finish_time is not None]
    end = max(times) if times else (session.start_time or session.created_at)
    return advance_status(session, SessionStatus.FINISHED, end).unwrap()


def apply_lap(
    session: Session,
    participant_id: str,
    action: LapAction,
    now: datetime,
) -> Result[Session, NotFoundError]:
    """
    Apply one participant action and re-check session completion.

    Excess laps (participant already finished, or at the target) are
    absorbed silently: the session comes back unchanged.
    """
    participant = session.participant(participant_id)
    if participant is None:
        return Err(NotFoundError.participant(session.id, participant_id))

    if action is LapAction.ADD_LAP:
        updated = _add_lap(participant, session.total_laps, now)
    else:
        updated = _finish(participant, now)

    if updated is participant:
        return Ok(session)
    return Ok(evaluate_completion(session.with_participant(updated), now))


def _add_lap(participant: Participant, total_laps: int, now: datetime) -> Participant:
    if participant.finished or participant.laps_completed >= total_laps:
        return participant
    laps = participant.laps_completed + 1
    if laps >= total_laps:
        return replace(
            participant,
            laps_completed=laps,
            finished=True,
            finish_time=participant.finish_time or now,
        )
    return replace(participant, laps_completed=laps)


def _finish(participant: Participant, now: datetime) -> Participant:
    if participant.finished:
        return participant
    return replace(participant, finished=True, finish_time=participant.finish_time or now)


# =============================================================================
# MERGES (sync and partial-update endpoints)
# =============================================================================
def merge_participant(
    stored: Participant,
    incoming: Participant,
    total_laps: int,
    now: Optional[datetime],
) -> Participant:
    """
    Monotonic merge of two views of the same participant.

    Laps take the maximum (capped at the target), finished is sticky and
    the earliest known finishTime wins. The stored name is kept. With
    `now` None a finished participant lacking any finishTime keeps None.
    """
    laps = min(total_laps, max(stored.laps_completed, incoming.laps_completed))
    finished = stored.finished or incoming.finished or laps >= total_laps
    times = [t for t in (stored.finish_time, incoming.finish_time) if t is not None]
    finish_time = min(times) if times else None
    if finished and finish_time is None:
        finish_time = now
    if not finished:
        finish_time = None
    return replace(stored, laps_completed=laps, finished=finished, finish_time=finish_time)


def merge_participants(
    session: Session,
    incoming: Iterable[Participant],
    now: datetime,
) -> tuple[Session, list[str]]:
    """
    Fold a client's participant list into the stored session.

    Roster membership and order come from the stored session: unknown ids
    are ignored and reported, missing ids keep their stored values.

    Returns:
        (merged session, ids that were ignored)
    """
    by_id: dict[str, Participant] = {}
    ignored: list[str] = []
    known = set(session.participant_ids)
    for p in incoming:
        if p.id in known:
            prior = by_id.get(p.id)
            by_id[p.id] = p if prior is None else merge_participant(prior, p, session.total_laps, now)
        else:
            ignored.append(p.id)

    merged = tuple(
        merge_participant(p, by_id[p.id], session.total_laps, now) if p.id in by_id else p
        for p in session.participants
    )
    return evaluate_completion(replace(session, participants=merged), now), ignored


def request_status(
    session: Session,
    target: SessionStatus,
    now: datetime,
    at: Optional[datetime] = None,
) -> Result[Session, InvalidTransitionError]:
    """
    Client-requested status change.

    Re-requesting the current status is invalid (a second start must not
    touch startTime), as are backward moves and skipped states.
    `at` overrides `now` for the timestamp the transition stamps.
    """
    if target is session.status:
        return Err(InvalidTransitionError.status(
            session.status.value, target.value, f"session is already {target.value}",
        ))
    if target.rank < session.status.rank:
        return Err(InvalidTransitionError.status(
            session.status.value, target.value, "status only moves forward",
        ))
    return advance_status(session, target, at or now)


MERGEABLE_FIELDS = frozenset({"name", "status", "startTime", "endTime"})


def merge_session_fields(
    session: Session,
    updates: Mapping[str, Any],
    now: datetime,
) -> Result[Session, LapCounterError]:
    """
    Partial update of session-level fields (PUT /sessions/{id}).

    Only name, status, startTime and endTime are accepted; immutable fields
    (id, totalLaps, createdAt, participants) are rejected. A status change
    goes through the transition table, so `{"status": "running",
    "startTime": ...}` is how a race is started.
    """
    unknown = set(updates) - MERGEABLE_FIELDS
    if unknown:
        return Err(ValidationError.invalid_field(
            ",".join(sorted(unknown)), "field cannot be updated",
        ))

    result = session
    if "name" in updates:
        new_name = updates["name"]
        if not isinstance(new_name, str) or not new_name.strip():
            return Err(ValidationError.invalid_field("name", "must be a non-empty string", new_name))
        result = replace(result, name=new_name.strip())

    try:
        start_at = parse_timestamp(updates.get("startTime"))
        end_at = parse_timestamp(updates.get("endTime"))
    except (TypeError, ValueError, AttributeError) as e:
        return Err(ValidationError.malformed(f"invalid timestamp: {e}", cause=e))

    if "status" in updates:
        parsed = SessionStatus.parse(updates["status"])
        if parsed.is_err():
            return Err(ValidationError.invalid_field("status", parsed.error, updates["status"]))
        target = parsed.unwrap()
        at = start_at if target is SessionStatus.RUNNING else end_at
        moved = request_status(result, target, now, at)
        if moved.is_err():
            return moved
        result = moved.unwrap()
    elif start_at is not None or end_at is not None:
        return Err(ValidationError.invalid_field(
            "startTime/endTime", "timestamps are only set together with a status change",
        ))

    return Ok(result)


# =============================================================================
# STANDINGS
# =============================================================================
@dataclass(frozen=True, slots=True)
class Standing:
    """One leaderboard row."""
    position: int
    participant: Participant
    elapsed: Optional[timedelta]

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "participant": self.participant.to_dict(),
            "elapsed": format_elapsed(self.elapsed) if self.elapsed is not None else None,
        }


def standings(session: Session) -> list[Standing]:
    """
    Leaderboard order.

    Finished participants first (more laps first, then earlier finishTime),
    then unfinished participants by laps descending. Ties keep roster order.
    """
    far_future = datetime.max.replace(tzinfo=session.created_at.tzinfo)

    def finished_key(p: Participant) -> tuple[int, datetime]:
        return (-p.laps_completed, p.finish_time or far_future)

    finished = sorted((p for p in session.participants if p.finished), key=finished_key)
    running = sorted(
        (p for p in session.participants if not p.finished),
        key=lambda p: -p.laps_completed,
    )

    rows: list[Standing] = []
    for position, p in enumerate([*finished, *running], start=1):
        elapsed = None
        if p.finish_time is not None and session.start_time is not None:
            elapsed = p.finish_time - session.start_time
        rows.append(Standing(position=position, participant=p, elapsed=elapsed))
    return rows


def format_elapsed(delta: timedelta) -> str:
    """H:MM:SS when at least an hour, else M:SS."""
    total = max(0, int(delta.total_seconds()))
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def diff_participants(base: Session, candidate: Session) -> list[str]:
    """Ids of participants whose state differs between two versions."""
    before = {p.id: p for p in base.participants}
    return [p.id for p in candidate.participants if before.get(p.id) != p]


def summary_changed(base: Session, candidate: Session) -> bool:
    """True when any session-level (non-participant) field differs."""
    return (
        base.name != candidate.name
        or base.status is not candidate.status
        or base.start_time != candidate.start_time
        or base.end_time != candidate.end_time
        or base.total_laps != candidate.total_laps
        or base.created_at != candidate.created_at
    )
