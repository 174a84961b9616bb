"""
Optimistic Mirror: client-held session state, updated ahead of the server

Each participant action is a two-phase commit:

    1. tentative   apply the transition locally with the shared state
                   machine and render immediately
    2. confirm     push the action, applied to the last authoritative session,
                   to PUT /sessions/sync and replace the mirror with the answer
       or revert   restore the participant's pre-action state and report

The outcome is a value, never a flag: Committed carries the authoritative
session, Reverted carries the restored session and the error, Rejected
means nothing was attempted (no session loaded, or an update for that
participant is already in flight).

The in-flight set relies on a single event loop: the check-then-add in
submit() runs without an await in between, so it is atomic with respect
to other submits on the same mirror.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Union

from lapcounter.client.transport import SessionTransport
from lapcounter.core.errors import LapCounterError
from lapcounter.core.types import Clock, Result, format_timestamp, utc_now
from lapcounter.race.models import LapAction, Participant, Session, SessionStatus
from lapcounter.race.state_machine import apply_lap, merge_participants, start_session

logger = logging.getLogger(__name__)

Listener = Callable[[Session], None]


@dataclass(frozen=True)
class Committed:
    """Server accepted the change; `session` is authoritative."""
    session: Session


@dataclass(frozen=True)
class Reverted:
    """Server refused or was unreachable; the tentative change was undone."""
    session: Session
    error: LapCounterError


@dataclass(frozen=True)
class Rejected:
    """Nothing was attempted."""
    reason: str
    participant_id: Optional[str] = None


SubmitResult = Union[Committed, Reverted, Rejected]


class OptimisticMirror:
    """
    Local copy of one session plus the set of participants with an
    update in flight.

    Usage:
        mirror = OptimisticMirror(LocalTransport(router))
        await mirror.load(session_id)
        outcome = await mirror.submit(participant_id, LapAction.ADD_LAP)
        if isinstance(outcome, Reverted):
            show_alert(outcome.error.message)
    """

    __slots__ = ("_transport", "_clock", "_session", "_confirmed", "_pending", "_listeners")

    def __init__(self, transport: SessionTransport, clock: Clock = utc_now) -> None:
        self._transport = transport
        self._clock = clock
        self._session: Optional[Session] = None
        self._confirmed: Optional[Session] = None
        self._pending: dict[str, Participant] = {}
        self._listeners: list[Listener] = []

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._pending)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener` with every new mirror value; returns an unsubscribe."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set(self, session: Session) -> None:
        self._session = session
        for listener in list(self._listeners):
            listener(session)

    async def load(self, session_id: str) -> Result[Session, LapCounterError]:
        """Replace the mirror with the server's current session."""
        fetched = await self._transport.fetch(session_id)
        if fetched.is_ok():
            self._confirmed = fetched.unwrap()
            self._set(self._with_pending(self._confirmed))
        return fetched

    async def start(self) -> SubmitResult:
        """Start the race locally, then ask the server to do the same."""
        snapshot = self._session
        if snapshot is None:
            return Rejected("no session loaded")

        started = start_session(snapshot, self._clock())
        if started.is_err():
            return Rejected(started.error.message)
        tentative = started.unwrap()
        self._set(tentative)

        result = await self._transport.update(snapshot.id, {
            "status": SessionStatus.RUNNING.value,
            "startTime": format_timestamp(tentative.start_time),
        })
        if result.is_err():
            restored = replace(
                self._session or tentative,
                status=snapshot.status,
                start_time=snapshot.start_time,
            )
            self._set(restored)
            logger.warning("Start reverted", extra={"error": str(result.error)})
            return Reverted(restored, result.error)

        self._confirmed = result.unwrap()
        self._set(self._with_pending(self._confirmed))
        return Committed(self._session)

    async def submit(self, participant_id: str, action: LapAction) -> SubmitResult:
        """addLap / finish for one participant, optimistically."""
        snapshot = self._session
        if snapshot is None:
            return Rejected("no session loaded", participant_id)
        if participant_id in self._pending:
            return Rejected("update already in flight", participant_id)

        now = self._clock()
        applied = apply_lap(snapshot, participant_id, action, now)
        if applied.is_err():
            return Rejected(applied.error.message, participant_id)
        tentative = applied.unwrap()

        # Other participants' unconfirmed laps must not ride along.
        outgoing = apply_lap(self._confirmed or snapshot, participant_id, action, now)
        if outgoing.is_err():
            return Rejected(outgoing.error.message, participant_id)

        before = snapshot.participant(participant_id)
        self._pending[participant_id] = tentative.participant(participant_id)
        self._set(tentative)

        try:
            result = await self._transport.sync(outgoing.unwrap())
        finally:
            del self._pending[participant_id]

        if result.is_err():
            restored = _restore(self._session or tentative, before, snapshot)
            self._set(restored)
            logger.warning(
                "Participant update reverted",
                extra={"participant_id": participant_id, "error": str(result.error)},
            )
            return Reverted(restored, result.error)

        self._confirmed = result.unwrap()
        self._set(self._with_pending(self._confirmed))
        return Committed(self._session)

    def _with_pending(self, authoritative: Session) -> Session:
        """Keep other in-flight tentative changes visible over a server answer."""
        if not self._pending:
            return authoritative
        merged, _ = merge_participants(authoritative, self._pending.values(), self._clock())
        return merged


def _restore(current: Session, before: Participant, snapshot: Session) -> Session:
    """
    Undo one participant's tentative change.

    Other participants keep whatever the mirror shows now (their own
    updates may still be in flight). A session completion that only this
    change caused is undone with it.
    """
    restored = current.with_participant(before)
    if restored.status is SessionStatus.FINISHED and not restored.all_finished:
        restored = replace(restored, status=snapshot.status, end_time=snapshot.end_time)
    return restored
