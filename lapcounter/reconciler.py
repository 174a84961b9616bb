"""
Session Reconciler: Load-Apply-Save Against a Weakly Consistent Store

Every mutating request runs the same cycle, parameterized by a pure
transition function:

    1. load the session            NotFound       → fail fast
    2. apply the transition        validation /
                                   unknown participant /
                                   invalid status  → fail fast
    3. save what changed           store failure  → back off, go to 1
    4. re-load and verify          mismatch       → warning (strict: error)

Retrying from step 1 (not just re-saving) picks up whatever a concurrent
writer managed to persist in the meantime. Only the participant records the
transition touched are written, so writers working on different
participants cannot overwrite each other (see storage.session_store).

Usage:
    reconciler = SessionReconciler(SessionStore(backend))
    result = await reconciler.apply_lap(session_id, participant_id, LapAction.ADD_LAP)
    if result.is_ok():
        outcome = result.unwrap()
        outcome.session, outcome.warnings
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional

from lapcounter.core.config import ReconcilerConfig
from lapcounter.core.errors import (
    ConsistencyWarning,
    LapCounterError,
    TransientStoreError,
)
from lapcounter.core.types import Clock, Result, Ok, Err, utc_now
from lapcounter.observability.logging import log_context
from lapcounter.race.models import LapAction, Participant, Session, SessionStatus
from lapcounter.race.state_machine import (
    apply_lap,
    create_session,
    diff_participants,
    merge_participants,
    merge_session_fields,
    request_status,
    start_session,
)
from lapcounter.reliability.retry import RetryPolicy, RetryStats, Sleep, retry_with_backoff
from lapcounter.storage.session_store import SessionStore

logger = logging.getLogger(__name__)

Transition = Callable[[Session, datetime], Result[Session, LapCounterError]]


@dataclass(frozen=True)
class ReconcileOutcome:
    """
    Result of one reconciled mutation.

    `session` is the authoritative state to hand back to the client: the
    verified re-read when verification succeeded, otherwise the session as
    written. `written` lists the store keys this request wrote (empty for a
    no-op). `ignored` carries participant ids a sync request named that are
    not in the roster.
    """
    session: Session
    attempts: int
    written: tuple[str, ...] = ()
    warnings: tuple[ConsistencyWarning, ...] = ()
    ignored: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.written)


@dataclass
class _Attempt:
    base: Session
    candidate: Session
    written: list[str] = field(default_factory=list)


class SessionReconciler:
    """
    Single entry point for every session mutation.

    Args:
        store: Session store adapter
        policy: Retry policy for transient store failures
        verify: Re-read after each successful write
        strict: Surface verification mismatches as errors
        clock: Source of `now` for every transition
        sleep: Backoff delay (seconds); injectable for tests
    """

    __slots__ = ("_store", "_policy", "_verify", "_strict", "_clock", "_sleep")

    def __init__(
        self,
        store: SessionStore,
        policy: Optional[RetryPolicy] = None,
        verify: bool = True,
        strict: bool = False,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._policy = policy or RetryPolicy.default()
        self._verify = verify
        self._strict = strict
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        store: SessionStore,
        config: ReconcilerConfig,
        clock: Clock = utc_now,
    ) -> SessionReconciler:
        return cls(
            store,
            policy=RetryPolicy.from_config(config),
            verify=config.verify_writes,
            strict=config.strict_verify,
            clock=clock,
        )

    @property
    def store(self) -> SessionStore:
        return self._store

    # -------------------------------------------------------------------------
    # Reads and creation
    # -------------------------------------------------------------------------

    async def get(self, session_id: str) -> Result[Session, LapCounterError]:
        """Load with retry on transient read failures; NotFound is immediate."""
        return await retry_with_backoff(
            lambda: self._store.load(session_id),
            self._policy,
            sleep=self._sleep,
        )

    async def create(
        self,
        name: Any,
        total_laps: Any,
        participant_names: Any,
    ) -> Result[ReconcileOutcome, LapCounterError]:
        """Validate, build and persist a new SETUP session."""
        created = create_session(name, total_laps, participant_names, self._clock())
        if created.is_err():
            return created
        session = created.unwrap()

        with log_context(session_id=session.id):
            stats = RetryStats()
            saved = await retry_with_backoff(
                lambda: self._store.save(session),
                self._policy,
                stats=stats,
                sleep=self._sleep,
            )
            if saved.is_err():
                return Err(self._exhausted(session.id, stats, saved.error))

            logger.info(
                "Session created",
                extra={"participants": len(session.participants), "total_laps": session.total_laps},
            )
            written = tuple(saved.unwrap())
            return await self._finish(session, session.participant_ids, written, stats.total_attempts)

    # -------------------------------------------------------------------------
    # Generic cycle
    # -------------------------------------------------------------------------

    async def reconcile(
        self,
        session_id: str,
        transition: Transition,
    ) -> Result[ReconcileOutcome, LapCounterError]:
        """
        Run load → transition → save_changes with retry, then verify.

        The transition is re-applied to a freshly loaded session on every
        attempt and must therefore be a pure function of (session, now).
        """
        with log_context(session_id=session_id):
            stats = RetryStats()

            async def attempt() -> Result[_Attempt, LapCounterError]:
                logger.debug("Reconcile attempt", extra={"attempt": stats.total_attempts})
                loaded = await self._store.load(session_id)
                if loaded.is_err():
                    return loaded
                base = loaded.unwrap()

                applied = transition(base, self._clock())
                if applied.is_err():
                    return applied
                candidate = applied.unwrap()

                saved = await self._store.save_changes(base, candidate)
                if saved.is_err():
                    return saved
                return Ok(_Attempt(base=base, candidate=candidate, written=saved.unwrap()))

            result = await retry_with_backoff(attempt, self._policy, stats=stats, sleep=self._sleep)
            if result.is_err():
                error = result.error
                if error.retryable:
                    return Err(self._exhausted(session_id, stats, error))
                return result

            done = result.unwrap()
            touched = diff_participants(done.base, done.candidate)
            return await self._finish(
                done.candidate, touched, tuple(done.written), stats.total_attempts,
            )

    def _exhausted(
        self,
        session_id: str,
        stats: RetryStats,
        error: LapCounterError,
    ) -> TransientStoreError:
        logger.error(
            "Giving up on session update",
            extra={"attempts": stats.total_attempts, "error": str(error)},
        )
        return TransientStoreError.save_failed(session_id, stats.total_attempts, str(error))

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    async def _finish(
        self,
        intended: Session,
        touched: Iterable[str],
        written: tuple[str, ...],
        attempts: int,
    ) -> Result[ReconcileOutcome, LapCounterError]:
        outcome = ReconcileOutcome(session=intended, attempts=attempts, written=written)
        if not self._verify or not written:
            return Ok(outcome)

        observed = await self._store.load(intended.id)
        if observed.is_err():
            problem = f"re-read failed: {observed.error.message}"
            authoritative = intended
        else:
            authoritative = observed.unwrap()
            problem = verify_written(intended, authoritative, touched)

        if problem is None:
            return Ok(replace(outcome, session=authoritative))

        warning = ConsistencyWarning.mismatch(intended.id, problem)
        if self._strict:
            logger.error("Write verification failed", extra={"detail": problem})
            return Err(warning)
        logger.warning("Write verification mismatch", extra={"detail": problem})
        return Ok(replace(outcome, warnings=(warning,)))

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def apply_lap(
        self,
        session_id: str,
        participant_id: str,
        action: LapAction,
    ) -> Result[ReconcileOutcome, LapCounterError]:
        """addLap / finish for one participant."""
        with log_context(participant_id=participant_id):
            return await self.reconcile(
                session_id,
                lambda session, now: apply_lap(session, participant_id, action, now),
            )

    async def start(self, session_id: str) -> Result[ReconcileOutcome, LapCounterError]:
        return await self.reconcile(session_id, start_session)

    async def merge_fields(
        self,
        session_id: str,
        updates: Mapping[str, Any],
    ) -> Result[ReconcileOutcome, LapCounterError]:
        """Partial merge of session-level fields (name, status, timestamps)."""
        return await self.reconcile(
            session_id,
            lambda session, now: merge_session_fields(session, updates, now),
        )

    async def sync(
        self,
        session_id: str,
        participants: Iterable[Participant],
        status: Optional[SessionStatus] = None,
        end_time: Optional[datetime] = None,
    ) -> Result[ReconcileOutcome, LapCounterError]:
        """
        Fold a client's locally advanced participant list into the store.

        Participants merge monotonically. A requested status that is ahead
        of the stored one goes through the transition table; one that is
        behind is ignored, since the client simply had not seen the newer
        state yet.
        """
        incoming = tuple(participants)
        ignored: list[str] = []

        def transition(session: Session, now: datetime) -> Result[Session, LapCounterError]:
            merged, unknown = merge_participants(session, incoming, now)
            ignored[:] = unknown
            if status is None or status.rank <= merged.status.rank:
                return Ok(merged)
            at = end_time if status is SessionStatus.FINISHED else None
            return request_status(merged, status, now, at)

        result = await self.reconcile(session_id, transition)
        if result.is_ok() and ignored:
            logger.warning(
                "Sync named participants outside the roster",
                extra={"session_id": session_id, "ignored": list(ignored)},
            )
            return Ok(replace(result.unwrap(), ignored=tuple(ignored)))
        return result


def verify_written(
    intended: Session,
    observed: Session,
    touched: Iterable[str],
) -> Optional[str]:
    """
    Describe how a re-read falls short of what was written, or None.

    Counts and finished flags must match. Laps may be higher than written
    (a concurrent writer got further) but never lower.
    """
    if len(observed.participants) != len(intended.participants):
        return (
            f"participant count {len(observed.participants)} "
            f"!= {len(intended.participants)}"
        )
    for participant_id in touched:
        want = intended.participant(participant_id)
        got = observed.participant(participant_id)
        if want is None:
            continue
        if got is None:
            return f"participant {participant_id} missing after write"
        if got.laps_completed < want.laps_completed:
            return (
                f"participant {participant_id} lapsCompleted "
                f"{got.laps_completed} < {want.laps_completed}"
            )
        if want.finished and not got.finished:
            return f"participant {participant_id} not finished after write"
    if observed.status.rank < intended.status.rank:
        return f"status {observed.status.value} behind {intended.status.value}"
    return None
