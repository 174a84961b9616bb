"""
Unit Tests: Optimistic Mirror

Tests:
    - Tentative apply is visible before the server answers
    - Commit replaces the mirror with the authoritative session
    - Revert restores the participant (and an unearned completion)
    - A reverted lap never reaches the server through another sync
    - Rejection when nothing is loaded or an update is already in flight
    - Optimistic start
"""

import asyncio

import pytest

from lapcounter.api.handlers import build_router
from lapcounter.client.mirror import Committed, OptimisticMirror, Rejected, Reverted
from lapcounter.client.transport import LocalTransport
from lapcounter.core.errors import ErrorCode, LapCounterError
from lapcounter.core.types import Err
from lapcounter.race.models import LapAction, SessionStatus
from lapcounter.reconciler import SessionReconciler
from lapcounter.reliability.retry import RetryPolicy
from lapcounter.storage.backends import InMemoryObjectStore
from lapcounter.storage.session_store import SessionStore
from lapcounter.tests.conftest import T0


class GatedTransport:
    """LocalTransport whose sync waits until the test opens the gate."""

    def __init__(self, inner):
        self.inner = inner
        self.gate = None
        self.sync_calls = 0
        self.fail_calls = set()
        self.sent = []

    async def fetch(self, session_id):
        return await self.inner.fetch(session_id)

    async def update(self, session_id, updates):
        return await self.inner.update(session_id, updates)

    async def sync(self, session):
        self.sync_calls += 1
        call = self.sync_calls
        self.sent.append(session)
        if self.gate is not None:
            await self.gate.wait()
        if call in self.fail_calls:
            return Err(LapCounterError(code=ErrorCode.TRANSPORT_FAILED, message="connection reset"))
        return await self.inner.sync(session)


@pytest.fixture
def backend():
    return InMemoryObjectStore()


@pytest.fixture
def reconciler(backend, clock):
    return SessionReconciler(SessionStore(backend), RetryPolicy.no_retry(), clock=clock)


@pytest.fixture
def transport(reconciler):
    return GatedTransport(LocalTransport(build_router(reconciler)))


@pytest.fixture
def mirror(transport, clock):
    return OptimisticMirror(transport, clock=clock)


def running_session(reconciler, names=("Ann", "Bo"), total_laps=3):
    session = asyncio.run(reconciler.create("5K", total_laps, list(names))).unwrap().session
    return asyncio.run(reconciler.start(session.id)).unwrap().session


class TestCommit:
    """Tests for the confirm path."""

    def test_add_lap_commits(self, mirror, reconciler):
        session = running_session(reconciler)
        ann = session.participant_ids[0]
        seen = []
        mirror.subscribe(lambda s: seen.append(s.participant(ann).laps_completed))

        async def scenario():
            await mirror.load(session.id)
            return await mirror.submit(ann, LapAction.ADD_LAP)

        outcome = asyncio.run(scenario())
        stored = asyncio.run(reconciler.get(session.id)).unwrap()

        assert isinstance(outcome, Committed)
        assert outcome.session.participant(ann).laps_completed == 1
        assert stored.participant(ann).laps_completed == 1
        assert seen == [0, 1, 1]
        assert mirror.in_flight == frozenset()

    def test_unsubscribe(self, mirror, reconciler):
        session = running_session(reconciler)
        seen = []
        unsubscribe = mirror.subscribe(seen.append)
        unsubscribe()

        asyncio.run(mirror.load(session.id))

        assert seen == []
        assert mirror.session.id == session.id


class TestRevert:
    """Tests for the revert path."""

    def test_failed_sync_restores_participant(self, mirror, reconciler, backend):
        session = running_session(reconciler)
        ann = session.participant_ids[0]

        async def scenario():
            await mirror.load(session.id)
            backend.fail_next_puts(5)
            return await mirror.submit(ann, LapAction.ADD_LAP)

        outcome = asyncio.run(scenario())

        assert isinstance(outcome, Reverted)
        assert outcome.error.code is ErrorCode.SAVE_FAILED
        assert outcome.session.participant(ann).laps_completed == 0
        assert mirror.session.participant(ann).laps_completed == 0
        assert mirror.in_flight == frozenset()

    def test_revert_undoes_completion(self, mirror, reconciler, backend):
        session = running_session(reconciler, names=("Ann",), total_laps=1)
        ann = session.participant_ids[0]
        statuses = []
        mirror.subscribe(lambda s: statuses.append(s.status))

        async def scenario():
            await mirror.load(session.id)
            backend.fail_next_puts(5)
            return await mirror.submit(ann, LapAction.ADD_LAP)

        outcome = asyncio.run(scenario())

        assert statuses == [SessionStatus.RUNNING, SessionStatus.FINISHED, SessionStatus.RUNNING]
        assert outcome.session.status is SessionStatus.RUNNING
        assert outcome.session.end_time is None
        assert not outcome.session.participant(ann).finished

    def test_reverted_lap_not_sent_with_other_participant(self, mirror, reconciler, transport):
        """Bo's sync carries only confirmed state for Ann, so Ann's failed lap stays undone."""
        session = running_session(reconciler)
        ann, bo = session.participant_ids
        transport.fail_calls = {1}

        async def scenario():
            transport.gate = asyncio.Event()
            await mirror.load(session.id)
            first = asyncio.create_task(mirror.submit(ann, LapAction.ADD_LAP))
            await asyncio.sleep(0)
            second = asyncio.create_task(mirror.submit(bo, LapAction.ADD_LAP))
            await asyncio.sleep(0)
            shown = mirror.session.participant(ann).laps_completed
            transport.gate.set()
            return shown, await first, await second

        shown, first, second = asyncio.run(scenario())
        stored = asyncio.run(reconciler.get(session.id)).unwrap()

        assert shown == 1
        assert isinstance(first, Reverted)
        assert isinstance(second, Committed)
        assert transport.sent[1].participant(ann).laps_completed == 0
        assert stored.participant(ann).laps_completed == 0
        assert stored.participant(bo).laps_completed == 1
        assert mirror.session.participant(ann).laps_completed == 0
        assert mirror.session.participant(bo).laps_completed == 1


class TestRejected:
    """Tests for submissions that never reach the server."""

    def test_nothing_loaded(self, mirror, transport):
        outcome = asyncio.run(mirror.submit("p", LapAction.ADD_LAP))

        assert isinstance(outcome, Rejected)
        assert transport.sync_calls == 0

    def test_unknown_participant(self, mirror, reconciler, transport):
        session = running_session(reconciler)

        async def scenario():
            await mirror.load(session.id)
            return await mirror.submit("nobody", LapAction.FINISH)

        outcome = asyncio.run(scenario())

        assert isinstance(outcome, Rejected)
        assert outcome.participant_id == "nobody"
        assert transport.sync_calls == 0

    def test_second_update_while_in_flight(self, mirror, reconciler, transport):
        session = running_session(reconciler)
        ann, bo = session.participant_ids

        async def scenario():
            transport.gate = asyncio.Event()
            await mirror.load(session.id)
            first = asyncio.create_task(mirror.submit(ann, LapAction.ADD_LAP))
            await asyncio.sleep(0)
            in_flight = mirror.in_flight
            second = await mirror.submit(ann, LapAction.ADD_LAP)
            other = asyncio.create_task(mirror.submit(bo, LapAction.ADD_LAP))
            await asyncio.sleep(0)
            transport.gate.set()
            return in_flight, second, await first, await other

        in_flight, second, first, other = asyncio.run(scenario())
        stored = asyncio.run(reconciler.get(session.id)).unwrap()

        assert in_flight == frozenset({ann})
        assert isinstance(second, Rejected)
        assert second.reason == "update already in flight"
        assert isinstance(first, Committed)
        assert isinstance(other, Committed)
        assert stored.participant(ann).laps_completed == 1
        assert stored.participant(bo).laps_completed == 1
        assert transport.sync_calls == 2


class TestStart:
    """Tests for the optimistic race start."""

    def test_start_commits(self, mirror, reconciler):
        session = asyncio.run(reconciler.create("5K", 3, ["Ann"])).unwrap().session

        async def scenario():
            await mirror.load(session.id)
            return await mirror.start()

        outcome = asyncio.run(scenario())
        stored = asyncio.run(reconciler.get(session.id)).unwrap()

        assert isinstance(outcome, Committed)
        assert stored.status is SessionStatus.RUNNING
        assert stored.start_time == T0

    def test_start_reverts(self, mirror, reconciler, backend):
        session = asyncio.run(reconciler.create("5K", 3, ["Ann"])).unwrap().session

        async def scenario():
            await mirror.load(session.id)
            backend.fail_next_puts(5)
            return await mirror.start()

        outcome = asyncio.run(scenario())

        assert isinstance(outcome, Reverted)
        assert mirror.session.status is SessionStatus.SETUP
        assert mirror.session.start_time is None

    def test_start_twice_is_rejected_locally(self, mirror, reconciler):
        session = running_session(reconciler)

        async def scenario():
            await mirror.load(session.id)
            return await mirror.start()

        assert isinstance(asyncio.run(scenario()), Rejected)
