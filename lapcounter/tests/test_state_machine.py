"""
Unit Tests: Race State Machine

Tests:
    - Session creation and input validation
    - Start transition and its guards
    - addLap / finish semantics, saturation at the lap target
    - Session completion after every participant change
    - Monotonic merges used by the sync and partial-update endpoints
    - Standings order and elapsed-time formatting
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from lapcounter.core.errors import (
    ErrorCode,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
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
    diff_participants,
    evaluate_completion,
    format_elapsed,
    merge_participant,
    merge_participants,
    merge_session_fields,
    request_status,
    settle_completion,
    standings,
    start_session,
    summary_changed,
)
from lapcounter.tests.conftest import T0, sequential_ids


def minutes(n: float):
    return T0 + timedelta(minutes=n)


class TestCreateSession:
    """Tests for session creation."""

    def test_fresh_session_shape(self, new_session):
        session = new_session(names=("Ann", "Bo", "Cy"))

        assert session.status is SessionStatus.SETUP
        assert len(session.participants) == 3
        assert all(p.laps_completed == 0 for p in session.participants)
        assert not any(p.finished for p in session.participants)
        assert session.start_time is None
        assert session.end_time is None
        assert session.created_at == T0
        assert check_invariants(session) == []

    def test_blank_names_are_dropped_and_trimmed(self):
        result = create_session("5K", 3, ["Ann", "   ", " Bo ", ""], T0)

        session = result.unwrap()
        assert [p.name for p in session.participants] == ["Ann", "Bo"]

    def test_ids_are_unique(self):
        session = create_session("5K", 3, ["Ann", "Bo", "Cy"], T0).unwrap()

        ids = [session.id, *session.participant_ids]
        assert len(set(ids)) == len(ids)

    @pytest.mark.parametrize("name, total_laps, names", [
        ("", 3, ["Ann"]),
        ("   ", 3, ["Ann"]),
        (None, 3, ["Ann"]),
        ("5K", 0, ["Ann"]),
        ("5K", -2, ["Ann"]),
        ("5K", True, ["Ann"]),
        ("5K", "3", ["Ann"]),
        ("5K", 3, []),
        ("5K", 3, ["  ", ""]),
        ("5K", 3, "Ann"),
        ("5K", 3, ["Ann", 7]),
    ])
    def test_invalid_input_rejected(self, name, total_laps, names):
        result = create_session(name, total_laps, names, T0)

        assert result.is_err()
        assert isinstance(result.error, ValidationError)
        assert result.error.http_status == 400


class TestStartSession:
    """Tests for SETUP → RUNNING."""

    def test_start_sets_status_and_time(self, new_session):
        session = new_session()

        started = start_session(session, minutes(1)).unwrap()

        assert started.status is SessionStatus.RUNNING
        assert started.start_time == minutes(1)

    def test_start_twice_is_invalid_and_keeps_start_time(self, new_session):
        started = start_session(new_session(), minutes(1)).unwrap()

        again = start_session(started, minutes(5))

        assert again.is_err()
        assert isinstance(again.error, InvalidTransitionError)
        assert again.error.code is ErrorCode.INVALID_TRANSITION
        assert started.start_time == minutes(1)

    def test_start_without_participants_fails_guard(self):
        empty = Session(
            id="s", name="empty", total_laps=1, participants=(),
            status=SessionStatus.SETUP, created_at=T0,
        )

        result = start_session(empty, minutes(1))

        assert result.is_err()
        assert "no participants" in result.error.message


class TestApplyLap:
    """Tests for participant actions."""

    def test_laps_to_target_finishes_participant(self, new_session):
        session = start_session(new_session(names=("Ann",)), T0).unwrap()
        ann = session.participants[0].id

        for lap in range(1, 4):
            session = apply_lap(session, ann, LapAction.ADD_LAP, minutes(lap)).unwrap()

        p = session.participant(ann)
        assert p.laps_completed == 3
        assert p.finished is True
        assert p.finish_time == minutes(3)

    def test_add_lap_above_cap_is_noop(self, new_session):
        session = start_session(new_session(names=("Ann", "Bo")), T0).unwrap()
        ann = session.participants[0].id
        for lap in range(1, 4):
            session = apply_lap(session, ann, LapAction.ADD_LAP, minutes(lap)).unwrap()

        after = apply_lap(session, ann, LapAction.ADD_LAP, minutes(10)).unwrap()

        assert after is session
        assert after.participant(ann).laps_completed == 3
        assert after.participant(ann).finish_time == minutes(3)

    def test_add_lap_after_manual_finish_is_noop(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        ann, _ = session.participant_ids
        session = apply_lap(session, ann, LapAction.FINISH, minutes(2)).unwrap()

        after = apply_lap(session, ann, LapAction.ADD_LAP, minutes(3)).unwrap()

        assert after is session
        assert after.participant(ann).laps_completed == 0

    def test_unknown_participant(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        before = session.to_dict()

        result = apply_lap(session, "nobody", LapAction.ADD_LAP, minutes(1))

        assert result.is_err()
        assert isinstance(result.error, NotFoundError)
        assert result.error.code is ErrorCode.PARTICIPANT_NOT_FOUND
        assert session.to_dict() == before

    def test_finish_is_unconditional_and_idempotent(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        ann, _ = session.participant_ids
        session = apply_lap(session, ann, LapAction.ADD_LAP, minutes(1)).unwrap()

        finished = apply_lap(session, ann, LapAction.FINISH, minutes(2)).unwrap()
        again = apply_lap(finished, ann, LapAction.FINISH, minutes(9)).unwrap()

        p = finished.participant(ann)
        assert p.finished is True
        assert p.laps_completed == 1
        assert p.finish_time == minutes(2)
        assert again is finished

    def test_last_finisher_completes_session(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        ann, bo = session.participant_ids
        for lap in range(1, 4):
            session = apply_lap(session, ann, LapAction.ADD_LAP, minutes(lap)).unwrap()
        assert session.status is SessionStatus.RUNNING

        session = apply_lap(session, bo, LapAction.FINISH, minutes(7)).unwrap()

        assert session.status is SessionStatus.FINISHED
        assert session.end_time == minutes(7)
        assert check_invariants(session) == []

    def test_finished_status_never_reverts(self, new_session):
        session = start_session(new_session(names=("Ann",), total_laps=1), T0).unwrap()
        ann = session.participant_ids[0]
        session = apply_lap(session, ann, LapAction.ADD_LAP, minutes(1)).unwrap()
        assert session.status is SessionStatus.FINISHED

        for action in (LapAction.ADD_LAP, LapAction.FINISH):
            session = apply_lap(session, ann, action, minutes(2)).unwrap()
            assert session.status is SessionStatus.FINISHED
            assert session.end_time == minutes(1)

    def test_completion_only_from_running(self, new_session):
        session = new_session(names=("Ann",))
        ann = session.participant_ids[0]

        session = apply_lap(session, ann, LapAction.FINISH, minutes(1)).unwrap()

        assert session.participant(ann).finished is True
        assert session.status is SessionStatus.SETUP
        assert evaluate_completion(session, minutes(2)) is session


class TestMerges:
    """Tests for monotonic participant merges and session field merges."""

    def test_merge_participant_is_monotonic(self):
        stored = Participant(id="p", name="Ann", laps_completed=2)
        incoming = Participant(id="p", name="renamed", laps_completed=1)

        merged = merge_participant(stored, incoming, 5, minutes(1))

        assert merged.laps_completed == 2
        assert merged.finished is False
        assert merged.name == "Ann"

    def test_merge_participant_caps_and_finishes(self):
        stored = Participant(id="p", name="Ann", laps_completed=2)
        incoming = Participant(id="p", name="Ann", laps_completed=9)

        merged = merge_participant(stored, incoming, 3, minutes(4))

        assert merged.laps_completed == 3
        assert merged.finished is True
        assert merged.finish_time == minutes(4)

    def test_merge_participant_keeps_earliest_finish_time(self):
        stored = Participant(id="p", name="Ann", laps_completed=1, finished=True, finish_time=minutes(5))
        incoming = Participant(id="p", name="Ann", laps_completed=1, finished=True, finish_time=minutes(3))

        merged = merge_participant(stored, incoming, 3, minutes(9))

        assert merged.finish_time == minutes(3)

    def test_finished_is_sticky(self):
        stored = Participant(id="p", name="Ann", laps_completed=1, finished=True, finish_time=minutes(2))
        incoming = Participant(id="p", name="Ann", laps_completed=1, finished=False)

        merged = merge_participant(stored, incoming, 3, minutes(9))

        assert merged.finished is True
        assert merged.finish_time == minutes(2)

    def test_merge_participants_ignores_unknown_ids(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        ann, bo = session.participant_ids
        incoming = [
            Participant(id="ghost", name="Ghost", laps_completed=3),
            Participant(id=bo, name="Bo", laps_completed=1),
        ]

        merged, ignored = merge_participants(session, incoming, minutes(1))

        assert ignored == ["ghost"]
        assert merged.participant_ids == (ann, bo)
        assert merged.participant(bo).laps_completed == 1
        assert merged.participant(ann).laps_completed == 0

    def test_merge_participants_completes_session(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        incoming = [
            Participant(id=pid, name="x", laps_completed=3) for pid in session.participant_ids
        ]

        merged, _ = merge_participants(session, incoming, minutes(8))

        assert merged.status is SessionStatus.FINISHED
        assert merged.end_time == minutes(8)

    def test_merge_fields_starts_race_with_client_time(self, new_session):
        session = new_session()

        result = merge_session_fields(
            session, {"status": "running", "startTime": "2024-05-01T09:03:00.000Z"}, minutes(4),
        )

        started = result.unwrap()
        assert started.status is SessionStatus.RUNNING
        assert started.start_time == minutes(3)

    def test_merge_fields_renames(self, new_session):
        result = merge_session_fields(new_session(), {"name": "  10K "}, minutes(1))

        assert result.unwrap().name == "10K"

    @pytest.mark.parametrize("updates", [
        {"totalLaps": 10},
        {"participants": []},
        {"createdAt": "2024-05-01T09:00:00.000Z"},
        {"name": ""},
        {"status": "paused"},
        {"startTime": "2024-05-01T09:03:00.000Z"},
        {"status": "running", "startTime": "yesterday"},
    ])
    def test_merge_fields_validation(self, new_session, updates):
        result = merge_session_fields(new_session(), updates, minutes(1))

        assert result.is_err()
        assert isinstance(result.error, ValidationError)

    def test_merge_fields_rejects_backward_move(self, new_session):
        running = start_session(new_session(), T0).unwrap()

        result = merge_session_fields(running, {"status": "setup"}, minutes(1))

        assert isinstance(result.error, InvalidTransitionError)

    def test_merge_fields_rejects_finish_with_runners_left(self, new_session):
        running = start_session(new_session(), T0).unwrap()

        result = merge_session_fields(running, {"status": "finished"}, minutes(1))

        assert isinstance(result.error, InvalidTransitionError)
        assert result.error.http_status == 409

    def test_same_status_is_rejected(self, new_session):
        running = start_session(new_session(), T0).unwrap()

        result = request_status(running, SessionStatus.RUNNING, minutes(5))

        assert isinstance(result.error, InvalidTransitionError)
        assert "already running" in result.error.message

    def test_second_start_via_merge_keeps_start_time(self, new_session):
        running = start_session(new_session(), T0).unwrap()

        result = merge_session_fields(
            running, {"status": "running", "startTime": "2024-05-01T10:00:00.000Z"}, minutes(5),
        )

        assert isinstance(result.error, InvalidTransitionError)
        assert running.start_time == T0


class TestSettleCompletion:
    """Tests for completion repair on assembled sessions."""

    def test_uses_latest_finish_time(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        ann, bo = session.participant_ids
        session = replace(session, participants=(
            Participant(id=ann, name="Ann", laps_completed=3, finished=True, finish_time=minutes(9)),
            Participant(id=bo, name="Bo", laps_completed=1, finished=True, finish_time=minutes(4)),
        ))

        settled = settle_completion(session)

        assert settled.status is SessionStatus.FINISHED
        assert settled.end_time == minutes(9)

    def test_leaves_unfinished_sessions_alone(self, new_session):
        session = start_session(new_session(), T0).unwrap()

        assert settle_completion(session) is session


class TestStandings:
    """Tests for leaderboard order."""

    def _race(self):
        session = create_session(
            "5K", 3, ["Ann", "Bo", "Cy", "Di"], T0, id_factory=sequential_ids(),
        ).unwrap()
        session = start_session(session, T0).unwrap()
        ann, bo, cy, di = session.participant_ids
        return replace(session, participants=(
            Participant(id=ann, name="Ann", laps_completed=3, finished=True, finish_time=minutes(10)),
            Participant(id=bo, name="Bo", laps_completed=2, finished=True, finish_time=minutes(5)),
            Participant(id=cy, name="Cy", laps_completed=1),
            Participant(id=di, name="Di", laps_completed=2),
        ))

    def test_order(self):
        rows = standings(self._race())

        assert [r.participant.name for r in rows] == ["Ann", "Bo", "Di", "Cy"]
        assert [r.position for r in rows] == [1, 2, 3, 4]

    def test_elapsed(self):
        rows = standings(self._race())

        assert rows[0].elapsed == timedelta(minutes=10)
        assert rows[0].to_dict()["elapsed"] == "10:00"
        assert rows[3].to_dict()["elapsed"] is None

    def test_faster_finisher_first_on_equal_laps(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        ann, bo = session.participant_ids
        session = replace(session, participants=(
            Participant(id=ann, name="Ann", laps_completed=3, finished=True, finish_time=minutes(12)),
            Participant(id=bo, name="Bo", laps_completed=3, finished=True, finish_time=minutes(11)),
        ))

        assert [r.participant.name for r in standings(session)] == ["Bo", "Ann"]

    @pytest.mark.parametrize("delta, text", [
        (timedelta(seconds=65), "1:05"),
        (timedelta(hours=1, minutes=2, seconds=3), "1:02:03"),
        (timedelta(seconds=-4), "0:00"),
    ])
    def test_format_elapsed(self, delta, text):
        assert format_elapsed(delta) == text


class TestDiffs:
    """Tests for change detection used by partial writes."""

    def test_diff_participants(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        ann, bo = session.participant_ids
        changed = apply_lap(session, bo, LapAction.ADD_LAP, minutes(1)).unwrap()

        assert diff_participants(session, changed) == [bo]
        assert not summary_changed(session, changed)

    def test_summary_changed_on_status(self, new_session):
        session = new_session()
        started = start_session(session, T0).unwrap()

        assert summary_changed(session, started)
        assert diff_participants(session, started) == []
