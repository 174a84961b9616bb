"""
Unit Tests: Session and Participant persisted form

Tests:
    - camelCase JSON layout with omitted optional timestamps
    - JSON round-trip of a session mid-race
    - Rejection of malformed documents
    - Invariant checker
"""

import json
from dataclasses import replace
from datetime import timedelta

import pytest

from lapcounter.core.types import format_timestamp, parse_timestamp
from lapcounter.race.models import LapAction, Participant, Session, SessionStatus, check_invariants
from lapcounter.race.state_machine import apply_lap, start_session
from lapcounter.tests.conftest import T0


class TestPersistedForm:
    """Tests for to_dict / from_dict."""

    def test_fresh_session_layout(self, new_session):
        data = new_session().to_dict()

        assert set(data) == {"id", "name", "totalLaps", "participants", "status", "createdAt"}
        assert data["status"] == "setup"
        assert data["createdAt"] == "2024-05-01T09:00:00.000Z"
        assert data["participants"][0] == {
            "id": "id-2", "name": "Ann", "lapsCompleted": 0, "finished": False,
        }

    def test_round_trip_mid_race(self, new_session):
        session = start_session(new_session(), T0 + timedelta(seconds=1.5)).unwrap()
        ann, _ = session.participant_ids
        session = apply_lap(session, ann, LapAction.FINISH, T0 + timedelta(minutes=4)).unwrap()

        parsed = Session.from_json(session.to_json()).unwrap()

        assert parsed == session
        assert parsed.start_time == T0 + timedelta(seconds=1.5)
        assert parsed.participant(ann).finish_time == T0 + timedelta(minutes=4)

    def test_round_trip_finished(self, new_session):
        session = start_session(new_session(names=("Ann",), total_laps=1), T0).unwrap()
        session = apply_lap(session, session.participant_ids[0], LapAction.ADD_LAP, T0).unwrap()

        data = json.loads(session.to_json())

        assert data["status"] == "finished"
        assert "endTime" in data
        assert Session.from_dict(data) == session

    @pytest.mark.parametrize("text", [
        "not json",
        "[]",
        '{"id": "s", "name": "x", "participants": [], "createdAt": "2024-05-01T09:00:00Z"}',
        '{"id": "s", "name": "x", "totalLaps": 0, "participants": [], "createdAt": "2024-05-01T09:00:00Z"}',
        '{"id": "s", "name": "x", "totalLaps": 3, "participants": [{"id": "p", "name": "A", "lapsCompleted": -1}],'
        ' "createdAt": "2024-05-01T09:00:00Z"}',
        '{"id": "s", "name": "x", "totalLaps": 3, "participants": ["p"], "createdAt": "2024-05-01T09:00:00Z"}',
        '{"id": "s", "name": "x", "totalLaps": 3, "participants": [], "status": "paused",'
        ' "createdAt": "2024-05-01T09:00:00Z"}',
    ])
    def test_malformed_documents(self, text):
        assert Session.from_json(text).is_err()

    def test_participant_defaults(self):
        p = Participant.from_dict({"id": "p", "name": "Ann"})

        assert p.laps_completed == 0
        assert p.finished is False
        assert p.finish_time is None


class TestTimestamps:
    """Tests for the wire timestamp format."""

    def test_millisecond_precision(self):
        value = T0 + timedelta(microseconds=125_999)

        assert format_timestamp(value) == "2024-05-01T09:00:00.125Z"

    def test_parse_accepts_offsets(self):
        assert parse_timestamp("2024-05-01T11:00:00+02:00") == T0
        assert parse_timestamp("2024-05-01T09:00:00.000Z") == T0
        assert parse_timestamp(None) is None

    def test_parse_drops_sub_millisecond_digits(self, new_session):
        parsed = parse_timestamp("2024-05-01T09:00:00.125999+00:00")
        session = replace(new_session(), status=SessionStatus.RUNNING, start_time=parsed)

        assert parsed == T0 + timedelta(milliseconds=125)
        assert Session.from_json(session.to_json()).unwrap() == session


class TestStatus:
    """Tests for status parsing and ordering."""

    def test_order(self):
        assert SessionStatus.SETUP.rank < SessionStatus.RUNNING.rank < SessionStatus.FINISHED.rank
        assert SessionStatus.FINISHED.is_terminal

    def test_parse(self):
        assert SessionStatus.parse("running").unwrap() is SessionStatus.RUNNING
        assert SessionStatus.parse("RUNNING").is_err()
        assert LapAction.parse("addLap").unwrap() is LapAction.ADD_LAP
        assert LapAction.parse("add_lap").is_err()


class TestInvariants:
    """Tests for check_invariants."""

    def test_detects_problems(self, new_session):
        session = start_session(new_session(), T0).unwrap()
        ann, bo = session.participant_ids
        broken = replace(session, participants=(
            Participant(id=ann, name="Ann", laps_completed=5),
            Participant(id=bo, name="Bo", finished=True),
        ))

        problems = check_invariants(broken)

        assert any("outside 0..3" in p for p in problems)
        assert any("not finished" in p for p in problems)
        assert any("without finishTime" in p for p in problems)
