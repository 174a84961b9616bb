"""
Race Data Model: Session and Participant aggregates

Both types are frozen dataclasses; every state change produces a new
value (see race.state_machine). The persisted JSON form keeps the
camelCase field names the browser client reads:

    {
      "id": "...", "name": "5K", "totalLaps": 3,
      "participants": [
        {"id": "...", "name": "Ann", "lapsCompleted": 0, "finished": false}
      ],
      "status": "setup",
      "createdAt": "2024-05-01T09:00:00.000Z"
    }

Optional timestamps (finishTime, startTime, endTime) are omitted when unset.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from lapcounter.core.types import (
    Result, Ok, Err, SessionId, ParticipantId,
    format_timestamp, parse_timestamp,
)


class SessionStatus(Enum):
    """
    Session lifecycle states, in the only order they may occur.

    SETUP → RUNNING → FINISHED
    """
    SETUP = "setup"
    RUNNING = "running"
    FINISHED = "finished"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self is SessionStatus.FINISHED

    @classmethod
    def parse(cls, value: Any) -> Result[SessionStatus, str]:
        try:
            return Ok(cls(value))
        except ValueError:
            return Err(f"Unknown status {value!r}")


_STATUS_ORDER = {
    SessionStatus.SETUP: 0,
    SessionStatus.RUNNING: 1,
    SessionStatus.FINISHED: 2,
}


class LapAction(Enum):
    """Participant-level actions a client may submit."""
    ADD_LAP = "addLap"
    FINISH = "finish"

    @classmethod
    def parse(cls, value: Any) -> Result[LapAction, str]:
        try:
            return Ok(cls(value))
        except ValueError:
            return Err(f"Unknown action {value!r}; expected 'addLap' or 'finish'")


@dataclass(frozen=True, slots=True)
class Participant:
    """One competitor within a session."""
    id: ParticipantId
    name: str
    laps_completed: int = 0
    finished: bool = False
    finish_time: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "lapsCompleted": self.laps_completed,
            "finished": self.finished,
        }
        if self.finish_time is not None:
            data["finishTime"] = format_timestamp(self.finish_time)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Participant:
        """
        Build from the persisted form.

        Raises:
            KeyError, TypeError, ValueError, AttributeError: On missing or mistyped fields
        """
        laps = data.get("lapsCompleted", 0)
        if isinstance(laps, bool) or not isinstance(laps, int) or laps < 0:
            raise ValueError(f"lapsCompleted must be a non-negative integer, got {laps!r}")
        finished = data.get("finished", False)
        if not isinstance(finished, bool):
            raise TypeError(f"finished must be a boolean, got {finished!r}")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            laps_completed=laps,
            finished=finished,
            finish_time=parse_timestamp(data.get("finishTime")),
        )


@dataclass(frozen=True, slots=True)
class Session:
    """
    One race instance: fixed lap target, fixed roster.

    Invariants (enforced by race.state_machine, checked by check_invariants):
    - 0 <= laps_completed <= total_laps for every participant
    - laps_completed == total_laps implies finished
    - status only moves forward
    - participant ids never change after creation
    """
    id: SessionId
    name: str
    total_laps: int
    participants: tuple[Participant, ...]
    status: SessionStatus
    created_at: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def participant(self, participant_id: ParticipantId) -> Optional[Participant]:
        for p in self.participants:
            if p.id == participant_id:
                return p
        return None

    @property
    def participant_ids(self) -> tuple[ParticipantId, ...]:
        return tuple(p.id for p in self.participants)

    @property
    def all_finished(self) -> bool:
        return bool(self.participants) and all(p.finished for p in self.participants)

    def with_participant(self, updated: Participant) -> Session:
        """Return a copy with one participant replaced (matched by id)."""
        return replace(self, participants=tuple(
            updated if p.id == updated.id else p for p in self.participants
        ))

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "totalLaps": self.total_laps,
            "participants": [p.to_dict() for p in self.participants],
            "status": self.status.value,
            "createdAt": format_timestamp(self.created_at),
        }
        if self.start_time is not None:
            data["startTime"] = format_timestamp(self.start_time)
        if self.end_time is not None:
            data["endTime"] = format_timestamp(self.end_time)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """
        Build from the persisted form.

        Raises:
            KeyError, TypeError, ValueError, AttributeError: On missing or mistyped fields
        """
        total_laps = data["totalLaps"]
        if isinstance(total_laps, bool) or not isinstance(total_laps, int) or total_laps < 1:
            raise ValueError(f"totalLaps must be a positive integer, got {total_laps!r}")
        raw_participants = data.get("participants", [])
        if not isinstance(raw_participants, list):
            raise TypeError("participants must be a list")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            total_laps=total_laps,
            participants=tuple(Participant.from_dict(p) for p in raw_participants),
            status=SessionStatus(data.get("status", "setup")),
            created_at=parse_timestamp(data["createdAt"]),
            start_time=parse_timestamp(data.get("startTime")),
            end_time=parse_timestamp(data.get("endTime")),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str | bytes) -> Result[Session, str]:
        """Parse the persisted JSON form."""
        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                return Err("Session document must be a JSON object")
            return Ok(cls.from_dict(data))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return Err(f"Invalid JSON: {e}")
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return Err(f"Invalid session document: {e!r}")


def check_invariants(session: Session) -> list[str]:
    """
    List every data-model invariant the session violates.

    Empty list means the session is well-formed.
    """
    problems: list[str] = []
    if session.total_laps < 1:
        problems.append("totalLaps must be >= 1")
    seen: set[str] = set()
    for p in session.participants:
        if p.id in seen:
            problems.append(f"duplicate participant id {p.id}")
        seen.add(p.id)
        if p.laps_completed < 0 or p.laps_completed > session.total_laps:
            problems.append(f"{p.id}: lapsCompleted {p.laps_completed} outside 0..{session.total_laps}")
        if p.laps_completed >= session.total_laps and not p.finished:
            problems.append(f"{p.id}: reached lap target but not finished")
        if p.finished and p.finish_time is None:
            problems.append(f"{p.id}: finished without finishTime")
    if session.status is not SessionStatus.SETUP and session.start_time is None:
        problems.append("started session without startTime")
    if session.status is SessionStatus.FINISHED and session.end_time is None:
        problems.append("finished session without endTime")
    if session.status is SessionStatus.RUNNING and session.all_finished:
        problems.append("all participants finished but session still running")
    return problems
