"""
API Handlers: Request Processing Logic

Implements SessionHandler, one method per endpoint:

    POST /sessions                      create          201 {session}
    GET  /sessions/{id}                 get             200 {session}
    GET  /sessions/{id}/standings       standings       200 {sessionId, status, standings}
    PUT  /sessions/sync                 sync            200 {success, session}
    PUT  /sessions/{id}                 update          200 {session}
    PUT  /participants                  update_participant
                                                        200 {session}
    GET  /health                        health          200 {status}

Every mutating endpoint goes through the SessionReconciler. Errors come
back as Result and are turned into responses by error_response; malformed
bodies raise ValidationError, which ErrorMappingMiddleware maps to 400.
"""

from __future__ import annotations

from typing import Any, Optional

from lapcounter.api.middleware import (
    ErrorMappingMiddleware,
    RequestLoggingMiddleware,
    error_response,
)
from lapcounter.api.router import LapCounterRouter, Request, Response
from lapcounter.core.errors import LapCounterError, ValidationError
from lapcounter.core.types import Result, parse_id, parse_timestamp
from lapcounter.race.models import LapAction, Participant, SessionStatus
from lapcounter.race.state_machine import standings
from lapcounter.reconciler import ReconcileOutcome, SessionReconciler


class SessionHandler:
    """
    Handler for session and participant endpoints.
    """

    __slots__ = ("_reconciler",)

    def __init__(self, reconciler: SessionReconciler) -> None:
        self._reconciler = reconciler

    @property
    def reconciler(self) -> SessionReconciler:
        return self._reconciler

    async def create(self, request: Request) -> Response:
        """
        Create a session in SETUP.

        Request:
            {"name": "5K", "totalLaps": 3, "participantNames": ["Ann", "Bo"]}
        """
        data = _json_object(request)
        result = await self._reconciler.create(
            data.get("name"),
            data.get("totalLaps"),
            data.get("participantNames"),
        )
        return _outcome_response(result, status=201)

    async def get(self, request: Request) -> Response:
        session_id = _path_id(request, "session_id", "sessionId")
        result = await self._reconciler.get(session_id)
        if result.is_err():
            return error_response(result.error)
        return Response.json({"session": result.unwrap().to_dict()})

    async def standings(self, request: Request) -> Response:
        """Leaderboard rows in finishing order."""
        session_id = _path_id(request, "session_id", "sessionId")
        result = await self._reconciler.get(session_id)
        if result.is_err():
            return error_response(result.error)
        session = result.unwrap()
        return Response.json({
            "sessionId": session.id,
            "status": session.status.value,
            "standings": [row.to_dict() for row in standings(session)],
        })

    async def update(self, request: Request) -> Response:
        """
        Partial merge of session-level fields.

        Request (start the race):
            {"status": "running", "startTime": "2024-05-01T09:00:00.000Z"}
        """
        session_id = _path_id(request, "session_id", "sessionId")
        updates = _json_object(request)
        if not updates:
            raise ValidationError.malformed("no fields to update")
        result = await self._reconciler.merge_fields(session_id, updates)
        return _outcome_response(result)

    async def update_participant(self, request: Request) -> Response:
        """
        One participant action.

        Request:
            {"sessionId": "...", "participantId": "...", "action": "addLap"}
        """
        data = _json_object(request)
        session_id = _body_id(data, "sessionId")
        participant_id = _body_id(data, "participantId")
        action = LapAction.parse(data.get("action"))
        if action.is_err():
            raise ValidationError.invalid_field("action", action.error, data.get("action"))

        result = await self._reconciler.apply_lap(session_id, participant_id, action.unwrap())
        return _outcome_response(result)

    async def sync(self, request: Request) -> Response:
        """
        Merge a client's locally advanced participant list.

        Request:
            {
                "sessionId": "...",
                "participants": [{"id": "...", "name": "Ann", "lapsCompleted": 2, ...}],
                "status": "running",
                "endTime": "..."            (optional)
            }
        """
        data = _json_object(request)
        session_id = _body_id(data, "sessionId")

        raw = data.get("participants")
        if not isinstance(raw, list):
            raise ValidationError.invalid_field("participants", "must be a list")
        try:
            participants = [Participant.from_dict(p) for p in raw]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValidationError.invalid_field("participants", repr(e)) from e

        status: Optional[SessionStatus] = None
        if data.get("status") is not None:
            parsed = SessionStatus.parse(data["status"])
            if parsed.is_err():
                raise ValidationError.invalid_field("status", parsed.error, data["status"])
            status = parsed.unwrap()

        try:
            end_time = parse_timestamp(data.get("endTime"))
        except (TypeError, ValueError, AttributeError) as e:
            raise ValidationError.invalid_field("endTime", str(e)) from e

        result = await self._reconciler.sync(session_id, participants, status, end_time)
        return _outcome_response(result, extra={"success": True})

    async def health(self, request: Request) -> Response:
        return Response.json({"status": "ok"})


def build_router(reconciler: SessionReconciler) -> LapCounterRouter:
    """Router with every endpoint and the standard middleware chain."""
    handler = SessionHandler(reconciler)
    router = LapCounterRouter()
    router.use(RequestLoggingMiddleware())
    router.use(ErrorMappingMiddleware())

    router.add("GET", "/health", handler.health)
    router.add("POST", "/sessions", handler.create)
    # literal path before the {session_id} pattern
    router.add("PUT", "/sessions/sync", handler.sync)
    router.add("GET", "/sessions/{session_id}", handler.get)
    router.add("PUT", "/sessions/{session_id}", handler.update)
    router.add("GET", "/sessions/{session_id}/standings", handler.standings)
    router.add("PUT", "/participants", handler.update_participant)
    return router


# =============================================================================
# HELPERS
# =============================================================================
def _json_object(request: Request) -> dict[str, Any]:
    try:
        data = request.json()
    except ValueError as e:
        raise ValidationError.malformed(f"invalid JSON: {e}", cause=e) from e
    if not isinstance(data, dict):
        raise ValidationError.malformed("body must be a JSON object")
    return data


def _path_id(request: Request, name: str, label: str) -> str:
    parsed = parse_id(request.path_params.get(name), label)
    if parsed.is_err():
        raise ValidationError.malformed(parsed.error)
    return parsed.unwrap()


def _body_id(data: dict[str, Any], label: str) -> str:
    parsed = parse_id(data.get(label), label)
    if parsed.is_err():
        raise ValidationError.malformed(parsed.error)
    return parsed.unwrap()


def _outcome_response(
    result: Result[ReconcileOutcome, LapCounterError],
    status: int = 200,
    extra: Optional[dict[str, Any]] = None,
) -> Response:
    if result.is_err():
        return error_response(result.error)
    outcome = result.unwrap()
    body: dict[str, Any] = dict(extra or {})
    body["session"] = outcome.session.to_dict()
    if outcome.warnings:
        body["warnings"] = [w.message for w in outcome.warnings]
    if outcome.ignored:
        body["ignoredParticipants"] = list(outcome.ignored)
    return Response.json(body, status=status)
