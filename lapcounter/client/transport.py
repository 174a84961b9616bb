"""
Session Transport: how the optimistic mirror reaches the server

Two implementations of one protocol:
- LocalTransport dispatches through a LapCounterRouter in-process
  (tests, the demo command, embedding)
- HttpTransport talks to a running server with an aiohttp ClientSession

Both decode the same JSON bodies, so error responses come back as the
same LapCounterError subclasses the server raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

import aiohttp

from lapcounter.api.router import LapCounterRouter, Request
from lapcounter.core.errors import (
    ErrorCode,
    InvalidTransitionError,
    LapCounterError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from lapcounter.core.types import Result, Ok, Err, format_timestamp
from lapcounter.race.models import Session

logger = logging.getLogger(__name__)

_ERROR_TYPES: dict[int, type[LapCounterError]] = {
    400: ValidationError,
    404: NotFoundError,
    409: InvalidTransitionError,
}


class SessionTransport(Protocol):
    """Server operations the optimistic mirror needs."""

    async def fetch(self, session_id: str) -> Result[Session, LapCounterError]:
        ...

    async def update(
        self,
        session_id: str,
        updates: dict[str, Any],
    ) -> Result[Session, LapCounterError]:
        ...

    async def sync(self, session: Session) -> Result[Session, LapCounterError]:
        ...


def sync_payload(session: Session) -> dict[str, Any]:
    """Body for PUT /sessions/sync carrying a locally advanced session."""
    payload: dict[str, Any] = {
        "sessionId": session.id,
        "participants": [p.to_dict() for p in session.participants],
        "status": session.status.value,
    }
    if session.end_time is not None:
        payload["endTime"] = format_timestamp(session.end_time)
    return payload


def decode_response(status: int, body: bytes) -> Result[Session, LapCounterError]:
    """Turn an API response into the session it carries or the error it reports."""
    try:
        data = json.loads(body) if body else {}
    except ValueError as e:
        return Err(_transport_error(f"unreadable response body (HTTP {status})", e))

    if 200 <= status < 300:
        try:
            return Ok(Session.from_dict(data["session"]))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return Err(_transport_error(f"response carries no session: {e!r}", e))

    error_type = _ERROR_TYPES.get(status, TransientStoreError)
    code_name = data.get("code") if isinstance(data, dict) else None
    try:
        code = ErrorCode[code_name]
    except KeyError:
        code = ErrorCode.SAVE_FAILED if error_type is TransientStoreError else ErrorCode.VALIDATION_FAILED
    if not isinstance(data, dict):
        return Err(error_type(code=code, message=f"HTTP {status}"))
    error = error_type(code=code, message=data.get("error", f"HTTP {status}"))
    if data.get("errorId"):
        error.error_id = data["errorId"]
    return Err(error)


def _transport_error(message: str, cause: Optional[BaseException] = None) -> LapCounterError:
    return LapCounterError(code=ErrorCode.TRANSPORT_FAILED, message=message, cause=cause)


class LocalTransport:
    """In-process transport over a LapCounterRouter."""

    __slots__ = ("_router",)

    def __init__(self, router: LapCounterRouter) -> None:
        self._router = router

    async def _call(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Result[Session, LapCounterError]:
        if payload is None:
            request = Request.from_raw(method, path)
        else:
            request = Request.with_json(method, path, payload)
        response = await self._router.dispatch(request)
        return decode_response(response.status, response.body)

    async def fetch(self, session_id: str) -> Result[Session, LapCounterError]:
        return await self._call("GET", f"/sessions/{session_id}")

    async def update(
        self,
        session_id: str,
        updates: dict[str, Any],
    ) -> Result[Session, LapCounterError]:
        return await self._call("PUT", f"/sessions/{session_id}", updates)

    async def sync(self, session: Session) -> Result[Session, LapCounterError]:
        return await self._call("PUT", "/sessions/sync", sync_payload(session))


class HttpTransport:
    """
    HTTP transport over aiohttp.

    Usage:
        async with HttpTransport("http://127.0.0.1:8080") as transport:
            mirror = OptimisticMirror(transport)
            await mirror.load(session_id)
    """

    __slots__ = ("_base_url", "_timeout", "_client", "_owns_client")

    def __init__(
        self,
        base_url: str,
        client: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _session(self) -> aiohttp.ClientSession:
        if self._client is None:
            self._client = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.close()
        self._client = None

    async def _call(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Result[Session, LapCounterError]:
        url = f"{self._base_url}{path}"
        try:
            async with self._session().request(method, url, json=payload) as response:
                body = await response.read()
                return decode_response(response.status, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Request failed", extra={"url": url, "error": repr(e)})
            return Err(_transport_error(f"{method} {path} failed: {e!r}", e))

    async def fetch(self, session_id: str) -> Result[Session, LapCounterError]:
        return await self._call("GET", f"/sessions/{session_id}")

    async def update(
        self,
        session_id: str,
        updates: dict[str, Any],
    ) -> Result[Session, LapCounterError]:
        return await self._call("PUT", f"/sessions/{session_id}", updates)

    async def sync(self, session: Session) -> Result[Session, LapCounterError]:
        return await self._call("PUT", "/sessions/sync", sync_payload(session))
