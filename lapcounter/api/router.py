"""
HTTP Router: Request Routing and Handler Dispatch

Framework-neutral routing; api.server mounts it on aiohttp and
client.transport.LocalTransport calls it in-process.
Supports:
- Path parameter extraction
- Query string parsing
- Method-based dispatch (404 unknown path, 405 wrong method)
- Middleware chain

Routes are matched in registration order, so literal paths such as
/sessions/sync must be registered before /sessions/{session_id}.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Awaitable, Optional, Sequence
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)


@dataclass
class Request:
    """HTTP request representation."""
    method: str
    path: str
    query_params: dict[str, list[str]] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    path_params: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_raw(
        cls,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: bytes = b"",
    ) -> Request:
        """Parse request from raw HTTP data."""
        parsed = urlparse(url)
        return cls(
            method=method.upper(),
            path=parsed.path,
            query_params=parse_qs(parsed.query),
            headers={k.lower(): v for k, v in (headers or {}).items()},
            body=body,
        )

    @classmethod
    def with_json(cls, method: str, url: str, payload: Any) -> Request:
        """Build a request carrying a JSON body."""
        return cls.from_raw(
            method,
            url,
            {"content-type": "application/json"},
            json.dumps(payload).encode("utf-8"),
        )

    def json(self) -> Any:
        """
        Parse body as JSON.

        Raises:
            ValueError: Body is not valid UTF-8 JSON
        """
        if not self.body:
            return None
        return json.loads(self.body)

    def query(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get first query parameter value."""
        values = self.query_params.get(key, [])
        return values[0] if values else default

    def header(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get header value (case-insensitive)."""
        return self.headers.get(key.lower(), default)


@dataclass
class Response:
    """HTTP response representation."""
    status: int = 200
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def json(
        cls,
        data: Any,
        status: int = 200,
        headers: Optional[dict[str, str]] = None,
    ) -> Response:
        """Create JSON response."""
        body = json.dumps(data, default=str).encode("utf-8")
        h = dict(headers or {})
        h["content-type"] = "application/json"
        return cls(status=status, body=body, headers=h)

    @classmethod
    def error(cls, message: str, status: int = 400) -> Response:
        """Create error response."""
        return cls.json({"error": message}, status=status)

    @classmethod
    def not_found(cls) -> Response:
        return cls.error("Not found", status=404)

    @classmethod
    def method_not_allowed(cls) -> Response:
        return cls.error("Method not allowed", status=405)

    def payload(self) -> Any:
        """Decoded JSON body (None when empty)."""
        if not self.body:
            return None
        return json.loads(self.body)


# Handler function signature
Handler = Callable[[Request], Awaitable[Response]]

# Middleware function signature
Middleware = Callable[[Request, Handler], Awaitable[Response]]


@dataclass
class Route:
    """Route definition."""
    method: str
    pattern: re.Pattern
    handler: Handler
    param_names: list[str]

    @classmethod
    def create(cls, method: str, path: str, handler: Handler) -> Route:
        """Create route from path pattern."""
        param_names: list[str] = []

        def replace_param(match: re.Match) -> str:
            param_names.append(match.group(1))
            return r"(?P<" + match.group(1) + r">[^/]+)"

        pattern_str = re.sub(r"\{(\w+)\}", replace_param, path)

        return cls(
            method=method.upper(),
            pattern=re.compile(f"^{pattern_str}$"),
            handler=handler,
            param_names=param_names,
        )

    def match(self, method: str, path: str) -> Optional[dict[str, str]]:
        """Match request against route."""
        if method.upper() != self.method:
            return None
        match = self.pattern.match(path)
        if not match:
            return None
        return match.groupdict()


class LapCounterRouter:
    """
    HTTP request router.

    Usage:
        router = LapCounterRouter()

        @router.get("/sessions/{session_id}")
        async def get_session(request: Request) -> Response:
            session_id = request.path_params["session_id"]
            ...

        response = await router.dispatch(request)
    """

    __slots__ = ("_routes", "_middleware", "_prefix")

    def __init__(self, prefix: str = "") -> None:
        self._routes: list[Route] = []
        self._middleware: list[Middleware] = []
        self._prefix = prefix.rstrip("/")

    @property
    def routes(self) -> list[Route]:
        return list(self._routes)

    def route(
        self,
        path: str,
        methods: Sequence[str] = ("GET",),
    ) -> Callable[[Handler], Handler]:
        """Register route decorator."""
        def decorator(handler: Handler) -> Handler:
            for method in methods:
                self._routes.append(Route.create(method, self._prefix + path, handler))
            return handler
        return decorator

    def get(self, path: str) -> Callable[[Handler], Handler]:
        return self.route(path, ["GET"])

    def post(self, path: str) -> Callable[[Handler], Handler]:
        return self.route(path, ["POST"])

    def put(self, path: str) -> Callable[[Handler], Handler]:
        return self.route(path, ["PUT"])

    def add(self, method: str, path: str, handler: Handler) -> None:
        """Register a bound method without the decorator form."""
        self.route(path, [method])(handler)

    def use(self, middleware: Middleware) -> None:
        """Add middleware. The first added runs outermost."""
        self._middleware.append(middleware)

    async def dispatch(self, request: Request) -> Response:
        """Route request to handler through the middleware chain."""
        handler: Optional[Handler] = None

        for route in self._routes:
            params = route.match(request.method, request.path)
            if params is not None:
                request.path_params = params
                handler = route.handler
                break

        if handler is None:
            # Path exists under another method
            for route in self._routes:
                if route.pattern.match(request.path):
                    handler = _static(Response.method_not_allowed())
                    break
            else:
                handler = _static(Response.not_found())

        final_handler = handler
        for mw in reversed(self._middleware):
            final_handler = self._wrap_middleware(mw, final_handler)

        try:
            return await final_handler(request)
        except Exception:
            logger.exception("Unhandled error dispatching request")
            return Response.error("Internal server error", status=500)

    def _wrap_middleware(
        self,
        middleware: Middleware,
        handler: Handler,
    ) -> Handler:
        async def wrapped(request: Request) -> Response:
            return await middleware(request, handler)
        return wrapped


def _static(response: Response) -> Handler:
    async def handler(request: Request) -> Response:
        return response
    return handler
