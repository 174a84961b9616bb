"""
API Middleware: Cross-Cutting Concerns

Provides:
- RequestLoggingMiddleware: request id, access log line, log context
- ErrorMappingMiddleware: LapCounterError and stray exceptions → JSON errors
"""

from __future__ import annotations

import time

from lapcounter.api.router import Handler, Request, Response
from lapcounter.core.errors import ErrorCode, LapCounterError, ValidationError
from lapcounter.core.types import generate_id
from lapcounter.observability.logging import StructuredLogger

REQUEST_ID_HEADER = "x-request-id"


def error_response(error: LapCounterError) -> Response:
    """JSON body and status for a LapCounterError."""
    return Response.json(
        {
            "error": error.message,
            "code": error.code.name,
            "errorId": error.error_id,
        },
        status=error.http_status,
    )


class RequestLoggingMiddleware:
    """
    Access logging with request correlation.

    Reuses an incoming X-Request-ID or mints one, echoes it on the
    response, and scopes it into the log context for everything the
    handler logs.
    """

    __slots__ = ("_logger",)

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger = logger or StructuredLogger("lapcounter.api.access")

    async def __call__(
        self,
        request: Request,
        handler: Handler,
    ) -> Response:
        request_id = request.header(REQUEST_ID_HEADER) or generate_id()
        start_time = time.perf_counter()

        with StructuredLogger.context(request_id=request_id):
            response = await handler(request)
            latency_ms = (time.perf_counter() - start_time) * 1000
            log = self._logger.warning if response.status >= 500 else self._logger.info
            log(
                "Request handled",
                method=request.method,
                path=request.path,
                status=response.status,
                latency_ms=round(latency_ms, 2),
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class ErrorMappingMiddleware:
    """
    Converts exceptions escaping a handler into error responses.

    - LapCounterError → its own status (400/404/409/500)
    - ValueError from body parsing → 400 malformed request
    - anything else → 500, logged with its errorId
    """

    __slots__ = ("_logger",)

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger = logger or StructuredLogger("lapcounter.api.errors")

    async def __call__(
        self,
        request: Request,
        handler: Handler,
    ) -> Response:
        try:
            return await handler(request)
        except LapCounterError as e:
            if e.http_status >= 500:
                self._logger.error("Request failed", error_id=e.error_id, error=str(e))
            return error_response(e)
        except ValueError as e:
            return error_response(ValidationError.malformed(str(e), cause=e))
        except Exception as e:
            wrapped = LapCounterError(
                code=ErrorCode.INTERNAL,
                message="Internal server error",
                cause=e,
            )
            self._logger.exception("Unhandled error", error_id=wrapped.error_id)
            return error_response(wrapped)
