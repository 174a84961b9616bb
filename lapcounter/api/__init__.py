"""
API module: HTTP routing, handlers, middleware and the aiohttp server.
"""

from lapcounter.api.handlers import SessionHandler, build_router
from lapcounter.api.middleware import ErrorMappingMiddleware, RequestLoggingMiddleware
from lapcounter.api.router import LapCounterRouter, Request, Response
from lapcounter.api.server import create_app, run_server

__all__ = [
    "ErrorMappingMiddleware",
    "LapCounterRouter",
    "Request",
    "RequestLoggingMiddleware",
    "Response",
    "SessionHandler",
    "build_router",
    "create_app",
    "run_server",
]
