"""
HTTP Server: aiohttp binding for LapCounterRouter

A single catch-all aiohttp route converts each request into the
framework-neutral Request, dispatches it through the router (which owns
routing, middleware and error mapping) and converts the Response back.
"""

from __future__ import annotations

import logging
from typing import Optional

from aiohttp import web

from lapcounter.api.handlers import build_router
from lapcounter.api.router import LapCounterRouter, Request, Response
from lapcounter.core.config import LapCounterConfig
from lapcounter.reconciler import SessionReconciler
from lapcounter.storage.backends import create_backend
from lapcounter.storage.session_store import SessionStore

logger = logging.getLogger(__name__)

ROUTER_KEY = web.AppKey("router", LapCounterRouter)
RECONCILER_KEY = web.AppKey("reconciler", SessionReconciler)


def build_reconciler(config: LapCounterConfig) -> SessionReconciler:
    """Backend → store → reconciler, all from configuration."""
    store = SessionStore(
        create_backend(config.store),
        key_prefix=config.store.key_prefix,
        compression=config.store.compression,
    )
    return SessionReconciler.from_config(store, config.reconciler)


async def _dispatch(request: web.Request) -> web.Response:
    router = request.app[ROUTER_KEY]
    body = await request.read()
    response = await router.dispatch(Request.from_raw(
        request.method,
        str(request.rel_url),
        dict(request.headers),
        body,
    ))
    return _to_aiohttp(response)


def _to_aiohttp(response: Response) -> web.Response:
    headers = {k: v for k, v in response.headers.items() if k.lower() != "content-type"}
    content_type = response.headers.get("content-type", "application/json")
    return web.Response(
        status=response.status,
        body=response.body,
        headers=headers,
        content_type=content_type,
    )


async def _close_store(app: web.Application) -> None:
    await app[RECONCILER_KEY].store.close()


def create_app(
    config: Optional[LapCounterConfig] = None,
    reconciler: Optional[SessionReconciler] = None,
) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        config: Root configuration (defaults when None)
        reconciler: Prebuilt reconciler; built from `config` when None
    """
    config = config or LapCounterConfig()
    if reconciler is None:
        reconciler = build_reconciler(config)

    app = web.Application(client_max_size=config.server.max_request_bytes)
    app[RECONCILER_KEY] = reconciler
    app[ROUTER_KEY] = build_router(reconciler)
    app.router.add_route("*", "/{tail:.*}", _dispatch)
    app.on_cleanup.append(_close_store)
    return app


def run_server(config: LapCounterConfig) -> None:
    app = create_app(config)
    logger.info(
        "Starting lap counter server",
        extra={
            "host": config.server.host,
            "port": config.server.port,
            "backend": config.store.backend,
        },
    )
    web.run_app(app, host=config.server.host, port=config.server.port, print=None)
