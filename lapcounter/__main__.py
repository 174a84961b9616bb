#!/usr/bin/env python3
"""
Lap Counter command line.

Usage:
    python -m lapcounter serve [--host H] [--port P]
    python -m lapcounter demo

    # Or with custom config
    LAPCOUNTER_STORE_BACKEND=filesystem LAPCOUNTER_STORE_DIR=/tmp/laps python -m lapcounter serve
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import replace
from typing import Optional, Sequence

from lapcounter.api.handlers import build_router
from lapcounter.api.router import Request
from lapcounter.api.server import build_reconciler, run_server
from lapcounter.client.mirror import Committed, OptimisticMirror
from lapcounter.client.transport import LocalTransport
from lapcounter.core.config import LapCounterConfig
from lapcounter.race.models import LapAction
from lapcounter.race.state_machine import format_elapsed, standings
from lapcounter.observability.logging import setup_logging


async def demo(config: LapCounterConfig) -> int:
    """
    Run a complete race against the configured store: create "5K" with
    three laps for Ann and Bo, start it, lap Ann to the finish and
    finish Bo early.
    """
    print("\n" + "=" * 60)
    print("Lap Counter - Local Demo")
    print("=" * 60 + "\n")

    reconciler = build_reconciler(config)
    router = build_router(reconciler)
    mirror = OptimisticMirror(LocalTransport(router))

    try:
        response = await router.dispatch(Request.with_json("POST", "/sessions", {
            "name": "5K",
            "totalLaps": 3,
            "participantNames": ["Ann", "Bo"],
        }))
        if response.status != 201:
            print(f"Create failed: {response.payload()}")
            return 1
        session_id = response.payload()["session"]["id"]
        print(f"✓ Session created: {session_id}")

        loaded = await mirror.load(session_id)
        if loaded.is_err():
            print(f"Load failed: {loaded.error}")
            return 1
        ann, bo = loaded.unwrap().participants

        outcome = await mirror.start()
        if not isinstance(outcome, Committed):
            print(f"Start failed: {outcome}")
            return 1
        print(f"✓ Race started at {outcome.session.start_time.isoformat()}")

        for lap in range(3):
            outcome = await mirror.submit(ann.id, LapAction.ADD_LAP)
            if not isinstance(outcome, Committed):
                print(f"Lap failed: {outcome}")
                return 1
            print(f"  Ann lap {lap + 1}: status={outcome.session.status.value}")

        outcome = await mirror.submit(bo.id, LapAction.FINISH)
        if not isinstance(outcome, Committed):
            print(f"Finish failed: {outcome}")
            return 1
        session = outcome.session
        print(f"✓ Bo finished; session status={session.status.value}")

        print("\n--- Standings ---\n")
        for row in standings(session):
            elapsed = format_elapsed(row.elapsed) if row.elapsed is not None else "-"
            p = row.participant
            print(f"{row.position}. {p.name:<10} laps={p.laps_completed} elapsed={elapsed}")

        print("\n✓ Demo complete")
        print("=" * 60 + "\n")
        return 0
    finally:
        await reconciler.store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lapcounter", description="Live lap-counting race server")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API server")
    serve.add_argument("--host", help="Bind address (default from LAPCOUNTER_HOST)")
    serve.add_argument("--port", type=int, help="Bind port (default from LAPCOUNTER_PORT)")

    commands.add_parser("demo", help="Run a scripted race against the configured store")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config_result = LapCounterConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}", file=sys.stderr)
        return 2
    config = config_result.unwrap()

    if args.command == "serve" and (args.host or args.port):
        config = replace(config, server=replace(
            config.server,
            host=args.host or config.server.host,
            port=args.port or config.server.port,
        ))

    validation = config.validate()
    if validation.is_err():
        print(f"Validation error: {validation.error}", file=sys.stderr)
        return 2

    if args.command == "serve":
        setup_logging(config.observability.log_level, json_output=config.observability.log_json)
        run_server(config)
        return 0

    setup_logging("WARNING", json_output=False)
    try:
        return asyncio.run(demo(config))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
