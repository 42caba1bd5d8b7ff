"""bridgectl: operator command line for the bridge control client."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any

from src.app import BridgeControlClient, open_client
from src.config.settings import Settings, get_settings
from src.infra.errors import BridgeCtlError
from src.infra.logging import setup_logging
from src.lifecycle.events import LifecycleEvent, VerificationResult

ClientOpener = Callable[..., AbstractAsyncContextManager[BridgeControlClient]]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bridgectl", description="Start, stop and track remote forwarding bridges"
    )
    parser.add_argument("--base-url", help="Control API base URL (overrides CONTROL_API_BASE_URL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show locked states, display states and remote status")

    for name, help_text in (
        ("start", "Start forwarding for a configuration"),
        ("stop", "Stop forwarding and verify it stopped"),
        ("retry-stop", "Re-run stop verification after a failure"),
        ("force-kill", "Emergency stop and verify once"),
        ("unlock", "Drop the lock entry for a configuration"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("config_id")

    delete_parser = subparsers.add_parser("delete", help="Delete a configuration")
    delete_parser.add_argument("config_id")
    delete_parser.add_argument(
        "--yes", action="store_true", help="Confirm stopping a running configuration first"
    )

    subparsers.add_parser("kill-all", help="Emergency stop everything and drop all locks")

    watch_parser = subparsers.add_parser("watch", help="Run the reconciliation loop in the foreground")
    watch_parser.add_argument(
        "--ticks", type=int, default=0, help="Stop after N ticks (0 = run until interrupted)"
    )
    return parser


def run_cli(
    argv: Sequence[str] | None = None,
    *,
    settings: Settings | None = None,
    opener: ClientOpener = open_client,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    resolved = settings if settings is not None else get_settings()
    if args.base_url:
        resolved.control_api.base_url = args.base_url.rstrip("/")
    setup_logging(json_output=resolved.logging.json_output, log_level=resolved.logging.level)

    try:
        asyncio.run(_dispatch(args, resolved, opener))
    except BridgeCtlError as exc:
        print(f"error [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


def main() -> int:
    return run_cli()


async def _dispatch(args: argparse.Namespace, settings: Settings, opener: ClientOpener) -> None:
    async with opener(settings, run_loop=False) as client:
        controller = client.controller
        if args.command == "status":
            await _print_status(client)
        elif args.command == "start":
            entry = await controller.start(args.config_id)
            _emit({"config_id": entry.config_id, "state": entry.state.value})
            await _await_post_start_check(client, args.config_id)
        elif args.command == "stop":
            await controller.stop(args.config_id)
            _emit({"config_id": args.config_id, "state": "stopped"})
        elif args.command == "retry-stop":
            await controller.retry_stop(args.config_id)
            _emit({"config_id": args.config_id, "state": "stopped"})
        elif args.command == "force-kill":
            await controller.force_kill(args.config_id)
            _emit({"config_id": args.config_id, "state": "stopped"})
        elif args.command == "unlock":
            _emit({"config_id": args.config_id, "unlocked": controller.force_unlock(args.config_id)})
        elif args.command == "delete":
            await controller.delete(args.config_id, confirm=args.yes)
            _emit({"config_id": args.config_id, "deleted": True})
        elif args.command == "kill-all":
            _emit({"unlocked": await controller.force_kill_all()})
        elif args.command == "watch":
            await _watch(client, args.ticks)
        else:
            raise BridgeCtlError(f"unknown command: {args.command}", code="USAGE_ERROR")


async def _print_status(client: BridgeControlClient) -> None:
    snapshot = await client.gateway.query_status()
    _emit(
        {
            "locks": client.table.summary(),
            "display": {cid: s.value for cid, s in client.reconciler.display_states.items()},
            "remote": snapshot.model_dump(by_alias=True),
        }
    )


async def _await_post_start_check(client: BridgeControlClient, config_id: str) -> None:
    """Report the post-start diagnostic before the client closes and cancels it."""

    def _on_event(event: LifecycleEvent) -> None:
        if isinstance(event, VerificationResult) and event.config_id == config_id:
            _print_event(event)

    unsubscribe = client.events.subscribe(_on_event)
    try:
        await client.controller.wait_post_start_check(config_id)
    finally:
        unsubscribe()


async def _watch(client: BridgeControlClient, ticks: int) -> None:
    unsubscribe = client.events.subscribe(_print_event)
    interval = client.settings.reconcile.interval_s
    try:
        count = 0
        while ticks <= 0 or count < ticks:
            await client.reconciler.tick()
            count += 1
            if ticks <= 0 or count < ticks:
                await asyncio.sleep(interval)
    finally:
        unsubscribe()


def _print_event(event: LifecycleEvent) -> None:
    _emit({"event": type(event).__name__, **dataclasses.asdict(event)})


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


if __name__ == "__main__":
    raise SystemExit(main())
