# tillbook/main.py
"""Command line control surface for the Tillbook sync engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from core.settings import CONFIG_PATH, DB_PATH, ensure_dirs
from services.sync_errors import SyncConfigurationError
from services.sync_log import get_sync_logger
from services.sync_service import SyncService, create_sync_service
from storage.config import load_config
from storage.db import create_db_engine, init_db, make_session_factory


logger = get_sync_logger("cli")


def build_service(db_path: Path, config_path: Path) -> SyncService:
    config = load_config(config_path)
    engine = create_db_engine(db_path)
    init_db(engine, db_path=db_path, backup=config.backup)
    return create_sync_service(make_session_factory(engine), config, config_path=config_path)


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


async def _oneshot(service: SyncService, action) -> Any:
    try:
        return await action()
    finally:
        close = getattr(service.engine.remote, "aclose", None)
        if close is not None:
            await close()


async def _run_forever(service: SyncService) -> None:
    await service.start()
    service.subscribe(_print)
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await service.stop()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__ or "")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="SQLite database (default: %(default)s)")
    parser.add_argument("--config", type=Path, default=CONFIG_PATH, help="Config file (default: %(default)s)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Queue counts and last sync time")
    sub.add_parser("health", help="Health verdict with alerts and metrics")
    queue = sub.add_parser("queue", help="List queue items")
    queue.add_argument("--status", choices=["pending", "syncing", "synced", "error"])
    queue.add_argument("--limit", type=int, default=100)
    sub.add_parser("sync", help="Push pending items now")
    sub.add_parser("pull", help="Pull remote changes now")
    sub.add_parser("reset-failed", help="Move errored items back to pending")
    conflicts = sub.add_parser("conflicts", help="List pull conflicts awaiting review")
    conflicts.add_argument("--all", action="store_true", help="Include resolved conflicts")
    resolve = sub.add_parser("resolve", help="Settle a pull conflict")
    resolve.add_argument("conflict_id", type=int)
    resolve.add_argument("--keep", choices=["local", "remote"], required=True)
    clear = sub.add_parser("clear", help="Delete queue items")
    clear.add_argument("--status", choices=["pending", "syncing", "synced", "error"])
    clear.add_argument("--yes", action="store_true", help="Confirm clearing unsynced items")
    sub.add_parser("enable", help="Turn automatic sync on")
    sub.add_parser("disable", help="Turn automatic sync off")
    sub.add_parser("run", help="Run the scheduler until interrupted")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.db == DB_PATH or args.config == CONFIG_PATH:
        ensure_dirs()
    service = build_service(args.db, args.config)

    try:
        if args.command == "status":
            _print(service.get_status())
        elif args.command == "health":
            _print(service.get_health())
        elif args.command == "queue":
            _print(service.get_queue(args.status, limit=args.limit))
        elif args.command == "sync":
            _print(asyncio.run(_oneshot(service, service.sync_all)))
        elif args.command == "pull":
            _print(asyncio.run(_oneshot(service, service.pull_changes)))
        elif args.command == "reset-failed":
            _print(service.reset_failed())
        elif args.command == "conflicts":
            _print(service.get_conflicts(include_resolved=args.all))
        elif args.command == "resolve":
            _print(asyncio.run(_oneshot(service, lambda: service.resolve_conflict(args.conflict_id, args.keep))))
        elif args.command == "clear":
            if args.status != "synced" and not args.yes:
                print("Refusing to clear unsynced items without --yes", file=sys.stderr)
                return 2
            _print(service.clear_queue(args.status))
        elif args.command == "enable":
            _print(service.set_enabled(True))
        elif args.command == "disable":
            _print(service.set_enabled(False))
        elif args.command == "run":
            try:
                asyncio.run(_run_forever(service))
            except KeyboardInterrupt:
                logger.info("Scheduler stopped")
    except SyncConfigurationError as exc:
        _print({"success": False, "error": str(exc)})
        return 1
    except (LookupError, ValueError) as exc:
        _print({"success": False, "error": str(exc)})
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
