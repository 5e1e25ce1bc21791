"""
Operator tool for watcher bindings and the activity feed.

Works directly against persisted state; the monitoring runtime does not
need to be running.

Usage:
    python -m scripts.manage_bindings available [--refresh]
    python -m scripts.manage_bindings deploy WATCHER_ID SUBJECT_ID [--name NAME]
    python -m scripts.manage_bindings recall WATCHER_ID
    python -m scripts.manage_bindings bindings
    python -m scripts.manage_bindings feed [--exclude PARTITION_ID] [--limit N]
    python -m scripts.manage_bindings stats
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from core.app import build_runtime
from core.runtime import SensesRuntime
from services.notifications.log_sink import LogNotificationSink
from shared.config.senses import load_senses_config


def _ts(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


# ------------------------------------------------------------
# Commands
# ------------------------------------------------------------

async def cmd_available(runtime: SensesRuntime, args) -> int:
    watchers = await runtime.available(refresh=args.refresh)
    if not watchers:
        print("No watchers available.")
        return 0
    for watcher in sorted(watchers, key=lambda w: w.sort_key(), reverse=True):
        print(f"{watcher.id:<24} [{watcher.rank}] {watcher.name}")
    return 0


async def cmd_deploy(runtime: SensesRuntime, args) -> int:
    result = await runtime.deploy(args.watcher_id, args.subject_id, args.name)
    if not result.ok:
        print(f"Deploy failed: {result.reason.value}", file=sys.stderr)
        return 1
    binding = result.binding
    print(f"Deployed [{binding.watcher_rank}] {binding.watcher_name} -> {binding.subject_name}")
    return 0


async def cmd_recall(runtime: SensesRuntime, args) -> int:
    if not runtime.recall(args.watcher_id):
        print(f"Watcher {args.watcher_id} is not deployed.", file=sys.stderr)
        return 1
    print(f"Recalled {args.watcher_id}")
    return 0


async def cmd_bindings(runtime: SensesRuntime, args) -> int:
    bindings = runtime.allocator.bindings()
    if not bindings:
        print("No active bindings.")
        return 0
    for b in sorted(bindings, key=lambda b: b.bound_at):
        print(
            f"{b.watcher_id:<24} [{b.watcher_rank}] {b.watcher_name} -> "
            f"{b.subject_name} ({b.subject_id}) since {_ts(b.bound_at)}"
        )
    return 0


async def cmd_feed(runtime: SensesRuntime, args) -> int:
    events = runtime.event_log.query(exclude_partition_id=args.exclude)
    if args.limit:
        events = events[-args.limit:]
    for event in events:
        where = event.partition_name or event.partition_id
        detail = f": {event.content}" if event.content else ""
        print(
            f"{_ts(event.timestamp_ms)} {event.attribution.label()} "
            f"{event.event_type} {event.subject_name or event.subject_id} "
            f"@ {where}{detail}"
        )
    print(f"{len(events)} entr(ies) shown")
    return 0


async def cmd_stats(runtime: SensesRuntime, args) -> int:
    print(json.dumps(runtime.stats(), indent=2))
    return 0


COMMANDS = {
    "available": cmd_available,
    "deploy": cmd_deploy,
    "recall": cmd_recall,
    "bindings": cmd_bindings,
    "feed": cmd_feed,
    "stats": cmd_stats,
}


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage Shadow Senses bindings")
    parser.add_argument("--config", type=Path, default=None, help="Path to senses.json")
    sub = parser.add_subparsers(dest="command", required=True)

    available = sub.add_parser("available", help="List deployable watchers")
    available.add_argument("--refresh", action="store_true")

    deploy = sub.add_parser("deploy", help="Bind a watcher to a subject")
    deploy.add_argument("watcher_id")
    deploy.add_argument("subject_id")
    deploy.add_argument("--name", default=None, help="Subject display name")

    recall = sub.add_parser("recall", help="Release a watcher")
    recall.add_argument("watcher_id")

    sub.add_parser("bindings", help="List active bindings")

    feed = sub.add_parser("feed", help="Show recorded activity")
    feed.add_argument("--exclude", default=None, help="Partition id to leave out")
    feed.add_argument("--limit", type=int, default=50)

    sub.add_parser("stats", help="Show counters")
    return parser


async def _run(args) -> int:
    config = load_senses_config(path=args.config)
    runtime = build_runtime(config, sink=LogNotificationSink())
    runtime.allocator.load()
    runtime.event_log.load()
    return await COMMANDS[args.command](runtime, args)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
