"""CLI helper for pushing locally queued game events to Supabase."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List

from goalie_core import OfflineQueue, RemoteEventStore, SupabaseSettings, SyncReconciler, SyncResult
from goalie_core.errors import TrackerError


def _format_summary(result: SyncResult, remaining: int) -> str:
    lines = [f"Offline queue: {result.synced} synced, {result.failed} failed, {remaining} remaining"]
    if result.skipped:
        lines.append(f"  {result.skipped} skipped after repeated failures")
    for item in result.errors:
        lines.append(f"  - {item}")
    return "\n".join(lines)


async def _run(queue_path: Path | None, max_attempts: int | None) -> int:
    settings = SupabaseSettings.from_env()
    try:
        settings.require()
    except RuntimeError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    queue = OfflineQueue(queue_path)
    reconciler = SyncReconciler(queue, RemoteEventStore(settings), max_attempts=max_attempts)
    try:
        result = await reconciler.sync()
    except TrackerError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(_format_summary(result, queue.pending_count()))
    return 1 if result.failed else 0


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--queue", type=Path, default=None, help="Path to the offline queue JSON file")
    parser.add_argument("--max-attempts", type=int, default=None, help="Skip records that already failed this often")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    return asyncio.run(_run(args.queue, args.max_attempts))


if __name__ == "__main__":
    raise SystemExit(main())
