from __future__ import annotations

import argparse
import asyncio
import sys

from eventrelay.core.config import get_settings
from eventrelay.core.logging import configure_logging
from eventrelay.domain.events import OutboxStatus
from eventrelay.services.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay dead-lettered webhook deliveries")
    parser.add_argument("entry_ids", nargs="*", help="Dead-lettered outbox entry ids to replay")
    parser.add_argument("--all", action="store_true", help="Replay every dead-lettered entry")
    parser.add_argument("--tenant-id", default=None, help="Restrict --all to one tenant")
    parser.add_argument("--limit", type=int, default=100, help="Maximum entries replayed with --all")
    return parser


async def _replay(entry_ids: list[str], *, replay_all: bool, tenant_id: str | None, limit: int) -> int:
    runtime = build_runtime(get_settings())
    await runtime.startup()
    try:
        if replay_all:
            dead = await runtime.outbox.list_entries(
                status=OutboxStatus.DEAD_LETTERED,
                tenant_id=tenant_id,
                limit=limit,
            )
            entry_ids = [entry.id for entry in dead]
        for entry_id in entry_ids:
            replay = await runtime.outbox.replay_dead_letter(entry_id)
            print(f"replayed entry_id={entry_id} replay_id={replay.id}")
    finally:
        await runtime.shutdown()
    print(f"replayed_dead_letters={len(entry_ids)}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if not args.entry_ids and not args.all:
        parser.error("pass entry ids or --all")
    configure_logging()
    try:
        return asyncio.run(
            _replay(args.entry_ids, replay_all=args.all, tenant_id=args.tenant_id, limit=args.limit)
        )
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"replay_dead_letter failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
