import argparse
import asyncio
import json
import logging
from typing import List, Optional

from config import APP_VERSION, YamlConfig
from db import SyncQueueRepository
from offline_context import OfflineContext
from settings_schema import SyncSettings


def show_status(settings: SyncSettings) -> dict:
    """Return pending sync counts for the offline store."""

    async def run() -> dict:
        ctx = OfflineContext(settings)
        await ctx.store.open()
        stats = await ctx.orchestrator.get_sync_stats()
        return stats.to_dict()

    return asyncio.run(run())


def run_sync(settings: SyncSettings, context: Optional[OfflineContext] = None) -> bool:
    """Run one sync pass if the remote service is reachable."""

    async def run() -> bool:
        ctx = context or OfflineContext(settings)
        await ctx.store.open()
        if not await ctx.monitor.check_connectivity():
            print("Remote service unreachable, nothing synced")
            return False
        ctx.monitor.set_online(True)
        return await ctx.orchestrator.sync()

    return asyncio.run(run())


def list_queue(settings: SyncSettings, stale_only: bool = False) -> List[dict]:
    async def run() -> List[dict]:
        ctx = OfflineContext(settings)
        queue = SyncQueueRepository(ctx.store, settings.max_retries)
        items = await (queue.list_stale() if stale_only else queue.list_pending())
        return [i.model_dump() for i in items]

    return asyncio.run(run())


def probe(settings: SyncSettings) -> bool:
    async def run() -> bool:
        return await OfflineContext(settings).monitor.check_connectivity()

    return asyncio.run(run())


def reset_store(settings: SyncSettings) -> None:
    async def run() -> None:
        await OfflineContext(settings).store.clear()

    asyncio.run(run())


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Offline sync utilities")
    parser.add_argument("--yaml", default="settings.yaml")
    parser.add_argument("--db", default=None)
    parser.add_argument("--url", default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=APP_VERSION)
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status")
    sub.add_parser("sync")
    queue = sub.add_parser("queue")
    queue.add_argument("--stale", action="store_true")
    sub.add_parser("probe")
    reset = sub.add_parser("reset")
    reset.add_argument("--yes", action="store_true")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = YamlConfig(args.yaml).settings()
    overrides = {}
    if args.db:
        overrides["db_path"] = args.db
    if args.url:
        overrides["api_base_url"] = args.url
    if overrides:
        settings = settings.model_copy(update=overrides)

    if args.cmd == "status":
        print(json.dumps(show_status(settings), indent=2))
    elif args.cmd == "sync":
        ok = run_sync(settings)
        print("Sync completed" if ok else "Sync did not complete")
    elif args.cmd == "queue":
        for item in list_queue(settings, args.stale):
            print(json.dumps(item))
    elif args.cmd == "probe":
        print("online" if probe(settings) else "offline")
    elif args.cmd == "reset":
        if not args.yes:
            print("Refusing to clear offline data without --yes")
            return
        reset_store(settings)
        print("Offline data cleared")


if __name__ == "__main__":
    main()
