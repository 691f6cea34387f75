#!/usr/bin/env python3
"""
Headless drain of the POS offline queue.

Runs the same sync cycle as the API process against the same local store, for
terminals where the API is not kept running (e.g. a cron/systemd timer after the
shop closes). Each pass probes the upstream first and only replays when it is
reachable.
"""

import argparse
import asyncio
import sys
import traceback

try:
    from ..app.config import Settings
    from ..app.jsonlog import json_log
    from ..app.offline.services import build_offline_services
except ImportError:  # pragma: no cover
    # Allow running as a script: `python3 backend/workers/offline_sync.py`
    import os

    sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))
    from backend.app.config import Settings
    from backend.app.jsonlog import json_log
    from backend.app.offline.services import build_offline_services


async def run_pass(services) -> dict:
    online = await services.monitor.probe()
    if not online:
        stats = await services.store.get_stats()
        return {"online": False, "synced": 0, "failed": 0, "queued": stats["queued"], "unsynced": stats["unsynced"]}
    result = await services.sync_manager.force_sync()
    stats = await services.store.get_stats()
    return {
        "online": True,
        "skipped": result.skipped,
        "synced": result.synced,
        "failed": result.failed,
        "errors": result.errors,
        "queued": stats["queued"],
        "unsynced": stats["unsynced"],
    }


async def run(settings: Settings, *, once: bool, sleep_seconds: float) -> int:
    services = build_offline_services(settings, initially_online=False)
    supported = await services.initialize(start_background=False)
    if not supported:
        json_log("error", "worker.offline_sync.store_unavailable", db_path=settings.offline_db_path)
        await services.dispose()
        return 2

    try:
        while True:
            did_work = False
            try:
                summary = await run_pass(services)
                did_work = bool(summary.get("synced"))
                json_log("info", "worker.offline_sync.pass", **summary)
            except Exception as ex:
                # Never crash the worker loop; the next pass retries from the durable queue.
                json_log("error", "worker.offline_sync.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)

            if once:
                break
            # If something went through, loop again quickly; otherwise back off.
            await asyncio.sleep(0 if did_work else sleep_seconds)
    finally:
        await services.dispose()
    return 0


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=None, help="Path to the offline SQLite store (default: OFFLINE_DB_PATH)")
    parser.add_argument("--api-base-url", default=None, help="Upstream POS API (default: OFFLINE_API_BASE_URL)")
    parser.add_argument("--sleep", type=float, default=None, help="Seconds between passes (default: sync interval)")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    settings = Settings()
    if args.db:
        settings.offline_db_path = args.db
    if args.api_base_url:
        settings.offline_api_base_url = args.api_base_url.rstrip("/")
    sleep_seconds = args.sleep if args.sleep is not None else settings.sync_interval_seconds

    json_log("info", "worker.offline_sync.start", db_path=settings.offline_db_path, once=args.once)
    raise SystemExit(asyncio.run(run(settings, once=args.once, sleep_seconds=sleep_seconds)))


if __name__ == "__main__":
    main()
