"""
Booking Sync — Entry Point.

`python main.py` serves the HTTP API (with the periodic sync loop).
`python main.py sync` runs a single reconciliation cycle and exits, for
deployments where cron drives the schedule.
"""

import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from bookingsync.config import settings  # noqa: E402

logger = logging.getLogger(__name__)


def run_sync_once() -> int:
    from bookingsync.api.app import build_services
    from bookingsync.core.reconciler import SyncAbortedError
    from bookingsync.core.sync_trigger import SyncInProgressError

    services = build_services()
    try:
        result, duration_ms = asyncio.run(services.trigger.run())
    except (SyncAbortedError, SyncInProgressError) as exc:
        logger.error("Sync failed: %s", exc)
        return 1
    logger.info("Sync finished in %d ms: %s", duration_ms, result.to_dict())
    return 0 if result.success else 2


def serve() -> None:
    import uvicorn

    from bookingsync.api.app import create_app

    uvicorn.run(create_app(), host=settings.API_HOST, port=settings.API_PORT)


def main() -> None:
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        sys.exit(run_sync_once())
    serve()


if __name__ == "__main__":
    main()
