from __future__ import annotations

import asyncio

from notifyhub.core.logging import configure_logging
from notifyhub.workers.notification_worker import run_notification_worker


async def _main() -> int:
    # Consumer, delivery and ops endpoints share one process and one event loop.
    configure_logging()
    return await run_notification_worker()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
