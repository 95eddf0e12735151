"""Background task worker using SAQ."""

import asyncio

from saq import Worker

from claimease.logging import setup_logging
from claimease.tasks.queue import get_queue_settings


def main() -> None:
    """Run the SAQ worker with the purge cron schedule."""
    setup_logging()
    queue_settings = get_queue_settings()
    worker = Worker(
        queue=queue_settings["queue"],
        functions=queue_settings["functions"],
        concurrency=queue_settings.get("concurrency", 10),
        cron_jobs=queue_settings.get("cron_jobs"),
        startup=queue_settings.get("startup"),
        shutdown=queue_settings.get("shutdown"),
    )
    asyncio.run(worker.start())


if __name__ == "__main__":
    main()
