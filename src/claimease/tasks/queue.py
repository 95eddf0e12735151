"""SAQ queue configuration for background tasks."""

from saq import CronJob, Queue

from claimease.config import settings

queue = Queue.from_url(settings.redis_url)

# Expired magic links and rate-limit windows are swept on this schedule
PURGE_CRON = "*/15 * * * *"


def get_queue_settings() -> dict:
    """Get SAQ queue settings for the worker."""
    # Import here to avoid circular imports
    from claimease.tasks.maintenance import purge_expired_records

    return {
        "queue": queue,
        "functions": [purge_expired_records],
        "cron_jobs": [CronJob(purge_expired_records, cron=PURGE_CRON)],
        "concurrency": 2,
        "startup": startup,
        "shutdown": shutdown,
    }


async def startup(_ctx: dict) -> None:
    """Called when worker starts."""
    pass


async def shutdown(_ctx: dict) -> None:
    """Called when worker shuts down."""
    from claimease.database import close_db

    await close_db()
