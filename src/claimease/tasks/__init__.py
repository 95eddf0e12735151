"""Background task processing."""

from claimease.tasks.maintenance import purge_expired_records
from claimease.tasks.queue import get_queue_settings, queue

__all__ = ["get_queue_settings", "purge_expired_records", "queue"]
