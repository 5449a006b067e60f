"""
Link Request Reaper Job.

Expires overdue pending link requests and purges settled ones past retention.
Verification already refuses expired codes on its own; this only keeps the
table tidy.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog

from crosslink.config import Settings, get_settings
from crosslink.identity.postgres_store import postgres_transaction
from crosslink.identity.store import TransactionFactory
from crosslink.kernel.time import Clock, isoformat_z, utc_now

logger = structlog.get_logger()


@dataclass
class LinkRequestReaperStats:
    expired: int = 0
    purged: int = 0
    dry_run: bool = False
    started_at: str | None = None
    completed_at: str | None = None


class LinkRequestReaperJob:
    """Periodic cleanup of the link_requests table."""

    def __init__(
        self,
        transaction: TransactionFactory | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self._transaction = transaction or postgres_transaction
        self.settings = settings or get_settings()
        self._clock = clock

    async def run(self, dry_run: bool = False, limit: int = 500) -> dict[str, Any]:
        now = self._clock()
        stats = LinkRequestReaperStats(dry_run=dry_run, started_at=isoformat_z(now))
        retention_cutoff = now - timedelta(days=self.settings.link_request_retention_days)

        async with self._transaction() as store:
            if dry_run:
                stats.expired = min(limit, await store.count_overdue_link_requests(now))
                stats.purged = min(limit, await store.count_purgeable_link_requests(retention_cutoff))
            else:
                stats.expired = await store.expire_link_requests(now, limit)
                stats.purged = await store.purge_link_requests(retention_cutoff, limit)

        stats.completed_at = isoformat_z(self._clock())
        logger.info(
            "Link request reaper finished",
            expired=stats.expired,
            purged=stats.purged,
            dry_run=dry_run,
        )
        return stats.__dict__


_reaper_job: LinkRequestReaperJob | None = None


def get_link_request_reaper() -> LinkRequestReaperJob:
    global _reaper_job
    if _reaper_job is None:
        _reaper_job = LinkRequestReaperJob()
    return _reaper_job
