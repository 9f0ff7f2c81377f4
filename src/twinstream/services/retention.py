"""APScheduler-based history retention service."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from twinstream.config import RetentionConfig
from twinstream.core.errors import StorageError
from twinstream.log import get_logger
from twinstream.services.base import Service
from twinstream.storage.history_repo import HistoryRepository

logger = get_logger(__name__)


class RetentionService(Service):
    """Prunes the comparison history once a day at the configured hour."""

    JOB_ID = "history_retention"

    def __init__(self, config: RetentionConfig, history: HistoryRepository):
        self._config = config
        self._history = history
        self._scheduler = AsyncIOScheduler(timezone=config.timezone)

    @property
    def service_name(self) -> str:
        return "retention"

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    async def start(self) -> None:
        if not self.enabled:
            logger.info("retention_disabled")
            return
        self._scheduler.add_job(
            self.run_cleanup,
            CronTrigger(hour=self._config.hour, minute=0, timezone=self._config.timezone),
            id=self.JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "retention_started",
            hour=self._config.hour,
            timezone=self._config.timezone,
            older_than_days=self._config.older_than_days,
            keep_count=self._config.keep_count,
        )

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("retention_stopped")

    async def health_check(self) -> bool:
        return self._scheduler.running

    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(self.JOB_ID)
        return job.next_run_time if job else None

    async def run_cleanup(self) -> int:
        """Apply the retention policy now. Returns the number of deleted records."""
        try:
            deleted = await self._history.cleanup(
                older_than_days=self._config.older_than_days,
                keep_count=self._config.keep_count,
            )
        except StorageError as e:
            logger.error("retention_cleanup_failed", error=str(e))
            return 0
        logger.info("retention_cleanup_done", deleted=deleted)
        return deleted
