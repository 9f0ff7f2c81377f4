"""Service lifecycle manager."""

from __future__ import annotations

from typing import Any

from twinstream.config import RetentionConfig
from twinstream.log import get_logger
from twinstream.services.base import Service
from twinstream.services.retention import RetentionService
from twinstream.storage.history_repo import HistoryRepository

logger = get_logger(__name__)


class ServiceManager:
    """Starts and stops background services in order; stops them in reverse."""

    def __init__(self, retention: RetentionConfig, history: HistoryRepository):
        self._retention = RetentionService(retention, history)
        self._services: list[Service] = [self._retention]

    def get_retention(self) -> RetentionService:
        return self._retention

    async def start_all(self) -> None:
        for service in self._services:
            await service.start()
        logger.info("all_services_started", services=[s.service_name for s in self._services])

    async def stop_all(self) -> None:
        for service in reversed(self._services):
            try:
                await service.stop()
            except Exception as e:
                logger.error("service_stop_error", service=service.service_name, error=str(e))
        logger.info("all_services_stopped")

    async def health_check_all(self) -> dict[str, dict[str, Any]]:
        return {s.service_name: await s.describe() for s in self._services}
