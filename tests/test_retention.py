"""Tests for the scheduled history retention service."""

from __future__ import annotations

from datetime import timedelta

from conftest import outcome
from twinstream.config import RetentionConfig
from twinstream.core.errors import StorageError
from twinstream.services.retention import RetentionService
from twinstream.services.service_manager import ServiceManager
from twinstream.storage.models import utcnow


class TestRetentionService:
    async def test_enabled_schedules_daily_job(self, history):
        service = RetentionService(RetentionConfig(enabled=True, hour=4), history)
        await service.start()
        try:
            assert await service.health_check()
            assert service.next_run_time().hour == 4
            assert await service.describe() == {"enabled": True, "healthy": True}
        finally:
            await service.stop()
        assert not await service.health_check()

    async def test_disabled_does_nothing(self, history):
        service = RetentionService(RetentionConfig(), history)
        await service.start()
        assert service.next_run_time() is None
        assert await service.describe() == {"enabled": False, "healthy": None}
        await service.stop()

    async def test_run_cleanup_applies_policy(self, history):
        old = await history.create(outcome("old"))
        await history.create(outcome("recent"))
        when = (utcnow() - timedelta(days=10)).isoformat(timespec="microseconds")
        await history._db.conn.execute("UPDATE comparisons SET created_at = ? WHERE id = ?", (when, old))
        await history._db.conn.commit()

        service = RetentionService(RetentionConfig(older_than_days=7), history)
        assert await service.run_cleanup() == 1
        assert await history.get(old) is None

    async def test_run_cleanup_survives_storage_error(self):
        class BrokenHistory:
            async def cleanup(self, **kwargs):
                raise StorageError("disk full")

        service = RetentionService(RetentionConfig(), BrokenHistory())
        assert await service.run_cleanup() == 0


class TestServiceManager:
    async def test_lifecycle(self, history):
        manager = ServiceManager(RetentionConfig(enabled=True), history)
        await manager.start_all()
        assert (await manager.health_check_all())["retention"]["healthy"] is True
        assert manager.get_retention().next_run_time().hour == 3
        await manager.stop_all()
        assert (await manager.health_check_all())["retention"]["healthy"] is False
