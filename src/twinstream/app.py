"""Application wiring: config -> catalog -> storage -> orchestrator -> services."""

from __future__ import annotations

from twinstream.backends.factory import BackendFactory, ProviderBackendFactory
from twinstream.config import AppConfig, ModelEntry
from twinstream.core.catalog import ModelDescriptor, ModelRegistry, default_registry
from twinstream.core.types import Provider
from twinstream.engine.orchestrator import ComparisonOrchestrator
from twinstream.log import get_logger
from twinstream.services.service_manager import ServiceManager
from twinstream.storage.database import Database
from twinstream.storage.history_repo import HistoryRepository

logger = get_logger(__name__)


def build_registry(entries: list[ModelEntry]) -> ModelRegistry:
    """Built-in catalog with config entries layered on top."""
    registry = default_registry()
    if not entries:
        return registry
    return registry.with_overrides(
        ModelDescriptor(
            id=e.id,
            display_name=e.display_name,
            provider=Provider(e.provider),
            input_price_per_1k=e.input_price_per_1k,
            output_price_per_1k=e.output_price_per_1k,
            max_context=e.max_context,
            supports_streaming=e.supports_streaming,
        )
        for e in entries
    )


class TwinStreamApp:
    """Top-level application object shared by the HTTP server and the CLI."""

    def __init__(self, config: AppConfig, backend_factory: BackendFactory | None = None):
        self.config = config
        self.registry = build_registry(config.models)
        self.db = Database(config.storage.db_path)
        self.history = HistoryRepository(self.db)
        self.orchestrator = ComparisonOrchestrator(
            registry=self.registry,
            backend_factory=backend_factory or ProviderBackendFactory(config),
            history=self.history,
            config=config.engine,
        )
        self.service_manager = ServiceManager(config.retention, self.history)
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.db.initialize()
        await self.service_manager.start_all()
        self._started = True
        logger.info("twinstream_started", models=len(self.registry))

    async def stop(self) -> None:
        if not self._started:
            return
        await self.orchestrator.shutdown()
        await self.service_manager.stop_all()
        await self.db.close()
        self._started = False
        logger.info("twinstream_stopped")
