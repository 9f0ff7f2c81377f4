"""Shared fixtures: scripted backends, temporary SQLite history, orchestrators.

No provider SDK is ever called; every backend is a local script.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import pytest
import structlog

from twinstream.app import TwinStreamApp
from twinstream.backends.base import ModelBackend, StreamChunk
from twinstream.config import AppConfig, EngineConfig, StorageConfig
from twinstream.core.catalog import ModelDescriptor, ModelRegistry, TokenUsage
from twinstream.core.errors import BackendError
from twinstream.engine.events import StreamEvent
from twinstream.engine.orchestrator import ComparisonOrchestrator
from twinstream.storage.database import Database
from twinstream.storage.history_repo import HistoryRepository
from twinstream.storage.models import ComparisonOutcome

GPT = "gpt-4o-mini"
HAIKU = "claude-3-5-haiku-20241022"


@dataclass(frozen=True)
class Pause:
    """Script step: sleep for ``seconds``, or forever when None."""

    seconds: Optional[float] = None


class ScriptedBackend(ModelBackend):
    """Yields a fixed script of text chunks, usage reports, pauses and errors."""

    def __init__(self, descriptor: ModelDescriptor, script: Iterable[Any]):
        super().__init__(descriptor)
        self.script = list(script)
        self.prompts: list[str] = []
        self.closed = False

    async def stream(self, prompt: str):
        self.prompts.append(prompt)
        for step in self.script:
            if isinstance(step, Pause):
                if step.seconds is None:
                    await asyncio.Event().wait()
                else:
                    await asyncio.sleep(step.seconds)
            elif isinstance(step, BaseException):
                raise step
            elif isinstance(step, TokenUsage):
                yield StreamChunk(usage=step)
            else:
                yield StreamChunk(text=step)

    async def aclose(self) -> None:
        self.closed = True


class ScriptedFactory:
    """Backend factory keyed by model id. An exception value fails backend creation."""

    def __init__(self, scripts: dict[str, Any]):
        self.scripts = scripts
        self.backends: dict[str, ScriptedBackend] = {}

    def __call__(self, descriptor: ModelDescriptor) -> ModelBackend:
        script = self.scripts.get(descriptor.id, [])
        if isinstance(script, BaseException):
            raise script
        backend = ScriptedBackend(descriptor, script)
        self.backends[descriptor.id] = backend
        return backend


class EventLog:
    """Async sink collecting every emitted event."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []

    async def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)

    def for_slot(self, slot) -> list[StreamEvent]:
        return [e for e in self.events if e.slot == slot]

    def of_type(self, slot, event_type) -> list[StreamEvent]:
        return [e for e in self.for_slot(slot) if e.type == event_type]


class FailingHistory:
    """History store whose writes always fail."""

    def __init__(self, error: Exception):
        self.error = error
        self.attempts: list[ComparisonOutcome] = []

    async def create(self, outcome: ComparisonOutcome) -> str:
        self.attempts.append(outcome)
        raise self.error


@pytest.fixture(autouse=True)
def _reset_structlog(monkeypatch):
    """Keep CLI logging setup from binding later tests to a closed captured stderr."""
    import twinstream.__main__ as cli

    real_setup = cli.setup_logging

    def setup_without_cache(*args: Any, **kwargs: Any) -> None:
        real_setup(*args, **kwargs)
        structlog.configure(cache_logger_on_first_use=False)

    monkeypatch.setattr(cli, "setup_logging", setup_without_cache)
    yield
    structlog.reset_defaults()


@pytest.fixture
def registry() -> ModelRegistry:
    return ModelRegistry()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(request_timeout=5.0, backend_timeout=2.0, channel_buffer=8)


@pytest.fixture
async def db(tmp_path: Path):
    database = Database(str(tmp_path / "history.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def history(db: Database) -> HistoryRepository:
    return HistoryRepository(db)


@pytest.fixture
def make_orchestrator(registry, history, engine_config):
    def _make(scripts: dict[str, Any], **kwargs: Any) -> ComparisonOrchestrator:
        return ComparisonOrchestrator(
            registry=kwargs.get("registry", registry),
            backend_factory=ScriptedFactory(scripts),
            history=kwargs.get("history", history),
            config=kwargs.get("config", engine_config),
        )

    return _make


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        data_dir=str(tmp_path),
        storage=StorageConfig(db_path=str(tmp_path / "app.db")),
        engine=EngineConfig(request_timeout=5.0, backend_timeout=2.0, channel_buffer=8),
    )


def missing_key_error(model_id: str) -> BackendError:
    return BackendError("OPENAI_API_KEY is not set", model_id=model_id)


def outcome(prompt: str = "Say hi", **overrides: Any) -> ComparisonOutcome:
    """A finished comparison ready to be written to history."""
    fields: dict[str, Any] = dict(
        request_id=uuid.uuid4().hex,
        prompt=prompt,
        model_id1=GPT,
        model_id2=HAIKU,
        final_text1="Hi there",
        final_text2="Hello",
        cost1=0.000002,
        cost2=0.00001,
        tokens1=4,
        tokens2=4,
    )
    fields.update(overrides)
    return ComparisonOutcome(**fields)


@pytest.fixture
async def ctx(app_config):
    app = TwinStreamApp(
        app_config,
        backend_factory=ScriptedFactory({GPT: ["Hi", " there"], HAIKU: ["Hello"]}),
    )
    # ASGITransport does not run the lifespan
    await app.start()
    yield app
    await app.stop()
