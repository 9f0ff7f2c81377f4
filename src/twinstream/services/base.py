"""Lifecycle interface for background services run next to the HTTP server."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Service(ABC):
    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    async def describe(self) -> dict[str, Any]:
        """Status entry for the health endpoint."""
        healthy = await self.health_check() if self.enabled else None
        return {"enabled": self.enabled, "healthy": healthy}
