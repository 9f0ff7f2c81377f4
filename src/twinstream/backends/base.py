"""Model backend abstraction: a prompt in, a stream of text increments out."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator

from twinstream.core.catalog import ModelDescriptor, TokenUsage


@dataclass(frozen=True, slots=True)
class StreamChunk:
    """One increment from a backend.

    ``text`` is the new output fragment (may be empty). ``usage`` is set when
    the provider reports exact token counts, usually on the last chunk.
    """

    text: str = ""
    usage: TokenUsage | None = None


class ModelBackend(ABC):
    """Base class for streaming model backends.

    End of iteration is the completion signal; any exception raised while
    iterating is a backend failure for that stream only.
    """

    def __init__(self, descriptor: ModelDescriptor):
        self.descriptor = descriptor

    @property
    def model_id(self) -> str:
        return self.descriptor.id

    @abstractmethod
    def stream(self, prompt: str) -> AsyncIterator[StreamChunk]:
        """Start generating a response for *prompt*."""
        ...

    async def aclose(self) -> None:
        """Release provider resources (HTTP clients)."""
