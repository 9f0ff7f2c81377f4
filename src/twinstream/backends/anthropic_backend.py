"""Anthropic Messages API backend using the official SDK's streaming helper."""

from __future__ import annotations

from typing import AsyncIterator

from twinstream.backends.base import ModelBackend, StreamChunk
from twinstream.config import ProviderConfig
from twinstream.core.catalog import ModelDescriptor, parse_reported_usage
from twinstream.core.errors import BackendError
from twinstream.core.types import Provider
from twinstream.log import get_logger

logger = get_logger(__name__)


class AnthropicBackend(ModelBackend):
    def __init__(self, descriptor: ModelDescriptor, config: ProviderConfig):
        super().__init__(descriptor)
        if not config.api_key:
            raise BackendError("ANTHROPIC_API_KEY is not set", model_id=descriptor.id)

        import anthropic

        self._config = config
        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    async def stream(self, prompt: str) -> AsyncIterator[StreamChunk]:
        logger.debug("anthropic_stream_request", model=self.model_id, prompt_length=len(prompt))
        async with self._client.messages.stream(
            model=self.model_id,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            messages=[{"role": "user", "content": prompt}],
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield StreamChunk(text=text)
            final = await stream.get_final_message()

        logger.debug(
            "anthropic_stream_usage",
            model=self.model_id,
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
            stop_reason=final.stop_reason,
        )
        yield StreamChunk(usage=parse_reported_usage(final.usage, Provider.ANTHROPIC))

    async def aclose(self) -> None:
        await self._client.close()
