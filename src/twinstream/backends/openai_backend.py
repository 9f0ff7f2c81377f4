"""OpenAI chat completions backend using the official SDK in streaming mode."""

from __future__ import annotations

from typing import AsyncIterator

from twinstream.backends.base import ModelBackend, StreamChunk
from twinstream.config import ProviderConfig
from twinstream.core.catalog import ModelDescriptor, parse_reported_usage
from twinstream.core.errors import BackendError
from twinstream.core.types import Provider
from twinstream.log import get_logger

logger = get_logger(__name__)


class OpenAIBackend(ModelBackend):
    def __init__(self, descriptor: ModelDescriptor, config: ProviderConfig):
        super().__init__(descriptor)
        if not config.api_key:
            raise BackendError("OPENAI_API_KEY is not set", model_id=descriptor.id)

        import openai

        self._config = config
        self._client = openai.AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    async def stream(self, prompt: str) -> AsyncIterator[StreamChunk]:
        logger.debug("openai_stream_request", model=self.model_id, prompt_length=len(prompt))
        response = await self._client.chat.completions.create(
            model=self.model_id,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            stream=True,
            stream_options={"include_usage": True},
        )
        async for chunk in response:
            if chunk.choices:
                delta = chunk.choices[0].delta.content
                if delta:
                    yield StreamChunk(text=delta)
            if chunk.usage is not None:
                usage = parse_reported_usage(chunk.usage, Provider.OPENAI)
                if usage is not None:
                    logger.debug("openai_stream_usage", model=self.model_id, usage=usage)
                    yield StreamChunk(usage=usage)

    async def aclose(self) -> None:
        await self._client.close()
