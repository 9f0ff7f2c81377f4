"""Tests for backend construction and provider stream translation.

Provider SDK clients are constructed but never reach the network; their
streaming calls are replaced with local fakes.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from twinstream.backends.factory import ProviderBackendFactory
from twinstream.backends.openai_backend import OpenAIBackend
from twinstream.config import AppConfig, ProviderConfig
from twinstream.core.catalog import ModelRegistry, TokenUsage
from twinstream.core.errors import BackendError
from twinstream.core.types import Provider


@pytest.fixture
def catalog() -> ModelRegistry:
    return ModelRegistry()


class FakeCompletionStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk


def openai_chunk(text=None, usage=None):
    choices = [] if text is None else [SimpleNamespace(delta=SimpleNamespace(content=text))]
    return SimpleNamespace(choices=choices, usage=usage)


class TestProviderBackendFactory:
    @pytest.mark.parametrize(
        "model_id, message",
        [("gpt-4o", "OPENAI_API_KEY is not set"), ("claude-3-5-haiku-20241022", "ANTHROPIC_API_KEY is not set")],
    )
    def test_missing_key(self, catalog, model_id, message):
        factory = ProviderBackendFactory(AppConfig())
        with pytest.raises(BackendError, match=message) as info:
            factory(catalog.require(model_id))
        assert info.value.model_id == model_id

    def test_selects_backend_by_provider(self, catalog):
        config = AppConfig(
            openai=ProviderConfig(api_key="sk-test"), anthropic=ProviderConfig(api_key="sk-ant-test")
        )
        factory = ProviderBackendFactory(config)
        assert isinstance(factory(catalog.require("gpt-4o-mini")), OpenAIBackend)
        claude = factory(catalog.require("claude-3-5-haiku-20241022"))
        assert claude.model_id == "claude-3-5-haiku-20241022"
        assert claude.descriptor.provider == Provider.ANTHROPIC


class TestOpenAIBackend:
    async def test_translates_deltas_and_usage(self, catalog):
        backend = OpenAIBackend(catalog.require("gpt-4o-mini"), ProviderConfig(api_key="sk-test"))
        requests = []

        async def fake_create(**kwargs):
            requests.append(kwargs)
            return FakeCompletionStream(
                [
                    openai_chunk("Hi"),
                    openai_chunk(""),
                    openai_chunk(" there"),
                    openai_chunk(usage=SimpleNamespace(prompt_tokens=9, completion_tokens=2)),
                ]
            )

        backend._client.chat.completions.create = fake_create
        chunks = [c async for c in backend.stream("Say hi")]
        await backend.aclose()

        assert [c.text for c in chunks if c.text] == ["Hi", " there"]
        assert chunks[-1].usage == TokenUsage(input=9, output=2)
        assert requests[0]["stream"] is True
        assert requests[0]["messages"] == [{"role": "user", "content": "Say hi"}]

