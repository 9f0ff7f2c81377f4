"""Resolve a model descriptor to a concrete streaming backend."""

from __future__ import annotations

from typing import Callable

from twinstream.backends.base import ModelBackend
from twinstream.config import AppConfig
from twinstream.core.catalog import ModelDescriptor
from twinstream.core.errors import BackendError
from twinstream.core.types import Provider

BackendFactory = Callable[[ModelDescriptor], ModelBackend]


class ProviderBackendFactory:
    """Builds a fresh backend per slot from the provider sections of the config."""

    def __init__(self, config: AppConfig):
        self._config = config

    def __call__(self, descriptor: ModelDescriptor) -> ModelBackend:
        match descriptor.provider:
            case Provider.OPENAI:
                from twinstream.backends.openai_backend import OpenAIBackend

                return OpenAIBackend(descriptor, self._config.openai)
            case Provider.ANTHROPIC:
                from twinstream.backends.anthropic_backend import AnthropicBackend

                return AnthropicBackend(descriptor, self._config.anthropic)
            case _:
                raise BackendError(
                    f"Unknown provider: {descriptor.provider}", model_id=descriptor.id
                )
