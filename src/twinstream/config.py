"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


class ProviderConfig(BaseModel):
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_retries: int = 2
    timeout: int = 120
    max_tokens: int = 4000
    temperature: float = 0.7

    @field_validator("api_key", "base_url")
    @classmethod
    def _drop_unresolved(cls, v: Optional[str]) -> Optional[str]:
        # "${OPENAI_API_KEY}" left over when the variable is not set
        if v is None or not v.strip() or _ENV_VAR_PATTERN.fullmatch(v.strip()):
            return None
        return v


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    allowed_origins: list[str] = Field(default_factory=lambda: ["*"])


class StorageConfig(BaseModel):
    db_path: str = "./data/twinstream.db"


class EngineConfig(BaseModel):
    request_timeout: float = 300.0  # wall-clock budget for one comparison
    backend_timeout: float = 60.0  # max wait for the next increment of one backend
    channel_buffer: int = Field(default=256, ge=1)
    max_prompt_length: int = Field(default=10_000, ge=1)
    prefer_reported_usage: bool = True
    flush_timeout: float = 1.0  # max wait for the sink per event once a run is aborted


class RetentionConfig(BaseModel):
    enabled: bool = False
    timezone: str = "UTC"
    hour: int = Field(default=3, ge=0, le=23)
    older_than_days: Optional[int] = 30
    keep_count: Optional[int] = None


class DefaultModels(BaseModel):
    model1: str = "gpt-4o-mini"
    model2: str = "claude-3-5-haiku-20241022"


class ModelEntry(BaseModel):
    """Catalog override entry; replaces or adds a model descriptor."""

    id: str
    display_name: str
    provider: Literal["openai", "anthropic"]
    input_price_per_1k: float = Field(ge=0)
    output_price_per_1k: float = Field(ge=0)
    max_context: int = Field(default=128_000, gt=0)
    supports_streaming: bool = True


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    data_dir: str = "./data"
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    defaults: DefaultModels = Field(default_factory=DefaultModels)
    models: list[ModelEntry] = Field(default_factory=list)


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced by other values as ${data_dir}
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
