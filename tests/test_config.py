"""Tests for configuration loading."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from twinstream.config import AppConfig, load_config


def write(tmp_path, text: str):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml", tmp_path / ".env")

    def test_empty_file_gives_defaults(self, tmp_path):
        config = load_config(write(tmp_path, ""), tmp_path / ".env")
        assert config == AppConfig()
        assert config.engine.channel_buffer == 256
        assert config.defaults.model1 == "gpt-4o-mini"
        assert config.retention.enabled is False

    def test_env_interpolation(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TS_TEST_OPENAI_KEY", "sk-test")
        path = write(
            tmp_path,
            "openai:\n  api_key: ${TS_TEST_OPENAI_KEY}\n"
            "anthropic:\n  api_key: ${TS_TEST_UNSET_KEY}\n",
        )
        config = load_config(path, tmp_path / ".env")
        assert config.openai.api_key == "sk-test"
        assert config.anthropic.api_key is None

    def test_dotenv_file_loaded(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TS_TEST_DOTENV_KEY", raising=False)
        env = tmp_path / ".env"
        env.write_text("TS_TEST_DOTENV_KEY=from-dotenv\n", encoding="utf-8")
        path = write(tmp_path, "anthropic:\n  api_key: ${TS_TEST_DOTENV_KEY}\n")
        try:
            config = load_config(path, env)
        finally:
            monkeypatch.delenv("TS_TEST_DOTENV_KEY", raising=False)
        assert config.anthropic.api_key == "from-dotenv"

    def test_data_dir_reference(self, tmp_path):
        path = write(tmp_path, "data_dir: /srv/ts\nstorage:\n  db_path: ${data_dir}/h.db\n")
        config = load_config(path, tmp_path / ".env")
        assert config.storage.db_path == "/srv/ts/h.db"

    def test_engine_and_models_sections(self, tmp_path):
        path = write(
            tmp_path,
            """
engine:
  request_timeout: 30
  backend_timeout: 5
  channel_buffer: 4
models:
  - id: gpt-local
    display_name: Local
    provider: openai
    input_price_per_1k: 0.0
    output_price_per_1k: 0.0
""",
        )
        config = load_config(path, tmp_path / ".env")
        assert config.engine.request_timeout == 30
        assert config.engine.channel_buffer == 4
        assert config.models[0].id == "gpt-local"

    def test_invalid_values_rejected(self, tmp_path):
        with pytest.raises(PydanticValidationError):
            load_config(write(tmp_path, "engine:\n  channel_buffer: 0\n"), tmp_path / ".env")
        with pytest.raises(PydanticValidationError):
            load_config(write(tmp_path, "log_format: xml\n"), tmp_path / ".env")
        with pytest.raises(PydanticValidationError):
            load_config(
                write(
                    tmp_path,
                    "models:\n  - {id: x, display_name: X, provider: google,"
                    " input_price_per_1k: 1, output_price_per_1k: 1}\n",
                ),
                tmp_path / ".env",
            )
