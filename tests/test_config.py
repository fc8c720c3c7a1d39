"""Tests for configuration loading."""

import os

import pytest
from pydantic import ValidationError

from agent_pipeline.config import (
    AppConfig,
    DatabaseType,
    LogLevel,
    get_config,
    get_testing_config,
    load_config,
    reset_config,
)
from agent_pipeline.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestAppConfig:
    """Test defaults, validation and environment loading."""

    def test_defaults(self):
        config = AppConfig()

        assert config.app_name == "Agent Pipeline Engine"
        assert config.default_max_retries == 2
        assert config.retry_backoff_unit == 1.0
        assert config.database_type == DatabaseType.SQLITE
        assert config.is_sqlite

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AGENT_PIPELINE_PORT", "9000")
        monkeypatch.setenv("AGENT_PIPELINE_DEBUG", "yes")
        monkeypatch.setenv("AGENT_PIPELINE_RETRY_BACKOFF_UNIT", "0.25")
        monkeypatch.setenv("AGENT_PIPELINE_LOG_LEVEL", "debug")
        monkeypatch.setenv("AGENT_PIPELINE_CORS_ORIGINS", "http://a.example,http://b.example")
        monkeypatch.setenv("AGENT_PIPELINE_INVOKER_API_KEY", "secret")

        config = AppConfig.from_env()

        assert config.port == 9000
        assert config.debug is True
        assert config.retry_backoff_unit == 0.25
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["http://a.example", "http://b.example"]
        assert config.invoker_api_key == "secret"

    @pytest.mark.parametrize("field,value", [
        ("port", 0),
        ("database_url", "mongodb://localhost"),
        ("max_concurrent_executions", 0),
        ("retry_backoff_unit", -1.0),
        ("default_max_retries", -1),
        ("invoker_timeout", 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            AppConfig(**{field: value})

    def test_load_config_from_env_file(self, tmp_path):
        env_file = tmp_path / "pipeline.env"
        env_file.write_text("AGENT_PIPELINE_DEFAULT_MAX_RETRIES=4\n")

        try:
            config = load_config(str(env_file))
        finally:
            os.environ.pop("AGENT_PIPELINE_DEFAULT_MAX_RETRIES", None)

        assert config.default_max_retries == 4
        assert get_config() is config

    def test_load_config_rejects_invalid_env(self, monkeypatch):
        monkeypatch.setenv("AGENT_PIPELINE_PORT", "not-a-port")

        with pytest.raises(ConfigurationError) as exc_info:
            load_config()

        assert exc_info.value.error_code == "ConfigurationError"
        assert "not-a-port" in exc_info.value.message

    def test_uvicorn_config(self):
        server_config = AppConfig(host="127.0.0.1", port=8080).get_uvicorn_config()

        assert server_config["host"] == "127.0.0.1"
        assert server_config["port"] == 8080
        assert server_config["log_level"] == "info"

    def test_testing_config(self):
        config = get_testing_config()
        assert config.retry_backoff_unit == 0.0
        assert config.database_url == "sqlite:///:memory:"
