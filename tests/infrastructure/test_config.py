"""Tests for configuration module."""

import dataclasses
import json
import os
import pytest
from unittest.mock import patch

from converge.infrastructure.config import (
    ConvergeConfig,
    ExecutorConfig,
    PipelineConfig,
    ProviderConfig,
    StateConfig,
    TelemetryConfig,
    WebConfig,
    load_config,
)


class TestDefaultConfig:
    def test_defaults(self):
        config = load_config(path="/nonexistent/converge.config.json")
        assert config.log_level == "WARNING"
        assert config.provider.kind == "simulated"
        assert config.provider.registry_path == ".converge-sim.json"
        assert config.executor.concurrency == 4
        assert config.executor.max_attempts == 4
        assert config.state.path == "converge.db"
        assert config.pipeline.concurrency == 2
        assert config.pipeline.build_host == ""
        assert config.web.port == 8080
        assert config.telemetry.endpoint == ""

    def test_all_sections_present(self):
        config = load_config(path="/nonexistent/converge.config.json")
        assert isinstance(config.provider, ProviderConfig)
        assert isinstance(config.executor, ExecutorConfig)
        assert isinstance(config.state, StateConfig)
        assert isinstance(config.pipeline, PipelineConfig)
        assert isinstance(config.web, WebConfig)
        assert isinstance(config.telemetry, TelemetryConfig)


class TestFileConfig:
    def test_load_from_file(self, tmp_path):
        config_file = tmp_path / "converge.config.json"
        config_file.write_text(json.dumps({
            "log_level": "DEBUG",
            "provider": {"kind": "http", "endpoint": "https://cp.example.com"},
            "executor": {"concurrency": 8, "backoff_max": 10.0},
            "state": {"path": "/var/lib/converge/state.db"},
            "web": {"port": 9090, "webhook_secret": "hunter2"},
        }))

        config = load_config(path=str(config_file))
        assert config.log_level == "DEBUG"
        assert config.provider.kind == "http"
        assert config.provider.endpoint == "https://cp.example.com"
        assert config.executor.concurrency == 8
        assert config.executor.backoff_max == 10.0
        assert config.state.path == "/var/lib/converge/state.db"
        assert config.web.port == 9090
        assert config.web.webhook_secret == "hunter2"

    def test_partial_config(self, tmp_path):
        config_file = tmp_path / "converge.config.json"
        config_file.write_text(json.dumps({"web": {"port": 3000}}))

        config = load_config(path=str(config_file))
        assert config.web.port == 3000
        assert config.web.host == "127.0.0.1"
        assert config.executor.concurrency == 4

    def test_unknown_keys_ignored(self, tmp_path):
        config_file = tmp_path / "converge.config.json"
        config_file.write_text(json.dumps({"executor": {"concurrency": 2, "turbo": True}}))

        config = load_config(path=str(config_file))
        assert config.executor.concurrency == 2

    def test_invalid_json_falls_back_to_defaults(self, tmp_path):
        config_file = tmp_path / "converge.config.json"
        config_file.write_text("{not json")

        config = load_config(path=str(config_file))
        assert config == ConvergeConfig()


class TestEnvOverride:
    def test_env_overrides_file(self, tmp_path):
        config_file = tmp_path / "converge.config.json"
        config_file.write_text(json.dumps({"web": {"port": 3000}}))

        with patch.dict(os.environ, {"CONVERGE_WEB_PORT": "9999"}):
            config = load_config(path=str(config_file))
        assert config.web.port == 9999

    def test_env_values_are_typed(self):
        env = {
            "CONVERGE_EXECUTOR_MAX_ATTEMPTS": "6",
            "CONVERGE_EXECUTOR_BACKOFF_INITIAL": "1.5",
            "CONVERGE_TELEMETRY_INSECURE": "true",
            "CONVERGE_PIPELINE_BUILD_HOST": "ci@build.example.com:2222",
            "CONVERGE_LOG_LEVEL": "INFO",
        }
        with patch.dict(os.environ, env):
            config = load_config(path="/nonexistent/converge.config.json")
        assert config.executor.max_attempts == 6
        assert config.executor.backoff_initial == 1.5
        assert config.telemetry.insecure is True
        assert config.pipeline.build_host == "ci@build.example.com:2222"
        assert config.log_level == "INFO"

    def test_declaration_variables_not_treated_as_config(self):
        with patch.dict(os.environ, {"CONVERGE_VAR_REGION": "eu"}):
            config = load_config(path="/nonexistent/converge.config.json")
        assert config == ConvergeConfig()


class TestImmutability:
    def test_frozen(self):
        config = load_config(path="/nonexistent/converge.config.json")
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.log_level = "DEBUG"
