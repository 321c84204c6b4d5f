"""
Configuration Module

Architectural Intent:
- Centralized configuration loading from a JSON file
- Provides typed access to all converge settings
- Falls back to sensible defaults when the config file is absent
- Environment variables override file-based config

Design Decisions:
- Config is a frozen dataclass for immutability after load
- Nested config sections map to sub-dataclasses
- The config is handed explicitly to the executors and adapters; nothing
  reads it from process-wide state
"""

from __future__ import annotations
import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import json
import logging
import os

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "converge.config.json"


@dataclass(frozen=True)
class ProviderConfig:
    """Control plane connection."""
    kind: str = "simulated"  # "simulated" or "http"
    endpoint: str = ""
    api_token: str = ""
    project: str = "default"
    timeout_seconds: float = 30.0
    registry_path: str = ".converge-sim.json"  # simulated provider only; "" keeps it in memory


@dataclass(frozen=True)
class ExecutorConfig:
    """Apply executor limits and retry policy."""
    concurrency: int = 4
    max_attempts: int = 4
    backoff_initial: float = 0.5
    backoff_multiplier: float = 2.0
    backoff_max: float = 30.0
    default_timeout_seconds: float = 300.0


@dataclass(frozen=True)
class StateConfig:
    """Persisted state location."""
    path: str = "converge.db"


@dataclass(frozen=True)
class PipelineConfig:
    """Build pipeline execution."""
    concurrency: int = 2
    workdir: str = "."
    build_host: str = ""  # user@host[:port]; enables the "remote" action kind
    ssh_key_path: str = ""


@dataclass(frozen=True)
class WebConfig:
    """Webhook and status server configuration."""
    host: str = "127.0.0.1"
    port: int = 8080
    webhook_secret: str = ""


@dataclass(frozen=True)
class TelemetryConfig:
    """OpenTelemetry configuration."""
    endpoint: str = ""
    insecure: bool = False


@dataclass(frozen=True)
class ConvergeConfig:
    """Root configuration for the converge application."""
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    state: StateConfig = field(default_factory=StateConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    web: WebConfig = field(default_factory=WebConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    log_level: str = "WARNING"


_SCALAR_KEYS = ("log_level",)


def _env_override(data: dict, prefix: str = "CONVERGE") -> dict:
    """Override config values with environment variables.

    Environment variables follow the pattern CONVERGE_SECTION_KEY.
    For example: CONVERGE_WEB_PORT=9090, CONVERGE_EXECUTOR_MAX_ATTEMPTS=6.
    CONVERGE_VAR_* is reserved for declaration variables and skipped here.
    """
    for key, value in os.environ.items():
        if not key.startswith(f"{prefix}_"):
            continue
        rest = key[len(prefix) + 1:].lower()
        if rest.startswith("var_"):
            continue
        if rest in _SCALAR_KEYS:
            data[rest] = value
            continue
        parts = rest.split("_", 1)
        if len(parts) == 2:
            section, field_name = parts
            if not isinstance(data.get(section), dict):
                data[section] = {}
            data[section][field_name] = value
    return data


def _parse_config_file(path: Path) -> dict:
    """Parse a JSON config file. Returns empty dict on failure."""
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        logger.debug("Config file not found: %s", path)
        return {}
    except json.JSONDecodeError as e:
        logger.warning("Invalid config file %s: %s", path, e)
        return {}


def _build_sub_config(cls, data: dict):
    """Build a sub-config dataclass from a dict, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    # Environment values arrive as strings
    for f in dataclasses.fields(cls):
        if f.name in filtered and isinstance(filtered[f.name], str):
            if f.type == "int":
                filtered[f.name] = int(filtered[f.name])
            elif f.type == "float":
                filtered[f.name] = float(filtered[f.name])
            elif f.type == "bool":
                filtered[f.name] = filtered[f.name].lower() in ("true", "1", "yes")

    return cls(**filtered)


def load_config(
    path: Optional[str] = None,
    env_prefix: str = "CONVERGE",
) -> ConvergeConfig:
    """Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (CONVERGE_SECTION_KEY)
    2. Config file values
    3. Defaults

    Args:
        path: Path to config file (JSON). Defaults to converge.config.json in CWD.
        env_prefix: Environment variable prefix. Defaults to CONVERGE.
    """
    config_path = Path(path) if path else Path(DEFAULT_CONFIG_FILE)
    data = _parse_config_file(config_path)
    data = _env_override(data, env_prefix)

    return ConvergeConfig(
        provider=_build_sub_config(ProviderConfig, data.get("provider", {})),
        executor=_build_sub_config(ExecutorConfig, data.get("executor", {})),
        state=_build_sub_config(StateConfig, data.get("state", {})),
        pipeline=_build_sub_config(PipelineConfig, data.get("pipeline", {})),
        web=_build_sub_config(WebConfig, data.get("web", {})),
        telemetry=_build_sub_config(TelemetryConfig, data.get("telemetry", {})),
        log_level=data.get("log_level", "WARNING"),
    )
