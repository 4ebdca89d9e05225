"""
Configuration loader for the clickbot delivery pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class RedisConfig:
    url: str = "redis://localhost:6379/0"
    max_connections: int = 20


@dataclass
class TelegramConfig:
    bot_token: str = ""
    api_base_url: str = "https://api.telegram.org"
    timeout: float = 10.0


@dataclass
class QueueConfig:
    backend: str = "memory"                    # "memory" for dev, "redis" for production
    name: str = "telegram-queue"               # redis key prefix
    concurrency: int = 10                      # worker tasks per process
    max_attempts: int = 3
    retry_backoff_base_ms: int = 2000          # delay = base * 2^(attempt-1)
    channel_tracking_ttl_seconds: int = 300
    lease_timeout_ms: int = 30000              # stalled-job threshold
    dispatch_rate_limit: int = 28              # external calls per window, whole pool
    dispatch_rate_window: float = 1.0
    poll_interval: float = 0.1                 # idle worker sleep between claims
    maintenance_interval: float = 1.0          # stalled scan + load check
    broadcast_chunk_size: int = 30
    broadcast_chunk_delay_ms: int = 1000
    completed_retention_seconds: int = 3600
    heavy_load_threshold: int = 100            # waiting jobs before shedding
    warn_waiting: int = 1000
    warn_delayed: int = 500


@dataclass
class RateLimitConfig:
    backend: str = "memory"
    max_clicks_per_second: int = 10
    window_seconds: int = 1
    global_limit_per_second: int = 30
    chat_limit_per_second: int = 20


@dataclass
class Settings:
    app_name: str = "clickbot"
    debug: bool = False
    redis: RedisConfig = field(default_factory=RedisConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


_settings: Optional[Settings] = None

_SECTIONS = {
    "redis": RedisConfig,
    "telegram": TelegramConfig,
    "queue": QueueConfig,
    "rate_limit": RateLimitConfig,
}


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CLICKBOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        for name, cls in _SECTIONS.items():
            if name in raw:
                setattr(settings, name, _section(cls, raw[name]))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
