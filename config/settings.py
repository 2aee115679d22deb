"""
Central configuration using Pydantic BaseSettings.

Values come from the environment (and .env), optionally overridden by a YAML
config file passed with --config. Validated once at startup (fail-fast).

Usage:
    from config.settings import get_settings, load_settings

    settings = get_settings()
    print(settings.ansible.dir)

    settings = load_settings("/etc/ansible-gateway/config.yaml")

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Union[str, int, float, None]) -> float:
    """
    Convert a duration to seconds.

    Accepts plain numbers (seconds) and Go-style strings such as "10s",
    "2m", "1h30m" or "250ms". Empty values and "0" mean no limit (0.0).
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            if _DURATION_PART.sub("", text) != "":
                raise ValueError(f"invalid duration: {value!r}")
            seconds = sum(
                float(amount) * _DURATION_UNITS[unit]
                for amount, unit in _DURATION_PART.findall(text)
            )
    if seconds < 0:
        raise ValueError(f"duration must not be negative: {value!r}")
    return seconds


# =============================================================================
# Nested Settings Groups
# =============================================================================


class ServerSettings(BaseSettings):
    """HTTP listener configuration."""

    model_config = {"env_prefix": "GATEWAY_", "extra": "ignore"}

    addr: str = "0.0.0.0:8080"
    read_timeout: float = 10.0
    write_timeout: float = 0.0  # 0 = unbounded, register streams can run long
    idle_timeout: float = 120.0

    @field_validator("read_timeout", "write_timeout", "idle_timeout", mode="before")
    @classmethod
    def _parse_duration(cls, v):
        return parse_duration(v)

    @property
    def host(self) -> str:
        host, _, _ = self.addr.rpartition(":")
        return host or "0.0.0.0"

    @property
    def port(self) -> int:
        _, _, port = self.addr.rpartition(":")
        return int(port)


class RedisSettings(BaseSettings):
    """Redis connection configuration for the host lock store."""

    model_config = {"env_prefix": "REDIS_", "extra": "ignore"}

    url: Optional[str] = None
    addr: str = "localhost:6379"
    password: SecretStr = SecretStr("")
    db: int = 0
    socket_timeout: float = 5.0

    @field_validator("socket_timeout", mode="before")
    @classmethod
    def _parse_duration(cls, v):
        return parse_duration(v)

    @property
    def connection_url(self) -> str:
        """Redis URL, built from addr/password/db unless REDIS_URL is set."""
        if self.url:
            return self.url
        password = self.password.get_secret_value()
        auth = f":{password}@" if password else ""
        return f"redis://{auth}{self.addr}/{self.db}"


class AnsibleSettings(BaseSettings):
    """Playbook root, artifact directory and automation deadlines."""

    model_config = {"env_prefix": "GATEWAY_ANSIBLE_", "extra": "ignore"}

    dir: Path = Path("./ansible")
    log_dir: Path = Path("./logs")
    user: str = "root"
    shell: str = "/bin/bash"

    # 0 disables a deadline
    register_timeout: float = 0.0
    hostname_timeout: float = 120.0
    playbook_timeout: float = 0.0

    # Seconds between SIGTERM and SIGKILL when a run is stopped
    kill_grace: float = 5.0

    @field_validator(
        "register_timeout", "hostname_timeout", "playbook_timeout", "kill_grace",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, v):
        return parse_duration(v)


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    server: ServerSettings = None  # type: ignore[assignment]
    redis: RedisSettings = None  # type: ignore[assignment]
    ansible: AnsibleSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment, applying file overrides."""
        for name, settings_cls in (
            ("server", ServerSettings),
            ("redis", RedisSettings),
            ("ansible", AnsibleSettings),
        ):
            current = values.get(name)
            if current is None:
                values[name] = settings_cls()
            elif isinstance(current, dict):
                values[name] = settings_cls(**current)
        return values


# Key spellings of the legacy config.yaml format
_LEGACY_KEYS = {
    "server": {
        "readtimeout": "read_timeout",
        "writetimeout": "write_timeout",
        "idletimeout": "idle_timeout",
    },
    "ansible": {
        "log": "log_dir",
    },
}


def _read_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a mapping")

    config: Dict[str, Any] = {}
    for section, body in data.items():
        section = str(section).lower()
        if isinstance(body, dict):
            renames = _LEGACY_KEYS.get(section, {})
            body = {renames.get(str(k).lower(), str(k).lower()): v for k, v in body.items()}
        config[section] = body
    return config


def load_settings(config_path: Optional[Union[str, Path]] = None) -> AppSettings:
    """
    Build settings from the environment plus an optional YAML file.

    File values win over environment values. Sections: server, redis,
    ansible, plus top-level log_level/log_format/log_file.
    """
    if not config_path:
        return AppSettings()
    return AppSettings(**_read_config_file(config_path))


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
