"""
config/settings.py — Connection and bridge settings from env vars + YAML.

Priority: config.yaml > ENV > defaults. YAML sections are passed to the
section models as init arguments, which pydantic-settings ranks above env.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("critical", "error", "warning", "info", "debug", "trace")


class OBSSettings(BaseSettings):
    """Everything OBSClient needs to reach one OBS instance."""

    host: str = Field("localhost", description="OBS WebSocket host")
    port: int = Field(4455, ge=1, le=65535, description="OBS WebSocket port")
    password: str = Field("", description="OBS WebSocket password (empty = no auth)")
    timeout: float = Field(5.0, gt=0, description="Seconds allowed for connect + handshake")
    reconnect_delay: float = Field(3.0, ge=0, description="Seconds between reconnect attempts")
    max_reconnect_attempts: int = Field(5, ge=0, description="Max consecutive reconnect attempts (0=never retry)")
    request_timeout: float = Field(10.0, ge=0, description="Seconds to wait for a request response (0=wait forever)")

    model_config = SettingsConfigDict(env_prefix="OBS_")

    @field_validator("host")
    @classmethod
    def _host_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("host must not be empty")
        return v


class APISettings(BaseSettings):
    host: str = Field("127.0.0.1", description="API server bind host")
    port: int = Field(8080, ge=1, le=65535, description="API server port")
    api_key: Optional[str] = Field(None, description="Bearer token for API auth (optional)")
    cors_origins: list[str] = Field(["*"], description="CORS allowed origins")
    log_level: str = Field("info", description="Log level")

    model_config = SettingsConfigDict(env_prefix="API_")

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        v = v.lower()
        if v not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return v


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


class Settings(BaseSettings):
    obs: OBSSettings = Field(default_factory=OBSSettings)
    api: APISettings = Field(default_factory=APISettings)
    config_file: Path = Field(Path("config.yaml"), description="Path to YAML config file")

    model_config = SettingsConfigDict(env_prefix="SWITCHER_")

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Defaults, then env, then the `obs:` / `api:` sections of the YAML file if it exists."""
        path = Path(config_path or os.environ.get("SWITCHER_CONFIG_FILE", "config.yaml"))
        data = _read_yaml(path)
        return cls(
            obs=OBSSettings(**(data.get("obs") or {})),
            api=APISettings(**(data.get("api") or {})),
            config_file=path,
        )

    def to_yaml(self, path: Path) -> None:
        data = {
            "obs": self.obs.model_dump(),
            "api": self.api.model_dump(),
        }
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reload_settings(config_path: Optional[Path] = None) -> Settings:
    global _settings
    _settings = Settings.load(config_path)
    return _settings
