# src/labgate/config/settings.py
"""
Application settings (Pydantic).

Settings are loaded from `src/labgate/config/defaults.yaml`, then optionally overridden by:
- environment variables (e.g., `LABGATE_LOG_LEVEL`, `LABGATE_GEOFENCE_REGISTRY_URL`)
- an external YAML file via `LABGATE_CONFIG_PATH`

Design rule:
- Tuning knobs (heartbeat windows, throttle threshold, timeouts) live in YAML,
  not hard-coded in protocol logic.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from labgate.core.env import load_dotenv_if_present


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `labgate.config`."""
    text = resources.files("labgate.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "LabGate"
    http_timeout_seconds: float = 15
    log_level: str = "INFO"


class RelaySettings(BaseModel):
    public_url: str = "http://localhost:8000"
    websocket_url: str = "ws://localhost:8000/ws/relay"
    mobile_path: str = "/mobile-auth"
    heartbeat_interval_seconds: float = Field(30, gt=0)
    missed_heartbeats: int = Field(2, ge=1)
    session_idle_timeout_seconds: float = Field(300, gt=0)
    closed_retention_seconds: float = Field(600, ge=0)
    sweep_interval_seconds: float = Field(5, gt=0)

    @property
    def heartbeat_idle_limit_seconds(self) -> float:
        return self.heartbeat_interval_seconds * self.missed_heartbeats


class GeofenceSettings(BaseModel):
    throttle_threshold_m: float = Field(15, gt=0)
    registry_path: str | None = "data/geofences.yaml"
    registry_url: str | None = None
    reverify_interval_seconds: float = Field(60, gt=0)
    verify_url: str | None = None


class CredentialSettings(BaseModel):
    rp_id: str = "localhost"
    rp_name: str = "Lab Access System"
    ceremony_timeout_seconds: float = Field(60, gt=0)
    challenge_ttl_seconds: int = Field(300, gt=0)
    challenge_bytes: int = Field(32, ge=16)
    directory_url: str | None = None


class LocationSettings(BaseModel):
    high_accuracy: bool = True
    timeout_seconds: float = Field(15, gt=0)
    maximum_age_seconds: float = Field(30, ge=0)


class RetrySettings(BaseModel):
    max_attempts: int = Field(4, ge=0)
    base_delay_seconds: float = Field(0.5, ge=0)
    max_delay_seconds: float = Field(8.0, ge=0)


class CorsSettings(BaseModel):
    origins: list[str] = Field(default_factory=list)
    allow_local: bool = True


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    geofence: GeofenceSettings = Field(default_factory=GeofenceSettings)
    credentials: CredentialSettings = Field(default_factory=CredentialSettings)
    location: LocationSettings = Field(default_factory=LocationSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    cors: CorsSettings = Field(default_factory=CorsSettings)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small; everything else belongs in YAML.
    """
    load_dotenv_if_present()
    data = dict(data)

    log_level = os.getenv("LABGATE_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    registry_url = os.getenv("LABGATE_GEOFENCE_REGISTRY_URL")
    if registry_url:
        data.setdefault("geofence", {})["registry_url"] = registry_url

    directory_url = os.getenv("LABGATE_CREDENTIAL_DIRECTORY_URL")
    if directory_url:
        data.setdefault("credentials", {})["directory_url"] = directory_url

    relay_url = os.getenv("LABGATE_RELAY_URL")
    if relay_url:
        data.setdefault("relay", {})["websocket_url"] = relay_url

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("LABGATE_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
