"""
Geofence Registry adapters.

The registry is an external collaborator: per account it provides the facility's
reference coordinate and configured radius. The protocol only reads it.

Two adapters are provided:
- `StaticGeofenceRegistry`: a local YAML/JSON file mapping account -> GeofenceSpec
  (default: `data/geofences.yaml`), used in development and tests.
- `HttpGeofenceRegistry`: fetches `GET {base_url}/{account_id}` from a lab-records
  service, with bounded retry on transport errors.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Protocol
from urllib.parse import quote

import httpx
import yaml
from pydantic import TypeAdapter

from labgate.config.settings import Settings
from labgate.core.env import resolve_project_path
from labgate.core.http import get_json
from labgate.core.retry import RetryPolicy
from labgate.domain.models import GeofenceSpec

logger = logging.getLogger(__name__)

_REGISTRY_ADAPTER = TypeAdapter(dict[str, GeofenceSpec])


class GeofenceRegistry(Protocol):
    def get_geofence(self, account_id: str) -> GeofenceSpec | None:
        """Return the account's geofence, or None when none is configured."""
        ...


def _normalize_account(account_id: str) -> str:
    return account_id.strip().lower()


class StaticGeofenceRegistry:
    """In-memory registry, optionally loaded from a file."""

    def __init__(self, specs: Mapping[str, GeofenceSpec] | None = None):
        self._specs: dict[str, GeofenceSpec] = {
            _normalize_account(k): v for k, v in (specs or {}).items()
        }

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticGeofenceRegistry":
        """Load and validate a registry file (YAML or JSON mapping)."""
        resolved = resolve_project_path(path)
        text = resolved.read_text(encoding="utf-8")
        if resolved.suffix.lower() == ".json":
            payload: Any = json.loads(text)
        else:
            payload = yaml.safe_load(text) or {}
        if not isinstance(payload, dict):
            raise ValueError(f"Invalid geofence registry root in {resolved}; expected a mapping.")
        specs = _REGISTRY_ADAPTER.validate_python(payload)
        logger.info("Loaded %s geofence(s) from %s", len(specs), resolved)
        return cls(specs)

    def set_geofence(self, account_id: str, spec: GeofenceSpec) -> None:
        self._specs[_normalize_account(account_id)] = spec

    def get_geofence(self, account_id: str) -> GeofenceSpec | None:
        return self._specs.get(_normalize_account(account_id))


class HttpGeofenceRegistry:
    """Registry backed by an HTTP lab-records service."""

    def __init__(self, base_url: str, *, retry: RetryPolicy, timeout_seconds: float = 15):
        self._base_url = base_url.rstrip("/")
        self._retry = retry
        self._timeout_seconds = timeout_seconds

    def _fetch(self, account_id: str) -> Any:
        url = f"{self._base_url}/{quote(_normalize_account(account_id), safe='')}"
        try:
            return get_json(url, timeout_seconds=self._timeout_seconds)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise

    def get_geofence(self, account_id: str) -> GeofenceSpec | None:
        """Fetch an account's geofence.

        Raises:
            httpx.HTTPError: When the service stays unreachable after retries.
        """
        payload = self._retry.run(lambda: self._fetch(account_id), label="geofence registry lookup")
        if not payload:
            return None
        return GeofenceSpec.model_validate(payload)


def build_geofence_registry(settings: Settings) -> GeofenceRegistry:
    """Pick the registry adapter from settings (URL wins over local file)."""
    if settings.geofence.registry_url:
        return HttpGeofenceRegistry(
            settings.geofence.registry_url,
            retry=RetryPolicy.from_settings(settings.retry, retry_on=(httpx.TransportError,)),
            timeout_seconds=settings.app.http_timeout_seconds,
        )
    if settings.geofence.registry_path and resolve_project_path(settings.geofence.registry_path).is_file():
        return StaticGeofenceRegistry.from_file(settings.geofence.registry_path)
    logger.warning("No geofence registry configured; every account will be denied admission.")
    return StaticGeofenceRegistry()
