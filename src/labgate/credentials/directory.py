"""
Credential Directory adapters.

The directory is the external identity store behind WebAuthn. The relay never talks
to it; the mobile peer's challenge handler does, to verify an assertion (login) or to
bind a newly created passkey to the user (registration).
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

import httpx

from labgate.config.settings import Settings
from labgate.core.http import post_json
from labgate.core.retry import RetryPolicy

logger = logging.getLogger(__name__)


class CredentialDirectory(Protocol):
    def verify_assertion(self, user_identifier: str, challenge: str, assertion: dict[str, Any]) -> bool:
        """Return True when `assertion` answers `challenge` with a credential bound to the user."""
        ...

    def bind_device(self, user_identifier: str, challenge: str, attestation: dict[str, Any]) -> None:
        """Bind the credential described by `attestation` to the user."""
        ...


class InMemoryCredentialDirectory:
    """Directory kept in process memory (development and tests).

    Only checks that the credential is bound to the user and that the assertion echoes
    the challenge; signature verification belongs to a real directory service.
    """

    def __init__(self, bindings: dict[str, set[str]] | None = None):
        self._bindings: dict[str, set[str]] = {k.lower(): set(v) for k, v in (bindings or {}).items()}
        self._lock = threading.Lock()

    def credentials_for(self, user_identifier: str) -> set[str]:
        with self._lock:
            return set(self._bindings.get(user_identifier.lower(), set()))

    def verify_assertion(self, user_identifier: str, challenge: str, assertion: dict[str, Any]) -> bool:
        credential_id = assertion.get("credentialId")
        if not credential_id or assertion.get("challenge") != challenge:
            return False
        return credential_id in self.credentials_for(user_identifier)

    def bind_device(self, user_identifier: str, challenge: str, attestation: dict[str, Any]) -> None:
        credential_id = attestation.get("credentialId")
        if not credential_id:
            raise ValueError("attestation is missing credentialId")
        with self._lock:
            self._bindings.setdefault(user_identifier.lower(), set()).add(str(credential_id))
        logger.info("Bound credential to user=%s", user_identifier)


class HttpCredentialDirectory:
    """Directory backed by an HTTP identity service.

    Endpoints (relative to `base_url`):
    - POST `/assertions/verify` -> `{"verified": bool}`
    - POST `/devices` -> any 2xx
    """

    def __init__(self, base_url: str, *, retry: RetryPolicy, timeout_seconds: float = 15):
        self._base_url = base_url.rstrip("/")
        self._retry = retry
        self._timeout_seconds = timeout_seconds

    def verify_assertion(self, user_identifier: str, challenge: str, assertion: dict[str, Any]) -> bool:
        payload = {"userIdentifier": user_identifier, "challenge": challenge, "assertion": assertion}
        resp = self._retry.run(
            lambda: post_json(
                f"{self._base_url}/assertions/verify",
                payload=payload,
                timeout_seconds=self._timeout_seconds,
            ),
            label="credential assertion verify",
        )
        return bool((resp or {}).get("verified", False))

    def bind_device(self, user_identifier: str, challenge: str, attestation: dict[str, Any]) -> None:
        payload = {"userIdentifier": user_identifier, "challenge": challenge, "attestation": attestation}
        self._retry.run(
            lambda: post_json(
                f"{self._base_url}/devices",
                payload=payload,
                timeout_seconds=self._timeout_seconds,
            ),
            label="credential device bind",
        )


def build_credential_directory(settings: Settings) -> CredentialDirectory:
    if settings.credentials.directory_url:
        return HttpCredentialDirectory(
            settings.credentials.directory_url,
            retry=RetryPolicy.from_settings(settings.retry, retry_on=(httpx.TransportError,)),
            timeout_seconds=settings.app.http_timeout_seconds,
        )
    logger.warning("No credential directory URL configured; using an in-memory directory.")
    return InMemoryCredentialDirectory()
