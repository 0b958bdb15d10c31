"""
Credential Challenge Handler.

Issues WebAuthn-style challenges and runs the passkey ceremony on the mobile peer:
- `mode=login`: request an assertion from the platform authenticator and have the
  Credential Directory verify it against the challenge.
- `mode=registration`: create a new platform credential and bind it to the user.

The resulting `authPayload` is opaque to the relay; it is forwarded to the desktop.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Protocol

import httpx

from labgate.config.settings import CredentialSettings
from labgate.core.errors import CredentialError
from labgate.credentials.directory import CredentialDirectory
from labgate.domain.models import Mode

logger = logging.getLogger(__name__)


class Authenticator(Protocol):
    """Platform passkey API (`navigator.credentials` on a phone).

    Implementations raise `CredentialError` with the platform-reported reason
    (`NotAllowed`, `InvalidState`, `NotSupported`).
    """

    def get_assertion(
        self, *, challenge: str, rp_id: str, user_identifier: str, timeout_seconds: float
    ) -> dict[str, Any]: ...

    def create_credential(
        self,
        *,
        challenge: str,
        rp_id: str,
        rp_name: str,
        user_identifier: str,
        timeout_seconds: float,
    ) -> dict[str, Any]: ...


@dataclass(frozen=True)
class IssuedChallenge:
    user_identifier: str
    mode: Mode
    expires_at_unix: float


_DIRECTORY_ERRORS = (httpx.HTTPError, OSError, ValueError)


@contextmanager
def _directory_call(user_identifier: str) -> Iterator[None]:
    """Report a failed directory round-trip as a verification failure."""
    try:
        yield
    except _DIRECTORY_ERRORS as exc:
        logger.warning("Credential directory call failed for user=%s", user_identifier, exc_info=True)
        raise CredentialError("VerificationFailed", "Passkey could not be verified right now") from exc


class CredentialChallengeHandler:
    def __init__(self, directory: CredentialDirectory, settings: CredentialSettings | None = None):
        self._directory = directory
        self._settings = settings or CredentialSettings()
        self._issued: dict[str, IssuedChallenge] = {}
        self._lock = threading.Lock()

    def issue_challenge(self, user_identifier: str, mode: Mode) -> str:
        """Create a single-use, URL-safe challenge bound to the user."""
        challenge = secrets.token_urlsafe(self._settings.challenge_bytes)
        expires = time.time() + self._settings.challenge_ttl_seconds
        with self._lock:
            self._prune(time.time())
            self._issued[challenge] = IssuedChallenge(user_identifier.lower(), Mode(mode), expires)
        logger.debug("Issued %s challenge for user=%s", Mode(mode).value, user_identifier)
        return challenge

    def _prune(self, now: float) -> None:
        for key in [k for k, v in self._issued.items() if v.expires_at_unix < now]:
            del self._issued[key]

    def _consume(self, challenge: str, user_identifier: str) -> None:
        """Consume a challenge this handler issued.

        Challenges issued elsewhere pass through; the directory is the authority for them.
        """
        with self._lock:
            issued = self._issued.pop(challenge, None)
        if issued is None:
            return
        if issued.expires_at_unix < time.time():
            raise CredentialError("NotAllowed", "Challenge expired; start a new pairing session")
        if issued.user_identifier != user_identifier.lower():
            raise CredentialError("VerificationFailed", "Challenge was issued for a different account")

    def perform_ceremony(
        self,
        authenticator: Authenticator,
        *,
        user_identifier: str,
        challenge: str,
        mode: Mode,
    ) -> dict[str, Any]:
        """Run the passkey ceremony and return the `authPayload` for the relay.

        Raises:
            CredentialError: On platform failure, when the directory rejects the result,
                or when the directory cannot be reached.
        """
        mode = Mode(mode)
        self._consume(challenge, user_identifier)
        if mode is Mode.REGISTRATION:
            attestation = authenticator.create_credential(
                challenge=challenge,
                rp_id=self._settings.rp_id,
                rp_name=self._settings.rp_name,
                user_identifier=user_identifier,
                timeout_seconds=self._settings.ceremony_timeout_seconds,
            )
            with _directory_call(user_identifier):
                self._directory.bind_device(user_identifier, challenge, attestation)
            credential_id = attestation.get("credentialId")
            kind = "registration"
        else:
            assertion = authenticator.get_assertion(
                challenge=challenge,
                rp_id=self._settings.rp_id,
                user_identifier=user_identifier,
                timeout_seconds=self._settings.ceremony_timeout_seconds,
            )
            with _directory_call(user_identifier):
                verified = self._directory.verify_assertion(user_identifier, challenge, assertion)
            if not verified:
                logger.warning("Assertion rejected by directory for user=%s", user_identifier)
                raise CredentialError("VerificationFailed")
            credential_id = assertion.get("credentialId")
            kind = "authentication"

        logger.info("Passkey %s succeeded for user=%s", kind, user_identifier)
        return {
            "type": kind,
            "success": True,
            "credentialId": credential_id,
            "userIdentifier": user_identifier,
            "challenge": challenge,
        }
