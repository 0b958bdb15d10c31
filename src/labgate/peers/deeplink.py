"""
Deep-link contract for mobile pairing.

The desktop renders a URL carrying `sessionId`, `challenge`, `userIdentifier`, `mode`
and `requireLocation`; the mobile page parses it on load and registers with the relay.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit

from labgate.domain.models import Mode


@dataclass(frozen=True)
class PairingContext:
    session_id: str
    user_identifier: str
    challenge: str
    mode: Mode = Mode.LOGIN
    require_location: bool = False


def new_session_id() -> str:
    return secrets.token_urlsafe(16)


def new_pairing(user_identifier: str, mode: Mode, require_location: bool) -> PairingContext:
    """Pairing with a locally generated session id and challenge."""
    return PairingContext(
        session_id=new_session_id(),
        user_identifier=user_identifier,
        challenge=secrets.token_urlsafe(32),
        mode=Mode(mode),
        require_location=bool(require_location),
    )


def build_deep_link(base_url: str, pairing: PairingContext, *, path: str = "/mobile-auth") -> str:
    query = urlencode(
        {
            "sessionId": pairing.session_id,
            "challenge": pairing.challenge,
            "userIdentifier": pairing.user_identifier,
            "mode": pairing.mode.value,
            "requireLocation": "true" if pairing.require_location else "false",
        }
    )
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}?{query}"


def parse_deep_link(url: str) -> PairingContext:
    """Parse a pairing URL.

    `userEmail` is accepted as a legacy spelling of `userIdentifier`.

    Raises:
        ValueError: If `sessionId`, `challenge` or the user identifier is missing,
            or `mode` is not a known mode.
    """
    params = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items() if v}
    session_id = params.get("sessionId", "").strip()
    challenge = params.get("challenge", "").strip()
    user = (params.get("userIdentifier") or params.get("userEmail") or "").strip()
    missing = [name for name, value in [("sessionId", session_id), ("challenge", challenge), ("userIdentifier", user)] if not value]
    if missing:
        raise ValueError(f"Pairing link is missing: {', '.join(missing)}")
    return PairingContext(
        session_id=session_id,
        user_identifier=user,
        challenge=challenge,
        mode=Mode(params.get("mode", Mode.LOGIN.value)),
        require_location=params.get("requireLocation", "false").lower() == "true",
    )
