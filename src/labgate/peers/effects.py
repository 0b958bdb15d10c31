"""
Side effects requested by the peer state machines.

Transition functions are pure: they return the next state plus a list of these
effect values, and the peer driver performs them (send a frame, show the pairing
code, run the passkey ceremony, read the device location).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from labgate.domain.models import Mode


@dataclass(frozen=True)
class SendFrame:
    frame: dict[str, Any] = field(hash=False)


@dataclass(frozen=True)
class RenderPairing:
    """Show the deep link (as a QR code on a real desktop)."""

    session_id: str
    deep_link: str


@dataclass(frozen=True)
class RunCeremony:
    mode: Mode
    user_identifier: str
    challenge: str


@dataclass(frozen=True)
class CaptureLocation:
    high_accuracy: bool = True
    timeout_seconds: float = 15
    maximum_age_seconds: float = 30


Effect = Union[SendFrame, RenderPairing, RunCeremony, CaptureLocation]
