"""
Mobile peer state machine.

States: Ready -> Authenticating -> AwaitingLocationRequest -> CapturingLocation
-> Reporting -> Completed | Failed.

The mobile peer never reads or sends its location before the relay asks for it:
`CaptureLocation` is only ever produced by a `LocationRequested` event received in
AwaitingLocationRequest.

Local failures (passkey ceremony, device location) end the flow in `Failed` and are
reported to the relay with an `error` frame; nothing is retried automatically.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Union

from pydantic import ValidationError

from labgate.config.settings import LocationSettings
from labgate.core.errors import CredentialError, LocationError
from labgate.credentials.challenge import Authenticator, CredentialChallengeHandler
from labgate.domain.models import GeofenceDecision, LocationSample
from labgate.peers.deeplink import PairingContext
from labgate.peers.effects import CaptureLocation, Effect, RunCeremony, SendFrame
from labgate.relay import messages as m

logger = logging.getLogger(__name__)

TRANSPORT_CLOSED = "TRANSPORT_CLOSED"


class LocationProvider(Protocol):
    """Device geolocation (`navigator.geolocation` on a phone).

    Raises `LocationPermissionDenied`, `LocationUnavailable` or `LocationTimeout`.
    """

    def current_location(
        self, *, high_accuracy: bool, timeout_seconds: float, maximum_age_seconds: float
    ) -> LocationSample: ...


# -- states ----------------------------------------------------------------------


@dataclass(frozen=True)
class Ready:
    pairing: PairingContext


@dataclass(frozen=True)
class Authenticating:
    pairing: PairingContext


@dataclass(frozen=True)
class AwaitingLocationRequest:
    pairing: PairingContext


@dataclass(frozen=True)
class CapturingLocation:
    pairing: PairingContext


@dataclass(frozen=True)
class Reporting:
    pairing: PairingContext
    sample: LocationSample


@dataclass(frozen=True)
class Completed:
    pairing: PairingContext
    decision: GeofenceDecision | None = None


@dataclass(frozen=True)
class Failed:
    pairing: PairingContext
    code: str
    reason: str
    message: str = ""


MobileState = Union[Ready, Authenticating, AwaitingLocationRequest, CapturingLocation, Reporting, Completed, Failed]


# -- events ----------------------------------------------------------------------


@dataclass(frozen=True)
class Loaded:
    """The pairing page finished loading."""


@dataclass(frozen=True)
class UserConfirmed:
    """The user tapped "authenticate"."""


@dataclass(frozen=True)
class CeremonySucceeded:
    auth_payload: dict[str, Any] = field(hash=False)


@dataclass(frozen=True)
class CeremonyFailed:
    reason: str
    message: str = ""


@dataclass(frozen=True)
class LocationRequested:
    pass


@dataclass(frozen=True)
class LocationCaptured:
    sample: LocationSample


@dataclass(frozen=True)
class LocationFailed:
    code: str
    reason: str
    message: str = ""


@dataclass(frozen=True)
class DecisionPushed:
    decision: GeofenceDecision


@dataclass(frozen=True)
class RelayErrorReported:
    code: str
    message: str = ""


@dataclass(frozen=True)
class TransportClosed:
    pass


MobileEvent = Union[
    Loaded,
    UserConfirmed,
    CeremonySucceeded,
    CeremonyFailed,
    LocationRequested,
    LocationCaptured,
    LocationFailed,
    DecisionPushed,
    RelayErrorReported,
    TransportClosed,
]


# -- transitions -------------------------------------------------------------------


def _error(pairing: PairingContext, code: str, message: str) -> SendFrame:
    return SendFrame(m.envelope(m.CLIENT_ERROR, {"code": code, "message": message, "sessionId": pairing.session_id}))


def transition(
    state: MobileState,
    event: MobileEvent,
    *,
    location: LocationSettings | None = None,
) -> tuple[MobileState, list[Effect]]:
    """Apply one event. Events that do not apply to `state` leave it unchanged."""
    if isinstance(state, (Completed, Failed)):
        return state, []

    pairing = state.pairing

    if isinstance(event, RelayErrorReported):
        return Failed(pairing, event.code, "RelayError", event.message), []
    if isinstance(event, TransportClosed):
        return Failed(pairing, TRANSPORT_CLOSED, "TransportClosed", "Connection lost. Please try again."), []

    if isinstance(state, Ready):
        if isinstance(event, Loaded):
            frame = m.envelope(
                m.REGISTER_MOBILE,
                {
                    "sessionId": pairing.session_id,
                    "userIdentifier": pairing.user_identifier,
                    "challenge": pairing.challenge,
                },
            )
            return state, [SendFrame(frame)]
        if isinstance(event, UserConfirmed):
            return Authenticating(pairing), [
                RunCeremony(mode=pairing.mode, user_identifier=pairing.user_identifier, challenge=pairing.challenge)
            ]
        return state, []

    if isinstance(state, Authenticating):
        if isinstance(event, CeremonySucceeded):
            frame = m.envelope(m.AUTH_RESULT, {"sessionId": pairing.session_id, "authPayload": event.auth_payload})
            if pairing.require_location:
                return AwaitingLocationRequest(pairing), [SendFrame(frame)]
            return Completed(pairing), [SendFrame(frame)]
        if isinstance(event, CeremonyFailed):
            message = event.message or CredentialError(event.reason).message
            return Failed(pairing, CredentialError.code, event.reason, message), [
                _error(pairing, CredentialError.code, message)
            ]
        return state, []

    if isinstance(state, AwaitingLocationRequest):
        if isinstance(event, LocationRequested):
            loc = location or LocationSettings()
            return CapturingLocation(pairing), [
                CaptureLocation(
                    high_accuracy=loc.high_accuracy,
                    timeout_seconds=loc.timeout_seconds,
                    maximum_age_seconds=loc.maximum_age_seconds,
                )
            ]
        return state, []

    if isinstance(state, CapturingLocation):
        if isinstance(event, LocationCaptured):
            frame = m.envelope(
                m.LOCATION_RESULT, {"sessionId": pairing.session_id, "sample": event.sample.to_wire()}
            )
            return Reporting(pairing, event.sample), [SendFrame(frame)]
        if isinstance(event, LocationFailed):
            return Failed(pairing, event.code, event.reason, event.message), [
                _error(pairing, event.code, event.message)
            ]
        return state, []

    if isinstance(state, Reporting):
        if isinstance(event, DecisionPushed):
            return Completed(pairing, event.decision), []
        return state, []

    return state, []


def event_from_frame(frame: dict[str, Any]) -> MobileEvent | None:
    """Translate a relay frame into a mobile event (None for frames the mobile ignores)."""
    msg_type = frame.get("type")
    data = frame.get("data") or {}
    if msg_type == m.LOCATION_REQUESTED:
        return LocationRequested()
    if msg_type == m.DECISION:
        try:
            return DecisionPushed(GeofenceDecision.model_validate(data))
        except ValidationError:
            return RelayErrorReported("MALFORMED_MESSAGE", "Relay sent an invalid decision.")
    if msg_type == m.ERROR:
        return RelayErrorReported(str(data.get("code") or "ERROR"), str(data.get("message") or ""))
    return None


# -- driver -----------------------------------------------------------------------


class MobilePeer:
    """Runs the mobile state machine: passkey ceremony, location capture, relay frames."""

    def __init__(
        self,
        pairing: PairingContext,
        *,
        send: Callable[[dict[str, Any]], None],
        handler: CredentialChallengeHandler,
        authenticator: Authenticator,
        locator: LocationProvider,
        location: LocationSettings | None = None,
    ):
        self._send = send
        self._handler = handler
        self._authenticator = authenticator
        self._locator = locator
        self._location = location or LocationSettings()
        self._lock = threading.RLock()
        self._state: MobileState = Ready(pairing)
        self.changed = threading.Condition(self._lock)

    @property
    def state(self) -> MobileState:
        return self._state

    @property
    def finished(self) -> bool:
        return isinstance(self._state, (Completed, Failed))

    def load(self) -> None:
        self.handle(Loaded())

    def authenticate(self) -> None:
        self.handle(UserConfirmed())

    def on_frame(self, frame: dict[str, Any]) -> None:
        event = event_from_frame(frame)
        if event is not None:
            self.handle(event)

    def on_transport_closed(self) -> None:
        self.handle(TransportClosed())

    def handle(self, event: MobileEvent) -> None:
        with self._lock:
            pending: deque[MobileEvent] = deque([event])
            while pending:
                current = pending.popleft()
                state, effects = transition(self._state, current, location=self._location)
                if type(state) is not type(self._state):
                    logger.info("Mobile %s -> %s", type(self._state).__name__, type(state).__name__)
                self._state = state
                for effect in effects:
                    follow_up = self._perform(effect)
                    if follow_up is not None:
                        pending.append(follow_up)
            self.changed.notify_all()

    def _perform(self, effect: Effect) -> MobileEvent | None:
        if isinstance(effect, SendFrame):
            self._send(effect.frame)
            return None
        if isinstance(effect, RunCeremony):
            try:
                payload = self._handler.perform_ceremony(
                    self._authenticator,
                    user_identifier=effect.user_identifier,
                    challenge=effect.challenge,
                    mode=effect.mode,
                )
            except CredentialError as exc:
                logger.warning("Passkey ceremony failed: %s", exc.reason)
                return CeremonyFailed(exc.reason, exc.message)
            return CeremonySucceeded(payload)
        if isinstance(effect, CaptureLocation):
            try:
                sample = self._locator.current_location(
                    high_accuracy=effect.high_accuracy,
                    timeout_seconds=effect.timeout_seconds,
                    maximum_age_seconds=effect.maximum_age_seconds,
                )
            except LocationError as exc:
                logger.warning("Location capture failed: %s", exc.reason)
                return LocationFailed(exc.code, exc.reason, exc.message)
            logger.info(
                "Location captured accuracy=%.1fm (%s)", sample.accuracy_meters, sample.accuracy_level
            )
            return LocationCaptured(sample)
        return None

    def wait_finished(self, timeout: float | None = None) -> MobileState:
        with self._lock:
            self.changed.wait_for(lambda: self.finished, timeout=timeout)
            return self._state
