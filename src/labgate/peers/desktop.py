"""
Desktop peer state machine.

States: AwaitingPairing -> AwaitingAuth -> AwaitingLocationDecision -> Completed | Failed.

`transition(state, event)` is pure and returns `(next_state, effects)`. `DesktopPeer`
drives it: it turns relay frames into events and performs the effects.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from pydantic import ValidationError

from labgate.domain.models import GeofenceDecision, Mode, SessionState
from labgate.peers.deeplink import PairingContext, build_deep_link, new_pairing
from labgate.peers.effects import Effect, RenderPairing, SendFrame
from labgate.relay import messages as m

logger = logging.getLogger(__name__)

OUTSIDE_GEOFENCE = "OUTSIDE_GEOFENCE"
TRANSPORT_CLOSED = "TRANSPORT_CLOSED"


# -- states ----------------------------------------------------------------------


@dataclass(frozen=True)
class AwaitingPairing:
    pairing: PairingContext


@dataclass(frozen=True)
class AwaitingAuth:
    pairing: PairingContext


@dataclass(frozen=True)
class AwaitingLocationDecision:
    pairing: PairingContext
    auth_payload: dict[str, Any] | None = field(default=None, hash=False)


@dataclass(frozen=True)
class Completed:
    pairing: PairingContext
    auth_payload: dict[str, Any] | None = field(default=None, hash=False)
    decision: GeofenceDecision | None = None


@dataclass(frozen=True)
class Failed:
    """Terminal until the operator retries with a fresh session."""

    pairing: PairingContext
    code: str
    message: str = ""
    distance_meters: float | None = None
    radius_meters: float | None = None


DesktopState = Union[AwaitingPairing, AwaitingAuth, AwaitingLocationDecision, Completed, Failed]


# -- events ----------------------------------------------------------------------


@dataclass(frozen=True)
class Registered:
    session_state: SessionState


@dataclass(frozen=True)
class MobileConnected:
    pass


@dataclass(frozen=True)
class AuthConfirmed:
    auth_payload: dict[str, Any] | None = field(default=None, hash=False)


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


@dataclass(frozen=True)
class Retry:
    pairing: PairingContext
    deep_link: str


DesktopEvent = Union[Registered, MobileConnected, AuthConfirmed, DecisionPushed, RelayErrorReported, TransportClosed, Retry]


# -- transitions -------------------------------------------------------------------


def _register_frame(pairing: PairingContext) -> dict[str, Any]:
    return m.envelope(
        m.REGISTER_DESKTOP,
        {
            "sessionId": pairing.session_id,
            "userIdentifier": pairing.user_identifier,
            "mode": pairing.mode.value,
            "requireLocation": pairing.require_location,
        },
    )


def start(pairing: PairingContext, deep_link: str) -> tuple[DesktopState, list[Effect]]:
    """Enter AwaitingPairing for a new session: show the code and register with the relay."""
    return AwaitingPairing(pairing), [
        RenderPairing(session_id=pairing.session_id, deep_link=deep_link),
        SendFrame(_register_frame(pairing)),
    ]


def _on_auth_confirmed(pairing: PairingContext, auth_payload: dict[str, Any] | None) -> tuple[DesktopState, list[Effect]]:
    if not pairing.require_location:
        return Completed(pairing, auth_payload), []
    return AwaitingLocationDecision(pairing, auth_payload), [
        SendFrame(m.envelope(m.REQUEST_LOCATION, {"sessionId": pairing.session_id}))
    ]


def transition(state: DesktopState, event: DesktopEvent) -> tuple[DesktopState, list[Effect]]:
    """Apply one event. Events that do not apply to `state` leave it unchanged."""
    if isinstance(state, Completed):
        return state, []

    if isinstance(state, Failed):
        if isinstance(event, Retry):
            return start(event.pairing, event.deep_link)
        return state, []

    pairing = state.pairing

    if isinstance(event, (RelayErrorReported, TransportClosed)):
        if isinstance(event, TransportClosed):
            return Failed(pairing, TRANSPORT_CLOSED, "Connection to the relay was lost."), []
        return Failed(pairing, event.code, event.message), []

    if isinstance(state, AwaitingPairing):
        if isinstance(event, MobileConnected):
            return AwaitingAuth(pairing), []
        if isinstance(event, AuthConfirmed):
            return _on_auth_confirmed(pairing, event.auth_payload)
        if isinstance(event, Registered):
            # Re-attached to a session that already moved on.
            if event.session_state is SessionState.MOBILE_PAIRED:
                return AwaitingAuth(pairing), []
            if event.session_state is SessionState.AUTH_CONFIRMED:
                return _on_auth_confirmed(pairing, None)
            if event.session_state in (SessionState.LOCATION_REQUESTED, SessionState.LOCATION_RECEIVED):
                return AwaitingLocationDecision(pairing), []
        return state, []

    if isinstance(state, AwaitingAuth):
        if isinstance(event, AuthConfirmed):
            return _on_auth_confirmed(pairing, event.auth_payload)
        return state, []

    if isinstance(state, AwaitingLocationDecision):
        if isinstance(event, DecisionPushed):
            decision = event.decision
            if decision.within_radius:
                return Completed(pairing, state.auth_payload, decision), []
            return (
                Failed(
                    pairing,
                    OUTSIDE_GEOFENCE,
                    "You are outside the registered lab area.",
                    distance_meters=decision.distance_meters,
                    radius_meters=decision.radius_meters,
                ),
                [],
            )
        return state, []

    return state, []


def event_from_frame(frame: dict[str, Any]) -> DesktopEvent | None:
    """Translate a relay frame into a desktop event (None for frames the desktop ignores)."""
    msg_type = frame.get("type")
    data = frame.get("data") or {}
    if msg_type == m.REGISTERED:
        try:
            return Registered(SessionState(data.get("state")))
        except ValueError:
            return None
    if msg_type == m.MOBILE_CONNECTED:
        return MobileConnected()
    if msg_type == m.AUTH_CONFIRMED:
        return AuthConfirmed(data.get("authPayload"))
    if msg_type == m.DECISION:
        try:
            return DecisionPushed(GeofenceDecision.model_validate(data))
        except ValidationError:
            return RelayErrorReported("MALFORMED_MESSAGE", "Relay sent an invalid decision.")
    if msg_type == m.ERROR:
        return RelayErrorReported(str(data.get("code") or "ERROR"), str(data.get("message") or ""))
    return None


# -- driver -----------------------------------------------------------------------


PairingIssuer = Callable[[str, Mode, bool], PairingContext]


class DesktopPeer:
    """Runs the desktop state machine against a relay transport."""

    def __init__(
        self,
        *,
        send: Callable[[dict[str, Any]], None],
        public_url: str,
        mobile_path: str = "/mobile-auth",
        render: Callable[[RenderPairing], None] | None = None,
        issue_pairing: PairingIssuer = new_pairing,
    ):
        self._send = send
        self._public_url = public_url
        self._mobile_path = mobile_path
        self._render = render
        self._issue_pairing = issue_pairing
        self._lock = threading.RLock()
        self._state: DesktopState | None = None
        self.changed = threading.Condition(self._lock)

    @property
    def state(self) -> DesktopState | None:
        return self._state

    @property
    def finished(self) -> bool:
        return isinstance(self._state, (Completed, Failed))

    def _link(self, pairing: PairingContext) -> str:
        return build_deep_link(self._public_url, pairing, path=self._mobile_path)

    def start(self, user_identifier: str, mode: Mode = Mode.LOGIN, require_location: bool = True) -> PairingContext:
        pairing = self._issue_pairing(user_identifier, Mode(mode), bool(require_location))
        with self._lock:
            state, effects = start(pairing, self._link(pairing))
            self._commit(state, effects)
        return pairing

    def retry(self) -> PairingContext:
        """Operator retry after a failure: new session id, back to AwaitingPairing."""
        with self._lock:
            if not isinstance(self._state, Failed):
                raise RuntimeError("Retry is only possible after a failure.")
            old = self._state.pairing
            pairing = self._issue_pairing(old.user_identifier, old.mode, old.require_location)
            self.handle(Retry(pairing, self._link(pairing)))
        return pairing

    def on_frame(self, frame: dict[str, Any]) -> None:
        event = event_from_frame(frame)
        if event is not None:
            self.handle(event)

    def on_transport_closed(self) -> None:
        self.handle(TransportClosed())

    def handle(self, event: DesktopEvent) -> None:
        with self._lock:
            if self._state is None:
                logger.debug("Desktop peer not started; ignoring %s", type(event).__name__)
                return
            state, effects = transition(self._state, event)
            if state is self._state and not effects:
                logger.debug("Desktop ignored %s in %s", type(event).__name__, type(state).__name__)
                return
            self._commit(state, effects)

    def _commit(self, state: DesktopState, effects: list[Effect]) -> None:
        if type(state) is not type(self._state):
            logger.info(
                "Desktop %s -> %s",
                type(self._state).__name__ if self._state else "None",
                type(state).__name__,
            )
        self._state = state
        for effect in effects:
            if isinstance(effect, SendFrame):
                self._send(effect.frame)
            elif isinstance(effect, RenderPairing) and self._render is not None:
                self._render(effect)
        self.changed.notify_all()

    def wait_finished(self, timeout: float | None = None) -> DesktopState | None:
        with self._lock:
            self.changed.wait_for(lambda: self.finished, timeout=timeout)
            return self._state
