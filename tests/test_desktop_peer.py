import pytest

from labgate.domain.models import GeofenceDecision, Mode, SessionState
from labgate.peers import desktop
from labgate.peers.deeplink import PairingContext
from labgate.peers.effects import RenderPairing, SendFrame

PAIRING = PairingContext(
    session_id="S1",
    user_identifier="admin@lab.example",
    challenge="c-1",
    mode=Mode.LOGIN,
    require_location=True,
)


def _decision(distance: float, within: bool) -> GeofenceDecision:
    return GeofenceDecision(distance_meters=distance, within_radius=within, radius_meters=100)


def test_start_renders_pairing_and_registers():
    state, effects = desktop.start(PAIRING, "https://lab.example/mobile-auth?sessionId=S1")

    assert isinstance(state, desktop.AwaitingPairing)
    assert isinstance(effects[0], RenderPairing)
    assert effects[0].session_id == "S1"
    assert isinstance(effects[1], SendFrame)
    assert effects[1].frame == {
        "type": "register_desktop",
        "data": {"sessionId": "S1", "userIdentifier": "admin@lab.example", "mode": "login", "requireLocation": True},
    }


def test_happy_path_with_location():
    state, _ = desktop.start(PAIRING, "link")
    state, effects = desktop.transition(state, desktop.MobileConnected())
    assert isinstance(state, desktop.AwaitingAuth)
    assert effects == []

    state, effects = desktop.transition(state, desktop.AuthConfirmed({"credentialId": "cred-1"}))
    assert isinstance(state, desktop.AwaitingLocationDecision)
    assert effects == [SendFrame({"type": "request_location", "data": {"sessionId": "S1"}})]

    state, effects = desktop.transition(state, desktop.DecisionPushed(_decision(40, True)))
    assert isinstance(state, desktop.Completed)
    assert state.auth_payload == {"credentialId": "cred-1"}
    assert state.decision.distance_meters == 40


def test_outside_decision_fails_with_distance_and_radius():
    state = desktop.AwaitingLocationDecision(PAIRING)
    state, effects = desktop.transition(state, desktop.DecisionPushed(_decision(150, False)))

    assert isinstance(state, desktop.Failed)
    assert state.code == desktop.OUTSIDE_GEOFENCE
    assert state.distance_meters == 150
    assert state.radius_meters == 100
    assert effects == []


def test_without_location_auth_confirmation_completes():
    pairing = PairingContext("S2", "admin@lab.example", "c-2", Mode.LOGIN, require_location=False)
    state, effects = desktop.transition(desktop.AwaitingAuth(pairing), desktop.AuthConfirmed({"ok": True}))
    assert isinstance(state, desktop.Completed)
    assert state.decision is None
    assert effects == []


def test_events_out_of_order_are_ignored():
    state = desktop.AwaitingPairing(PAIRING)
    same, effects = desktop.transition(state, desktop.DecisionPushed(_decision(1, True)))
    assert same is state
    assert effects == []

    done = desktop.Completed(PAIRING)
    assert desktop.transition(done, desktop.TransportClosed()) == (done, [])


def test_reattach_catches_up_from_registered_state():
    state = desktop.AwaitingPairing(PAIRING)
    state, _ = desktop.transition(state, desktop.Registered(SessionState.MOBILE_PAIRED))
    assert isinstance(state, desktop.AwaitingAuth)

    state, effects = desktop.transition(desktop.AwaitingPairing(PAIRING), desktop.Registered(SessionState.AUTH_CONFIRMED))
    assert isinstance(state, desktop.AwaitingLocationDecision)
    assert effects[0].frame["type"] == "request_location"


def test_relay_error_and_transport_loss_fail_the_flow():
    state, _ = desktop.transition(desktop.AwaitingAuth(PAIRING), desktop.RelayErrorReported("PEER_UNAVAILABLE", "gone"))
    assert isinstance(state, desktop.Failed)
    assert state.code == "PEER_UNAVAILABLE"

    state, _ = desktop.transition(desktop.AwaitingPairing(PAIRING), desktop.TransportClosed())
    assert state.code == desktop.TRANSPORT_CLOSED


def test_event_from_frame():
    assert isinstance(desktop.event_from_frame({"type": "mobile_connected", "data": {}}), desktop.MobileConnected)
    event = desktop.event_from_frame(
        {"type": "decision", "data": {"withinRadius": True, "distanceMeters": 12.5, "radiusMeters": 100}}
    )
    assert isinstance(event, desktop.DecisionPushed)
    assert event.decision.distance_meters == 12.5

    bad = desktop.event_from_frame({"type": "decision", "data": {"withinRadius": True}})
    assert isinstance(bad, desktop.RelayErrorReported)
    assert bad.code == "MALFORMED_MESSAGE"

    assert desktop.event_from_frame({"type": "heartbeat_ack", "data": {}}) is None
    assert desktop.event_from_frame({"type": "registered", "data": {"state": "bogus"}}) is None


def test_driver_retry_issues_new_session():
    sent = []
    issued = iter(
        [
            PairingContext("S1", "admin@lab.example", "c-1", Mode.LOGIN, True),
            PairingContext("S2", "admin@lab.example", "c-2", Mode.LOGIN, True),
        ]
    )
    peer = desktop.DesktopPeer(
        send=sent.append,
        public_url="https://lab.example",
        issue_pairing=lambda *_args: next(issued),
    )

    with pytest.raises(RuntimeError):
        peer.retry()

    peer.start("admin@lab.example")
    assert peer.state.pairing.session_id == "S1"
    peer.on_transport_closed()
    assert isinstance(peer.state, desktop.Failed)
    assert peer.finished

    pairing = peer.retry()
    assert pairing.session_id == "S2"
    assert isinstance(peer.state, desktop.AwaitingPairing)
    assert [f["data"]["sessionId"] for f in sent] == ["S1", "S2"]
