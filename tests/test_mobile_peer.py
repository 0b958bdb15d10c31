import httpx

from labgate.core.errors import CredentialError, LocationTimeout
from labgate.credentials.challenge import CredentialChallengeHandler
from labgate.credentials.directory import InMemoryCredentialDirectory
from labgate.domain.models import GeofenceDecision, LocationSample, Mode
from labgate.peers import mobile
from labgate.peers.deeplink import PairingContext
from labgate.peers.effects import CaptureLocation, RunCeremony, SendFrame

PAIRING = PairingContext(
    session_id="S1",
    user_identifier="admin@lab.example",
    challenge="c-1",
    mode=Mode.LOGIN,
    require_location=True,
)
SAMPLE = LocationSample(latitude=12.9716, longitude=77.5946, accuracy_meters=4)


class Authenticator:
    def get_assertion(self, *, challenge, rp_id, user_identifier, timeout_seconds):
        return {"credentialId": "cred-1", "challenge": challenge}

    def create_credential(self, **_kwargs):
        raise CredentialError("NotSupported")


class Locator:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def current_location(self, *, high_accuracy, timeout_seconds, maximum_age_seconds):
        self.calls += 1
        if self.error:
            raise self.error
        return SAMPLE


def _peer(sent, locator):
    return mobile.MobilePeer(
        PAIRING,
        send=sent.append,
        handler=CredentialChallengeHandler(InMemoryCredentialDirectory({"admin@lab.example": {"cred-1"}})),
        authenticator=Authenticator(),
        locator=locator,
    )


def test_load_registers_with_relay():
    state, effects = mobile.transition(mobile.Ready(PAIRING), mobile.Loaded())
    assert isinstance(state, mobile.Ready)
    assert effects == [
        SendFrame(
            {
                "type": "register_mobile",
                "data": {"sessionId": "S1", "userIdentifier": "admin@lab.example", "challenge": "c-1"},
            }
        )
    ]


def test_location_is_never_captured_before_it_is_requested():
    for state in (mobile.Ready(PAIRING), mobile.Authenticating(PAIRING)):
        same, effects = mobile.transition(state, mobile.LocationRequested())
        assert same is state
        assert effects == []

    sent = []
    locator = Locator()
    peer = _peer(sent, locator)
    peer.on_frame({"type": "location_requested", "data": {"sessionId": "S1"}})
    assert locator.calls == 0
    assert sent == []
    assert isinstance(peer.state, mobile.Ready)


def test_step_by_step_transitions():
    state, effects = mobile.transition(mobile.Ready(PAIRING), mobile.UserConfirmed())
    assert isinstance(state, mobile.Authenticating)
    assert effects == [RunCeremony(mode=Mode.LOGIN, user_identifier="admin@lab.example", challenge="c-1")]

    state, effects = mobile.transition(state, mobile.CeremonySucceeded({"credentialId": "cred-1"}))
    assert isinstance(state, mobile.AwaitingLocationRequest)
    assert effects[0].frame == {"type": "auth_result", "data": {"sessionId": "S1", "authPayload": {"credentialId": "cred-1"}}}

    state, effects = mobile.transition(state, mobile.LocationRequested())
    assert isinstance(state, mobile.CapturingLocation)
    assert effects == [CaptureLocation(high_accuracy=True, timeout_seconds=15, maximum_age_seconds=30)]

    state, effects = mobile.transition(state, mobile.LocationCaptured(SAMPLE))
    assert isinstance(state, mobile.Reporting)
    frame = effects[0].frame
    assert frame["type"] == "location_result"
    assert frame["data"]["sessionId"] == "S1"
    assert frame["data"]["sample"]["accuracyMeters"] == 4

    decision = GeofenceDecision(distance_meters=3, within_radius=True, radius_meters=100)
    state, effects = mobile.transition(state, mobile.DecisionPushed(decision))
    assert isinstance(state, mobile.Completed)
    assert state.decision is decision
    assert effects == []


def test_ceremony_failure_reports_error_and_stops():
    state, effects = mobile.transition(mobile.Authenticating(PAIRING), mobile.CeremonyFailed("NotAllowed"))
    assert isinstance(state, mobile.Failed)
    assert state.code == "CREDENTIAL_ERROR"
    assert state.reason == "NotAllowed"
    assert effects[0].frame == {
        "type": "error",
        "data": {"code": "CREDENTIAL_ERROR", "message": "Authentication was cancelled or timed out", "sessionId": "S1"},
    }

    # Terminal: nothing is retried automatically.
    assert mobile.transition(state, mobile.UserConfirmed()) == (state, [])


def test_driver_runs_ceremony_and_capture():
    sent = []
    locator = Locator()
    peer = _peer(sent, locator)

    peer.load()
    peer.authenticate()
    assert isinstance(peer.state, mobile.AwaitingLocationRequest)
    assert [f["type"] for f in sent] == ["register_mobile", "auth_result"]
    assert sent[1]["data"]["authPayload"]["type"] == "authentication"

    peer.on_frame({"type": "location_requested", "data": {"sessionId": "S1"}})
    assert locator.calls == 1
    assert isinstance(peer.state, mobile.Reporting)
    assert sent[-1]["type"] == "location_result"

    peer.on_frame({"type": "decision", "data": {"withinRadius": True, "distanceMeters": 2.0, "radiusMeters": 100}})
    assert isinstance(peer.wait_finished(timeout=1), mobile.Completed)


def test_driver_location_timeout_fails_and_reports():
    sent = []
    peer = _peer(sent, Locator(error=LocationTimeout("Location request timed out")))
    peer.load()
    peer.authenticate()
    peer.on_frame({"type": "location_requested", "data": {"sessionId": "S1"}})

    assert isinstance(peer.state, mobile.Failed)
    assert peer.state.code == "LOCATION_TIMEOUT"
    assert peer.state.reason == "Timeout"
    assert sent[-1]["type"] == "error"
    assert sent[-1]["data"]["code"] == "LOCATION_TIMEOUT"


def test_relay_error_fails_mobile():
    sent = []
    peer = _peer(sent, Locator())
    peer.on_frame({"type": "error", "data": {"code": "SESSION_EXPIRED", "message": "expired"}})
    assert isinstance(peer.state, mobile.Failed)
    assert peer.state.code == "SESSION_EXPIRED"


def test_driver_directory_outage_fails_and_reports():
    class DownDirectory:
        def verify_assertion(self, user_identifier, challenge, assertion):
            raise httpx.ConnectError("connection refused")

        def bind_device(self, user_identifier, challenge, attestation):
            raise httpx.ConnectError("connection refused")

    sent = []
    peer = mobile.MobilePeer(
        PAIRING,
        send=sent.append,
        handler=CredentialChallengeHandler(DownDirectory()),
        authenticator=Authenticator(),
        locator=Locator(),
    )
    peer.load()
    peer.authenticate()

    assert isinstance(peer.state, mobile.Failed)
    assert peer.state.code == "CREDENTIAL_ERROR"
    assert peer.state.reason == "VerificationFailed"
    assert [f["type"] for f in sent] == ["register_mobile", "error"]
    assert sent[-1]["data"]["code"] == "CREDENTIAL_ERROR"
