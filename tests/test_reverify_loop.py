import math
import threading

import httpx
import pytest

from labgate.core.errors import LocationUnavailable, NoGeofenceConfigured
from labgate.core.retry import RetryPolicy
from labgate.domain.models import GeofenceSpec, LocationSample
from labgate.geofence.registry import StaticGeofenceRegistry
from labgate.geofence.throttle import LocationThrottleCache
from labgate.geofence.verifier import GeofenceVerifier
from labgate.reverify.loop import RemoteGeofenceVerifier, ReverificationLoop

ACCOUNT = "admin@lab.example"
SPEC = GeofenceSpec(center_latitude=12.9716, center_longitude=77.5946, radius_meters=100)


def _sample(meters_north: float) -> LocationSample:
    return LocationSample(
        latitude=SPEC.center_latitude + math.degrees(meters_north / 6_371_000),
        longitude=SPEC.center_longitude,
        accuracy_meters=5,
    )


class CountingVerifier:
    def __init__(self, inner=None, error=None):
        self.inner = inner or GeofenceVerifier(StaticGeofenceRegistry({ACCOUNT: SPEC}))
        self.error = error
        self.calls = 0

    def verify(self, account_id, sample):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.inner.verify(account_id, sample)


class Positions:
    def __init__(self, *samples):
        self.samples = list(samples)

    def __call__(self, account_id):
        item = self.samples.pop(0) if len(self.samples) > 1 else self.samples[0]
        if isinstance(item, Exception):
            raise item
        return item


def test_small_moves_reuse_decision_without_verifier_call():
    verifier = CountingVerifier()
    loop = ReverificationLoop(verifier, LocationThrottleCache(), Positions(_sample(0), _sample(5), _sample(30)))

    first = loop.check(ACCOUNT)
    second = loop.check(ACCOUNT)
    third = loop.check(ACCOUNT)

    assert (first.status, second.status, third.status) == ("verified", "reused", "verified")
    assert second.decision is first.decision
    assert verifier.calls == 2
    assert loop.is_admitted(ACCOUNT)


def test_leaving_geofence_revokes_admission():
    denied = []
    loop = ReverificationLoop(
        CountingVerifier(), LocationThrottleCache(), Positions(_sample(250)), on_denied=denied.append
    )
    outcome = loop.check(ACCOUNT)

    assert outcome.status == "verified"
    assert outcome.admitted is False
    assert denied == [outcome]
    assert not loop.is_admitted(ACCOUNT)


def test_transport_failure_keeps_prior_admission():
    denied = []
    verifier = CountingVerifier(error=httpx.ConnectError("relay unreachable"))
    loop = ReverificationLoop(verifier, LocationThrottleCache(), Positions(_sample(0)), on_denied=denied.append)

    outcome = loop.check(ACCOUNT)
    assert outcome.status == "failed"
    assert outcome.admitted is True
    assert denied == []


def test_location_failure_keeps_prior_admission():
    loop = ReverificationLoop(
        CountingVerifier(), LocationThrottleCache(), Positions(LocationUnavailable("no fix"))
    )
    outcome = loop.check(ACCOUNT)
    assert outcome.status == "failed"
    assert outcome.admitted is True


def test_missing_geofence_denies_as_misconfigured():
    denied = []
    verifier = CountingVerifier(error=NoGeofenceConfigured("none"))
    loop = ReverificationLoop(verifier, LocationThrottleCache(), Positions(_sample(0)), on_denied=denied.append)

    outcome = loop.check(ACCOUNT)
    assert outcome.status == "misconfigured"
    assert outcome.admitted is False
    assert outcome.error == "NO_GEOFENCE_CONFIGURED"
    assert len(denied) == 1


def test_overlapping_check_for_same_account_is_skipped():
    entered = threading.Event()
    release = threading.Event()

    class SlowVerifier(CountingVerifier):
        def verify(self, account_id, sample):
            if account_id == ACCOUNT:
                entered.set()
                release.wait(5)
            return super().verify(account_id, sample)

    verifier = SlowVerifier()
    loop = ReverificationLoop(verifier, LocationThrottleCache(), Positions(_sample(0)))
    results = []
    worker = threading.Thread(target=lambda: results.append(loop.check(ACCOUNT)))
    worker.start()
    assert entered.wait(5)

    assert loop.check(ACCOUNT).status == "skipped"
    assert loop.check("tech@lab.example").status != "skipped"

    release.set()
    worker.join(5)
    assert results[0].status == "verified"
    assert verifier.calls == 2


def test_background_worker_runs_until_stopped():
    ticked = threading.Event()

    class TickingVerifier(CountingVerifier):
        def verify(self, account_id, sample):
            decision = super().verify(account_id, sample)
            if self.calls >= 2:
                ticked.set()
            return decision

    throttle = LocationThrottleCache()
    samples = [_sample(0), _sample(20), _sample(40), _sample(60), _sample(80)]
    loop = ReverificationLoop(TickingVerifier(), throttle, Positions(*samples), interval_seconds=0.01)

    loop.start(ACCOUNT)
    assert loop.running(ACCOUNT)
    assert ticked.wait(5)

    loop.stop(ACCOUNT)
    assert not loop.running(ACCOUNT)
    assert throttle.get(ACCOUNT) is None


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        ReverificationLoop(CountingVerifier(), LocationThrottleCache(), Positions(_sample(0)), interval_seconds=0)


def test_remote_verifier_posts_sample_and_maps_404(monkeypatch):
    calls = []

    def fake_post_json(url, *, payload, headers=None, timeout_seconds=15):  # noqa: ARG001
        calls.append(payload)
        if payload["accountId"] == "ghost@lab.example":
            request = httpx.Request("POST", url)
            raise httpx.HTTPStatusError("404", request=request, response=httpx.Response(404, request=request))
        return {"withinRadius": True, "distanceMeters": 12.0, "radiusMeters": 100, "accuracyLevel": "excellent"}

    monkeypatch.setattr("labgate.reverify.loop.post_json", fake_post_json)
    verifier = RemoteGeofenceVerifier("https://relay.example.test/api/geofence/verify", retry=RetryPolicy(max_attempts=0))

    decision = verifier.verify(ACCOUNT, _sample(12))
    assert decision.within_radius is True
    assert decision.distance_meters == 12.0
    assert calls[0]["sample"]["accuracyMeters"] == 5

    with pytest.raises(NoGeofenceConfigured):
        verifier.verify("ghost@lab.example", _sample(0))


def test_check_finishing_after_stop_leaves_no_state_behind():
    entered = threading.Event()
    release = threading.Event()
    denied = []

    class SlowVerifier(CountingVerifier):
        def verify(self, account_id, sample):
            entered.set()
            release.wait(5)
            return super().verify(account_id, sample)

    throttle = LocationThrottleCache()
    loop = ReverificationLoop(SlowVerifier(), throttle, Positions(_sample(250)), on_denied=denied.append)
    results = []
    worker = threading.Thread(target=lambda: results.append(loop.check(ACCOUNT)))
    worker.start()
    assert entered.wait(5)

    loop.stop(ACCOUNT)
    release.set()
    worker.join(5)

    assert results[0].status == "verified"
    assert throttle.get(ACCOUNT) is None
    assert denied == []
    assert loop.is_admitted(ACCOUNT)
