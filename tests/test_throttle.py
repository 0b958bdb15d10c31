import math
import threading

import pytest

from labgate.domain.models import GeofenceSpec, LocationSample
from labgate.geofence.registry import StaticGeofenceRegistry
from labgate.geofence.throttle import LocationThrottleCache
from labgate.geofence.verifier import GeofenceVerifier

ACCOUNT = "admin@lab.example"
BASE_LAT = 12.9716
BASE_LON = 77.5946


def _sample(meters_north: float) -> LocationSample:
    return LocationSample(
        latitude=BASE_LAT + math.degrees(meters_north / 6_371_000),
        longitude=BASE_LON,
        accuracy_meters=5,
    )


def _reverify(cache: LocationThrottleCache, verifier: GeofenceVerifier, sample: LocationSample):
    if cache.should_reverify(ACCOUNT, sample):
        decision = verifier.verify(ACCOUNT, sample)
        cache.record_decision(ACCOUNT, sample, decision)
        return decision
    return cache.last_decision(ACCOUNT)


def test_threshold_policy_first_near_far():
    cache = LocationThrottleCache(threshold_m=15)
    first = _sample(0)
    assert cache.should_reverify(ACCOUNT, first) is True

    registry = StaticGeofenceRegistry(
        {ACCOUNT: GeofenceSpec(center_latitude=BASE_LAT, center_longitude=BASE_LON, radius_meters=100)}
    )
    cache.record_decision(ACCOUNT, first, GeofenceVerifier(registry).verify(ACCOUNT, first))

    assert cache.should_reverify(ACCOUNT, _sample(5)) is False
    assert cache.should_reverify(ACCOUNT, _sample(20)) is True
    assert cache.stats.as_dict() == {"reverified": 2, "reused": 1}


def test_reused_decision_is_returned_unchanged_after_geofence_change():
    registry = StaticGeofenceRegistry(
        {ACCOUNT: GeofenceSpec(center_latitude=BASE_LAT, center_longitude=BASE_LON, radius_meters=100)}
    )
    verifier = GeofenceVerifier(registry)
    cache = LocationThrottleCache()

    first = _reverify(cache, verifier, _sample(0))
    assert first.within_radius is True

    # Lab moved far away; the next nearby sample still reuses the stored decision.
    registry.set_geofence(
        ACCOUNT, GeofenceSpec(center_latitude=BASE_LAT + 1.0, center_longitude=BASE_LON, radius_meters=100)
    )
    reused = _reverify(cache, verifier, _sample(5))
    assert reused is first
    assert reused.within_radius is True

    # Once the device moves past the threshold the new configuration applies.
    fresh = _reverify(cache, verifier, _sample(30))
    assert fresh.within_radius is False


def test_record_overwrites_and_forget_clears():
    cache = LocationThrottleCache()
    registry = StaticGeofenceRegistry(
        {ACCOUNT: GeofenceSpec(center_latitude=BASE_LAT, center_longitude=BASE_LON, radius_meters=100)}
    )
    verifier = GeofenceVerifier(registry)
    a = verifier.verify(ACCOUNT, _sample(0))
    b = verifier.verify(ACCOUNT, _sample(50))
    cache.record_decision(ACCOUNT, _sample(0), a)
    cache.record_decision(ACCOUNT, _sample(50), b)
    assert cache.last_decision(ACCOUNT) is b

    cache.forget(ACCOUNT)
    assert cache.get(ACCOUNT) is None
    assert cache.should_reverify(ACCOUNT, _sample(50)) is True


def test_threshold_must_be_positive():
    with pytest.raises(ValueError):
        LocationThrottleCache(threshold_m=0)


def test_counters_are_exact_under_concurrent_checks():
    cache = LocationThrottleCache(threshold_m=15)
    accounts = [f"user{i}@lab.example" for i in range(8)]

    def run(account_id: str) -> None:
        for _ in range(500):
            cache.should_reverify(account_id, _sample(0))

    threads = [threading.Thread(target=run, args=(a,)) for a in accounts]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert cache.stats.as_dict() == {"reverified": 8 * 500, "reused": 0}
