"""
Geofence Verifier.

`evaluate()` is the pure admission rule: a sample is admitted when its great-circle
distance to the geofence center is at most the configured radius (inclusive).
`GeofenceVerifier` wraps a Geofence Registry so callers only pass an account id.
"""

from __future__ import annotations

import logging
from datetime import datetime

from labgate.core.errors import NoGeofenceConfigured
from labgate.core.geo import haversine_m
from labgate.core.time import utc_now
from labgate.domain.models import GeofenceDecision, GeofenceSpec, LocationSample
from labgate.geofence.registry import GeofenceRegistry

logger = logging.getLogger(__name__)


def is_within(distance_m: float, radius_m: float) -> bool:
    return distance_m <= radius_m


def evaluate(
    sample: LocationSample,
    spec: GeofenceSpec | None,
    *,
    now: datetime | None = None,
) -> GeofenceDecision:
    """Decide admission for one sample.

    Raises:
        NoGeofenceConfigured: If `spec` is absent.
    """
    if spec is None:
        raise NoGeofenceConfigured("No geofence is configured for this account.")
    distance = haversine_m(sample.point, spec.center)
    return GeofenceDecision(
        distance_meters=distance,
        within_radius=is_within(distance, spec.radius_meters),
        radius_meters=spec.radius_meters,
        evaluated_at=now or utc_now(),
    )


class GeofenceVerifier:
    """Evaluates samples against the account's registered geofence."""

    def __init__(self, registry: GeofenceRegistry):
        self._registry = registry

    def verify(self, account_id: str, sample: LocationSample) -> GeofenceDecision:
        """Look up the account's geofence and evaluate `sample` against it.

        Raises:
            NoGeofenceConfigured: If the registry has no geofence for `account_id`.
        """
        spec = self._registry.get_geofence(account_id)
        if spec is None:
            logger.warning("No geofence configured for account=%s", account_id)
            raise NoGeofenceConfigured(f"No geofence is configured for account '{account_id}'.")
        decision = evaluate(sample, spec)
        logger.info(
            "Geofence decision account=%s distance=%.1fm radius=%.1fm within=%s accuracy=%.1fm",
            account_id,
            decision.distance_meters,
            decision.radius_meters,
            decision.within_radius,
            sample.accuracy_meters,
        )
        return decision
