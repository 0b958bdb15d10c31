"""
Location Throttle Cache.

Keeps, per account, the last sample that went through a full geofence check and the
decision it produced. A new sample only needs a fresh check once the device has moved
at least `threshold_m` from that sample; otherwise the caller reuses the stored
decision verbatim.

Staleness: a reused decision is returned unchanged even if the account's geofence
changed since it was computed. The new configuration applies from the next sample
that moves past the threshold.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from labgate.core.geo import haversine_m
from labgate.domain.models import GeofenceDecision, LocationSample

DEFAULT_THRESHOLD_M = 15.0


@dataclass(frozen=True)
class ThrottleEntry:
    last_sample: LocationSample
    last_decision: GeofenceDecision


@dataclass
class ThrottleStats:
    """Counters for how often a full check was avoided."""

    reverified: int = 0
    reused: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"reverified": int(self.reverified), "reused": int(self.reused)}


class LocationThrottleCache:
    """Per-account last-verified-location store (thread-safe)."""

    def __init__(self, threshold_m: float = DEFAULT_THRESHOLD_M):
        if float(threshold_m) <= 0:
            raise ValueError("threshold_m must be > 0")
        self._threshold_m = float(threshold_m)
        self._entries: dict[str, ThrottleEntry] = {}
        self._lock = threading.Lock()
        self.stats = ThrottleStats()

    @property
    def threshold_m(self) -> float:
        return self._threshold_m

    def get(self, account_id: str) -> ThrottleEntry | None:
        with self._lock:
            return self._entries.get(account_id)

    def should_reverify(self, account_id: str, new_sample: LocationSample) -> bool:
        """True when no entry exists or the device moved >= threshold since the last check."""
        with self._lock:
            entry = self._entries.get(account_id)
            needed = entry is None or haversine_m(new_sample.point, entry.last_sample.point) >= self._threshold_m
            if needed:
                self.stats.reverified += 1
            else:
                self.stats.reused += 1
        return needed

    def record_decision(self, account_id: str, sample: LocationSample, decision: GeofenceDecision) -> None:
        """Unconditionally overwrite the account's entry."""
        with self._lock:
            self._entries[account_id] = ThrottleEntry(last_sample=sample, last_decision=decision)

    def last_decision(self, account_id: str) -> GeofenceDecision | None:
        entry = self.get(account_id)
        return entry.last_decision if entry else None

    def forget(self, account_id: str) -> None:
        """Drop an account's entry (on logout the entry is logically stale)."""
        with self._lock:
            self._entries.pop(account_id, None)
