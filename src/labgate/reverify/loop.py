"""
Continuous re-verification (post-login).

While an account's desktop session is admitted, the loop periodically reads a fresh
location sample and re-checks it against the account's geofence:

- the Location Throttle Cache decides whether the device moved far enough to need a
  full check; if not, the previous decision is reused verbatim;
- a decision outside the radius (or a missing geofence) revokes admission and calls
  `on_denied`, which is expected to terminate the session;
- transport/location failures keep the prior admitted state. Failing to verify is not
  evidence of having left the geofence.

At most one check runs per account at a time; an overlapping check returns `skipped`.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Literal, Protocol
from urllib.parse import quote

import httpx

from labgate.config.settings import Settings
from labgate.core.errors import LabGateError, LocationError, NoGeofenceConfigured
from labgate.core.http import post_json
from labgate.core.retry import RetryPolicy
from labgate.domain.models import GeofenceDecision, LocationSample
from labgate.geofence.throttle import LocationThrottleCache

logger = logging.getLogger(__name__)

ReverifyStatus = Literal["verified", "reused", "skipped", "failed", "misconfigured"]

# Transient failures that must not revoke admission.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (LocationError, httpx.HTTPError, OSError)


class Verifier(Protocol):
    def verify(self, account_id: str, sample: LocationSample) -> GeofenceDecision: ...


LocationSource = Callable[[str], LocationSample]


class RemoteGeofenceVerifier:
    """Calls the relay's `POST /api/geofence/verify` endpoint."""

    def __init__(self, url: str, *, retry: RetryPolicy, timeout_seconds: float = 15):
        self._url = url
        self._retry = retry
        self._timeout_seconds = timeout_seconds

    def _post(self, payload: dict[str, Any]) -> Any:
        try:
            return post_json(self._url, payload=payload, timeout_seconds=self._timeout_seconds)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                raise NoGeofenceConfigured(f"No geofence is configured for account '{payload['accountId']}'.") from exc
            raise

    def verify(self, account_id: str, sample: LocationSample) -> GeofenceDecision:
        """Raises NoGeofenceConfigured on 404, httpx.HTTPError once retries are exhausted."""
        payload = {"accountId": account_id, "sample": sample.to_wire()}
        data = self._retry.run(lambda: self._post(payload), label=f"geofence verify {quote(account_id)}")
        return GeofenceDecision.model_validate(data)


def build_remote_verifier(settings: Settings) -> RemoteGeofenceVerifier | None:
    if not settings.geofence.verify_url:
        return None
    return RemoteGeofenceVerifier(
        settings.geofence.verify_url,
        retry=RetryPolicy.from_settings(settings.retry, retry_on=(httpx.TransportError,)),
        timeout_seconds=settings.app.http_timeout_seconds,
    )


@dataclass(frozen=True)
class ReverifyOutcome:
    account_id: str
    status: ReverifyStatus
    admitted: bool
    decision: GeofenceDecision | None = None
    error: str | None = None


class ReverificationLoop:
    def __init__(
        self,
        verifier: Verifier,
        throttle: LocationThrottleCache,
        locate: LocationSource,
        *,
        on_denied: Callable[[ReverifyOutcome], None] | None = None,
        interval_seconds: float = 60.0,
    ):
        if float(interval_seconds) <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._verifier = verifier
        self._throttle = throttle
        self._locate = locate
        self._on_denied = on_denied
        self._interval = float(interval_seconds)
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._admitted: dict[str, bool] = {}
        self._stops: dict[str, int] = {}
        self._workers: dict[str, tuple[threading.Thread, threading.Event]] = {}

    def is_admitted(self, account_id: str) -> bool:
        with self._lock:
            return self._admitted.get(account_id, True)

    def check(self, account_id: str) -> ReverifyOutcome:
        """Run one re-verification for `account_id`."""
        with self._lock:
            if account_id in self._in_flight:
                logger.debug("Re-verification already running for account=%s", account_id)
                return ReverifyOutcome(account_id, "skipped", self._admitted.get(account_id, True))
            self._in_flight.add(account_id)
            stops = self._stops.get(account_id, 0)
        try:
            outcome = self._check(account_id)
        finally:
            with self._lock:
                self._in_flight.discard(account_id)

        with self._lock:
            stopped = self._stops.get(account_id, 0) != stops
            if not stopped:
                self._admitted[account_id] = outcome.admitted
        if stopped:
            # stop() ran while the check was in flight; discard its result.
            self._throttle.forget(account_id)
            logger.debug("Discarding re-verification for stopped account=%s", account_id)
            return outcome
        if not outcome.admitted and outcome.status in ("verified", "reused", "misconfigured"):
            logger.warning("Re-verification denied account=%s status=%s", account_id, outcome.status)
            if self._on_denied is not None:
                self._on_denied(outcome)
        return outcome

    def _check(self, account_id: str) -> ReverifyOutcome:
        prior = self.is_admitted(account_id)
        try:
            sample = self._locate(account_id)
        except TRANSIENT_ERRORS as exc:
            logger.warning("Re-verification could not read location for account=%s: %s", account_id, exc)
            return ReverifyOutcome(account_id, "failed", prior, error=str(exc))

        if not self._throttle.should_reverify(account_id, sample):
            decision = self._throttle.last_decision(account_id)
            if decision is not None:
                logger.debug("Reusing previous decision for account=%s", account_id)
                return ReverifyOutcome(account_id, "reused", decision.within_radius, decision)

        try:
            decision = self._verifier.verify(account_id, sample)
        except NoGeofenceConfigured as exc:
            self._throttle.forget(account_id)
            return ReverifyOutcome(account_id, "misconfigured", False, error=exc.code)
        except TRANSIENT_ERRORS as exc:
            logger.warning("Re-verification call failed for account=%s: %s", account_id, exc)
            return ReverifyOutcome(account_id, "failed", prior, error=str(exc))
        except LabGateError as exc:
            logger.warning("Re-verification rejected for account=%s: %s", account_id, exc.message)
            return ReverifyOutcome(account_id, "failed", prior, error=exc.code)

        self._throttle.record_decision(account_id, sample, decision)
        logger.info(
            "Re-verified account=%s distance=%.1fm within=%s",
            account_id,
            decision.distance_meters,
            decision.within_radius,
        )
        return ReverifyOutcome(account_id, "verified", decision.within_radius, decision)

    # -- background workers ----------------------------------------------------------

    def start(self, account_id: str) -> None:
        """Start the periodic check for an admitted account (no-op if already running)."""
        with self._lock:
            if account_id in self._workers:
                return
            self._admitted[account_id] = True
            stop = threading.Event()
            worker = threading.Thread(
                target=self._run, args=(account_id, stop), name=f"reverify-{account_id}", daemon=True
            )
            self._workers[account_id] = (worker, stop)
        worker.start()
        logger.info("Re-verification started for account=%s every %.0fs", account_id, self._interval)

    def _run(self, account_id: str, stop: threading.Event) -> None:
        while not stop.wait(self._interval):
            try:
                outcome = self.check(account_id)
            except Exception:
                logger.exception("Re-verification crashed for account=%s", account_id)
                continue
            if not outcome.admitted:
                break
        with self._lock:
            current = self._workers.get(account_id)
            if current is not None and current[1] is stop:
                self._workers.pop(account_id, None)

    def stop(self, account_id: str, *, timeout: float | None = 2.0) -> None:
        """Stop the account's worker and drop its throttle entry (logout)."""
        with self._lock:
            entry = self._workers.pop(account_id, None)
            self._admitted.pop(account_id, None)
            self._stops[account_id] = self._stops.get(account_id, 0) + 1
        self._throttle.forget(account_id)
        if entry is None:
            return
        worker, stop = entry
        stop.set()
        if worker is not threading.current_thread():
            worker.join(timeout=timeout)
        logger.info("Re-verification stopped for account=%s", account_id)

    def stop_all(self) -> None:
        with self._lock:
            accounts = list(self._workers)
        for account_id in accounts:
            self.stop(account_id)

    def running(self, account_id: str) -> bool:
        with self._lock:
            return account_id in self._workers
