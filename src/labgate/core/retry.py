"""
Supervised retry policy.

Bounded attempts with exponential backoff, used for:
- (re)connecting a peer to the relay,
- calls to external collaborators (Geofence Registry, Credential Directory).

A policy run stops as soon as the call succeeds and can be cancelled between
attempts through a `threading.Event`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryCancelled(Exception):
    """The supervising caller cancelled the retry loop."""


@dataclass(frozen=True)
class RetryPolicy:
    """Retry `max_attempts` extra times after the first call (0 = no retries)."""

    max_attempts: int = 4
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    retry_on: tuple[type[BaseException], ...] = (OSError,)

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")

    @classmethod
    def from_settings(cls, retry, *, retry_on: tuple[type[BaseException], ...] = (OSError,)) -> "RetryPolicy":
        return cls(
            max_attempts=int(retry.max_attempts),
            base_delay_seconds=float(retry.base_delay_seconds),
            max_delay_seconds=float(retry.max_delay_seconds),
            retry_on=retry_on,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * (2**attempt))

    def run(
        self,
        fn: Callable[[], T],
        *,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
        label: str = "call",
    ) -> T:
        """Call `fn` until it succeeds, the attempts run out, or `cancel` is set.

        Raises:
            RetryCancelled: If `cancel` is set before or between attempts.
            Exception: The last error from `fn` once attempts are exhausted, or any
                error not listed in `retry_on`.
        """
        for attempt in range(self.max_attempts + 1):
            if cancel is not None and cancel.is_set():
                raise RetryCancelled(f"{label} cancelled")
            try:
                return fn()
            except self.retry_on as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (%s); retrying in %.2fs (attempt %s/%s)",
                    label,
                    exc,
                    delay,
                    attempt + 1,
                    self.max_attempts,
                )
                if cancel is not None:
                    if cancel.wait(delay):
                        raise RetryCancelled(f"{label} cancelled") from exc
                else:
                    sleep(delay)
        raise RuntimeError(f"{label} failed without an exception (unexpected).")
