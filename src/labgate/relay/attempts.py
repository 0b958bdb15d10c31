"""
Login-attempt facts.

The relay emits one `LoginAttempt` per finished session. Persisting them is an
external collaborator's job; the default sink only logs.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from labgate.core.time import utc_now
from labgate.domain.models import Mode

logger = logging.getLogger(__name__)

AttemptStatus = Literal["success", "failed", "geofence_violation"]


class LoginAttempt(BaseModel):
    session_id: str
    user_identifier: str
    mode: Mode
    status: AttemptStatus
    reason: str | None = None
    distance_meters: float | None = Field(default=None, ge=0)
    radius_meters: float | None = None
    accuracy_meters: float | None = None
    at: datetime = Field(default_factory=utc_now)


class LoginAttemptSink(Protocol):
    def record(self, attempt: LoginAttempt) -> None: ...


class LoggingAttemptSink:
    def record(self, attempt: LoginAttempt) -> None:
        logger.info(
            "Login attempt session=%s user=%s mode=%s status=%s reason=%s distance=%s",
            attempt.session_id,
            attempt.user_identifier,
            attempt.mode.value,
            attempt.status,
            attempt.reason,
            None if attempt.distance_meters is None else round(attempt.distance_meters, 1),
        )


class InMemoryAttemptSink:
    """Keeps attempts in a list (tests and local demos)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._attempts: list[LoginAttempt] = []

    def record(self, attempt: LoginAttempt) -> None:
        with self._lock:
            self._attempts.append(attempt)

    @property
    def attempts(self) -> list[LoginAttempt]:
        with self._lock:
            return list(self._attempts)
