"""
Domain models (Pydantic).

These types are the stable contract between the relay, the peers, and the
external collaborators:
- inputs from devices (`LocationSample`)
- registry records (`GeofenceSpec`)
- derived verdicts (`GeofenceDecision`)
- protocol enums (`Mode`, `Role`, `SessionState`)

Wire payloads use camelCase (`accuracyMeters`, `withinRadius`); Python code uses
snake_case. Both spellings are accepted on input.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from labgate.core.geo import GeoPoint as CoreGeoPoint
from labgate.core.geo import accuracy_level
from labgate.core.time import ensure_utc, from_epoch, utc_now


class WireModel(BaseModel):
    """Base for models that travel inside relay frames."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Mode(str, Enum):
    LOGIN = "login"
    REGISTRATION = "registration"


class Role(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"


class SessionState(str, Enum):
    PENDING = "PENDING"
    MOBILE_PAIRED = "MOBILE_PAIRED"
    AUTH_CONFIRMED = "AUTH_CONFIRMED"
    LOCATION_REQUESTED = "LOCATION_REQUESTED"
    LOCATION_RECEIVED = "LOCATION_RECEIVED"
    DECIDED = "DECIDED"
    CLOSED = "CLOSED"


SESSION_STATE_ORDER: tuple[SessionState, ...] = tuple(SessionState)


class LocationSample(WireModel):
    """One device location read. Out-of-range coordinates never enter the protocol."""

    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    accuracy_meters: float = Field(..., ge=0)
    captured_at: datetime = Field(default_factory=utc_now)

    @field_validator("captured_at", mode="before")
    @classmethod
    def _parse_captured_at(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return from_epoch(value)
        return value

    @field_validator("captured_at")
    @classmethod
    def _normalize_captured_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def point(self) -> CoreGeoPoint:
        return CoreGeoPoint(lat=self.latitude, lon=self.longitude)

    @property
    def accuracy_level(self) -> str:
        return accuracy_level(self.accuracy_meters)


class GeofenceSpec(WireModel):
    """A registered facility: reference coordinate plus admission radius."""

    center_latitude: float = Field(..., ge=-90, le=90)
    center_longitude: float = Field(..., ge=-180, le=180)
    radius_meters: float = Field(..., gt=0)
    name: str | None = None

    @property
    def center(self) -> CoreGeoPoint:
        return CoreGeoPoint(lat=self.center_latitude, lon=self.center_longitude)


class GeofenceDecision(WireModel):
    """Admission verdict for one sample against one geofence."""

    distance_meters: float = Field(..., ge=0)
    within_radius: bool
    radius_meters: float = Field(..., gt=0)
    evaluated_at: datetime = Field(default_factory=utc_now)

    def to_decision_frame(self) -> dict:
        """Payload of the relay's `decision` frame."""
        return {
            "withinRadius": self.within_radius,
            "distanceMeters": self.distance_meters,
            "radiusMeters": self.radius_meters,
        }
