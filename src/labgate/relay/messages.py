"""
Relay message catalog.

Every frame is `{"type": str, "data": {...}}`. Inbound `data` payloads are validated
with Pydantic; a frame that fails validation (unknown type, missing field, coordinates
out of range) is a protocol violation.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field, ValidationError

from labgate.core.errors import MalformedMessageError
from labgate.domain.models import LocationSample, Mode, Role, WireModel

# desktop -> relay
REGISTER_DESKTOP = "register_desktop"
REQUEST_LOCATION = "request_location"
# mobile -> relay
REGISTER_MOBILE = "register_mobile"
AUTH_RESULT = "auth_result"
LOCATION_RESULT = "location_result"
# either -> relay
HEARTBEAT = "heartbeat"
CLIENT_ERROR = "error"

# relay -> peer
REGISTERED = "registered"
MOBILE_CONNECTED = "mobile_connected"
AUTH_CONFIRMED = "auth_confirmed"
LOCATION_REQUESTED = "location_requested"
DECISION = "decision"
HEARTBEAT_ACK = "heartbeat_ack"
ERROR = "error"


class RegisterDesktopData(WireModel):
    session_id: str = Field(..., min_length=1)
    user_identifier: str = Field(..., min_length=1)
    mode: Mode = Mode.LOGIN
    require_location: bool = False


class RegisterMobileData(WireModel):
    session_id: str = Field(..., min_length=1)
    user_identifier: str = Field(..., min_length=1)
    challenge: str = Field(..., min_length=1)


class AuthResultData(WireModel):
    session_id: str = Field(..., min_length=1)
    auth_payload: dict[str, Any]


class RequestLocationData(WireModel):
    session_id: str = Field(..., min_length=1)


class LocationResultData(WireModel):
    session_id: str = Field(..., min_length=1)
    sample: LocationSample


class HeartbeatData(WireModel):
    timestamp: float | None = None


class ClientErrorData(WireModel):
    code: str = "CLIENT_ERROR"
    message: str = ""
    session_id: str | None = None


INBOUND_MODELS: dict[str, type[WireModel]] = {
    REGISTER_DESKTOP: RegisterDesktopData,
    REQUEST_LOCATION: RequestLocationData,
    REGISTER_MOBILE: RegisterMobileData,
    AUTH_RESULT: AuthResultData,
    LOCATION_RESULT: LocationResultData,
    HEARTBEAT: HeartbeatData,
    CLIENT_ERROR: ClientErrorData,
}

# Which role may send which frame once registered.
ALLOWED_BY_ROLE: dict[Role, frozenset[str]] = {
    Role.DESKTOP: frozenset({REGISTER_DESKTOP, REQUEST_LOCATION, HEARTBEAT, CLIENT_ERROR}),
    Role.MOBILE: frozenset({REGISTER_MOBILE, AUTH_RESULT, LOCATION_RESULT, HEARTBEAT, CLIENT_ERROR}),
}


def parse_inbound(frame: Any) -> tuple[str, WireModel]:
    """Validate a raw frame and return `(type, data_model)`.

    Raises:
        MalformedMessageError: If the frame is not a known, well-formed message.
    """
    if not isinstance(frame, dict):
        raise MalformedMessageError("Frame must be a JSON object with 'type' and 'data'.")
    msg_type = frame.get("type")
    model = INBOUND_MODELS.get(msg_type) if isinstance(msg_type, str) else None
    if model is None:
        raise MalformedMessageError(f"Unknown message type: {msg_type!r}")
    data = frame.get("data") or {}
    try:
        return msg_type, model.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedMessageError(f"Invalid '{msg_type}' payload: {fields}") from exc


def envelope(msg_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"type": msg_type, "data": dict(data or {})}


def error_frame(code: str, message: str) -> dict[str, Any]:
    return envelope(ERROR, {"code": code, "message": message})
