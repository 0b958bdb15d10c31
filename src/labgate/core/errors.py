"""
Error taxonomy.

Every error carries a stable `code` that is sent on the wire in `error{code, message}`
frames and in HTTP error details, so peers can branch on it without parsing text.
"""

from __future__ import annotations

from typing import Literal

CredentialFailureReason = Literal["NotAllowed", "InvalidState", "NotSupported", "VerificationFailed"]


class LabGateError(Exception):
    """Base class for protocol and peer errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def as_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class RelayError(LabGateError):
    """Raised by the session registry; always reported to the originating connection."""


class SlotOccupiedError(RelayError):
    code = "SLOT_OCCUPIED"


class SessionNotFoundError(RelayError):
    code = "SESSION_NOT_FOUND"


class ProtocolStateError(RelayError):
    """A message arrived in a state that does not accept it."""

    code = "PROTOCOL_STATE"


class PeerUnavailableError(RelayError):
    """The other peer disconnected mid-flow."""

    code = "PEER_UNAVAILABLE"


class SessionExpiredError(RelayError):
    code = "SESSION_EXPIRED"


class MalformedMessageError(RelayError):
    """Envelope failed validation; treated as a protocol violation."""

    code = "MALFORMED_MESSAGE"


class NoGeofenceConfigured(LabGateError):
    """The account has no registered geofence.

    Callers treat this as "admission denied, configuration error", which is distinct
    from a sample that lies outside the radius.
    """

    code = "NO_GEOFENCE_CONFIGURED"


class CredentialError(LabGateError):
    """The biometric ceremony failed on the mobile peer."""

    code = "CREDENTIAL_ERROR"

    def __init__(self, reason: CredentialFailureReason, message: str = ""):
        super().__init__(message or _CREDENTIAL_MESSAGES.get(reason, "Authentication failed"))
        self.reason = reason


_CREDENTIAL_MESSAGES: dict[str, str] = {
    "NotAllowed": "Authentication was cancelled or timed out",
    "InvalidState": "No passkey found for this device",
    "NotSupported": "Passkey authentication not supported",
    "VerificationFailed": "Passkey could not be verified for this account",
}


class LocationError(LabGateError):
    """Device-level failure to read a location."""

    reason = "Unavailable"
    code = "LOCATION_UNAVAILABLE"


class LocationPermissionDenied(LocationError):
    reason = "PermissionDenied"
    code = "LOCATION_PERMISSION_DENIED"


class LocationUnavailable(LocationError):
    reason = "Unavailable"
    code = "LOCATION_UNAVAILABLE"


class LocationTimeout(LocationError):
    reason = "Timeout"
    code = "LOCATION_TIMEOUT"
