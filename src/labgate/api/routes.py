"""
API routes.

Endpoints:
- POST `/api/pairing`: issue a session id, challenge and mobile deep link for the desktop.
- POST `/api/geofence/verify`: evaluate a location sample against an account's geofence.
- GET  `/api/relay/sessions/{session_id}`: public session state (no credential payload).
- GET  `/api/health`: liveness plus registry counters.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import Field

from labgate.config.settings import get_settings
from labgate.core.errors import LabGateError, NoGeofenceConfigured, SessionNotFoundError
from labgate.credentials.challenge import CredentialChallengeHandler
from labgate.credentials.directory import build_credential_directory
from labgate.domain.models import LocationSample, Mode, WireModel
from labgate.geofence.registry import GeofenceRegistry, build_geofence_registry
from labgate.geofence.verifier import GeofenceVerifier
from labgate.peers.deeplink import PairingContext, build_deep_link, new_session_id
from labgate.relay.registry import SessionRegistry

router = APIRouter()


class PairingRequest(WireModel):
    user_identifier: str = Field(..., min_length=1)
    mode: Mode = Mode.LOGIN
    require_location: bool = True


class VerifyRequest(WireModel):
    account_id: str = Field(..., min_length=1)
    sample: LocationSample


@lru_cache
def get_geofence_registry() -> GeofenceRegistry:
    return build_geofence_registry(get_settings())


@lru_cache
def get_verifier() -> GeofenceVerifier:
    return GeofenceVerifier(get_geofence_registry())


@lru_cache
def get_challenge_handler() -> CredentialChallengeHandler:
    settings = get_settings()
    return CredentialChallengeHandler(build_credential_directory(settings), settings.credentials)


@lru_cache
def get_session_registry() -> SessionRegistry:
    return SessionRegistry(get_verifier(), settings=get_settings().relay)


@router.post("/api/pairing")
def post_pairing(request: PairingRequest) -> dict[str, Any]:
    """Issue everything the desktop needs to render the pairing QR code."""
    settings = get_settings()
    challenge = get_challenge_handler().issue_challenge(request.user_identifier, request.mode)
    pairing = PairingContext(
        session_id=new_session_id(),
        user_identifier=request.user_identifier,
        challenge=challenge,
        mode=request.mode,
        require_location=request.require_location,
    )
    return {
        "sessionId": pairing.session_id,
        "challenge": pairing.challenge,
        "userIdentifier": pairing.user_identifier,
        "mode": pairing.mode.value,
        "requireLocation": pairing.require_location,
        "deepLink": build_deep_link(settings.relay.public_url, pairing, path=settings.relay.mobile_path),
        "relayUrl": settings.relay.websocket_url,
    }


@router.post("/api/geofence/verify")
def post_geofence_verify(request: VerifyRequest) -> dict[str, Any]:
    """Evaluate a sample for an account (used by the post-login re-verification loop)."""
    try:
        decision = get_verifier().verify(request.account_id, request.sample)
    except NoGeofenceConfigured as e:
        raise HTTPException(status_code=404, detail=e.as_detail()) from e
    except LabGateError as e:
        raise HTTPException(status_code=400, detail=e.as_detail()) from e
    except Exception as e:
        raise HTTPException(
            status_code=503,
            detail={"code": "INTERNAL_ERROR", "message": "Geofence registry unavailable."},
        ) from e
    return {
        **decision.to_wire(),
        "accuracyLevel": request.sample.accuracy_level,
    }


@router.get("/api/relay/sessions/{session_id}")
def get_relay_session(session_id: str) -> dict[str, Any]:
    try:
        return get_session_registry().describe(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.as_detail()) from e


@router.get("/api/health")
def get_health() -> dict[str, Any]:
    settings = get_settings()
    return {"status": "ok", "name": settings.app.name, "relay": get_session_registry().stats()}
