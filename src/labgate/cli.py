"""
LabGate CLI entrypoint.

Intended for running the relay and for quick local checks without a browser:
- `serve`: run the relay (HTTP + WebSocket) with uvicorn.
- `distance`: great-circle distance between two coordinates.
- `check`: evaluate a coordinate against an account's geofence.
- `pair-link`: print a mobile pairing deep link.
- `desktop`: run the desktop peer against a relay from the terminal.
"""

from __future__ import annotations

import argparse
import json
from typing import Any

from labgate.config.settings import get_settings
from labgate.core.errors import NoGeofenceConfigured
from labgate.core.geo import GeoPoint, format_distance, haversine_m, is_valid_coordinate
from labgate.core.logging import configure_logging
from labgate.core.retry import RetryPolicy
from labgate.domain.models import LocationSample, Mode
from labgate.geofence.registry import build_geofence_registry
from labgate.geofence.verifier import GeofenceVerifier
from labgate.peers import desktop
from labgate.peers.deeplink import build_deep_link, new_pairing
from labgate.peers.effects import RenderPairing
from labgate.peers.transport import CONNECT_RETRY_ON, RelayClient


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("labgate.api.app:app", host=args.host, port=int(args.port), reload=bool(args.reload))
    return 0


def _cmd_distance(args: argparse.Namespace) -> int:
    for lat, lon in [(args.lat1, args.lon1), (args.lat2, args.lon2)]:
        if not is_valid_coordinate(lat, lon):
            print(f"Invalid coordinate: {lat}, {lon}")
            return 2
    meters = haversine_m(GeoPoint(args.lat1, args.lon1), GeoPoint(args.lat2, args.lon2))
    print(f"{meters:.2f} m ({format_distance(meters)})")
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    if not is_valid_coordinate(args.lat, args.lon):
        print(f"Invalid coordinate: {args.lat}, {args.lon}")
        return 2
    if args.accuracy < 0:
        print(f"Invalid accuracy: {args.accuracy}")
        return 2
    settings = get_settings()
    verifier = GeofenceVerifier(build_geofence_registry(settings))
    sample = LocationSample(latitude=args.lat, longitude=args.lon, accuracy_meters=args.accuracy)
    try:
        decision = verifier.verify(args.account, sample)
    except NoGeofenceConfigured as e:
        print(json.dumps(e.as_detail(), indent=2))
        return 2

    payload: dict[str, Any] = {
        **decision.to_wire(),
        "distance": format_distance(decision.distance_meters),
        "accuracyLevel": sample.accuracy_level,
    }
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0 if decision.within_radius else 1


def _cmd_pair_link(args: argparse.Namespace) -> int:
    settings = get_settings()
    pairing = new_pairing(args.user, Mode(args.mode), not args.no_location)
    print(build_deep_link(settings.relay.public_url, pairing, path=settings.relay.mobile_path))
    return 0


def _print_pairing(effect: RenderPairing) -> None:
    print(f"Session: {effect.session_id}")
    print(f"Open on your phone: {effect.deep_link}")


def _cmd_desktop(args: argparse.Namespace) -> int:
    settings = get_settings()
    client = RelayClient(
        args.relay_url or settings.relay.websocket_url,
        on_frame=lambda frame: peer.on_frame(frame),
        on_closed=lambda: peer.on_transport_closed(),
        retry=RetryPolicy.from_settings(settings.retry, retry_on=CONNECT_RETRY_ON),
        heartbeat_interval_seconds=settings.relay.heartbeat_interval_seconds,
    )
    peer = desktop.DesktopPeer(
        send=client.send,
        public_url=settings.relay.public_url,
        mobile_path=settings.relay.mobile_path,
        render=_print_pairing,
    )
    client.connect()
    try:
        peer.start(args.user, Mode(args.mode), not args.no_location)
        state = peer.wait_finished(timeout=args.timeout)
    finally:
        client.close()

    if isinstance(state, desktop.Completed):
        print("Access granted.")
        if state.decision is not None:
            print(f"Distance from lab: {format_distance(state.decision.distance_meters)}")
        return 0
    if isinstance(state, desktop.Failed):
        print(f"Access denied: {state.code} {state.message}".rstrip())
        if state.distance_meters is not None and state.radius_meters is not None:
            print(
                f"You are {format_distance(state.distance_meters)} away; "
                f"allowed radius is {format_distance(state.radius_meters)}."
            )
        return 1
    print("Timed out waiting for the mobile device.")
    return 1


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the LabGate CLI."""
    parser = argparse.ArgumentParser(prog="labgate")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the relay server.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=_cmd_serve)

    dist = sub.add_parser("distance", help="Great-circle distance between two coordinates.")
    dist.add_argument("lat1", type=float)
    dist.add_argument("lon1", type=float)
    dist.add_argument("lat2", type=float)
    dist.add_argument("lon2", type=float)
    dist.set_defaults(func=_cmd_distance)

    check = sub.add_parser("check", help="Evaluate a coordinate against an account's geofence.")
    check.add_argument("--account", required=True)
    check.add_argument("--lat", required=True, type=float)
    check.add_argument("--lon", required=True, type=float)
    check.add_argument("--accuracy", type=float, default=10.0, help="Reported GPS accuracy in meters")
    check.set_defaults(func=_cmd_check)

    for name, func, help_text in [
        ("pair-link", _cmd_pair_link, "Print a mobile pairing deep link."),
        ("desktop", _cmd_desktop, "Run the desktop peer against a relay."),
    ]:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--user", required=True, help="Account identifier (e-mail)")
        p.add_argument("--mode", choices=[m.value for m in Mode], default=Mode.LOGIN.value)
        p.add_argument("--no-location", action="store_true", help="Skip the geofence check")
        if name == "desktop":
            p.add_argument("--relay-url", default=None)
            p.add_argument("--timeout", type=float, default=300.0, help="Seconds to wait for the mobile device")
        p.set_defaults(func=func)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint callable used by `python -m labgate.cli`."""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    func: Any = getattr(args, "func")
    return int(func(args))


if __name__ == "__main__":
    raise SystemExit(main())
