"""
Session Registry (relay).

The registry owns every pairing session and every peer connection. It routes protocol
frames between the desktop and mobile peer of a session and runs the geofence check
itself when the desktop delegates it.

Concurrency:
- each session carries its own lock; every state transition of a session happens
  under that lock, so operations on one session are serialized while operations on
  different sessions run in parallel;
- `_index_lock` only guards the session/connection maps and is never held while
  waiting for a session lock;
- outbound frames go through the connection's `send` callable, which must not block
  (the WebSocket layer enqueues), so frames to one connection keep their order.

Session state only moves forward:
PENDING -> MOBILE_PAIRED -> AUTH_CONFIRMED -> LOCATION_REQUESTED -> LOCATION_RECEIVED
-> DECIDED -> CLOSED, with AUTH_CONFIRMED -> DECIDED when no location is required.
Any state may jump to CLOSED; CLOSED is terminal.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

from labgate.config.settings import RelaySettings
from labgate.core.errors import (
    LabGateError,
    MalformedMessageError,
    NoGeofenceConfigured,
    PeerUnavailableError,
    ProtocolStateError,
    SessionExpiredError,
    SessionNotFoundError,
    SlotOccupiedError,
)
from labgate.domain.models import (
    SESSION_STATE_ORDER,
    GeofenceDecision,
    LocationSample,
    Mode,
    Role,
    SessionState,
)
from labgate.geofence.verifier import GeofenceVerifier
from labgate.relay import messages as m
from labgate.relay.attempts import AttemptStatus, LoggingAttemptSink, LoginAttempt, LoginAttemptSink

logger = logging.getLogger(__name__)

Send = Callable[[dict[str, Any]], None]
Close = Callable[[], None]


@dataclass
class Connection:
    """Relay-side handle to one peer socket."""

    connection_id: str
    send: Send
    close: Close | None = None
    role: Role | None = None
    session_id: str | None = None
    last_heartbeat_at: float = 0.0


@dataclass
class Session:
    session_id: str
    user_identifier: str
    mode: Mode
    require_location: bool
    state: SessionState = SessionState.PENDING
    desktop_conn: str | None = None
    mobile_conn: str | None = None
    challenge: str | None = None
    auth_payload: dict[str, Any] | None = None
    decision: GeofenceDecision | None = None
    admitted: bool | None = None
    close_reason: str | None = None
    created_at: float = 0.0
    last_activity_at: float = 0.0
    closed_at: float | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def slot(self, role: Role) -> str | None:
        return self.desktop_conn if role is Role.DESKTOP else self.mobile_conn

    def describe(self) -> dict[str, Any]:
        """Public view of the session (the credential payload is never exposed)."""
        return {
            "sessionId": self.session_id,
            "state": self.state.value,
            "mode": self.mode.value,
            "requireLocation": self.require_location,
            "userIdentifier": self.user_identifier,
            "desktopConnected": self.desktop_conn is not None,
            "mobileConnected": self.mobile_conn is not None,
            "admitted": self.admitted,
            "decision": self.decision.to_decision_frame() if self.decision else None,
            "closeReason": self.close_reason,
        }


def _same_user(a: str, b: str) -> bool:
    return a.strip().lower() == b.strip().lower()


class SessionRegistry:
    def __init__(
        self,
        verifier: GeofenceVerifier,
        *,
        settings: RelaySettings | None = None,
        attempts: LoginAttemptSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._verifier = verifier
        self._settings = settings or RelaySettings()
        self._attempts = attempts or LoggingAttemptSink()
        self._clock = clock
        self._index_lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._connections: dict[str, Connection] = {}

    # -- lookups -----------------------------------------------------------------

    @contextmanager
    def _locked(self, session_id: str) -> Iterator[Session]:
        with self._index_lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session '{session_id}' does not exist.")
        with session.lock:
            with self._index_lock:
                current = self._sessions.get(session_id)
            if current is not session:
                raise SessionNotFoundError(f"Session '{session_id}' does not exist.")
            yield session

    def _connection(self, connection_id: str) -> Connection | None:
        with self._index_lock:
            return self._connections.get(connection_id)

    def _require_connection(self, connection_id: str) -> Connection:
        conn = self._connection(connection_id)
        if conn is None:
            raise ProtocolStateError(f"Unknown connection '{connection_id}'.")
        return conn

    def session_state(self, session_id: str) -> SessionState | None:
        with self._index_lock:
            session = self._sessions.get(session_id)
        return session.state if session else None

    def describe(self, session_id: str) -> dict[str, Any]:
        with self._locked(session_id) as session:
            return session.describe()

    def stats(self) -> dict[str, int]:
        with self._index_lock:
            sessions = list(self._sessions.values())
            connections = len(self._connections)
        open_sessions = sum(1 for s in sessions if s.state is not SessionState.CLOSED)
        return {
            "sessions": len(sessions),
            "open_sessions": open_sessions,
            "connections": connections,
        }

    # -- outbound ----------------------------------------------------------------

    def _send(self, connection_id: str | None, frame: dict[str, Any]) -> None:
        if connection_id is None:
            return
        conn = self._connection(connection_id)
        if conn is None:
            return
        try:
            conn.send(frame)
        except Exception:
            logger.warning(
                "Failed to send '%s' to connection=%s", frame.get("type"), connection_id, exc_info=True
            )

    def _notify(self, connection_ids: Iterable[str | None], frame: dict[str, Any]) -> None:
        for connection_id in connection_ids:
            self._send(connection_id, frame)

    # -- state machine -------------------------------------------------------------

    def _touch(self, session: Session) -> None:
        session.last_activity_at = self._clock()

    def _advance(self, session: Session, target: SessionState) -> None:
        current = session.state
        if current is SessionState.CLOSED:
            raise ProtocolStateError(f"Session '{session.session_id}' is closed.")
        if target is not SessionState.CLOSED and SESSION_STATE_ORDER.index(target) <= SESSION_STATE_ORDER.index(
            current
        ):
            raise ProtocolStateError(f"Illegal transition {current.value} -> {target.value}.")
        session.state = target
        self._touch(session)
        logger.info("Session %s: %s -> %s", session.session_id, current.value, target.value)

    def _expect(self, session: Session, expected: SessionState, action: str) -> None:
        if session.state is not expected:
            raise ProtocolStateError(
                f"'{action}' is only valid in {expected.value}; session '{session.session_id}' "
                f"is {session.state.value}."
            )

    def _close(
        self,
        session: Session,
        reason: str,
        *,
        error: LabGateError | None = None,
        notify: Iterable[str | None] = (),
    ) -> None:
        if session.state is SessionState.CLOSED:
            return
        self._advance(session, SessionState.CLOSED)
        session.close_reason = reason
        session.closed_at = self._clock()
        if error is not None:
            self._notify(notify, m.error_frame(error.code, error.message))

    def _record(
        self,
        session: Session,
        status: AttemptStatus,
        reason: str | None = None,
        sample: LocationSample | None = None,
    ) -> None:
        decision = session.decision
        self._attempts.record(
            LoginAttempt(
                session_id=session.session_id,
                user_identifier=session.user_identifier,
                mode=session.mode,
                status=status,
                reason=reason,
                distance_meters=decision.distance_meters if decision else None,
                radius_meters=decision.radius_meters if decision else None,
                accuracy_meters=sample.accuracy_meters if sample else None,
            )
        )

    # -- connections ---------------------------------------------------------------

    def open_connection(self, send: Send, close: Close | None = None) -> str:
        """Create a handle for a freshly connected transport."""
        connection_id = uuid.uuid4().hex
        conn = Connection(connection_id=connection_id, send=send, close=close, last_heartbeat_at=self._clock())
        with self._index_lock:
            self._connections[connection_id] = conn
        logger.debug("Connection opened: %s", connection_id)
        return connection_id

    def _ensure_unbound(self, conn: Connection) -> None:
        """A connection may only serve one open session at a time."""
        if conn.session_id is None:
            return
        state = self.session_state(conn.session_id)
        if state is not None and state is not SessionState.CLOSED:
            raise ProtocolStateError(
                f"Connection is already registered as {conn.role.value if conn.role else 'peer'} "
                f"for session '{conn.session_id}'."
            )

    def _bind(self, session: Session, conn: Connection, role: Role) -> None:
        if role is Role.DESKTOP:
            session.desktop_conn = conn.connection_id
        else:
            session.mobile_conn = conn.connection_id
        conn.role = role
        conn.session_id = session.session_id
        self._touch(session)

    def _registered_frame(self, session: Session, conn: Connection) -> dict[str, Any]:
        return m.envelope(
            m.REGISTERED,
            {
                "connectionId": conn.connection_id,
                "sessionId": session.session_id,
                "role": conn.role.value if conn.role else None,
                "state": session.state.value,
            },
        )

    def register_desktop(
        self,
        connection_id: str,
        session_id: str,
        user_identifier: str,
        mode: Mode,
        require_location: bool,
    ) -> str:
        """Create the session (or re-attach to it) and occupy its desktop slot.

        Raises:
            SlotOccupiedError: If another desktop connection holds the slot.
            ProtocolStateError: If the session is closed or belongs to another account.
        """
        conn = self._require_connection(connection_id)
        self._ensure_unbound(conn)
        with self._index_lock:
            if session_id not in self._sessions:
                now = self._clock()
                self._sessions[session_id] = Session(
                    session_id=session_id,
                    user_identifier=user_identifier,
                    mode=Mode(mode),
                    require_location=bool(require_location),
                    created_at=now,
                    last_activity_at=now,
                )
                logger.info(
                    "Session %s created mode=%s require_location=%s",
                    session_id,
                    Mode(mode).value,
                    bool(require_location),
                )

        with self._locked(session_id) as session:
            if session.state is SessionState.CLOSED:
                raise ProtocolStateError(f"Session '{session_id}' is closed; start a new session.")
            if session.desktop_conn is not None:
                raise SlotOccupiedError(f"Session '{session_id}' already has a desktop connection.")
            if not _same_user(session.user_identifier, user_identifier):
                raise ProtocolStateError(f"Session '{session_id}' belongs to a different account.")
            self._bind(session, conn, Role.DESKTOP)
            self._send(connection_id, self._registered_frame(session, conn))
        return connection_id

    def register_mobile(self, connection_id: str, session_id: str, user_identifier: str, challenge: str) -> str:
        """Occupy the session's mobile slot; the first pairing moves PENDING -> MOBILE_PAIRED.

        Raises:
            SessionNotFoundError: If no session exists for `session_id`.
            SlotOccupiedError: If another mobile connection holds the slot.
            ProtocolStateError: If the session is closed or belongs to another account.
        """
        conn = self._require_connection(connection_id)
        self._ensure_unbound(conn)
        with self._locked(session_id) as session:
            if session.state is SessionState.CLOSED:
                raise ProtocolStateError(f"Session '{session_id}' is closed; start a new session.")
            if session.mobile_conn is not None:
                raise SlotOccupiedError(f"Session '{session_id}' already has a mobile connection.")
            if not _same_user(session.user_identifier, user_identifier):
                raise ProtocolStateError(f"Session '{session_id}' belongs to a different account.")
            self._bind(session, conn, Role.MOBILE)

            if session.state is SessionState.PENDING:
                session.challenge = challenge
                self._advance(session, SessionState.MOBILE_PAIRED)
                self._send(connection_id, self._registered_frame(session, conn))
                self._send(session.desktop_conn, m.envelope(m.MOBILE_CONNECTED))
            else:
                # Reconnecting into an emptied slot: bring the mobile back in step.
                self._send(connection_id, self._registered_frame(session, conn))
                if session.state is SessionState.LOCATION_REQUESTED:
                    self._send(connection_id, m.envelope(m.LOCATION_REQUESTED, {"sessionId": session_id}))
        return connection_id

    # -- protocol operations ---------------------------------------------------------

    def submit_auth_result(self, session_id: str, auth_payload: dict[str, Any]) -> None:
        """Store the mobile's credential result and tell the desktop.

        Raises:
            ProtocolStateError: Unless the session is MOBILE_PAIRED (session untouched).
        """
        with self._locked(session_id) as session:
            self._expect(session, SessionState.MOBILE_PAIRED, m.AUTH_RESULT)
            session.auth_payload = dict(auth_payload)
            self._advance(session, SessionState.AUTH_CONFIRMED)
            self._send(session.desktop_conn, m.envelope(m.AUTH_CONFIRMED, {"authPayload": session.auth_payload}))

            if not session.require_location:
                session.admitted = True
                self._advance(session, SessionState.DECIDED)
                self._record(session, "success")
                self._close(session, "completed")

    def request_location(self, session_id: str) -> None:
        """Forward the desktop's location request to the mobile peer.

        Raises:
            ProtocolStateError: Unless the session is AUTH_CONFIRMED (session untouched).
            PeerUnavailableError: If the mobile slot is empty; the session is closed.
        """
        with self._locked(session_id) as session:
            self._expect(session, SessionState.AUTH_CONFIRMED, m.REQUEST_LOCATION)
            if session.mobile_conn is None or self._connection(session.mobile_conn) is None:
                self._record(session, "failed", PeerUnavailableError.code)
                self._close(session, PeerUnavailableError.code)
                raise PeerUnavailableError("The mobile device is no longer connected; start a new session.")
            self._advance(session, SessionState.LOCATION_REQUESTED)
            self._send(session.mobile_conn, m.envelope(m.LOCATION_REQUESTED, {"sessionId": session_id}))

    def submit_location(self, session_id: str, sample: LocationSample) -> GeofenceDecision:
        """Run the geofence check for the mobile's sample and push the decision to both peers.

        Raises:
            ProtocolStateError: Unless the session is LOCATION_REQUESTED (session untouched).
            NoGeofenceConfigured: The account has no geofence; the session is closed.
            LabGateError: The registry could not be reached; the session is closed.
        """
        with self._locked(session_id) as session:
            self._expect(session, SessionState.LOCATION_REQUESTED, m.LOCATION_RESULT)
            self._advance(session, SessionState.LOCATION_RECEIVED)
            try:
                decision = self._verifier.verify(session.user_identifier, sample)
            except NoGeofenceConfigured as exc:
                self._record(session, "failed", exc.code, sample)
                self._close(session, exc.code, error=exc, notify=(session.desktop_conn,))
                raise
            except Exception as exc:
                logger.error("Geofence verification failed for session=%s", session_id, exc_info=True)
                err = LabGateError("Geofence verification is temporarily unavailable.")
                self._record(session, "failed", err.code, sample)
                self._close(session, err.code, error=err, notify=(session.desktop_conn,))
                raise err from exc

            session.decision = decision
            session.admitted = decision.within_radius
            self._advance(session, SessionState.DECIDED)
            frame = m.envelope(m.DECISION, decision.to_decision_frame())
            self._notify((session.desktop_conn, session.mobile_conn), frame)
            self._record(session, "success" if decision.within_radius else "geofence_violation", None, sample)
            self._close(session, "decided")
            return decision

    def report_client_error(self, connection_id: str, code: str, message: str) -> None:
        """A peer reported a local failure: close the session and tell the other peer."""
        conn = self._require_connection(connection_id)
        if conn.session_id is None or conn.role is None:
            raise ProtocolStateError("Register before reporting errors.")
        with self._locked(conn.session_id) as session:
            if session.state is SessionState.CLOSED:
                return
            other = session.mobile_conn if conn.role is Role.DESKTOP else session.desktop_conn
            self._record(session, "failed", code)
            self._close(session, code)
            self._send(other, m.error_frame(code, message or f"The {conn.role.value} peer reported an error."))

    # -- liveness --------------------------------------------------------------------

    def heartbeat(self, connection_id: str, timestamp: float | None = None) -> None:
        conn = self._require_connection(connection_id)
        conn.last_heartbeat_at = self._clock()
        self._send(connection_id, m.envelope(m.HEARTBEAT_ACK, {"timestamp": timestamp}))

    def disconnect(self, connection_id: str, *, notify_peer: bool = False) -> None:
        """Destroy a connection and clear its slot.

        A plain disconnect leaves the session open so the peer can re-attach. With
        `notify_peer` (heartbeat timeout) the session is closed and the remaining
        peer receives PEER_UNAVAILABLE.
        """
        with self._index_lock:
            conn = self._connections.pop(connection_id, None)
        if conn is None or conn.session_id is None:
            return
        try:
            with self._locked(conn.session_id) as session:
                if conn.role is not None and session.slot(conn.role) == connection_id:
                    if conn.role is Role.DESKTOP:
                        session.desktop_conn = None
                    else:
                        session.mobile_conn = None
                    logger.info("Session %s: %s slot cleared", session.session_id, conn.role.value)
                if notify_peer and session.state is not SessionState.CLOSED and conn.role is not None:
                    other = session.mobile_conn if conn.role is Role.DESKTOP else session.desktop_conn
                    err = PeerUnavailableError(f"The {conn.role.value} peer stopped responding.")
                    self._record(session, "failed", err.code)
                    self._close(session, err.code, error=err, notify=(other,))
        except SessionNotFoundError:
            logger.debug("Connection %s outlived its session %s", connection_id, conn.session_id)

    def _force_close(self, conn: Connection, *, notify_peer: bool) -> None:
        if conn.close is not None:
            conn.close()
        self.disconnect(conn.connection_id, notify_peer=notify_peer)

    def sweep(self, now: float | None = None) -> dict[str, int]:
        """Drop silent connections, expire idle sessions, purge old closed sessions."""
        now = self._clock() if now is None else now
        idle_limit = self._settings.heartbeat_idle_limit_seconds
        with self._index_lock:
            silent = [c for c in self._connections.values() if now - c.last_heartbeat_at > idle_limit]
            sessions = list(self._sessions.values())

        for conn in silent:
            logger.warning(
                "Connection %s missed %s heartbeats; closing", conn.connection_id, self._settings.missed_heartbeats
            )
            self._force_close(conn, notify_peer=True)

        expired = 0
        purged = 0
        for session in sessions:
            with session.lock:
                if session.state is not SessionState.CLOSED:
                    if now - session.last_activity_at > self._settings.session_idle_timeout_seconds:
                        err = SessionExpiredError(f"Session '{session.session_id}' expired after inactivity.")
                        self._record(session, "failed", err.code)
                        self._close(session, err.code, error=err, notify=(session.desktop_conn, session.mobile_conn))
                        expired += 1
                elif session.closed_at is not None and now - session.closed_at > self._settings.closed_retention_seconds:
                    with self._index_lock:
                        self._sessions.pop(session.session_id, None)
                    purged += 1

        return {"connections_dropped": len(silent), "sessions_expired": expired, "sessions_purged": purged}

    # -- frame routing -----------------------------------------------------------------

    def dispatch(self, connection_id: str, frame: Any) -> None:
        """Handle one inbound frame; errors are reported back to the sender."""
        try:
            msg_type, data = m.parse_inbound(frame)
        except MalformedMessageError as exc:
            logger.warning("Protocol violation on connection=%s: %s", connection_id, exc.message)
            self._send(connection_id, m.error_frame(exc.code, exc.message))
            conn = self._connection(connection_id)
            if conn is not None:
                self._force_close(conn, notify_peer=False)
            return

        try:
            self._route(connection_id, msg_type, data)
        except LabGateError as exc:
            logger.warning("Rejected '%s' from connection=%s: %s %s", msg_type, connection_id, exc.code, exc.message)
            self._send(connection_id, m.error_frame(exc.code, exc.message))

    def _route(self, connection_id: str, msg_type: str, data: Any) -> None:
        if msg_type == m.HEARTBEAT:
            self.heartbeat(connection_id, data.timestamp)
            return
        if msg_type == m.REGISTER_DESKTOP:
            self.register_desktop(
                connection_id, data.session_id, data.user_identifier, data.mode, data.require_location
            )
            return
        if msg_type == m.REGISTER_MOBILE:
            self.register_mobile(connection_id, data.session_id, data.user_identifier, data.challenge)
            return

        conn = self._require_connection(connection_id)
        if conn.role is None or conn.session_id is None:
            raise ProtocolStateError(f"Register before sending '{msg_type}'.")
        if msg_type not in m.ALLOWED_BY_ROLE[conn.role]:
            raise ProtocolStateError(f"A {conn.role.value} peer may not send '{msg_type}'.")

        if msg_type == m.CLIENT_ERROR:
            self.report_client_error(connection_id, data.code, data.message)
            return
        if data.session_id != conn.session_id:
            raise ProtocolStateError(f"Connection is not registered for session '{data.session_id}'.")
        if msg_type == m.AUTH_RESULT:
            self.submit_auth_result(data.session_id, data.auth_payload)
        elif msg_type == m.REQUEST_LOCATION:
            self.request_location(data.session_id)
        elif msg_type == m.LOCATION_RESULT:
            self.submit_location(data.session_id, data.sample)
