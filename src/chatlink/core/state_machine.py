from __future__ import annotations

"""Connection lifecycle as a pure state machine.

``transition(connection, event, now, policy)`` returns the next Connection
record plus a list of effects for the controller to carry out. Nothing here
touches an automation client, a timer, or the registry.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, List, NewType, Optional, Tuple, Union

from ..config import AUTH_TRACK, TRANSPORT_TRACK, BackoffPolicy

IdentityKey = NewType("IdentityKey", str)


class ConnectionState(str, Enum):
    INITIALIZING = "initializing"
    LOADING = "loading"
    QR_ISSUED = "qr_issued"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"


LIVE_STATES: FrozenSet[ConnectionState] = frozenset({ConnectionState.AUTHENTICATED, ConnectionState.READY})
# States that end a bounded wait for the first meaningful status
SETTLED_STATES: FrozenSet[ConnectionState] = frozenset(
    {ConnectionState.QR_ISSUED, ConnectionState.AUTHENTICATED, ConnectionState.READY, ConnectionState.DISCONNECTED}
)

STATE_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.INITIALIZING: frozenset(
        {
            ConnectionState.LOADING,
            ConnectionState.QR_ISSUED,
            ConnectionState.AUTHENTICATED,
            ConnectionState.READY,
            ConnectionState.DISCONNECTED,
        }
    ),
    ConnectionState.LOADING: frozenset(
        {ConnectionState.QR_ISSUED, ConnectionState.AUTHENTICATED, ConnectionState.READY, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.QR_ISSUED: frozenset(
        {
            ConnectionState.QR_ISSUED,
            ConnectionState.LOADING,
            ConnectionState.AUTHENTICATED,
            ConnectionState.READY,
            ConnectionState.DISCONNECTED,
        }
    ),
    ConnectionState.AUTHENTICATED: frozenset(
        {ConnectionState.LOADING, ConnectionState.READY, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.READY: frozenset({ConnectionState.AUTHENTICATED, ConnectionState.DISCONNECTED}),
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.DISCONNECTED}),
}


def is_valid_transition(current: ConnectionState, target: ConnectionState) -> bool:
    return target in STATE_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class Connection:
    key: IdentityKey
    state: ConnectionState = ConnectionState.INITIALIZING
    qr_code: Optional[str] = None
    reconnect_attempts: int = 0
    last_reconnect_at: Optional[float] = None
    auto_recover: bool = True
    max_attempts: int = 5
    last_error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.state in LIVE_STATES


# --- lifecycle events ---
@dataclass(frozen=True)
class Loading:
    pass


@dataclass(frozen=True)
class QrIssued:
    artifact: str


@dataclass(frozen=True)
class Authenticated:
    pass


@dataclass(frozen=True)
class Ready:
    pass


@dataclass(frozen=True)
class AuthFailure:
    reason: str = ""


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""


@dataclass(frozen=True)
class LaunchFailed:
    error: str = ""


LifecycleEvent = Union[Loading, QrIssued, Authenticated, Ready, AuthFailure, Disconnected, LaunchFailed]


# --- effects ---
@dataclass(frozen=True)
class RegisterMessageHandlers:
    pass


@dataclass(frozen=True)
class NotifyWaiters:
    state: ConnectionState


@dataclass(frozen=True)
class ScheduleReconnect:
    delay_s: float
    attempt: int
    track: str


@dataclass(frozen=True)
class RecoveryExhausted:
    attempts: int


@dataclass(frozen=True)
class ReleaseClient:
    pass


Effect = Union[RegisterMessageHandlers, NotifyWaiters, ScheduleReconnect, RecoveryExhausted, ReleaseClient]


def plan_reconnect(
    conn: Connection, now: float, track: str, policy: BackoffPolicy
) -> Tuple[Connection, List[Effect]]:
    """Decide whether a dropped connection gets another automatic attempt.

    The attempt counter and timestamp are bumped here, before the timer exists,
    so a second drop inside the same window sees the interval guard.
    """
    if not conn.auto_recover:
        return conn, []
    if conn.reconnect_attempts >= conn.max_attempts:
        return conn, [RecoveryExhausted(attempts=conn.reconnect_attempts)]
    floor, _ceiling = policy.window(track)
    if conn.last_reconnect_at is not None and now - conn.last_reconnect_at < floor:
        return conn, []
    attempt = conn.reconnect_attempts + 1
    delay = policy.delay_for(track, attempt)
    updated = replace(conn, reconnect_attempts=attempt, last_reconnect_at=now)
    return updated, [ScheduleReconnect(delay_s=delay, attempt=attempt, track=track)]


def _target_state(event: LifecycleEvent) -> ConnectionState:
    if isinstance(event, Loading):
        return ConnectionState.LOADING
    if isinstance(event, QrIssued):
        return ConnectionState.QR_ISSUED
    if isinstance(event, Authenticated):
        return ConnectionState.AUTHENTICATED
    if isinstance(event, Ready):
        return ConnectionState.READY
    return ConnectionState.DISCONNECTED


def transition(
    conn: Connection, event: LifecycleEvent, now: float, policy: BackoffPolicy
) -> Tuple[Connection, List[Effect]]:
    target = _target_state(event)
    if not is_valid_transition(conn.state, target):
        return conn, []

    if isinstance(event, Loading):
        return replace(conn, state=target), []

    if isinstance(event, QrIssued):
        return replace(conn, state=target, qr_code=event.artifact), [NotifyWaiters(target)]

    if isinstance(event, Authenticated):
        return replace(conn, state=target, qr_code=None), [NotifyWaiters(target)]

    if isinstance(event, Ready):
        nxt = replace(conn, state=target, qr_code=None, reconnect_attempts=0, last_error=None)
        return nxt, [RegisterMessageHandlers(), NotifyWaiters(target)]

    if isinstance(event, LaunchFailed):
        nxt = replace(conn, state=target, qr_code=None, last_error=event.error or "launch failed")
        return nxt, [NotifyWaiters(target), ReleaseClient()]

    track = AUTH_TRACK if isinstance(event, AuthFailure) else TRANSPORT_TRACK
    reason = event.reason if isinstance(event, (AuthFailure, Disconnected)) else ""
    dropped = replace(conn, state=target, qr_code=None, last_error=reason or conn.last_error)
    nxt, effects = plan_reconnect(dropped, now, track, policy)
    out: List[Effect] = [NotifyWaiters(target)]
    out.extend(effects)
    if any(isinstance(e, RecoveryExhausted) for e in effects):
        out.append(ReleaseClient())
    return nxt, out
