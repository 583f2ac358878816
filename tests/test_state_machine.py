from dataclasses import replace

import pytest

from src.chatlink.config import AUTH_TRACK, TRANSPORT_TRACK, BackoffPolicy
from src.chatlink.core.state_machine import (
    AuthFailure,
    Authenticated,
    Connection,
    ConnectionState,
    Disconnected,
    IdentityKey,
    LaunchFailed,
    Loading,
    NotifyWaiters,
    QrIssued,
    Ready,
    RecoveryExhausted,
    RegisterMessageHandlers,
    ReleaseClient,
    ScheduleReconnect,
    is_valid_transition,
    transition,
)

POLICY = BackoffPolicy()
T0 = 1_700_000_000.0


def _conn(state=ConnectionState.INITIALIZING, **kw):
    return replace(Connection(key=IdentityKey("acct-1")), state=state, **kw)


def _schedules(effects):
    return [e for e in effects if isinstance(e, ScheduleReconnect)]


def test_happy_path_to_ready_resets_attempts_and_registers_handlers():
    conn = _conn(reconnect_attempts=3, last_reconnect_at=T0 - 500)
    conn, _ = transition(conn, Loading(), T0, POLICY)
    assert conn.state == ConnectionState.LOADING
    conn, effects = transition(conn, QrIssued("data:image/png;base64,xx"), T0, POLICY)
    assert conn.state == ConnectionState.QR_ISSUED
    assert conn.qr_code == "data:image/png;base64,xx"
    assert NotifyWaiters(ConnectionState.QR_ISSUED) in effects

    conn, _ = transition(conn, Authenticated(), T0, POLICY)
    assert conn.qr_code is None
    conn, effects = transition(conn, Ready(), T0, POLICY)
    assert conn.state == ConnectionState.READY
    assert conn.connected
    assert conn.reconnect_attempts == 0
    assert isinstance(effects[0], RegisterMessageHandlers)


def test_transport_drop_schedules_floor_delay_and_bumps_attempt_before_firing():
    conn = _conn(ConnectionState.READY)
    nxt, effects = transition(conn, Disconnected("NAVIGATION"), T0, POLICY)
    assert nxt.state == ConnectionState.DISCONNECTED
    assert nxt.reconnect_attempts == 1
    assert nxt.last_reconnect_at == T0
    assert nxt.last_error == "NAVIGATION"
    [sched] = _schedules(effects)
    assert sched == ScheduleReconnect(delay_s=30.0, attempt=1, track=TRANSPORT_TRACK)


def test_second_drop_inside_interval_window_schedules_nothing():
    conn = _conn(ConnectionState.READY)
    conn, _ = transition(conn, Disconnected("NAVIGATION"), T0, POLICY)
    again, effects = transition(conn, Disconnected("NAVIGATION"), T0 + 10, POLICY)
    assert _schedules(effects) == []
    assert again.reconnect_attempts == 1


def test_auth_failure_uses_longer_track():
    conn = _conn(ConnectionState.QR_ISSUED)
    _, effects = transition(conn, AuthFailure("bad session"), T0, POLICY)
    [sched] = _schedules(effects)
    assert sched.track == AUTH_TRACK
    assert sched.delay_s == 60.0


@pytest.mark.parametrize(
    "attempt,track,expected",
    [(1, TRANSPORT_TRACK, 30.0), (2, TRANSPORT_TRACK, 60.0), (5, TRANSPORT_TRACK, 300.0), (4, AUTH_TRACK, 480.0), (5, AUTH_TRACK, 600.0)],
)
def test_delay_doubles_and_caps(attempt, track, expected):
    assert POLICY.delay_for(track, attempt) == expected


def test_exhausted_attempts_release_client_and_stop_scheduling():
    conn = _conn(ConnectionState.READY, reconnect_attempts=5, last_reconnect_at=T0 - 1000)
    nxt, effects = transition(conn, Disconnected("NAVIGATION"), T0, POLICY)
    assert _schedules(effects) == []
    assert any(isinstance(e, RecoveryExhausted) for e in effects)
    assert any(isinstance(e, ReleaseClient) for e in effects)
    assert nxt.reconnect_attempts == 5


def test_attempt_count_never_exceeds_max():
    conn = _conn(ConnectionState.READY)
    now = T0
    for _ in range(12):
        conn, _ = transition(conn, Disconnected("lost"), now, POLICY)
        assert conn.reconnect_attempts <= conn.max_attempts
        now += 1000
    assert conn.reconnect_attempts == conn.max_attempts


def test_auto_recover_disabled_only_notifies():
    conn = _conn(ConnectionState.READY, auto_recover=False)
    nxt, effects = transition(conn, Disconnected("lost"), T0, POLICY)
    assert nxt.state == ConnectionState.DISCONNECTED
    assert effects == [NotifyWaiters(ConnectionState.DISCONNECTED)]


def test_launch_failure_is_terminal_without_reconnect():
    conn = _conn()
    nxt, effects = transition(conn, LaunchFailed("Target closed"), T0, POLICY)
    assert nxt.state == ConnectionState.DISCONNECTED
    assert nxt.last_error == "Target closed"
    assert _schedules(effects) == []
    assert ReleaseClient() in effects


def test_invalid_transitions_are_ignored():
    conn = _conn(ConnectionState.DISCONNECTED)
    assert not is_valid_transition(ConnectionState.DISCONNECTED, ConnectionState.READY)
    same, effects = transition(conn, Ready(), T0, POLICY)
    assert same is conn
    assert effects == []
