from __future__ import annotations

"""Connection lifecycle controller.

Owns one automation client per registry entry. Client callbacks are turned
into state-machine events; the resulting effects (subscribe the router,
wake status waiters, arm a reconnect timer, release the client) are carried
out here. All of it runs on the event loop, so a Connection record is only
ever written from this module.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing

from ..config import GatewaySettings
from ..core.state_machine import (
    LIVE_STATES,
    SETTLED_STATES,
    AuthFailure,
    Authenticated,
    Connection,
    ConnectionState,
    Disconnected,
    Effect,
    IdentityKey,
    LaunchFailed,
    LifecycleEvent,
    Loading,
    NotifyWaiters,
    QrIssued,
    Ready,
    RecoveryExhausted,
    RegisterMessageHandlers,
    ReleaseClient,
    ScheduleReconnect,
    transition,
)
from ..domain.messages import to_chat_id
from ..domain.models import ConnectionStatus
from ..errors import NotReadyError
from ..infrastructure.events import publish_event
from ..infrastructure.session_registry import SessionRegistry
from ..observability.metrics import RECONNECTS_SCHEDULED
from .automation import LIFECYCLE_EVENTS, MESSAGE_EVENT, AutomationClient, ClientFactory, is_transient_launch_error
from .qr import render_data_uri

logger = logging.getLogger("chatlink.lifecycle")

MessageHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass
class _Runtime:
    client: Optional[AutomationClient] = None
    timer: Optional[asyncio.TimerHandle] = None
    launch_task: Optional["asyncio.Task[None]"] = None
    waiters: List["asyncio.Future[ConnectionState]"] = field(default_factory=list)
    subscribed: bool = False
    tasks: Set["asyncio.Task[Any]"] = field(default_factory=set)


def _reason(payload: Dict[str, Any]) -> str:
    return str(payload.get("reason") or payload.get("message") or "")


class LifecycleController:
    def __init__(
        self,
        settings: GatewaySettings,
        client_factory: ClientFactory,
        registry: Optional[SessionRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.registry = registry or SessionRegistry()
        self._factory = client_factory
        self._clock = clock
        self._runtimes: Dict[str, _Runtime] = {}
        self._message_handler: Optional[MessageHandler] = None

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    # --- queries ---
    def status(self, key: str) -> ConnectionStatus:
        conn = self.registry.get(key)
        if conn is None:
            return ConnectionStatus(connected=False, status=ConnectionState.DISCONNECTED.value)
        return ConnectionStatus(connected=conn.connected, status=conn.state.value, qr_code=conn.qr_code)

    def client_for(self, key: str) -> Optional[AutomationClient]:
        rt = self._runtimes.get(key)
        return rt.client if rt else None

    def has_pending_reconnect(self, key: str) -> bool:
        rt = self._runtimes.get(key)
        return bool(rt and rt.timer is not None and not rt.timer.cancelled())

    # --- commands ---
    def init(self, key: str) -> Connection:
        """Start a connection for ``key`` unless one is live or already launching.

        The check and the registry insert happen without yielding to the loop,
        so concurrent callers observe the same in-flight record.
        """
        existing = self.registry.get(key)
        if existing is not None:
            if existing.state in LIVE_STATES:
                return existing
            if existing.state != ConnectionState.DISCONNECTED and self.client_for(key) is not None:
                return existing
        attempts = existing.reconnect_attempts if existing else 0
        last = existing.last_reconnect_at if existing else None
        return self._start(key, attempts=attempts, last_reconnect_at=last)

    async def reconnect(self, key: str) -> Connection:
        """Manual reconnect: drop the old client (errors swallowed), reset the attempt counter, relaunch."""
        rt = self._runtimes.get(key)
        old: Optional[AutomationClient] = None
        if rt is not None:
            self._cancel_pending(rt)
            old, rt.client = rt.client, None
            rt.subscribed = False
        self.registry.put(key, self._fresh(key))
        logger.info("manual_reconnect", extra={"key": key})
        if old is not None:
            await self._destroy_quietly(key, old)
        if self.client_for(key) is not None:
            # another caller relaunched while the old client was being torn down
            return self.registry.get(key) or self._fresh(key)
        return self._start(key, attempts=0, last_reconnect_at=None)

    async def disconnect(self, key: str) -> bool:
        rt = self._runtimes.pop(key, None)
        conn = self.registry.remove(key)
        if rt is None and conn is None:
            return False
        ok = True
        if rt is not None:
            self._cancel_pending(rt)
            self._wake(rt, ConnectionState.DISCONNECTED)
            if rt.client is not None:
                try:
                    await rt.client.destroy()
                except Exception as exc:
                    ok = False
                    logger.warning("client_destroy_failed", extra={"key": key, "error": str(exc)})
        logger.info("connection_removed", extra={"key": key, "ok": ok})
        publish_event("connection.removed", {"key": key})
        return ok

    async def shutdown(self) -> None:
        for key in list(set(self._runtimes) | set(self.registry)):
            await self.disconnect(key)

    async def wait_for_status(self, key: str, timeout: float) -> ConnectionStatus:
        """Wait up to ``timeout`` seconds for the connection to settle, then report status."""
        conn = self.registry.get(key)
        rt = self._runtimes.get(key)
        if conn is None or rt is None or conn.state in SETTLED_STATES:
            return self.status(key)
        fut: "asyncio.Future[ConnectionState]" = asyncio.get_running_loop().create_future()
        rt.waiters.append(fut)
        try:
            await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            logger.info("status_wait_timeout", extra={"key": key, "timeout_s": timeout})
        finally:
            if fut in rt.waiters:
                rt.waiters.remove(fut)
        return self.status(key)

    async def send(self, key: str, chat_id: str, body: str) -> None:
        conn = self.registry.get(key)
        client = self.client_for(key)
        if conn is None or conn.state != ConnectionState.READY or client is None:
            raise NotReadyError(key, conn.state.value if conn else None)
        await client.send_message(to_chat_id(chat_id), body)

    async def download_media(self, key: str, media_ref: str) -> Optional[Dict[str, Any]]:
        client = self.client_for(key)
        if client is None:
            conn = self.registry.get(key)
            raise NotReadyError(key, conn.state.value if conn else None)
        return await client.download_media(media_ref)

    async def deliver_relay_event(self, key: str, event: str, payload: Dict[str, Any]) -> bool:
        """Hand an event pushed by the relay to the live client for ``key``."""
        client = self.client_for(key)
        emit = getattr(client, "emit", None)
        if client is None or emit is None:
            logger.debug("relay_event_dropped", extra={"key": key, "event": event})
            return False
        await emit(event, payload)
        return True

    async def drain(self) -> None:
        """Wait for in-flight message handlers to finish."""
        pending = [t for rt in self._runtimes.values() for t in rt.tasks]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # --- internals ---
    def _fresh(self, key: str, attempts: int = 0, last_reconnect_at: Optional[float] = None) -> Connection:
        return Connection(
            key=IdentityKey(key),
            reconnect_attempts=attempts,
            last_reconnect_at=last_reconnect_at,
            max_attempts=self.settings.backoff.max_attempts,
        )

    def _start(self, key: str, attempts: int, last_reconnect_at: Optional[float]) -> Connection:
        rt = self._runtimes.setdefault(key, _Runtime())
        self._cancel_pending(rt)
        stale = rt.client
        rt.client = None
        rt.subscribed = False
        teardown = self._spawn(rt, self._destroy_quietly(key, stale)) if stale is not None else None

        conn = self._fresh(key, attempts, last_reconnect_at)
        self.registry.put(key, conn)
        try:
            client = self._factory(key)
        except Exception as exc:
            logger.error("client_factory_failed", extra={"key": key, "error": str(exc)})
            return self._apply(key, LaunchFailed(error=str(exc))) or conn

        rt.client = client
        for event in LIFECYCLE_EVENTS:
            client.on(event, self._lifecycle_handler(key, client, event))
        rt.launch_task = asyncio.get_running_loop().create_task(self._launch(key, client, teardown))
        logger.info("connection_init", extra={"key": key, "attempts": attempts})
        return conn

    async def _launch(
        self, key: str, client: AutomationClient, teardown: Optional["asyncio.Task[Any]"] = None
    ) -> None:
        policy = self.settings.launch
        if teardown is not None:
            # one relay session per key: the old client is torn down before the new one starts
            await asyncio.shield(teardown)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.attempts),
                wait=wait_incrementing(start=policy.step_s, increment=policy.step_s),
                retry=retry_if_exception(is_transient_launch_error),
                before_sleep=lambda rs: logger.warning(
                    "launch_retry", extra={"key": key, "attempt": rs.attempt_number, "error": str(rs.outcome.exception())}
                ),
                reraise=True,
            ):
                with attempt:
                    if not self._is_current(key, client):
                        return
                    await client.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._is_current(key, client):
                logger.error("launch_failed", extra={"key": key, "error": str(exc)})
                self._apply(key, LaunchFailed(error=str(exc)))

    def _lifecycle_handler(self, key: str, client: AutomationClient, event: str) -> Callable[[Dict[str, Any]], None]:
        def handler(payload: Dict[str, Any]) -> None:
            if not self._is_current(key, client):
                logger.debug("stale_client_event", extra={"key": key, "event": event})
                return
            self._apply(key, self._to_event(event, payload))

        return handler

    @staticmethod
    def _to_event(event: str, payload: Dict[str, Any]) -> LifecycleEvent:
        if event == "loading":
            return Loading()
        if event == "qr":
            raw = str(payload.get("qr") or payload.get("code") or "")
            return QrIssued(artifact=render_data_uri(raw))
        if event == "authenticated":
            return Authenticated()
        if event == "ready":
            return Ready()
        if event == "auth_failure":
            return AuthFailure(reason=_reason(payload))
        return Disconnected(reason=_reason(payload))

    def _apply(self, key: str, event: LifecycleEvent) -> Optional[Connection]:
        conn = self.registry.get(key)
        if conn is None:
            return None
        nxt, effects = transition(conn, event, self._clock(), self.settings.backoff)
        if nxt is conn and not effects:
            logger.debug("transition_ignored", extra={"key": key, "state": conn.state.value, "event": type(event).__name__})
            return conn
        self.registry.put(key, nxt)
        logger.info(
            "state_transition",
            extra={"key": key, "from": conn.state.value, "to": nxt.state.value, "event": type(event).__name__},
        )
        publish_event(f"connection.{nxt.state.value}", {"key": key, "attempts": nxt.reconnect_attempts})
        for effect in effects:
            self._run_effect(key, nxt, effect)
        return nxt

    def _run_effect(self, key: str, conn: Connection, effect: Effect) -> None:
        rt = self._runtimes.get(key)
        if rt is None:
            return
        if isinstance(effect, NotifyWaiters):
            self._wake(rt, effect.state)
        elif isinstance(effect, RegisterMessageHandlers):
            if rt.client is not None and not rt.subscribed:
                rt.client.on(MESSAGE_EVENT, self._message_listener(key, rt.client))
                rt.subscribed = True
        elif isinstance(effect, ScheduleReconnect):
            if rt.timer is not None and not rt.timer.cancelled():
                logger.info("reconnect_already_pending", extra={"key": key})
                return
            rt.timer = asyncio.get_running_loop().call_later(effect.delay_s, self._fire_reconnect, key)
            RECONNECTS_SCHEDULED.labels(track=effect.track).inc()
            logger.info(
                "reconnect_scheduled",
                extra={"key": key, "attempt": effect.attempt, "delay_s": effect.delay_s, "track": effect.track},
            )
        elif isinstance(effect, RecoveryExhausted):
            logger.warning("reconnect_exhausted", extra={"key": key, "attempts": effect.attempts})
            publish_event("connection.exhausted", {"key": key, "attempts": effect.attempts})
        elif isinstance(effect, ReleaseClient):
            client, rt.client = rt.client, None
            rt.subscribed = False
            if client is not None:
                self._spawn(rt, self._destroy_quietly(key, client))

    def _fire_reconnect(self, key: str) -> None:
        rt = self._runtimes.get(key)
        if rt is not None:
            rt.timer = None
        conn = self.registry.get(key)
        if conn is None or conn.state != ConnectionState.DISCONNECTED:
            return
        logger.info("reconnect_firing", extra={"key": key, "attempt": conn.reconnect_attempts})
        self._start(key, attempts=conn.reconnect_attempts, last_reconnect_at=conn.last_reconnect_at)

    def _message_listener(self, key: str, client: AutomationClient) -> Callable[[Dict[str, Any]], None]:
        def listener(payload: Dict[str, Any]) -> None:
            rt = self._runtimes.get(key)
            if rt is None or rt.client is not client or self._message_handler is None:
                return
            # each message runs in its own task so event delivery never waits on a handler
            self._spawn(rt, self._dispatch(key, payload))

        return listener

    async def _dispatch(self, key: str, payload: Dict[str, Any]) -> None:
        handler = self._message_handler
        if handler is None:
            return
        try:
            await handler(key, payload)
        except Exception:
            logger.exception("message_handler_failed", extra={"key": key})

    def _spawn(self, rt: _Runtime, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        rt.tasks.add(task)
        task.add_done_callback(rt.tasks.discard)
        return task

    def _is_current(self, key: str, client: AutomationClient) -> bool:
        rt = self._runtimes.get(key)
        return rt is not None and rt.client is client

    @staticmethod
    def _wake(rt: _Runtime, state: ConnectionState) -> None:
        waiters, rt.waiters = rt.waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(state)

    @staticmethod
    def _cancel_pending(rt: _Runtime) -> None:
        if rt.timer is not None:
            rt.timer.cancel()
            rt.timer = None
        if rt.launch_task is not None and not rt.launch_task.done():
            rt.launch_task.cancel()
        rt.launch_task = None

    @staticmethod
    async def _destroy_quietly(key: str, client: AutomationClient) -> None:
        try:
            await client.destroy()
        except Exception as exc:
            logger.debug("client_destroy_ignored", extra={"key": key, "error": str(exc)})
