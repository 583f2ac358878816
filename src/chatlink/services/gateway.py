from __future__ import annotations

"""Gateway composition root.

Wires the registry, lifecycle controller, notifier, pairing, router and
reminder scheduler around one store. ``get_gateway()`` returns the process
singleton used by the HTTP layer.
"""

import logging
import time
from typing import Callable, Optional

from ..config import GatewaySettings
from ..core.state_machine import ConnectionState
from ..domain.models import ConnectResponse
from ..errors import LaunchFailedError
from ..infrastructure.session_registry import SessionRegistry
from ..infrastructure.store import GatewayStore, get_store
from .automation import AutomationClient, ClientFactory, relay_client_factory
from .extraction_ai import ExtractionDelegate, get_extraction_delegate
from .lifecycle import LifecycleController
from .notifier import Notifier
from .pairing import PairingService
from .reminders import ReminderScheduler
from .router import MessageRouter

logger = logging.getLogger("chatlink.gateway")


def default_client_factory(settings: GatewaySettings) -> ClientFactory:
    if settings.relay_url:
        return relay_client_factory(settings)

    def unconfigured(key: str) -> AutomationClient:
        raise LaunchFailedError("no automation relay configured (set CHATLINK_RELAY_URL)")

    return unconfigured


class Gateway:
    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        store: Optional[GatewayStore] = None,
        client_factory: Optional[ClientFactory] = None,
        delegate: Optional[ExtractionDelegate] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or GatewaySettings.from_env()
        self.store = store or get_store()
        self.registry = SessionRegistry()
        self.controller = LifecycleController(
            self.settings,
            client_factory or default_client_factory(self.settings),
            registry=self.registry,
            clock=clock,
        )
        self.notifier = Notifier(self.controller, self.store, clock=clock)
        self.pairing = PairingService(self.store, self.settings, notifier=self.notifier, clock=clock)
        self.router = MessageRouter(
            self.settings,
            self.store,
            self.controller,
            self.notifier,
            self.pairing,
            delegate or get_extraction_delegate(),
            clock=clock,
        )
        self.reminders = ReminderScheduler(self.settings, self.store, self.notifier, self.key_for, clock=clock)
        self.controller.set_message_handler(self.router.handle)

    def key_for(self, account_id: str) -> str:
        """Identity key of the connection that serves ``account_id``."""
        if self.settings.single_tenant:
            return self.settings.bot_key
        return account_id

    async def start(self) -> None:
        if self.settings.single_tenant:
            self.controller.init(self.settings.bot_key)
        self.reminders.start()
        logger.info("gateway_started", extra={"mode": self.settings.mode})

    async def stop(self) -> None:
        await self.reminders.stop()
        await self.controller.shutdown()
        logger.info("gateway_stopped")

    async def connect(self, key: str) -> ConnectResponse:
        """Start or resume pairing for ``key`` and report the first settled status."""
        current = self.controller.status(key)
        if current.connected:
            return ConnectResponse(**current.model_dump(), message="Already connected")
        if current.status == ConnectionState.QR_ISSUED.value and current.qr_code:
            return ConnectResponse(**current.model_dump(), message="Scan the QR code to link the chat account")

        conn = self.registry.get(key)
        if conn is not None and conn.state == ConnectionState.DISCONNECTED:
            await self.controller.reconnect(key)
            status = await self.controller.wait_for_status(key, self.settings.reconnect_timeout_s)
        else:
            self.controller.init(key)
            status = await self.controller.wait_for_status(key, self.settings.connect_timeout_s)

        if status.connected:
            message = "Connected"
        elif status.qr_code:
            message = "Scan the QR code to link the chat account"
        elif status.status == ConnectionState.DISCONNECTED.value:
            failed = self.registry.get(key)
            detail = failed.last_error if failed and failed.last_error else "connection failed"
            return ConnectResponse(**status.model_dump(), success=False, message=detail)
        else:
            message = "Connection is starting; poll /status for the QR code"
        return ConnectResponse(**status.model_dump(), message=message)


_gateway: Optional[Gateway] = None


def get_gateway() -> Gateway:
    global _gateway
    if _gateway is None:
        _gateway = Gateway()
    return _gateway


def reset_gateway(gateway: Optional[Gateway] = None) -> None:
    global _gateway
    _gateway = gateway
