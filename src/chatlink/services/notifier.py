from __future__ import annotations

"""Outbound send path shared by the router, pairing and the reminder sweep.

Every attempt, delivered or not, is appended to the notification log exactly
once. Send failures are returned as ``False`` and never raised.
"""

import logging
import time
from typing import Callable, Optional

from ..domain.models import NotificationLogEntry
from ..infrastructure.store import GatewayStore, new_id
from ..observability.metrics import OUTBOUND_MESSAGES
from .lifecycle import LifecycleController

logger = logging.getLogger("chatlink.notify")

CATEGORY_REPLY = "reply"
CATEGORY_CONFIRMATION = "confirmation"
CATEGORY_PAIRING = "pairing"
CATEGORY_REMINDER = "transaction_reminder"
CATEGORY_TEST = "test"


class Notifier:
    def __init__(
        self,
        controller: LifecycleController,
        store: GatewayStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._controller = controller
        self._store = store
        self._clock = clock

    async def send(
        self,
        key: str,
        identity: str,
        body: str,
        category: str = CATEGORY_REPLY,
        account_id: Optional[str] = None,
    ) -> bool:
        error: Optional[str] = None
        try:
            await self._controller.send(key, identity, body)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        outcome = "sent" if error is None else "failed"
        entry = NotificationLogEntry(
            entry_id=new_id(),
            account_id=account_id,
            category=category,
            external_identity=identity,
            message=body,
            outcome=outcome,
            sent_at=int(self._clock()),
            error=error,
        )
        try:
            await self._store.append_notification(entry)
        except Exception:
            logger.exception("notification_log_append_failed", extra={"identity": identity, "category": category})
        OUTBOUND_MESSAGES.labels(category=category, outcome=outcome).inc()
        if error is None:
            logger.info("send_ok", extra={"key": key, "identity": identity, "category": category})
        else:
            logger.warning("send_failed", extra={"key": key, "identity": identity, "category": category, "error": error})
        return error is None
