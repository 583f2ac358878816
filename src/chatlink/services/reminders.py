from __future__ import annotations

"""Daily transaction reminder sweep.

An account gets a nudge iff it logged zero transactions in
``[local midnight, now)``. Sends fan out concurrently up to
``reminder_fanout``; each account and each send is isolated, so one failure
is counted and the sweep carries on.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

from croniter import croniter

from ..config import GatewaySettings
from ..core.timewindow import day_window, zone_for
from ..domain.models import SweepReport
from ..infrastructure.events import publish_event
from ..infrastructure.store import GatewayStore
from . import templates
from .notifier import CATEGORY_REMINDER, Notifier

logger = logging.getLogger("chatlink.reminders")


class ReminderScheduler:
    def __init__(
        self,
        settings: GatewaySettings,
        store: GatewayStore,
        notifier: Notifier,
        key_for: Callable[[str], str],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._store = store
        self._notifier = notifier
        self._key_for = key_for
        self._clock = clock
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("reminder_loop_started", extra={"cron": self._settings.reminder_cron, "tz": self._settings.timezone})

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def next_fire(self, now: Optional[float] = None) -> float:
        zone = zone_for(self._settings.timezone)
        base = datetime.fromtimestamp(self._clock() if now is None else now, zone)
        return croniter(self._settings.reminder_cron, base).get_next(datetime).timestamp()

    async def _loop(self) -> None:
        while True:
            delay = max(0.0, self.next_fire() - self._clock())
            await asyncio.sleep(delay)
            try:
                await self.sweep()
            except Exception:
                logger.exception("reminder_sweep_crashed")

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        accounts = await self._store.list_reminder_accounts()
        semaphore = asyncio.Semaphore(self._settings.reminder_fanout)
        results = await asyncio.gather(
            *(self._sweep_account(account_id, semaphore) for account_id in accounts), return_exceptions=True
        )
        for account_id, result in zip(accounts, results):
            report.accounts_checked += 1
            if isinstance(result, BaseException):
                report.accounts_errored += 1
                logger.error("reminder_account_failed", extra={"account_id": account_id, "error": str(result)})
                continue
            if result is None:
                continue
            report.accounts_reminded += 1
            report.sent += sum(1 for ok in result if ok)
            report.failed += sum(1 for ok in result if not ok)
        logger.info("reminder_sweep_done", extra=report.model_dump())
        publish_event("reminders.sweep", report.model_dump())
        return report

    async def _sweep_account(self, account_id: str, semaphore: asyncio.Semaphore) -> Optional[List[bool]]:
        """Return per-send outcomes, or None when no reminder was due."""
        prefs = await self._store.get_preferences(account_id)
        if not prefs.transaction_reminders:
            return None
        now = self._clock()
        start, end = day_window(now, zone_for(prefs.timezone, self._settings.timezone))
        if await self._store.count_transactions_between(account_id, start, end) > 0:
            return None
        integrations = [i for i in await self._store.list_integrations(account_id) if i.status == "active"]
        if not integrations:
            return None
        body = templates.render("reminder", prefs.locale)
        key = self._key_for(account_id)

        async def send_one(identity: str) -> bool:
            async with semaphore:
                return await self._notifier.send(
                    key, identity, body, category=CATEGORY_REMINDER, account_id=account_id
                )

        return list(await asyncio.gather(*(send_one(i.external_identity) for i in integrations)))
