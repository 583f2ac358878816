from __future__ import annotations

"""Inbound message routing.

Each automation ``message`` event is wrapped into an ``InboundMessage`` once,
resolved to an account through the integration store, classified, and handed
to exactly one handler. A failure while handling one message produces a
generic error reply to that sender and goes no further.
"""

import logging
import time
from typing import Callable, List, Optional

from ..config import GatewaySettings
from ..core.timewindow import month_start, period_label, zone_for
from ..domain.messages import (
    ClassifiedMessage,
    Command,
    Image,
    InboundMessage,
    PairingRequest,
    Text,
    Unsupported,
    Voice,
    classify,
)
from ..domain.models import AccountPreferences, Transaction, TransactionCandidate
from ..errors import ExtractionError
from ..infrastructure.store import GatewayStore, new_id
from ..observability.metrics import INBOUND_MESSAGES
from . import templates
from .extraction_ai import KIND_IMAGE, KIND_TEXT, KIND_VOICE, Extraction, ExtractionDelegate, ExtractionRequest
from .lifecycle import LifecycleController
from .notifier import CATEGORY_CONFIRMATION, CATEGORY_REPLY, Notifier
from .pairing import PairingService

logger = logging.getLogger("chatlink.router")

FALLBACK_CATEGORY = "Other"
RECENT_LIMIT = 3


class MessageRouter:
    def __init__(
        self,
        settings: GatewaySettings,
        store: GatewayStore,
        controller: LifecycleController,
        notifier: Notifier,
        pairing: PairingService,
        delegate: ExtractionDelegate,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._store = store
        self._controller = controller
        self._notifier = notifier
        self._pairing = pairing
        self._delegate = delegate
        self._clock = clock

    async def handle(self, key: str, payload: dict) -> Optional[ClassifiedMessage]:
        message = InboundMessage.from_event(key, payload)
        if message.is_group or not message.sender:
            INBOUND_MESSAGES.labels(route="ignored").inc()
            return None

        integration = await self._store.find_integration_by_identity(message.sender)
        classified = classify(message, integration.account_id if integration else None)
        route = type(classified).__name__.lower()
        INBOUND_MESSAGES.labels(route=route).inc()
        logger.info("inbound_message", extra={"key": key, "identity": message.sender, "route": route})

        if isinstance(classified, PairingRequest):
            await self._pairing.handle_inbound(key, message)
            return classified

        account_id = classified.account_id
        locale = self._settings.default_locale
        try:
            prefs = await self._store.get_preferences(account_id)
            locale = prefs.locale
            await self._dispatch(key, classified, prefs)
        except Exception:
            logger.exception("message_handling_failed", extra={"key": key, "identity": message.sender})
            await self._reply(key, message, templates.render("error_generic", locale), account_id)
        return classified

    async def _dispatch(self, key: str, msg: ClassifiedMessage, prefs: AccountPreferences) -> None:
        if isinstance(msg, Command):
            await self._command(key, msg, prefs)
        elif isinstance(msg, Text):
            extraction = await self._extract(
                ExtractionRequest(kind=KIND_TEXT, text=msg.text, **await self._context(prefs))
            )
            await self._finish(key, msg.message, prefs, extraction, "clarify_text")
        elif isinstance(msg, (Voice, Image)):
            await self._media(key, msg, prefs)
        elif isinstance(msg, Unsupported):
            await self._reply(key, msg.message, templates.render("unsupported", prefs.locale), prefs.account_id)

    async def _command(self, key: str, msg: Command, prefs: AccountPreferences) -> None:
        if msg.name == "help":
            body = templates.render("help", prefs.locale)
        elif msg.name == "status":
            body = templates.render("status", prefs.locale, identity=msg.message.sender)
        else:
            body = await self._balance_summary(prefs)
        await self._reply(key, msg.message, body, prefs.account_id)

    async def _balance_summary(self, prefs: AccountPreferences) -> str:
        transactions = await self._store.list_transactions(prefs.account_id)
        if not transactions:
            return templates.render("balance_empty", prefs.locale)
        now = self._clock()
        zone = zone_for(prefs.timezone, self._settings.timezone)
        start = month_start(now, zone)
        monthly = [t for t in transactions if t.date >= start]
        income = sum(t.amount for t in monthly if t.type == "income")
        expense = sum(t.amount for t in monthly if t.type == "expense")
        recent = "\n".join(
            f"{'📤' if t.type == 'expense' else '📥'} {templates.format_amount(t.amount, prefs.currency)} - {t.description}"
            for t in transactions[:RECENT_LIMIT]
        )
        return templates.render(
            "balance_summary",
            prefs.locale,
            period=period_label(now, zone),
            income=templates.format_amount(income, prefs.currency),
            expense=templates.format_amount(expense, prefs.currency),
            balance=templates.format_amount(income - expense, prefs.currency),
            recent=recent,
        )

    async def _media(self, key: str, msg: Voice | Image, prefs: AccountPreferences) -> None:
        is_image = isinstance(msg, Image)
        kind = KIND_IMAGE if is_image else KIND_VOICE
        clarify = "clarify_image" if is_image else "clarify_voice"
        # acknowledge first: fetching and extraction may take seconds
        ack = templates.render("processing_image" if is_image else "processing_voice", prefs.locale)
        await self._reply(key, msg.message, ack, prefs.account_id)

        media = None
        if msg.message.media_ref:
            media = await self._controller.download_media(key, msg.message.media_ref)
        mimetype = str((media or {}).get("mimetype") or "")
        if not media or not media.get("data") or (is_image and not mimetype.startswith("image/")):
            await self._reply(key, msg.message, templates.render(clarify, prefs.locale), prefs.account_id)
            return
        extraction = await self._extract(
            ExtractionRequest(kind=kind, media=media["data"], mimetype=mimetype, **await self._context(prefs))
        )
        await self._finish(key, msg.message, prefs, extraction, clarify)

    async def _context(self, prefs: AccountPreferences) -> dict:
        categories = await self._store.list_categories(prefs.account_id)
        return {"categories": [c.name for c in categories], "currency": prefs.currency, "locale": prefs.locale}

    async def _extract(self, request: ExtractionRequest) -> Optional[Extraction]:
        try:
            return await self._delegate.extract(request)
        except ExtractionError as exc:
            logger.warning("extraction_failed", extra={"kind": request.kind, "error": str(exc)})
            return None

    async def _finish(
        self,
        key: str,
        message: InboundMessage,
        prefs: AccountPreferences,
        extraction: Optional[Extraction],
        clarify: str,
    ) -> None:
        candidates = [c for c in (extraction.candidates if extraction else []) if c.amount > 0]
        if not candidates:
            await self._reply(key, message, templates.render(clarify, prefs.locale), prefs.account_id)
            return
        saved = await self.persist(prefs, candidates)
        body = self._confirmation(prefs, saved, candidates)
        await self._reply(key, message, body, prefs.account_id, category=CATEGORY_CONFIRMATION)

    async def persist(self, prefs: AccountPreferences, candidates: List[TransactionCandidate]) -> List[Transaction]:
        categories = await self._store.list_categories(prefs.account_id)
        by_name = {c.name.strip().lower(): c for c in categories}
        fallback = by_name.get(FALLBACK_CATEGORY.lower())
        now = int(self._clock())
        saved: List[Transaction] = []
        for cand in candidates:
            category = by_name.get((cand.category or "").strip().lower()) or fallback
            tx = Transaction(
                transaction_id=new_id(),
                account_id=prefs.account_id,
                amount=cand.amount,
                currency=prefs.currency,
                type=cand.type,
                category=category.name if category else FALLBACK_CATEGORY,
                category_id=category.category_id if category else None,
                description=cand.description or (category.name if category else FALLBACK_CATEGORY),
                date=cand.date or now,
                ai_generated=True,
                created_at=now,
            )
            saved.append(await self._store.create_transaction(tx))
        logger.info("transactions_persisted", extra={"account_id": prefs.account_id, "count": len(saved)})
        return saved

    def _confirmation(
        self, prefs: AccountPreferences, saved: List[Transaction], candidates: List[TransactionCandidate]
    ) -> str:
        if len(saved) == 1:
            tx = saved[0]
            return templates.render(
                "transaction_confirmed",
                prefs.locale,
                amount=templates.format_amount(tx.amount, prefs.currency),
                description=tx.description,
                category=tx.category,
                type_label=templates.render(tx.type, prefs.locale),
                confidence=round(candidates[0].confidence * 100),
            )
        lines = "\n".join(
            f"{'📤' if t.type == 'expense' else '📥'} {templates.format_amount(t.amount, prefs.currency)} - "
            f"{t.description} ({t.category})"
            for t in saved
        )
        return templates.render("transactions_confirmed", prefs.locale, count=len(saved), lines=lines)

    async def _reply(
        self,
        key: str,
        message: InboundMessage,
        body: str,
        account_id: Optional[str],
        category: str = CATEGORY_REPLY,
    ) -> bool:
        return await self._notifier.send(key, message.sender, body, category=category, account_id=account_id)
