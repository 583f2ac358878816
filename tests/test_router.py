import asyncio
import time

from src.chatlink.domain.messages import Command, PairingRequest, Text
from src.chatlink.domain.models import Transaction, TransactionCandidate
from src.chatlink.errors import ExtractionError
from src.chatlink.infrastructure.store import new_id
from src.chatlink.services import templates
from src.chatlink.services.extraction_ai import KIND_IMAGE, KIND_TEXT, KIND_VOICE, Extraction

BOT = "shared-bot"
USER = "62811"
CHAT = "62811@c.us"
READY = [("authenticated", {}), ("ready", {})]


def _lunch(**kw):
    data = {"amount": 50000, "category": "food & dining", "description": "Lunch", "confidence": 0.92}
    data.update(kw)
    return Extraction(candidates=[TransactionCandidate(**data)], source_text="Lunch 50000")


async def _linked(gateway, store, currency="IDR", locale="en"):
    gateway.controller.init(BOT)
    await gateway.controller.wait_for_status(BOT, 1.0)
    await store.create_integration("acct-a", USER, "Ana", int(time.time()))
    prefs = await store.get_preferences("acct-a")
    await store.save_preferences(prefs.model_copy(update={"currency": currency, "locale": locale}))


def test_text_message_is_persisted_and_confirmed(gateway, factory, store, delegate):
    factory.events = READY
    delegate.result = _lunch()

    async def scenario():
        await _linked(gateway, store)
        routed = await gateway.router.handle(BOT, {"from": CHAT, "body": "Lunch 50000"})
        await gateway.stop()
        return routed, await store.list_transactions("acct-a"), await store.list_notifications("acct-a")

    routed, txs, logs = asyncio.run(scenario())
    assert isinstance(routed, Text)
    [tx] = txs
    assert tx.amount == 50000
    assert tx.type == "expense"
    assert tx.category == "Food & Dining"
    assert tx.category_id is not None
    assert tx.currency == "IDR"
    assert tx.ai_generated is True
    [entry] = logs
    assert entry.category == "confirmation"
    assert entry.outcome == "sent"
    assert "Rp50.000" in entry.message
    assert "92%" in entry.message
    [request] = delegate.requests
    assert request.kind == KIND_TEXT
    assert request.text == "Lunch 50000"
    assert "Food & Dining" in request.categories


def test_unknown_category_falls_back_to_other(gateway, factory, store, delegate):
    factory.events = READY
    delegate.result = _lunch(category="Groceries")

    async def scenario():
        await _linked(gateway, store)
        await gateway.router.handle(BOT, {"from": CHAT, "body": "Lunch 50000"})
        await gateway.stop()
        return await store.list_transactions("acct-a")

    [tx] = asyncio.run(scenario())
    assert tx.category == "Other"


def test_several_candidates_share_one_confirmation(gateway, factory, store, delegate):
    factory.events = READY
    delegate.result = Extraction(
        candidates=[
            TransactionCandidate(amount=50000, category="Food & Dining", description="Lunch"),
            TransactionCandidate(amount=20000, category="Transportation", description="Taxi"),
        ]
    )

    async def scenario():
        await _linked(gateway, store)
        await gateway.router.handle(BOT, {"from": CHAT, "body": "Lunch 50000 taxi 20000"})
        await gateway.stop()
        return await store.list_transactions("acct-a"), factory.last.sent

    txs, sent = asyncio.run(scenario())
    assert len(txs) == 2
    [(chat, body)] = sent
    assert chat == CHAT
    assert "2 transactions saved" in body


def test_no_candidates_asks_for_clarification(gateway, factory, store, delegate):
    factory.events = READY
    delegate.result = None

    async def scenario():
        await _linked(gateway, store)
        await gateway.router.handle(BOT, {"from": CHAT, "body": "how are you"})
        await gateway.stop()
        return await store.list_transactions("acct-a")

    assert asyncio.run(scenario()) == []
    assert factory.last.sent == [(CHAT, templates.render("clarify_text", "en"))]


def test_extraction_error_is_treated_as_no_candidates(gateway, factory, store, delegate):
    factory.events = READY
    delegate.error = ExtractionError("provider down")

    async def scenario():
        await _linked(gateway, store)
        await gateway.router.handle(BOT, {"from": CHAT, "body": "Lunch 50000"})
        await gateway.stop()

    asyncio.run(scenario())
    assert factory.last.sent == [(CHAT, templates.render("clarify_text", "en"))]


def test_commands_reply_without_extraction(gateway, factory, store, delegate):
    factory.events = READY

    async def scenario():
        await _linked(gateway, store, locale="id")
        help_routed = await gateway.router.handle(BOT, {"from": CHAT, "body": "Bantuan"})
        await gateway.router.handle(BOT, {"from": CHAT, "body": "status"})
        await gateway.router.handle(BOT, {"from": CHAT, "body": "saldo"})
        await gateway.stop()
        return help_routed

    routed = asyncio.run(scenario())
    assert isinstance(routed, Command) and routed.name == "help"
    assert [body for _, body in factory.last.sent] == [
        templates.render("help", "id"),
        templates.render("status", "id", identity=USER),
        templates.render("balance_empty", "id"),
    ]
    assert delegate.requests == []


def test_balance_summary_totals_current_month(gateway, factory, store):
    factory.events = READY
    now = int(time.time())

    async def scenario():
        await _linked(gateway, store)
        for amount, kind, desc in ((5000000, "income", "Salary"), (50000, "expense", "Lunch")):
            await store.create_transaction(
                Transaction(
                    transaction_id=new_id(),
                    account_id="acct-a",
                    amount=amount,
                    type=kind,
                    category="Other",
                    description=desc,
                    date=now,
                    created_at=now,
                )
            )
        await gateway.router.handle(BOT, {"from": CHAT, "body": "balance"})
        await gateway.stop()

    asyncio.run(scenario())
    [(_, body)] = factory.last.sent
    assert "Rp5.000.000" in body
    assert "Rp50.000" in body
    assert "Rp4.950.000" in body


def test_voice_note_is_acknowledged_then_extracted(gateway, factory, store, delegate):
    factory.events = READY
    factory.media["m1"] = {"mimetype": "audio/ogg; codecs=opus", "data": b"OggS"}
    delegate.result = _lunch()

    async def scenario():
        await _linked(gateway, store)
        await gateway.router.handle(BOT, {"from": CHAT, "type": "ptt", "hasMedia": True, "id": "m1"})
        await gateway.stop()
        return await store.list_transactions("acct-a")

    txs = asyncio.run(scenario())
    assert len(txs) == 1
    bodies = [body for _, body in factory.last.sent]
    assert bodies[0] == templates.render("processing_voice", "en")
    assert bodies[1].startswith("✅")
    [request] = delegate.requests
    assert request.kind == KIND_VOICE
    assert request.media == b"OggS"


def test_missing_voice_media_asks_for_clarification(gateway, factory, store, delegate):
    factory.events = READY

    async def scenario():
        await _linked(gateway, store)
        await gateway.router.handle(BOT, {"from": CHAT, "type": "ptt", "hasMedia": True, "id": "gone"})
        await gateway.stop()

    asyncio.run(scenario())
    assert [body for _, body in factory.last.sent] == [
        templates.render("processing_voice", "en"),
        templates.render("clarify_voice", "en"),
    ]
    assert delegate.requests == []


def test_image_with_non_image_payload_is_rejected(gateway, factory, store, delegate):
    factory.events = READY
    factory.media["m2"] = {"mimetype": "application/pdf", "data": b"%PDF"}

    async def scenario():
        await _linked(gateway, store)
        await gateway.router.handle(BOT, {"from": CHAT, "type": "image", "mediaRef": "m2"})
        await gateway.stop()

    asyncio.run(scenario())
    assert [body for _, body in factory.last.sent][-1] == templates.render("clarify_image", "en")
    assert delegate.requests == []


def test_receipt_image_is_sent_to_delegate(gateway, factory, store, delegate):
    factory.events = READY
    factory.media["m3"] = {"mimetype": "image/jpeg", "data": b"\xff\xd8"}
    delegate.result = _lunch()

    async def scenario():
        await _linked(gateway, store)
        await gateway.router.handle(BOT, {"from": CHAT, "type": "image", "mediaRef": "m3"})
        await gateway.stop()

    asyncio.run(scenario())
    [request] = delegate.requests
    assert request.kind == KIND_IMAGE
    assert request.mimetype == "image/jpeg"


def test_unsupported_kind_gets_capabilities_reply(gateway, factory, store):
    factory.events = READY

    async def scenario():
        await _linked(gateway, store)
        await gateway.router.handle(BOT, {"from": CHAT, "type": "sticker"})
        await gateway.stop()

    asyncio.run(scenario())
    assert factory.last.sent == [(CHAT, templates.render("unsupported", "en"))]


def test_group_and_broadcast_messages_are_ignored(gateway, factory, store, delegate):
    factory.events = READY

    async def scenario():
        await _linked(gateway, store)
        first = await gateway.router.handle(BOT, {"from": "1203@g.us", "body": "Lunch 50000"})
        second = await gateway.router.handle(BOT, {"from": "status@broadcast", "body": "hi"})
        await gateway.stop()
        return first, second

    assert asyncio.run(scenario()) == (None, None)
    assert factory.last.sent == []
    assert delegate.requests == []


def test_unbound_sender_is_routed_to_pairing(gateway, factory):
    factory.events = READY

    async def scenario():
        gateway.controller.init(BOT)
        await gateway.controller.wait_for_status(BOT, 1.0)
        routed = await gateway.router.handle(BOT, {"from": "62899@c.us", "body": "Lunch 50000"})
        await gateway.stop()
        return routed

    assert isinstance(asyncio.run(scenario()), PairingRequest)
    assert factory.last.sent[0][1] == templates.render("pairing_instructions", "en", keyword="AKTIVASI")


def test_handler_failure_sends_generic_error(gateway, factory, store, monkeypatch):
    factory.events = READY

    async def broken(account_id):
        raise RuntimeError("db down")

    async def scenario():
        await _linked(gateway, store)
        monkeypatch.setattr(store, "list_categories", broken)
        await gateway.router.handle(BOT, {"from": CHAT, "body": "Lunch 50000"})
        await gateway.stop()
        return await store.list_notifications("acct-a")

    logs = asyncio.run(scenario())
    assert factory.last.sent == [(CHAT, templates.render("error_generic", "en"))]
    assert [e.outcome for e in logs] == ["sent"]


def test_reply_failure_is_logged_not_raised(gateway, factory, store, delegate):
    factory.events = READY
    delegate.result = None

    async def scenario():
        await _linked(gateway, store)
        factory.last.failing_chats.add(CHAT)
        await gateway.router.handle(BOT, {"from": CHAT, "body": "hello"})
        await gateway.stop()
        return await store.list_notifications("acct-a")

    [entry] = asyncio.run(scenario())
    assert entry.outcome == "failed"
    assert "failed" in entry.error


def test_messages_from_the_client_reach_the_router(gateway, factory, store, delegate):
    factory.events = READY
    delegate.result = _lunch()

    async def scenario():
        await _linked(gateway, store)
        await factory.last.emit("message", {"from": CHAT, "body": "Lunch 50000"})
        await gateway.controller.drain()
        await gateway.stop()
        return await store.list_transactions("acct-a")

    assert len(asyncio.run(scenario())) == 1
