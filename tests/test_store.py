import asyncio

import pytest

from src.chatlink.domain.models import AccountPreferences, ActivationCode, NotificationLogEntry, Transaction
from src.chatlink.errors import ActivationCodeCollision, IdentityAlreadyBound
from src.chatlink.infrastructure import store as store_mod
from src.chatlink.infrastructure.store import InMemoryGatewayStore, get_store, new_id

T0 = 1_700_000_000


def _code(code="AB12CD", account="acct-a", created=T0, ttl=300):
    return ActivationCode(account_id=account, code=code, created_at=created, expires_at=created + ttl)


def test_activation_code_consumed_at_most_once():
    async def scenario():
        s = InMemoryGatewayStore()
        await s.create_activation_code(_code())
        first = await s.consume_activation_code("AB12CD", T0 + 10)
        second = await s.consume_activation_code("AB12CD", T0 + 11)
        return first, second

    first, second = asyncio.run(scenario())
    assert first is not None and first.used_at == T0 + 10
    assert second is None


def test_activation_code_not_usable_at_or_after_expiry():
    async def scenario():
        s = InMemoryGatewayStore()
        await s.create_activation_code(_code())
        return await s.consume_activation_code("AB12CD", T0 + 300)

    assert asyncio.run(scenario()) is None


def test_duplicate_code_raises_collision():
    async def scenario():
        s = InMemoryGatewayStore()
        await s.create_activation_code(_code())
        await s.create_activation_code(_code(account="acct-b"))

    with pytest.raises(ActivationCodeCollision):
        asyncio.run(scenario())


def test_release_restores_code_only_for_matching_consumption():
    async def scenario():
        s = InMemoryGatewayStore()
        await s.create_activation_code(_code())
        used = await s.consume_activation_code("AB12CD", T0 + 5)
        await s.release_activation_code("AB12CD", used.used_at + 1)
        still_used = await s.list_active_codes("acct-a", T0 + 6)
        await s.release_activation_code("AB12CD", used.used_at)
        active = await s.list_active_codes("acct-a", T0 + 6)
        return still_used, active

    still_used, active = asyncio.run(scenario())
    assert still_used == []
    assert [c.code for c in active] == ["AB12CD"]


def test_identity_binds_to_one_active_integration_and_frees_on_revoke():
    async def scenario():
        s = InMemoryGatewayStore()
        first = await s.create_integration("acct-a", "628111", "Ana", T0)
        with pytest.raises(IdentityAlreadyBound):
            await s.create_integration("acct-b", "628111", None, T0 + 1)
        assert await s.revoke_integration(first.integration_id, "acct-b") is False
        assert await s.revoke_integration(first.integration_id, "acct-a") is True
        assert await s.find_integration_by_identity("628111") is None
        rebound = await s.create_integration("acct-b", "628111", None, T0 + 2)
        return rebound

    rebound = asyncio.run(scenario())
    assert rebound.account_id == "acct-b"


def test_transactions_window_is_half_open_and_newest_first():
    async def scenario():
        s = InMemoryGatewayStore()
        for offset in (0, 50, 100):
            await s.create_transaction(
                Transaction(
                    transaction_id=new_id(),
                    account_id="acct-a",
                    amount=10 + offset,
                    type="expense",
                    category="Other",
                    date=T0 + offset,
                    created_at=T0 + offset,
                )
            )
        window = await s.list_transactions("acct-a", T0, T0 + 100)
        count = await s.count_transactions_between("acct-a", T0, T0 + 100)
        return window, count

    window, count = asyncio.run(scenario())
    assert [t.date for t in window] == [T0 + 50, T0]
    assert count == 2


def test_reminder_accounts_and_notifications_listing():
    async def scenario():
        s = InMemoryGatewayStore()
        await s.save_preferences(AccountPreferences(account_id="acct-a"))
        await s.save_preferences(AccountPreferences(account_id="acct-b", transaction_reminders=False))
        for i in range(3):
            await s.append_notification(
                NotificationLogEntry(
                    entry_id=new_id(),
                    account_id="acct-a",
                    category="reply",
                    external_identity="628111",
                    message=f"m{i}",
                    outcome="sent",
                    sent_at=T0 + i,
                )
            )
        return await s.list_reminder_accounts(), await s.list_notifications("acct-a", limit=2)

    accounts, logs = asyncio.run(scenario())
    assert accounts == ["acct-a"]
    assert [e.message for e in logs] == ["m2", "m1"]


def test_default_categories_include_other():
    cats = asyncio.run(InMemoryGatewayStore().list_categories("acct-a"))
    assert "Other" in [c.name for c in cats]


def test_get_store_defaults_to_memory(monkeypatch):
    monkeypatch.delenv("CHATLINK_STORE_IMPL", raising=False)
    store_mod.reset_store()
    assert isinstance(get_store(), InMemoryGatewayStore)
    assert get_store() is get_store()


def test_mongo_store_falls_back_to_memory_without_driver(monkeypatch):
    from src.chatlink.infrastructure import store_mongo

    monkeypatch.setattr(store_mongo, "AsyncIOMotorClient", None)

    async def scenario():
        s = store_mongo.MongoGatewayStore()
        await s.create_activation_code(_code())
        consumed = await s.consume_activation_code("AB12CD", T0 + 1)
        again = await s.consume_activation_code("AB12CD", T0 + 2)
        return consumed, again

    consumed, again = asyncio.run(scenario())
    assert consumed is not None
    assert again is None
