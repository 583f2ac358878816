from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

try:  # pragma: no cover - optional dependency
    from motor.motor_asyncio import AsyncIOMotorClient  # type: ignore
except Exception:  # pragma: no cover - dependency optional
    AsyncIOMotorClient = None  # type: ignore[misc]

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..domain.models import (
    AccountPreferences,
    ActivationCode,
    Category,
    Integration,
    NotificationLogEntry,
    Transaction,
)
from ..errors import ActivationCodeCollision, IdentityAlreadyBound
from .store import DEFAULT_CATEGORIES, InMemoryGatewayStore, new_id

logger = logging.getLogger("chatlink.store")


def _strip(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


class MongoGatewayStore:
    """Motor-backed store.

    Connects lazily on first use; when MongoDB is unreachable every call is
    served by an in-memory fallback instead.
    """

    def __init__(self) -> None:
        self._fallback = InMemoryGatewayStore()
        self._client: Any = None
        self._db: Any = None
        self._connected: Optional[bool] = None

    async def _database(self) -> Any:
        if self._connected is not None:
            return self._db if self._connected else None
        if AsyncIOMotorClient is None:
            self._connected = False
            return None
        try:
            mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
            mongo_db = os.getenv("MONGO_DB", "chatlink")
            self._client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=500)
            await self._client.server_info()
            db = self._client[mongo_db]
            await db["activation_codes"].create_index("code", unique=True)
            await db["activation_codes"].create_index([("account_id", ASCENDING), ("expires_at", ASCENDING)])
            await db["integrations"].create_index(
                "external_identity",
                unique=True,
                partialFilterExpression={"status": "active"},
            )
            await db["integrations"].create_index("account_id")
            await db["transactions"].create_index([("account_id", ASCENDING), ("date", DESCENDING)])
            await db["notification_logs"].create_index([("account_id", ASCENDING), ("sent_at", DESCENDING)])
            self._db = db
            self._connected = True
        except Exception:
            logger.warning("MongoDB unreachable; using in-memory store")
            self._client = None
            self._db = None
            self._connected = False
        return self._db

    # --- preferences ---
    async def get_preferences(self, account_id: str) -> AccountPreferences:
        db = await self._database()
        if db is None:
            return await self._fallback.get_preferences(account_id)
        doc = _strip(await db["preferences"].find_one({"account_id": account_id}))
        return AccountPreferences(**doc) if doc else AccountPreferences(account_id=account_id)

    async def save_preferences(self, prefs: AccountPreferences) -> AccountPreferences:
        db = await self._database()
        if db is None:
            return await self._fallback.save_preferences(prefs)
        await db["preferences"].replace_one({"account_id": prefs.account_id}, prefs.model_dump(), upsert=True)
        return prefs

    async def list_reminder_accounts(self) -> List[str]:
        db = await self._database()
        if db is None:
            return await self._fallback.list_reminder_accounts()
        cursor = db["preferences"].find({"transaction_reminders": True}, {"account_id": 1})
        return [doc["account_id"] for doc in await cursor.to_list(length=None)]

    # --- categories & transactions ---
    async def list_categories(self, account_id: str) -> List[Category]:
        db = await self._database()
        if db is None:
            return await self._fallback.list_categories(account_id)
        docs = await db["categories"].find({"account_id": account_id}).to_list(length=1000)
        if docs:
            return [Category(category_id=str(d["category_id"]), name=d["name"], type=d.get("type", "expense")) for d in docs]
        return [
            Category(category_id=f"{account_id}:{i}", name=c["name"], type=c["type"])  # type: ignore[arg-type]
            for i, c in enumerate(DEFAULT_CATEGORIES, start=1)
        ]

    async def create_transaction(self, tx: Transaction) -> Transaction:
        db = await self._database()
        if db is None:
            return await self._fallback.create_transaction(tx)
        await db["transactions"].insert_one(tx.model_dump())
        return tx

    async def list_transactions(
        self, account_id: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> List[Transaction]:
        db = await self._database()
        if db is None:
            return await self._fallback.list_transactions(account_id, start, end)
        query: Dict[str, Any] = {"account_id": account_id}
        window: Dict[str, int] = {}
        if start is not None:
            window["$gte"] = start
        if end is not None:
            window["$lt"] = end
        if window:
            query["date"] = window
        docs = await db["transactions"].find(query).sort("date", DESCENDING).to_list(length=5000)
        return [Transaction(**_strip(d)) for d in docs]  # type: ignore[arg-type]

    async def count_transactions_between(self, account_id: str, start: int, end: int) -> int:
        db = await self._database()
        if db is None:
            return await self._fallback.count_transactions_between(account_id, start, end)
        return int(
            await db["transactions"].count_documents({"account_id": account_id, "date": {"$gte": start, "$lt": end}})
        )

    # --- activation codes ---
    async def create_activation_code(self, code: ActivationCode) -> ActivationCode:
        db = await self._database()
        if db is None:
            return await self._fallback.create_activation_code(code)
        try:
            await db["activation_codes"].insert_one(code.model_dump())
        except DuplicateKeyError as exc:
            raise ActivationCodeCollision(code.code) from exc
        return code

    async def consume_activation_code(self, code: str, now: int) -> Optional[ActivationCode]:
        db = await self._database()
        if db is None:
            return await self._fallback.consume_activation_code(code, now)
        # single conditional update: the only consumption event for a code
        doc = await db["activation_codes"].find_one_and_update(
            {"code": code, "used_at": None, "expires_at": {"$gt": now}},
            {"$set": {"used_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        doc = _strip(doc)
        return ActivationCode(**doc) if doc else None

    async def release_activation_code(self, code: str, used_at: int) -> None:
        db = await self._database()
        if db is None:
            return await self._fallback.release_activation_code(code, used_at)
        await db["activation_codes"].update_one({"code": code, "used_at": used_at}, {"$set": {"used_at": None}})

    async def list_active_codes(self, account_id: str, now: int) -> List[ActivationCode]:
        db = await self._database()
        if db is None:
            return await self._fallback.list_active_codes(account_id, now)
        docs = (
            await db["activation_codes"]
            .find({"account_id": account_id, "used_at": None, "expires_at": {"$gt": now}})
            .sort("created_at", ASCENDING)
            .to_list(length=100)
        )
        return [ActivationCode(**_strip(d)) for d in docs]  # type: ignore[arg-type]

    # --- integrations ---
    async def find_integration_by_identity(self, external_identity: str) -> Optional[Integration]:
        db = await self._database()
        if db is None:
            return await self._fallback.find_integration_by_identity(external_identity)
        doc = _strip(await db["integrations"].find_one({"external_identity": external_identity, "status": "active"}))
        return Integration(**doc) if doc else None

    async def create_integration(
        self, account_id: str, external_identity: str, display_name: Optional[str], activated_at: int
    ) -> Integration:
        db = await self._database()
        if db is None:
            return await self._fallback.create_integration(account_id, external_identity, display_name, activated_at)
        integ = Integration(
            integration_id=new_id(),
            account_id=account_id,
            external_identity=external_identity,
            display_name=display_name,
            status="active",
            activated_at=activated_at,
        )
        try:
            await db["integrations"].insert_one(integ.model_dump())
        except DuplicateKeyError as exc:
            raise IdentityAlreadyBound(external_identity) from exc
        return integ

    async def list_integrations(self, account_id: str) -> List[Integration]:
        db = await self._database()
        if db is None:
            return await self._fallback.list_integrations(account_id)
        docs = await db["integrations"].find({"account_id": account_id}).sort("activated_at", ASCENDING).to_list(length=100)
        return [Integration(**_strip(d)) for d in docs]  # type: ignore[arg-type]

    async def revoke_integration(self, integration_id: str, account_id: str) -> bool:
        db = await self._database()
        if db is None:
            return await self._fallback.revoke_integration(integration_id, account_id)
        res = await db["integrations"].update_one(
            {"integration_id": integration_id, "account_id": account_id, "status": "active"},
            {"$set": {"status": "revoked"}},
        )
        return bool(res and res.modified_count)

    # --- notification log ---
    async def append_notification(self, entry: NotificationLogEntry) -> NotificationLogEntry:
        db = await self._database()
        if db is None:
            return await self._fallback.append_notification(entry)
        await db["notification_logs"].insert_one(entry.model_dump())
        return entry

    async def list_notifications(self, account_id: Optional[str] = None, limit: int = 50) -> List[NotificationLogEntry]:
        db = await self._database()
        if db is None:
            return await self._fallback.list_notifications(account_id, limit)
        query: Dict[str, Any] = {} if account_id is None else {"account_id": account_id}
        docs = await db["notification_logs"].find(query).sort("sent_at", DESCENDING).to_list(length=max(0, limit))
        return [NotificationLogEntry(**_strip(d)) for d in docs]  # type: ignore[arg-type]
