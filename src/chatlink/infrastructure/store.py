from __future__ import annotations

import os
import uuid
from threading import RLock
from typing import Dict, List, Optional, Protocol

from ..domain.models import (
    AccountPreferences,
    ActivationCode,
    Category,
    Integration,
    NotificationLogEntry,
    Transaction,
)
from ..errors import ActivationCodeCollision, IdentityAlreadyBound

DEFAULT_CATEGORIES: List[Dict[str, str]] = [
    {"name": "Food & Dining", "type": "expense"},
    {"name": "Transportation", "type": "expense"},
    {"name": "Shopping", "type": "expense"},
    {"name": "Bills & Utilities", "type": "expense"},
    {"name": "Entertainment", "type": "expense"},
    {"name": "Health", "type": "expense"},
    {"name": "Salary", "type": "income"},
    {"name": "Other", "type": "expense"},
]


class GatewayStore(Protocol):
    """Storage collaborator consumed by the gateway. Timestamps are Unix seconds."""

    async def get_preferences(self, account_id: str) -> AccountPreferences: ...
    async def save_preferences(self, prefs: AccountPreferences) -> AccountPreferences: ...
    async def list_reminder_accounts(self) -> List[str]: ...

    async def list_categories(self, account_id: str) -> List[Category]: ...
    async def create_transaction(self, tx: Transaction) -> Transaction: ...
    async def list_transactions(
        self, account_id: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> List[Transaction]: ...
    async def count_transactions_between(self, account_id: str, start: int, end: int) -> int: ...

    async def create_activation_code(self, code: ActivationCode) -> ActivationCode: ...
    async def consume_activation_code(self, code: str, now: int) -> Optional[ActivationCode]: ...
    async def release_activation_code(self, code: str, used_at: int) -> None: ...
    async def list_active_codes(self, account_id: str, now: int) -> List[ActivationCode]: ...

    async def find_integration_by_identity(self, external_identity: str) -> Optional[Integration]: ...
    async def create_integration(
        self, account_id: str, external_identity: str, display_name: Optional[str], activated_at: int
    ) -> Integration: ...
    async def list_integrations(self, account_id: str) -> List[Integration]: ...
    async def revoke_integration(self, integration_id: str, account_id: str) -> bool: ...

    async def append_notification(self, entry: NotificationLogEntry) -> NotificationLogEntry: ...
    async def list_notifications(self, account_id: Optional[str] = None, limit: int = 50) -> List[NotificationLogEntry]: ...


def new_id() -> str:
    return uuid.uuid4().hex


class InMemoryGatewayStore:
    """Dict-backed store for development and tests.

    Check-and-set operations (code consumption, identity binding) run under one
    RLock so each is a single indivisible step.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._prefs: Dict[str, AccountPreferences] = {}
        self._categories: Dict[str, List[Category]] = {}
        self._transactions: Dict[str, List[Transaction]] = {}
        self._codes: Dict[str, ActivationCode] = {}
        self._integrations: Dict[str, Integration] = {}
        self._notifications: List[NotificationLogEntry] = []

    # --- preferences ---
    async def get_preferences(self, account_id: str) -> AccountPreferences:
        with self._lock:
            prefs = self._prefs.get(account_id)
            if prefs is None:
                return AccountPreferences(account_id=account_id)
            return prefs.model_copy()

    async def save_preferences(self, prefs: AccountPreferences) -> AccountPreferences:
        with self._lock:
            self._prefs[prefs.account_id] = prefs.model_copy()
            return prefs

    async def list_reminder_accounts(self) -> List[str]:
        with self._lock:
            return [aid for aid, p in self._prefs.items() if p.transaction_reminders]

    # --- categories & transactions ---
    async def list_categories(self, account_id: str) -> List[Category]:
        with self._lock:
            cats = self._categories.get(account_id)
            if cats is None:
                cats = [
                    Category(category_id=f"{account_id}:{i}", name=c["name"], type=c["type"])  # type: ignore[arg-type]
                    for i, c in enumerate(DEFAULT_CATEGORIES, start=1)
                ]
                self._categories[account_id] = cats
            return list(cats)

    async def create_transaction(self, tx: Transaction) -> Transaction:
        with self._lock:
            self._transactions.setdefault(tx.account_id, []).append(tx)
            return tx

    async def list_transactions(
        self, account_id: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> List[Transaction]:
        with self._lock:
            items = [
                t
                for t in self._transactions.get(account_id, [])
                if (start is None or t.date >= start) and (end is None or t.date < end)
            ]
        # Newest first
        return sorted(items, key=lambda t: (t.date, t.created_at), reverse=True)

    async def count_transactions_between(self, account_id: str, start: int, end: int) -> int:
        return len(await self.list_transactions(account_id, start, end))

    # --- activation codes ---
    async def create_activation_code(self, code: ActivationCode) -> ActivationCode:
        with self._lock:
            if code.code in self._codes:
                raise ActivationCodeCollision(code.code)
            self._codes[code.code] = code.model_copy()
            return code

    async def consume_activation_code(self, code: str, now: int) -> Optional[ActivationCode]:
        with self._lock:
            entry = self._codes.get(code)
            if entry is None or not entry.usable_at(now):
                return None
            entry.used_at = now
            return entry.model_copy()

    async def release_activation_code(self, code: str, used_at: int) -> None:
        with self._lock:
            entry = self._codes.get(code)
            if entry is not None and entry.used_at == used_at:
                entry.used_at = None

    async def list_active_codes(self, account_id: str, now: int) -> List[ActivationCode]:
        with self._lock:
            active = [c.model_copy() for c in self._codes.values() if c.account_id == account_id and c.usable_at(now)]
        return sorted(active, key=lambda c: c.created_at)

    # --- integrations ---
    async def find_integration_by_identity(self, external_identity: str) -> Optional[Integration]:
        with self._lock:
            for integ in self._integrations.values():
                if integ.external_identity == external_identity and integ.status == "active":
                    return integ.model_copy()
            return None

    async def create_integration(
        self, account_id: str, external_identity: str, display_name: Optional[str], activated_at: int
    ) -> Integration:
        with self._lock:
            for integ in self._integrations.values():
                if integ.external_identity == external_identity and integ.status == "active":
                    raise IdentityAlreadyBound(external_identity)
            integ = Integration(
                integration_id=new_id(),
                account_id=account_id,
                external_identity=external_identity,
                display_name=display_name,
                status="active",
                activated_at=activated_at,
            )
            self._integrations[integ.integration_id] = integ
            return integ.model_copy()

    async def list_integrations(self, account_id: str) -> List[Integration]:
        with self._lock:
            items = [i.model_copy() for i in self._integrations.values() if i.account_id == account_id]
        return sorted(items, key=lambda i: i.activated_at)

    async def revoke_integration(self, integration_id: str, account_id: str) -> bool:
        with self._lock:
            integ = self._integrations.get(integration_id)
            if integ is None or integ.account_id != account_id or integ.status != "active":
                return False
            integ.status = "revoked"
            return True

    # --- notification log ---
    async def append_notification(self, entry: NotificationLogEntry) -> NotificationLogEntry:
        with self._lock:
            self._notifications.append(entry.model_copy())
            return entry

    async def list_notifications(self, account_id: Optional[str] = None, limit: int = 50) -> List[NotificationLogEntry]:
        with self._lock:
            items = [e.model_copy() for e in self._notifications if account_id is None or e.account_id == account_id]
        items.reverse()
        return items[: max(0, limit)]


_store: GatewayStore | None = None


def get_store() -> GatewayStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("CHATLINK_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        try:
            from .store_mongo import MongoGatewayStore  # type: ignore

            _store = MongoGatewayStore()
            return _store
        except Exception:
            _store = None
    if _store is None:
        _store = InMemoryGatewayStore()
    return _store


def reset_store(store: Optional[GatewayStore] = None) -> None:
    global _store
    _store = store
