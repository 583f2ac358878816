from __future__ import annotations

"""Pairing: bind an external chat identity to an account with a short-lived code.

Activation order matters for the at-most-once guarantees:

1. an identity that is already bound is rejected before anything is written;
2. the code is consumed with one conditional update (its only consumption);
3. the integration is created; if the identity got bound concurrently the
   consumption is released again and the attempt is rejected.
"""

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..config import GatewaySettings
from ..domain.messages import InboundMessage, normalize_identity
from ..domain.models import ActivationCode, Integration
from ..errors import ActivationCodeCollision, IdentityAlreadyBound
from ..infrastructure.events import publish_event
from ..infrastructure.store import GatewayStore
from . import templates
from .notifier import CATEGORY_PAIRING, Notifier

logger = logging.getLogger("chatlink.pairing")

CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_ATTEMPTS = 5

ACTIVATED = "activated"
INVALID_CODE = "invalid_code"
IDENTITY_BOUND = "identity_bound"
ACTIVATION_ERROR = "error"

_REPLY_FOR = {
    ACTIVATED: "activation_success",
    INVALID_CODE: "activation_invalid",
    IDENTITY_BOUND: "activation_identity_bound",
    ACTIVATION_ERROR: "activation_error",
}


@dataclass(frozen=True)
class ActivationResult:
    reason: str
    integration: Optional[Integration] = None

    @property
    def ok(self) -> bool:
        return self.reason == ACTIVATED


def generate_code_value() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class PairingService:
    def __init__(
        self,
        store: GatewayStore,
        settings: GatewaySettings,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._settings = settings
        self._notifier = notifier
        self._clock = clock
        self._pattern = re.compile(
            rf"^{re.escape(settings.activation_keyword)}:\s*([A-Z0-9]{{{CODE_LENGTH}}})$", re.IGNORECASE
        )

    def match_activation(self, body: str) -> Optional[str]:
        """Return the normalized code when ``body`` is an activation message."""
        m = self._pattern.match((body or "").strip())
        return m.group(1).upper() if m else None

    async def generate_code(self, account_id: str) -> ActivationCode:
        now = int(self._clock())
        for _ in range(MAX_CODE_ATTEMPTS):
            candidate = ActivationCode(
                account_id=account_id,
                code=generate_code_value(),
                created_at=now,
                expires_at=now + self._settings.code_ttl_s,
            )
            try:
                created = await self._store.create_activation_code(candidate)
            except ActivationCodeCollision:
                continue
            logger.info("activation_code_issued", extra={"account_id": account_id, "expires_at": created.expires_at})
            return created
        raise ActivationCodeCollision(f"no free activation code after {MAX_CODE_ATTEMPTS} attempts")

    async def list_active_codes(self, account_id: str) -> List[ActivationCode]:
        return await self._store.list_active_codes(account_id, int(self._clock()))

    async def activate(self, code: str, external_identity: str, display_name: Optional[str] = None) -> ActivationResult:
        identity = normalize_identity(external_identity)
        code = (code or "").strip().upper()
        now = int(self._clock())

        if await self._store.find_integration_by_identity(identity) is not None:
            logger.info("activation_rejected_bound", extra={"identity": identity})
            return ActivationResult(IDENTITY_BOUND)

        consumed = await self._store.consume_activation_code(code, now)
        if consumed is None:
            logger.info("activation_rejected_code", extra={"identity": identity})
            return ActivationResult(INVALID_CODE)

        try:
            integration = await self._store.create_integration(consumed.account_id, identity, display_name, now)
        except IdentityAlreadyBound:
            await self._store.release_activation_code(code, consumed.used_at or now)
            logger.info("activation_lost_race", extra={"identity": identity})
            return ActivationResult(IDENTITY_BOUND)

        logger.info("activation_ok", extra={"identity": identity, "account_id": integration.account_id})
        publish_event("pairing.activated", {"account_id": integration.account_id, "identity": identity})
        return ActivationResult(ACTIVATED, integration)

    async def handle_inbound(self, key: str, message: InboundMessage) -> Optional[ActivationResult]:
        """Chat-side entry point for messages from unbound identities."""
        code = self.match_activation(message.body)
        if code is None:
            await self._reply(
                key,
                message.sender,
                templates.render(
                    "pairing_instructions", self._settings.default_locale, keyword=self._settings.activation_keyword
                ),
            )
            return None
        try:
            result = await self.activate(code, message.sender, message.display_name)
        except Exception:
            logger.exception("activation_failed", extra={"identity": message.sender})
            result = ActivationResult(ACTIVATION_ERROR)
        locale = self._settings.default_locale
        account_id = None
        if result.integration is not None:
            account_id = result.integration.account_id
            locale = (await self._store.get_preferences(account_id)).locale
        await self._reply(key, message.sender, templates.render(_REPLY_FOR[result.reason], locale), account_id)
        return result

    async def _reply(self, key: str, identity: str, body: str, account_id: Optional[str] = None) -> None:
        if self._notifier is None:
            return
        await self._notifier.send(key, identity, body, category=CATEGORY_PAIRING, account_id=account_id)
