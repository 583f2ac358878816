from __future__ import annotations

"""Inbound chat messages as internal value types.

The automation layer hands us loosely shaped payloads. They are wrapped once,
at the router boundary, into ``InboundMessage`` and then classified into one of
the ``ClassifiedMessage`` variants so downstream handlers never look at the
library's object shape.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

USER_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"
BROADCAST_ID = "status@broadcast"

TEXT_KINDS = ("chat", "text")
VOICE_KINDS = ("ptt", "audio", "voice")
IMAGE_KINDS = ("image",)


def normalize_identity(address: str) -> str:
    """Strip the user-chat suffix: '62812@c.us' -> '62812'."""
    address = (address or "").strip()
    if address.endswith(USER_SUFFIX):
        return address[: -len(USER_SUFFIX)]
    return address


def to_chat_id(identity: str) -> str:
    identity = (identity or "").strip()
    if "@" in identity:
        return identity
    return f"{identity}{USER_SUFFIX}"


@dataclass(frozen=True)
class InboundMessage:
    key: str
    sender: str
    body: str
    kind: str
    media_ref: Optional[str] = None
    display_name: Optional[str] = None
    is_group: bool = False

    @staticmethod
    def from_event(key: str, payload: Dict[str, Any]) -> "InboundMessage":
        raw_from = str(payload.get("from") or "")
        is_group = raw_from.endswith(GROUP_SUFFIX) or raw_from == BROADCAST_ID or bool(payload.get("isGroup"))
        media_ref = payload.get("mediaRef") or payload.get("media_ref")
        if not media_ref and payload.get("hasMedia"):
            media_ref = payload.get("id")
        display = payload.get("notifyName") or payload.get("display_name") or payload.get("displayName")
        return InboundMessage(
            key=key,
            sender=normalize_identity(raw_from),
            body=str(payload.get("body") or ""),
            kind=str(payload.get("type") or "chat").lower(),
            media_ref=str(media_ref) if media_ref else None,
            display_name=str(display) if display else None,
            is_group=is_group,
        )


# --- classified variants ---
@dataclass(frozen=True)
class PairingRequest:
    message: InboundMessage


@dataclass(frozen=True)
class Command:
    message: InboundMessage
    account_id: str
    name: str


@dataclass(frozen=True)
class Text:
    message: InboundMessage
    account_id: str
    text: str


@dataclass(frozen=True)
class Voice:
    message: InboundMessage
    account_id: str


@dataclass(frozen=True)
class Image:
    message: InboundMessage
    account_id: str


@dataclass(frozen=True)
class Unsupported:
    message: InboundMessage
    account_id: str
    kind: str


ClassifiedMessage = Union[PairingRequest, Command, Text, Voice, Image, Unsupported]

COMMAND_KEYWORDS: Dict[str, str] = {
    "help": "help",
    "bantuan": "help",
    "balance": "balance",
    "saldo": "balance",
    "ringkasan": "balance",
    "status": "status",
}


def match_command(body: str) -> Optional[str]:
    return COMMAND_KEYWORDS.get((body or "").strip().lower())


def classify(message: InboundMessage, account_id: Optional[str]) -> ClassifiedMessage:
    """Total classification of a non-group inbound message."""
    if account_id is None:
        return PairingRequest(message=message)
    if message.kind in TEXT_KINDS and message.body.strip():
        command = match_command(message.body)
        if command:
            return Command(message=message, account_id=account_id, name=command)
        return Text(message=message, account_id=account_id, text=message.body)
    if message.kind in VOICE_KINDS:
        return Voice(message=message, account_id=account_id)
    if message.kind in IMAGE_KINDS:
        return Image(message=message, account_id=account_id)
    return Unsupported(message=message, account_id=account_id, kind=message.kind)
