from __future__ import annotations

"""AI delegate: free-form text, voice or receipt images in, transaction candidates out.

The gateway depends only on ``ExtractionDelegate``. ``OpenAIExtractionDelegate``
talks to any OpenAI-compatible REST endpoint over ``requests``.

Env vars:
- OPENAI_API_KEY (required for live calls)
- OPENAI_BASE_URL (default https://api.openai.com/v1)
- OPENAI_MODEL (default gpt-4o-mini), OPENAI_TRANSCRIBE_MODEL (default whisper-1)
- CHATLINK_AI_BREAKER_THRESHOLD, CHATLINK_AI_BREAKER_COOLDOWN
"""

import asyncio
import base64
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.models import TransactionCandidate
from ..errors import ExtractionError

LOG = logging.getLogger("chatlink.ai")

KIND_TEXT = "text"
KIND_VOICE = "voice"
KIND_IMAGE = "image"

CONFIDENCE_FLOOR = {KIND_TEXT: 0.7, KIND_VOICE: 0.6, KIND_IMAGE: 0.6}

_BREAKER_STATE = {"fails": 0, "opened_at": 0.0}
_BREAKER_THRESHOLD = int(os.getenv("CHATLINK_AI_BREAKER_THRESHOLD", "3"))
_BREAKER_COOLDOWN = float(os.getenv("CHATLINK_AI_BREAKER_COOLDOWN", "60.0"))
_TIMEOUT = (int(os.getenv("CHATLINK_AI_CONNECT_TIMEOUT", "5")), int(os.getenv("CHATLINK_AI_READ_TIMEOUT", "60")))


@dataclass(frozen=True)
class ExtractionRequest:
    kind: str
    text: Optional[str] = None
    media: Optional[bytes] = None
    mimetype: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    currency: str = "USD"
    locale: str = "en"


@dataclass(frozen=True)
class Extraction:
    candidates: List[TransactionCandidate]
    source_text: str = ""


class ExtractionDelegate(Protocol):
    async def extract(self, request: ExtractionRequest) -> Optional[Extraction]: ...


def _breaker_open() -> bool:
    opened = _BREAKER_STATE["opened_at"]
    if opened == 0.0:
        return False
    if time.time() - opened < _BREAKER_COOLDOWN:
        return True
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0
    return False


def _record_fail() -> None:
    _BREAKER_STATE["fails"] += 1
    if _BREAKER_STATE["fails"] >= _BREAKER_THRESHOLD and _BREAKER_STATE["opened_at"] == 0.0:
        _BREAKER_STATE["opened_at"] = time.time()
        LOG.warning("ai_breaker_opened", extra={"fails": _BREAKER_STATE["fails"], "cooldown_s": _BREAKER_COOLDOWN})


def _record_success() -> None:
    if _BREAKER_STATE["fails"] or _BREAKER_STATE["opened_at"]:
        LOG.info("ai_breaker_closed")
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


def reset_breaker() -> None:
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _system_prompt(request: ExtractionRequest) -> str:
    cats = ", ".join(request.categories) or "Other"
    return (
        "You extract personal finance transactions from user messages. "
        "Reply with JSON only: {\"transactions\": [{\"amount\": number, \"type\": \"income\"|\"expense\", "
        "\"category\": string, \"description\": string, \"date\": unix-seconds or null, \"confidence\": 0..1}]}. "
        f"Pick category from: {cats}. Default currency is {request.currency}; amounts are plain numbers "
        "(\"50rb\" = 50000, \"1.5jt\" = 1500000). Set date only when the message names a day. "
        f"Write descriptions in the user's language ({request.locale}). "
        "Return an empty list when the message is not a transaction."
    )


def _strip_json_block(text: str) -> str:
    m = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    return (m.group(1) if m else text).strip()


def parse_candidates(raw: str) -> List[TransactionCandidate]:
    """Parse the model reply; accepts a ``transactions`` list or a single object."""
    try:
        data = json.loads(_strip_json_block(raw))
    except (TypeError, ValueError) as exc:
        raise ExtractionError(f"unparseable model reply: {exc}") from exc
    if isinstance(data, dict) and isinstance(data.get("transactions"), list):
        items = data["transactions"]
    elif isinstance(data, dict):
        items = [data]
    elif isinstance(data, list):
        items = data
    else:
        items = []
    out: List[TransactionCandidate] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            cand = TransactionCandidate(**{k: v for k, v in item.items() if v is not None})
        except ValidationError:
            LOG.debug("candidate_dropped", extra={"item": str(item)[:200]})
            continue
        if cand.amount > 0:
            out.append(cand)
    return out


def apply_floor(candidates: List[TransactionCandidate], kind: str) -> List[TransactionCandidate]:
    floor = CONFIDENCE_FLOOR.get(kind, 0.7)
    return [c for c in candidates if c.confidence >= floor]


class OpenAIExtractionDelegate:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        transcribe_model: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.base_url = (base_url or os.getenv("OPENAI_BASE_URL") or "https://api.openai.com/v1").rstrip("/")
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.transcribe_model = transcribe_model or os.getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1")
        self._session = session or _build_session()

    async def extract(self, request: ExtractionRequest) -> Optional[Extraction]:
        return await asyncio.to_thread(self._extract_sync, request)

    def _extract_sync(self, request: ExtractionRequest) -> Optional[Extraction]:
        if not self.api_key:
            raise ExtractionError("OPENAI_API_KEY is not configured")
        if _breaker_open():
            raise ExtractionError("AI provider circuit open")
        source = request.text or ""
        if request.kind == KIND_VOICE:
            if not request.media:
                return None
            source = self._transcribe(request.media, request.mimetype or "audio/ogg")
            if not source.strip():
                return None
            content: Any = source
        elif request.kind == KIND_IMAGE:
            if not request.media:
                return None
            uri = f"data:{request.mimetype or 'image/jpeg'};base64,{base64.b64encode(request.media).decode('ascii')}"
            content = [
                {"type": "text", "text": "Extract every purchased line item or the receipt total as transactions."},
                {"type": "image_url", "image_url": {"url": uri}},
            ]
        else:
            if not source.strip():
                return None
            content = source

        reply = self._chat(_system_prompt(request), content)
        candidates = apply_floor(parse_candidates(reply), request.kind)
        LOG.info("ai_extraction", extra={"kind": request.kind, "candidates": len(candidates)})
        if not candidates:
            return None
        return Extraction(candidates=candidates, source_text=source)

    def _post(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            resp = self._session.post(url, headers=headers, timeout=_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            _record_fail()
            raise ExtractionError(f"AI provider unreachable: {exc}") from exc
        if resp.status_code >= 400:
            _record_fail()
            raise ExtractionError(f"AI provider error {resp.status_code}: {(resp.text or '')[:200]}")
        _record_success()
        return resp.json()

    def _chat(self, system: str, content: Any) -> str:
        payload = {
            "model": self.model,
            "temperature": 0.1,
            "response_format": {"type": "json_object"},
            "messages": [{"role": "system", "content": system}, {"role": "user", "content": content}],
        }
        data = self._post("/chat/completions", json=payload)
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ExtractionError("malformed chat completion") from exc

    def _transcribe(self, audio: bytes, mimetype: str) -> str:
        ext = mimetype.split("/")[-1].split(";")[0] or "ogg"
        data = self._post(
            "/audio/transcriptions",
            files={"file": (f"voice.{ext}", audio, mimetype)},
            data={"model": self.transcribe_model},
        )
        return str(data.get("text") or "")


_delegate: Optional[ExtractionDelegate] = None


def get_extraction_delegate() -> ExtractionDelegate:
    global _delegate
    if _delegate is None:
        _delegate = OpenAIExtractionDelegate()
    return _delegate


def set_extraction_delegate(delegate: Optional[ExtractionDelegate]) -> None:
    global _delegate
    _delegate = delegate
