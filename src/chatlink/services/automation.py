from __future__ import annotations

"""Automation client contract and the relay-backed implementation.

The automation client speaks the messaging network's protocol on the
gateway's behalf. Lifecycle events (``loading``, ``qr``, ``authenticated``,
``ready``, ``auth_failure``, ``disconnected``) and ``message`` events are
delivered to handlers registered with ``on``.
"""

import asyncio
import base64
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import GatewaySettings
from ..errors import RelayError, SendError, TransientLaunchError

logger = logging.getLogger("chatlink.automation")

LIFECYCLE_EVENTS = ("loading", "qr", "authenticated", "ready", "auth_failure", "disconnected")
MESSAGE_EVENT = "message"

# Substrings of launch errors worth retrying inline
TRANSIENT_MARKERS = ("ERR_INSUFFICIENT_RESOURCES", "net::ERR_", "Target closed")

Handler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class AutomationClient(Protocol):
    def on(self, event: str, handler: Handler) -> None: ...
    async def initialize(self) -> None: ...
    async def destroy(self) -> None: ...
    async def send_message(self, chat_id: str, body: str) -> None: ...
    async def download_media(self, media_ref: str) -> Optional[Dict[str, Any]]: ...


ClientFactory = Callable[[str], AutomationClient]


def is_transient_launch_error(exc: BaseException) -> bool:
    if isinstance(exc, TransientLaunchError):
        return True
    text = str(exc)
    return any(marker in text for marker in TRANSIENT_MARKERS)


class CallbackClient:
    """Handler bookkeeping shared by concrete clients."""

    def __init__(self, key: str) -> None:
        self.key = key
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        for handler in list(self._handlers.get(event, [])):
            result = handler(dict(payload or {}))
            if inspect.isawaitable(result):
                await result


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(502, 503, 504),
        allowed_methods=frozenset(["GET", "POST", "DELETE"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class RelayAutomationClient(CallbackClient):
    """Drives a sidecar relay that runs the browser automation.

    Commands go out as HTTP calls. The relay pushes lifecycle and message
    events back to ``POST /events``, which the gateway hands to ``emit``.
    """

    def __init__(
        self,
        key: str,
        base_url: str,
        token: Optional[str] = None,
        webhook_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
    ) -> None:
        super().__init__(key)
        self._base = base_url.rstrip("/")
        self._token = token
        self._webhook = webhook_url
        self._session = session or _build_session()
        self._timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["X-Relay-Token"] = self._token
        return headers

    def _url(self, *parts: str) -> str:
        return "/".join([self._base, "sessions", requests.utils.quote(self.key, safe="")] + list(parts))

    def _call(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> requests.Response:
        try:
            resp = self._session.request(method, url, json=payload, headers=self._headers(), timeout=self._timeout)
        except requests.RequestException as exc:
            raise RelayError(f"relay unreachable: {exc}") from exc
        if resp.status_code >= 400:
            detail = (resp.text or "")[:300]
            raise RelayError(f"relay {method} {url} failed: {resp.status_code} {detail}", status_code=resp.status_code)
        return resp

    async def initialize(self) -> None:
        payload: Dict[str, Any] = {}
        if self._webhook:
            payload["webhook"] = self._webhook
        try:
            await asyncio.to_thread(self._call, "POST", self._url("start"), payload)
        except RelayError as exc:
            if exc.status_code in (None, 502, 503, 504) or is_transient_launch_error(exc):
                raise TransientLaunchError(str(exc)) from exc
            raise

    async def destroy(self) -> None:
        await asyncio.to_thread(self._call, "DELETE", self._url())

    async def send_message(self, chat_id: str, body: str) -> None:
        try:
            await asyncio.to_thread(self._call, "POST", self._url("messages"), {"chatId": chat_id, "body": body})
        except RelayError as exc:
            raise SendError(str(exc)) from exc

    async def download_media(self, media_ref: str) -> Optional[Dict[str, Any]]:
        """Return ``{"mimetype", "data": bytes}`` or None when the media is gone."""
        url = self._url("media", requests.utils.quote(media_ref, safe=""))
        try:
            resp = await asyncio.to_thread(self._call, "GET", url)
        except RelayError as exc:
            if exc.status_code == 404:
                return None
            raise
        body = resp.json() if resp.content else {}
        data = body.get("data")
        if not data:
            return None
        return {"mimetype": body.get("mimetype") or "application/octet-stream", "data": base64.b64decode(data)}


def relay_client_factory(settings: GatewaySettings) -> ClientFactory:
    if not settings.relay_url:
        raise RuntimeError("CHATLINK_RELAY_URL is not configured")
    session = _build_session()

    def factory(key: str) -> AutomationClient:
        return RelayAutomationClient(
            key,
            settings.relay_url or "",
            token=settings.relay_token,
            webhook_url=settings.webhook_url,
            session=session,
        )

    return factory
