from __future__ import annotations

"""Optional Redis pub/sub fan-out of gateway events.

Publishing is best-effort: without ``REDIS_URL`` (or with an unreachable
server) every call is a no-op. Called from the event loop, the Redis round
trip runs on a single worker thread so events keep their order and a slow
server never holds up the loop.
"""

import asyncio
import json
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None  # type: ignore

logger = logging.getLogger("chatlink.events")

CHANNEL_PREFIX = "chatlink.events"
DEFAULT_RETRY_INTERVAL_S = 30.0


class _RedisPublisher:
    def __init__(
        self,
        url: str,
        retry_interval_s: float = DEFAULT_RETRY_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._client = None
        self._retry_interval_s = retry_interval_s
        self._clock = clock
        self._next_connect_at = 0.0

    def _connect(self) -> None:
        if redis is None:
            return
        now = self._clock()
        if now < self._next_connect_at:
            return
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5, socket_connect_timeout=0.5)
            self._client.ping()
        except Exception:
            logger.debug("Redis unavailable at %s; next attempt in %.0fs", self._url, self._retry_interval_s)
            self._client = None
            self._next_connect_at = now + self._retry_interval_s

    def publish(self, channel: str, payload: Dict[str, Any]) -> bool:
        if not self._client:
            self._connect()
        if not self._client:
            return False
        try:
            self._client.publish(channel, json.dumps(payload, default=str))
            return True
        except Exception:
            self._client = None
            self._next_connect_at = self._clock() + self._retry_interval_s
            return False


_publisher: Optional[_RedisPublisher] = None
_executor: Optional[ThreadPoolExecutor] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    try:
        retry_interval_s = float(os.getenv("CHATLINK_REDIS_RETRY_S", DEFAULT_RETRY_INTERVAL_S))
    except ValueError:
        retry_interval_s = DEFAULT_RETRY_INTERVAL_S
    _publisher = _RedisPublisher(url, retry_interval_s=retry_interval_s)
    return _publisher


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chatlink-events")
    return _executor


def channel_for(event_type: str) -> str:
    return f"{CHANNEL_PREFIX}.{event_type}"


def publish_event(event_type: str, payload: Dict[str, Any]) -> bool:
    """Publish ``payload`` on ``chatlink.events.<event_type>``.

    Inside a running event loop the publish is queued and True means queued;
    outside one it happens inline. Returns False when skipped.
    """
    publisher = _get_publisher()
    if not publisher:
        return False
    body = dict(payload)
    body.setdefault("ts", int(time.time()))
    channel = channel_for(event_type)
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return publisher.publish(channel, body)
    loop.run_in_executor(_get_executor(), publisher.publish, channel, body)
    return True


def reset_event_client() -> None:
    global _publisher
    _publisher = None
