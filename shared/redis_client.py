"""
redis_client.py – lazy Redis handle + kill-switch / heartbeat helpers
=====================================================================

• `rds` connects on first use, pinging up to REDIS_CONNECT_TRIES times,
  so importing this module never touches the network and a missing store
  costs the caller a bounded wait.
• `heartbeat(service, **fields)` writes a small JSON liveness blob.
• `trading_paused()` / `set_paused()` mirror the operator kill switch
  shared with the ops API.  An unreadable flag reads as *paused*.
"""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Optional

import redis

from .config import env
from .constants import KEY_HEARTBEAT, KEY_PAUSE_FLAG
from .logging import get_logger

# ───── CONFIG ──────────────────────────────────────────────────────────
REDIS_URL = env("REDIS_URL", "redis://redis:6379/0")
CONNECT_TRIES = env("REDIS_CONNECT_TRIES", 3, int)
SOCKET_TIMEOUT = env("REDIS_SOCKET_TIMEOUT", 2.0, float)
HEARTBEAT_TTL = env("HEARTBEAT_TTL_SEC", 60, int)
log = get_logger("shared.redis")


# ───── LAZY SINGLETON ─────────────────────────────────────────────────
class _LazyRedis:
    """Proxy that connects on first attribute access."""

    def __init__(self, url: str = REDIS_URL, tries: int = CONNECT_TRIES):
        self._url = url
        self._tries = max(1, tries)
        self._client: Optional["redis.Redis[Any]"] = None

    def __getattr__(self, name: str) -> Callable[..., Any]:  # noqa: D401
        if name.startswith("_"):
            raise AttributeError(name)
        if self._client is None:
            self._client = self._connect()
        return getattr(self._client, name)

    def _connect(self) -> "redis.Redis[Any]":
        last: Exception | None = None
        for attempt in range(1, self._tries + 1):
            client = redis.Redis.from_url(self._url, decode_responses=True,
                                          socket_timeout=SOCKET_TIMEOUT)
            try:
                client.ping()
            except redis.RedisError as exc:
                last = exc
                log.warning("redis %s unavailable (try %d/%d) – %s",
                            self._url, attempt, self._tries, exc)
                if attempt < self._tries:
                    time.sleep(min(2 * attempt, 5))
                continue
            log.info("connected to redis at %s", self._url)
            return client
        raise redis.ConnectionError(f"redis unreachable at {self._url}: {last}")


rds: "redis.Redis[Any]" = _LazyRedis()  # type: ignore[assignment]


# ───── HELPERS ────────────────────────────────────────────────────────
def heartbeat(service: str, **fields: Any) -> None:
    """`heartbeat:<service>` ← {"ts": epoch, ...fields}, expiring after HEARTBEAT_TTL_SEC."""
    blob = json.dumps({"ts": time.time(), **fields}, default=str)
    try:
        rds.set(KEY_HEARTBEAT.format(service), blob, ex=HEARTBEAT_TTL)
    except redis.RedisError as exc:
        log.error("heartbeat failed – %s", exc)


def trading_paused() -> bool:
    try:
        return rds.get(KEY_PAUSE_FLAG) == "1"
    except redis.RedisError as exc:
        log.warning("pause flag unreadable, assuming paused – %s", exc)
        return True


def set_paused(flag: bool) -> None:
    try:
        rds.set(KEY_PAUSE_FLAG, "1" if flag else "0")
    except redis.RedisError as exc:
        log.error("pause flag write failed – %s", exc)
