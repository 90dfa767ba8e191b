from __future__ import annotations
import os
import time
from typing import Callable, Dict, Optional

import redis.asyncio as redis

BACKEND = os.getenv("WEBHOOK_DEDUP_BACKEND", "off").lower()  # off|memory|redis

SEEN_TTL_SECONDS = 24 * 3600


# ---- keys
def k_seen(payment_id: str) -> str: return f"seenpay:{payment_id}"


class MemorySeenPayments:
    """Per-process replay guard; forgets on restart.

    Entries are kept in insertion order, which with a fixed ttl is also
    expiry order, so expired ids are evicted from the front.
    """

    def __init__(self, ttl_seconds: int = SEEN_TTL_SECONDS,
                 clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl_seconds
        self.clock = clock
        self._seen: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def _evict_expired(self, now: float) -> None:
        while self._seen:
            oldest = next(iter(self._seen))
            if self._seen[oldest] > now:
                break
            del self._seen[oldest]

    async def mark_seen(self, payment_id: str) -> bool:
        # True if this is the first time we see payment_id
        now = self.clock()
        self._evict_expired(now)
        if payment_id in self._seen:
            return False
        self._seen[payment_id] = now + self.ttl
        return True


class RedisSeenPayments:
    def __init__(self, r: redis.Redis,
                 ttl_seconds: int = SEEN_TTL_SECONDS) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def mark_seen(self, payment_id: str) -> bool:
        # NX gate per payment id
        ok = await self.r.set(k_seen(payment_id), "1", nx=True, ex=self.ttl)
        return bool(ok)


SeenPayments = MemorySeenPayments | RedisSeenPayments


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, r: Optional[redis.Redis] = None,
              backend: Optional[str] = None,
              ttl_seconds: int = SEEN_TTL_SECONDS) -> Optional[SeenPayments]:
    backend = (backend or BACKEND).lower()
    if backend in ("", "off", "none"):
        return None
    if backend == "memory":
        return MemorySeenPayments(ttl_seconds=ttl_seconds)
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "SeenPayments(redis) requires r=redis.Redis"
            )
        return RedisSeenPayments(r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown WEBHOOK_DEDUP_BACKEND: {backend!r}")


__all__ = [
    "MemorySeenPayments", "RedisSeenPayments", "SeenPayments",
    "new_store", "BACKEND",
]
