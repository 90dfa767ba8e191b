from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Callable, AsyncContextManager, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Product
from ..infra.timings import timeit

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

DEFAULT_TTL_SECONDS = 5 * 60


@dataclass(frozen=True)
class CatalogSnapshot:
    products: Tuple[Dict, ...]
    fetched_at: float


class CatalogStore:
    """Read-through cache over the products table.

    A single global entry, replaced when older than ``ttl_seconds``.
    Concurrent refreshes are harmless: the last writer wins and both see a
    fresh list.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic,
                 gated: Optional[Gated] = None) -> None:
        self.ttl = ttl_seconds
        self.clock = clock
        self.gated = gated
        self._snapshot: Optional[CatalogSnapshot] = None

    @property
    def snapshot(self) -> Optional[CatalogSnapshot]:
        return self._snapshot

    def is_fresh(self) -> bool:
        snap = self._snapshot
        if snap is None or self.ttl <= 0:
            return False
        return (self.clock() - snap.fetched_at) < self.ttl

    def invalidate(self) -> None:
        self._snapshot = None

    async def _fetch(self, db: AsyncSession) -> List[Dict]:
        stmt = select(Product).order_by(Product.id)
        async with timeit("db.list_products"):
            if self.gated is not None:
                async with self.gated():
                    result = await db.execute(stmt)
            else:
                result = await db.execute(stmt)
        return [p.to_dict() for p in result.scalars().all()]

    async def list_products(self, db: AsyncSession) -> Tuple[List[Dict], bool]:
        # returns (products, served_from_cache)
        if self.is_fresh():
            return list(self._snapshot.products), True

        products = await self._fetch(db)
        self._snapshot = CatalogSnapshot(
            products=tuple(products), fetched_at=self.clock()
        )
        logger.debug("catalog refreshed: %d products", len(products))
        return products, False
