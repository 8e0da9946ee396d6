"""Stage catalog and its process-wide cache.

The catalog is a small, rarely changed table (stage_meta). Operations that
need it (board, report) receive a StageCatalog explicitly; callers obtain one
from StageCatalogCache, which reloads after a bounded TTL or on an explicit
refresh().
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator

import structlog

from src.app.pipeline.schemas import StageMeta

logger = structlog.get_logger(__name__)


def expected_value(amount_cents: int, probability: int) -> int:
    """Probability-weighted amount: ``amount * probability / 100``, truncated toward zero."""
    product = amount_cents * probability
    magnitude = abs(product) // 100
    return magnitude if product >= 0 else -magnitude


class StageCatalog:
    """Immutable ordered view over stage_meta rows (ascending sort_order)."""

    def __init__(self, stages: Iterable[StageMeta]) -> None:
        self._stages: tuple[StageMeta, ...] = tuple(
            sorted(stages, key=lambda s: s.sort_order)
        )
        self._by_key: dict[str, StageMeta] = {s.key: s for s in self._stages}

    @property
    def stages(self) -> tuple[StageMeta, ...]:
        return self._stages

    @property
    def is_empty(self) -> bool:
        return not self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[StageMeta]:
        return iter(self._stages)

    def keys(self) -> list[str]:
        return [s.key for s in self._stages]

    def get(self, key: str) -> StageMeta | None:
        return self._by_key.get(key)

    def probability(self, key: str) -> int:
        """Probability weight for a stage key; 0 for keys not in the catalog."""
        stage = self._by_key.get(key)
        return stage.probability if stage is not None else 0

    def won_stage(self) -> StageMeta | None:
        """First stage flagged is_won, in sort order."""
        for stage in self._stages:
            if stage.is_won:
                return stage
        return None

    def lost_keys(self) -> list[str]:
        return [s.key for s in self._stages if s.is_lost]


class StageCatalogCache:
    """Read-mostly cache of the stage catalog with a bounded lifetime.

    Concurrent callers arriving while a reload is in flight wait on the same
    lock and reuse its result rather than issuing their own query.

    Args:
        loader: Async callable returning the current stage_meta rows.
        ttl_seconds: Seconds a loaded catalog stays valid.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        loader: Callable[[], Awaitable[list[StageMeta]]],
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._catalog: StageCatalog | None = None
        self._loaded_at: float = 0.0
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return (
            self._catalog is not None
            and self._clock() - self._loaded_at < self._ttl
        )

    async def get(self) -> StageCatalog:
        """Return the cached catalog, reloading it if expired or missing."""
        if self._is_fresh():
            return self._catalog  # type: ignore[return-value]
        async with self._lock:
            if self._is_fresh():
                return self._catalog  # type: ignore[return-value]
            return await self._load()

    async def refresh(self) -> StageCatalog:
        """Force a reload regardless of TTL."""
        async with self._lock:
            return await self._load()

    def invalidate(self) -> None:
        """Drop the cached catalog; the next get() reloads."""
        self._catalog = None

    async def _load(self) -> StageCatalog:
        rows = await self._loader()
        self._catalog = StageCatalog(rows)
        self._loaded_at = self._clock()
        logger.info("stage_catalog.loaded", stage_count=len(self._catalog))
        return self._catalog
