"""Three-tier cache facade: L1 memory, L2 Redis, L3 partition files."""

import asyncio
from typing import Any

import structlog

from kpi_engine.domain.entities import CacheInvalidationEvent, PhysicalTableRef
from kpi_engine.domain.enums import CacheTier
from kpi_engine.domain.errors import CacheTierUnavailableError
from kpi_engine.domain.fingerprint import CacheFingerprint
from kpi_engine.domain.types import ResultRows
from kpi_engine.infrastructure.cache.l1_memory import L1MemoryCache
from kpi_engine.infrastructure.cache.l2_redis import L2RedisCache
from kpi_engine.infrastructure.cache.l3_file import L3FileCache
from kpi_engine.infrastructure.observability.metrics import cache_errors, cache_hits, cache_misses

logger = structlog.get_logger()


class CacheHierarchy:
    """Looks up results L1 then L2, and partition files through L3.

    L1 and L2 are optional (None disables the tier). Empty results are
    never cached. A tier whose store fails is logged and counts as a miss.
    Blocking L2 and L3 calls run in worker threads.
    """

    def __init__(
        self,
        l3: L3FileCache,
        l1: L1MemoryCache | None = None,
        l2: L2RedisCache | None = None,
    ) -> None:
        """Initialize cache hierarchy."""
        self.l1 = l1
        self.l2 = l2
        self.l3 = l3

    async def get(self, fingerprint: CacheFingerprint) -> ResultRows | None:
        key = fingerprint.canonical()
        if self.l1 is not None:
            value = self.l1.get(key)
            if value is not None:
                cache_hits.labels(tier=CacheTier.L1.value).inc()
                logger.debug("query_cache_hit", tier=CacheTier.L1.value, key=key)
                return value
            cache_misses.labels(tier=CacheTier.L1.value).inc()

        if self.l2 is not None:
            try:
                value = await asyncio.to_thread(self.l2.get, key)
            except CacheTierUnavailableError as e:
                self._tier_failed(e, "get", key=key)
                value = None
            if value is not None:
                cache_hits.labels(tier=CacheTier.L2.value).inc()
                logger.debug("query_cache_hit", tier=CacheTier.L2.value, key=key)
                if self.l1 is not None:
                    self.l1.put(key, value)
                return value
            cache_misses.labels(tier=CacheTier.L2.value).inc()

        return None

    def put(self, fingerprint: CacheFingerprint, rows: ResultRows) -> None:
        """Store in L1 synchronously and queue the L2 write."""
        if not rows:
            return
        key = fingerprint.canonical()
        if self.l1 is not None:
            self.l1.put(key, rows)
        if self.l2 is not None:
            self.l2.put_async(key, rows)

    async def get_file(self, ref: PhysicalTableRef) -> str:
        return await self.l3.get_or_download(ref)

    async def get_file_key(self, key: str) -> str:
        return await self.l3.get_or_download_key(key)

    def release_files(self, paths: list[str]) -> None:
        self.l3.release(paths)

    async def invalidate(self, metric_id: str, time_point: str) -> dict[str, int]:
        """Evict metric_id at time_point from every enabled tier."""
        removed = {tier.value: 0 for tier in CacheTier}
        if self.l1 is not None:
            removed[CacheTier.L1.value] = self.l1.invalidate(metric_id, time_point)
        if self.l2 is not None:
            try:
                removed[CacheTier.L2.value] = await asyncio.to_thread(self.l2.invalidate, metric_id, time_point)
            except CacheTierUnavailableError as e:
                self._tier_failed(e, "invalidate", metric_id=metric_id, time_point=time_point)
        try:
            removed[CacheTier.L3.value] = await asyncio.to_thread(self.l3.invalidate, metric_id, time_point)
        except OSError as e:
            self._tier_failed(
                CacheTierUnavailableError(CacheTier.L3.value, str(e)),
                "invalidate",
                metric_id=metric_id,
                time_point=time_point,
            )
        return removed

    async def invalidate_event(self, event: CacheInvalidationEvent) -> dict[str, int]:
        """Evict the exact metric_ids x time_points cross-product of an event."""
        totals = {tier.value: 0 for tier in CacheTier}
        for metric_id, time_point in event.pairs():
            for tier, count in (await self.invalidate(metric_id, time_point)).items():
                totals[tier] += count
        logger.info(
            "cache_invalidated",
            model_id=event.model_id,
            metric_ids=list(event.metric_ids),
            time_points=list(event.time_points),
            **totals,
        )
        return totals

    async def invalidate_all(self) -> None:
        if self.l1 is not None:
            self.l1.invalidate_all()
        if self.l2 is not None:
            try:
                await asyncio.to_thread(self.l2.invalidate_all)
            except CacheTierUnavailableError as e:
                self._tier_failed(e, "invalidate_all")
        try:
            await asyncio.to_thread(self.l3.invalidate_all)
        except OSError as e:
            self._tier_failed(CacheTierUnavailableError(CacheTier.L3.value, str(e)), "invalidate_all")
        logger.info("cache_cleared")

    def stats(self) -> dict[str, Any]:
        return {
            CacheTier.L1.value: self.l1.stats() if self.l1 is not None else {"enabled": False},
            CacheTier.L2.value: {"enabled": self.l2 is not None},
            CacheTier.L3.value: self.l3.stats(),
        }

    @staticmethod
    def _tier_failed(error: CacheTierUnavailableError, operation: str, **context: str) -> None:
        cache_errors.labels(tier=error.tier).inc()
        logger.warning("cache_tier_unavailable", tier=error.tier, operation=operation, error=str(error), **context)
