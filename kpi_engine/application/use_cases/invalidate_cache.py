"""Precise cache invalidation: local eviction plus cluster broadcast."""

from collections.abc import Awaitable, Callable

import structlog

from kpi_engine.domain.entities import CacheInvalidationEvent
from kpi_engine.domain.ports import ClockPort, InvalidationBusPort
from kpi_engine.infrastructure.cache.hierarchy import CacheHierarchy
from kpi_engine.infrastructure.observability.metrics import cache_invalidations

logger = structlog.get_logger()


async def run(
    model_id: str,
    metric_ids: list[str],
    time_points: list[str],
    cache: CacheHierarchy,
    clock: ClockPort,
    bus: InvalidationBusPort | None = None,
) -> dict[str, int]:
    """Evict metric_ids x time_points here, then tell every other node.

    Without a bus (invalidation disabled) only this node is evicted.
    """
    event = CacheInvalidationEvent(
        model_id=model_id,
        metric_ids=tuple(metric_ids),
        time_points=tuple(time_points),
        timestamp=clock.now(),
    )
    removed = await cache.invalidate_event(event)
    cache_invalidations.labels(origin="local").inc()

    if bus is not None:
        await bus.publish(model_id, list(metric_ids), list(time_points))
    else:
        logger.debug("invalidation_broadcast_disabled", model_id=model_id)
    return removed


def subscriber(cache: CacheHierarchy) -> Callable[[CacheInvalidationEvent], Awaitable[None]]:
    """Build the handler that applies received invalidation events to cache."""

    async def on_event(event: CacheInvalidationEvent) -> None:
        cache_invalidations.labels(origin="remote").inc()
        await cache.invalidate_event(event)

    return on_event
