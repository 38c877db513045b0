"""Cluster-wide cache invalidation over Redis pub/sub."""

import asyncio
from collections.abc import Awaitable, Callable

import redis
import structlog
from pydantic import ValidationError

from kpi_engine.application.dto.events import CacheInvalidationMessage
from kpi_engine.domain.entities import CacheInvalidationEvent
from kpi_engine.domain.ports import ClockPort, InvalidationBusPort

logger = structlog.get_logger()

DEFAULT_CHANNEL = "cache:invalidation"


class RedisInvalidationBus(InvalidationBusPort):
    """Publishes and receives CacheInvalidationMessage JSON on one channel."""

    def __init__(
        self,
        client: redis.Redis,
        clock: ClockPort,
        channel: str = DEFAULT_CHANNEL,
        poll_timeout: float = 1.0,
    ) -> None:
        """Initialize invalidation bus."""
        self.client = client
        self.clock = clock
        self.channel = channel
        self.poll_timeout = poll_timeout
        self._stopped = asyncio.Event()

    async def publish(self, model_id: str, metric_ids: list[str], time_points: list[str]) -> None:
        """Broadcast the exact metric_ids x time_points to every node."""
        message = CacheInvalidationMessage(
            model_id=model_id,
            metric_ids=metric_ids,
            time_points=time_points,
            timestamp=self.clock.now(),
        )
        payload = message.model_dump_json(by_alias=True)
        receivers = await asyncio.to_thread(self.client.publish, self.channel, payload)
        logger.info(
            "invalidation_published",
            channel=self.channel,
            model_id=model_id,
            metric_ids=metric_ids,
            time_points=time_points,
            receivers=receivers,
        )

    async def subscribe(self, handler: Callable[[CacheInvalidationEvent], Awaitable[None]]) -> None:
        """Deliver every event to handler until stop() is called.

        Malformed messages and handler failures are logged and skipped.
        """
        pubsub = self.client.pubsub()
        await asyncio.to_thread(pubsub.subscribe, self.channel)
        logger.info("invalidation_subscribed", channel=self.channel)
        try:
            while not self._stopped.is_set():
                try:
                    message = await asyncio.to_thread(
                        pubsub.get_message,
                        ignore_subscribe_messages=True,
                        timeout=self.poll_timeout,
                    )
                except redis.RedisError as e:
                    logger.error("invalidation_poll_failed", channel=self.channel, error=str(e))
                    await asyncio.sleep(self.poll_timeout)
                    continue
                if not message or message.get("type") != "message":
                    continue
                await self._dispatch(message.get("data"), handler)
        finally:
            await asyncio.to_thread(pubsub.close)
            logger.info("invalidation_unsubscribed", channel=self.channel)

    def stop(self) -> None:
        self._stopped.set()

    async def _dispatch(
        self,
        data: bytes | str | None,
        handler: Callable[[CacheInvalidationEvent], Awaitable[None]],
    ) -> None:
        try:
            event = CacheInvalidationMessage.model_validate_json(data or b"").to_event()
        except ValidationError as e:
            logger.warning("invalidation_message_malformed", channel=self.channel, error=str(e))
            return
        try:
            await handler(event)
        except Exception as e:
            logger.error(
                "invalidation_handler_failed",
                model_id=event.model_id,
                error=str(e),
                exc_info=True,
            )
