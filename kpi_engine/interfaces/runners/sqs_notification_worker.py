"""SQS notification worker adapter."""

import structlog

from kpi_engine.application.use_cases.handle_table_complete import run as handle_table_complete
from kpi_engine.domain.entities import SrcTableCompleteResult
from kpi_engine.domain.ports import ClockPort, InvalidationBusPort, MetadataPort
from kpi_engine.infrastructure.aws.sqs_consumer import MessageParseError, SQSConsumer
from kpi_engine.infrastructure.cache.hierarchy import CacheHierarchy

logger = structlog.get_logger()


class SQSNotificationWorker:
    """Consumes source table completion notifications one message at a time."""

    def __init__(
        self,
        sqs_consumer: SQSConsumer,
        metadata: MetadataPort,
        cache: CacheHierarchy,
        clock: ClockPort,
        bus: InvalidationBusPort | None = None,
    ) -> None:
        """Initialize SQS notification worker."""
        self.sqs_consumer = sqs_consumer
        self.metadata = metadata
        self.cache = cache
        self.clock = clock
        self.bus = bus

    async def process_next_message(self) -> SrcTableCompleteResult | None:
        """Process next message from SQS. Returns None when the queue was empty."""
        try:
            event, receipt_handle = await self.sqs_consumer.receive_message()
        except MessageParseError as e:
            logger.error("notification_message_invalid", error=str(e))
            await self.sqs_consumer.delete_message(e.receipt_handle)
            return None

        if event is None:
            return None

        try:
            return await handle_table_complete(event, self.metadata, self.cache, self.clock, self.bus)
        finally:
            await self.sqs_consumer.delete_message(receipt_handle)
