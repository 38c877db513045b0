"""SQS consumer for source table completion notifications."""

import asyncio
import json

import boto3
from botocore.exceptions import ClientError
from pydantic import ValidationError

from kpi_engine.application.dto.events import SrcTableCompleteEvent
from kpi_engine.infrastructure.config.settings import Settings

SRC_TABLE_COMPLETE = "src_table_complete"


class SQSConsumer:
    """SQS consumer for source table completion notifications."""

    def __init__(self, settings: Settings) -> None:
        """Initialize SQS client."""
        self.sqs_client = boto3.client("sqs", region_name=settings.aws_region)
        self.queue_url = settings.aws_sqs_notification_queue_url

    async def receive_message(self) -> tuple[SrcTableCompleteEvent | None, str | None]:
        """Receive and parse message from SQS.

        Returns:
            Tuple of (event, receipt_handle) or (None, None) if no message.
        """
        try:
            response = await asyncio.to_thread(
                self.sqs_client.receive_message,
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=1,
                WaitTimeSeconds=20,
                MessageAttributeNames=["All"],
            )
        except ClientError as e:
            raise RuntimeError(f"Failed to receive message from SQS: {e}") from e

        messages = response.get("Messages", [])
        if not messages:
            return None, None

        message = messages[0]
        receipt_handle = message["ReceiptHandle"]
        try:
            body = json.loads(message["Body"])
            return self._parse_event(body), receipt_handle
        except (KeyError, json.JSONDecodeError, ValidationError, ValueError) as e:
            # Poison message: hand back the handle so the caller can drop it
            raise MessageParseError(receipt_handle, f"Failed to parse message: {e}") from e

    def _parse_event(self, body: dict) -> SrcTableCompleteEvent:
        """Parse event from SQS message body."""
        if body.get("Type") == "Notification":
            return self._parse_sns_message(body)
        return self._parse_direct_message(body)

    def _parse_sns_message(self, sns_body: dict) -> SrcTableCompleteEvent:
        """Parse event from SNS-wrapped message."""
        event_data = dict(json.loads(sns_body["Message"]))
        self._apply_message_attributes(event_data, sns_body.get("MessageAttributes", {}))

        event = SrcTableCompleteEvent.model_validate(event_data)
        self._validate_event_type(event)
        return event

    def _parse_direct_message(self, body: dict) -> SrcTableCompleteEvent:
        event = SrcTableCompleteEvent.model_validate(body)
        self._validate_event_type(event)
        return event

    def _apply_message_attributes(self, event_data: dict, message_attributes: dict) -> None:
        """Apply SNS message attributes to event data."""
        if not message_attributes:
            return

        type_attr = message_attributes.get("type", {}).get("Value")
        table_attr = message_attributes.get("srcTableName", {}).get("Value")

        if type_attr:
            event_data["type"] = type_attr
        if table_attr:
            event_data["srcTableName"] = table_attr

    def _validate_event_type(self, event: SrcTableCompleteEvent) -> None:
        if event.type != SRC_TABLE_COMPLETE:
            raise ValueError(f"Unexpected event type: {event.type}")

    async def delete_message(self, receipt_handle: str) -> None:
        """Delete message from SQS."""
        try:
            await asyncio.to_thread(
                self.sqs_client.delete_message,
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt_handle,
            )
        except ClientError as e:
            raise RuntimeError(f"Failed to delete message from SQS: {e}") from e


class MessageParseError(RuntimeError):
    """Received message could not be parsed into an event."""

    def __init__(self, receipt_handle: str, message: str) -> None:
        self.receipt_handle = receipt_handle
        super().__init__(message)
