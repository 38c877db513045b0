"""Unit tests for event and request parsing."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError

from kpi_engine.application.dto.events import CacheInvalidationMessage, SrcTableCompleteEvent
from kpi_engine.application.dto.query import KpiQueryRequest, KpiQueryResponse
from kpi_engine.infrastructure.aws.sqs_consumer import MessageParseError, SQSConsumer


@pytest.fixture
def consumer():
    settings = MagicMock()
    settings.aws_region = "us-east-1"
    settings.aws_sqs_notification_queue_url = "https://sqs/queue"
    with patch("kpi_engine.infrastructure.aws.sqs_consumer.boto3") as mock_boto3:
        mock_boto3.client.return_value = MagicMock()
        return SQSConsumer(settings)


def test_parse_src_table_complete_event():
    """Test parsing src_table_complete event."""
    event = SrcTableCompleteEvent(**{"srcTableName": "ods_user_day", "opTime": "20251201"})

    assert event.type == "src_table_complete"
    assert event.src_table_name == "ods_user_day"
    assert event.op_time == "20251201"


def test_parse_event_ignores_extra_fields():
    """Test parsing event ignores extra fields that may be present in SNS messages."""
    event = SrcTableCompleteEvent(**{"srcTableName": "t", "opTime": "20251201", "producer": "etl"})
    assert event.src_table_name == "t"


def test_invalidation_message_to_event():
    message = CacheInvalidationMessage.model_validate_json(
        json.dumps(
            {
                "modelId": "M1",
                "metricIds": ["KC1001"],
                "timePoints": ["20251201"],
                "timestamp": "2025-12-02T08:00:00Z",
            }
        )
    )
    event = message.to_event()

    assert event.metric_ids == ("KC1001",)
    assert event.timestamp == datetime(2025, 12, 2, 8, 0, tzinfo=timezone.utc)
    assert event.model_id == "M1"


def test_query_request_aliases_and_nulls():
    request = KpiQueryRequest.model_validate(
        {
            "kpiArray": ["KD1001"],
            "opTimeArray": ["20251201"],
            "dimCodeArray": None,
            "dimConditionArray": None,
            "includeHistoricalData": None,
            "includeTargetData": True,
        }
    )

    assert request.dim_code_array == []
    assert request.dim_condition_array == []
    assert request.include_historical_data is False
    assert request.include_target_data is True


def test_query_request_requires_metrics_and_time_points():
    with pytest.raises(ValidationError):
        KpiQueryRequest.model_validate({"kpiArray": [], "opTimeArray": ["20251201"]})
    with pytest.raises(ValidationError):
        KpiQueryRequest.model_validate({"kpiArray": ["KD1001"]})


def test_dim_conditions_split_and_merge():
    request = KpiQueryRequest.model_validate(
        {
            "kpiArray": ["KD1001"],
            "opTimeArray": ["20251201"],
            "dimConditionArray": [
                {"dimConditionCode": "city_id", "dimConditionVal": "4,10"},
                {"dimConditionCode": "city_id", "dimConditionVal": ["10", "12"]},
                {"dimConditionCode": "county_id", "dimConditionVal": " 7 "},
            ],
        }
    )

    assert request.dim_conditions() == {"city_id": ["4", "10", "12"], "county_id": ["7"]}


def test_response_serializes_with_aliases():
    body = KpiQueryResponse.success([{"opTime": "20251201"}]).model_dump(by_alias=True)
    assert body == {"dataArray": [{"opTime": "20251201"}], "status": "0000", "msg": "success"}

    failure = KpiQueryResponse.failure("boom").model_dump(by_alias=True)
    assert failure == {"dataArray": [], "status": "9999", "msg": "boom"}


def _sqs_response(body: dict) -> dict:
    return {"Messages": [{"ReceiptHandle": "rh-1", "Body": json.dumps(body)}]}


@pytest.mark.asyncio
async def test_receive_direct_message(consumer):
    consumer.sqs_client.receive_message.return_value = _sqs_response(
        {"type": "src_table_complete", "srcTableName": "ods_user_day", "opTime": "20251201"}
    )

    event, receipt_handle = await consumer.receive_message()

    assert event.src_table_name == "ods_user_day"
    assert receipt_handle == "rh-1"


@pytest.mark.asyncio
async def test_receive_sns_wrapped_message(consumer):
    consumer.sqs_client.receive_message.return_value = _sqs_response(
        {
            "Type": "Notification",
            "Message": json.dumps({"srcTableName": "ods_user_day", "opTime": "20251201"}),
            "MessageAttributes": {"type": {"Type": "String", "Value": "src_table_complete"}},
        }
    )

    event, _ = await consumer.receive_message()

    assert event.type == "src_table_complete"
    assert event.op_time == "20251201"


@pytest.mark.asyncio
async def test_receive_empty_queue(consumer):
    consumer.sqs_client.receive_message.return_value = {}
    assert await consumer.receive_message() == (None, None)


@pytest.mark.asyncio
async def test_receive_unexpected_type(consumer):
    consumer.sqs_client.receive_message.return_value = _sqs_response(
        {"type": "metric_run_requested", "srcTableName": "t", "opTime": "20251201"}
    )

    with pytest.raises(MessageParseError) as exc_info:
        await consumer.receive_message()

    assert exc_info.value.receipt_handle == "rh-1"
