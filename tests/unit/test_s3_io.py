"""Unit tests for S3 I/O operations."""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from kpi_engine.domain.errors import ObjectNotFoundError
from kpi_engine.infrastructure.aws.s3_io import S3IO


@pytest.fixture
def mock_settings():
    """Create mock settings."""
    settings = MagicMock()
    settings.aws_region = "us-east-1"
    settings.aws_s3_bucket = "test-bucket"
    settings.aws_s3_endpoint_url = "http://minio:9000"
    return settings


@pytest.fixture
def s3_io(mock_settings):
    """Create S3IO instance."""
    with patch("kpi_engine.infrastructure.aws.s3_io.boto3") as mock_boto3:
        mock_client = MagicMock()
        mock_boto3.client.return_value = mock_client
        s3 = S3IO(mock_settings)
        s3.s3_client = mock_client
        return s3


def test_client_uses_endpoint_url(mock_settings):
    """Test the client is built for an S3-compatible endpoint."""
    with patch("kpi_engine.infrastructure.aws.s3_io.boto3") as mock_boto3:
        S3IO(mock_settings)

    mock_boto3.client.assert_called_once_with("s3", region_name="us-east-1", endpoint_url="http://minio:9000")


@pytest.mark.asyncio
async def test_get_json_success(s3_io):
    """Test getting JSON from S3 successfully."""
    mock_response = {"Body": MagicMock()}
    mock_response["Body"].read.return_value = b'{"metrics": []}'
    s3_io.s3_client.get_object = MagicMock(return_value=mock_response)

    result = await s3_io.get_json("metadata/catalog.json")

    assert result == {"metrics": []}
    s3_io.s3_client.get_object.assert_called_once_with(Bucket="test-bucket", Key="metadata/catalog.json")


@pytest.mark.asyncio
async def test_get_json_not_found(s3_io):
    """Test a missing object is reported without retries."""
    s3_io.s3_client.get_object = MagicMock(side_effect=ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject"))

    with pytest.raises(ObjectNotFoundError, match="metadata/catalog.json"):
        await s3_io.get_json("metadata/catalog.json")

    assert s3_io.s3_client.get_object.call_count == 1


@pytest.mark.asyncio
async def test_upload_success(s3_io):
    """Test uploading a local file."""
    s3_io.s3_client.upload_file = MagicMock()

    await s3_io.upload("2025/202512/20251201/CD003/KD1001_20251201_CD003.parquet", "/tmp/a.parquet")

    s3_io.s3_client.upload_file.assert_called_once_with(
        "/tmp/a.parquet",
        "test-bucket",
        "2025/202512/20251201/CD003/KD1001_20251201_CD003.parquet",
    )


@pytest.mark.asyncio
async def test_exists_true(s3_io):
    """Test checking if object exists (True)."""
    s3_io.s3_client.head_object = MagicMock()

    assert await s3_io.exists("test-key.parquet") is True
    s3_io.s3_client.head_object.assert_called_once_with(Bucket="test-bucket", Key="test-key.parquet")


@pytest.mark.asyncio
async def test_exists_false(s3_io):
    """Test checking if object exists (False)."""
    s3_io.s3_client.head_object = MagicMock(side_effect=ClientError({"Error": {"Code": "404"}}, "HeadObject"))

    assert await s3_io.exists("test-key.parquet") is False


@pytest.mark.asyncio
async def test_download_success(s3_io):
    """Test downloading to a local path."""
    s3_io.s3_client.download_file = MagicMock()

    await s3_io.download("a/b.parquet", "/tmp/b.parquet")

    s3_io.s3_client.download_file.assert_called_once_with("test-bucket", "a/b.parquet", "/tmp/b.parquet")


@pytest.mark.asyncio
async def test_download_not_found(s3_io):
    """Test a missing partition is distinguishable from transient failures."""
    s3_io.s3_client.download_file = MagicMock(side_effect=ClientError({"Error": {"Code": "404"}}, "HeadObject"))

    with pytest.raises(ObjectNotFoundError):
        await s3_io.download("a/b.parquet", "/tmp/b.parquet")

    assert s3_io.s3_client.download_file.call_count == 1
