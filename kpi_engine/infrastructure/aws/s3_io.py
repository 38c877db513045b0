"""S3 I/O operations."""

import asyncio
import json

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from kpi_engine.domain.errors import ObjectNotFoundError, TransientStorageError
from kpi_engine.domain.ports import ObjectStorePort
from kpi_engine.domain.types import JsonValue
from kpi_engine.infrastructure.config.settings import Settings

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})

# Only transient failures are worth another attempt
_retry_transient = retry(
    retry=retry_if_exception_type(TransientStorageError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def _translate(error: ClientError, key: str, action: str) -> Exception:
    code = str(error.response.get("Error", {}).get("Code", ""))
    if code in _NOT_FOUND_CODES:
        return ObjectNotFoundError(key)
    return TransientStorageError(f"Failed to {action} S3 object {key}: {error}")


class S3IO(ObjectStorePort):
    """S3 (or S3-compatible) object store."""

    def __init__(self, settings: Settings) -> None:
        """Initialize S3 client."""
        self.settings = settings
        self.s3_client = boto3.client(
            "s3",
            region_name=settings.aws_region,
            endpoint_url=settings.aws_s3_endpoint_url,
        )
        self.bucket = settings.aws_s3_bucket

    @_retry_transient
    async def get_json(self, key: str) -> dict[str, JsonValue]:
        """Get JSON object from S3."""
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
            content = response["Body"].read().decode("utf-8")
            return json.loads(content)
        except ClientError as e:
            raise _translate(e, key, "read") from e

    @_retry_transient
    async def upload(self, key: str, local_path: str) -> None:
        """Upload a local file to S3."""
        try:
            await asyncio.to_thread(self.s3_client.upload_file, local_path, self.bucket, key)
        except ClientError as e:
            raise _translate(e, key, "write") from e
        except BotoCoreError as e:
            raise TransientStorageError(f"Failed to write S3 object {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        """Check if object exists in S3."""
        try:
            self.s3_client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            error = _translate(e, key, "stat")
            if isinstance(error, ObjectNotFoundError):
                return False
            raise error from e

    @_retry_transient
    async def download(self, key: str, local_path: str) -> None:
        """Download an object to local_path."""
        try:
            await asyncio.to_thread(self.s3_client.download_file, self.bucket, key, local_path)
        except ClientError as e:
            raise _translate(e, key, "read") from e
        except BotoCoreError as e:
            raise TransientStorageError(f"Failed to read S3 object {key}: {e}") from e
