"""Application settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    aws_region: str = "us-east-1"
    aws_s3_bucket: str
    # MinIO or any S3-compatible endpoint; None uses AWS
    aws_s3_endpoint_url: str | None = None
    metadata_catalog_key: str = "metadata/catalog.json"
    dim_key_template: str = "dim/kpi_dim_{code}.parquet"
    target_key_template: str = "target/kpi_target_value_{code}.parquet"

    # Source-table completion notifications
    aws_sqs_notification_queue_url: str | None = None
    aws_sqs_notification_queue_enabled: bool = False
    prometheus_port: int = 9300
    log_level: str = "INFO"

    # Query engine
    staging_threshold: int = 8
    default_dim_combination_code: str = "CD003"
    max_expression_depth: int = 50

    # Cache tiers
    redis_url: str = "redis://localhost:6379/0"
    l1_cache_enabled: bool = True
    l1_cache_ttl_seconds: float = 5.0
    l1_cache_max_size: int = 1000
    l2_cache_enabled: bool = True
    l2_cache_ttl_seconds: int = 1800
    l2_cache_write_workers: int = 4
    l3_cache_enabled: bool = True
    l3_cache_dir: str = "/tmp/kpi-engine/l3"
    l3_cache_max_size_mb: int = 10240
    l3_cleanup_interval_seconds: int = 600
    cache_invalidation_enabled: bool = True
    cache_invalidation_channel: str = "cache:invalidation"

    # AWS Credentials (optional - loaded from .env but not used directly)
    # These are automatically picked up by boto3 from environment variables
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_session_token: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        # Allow extra fields to be loaded but not validated
        extra="ignore",
    )
