"""Main entrypoint."""

import asyncio
import os
import signal
from dataclasses import dataclass

import redis
import structlog
from prometheus_client import start_http_server

from kpi_engine.application.services.resolver import MetricDependencyResolver
from kpi_engine.application.services.sql_generator import QueryGenerator
from kpi_engine.application.use_cases.handle_query import QueryDependencies
from kpi_engine.application.use_cases.invalidate_cache import subscriber
from kpi_engine.infrastructure.aws.s3_io import S3IO
from kpi_engine.infrastructure.aws.sqs_consumer import SQSConsumer
from kpi_engine.infrastructure.cache.hierarchy import CacheHierarchy
from kpi_engine.infrastructure.cache.invalidation_bus import RedisInvalidationBus
from kpi_engine.infrastructure.cache.l1_memory import L1MemoryCache
from kpi_engine.infrastructure.cache.l2_redis import L2RedisCache
from kpi_engine.infrastructure.cache.l3_file import L3FileCache
from kpi_engine.infrastructure.config.settings import Settings
from kpi_engine.infrastructure.engine.duckdb_executor import DuckDBExecutor
from kpi_engine.infrastructure.observability.logging import configure_logging
from kpi_engine.infrastructure.runtime.catalog_adapter import S3MetricCatalog
from kpi_engine.infrastructure.runtime.clock import SystemClock
from kpi_engine.interfaces.query_service import KpiQueryService
from kpi_engine.interfaces.runners.sqs_notification_worker import SQSNotificationWorker

logger = structlog.get_logger()

shutdown_event = asyncio.Event()


@dataclass
class Engine:
    """Wired components of one node."""

    settings: Settings
    catalog: S3MetricCatalog
    cache: CacheHierarchy
    query_service: KpiQueryService
    clock: SystemClock
    bus: RedisInvalidationBus | None
    l2: L2RedisCache | None


def signal_handler() -> None:
    """Handle shutdown signal."""
    logger.info("shutdown_signal_received")
    shutdown_event.set()


def _export_credentials(settings: Settings) -> None:
    """Load AWS credentials from Settings to environment for boto3."""
    if settings.aws_access_key_id:
        os.environ["AWS_ACCESS_KEY_ID"] = settings.aws_access_key_id
    if settings.aws_secret_access_key:
        os.environ["AWS_SECRET_ACCESS_KEY"] = settings.aws_secret_access_key
    if settings.aws_session_token:
        os.environ["AWS_SESSION_TOKEN"] = settings.aws_session_token

    if not os.environ.get("AWS_ACCESS_KEY_ID") or not os.environ.get("AWS_SECRET_ACCESS_KEY"):
        logger.warning(
            "aws_credentials_missing",
            message="AWS credentials not found. Make sure AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY are set in .env or environment",
        )


async def build_engine(settings: Settings) -> Engine:
    """Create adapters, load the metric catalog and wire the query service."""
    s3_io = S3IO(settings)
    catalog = S3MetricCatalog(s3_io, settings.metadata_catalog_key)
    await catalog.load()

    redis_client = None
    if settings.l2_cache_enabled or settings.cache_invalidation_enabled:
        redis_client = redis.Redis.from_url(settings.redis_url)

    l1 = None
    if settings.l1_cache_enabled:
        l1 = L1MemoryCache(max_size=settings.l1_cache_max_size, ttl_seconds=settings.l1_cache_ttl_seconds)
    l2 = None
    if settings.l2_cache_enabled and redis_client is not None:
        l2 = L2RedisCache(
            redis_client,
            ttl_seconds=settings.l2_cache_ttl_seconds,
            write_workers=settings.l2_cache_write_workers,
        )
    l3 = L3FileCache(
        s3_io,
        settings.l3_cache_dir,
        max_size_mb=settings.l3_cache_max_size_mb,
        enabled=settings.l3_cache_enabled,
    )
    cache = CacheHierarchy(l3, l1=l1, l2=l2)

    clock = SystemClock()
    bus = None
    if settings.cache_invalidation_enabled and redis_client is not None:
        bus = RedisInvalidationBus(redis_client, clock, channel=settings.cache_invalidation_channel)

    deps = QueryDependencies(
        metadata=catalog,
        resolver=MetricDependencyResolver(
            catalog,
            default_dim_combination_code=settings.default_dim_combination_code,
            max_depth=settings.max_expression_depth,
        ),
        generator=QueryGenerator(catalog, max_depth=settings.max_expression_depth),
        executor=DuckDBExecutor(),
        cache=cache,
        staging_threshold=settings.staging_threshold,
        dim_key_template=settings.dim_key_template,
        target_key_template=settings.target_key_template,
        default_dim_combination_code=settings.default_dim_combination_code,
    )
    logger.info(
        "engine_built",
        l1_enabled=l1 is not None,
        l2_enabled=l2 is not None,
        l3_enabled=settings.l3_cache_enabled,
        invalidation_enabled=bus is not None,
        staging_threshold=settings.staging_threshold,
    )
    return Engine(
        settings=settings,
        catalog=catalog,
        cache=cache,
        query_service=KpiQueryService(deps),
        clock=clock,
        bus=bus,
        l2=l2,
    )


async def _cleanup_loop(cache: CacheHierarchy, interval_seconds: int) -> None:
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
        if shutdown_event.is_set():
            break
        try:
            await asyncio.to_thread(cache.l3.cleanup)
        except OSError as e:
            logger.error("l3_cleanup_failed", exc_info=True, error=str(e))


async def _notification_loop(engine: Engine) -> None:
    settings = engine.settings
    if not settings.aws_sqs_notification_queue_enabled:
        logger.warning("sqs_queue_disabled")
        await shutdown_event.wait()
        return

    worker = SQSNotificationWorker(SQSConsumer(settings), engine.catalog, engine.cache, engine.clock, engine.bus)
    while not shutdown_event.is_set():
        try:
            await worker.process_next_message()
        except Exception as e:
            logger.error("main_loop_error", exc_info=True, error=str(e))
            await asyncio.sleep(5)


async def main_loop() -> None:
    """Main event loop."""
    settings = Settings()
    configure_logging(settings.log_level)
    logger.info("engine_starting")

    _export_credentials(settings)
    logger.info(
        "settings_loaded",
        region=settings.aws_region,
        bucket=settings.aws_s3_bucket,
        endpoint=settings.aws_s3_endpoint_url,
        redis_url=settings.redis_url,
        sqs_queue_url=settings.aws_sqs_notification_queue_url,
        sqs_queue_enabled=settings.aws_sqs_notification_queue_enabled,
    )

    start_http_server(settings.prometheus_port)
    logger.info("metrics_server_started", port=settings.prometheus_port)

    engine = await build_engine(settings)

    tasks = [
        asyncio.create_task(_cleanup_loop(engine.cache, settings.l3_cleanup_interval_seconds)),
        asyncio.create_task(_notification_loop(engine)),
    ]
    if engine.bus is not None:
        tasks.append(asyncio.create_task(engine.bus.subscribe(subscriber(engine.cache))))

    logger.info("engine_ready")
    await shutdown_event.wait()

    logger.info("engine_shutting_down")
    if engine.bus is not None:
        engine.bus.stop()
    await asyncio.gather(*tasks, return_exceptions=True)
    if engine.l2 is not None:
        engine.l2.close()


def main() -> None:
    """Entrypoint."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(main_loop())
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    main()
