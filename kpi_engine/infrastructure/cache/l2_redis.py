"""L2 shared cache on Redis."""

import json
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

import redis
import structlog

from kpi_engine.domain.errors import CacheTierUnavailableError
from kpi_engine.domain.fingerprint import KEY_PREFIX, CacheFingerprint
from kpi_engine.infrastructure.observability.metrics import cache_errors

logger = structlog.get_logger()

DELETE_BATCH_SIZE = 500


class L2RedisCache:
    """Redis-backed result cache.

    Calls block on the client; callers on the event loop run them through
    ``asyncio.to_thread``. Writes are handed to a bounded thread pool and
    their failures are only logged. Read and invalidation failures raise
    CacheTierUnavailableError.
    """

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = 1800,
        write_workers: int = 4,
    ) -> None:
        """Initialize L2 cache."""
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._writer = ThreadPoolExecutor(max_workers=write_workers, thread_name_prefix="l2-writer")

    def get(self, key: str) -> Any | None:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            raise CacheTierUnavailableError("l2", str(e)) from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("l2_corrupt_entry", key=key, error=str(e))
            return None

    def put(self, key: str, value: Any) -> None:
        """Write synchronously; failures are logged."""
        try:
            self.client.setex(key, self.ttl_seconds, json.dumps(value, default=str))
        except (redis.RedisError, TypeError, ValueError) as e:
            cache_errors.labels(tier="l2").inc()
            logger.warning("l2_put_failed", key=key, error=str(e))

    def put_async(self, key: str, value: Any) -> Future:
        """Queue a write and return immediately."""
        return self._writer.submit(self.put, key, value)

    def invalidate(self, metric_id: str, time_point: str) -> int:
        """Delete every entry that depends on metric_id at time_point.

        Candidates come from a SCAN MATCH pattern and are re-checked against
        the parsed fingerprint before deletion.
        """
        pattern = CacheFingerprint.l2_pattern(metric_id, time_point)
        try:
            doomed = []
            for raw_key in self.client.scan_iter(match=pattern):
                key = raw_key.decode("utf-8") if isinstance(raw_key, bytes) else raw_key
                try:
                    if CacheFingerprint.parse(key).references(metric_id, time_point):
                        doomed.append(key)
                except ValueError:
                    logger.warning("l2_unparseable_key", key=key)
            deleted = self._delete(doomed)
        except redis.RedisError as e:
            raise CacheTierUnavailableError("l2", str(e)) from e
        if deleted:
            logger.debug("l2_invalidated", metric_id=metric_id, time_point=time_point, removed=deleted)
        return deleted

    def invalidate_all(self) -> int:
        try:
            keys = list(self.client.scan_iter(match=f"{KEY_PREFIX}*"))
            return self._delete(keys)
        except redis.RedisError as e:
            raise CacheTierUnavailableError("l2", str(e)) from e

    def close(self) -> None:
        self._writer.shutdown(wait=True)

    def _delete(self, keys: list) -> int:
        count = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            count += self.client.delete(*batch)
        return count
