"""L3 local partition-file cache in front of the object store."""

import asyncio
import os
import re
import tempfile
import threading
from pathlib import Path

import pyarrow
import pyarrow.parquet as pq
import structlog

from kpi_engine.domain.entities import PhysicalTableRef
from kpi_engine.domain.errors import (
    InvalidQueryError,
    ObjectNotFoundError,
    PartitionUnavailableError,
    TransientStorageError,
)
from kpi_engine.domain.ports import ObjectStorePort
from kpi_engine.infrastructure.aws.s3_path import S3Path
from kpi_engine.infrastructure.observability.metrics import partition_download_mb, partition_downloads

logger = structlog.get_logger()

SAFE_PATH_PART = re.compile(r"^[a-zA-Z0-9_-]+$")
CLEANUP_LOW_WATERMARK = 0.8
BYTES_PER_MB = 1024 * 1024


def validate_path_safe(value: str) -> None:
    """Reject identifiers that could escape the cache or object-store layout."""
    if not value or not SAFE_PATH_PART.match(value):
        raise InvalidQueryError(f"Unsafe path component: {value!r}")


class L3FileCache:
    """Mirrors partition objects as local files.

    A cached file is published with an atomic rename, so readers only ever
    see complete files. Reading a cached file refreshes its mtime, which is
    the recency used by ``cleanup()``.
    """

    def __init__(
        self,
        store: ObjectStorePort,
        cache_dir: str,
        max_size_mb: int = 10240,
        enabled: bool = True,
    ) -> None:
        """Initialize L3 cache."""
        self.store = store
        self.cache_dir = Path(cache_dir)
        self.max_size_bytes = max_size_mb * BYTES_PER_MB
        self.enabled = enabled
        # Directories already created by this process
        self._known_dirs: set[Path] = set()
        self._throwaway: set[str] = set()
        self._throwaway_lock = threading.Lock()
        self._hits = 0
        self._downloads = 0

    async def get_or_download(self, ref: PhysicalTableRef) -> str:
        """Return a local path holding the partition's parquet file.

        Raises:
            PartitionUnavailableError: The partition does not exist.
        """
        for part in (ref.metric_id, ref.time_point, ref.dim_combination_code):
            validate_path_safe(part)
        try:
            return await self._get(ref.object_key)
        except ObjectNotFoundError as e:
            raise PartitionUnavailableError([ref.key]) from e

    async def get_or_download_key(self, key: str) -> str:
        """Like get_or_download, for auxiliary objects addressed by key."""
        try:
            return await self._get(key)
        except ObjectNotFoundError as e:
            raise PartitionUnavailableError([key]) from e

    async def _get(self, key: str) -> str:
        if not self.enabled:
            return await self._download_throwaway(key)

        target = Path(S3Path.local_path(str(self.cache_dir), key))
        if target.exists():
            self._touch(target)
            self._hits += 1
            partition_downloads.labels(outcome="cached").inc()
            return str(target)

        fd, tmp_path = self._temp_file(target.parent)
        os.close(fd)
        try:
            await self._download_verified(key, tmp_path)
            # Concurrent downloads of the same key race here; the last rename wins
            os.replace(tmp_path, target)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
        self._downloads += 1
        return str(target)

    async def _download_throwaway(self, key: str) -> str:
        fd, tmp_path = tempfile.mkstemp(prefix="kpi_", suffix=f"_{S3Path.basename(key)}")
        os.close(fd)
        try:
            await self._download_verified(key, tmp_path)
        except Exception:
            os.unlink(tmp_path)
            raise
        with self._throwaway_lock:
            self._throwaway.add(tmp_path)
        return tmp_path

    async def _download_verified(self, key: str, local_path: str) -> None:
        try:
            await self.store.download(key, local_path)
        except ObjectNotFoundError:
            partition_downloads.labels(outcome="missing").inc()
            logger.warning("partition_missing", key=key)
            raise
        except TransientStorageError:
            partition_downloads.labels(outcome="failed").inc()
            raise

        try:
            num_rows = (await asyncio.to_thread(pq.read_metadata, local_path)).num_rows
        except (pyarrow.ArrowInvalid, OSError) as e:
            partition_downloads.labels(outcome="corrupt").inc()
            raise TransientStorageError(f"Downloaded object {key} is not a readable parquet file: {e}") from e

        size = os.path.getsize(local_path)
        partition_downloads.labels(outcome="downloaded").inc()
        partition_download_mb.observe(size / BYTES_PER_MB)
        logger.info("partition_downloaded", key=key, rows=num_rows, size_bytes=size)

    def release(self, paths: list[str]) -> None:
        """Delete files handed out while the cache is disabled; cached files stay."""
        with self._throwaway_lock:
            owned = [path for path in paths if path in self._throwaway]
            self._throwaway.difference_update(owned)
        for path in owned:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

    def invalidate(self, metric_id: str, time_point: str) -> int:
        """Delete every cached partition file of metric_id at time_point."""
        pattern = PhysicalTableRef(metric_id, time_point, "*").object_key
        removed = 0
        for path in self.cache_dir.glob(pattern):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.debug("l3_invalidated", metric_id=metric_id, time_point=time_point, removed=removed)
        return removed

    def invalidate_all(self) -> int:
        removed = 0
        for path in self.cache_dir.rglob("*.parquet"):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        return removed

    def cleanup(self) -> int:
        """Evict least recently used files until the cache is under 80% of its limit.

        Nothing is deleted while the cache is within its limit.

        Returns:
            Number of files deleted.
        """
        if not self.cache_dir.exists():
            return 0

        files: list[tuple[Path, int, float]] = []
        total_size = 0
        for path in self.cache_dir.rglob("*.parquet"):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            files.append((path, stat.st_size, stat.st_mtime))
            total_size += stat.st_size

        if total_size <= self.max_size_bytes:
            return 0

        target_size = int(self.max_size_bytes * CLEANUP_LOW_WATERMARK)
        files.sort(key=lambda item: item[2])
        deleted = 0
        freed = 0
        for path, size, mtime in files:
            if total_size <= target_size:
                break
            try:
                if path.stat().st_mtime > mtime:
                    # Read since the scan
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            total_size -= size
            freed += size
            deleted += 1

        logger.info("l3_cleanup_completed", deleted=deleted, freed_bytes=freed, remaining_bytes=total_size)
        return deleted

    def stats(self) -> dict[str, int | bool]:
        return {
            "enabled": self.enabled,
            "hits": self._hits,
            "downloads": self._downloads,
            "max_size_bytes": self.max_size_bytes,
        }

    def _temp_file(self, directory: Path) -> tuple[int, str]:
        self._ensure_dir(directory)
        try:
            return tempfile.mkstemp(dir=directory, prefix=".download_", suffix=".tmp")
        except FileNotFoundError:
            # Removed behind our back
            self._known_dirs.discard(directory)
            self._ensure_dir(directory)
            return tempfile.mkstemp(dir=directory, prefix=".download_", suffix=".tmp")

    def _ensure_dir(self, directory: Path) -> None:
        if directory in self._known_dirs:
            return
        directory.mkdir(parents=True, exist_ok=True)
        self._known_dirs.add(directory)

    @staticmethod
    def _touch(path: Path) -> None:
        try:
            os.utime(path, None)
        except OSError as e:
            logger.debug("l3_touch_failed", path=str(path), error=str(e))
