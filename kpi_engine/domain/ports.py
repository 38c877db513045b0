"""Ports (interfaces) for infrastructure adapters."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from kpi_engine.domain.entities import CacheInvalidationEvent, MetricDefinition, MetricModel
from kpi_engine.domain.types import ResultRows, StatementBuilder, Timestamp

if TYPE_CHECKING:
    from kpi_engine.application.services.query_context import QueryContext


class MetadataPort(ABC):
    """Port for metric and dimension metadata lookups."""

    @abstractmethod
    def find_metric_by_id(self, metric_id: str) -> MetricDefinition | None:
        """Return the metric definition, or None if unknown."""

    @abstractmethod
    def get_dim_columns(self, dim_combination_code: str) -> frozenset[str]:
        """Return the dimension columns stored under a dimension-combination code."""

    @abstractmethod
    def find_models_by_source_table(self, src_table_name: str) -> list[MetricModel]:
        """Return the models fed by a source table."""


class ObjectStorePort(ABC):
    """Port for the partition object store."""

    @abstractmethod
    async def upload(self, key: str, local_path: str) -> None:
        """Upload a local file under key."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    async def download(self, key: str, local_path: str) -> None:
        """Download key to local_path.

        Raises:
            ObjectNotFoundError: The key does not exist.
            TransientStorageError: The store could not be reached.
        """


class QueryExecutorPort(ABC):
    """Port for running generated statements against attached partitions."""

    @abstractmethod
    async def execute(self, ctx: "QueryContext", statement: str) -> ResultRows:
        """Attach every partition in ctx and run statement."""

    @abstractmethod
    async def execute_with_staging(
        self,
        ctx: "QueryContext",
        dims: list[str],
        statement_builder: StatementBuilder,
    ) -> ResultRows:
        """Load every partition in ctx into a staging table, then run the built statement."""


class InvalidationBusPort(ABC):
    """Port for cluster-wide cache invalidation."""

    @abstractmethod
    async def publish(self, model_id: str, metric_ids: list[str], time_points: list[str]) -> None:
        """Broadcast an invalidation event."""

    @abstractmethod
    async def subscribe(self, handler: Callable[[CacheInvalidationEvent], Awaitable[None]]) -> None:
        """Deliver every received event to handler until stopped."""


class ClockPort(ABC):
    """Port for time operations."""

    @abstractmethod
    def now(self) -> Timestamp:
        """Get current timestamp."""

