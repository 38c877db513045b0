"""Domain entities."""

from dataclasses import dataclass, field

from kpi_engine.domain.enums import MetricKind
from kpi_engine.domain.errors import InvalidMetricDefinitionError
from kpi_engine.domain.types import Timestamp

DEFAULT_AGG_FUNC = "sum"


@dataclass(frozen=True)
class MetricDefinition:
    """Metric identity, kind and formula.

    PHYSICAL metrics are stored directly and carry no expression. VIRTUAL and
    COMPOSITE metrics carry a formula over other metrics; CUMULATIVE metrics
    carry the id of the metric they accumulate from the start of the month.
    """

    id: str
    kind: MetricKind
    expression: str | None = None
    agg_func: str = DEFAULT_AGG_FUNC
    dim_combination_code: str | None = None

    def __post_init__(self) -> None:
        if self.kind == MetricKind.PHYSICAL and self.expression:
            raise InvalidMetricDefinitionError(f"Physical metric {self.id} must not have an expression")
        if self.kind != MetricKind.PHYSICAL and not (self.expression or "").strip():
            raise InvalidMetricDefinitionError(f"{self.kind.value} metric {self.id} requires an expression")

    @classmethod
    def physical(cls, metric_id: str, agg_func: str | None = None, dim_combination_code: str | None = None) -> "MetricDefinition":
        return cls(metric_id, MetricKind.PHYSICAL, None, agg_func or DEFAULT_AGG_FUNC, dim_combination_code)

    @classmethod
    def composite(
        cls,
        metric_id: str,
        expression: str,
        agg_func: str | None = None,
        dim_combination_code: str | None = None,
    ) -> "MetricDefinition":
        return cls(metric_id, MetricKind.COMPOSITE, expression, agg_func or DEFAULT_AGG_FUNC, dim_combination_code)

    @classmethod
    def virtual(cls, metric_id: str, expression: str, agg_func: str | None = None) -> "MetricDefinition":
        return cls(metric_id, MetricKind.VIRTUAL, expression, agg_func or DEFAULT_AGG_FUNC, None)

    @classmethod
    def cumulative(
        cls,
        metric_id: str,
        source_metric_id: str,
        agg_func: str | None = None,
        dim_combination_code: str | None = None,
    ) -> "MetricDefinition":
        return cls(metric_id, MetricKind.CUMULATIVE, source_metric_id, agg_func or DEFAULT_AGG_FUNC, dim_combination_code)


@dataclass(frozen=True)
class PhysicalTableRef:
    """One physical partition: metric x time point x dimension combination."""

    metric_id: str
    time_point: str
    dim_combination_code: str

    @property
    def key(self) -> str:
        """Return the metric@time key used for aliasing and cycle detection."""
        return f"{self.metric_id}@{self.time_point}"

    @property
    def file_stem(self) -> str:
        return f"{self.metric_id}_{self.time_point}_{self.dim_combination_code}"

    @property
    def storage_path(self) -> str:
        """Partition path.

        Daily time points (8-digit dates) are laid out as
        ``{year}/{yearMonth}/{timePoint}/{code}/...``; any other time point
        is used as a single directory.
        """
        time_point = self.time_point.strip()
        if len(time_point) == 8 and time_point.isdigit():
            time_dirs = f"{time_point[:4]}/{time_point[:6]}/{time_point}"
        else:
            time_dirs = time_point
        return f"{time_dirs}/{self.dim_combination_code}/{self.file_stem}"

    @property
    def object_key(self) -> str:
        """Object store key of the partition's parquet file."""
        return f"{self.storage_path}.parquet"

    @property
    def table_name(self) -> str:
        return f"kpi_{self.file_stem}"


@dataclass(frozen=True)
class MetricModel:
    """A group of derived metrics fed by the same source tables."""

    model_id: str
    metric_ids: tuple[str, ...]
    source_tables: tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheInvalidationEvent:
    """Cluster-wide invalidation of metric_ids x time_points."""

    model_id: str
    metric_ids: tuple[str, ...]
    time_points: tuple[str, ...]
    timestamp: Timestamp

    def pairs(self) -> list[tuple[str, str]]:
        """Return the exact (metric_id, time_point) eviction set."""
        return [(metric_id, time_point) for metric_id in self.metric_ids for time_point in self.time_points]


@dataclass
class SrcTableCompleteResult:
    """Outcome of a source-table completion notification."""

    status: str
    message: str | None = None
    triggered_models: list[str] = field(default_factory=list)
