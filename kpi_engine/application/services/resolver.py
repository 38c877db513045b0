"""Metric dependency resolution into physical partitions."""

import structlog

from kpi_engine.application.services.expression import iter_references
from kpi_engine.application.services.query_context import DEFAULT_DIM_COMBINATION_CODE, QueryContext
from kpi_engine.application.services.time_modifiers import calculate_time, expand_to_month_start
from kpi_engine.domain.entities import MetricDefinition
from kpi_engine.domain.enums import MetricKind
from kpi_engine.domain.errors import (
    CircularDependencyError,
    ExpressionTooComplexError,
    InvalidMetricDefinitionError,
    UnresolvedMetricReferenceError,
)
from kpi_engine.domain.ports import MetadataPort

logger = structlog.get_logger()

DEFAULT_MAX_DEPTH = 50


class MetricDependencyResolver:
    """Walks metric expressions down to the physical partitions they read."""

    def __init__(
        self,
        metadata: MetadataPort,
        default_dim_combination_code: str = DEFAULT_DIM_COMBINATION_CODE,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        """Initialize resolver."""
        self.metadata = metadata
        self.default_dim_combination_code = default_dim_combination_code
        self.max_depth = max_depth

    def resolve(self, metric: MetricDefinition, time_point: str, ctx: QueryContext) -> None:
        """Add every partition metric needs at time_point to ctx.required_tables.

        Raises:
            CircularDependencyError: A metric depends on itself at the same time point.
            ExpressionTooComplexError: Nesting exceeds max_depth.
            UnresolvedMetricReferenceError: A referenced metric is unknown.
        """
        self._resolve(metric, time_point, ctx, [], 0)

    def lookup(self, metric_id: str) -> MetricDefinition:
        definition = self.metadata.find_metric_by_id(metric_id)
        if definition is None:
            logger.error("metric_definition_not_found", metric_id=metric_id)
            raise UnresolvedMetricReferenceError(metric_id)
        return definition

    def _resolve(
        self,
        metric: MetricDefinition,
        time_point: str,
        ctx: QueryContext,
        visited: list[str],
        depth: int,
    ) -> None:
        if depth > self.max_depth:
            raise ExpressionTooComplexError(metric.id, self.max_depth)

        path_key = f"{metric.id}@{time_point}"
        if path_key in visited:
            logger.error("circular_dependency_detected", key=path_key, path=visited)
            raise CircularDependencyError(path_key, visited)
        # Path of ancestors only; siblings do not see each other
        path = [*visited, path_key]

        if metric.kind == MetricKind.PHYSICAL:
            self._add_physical(metric, time_point, ctx)
        elif metric.kind == MetricKind.CUMULATIVE:
            source = self.lookup(metric.expression or "")
            if source.kind != MetricKind.PHYSICAL:
                raise InvalidMetricDefinitionError(
                    f"Cumulative metric {metric.id} must accumulate a physical metric, got {source.id}"
                )
            for day in expand_to_month_start(time_point):
                self._resolve(source, day, ctx, path, depth + 1)
        elif metric.kind in (MetricKind.COMPOSITE, MetricKind.VIRTUAL):
            for reference_id, modifier in iter_references(metric.expression or ""):
                reference = self.lookup(reference_id)
                shifted = calculate_time(time_point, modifier)
                self._resolve(reference, shifted, ctx, path, depth + 1)
        else:
            raise InvalidMetricDefinitionError(f"Unsupported metric kind: {metric.kind}")

    def _add_physical(self, metric: MetricDefinition, time_point: str, ctx: QueryContext) -> None:
        code = metric.dim_combination_code
        if not code:
            logger.warning(
                "dim_combination_code_missing",
                metric_id=metric.id,
                default=self.default_dim_combination_code,
            )
            code = self.default_dim_combination_code
        ctx.add_physical_table(metric.id, time_point, code)
        if code not in ctx.dim_columns:
            ctx.dim_columns[code] = self.metadata.get_dim_columns(code)
