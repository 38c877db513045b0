"""Aggregation statement generation over attached partitions."""

import hashlib
import re

import structlog

from kpi_engine.application.services.expression import VARIABLE_PATTERN, normalize_expression
from kpi_engine.application.services.query_context import DIM_DESC_RELATION, TARGET_RELATION, QueryContext
from kpi_engine.application.services.resolver import DEFAULT_MAX_DEPTH
from kpi_engine.application.services.time_modifiers import calculate_time, expand_to_month_start
from kpi_engine.domain.entities import MetricDefinition, PhysicalTableRef
from kpi_engine.domain.enums import MetricKind
from kpi_engine.domain.errors import (
    ExpressionTooComplexError,
    InvalidMetricDefinitionError,
    InvalidQueryError,
    UnresolvedMetricReferenceError,
)
from kpi_engine.domain.ports import MetadataPort

logger = structlog.get_logger()

DIM_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
ALLOWED_AGG_FUNCS = frozenset({"sum", "avg", "min", "max", "count"})
# Scalar functions an expression may wrap references in
ALLOWED_EXPRESSION_FUNCS = frozenset({"abs", "coalesce", "nullif", "round", "greatest", "least"})

_WORD_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_RESIDUAL_PATTERN = re.compile(r"^[\s0-9.+\-*/(),]*$")


def quote_literal(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def quote_identifier(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


def table_alias(ref: PhysicalTableRef) -> str:
    """Stable schema alias of a partition, derived from metric@time."""
    return "t_" + hashlib.sha1(ref.key.encode("utf-8")).hexdigest()[:12]


def validate_dim_codes(dims: list[str]) -> None:
    for dim in dims:
        if not DIM_CODE_PATTERN.match(dim):
            raise InvalidQueryError(f"Invalid dimension code: {dim!r}")


def partition_select_sql(
    ref: PhysicalTableRef,
    source: str,
    dims: list[str],
    available_dims: frozenset[str],
) -> str:
    """Project one partition onto the shared (kpi_id, op_time, kpi_val, dims...) shape.

    Dims the partition does not store are filled with NULL.
    """
    columns = [
        f"{quote_literal(ref.metric_id)} AS kpi_id",
        f"{quote_literal(ref.time_point)} AS op_time",
        "CAST(kpi_val AS DOUBLE) AS kpi_val",
    ]
    for dim in dims:
        if dim in available_dims:
            columns.append(f"CAST({quote_identifier(dim)} AS VARCHAR) AS {quote_identifier(dim)}")
        else:
            columns.append(f"CAST(NULL AS VARCHAR) AS {quote_identifier(dim)}")
    return f"SELECT {', '.join(columns)} FROM {source}"


def projected_dims(ctx: QueryContext, dims: list[str]) -> list[str]:
    """Requested dims followed by dims that only appear in filter conditions."""
    return list(dict.fromkeys([*dims, *ctx.dim_conditions.keys()]))


class QueryGenerator:
    """Builds one aggregation statement per time point."""

    def __init__(self, metadata: MetadataPort, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        """Initialize generator."""
        self.metadata = metadata
        self.max_depth = max_depth

    def assign_aliases(self, ctx: QueryContext) -> None:
        """Give every required table an alias (idempotent) and load its dim columns."""
        for ref in ctx.sorted_tables():
            if ref not in ctx.alias_map:
                ctx.register_alias(ref, table_alias(ref))
            code = ref.dim_combination_code
            if code not in ctx.dim_columns:
                ctx.dim_columns[code] = self.metadata.get_dim_columns(code)

    def generate(self, metrics: list[MetricDefinition], ctx: QueryContext, dims: list[str]) -> str:
        """Statement reading each partition through its attached alias.

        Returns an empty string when ctx has no required tables.
        """
        if not ctx.required_tables:
            return ""
        validate_dim_codes(projected_dims(ctx, dims))
        self.assign_aliases(ctx)

        base_dims = projected_dims(ctx, dims)
        selects = [
            partition_select_sql(
                ref,
                f"{quote_identifier(ctx.get_alias(ref))}.{quote_identifier(ref.table_name)}",
                base_dims,
                ctx.dim_columns.get(ref.dim_combination_code, frozenset()),
            )
            for ref in ctx.sorted_tables()
        ]
        logger.debug("statement_generated", time_point=ctx.time_point, tables=len(selects), staging=False)
        return self._compose("\n  UNION ALL\n  ".join(selects), metrics, ctx, dims)

    def generate_with_staging(
        self,
        metrics: list[MetricDefinition],
        ctx: QueryContext,
        dims: list[str],
        staging_name: str,
    ) -> str:
        """Statement reading every partition from a pre-loaded staging table."""
        if not ctx.required_tables:
            return ""
        logger.debug("statement_generated", time_point=ctx.time_point, tables=len(ctx.required_tables), staging=True)
        validate_dim_codes(projected_dims(ctx, dims))
        return self._compose(f"SELECT * FROM {quote_identifier(staging_name)}", metrics, ctx, dims)

    def _compose(self, base_sql: str, metrics: list[MetricDefinition], ctx: QueryContext, dims: list[str]) -> str:
        unique_metrics = list({metric.id: metric for metric in metrics}.values())
        dim_cols = [quote_identifier(dim) for dim in dims]

        agg_columns = [f"base.{col} AS {col}" for col in dim_cols]
        for metric in unique_metrics:
            sql = self._metric_sql(metric, ctx.time_point, metric.agg_func, 0)
            agg_columns.append(f"{sql} AS {quote_identifier(metric.id)}")

        agg_sql = f"SELECT {', '.join(agg_columns)}\n  FROM base"
        where = self._where_clause(ctx)
        if where:
            agg_sql += f"\n  WHERE {where}"
        if dim_cols:
            agg_sql += "\n  GROUP BY " + ", ".join(f"base.{col}" for col in dim_cols)

        ctes = [f"base AS (\n  {base_sql}\n)", f"agg AS (\n  {agg_sql}\n)"]
        select_columns = ["agg.*"]
        joins: list[str] = []

        if dims and (ctx.include_historical or ctx.include_target) and DIM_DESC_RELATION in ctx.relations:
            for dim in dims:
                alias = quote_identifier(f"desc_{dim}")
                select_columns.append(f"{alias}.dim_val AS {quote_identifier(f'{dim}_desc')}")
                joins.append(
                    f"LEFT JOIN {DIM_DESC_RELATION} AS {alias} "
                    f"ON agg.{quote_identifier(dim)} = CAST({alias}.dim_code AS VARCHAR) "
                    f"AND {alias}.dim_id = {quote_literal(dim)}"
                )

        if ctx.include_target and TARGET_RELATION in ctx.relations:
            target_metrics = [m.id for m in unique_metrics if self.metadata.find_metric_by_id(m.id) is not None]
            if target_metrics:
                target_cte, target_columns, target_join = self._targets(ctx, dims, target_metrics)
                ctes.append(target_cte)
                select_columns.extend(target_columns)
                joins.append(target_join)

        statement = "WITH " + ",\n".join(ctes) + f"\nSELECT {', '.join(select_columns)}\nFROM agg"
        if joins:
            statement += "\n" + "\n".join(joins)
        return statement

    def _where_clause(self, ctx: QueryContext) -> str:
        conditions = []
        for dim, values in ctx.dim_conditions.items():
            column = f"base.{quote_identifier(dim)}"
            if len(values) == 1:
                conditions.append(f"{column} = {quote_literal(values[0])}")
            else:
                conditions.append(f"{column} IN ({', '.join(quote_literal(v) for v in values)})")
        return " AND ".join(conditions)

    def _targets(self, ctx: QueryContext, dims: list[str], metric_ids: list[str]) -> tuple[str, list[str], str]:
        main_code = ctx.main_dim_combination_code()
        main_columns = ctx.dim_columns.get(main_code, frozenset())
        target_dims = [dim for dim in dims if dim in main_columns]

        pivot = [
            f"MAX(CASE WHEN CAST(kpi_id AS VARCHAR) = {quote_literal(metric_id)} THEN CAST(target_val AS DOUBLE) END) "
            f"AS {quote_identifier(f'{metric_id}_target')}"
            for metric_id in metric_ids
        ]
        dim_select = [f"CAST({quote_identifier(d)} AS VARCHAR) AS {quote_identifier(d)}" for d in target_dims]
        cte = f"targets AS (\n  SELECT {', '.join([*dim_select, *pivot])}\n  FROM {TARGET_RELATION}"
        cte += f"\n  WHERE CAST(op_time AS VARCHAR) = {quote_literal(ctx.time_point)}"
        if target_dims:
            cte += "\n  GROUP BY " + ", ".join(quote_identifier(d) for d in target_dims)
        cte += "\n)"

        columns = [f"targets.{quote_identifier(f'{metric_id}_target')}" for metric_id in metric_ids]
        if target_dims:
            on = " AND ".join(
                f"agg.{quote_identifier(d)} IS NOT DISTINCT FROM targets.{quote_identifier(d)}" for d in target_dims
            )
        else:
            on = "TRUE"
        return cte, columns, f"LEFT JOIN targets ON {on}"

    def _metric_sql(self, metric: MetricDefinition, time_point: str, agg_func: str, depth: int) -> str:
        if depth > self.max_depth:
            raise ExpressionTooComplexError(metric.id, self.max_depth)

        if metric.kind == MetricKind.PHYSICAL:
            return self._aggregate(agg_func, metric.id, [time_point])
        if metric.kind == MetricKind.CUMULATIVE:
            return self._aggregate(metric.agg_func, metric.expression or "", expand_to_month_start(time_point))
        return self._transpile(metric, time_point, depth)

    def _transpile(self, metric: MetricDefinition, time_point: str, depth: int) -> str:
        expression = normalize_expression(metric.expression or "")
        self._check_residual(metric, expression)

        def _replace(match: re.Match[str]) -> str:
            reference = self.metadata.find_metric_by_id(match.group(1))
            if reference is None:
                raise UnresolvedMetricReferenceError(match.group(1))
            target_time = calculate_time(time_point, match.group(2))
            sql = self._metric_sql(reference, target_time, metric.agg_func, depth + 1)
            if reference.kind in (MetricKind.COMPOSITE, MetricKind.VIRTUAL):
                return f"({sql})"
            return sql

        return VARIABLE_PATTERN.sub(_replace, expression)

    @staticmethod
    def _aggregate(agg_func: str, metric_id: str, time_points: list[str]) -> str:
        func = (agg_func or "sum").lower()
        if func not in ALLOWED_AGG_FUNCS:
            raise InvalidMetricDefinitionError(f"Unsupported aggregation function: {agg_func}")
        if len(time_points) == 1:
            time_filter = f"op_time = {quote_literal(time_points[0])}"
        else:
            time_filter = f"op_time IN ({', '.join(quote_literal(tp) for tp in time_points)})"
        return f"{func}(CASE WHEN kpi_id = {quote_literal(metric_id)} AND {time_filter} THEN kpi_val ELSE NULL END)"

    @staticmethod
    def _check_residual(metric: MetricDefinition, expression: str) -> None:
        """Reject anything besides references, numbers, arithmetic and whitelisted functions."""
        residual = VARIABLE_PATTERN.sub(" ", expression)
        for word in _WORD_PATTERN.findall(residual):
            if word.lower() not in ALLOWED_EXPRESSION_FUNCS:
                raise InvalidQueryError(f"Unsupported token {word!r} in expression of {metric.id}")
        if not _RESIDUAL_PATTERN.match(_WORD_PATTERN.sub(" ", residual)):
            raise InvalidQueryError(f"Unsupported characters in expression of {metric.id}")
