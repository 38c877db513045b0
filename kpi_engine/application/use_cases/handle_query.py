"""Handle KPI query - main orchestration."""

import asyncio
from dataclasses import dataclass

import structlog

from kpi_engine.application.dto.query import KpiQueryRequest
from kpi_engine.application.services.query_context import (
    DEFAULT_DIM_COMBINATION_CODE,
    DIM_DESC_RELATION,
    TARGET_RELATION,
    QueryContext,
)
from kpi_engine.application.services.resolver import MetricDependencyResolver
from kpi_engine.application.services.sql_generator import QueryGenerator, projected_dims, validate_dim_codes
from kpi_engine.application.use_cases.expand_metrics import run as expand_metrics
from kpi_engine.domain.entities import MetricDefinition
from kpi_engine.domain.enums import ExecutionStrategy
from kpi_engine.domain.errors import PartitionUnavailableError
from kpi_engine.domain.fingerprint import CacheFingerprint
from kpi_engine.domain.ports import MetadataPort, QueryExecutorPort
from kpi_engine.domain.types import ResultRows
from kpi_engine.infrastructure.cache.hierarchy import CacheHierarchy
from kpi_engine.infrastructure.observability.metrics import execution_strategy

logger = structlog.get_logger()

DEFAULT_STAGING_THRESHOLD = 8
OP_TIME_COLUMN = "op_time"


@dataclass
class QueryDependencies:
    """Collaborators of one query execution."""

    metadata: MetadataPort
    resolver: MetricDependencyResolver
    generator: QueryGenerator
    executor: QueryExecutorPort
    cache: CacheHierarchy
    staging_threshold: int = DEFAULT_STAGING_THRESHOLD
    dim_key_template: str | None = None
    target_key_template: str | None = None
    default_dim_combination_code: str = DEFAULT_DIM_COMBINATION_CODE


async def run(request: KpiQueryRequest, deps: QueryDependencies) -> ResultRows:
    """Answer a KPI query from cache or by executing one statement per time point.

    Time points are processed concurrently; rows are concatenated in the
    order the time points were requested.

    Raises:
        DomainError: Resolution, generation, partition or execution failure.
            When several time points fail, the first in request order wins.
    """
    dims = list(dict.fromkeys(request.dim_code_array))
    dim_conditions = request.dim_conditions()
    validate_dim_codes([*dims, *dim_conditions.keys()])
    time_points = list(dict.fromkeys(request.op_time_array))
    kpi_inputs = [kpi_input.strip() for kpi_input in request.kpi_array]

    fingerprint = CacheFingerprint.for_query(
        kpi_inputs,
        time_points,
        dims,
        dim_conditions,
        request.include_historical_data,
        request.include_target_data,
    )
    cached = await deps.cache.get(fingerprint)
    if cached is not None:
        return _order_by_time_points(cached, time_points)

    metrics = expand_metrics(kpi_inputs, request.include_historical_data, deps.metadata)
    logger.info(
        "query_executing",
        metrics=[metric.id for metric in metrics],
        time_points=time_points,
        dims=dims,
    )

    results = await asyncio.gather(
        *[
            _process_time_point(time_point, metrics, dims, dim_conditions, request, deps)
            for time_point in time_points
        ],
        return_exceptions=True,
    )

    rows: ResultRows = []
    for time_point, result in zip(time_points, results):
        if isinstance(result, Exception):
            logger.error("time_point_failed", time_point=time_point, error=str(result))
            raise result
        rows.extend(result)

    deps.cache.put(fingerprint, rows)
    return rows


async def _process_time_point(
    time_point: str,
    metrics: list[MetricDefinition],
    dims: list[str],
    dim_conditions: dict[str, list[str]],
    request: KpiQueryRequest,
    deps: QueryDependencies,
) -> ResultRows:
    ctx = QueryContext(
        time_point,
        dim_codes=dims,
        dim_conditions=dim_conditions,
        include_historical=request.include_historical_data,
        include_target=request.include_target_data,
        default_dim_combination_code=deps.default_dim_combination_code,
    )
    for metric in metrics:
        deps.resolver.resolve(metric, time_point, ctx)

    if not ctx.required_tables:
        logger.warning("no_partitions_required", time_point=time_point)
        return []

    deps.generator.assign_aliases(ctx)
    fetched: list[str] = []
    try:
        await _prepare_files(ctx, deps.cache, fetched)
        await _prepare_relations(ctx, deps, fetched)

        if len(ctx.required_tables) > deps.staging_threshold:
            strategy = ExecutionStrategy.STAGING
            rows = await deps.executor.execute_with_staging(
                ctx,
                projected_dims(ctx, dims),
                lambda staging_name: deps.generator.generate_with_staging(metrics, ctx, dims, staging_name),
            )
        else:
            strategy = ExecutionStrategy.DIRECT_ATTACH
            statement = deps.generator.generate(metrics, ctx, dims)
            rows = await deps.executor.execute(ctx, statement) if statement else []
    finally:
        deps.cache.release_files(fetched)

    execution_strategy.labels(strategy=strategy.value).inc()
    logger.debug(
        "time_point_executed",
        time_point=time_point,
        strategy=strategy.value,
        tables=len(ctx.required_tables),
        rows=len(rows),
    )
    for row in rows:
        row[OP_TIME_COLUMN] = time_point
    return rows


async def _prepare_files(ctx: QueryContext, cache: CacheHierarchy, fetched: list[str]) -> None:
    """Materialize every required partition locally, in parallel.

    Raises:
        PartitionUnavailableError: Listing every missing partition at once.
    """
    refs = ctx.sorted_tables()
    results = await asyncio.gather(*[cache.get_file(ref) for ref in refs], return_exceptions=True)

    missing: list[str] = []
    first_error: Exception | None = None
    for ref, result in zip(refs, results):
        if isinstance(result, PartitionUnavailableError):
            missing.extend(result.missing)
        elif isinstance(result, Exception):
            first_error = first_error or result
        else:
            ctx.local_paths[ref] = result
            fetched.append(result)

    if missing:
        raise PartitionUnavailableError(missing)
    if first_error is not None:
        raise first_error


async def _prepare_relations(ctx: QueryContext, deps: QueryDependencies, fetched: list[str]) -> None:
    """Attach dimension descriptions and target values when requested and available."""
    wants_desc = bool(ctx.dim_codes) and (ctx.include_historical or ctx.include_target)
    if not (wants_desc or ctx.include_target):
        return

    code = ctx.main_dim_combination_code()
    wanted: dict[str, str] = {}
    if wants_desc and deps.dim_key_template:
        wanted[DIM_DESC_RELATION] = deps.dim_key_template.format(code=code)
    if ctx.include_target and deps.target_key_template:
        wanted[TARGET_RELATION] = deps.target_key_template.format(code=code)

    for relation, key in wanted.items():
        try:
            path = await deps.cache.get_file_key(key)
        except PartitionUnavailableError:
            logger.warning("auxiliary_relation_missing", relation=relation, key=key, time_point=ctx.time_point)
            continue
        ctx.relations[relation] = path
        fetched.append(path)


def _order_by_time_points(rows: ResultRows, time_points: list[str]) -> ResultRows:
    """Reorder cached rows to follow this request's time point order."""
    position = {time_point: index for index, time_point in enumerate(time_points)}
    return sorted(rows, key=lambda row: position.get(str(row.get(OP_TIME_COLUMN)), len(position)))
