"""KPI query service adapter."""

import time
from typing import Any

import structlog
from pydantic import ValidationError

from kpi_engine.application.dto.query import KpiQueryRequest, KpiQueryResponse
from kpi_engine.application.use_cases.handle_query import OP_TIME_COLUMN, QueryDependencies
from kpi_engine.application.use_cases.handle_query import run as handle_query
from kpi_engine.domain.types import ResultRows
from kpi_engine.infrastructure.observability.metrics import queries_total, query_duration_seconds

logger = structlog.get_logger()

KPI_VALUES_FIELD = "kpiValues"
OP_TIME_FIELD = "opTime"


class KpiQueryService:
    """Validates query payloads and shapes engine rows into the response."""

    def __init__(self, deps: QueryDependencies) -> None:
        """Initialize query service."""
        self.deps = deps

    async def query(self, payload: dict[str, Any] | KpiQueryRequest) -> KpiQueryResponse:
        """Run a query; failures come back as status 9999 with a message."""
        started = time.perf_counter()
        try:
            if isinstance(payload, KpiQueryRequest):
                request = payload
            else:
                request = KpiQueryRequest.model_validate(payload)
        except ValidationError as e:
            queries_total.labels(status="invalid").inc()
            logger.warning("query_request_invalid", error=str(e))
            return KpiQueryResponse.failure(f"Invalid query request: {e}")

        try:
            rows = await handle_query(request, self.deps)
        except Exception as e:
            queries_total.labels(status="failed").inc()
            logger.error(
                "query_failed",
                kpis=request.kpi_array,
                op_times=request.op_time_array,
                error=str(e),
                exc_info=True,
            )
            return KpiQueryResponse.failure(str(e))
        finally:
            query_duration_seconds.observe(time.perf_counter() - started)

        queries_total.labels(status="success").inc()
        logger.info("query_completed", kpis=request.kpi_array, rows=len(rows))
        return KpiQueryResponse.success(restructure_rows(rows, request.dim_code_array))


def restructure_rows(rows: ResultRows, dims: list[str]) -> ResultRows:
    """Keep opTime and dimension columns at top level; nest everything else.

    Metric values (including ``_lastYear``, ``_lastCycle`` and ``_target``
    companions) go under ``kpiValues``, which is omitted when empty.
    """
    dim_fields = set(dims) | {f"{dim}_desc" for dim in dims}
    shaped: ResultRows = []
    for row in rows:
        out: dict[str, Any] = {}
        kpi_values: dict[str, Any] = {}
        for key, value in row.items():
            if key in (OP_TIME_COLUMN, OP_TIME_FIELD):
                out[OP_TIME_FIELD] = value
            elif key in dim_fields:
                out[key] = value
            else:
                kpi_values[key] = value
        if kpi_values:
            out[KPI_VALUES_FIELD] = kpi_values
        shaped.append(out)
    return shaped
