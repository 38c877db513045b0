"""Handle source table completion notifications."""

import structlog

from kpi_engine.application.dto.events import SrcTableCompleteEvent
from kpi_engine.application.use_cases.invalidate_cache import run as invalidate_cache
from kpi_engine.domain.entities import SrcTableCompleteResult
from kpi_engine.domain.ports import ClockPort, InvalidationBusPort, MetadataPort
from kpi_engine.infrastructure.cache.hierarchy import CacheHierarchy

logger = structlog.get_logger()

STATUS_SUCCESS = "SUCCESS"
STATUS_IGNORED = "IGNORED"
STATUS_ERROR = "ERROR"


async def run(
    event: SrcTableCompleteEvent,
    metadata: MetadataPort,
    cache: CacheHierarchy,
    clock: ClockPort,
    bus: InvalidationBusPort | None = None,
) -> SrcTableCompleteResult:
    """Invalidate every model fed by the completed table at its batch time point."""
    table = event.src_table_name
    op_time = event.op_time
    logger.info("src_table_complete_received", src_table=table, op_time=op_time)

    try:
        models = metadata.find_models_by_source_table(table)
        if not models:
            logger.info("no_dependent_models", src_table=table)
            return SrcTableCompleteResult(STATUS_IGNORED, message=f"No models depend on {table}")

        triggered: list[str] = []
        for model in models:
            if not model.metric_ids:
                logger.warning("model_without_metrics", model_id=model.model_id)
                continue
            await invalidate_cache(model.model_id, list(model.metric_ids), [op_time], cache, clock, bus)
            triggered.append(model.model_id)

        logger.info("src_table_complete_handled", src_table=table, op_time=op_time, models=triggered)
        return SrcTableCompleteResult(STATUS_SUCCESS, triggered_models=triggered)
    except Exception as e:
        logger.error("src_table_complete_failed", src_table=table, op_time=op_time, error=str(e), exc_info=True)
        return SrcTableCompleteResult(STATUS_ERROR, message=str(e))
