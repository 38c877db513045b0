"""Expand requested KPI ids into metric definitions."""

import structlog

from kpi_engine.application.services.expression import is_adhoc_expression, split_shorthand
from kpi_engine.domain.entities import MetricDefinition
from kpi_engine.domain.enums import MetricKind, TimeModifier
from kpi_engine.domain.errors import UnresolvedMetricReferenceError
from kpi_engine.domain.ports import MetadataPort

logger = structlog.get_logger()

HISTORICAL_MODIFIERS = (TimeModifier.LAST_YEAR, TimeModifier.LAST_CYCLE)


def run(
    kpi_array: list[str],
    include_historical: bool,
    metadata: MetadataPort,
) -> list[MetricDefinition]:
    """Turn each requested id into the metrics to compute, in request order.

    A requested id is one of:
      * an ad-hoc formula (``${KD1001}/${KD1002}`` or ``KD1001*100``), computed
        as a VIRTUAL metric named after the formula itself;
      * ``ID.modifier`` shorthand, computed as COMPOSITE ``ID_modifier``;
      * a plain metric id, looked up in metadata.

    With include_historical, every metric defined in metadata also gets
    ``ID_lastYear`` and ``ID_lastCycle`` companions.

    Raises:
        UnresolvedMetricReferenceError: A plain or shorthand id is unknown.
    """
    metrics: list[MetricDefinition] = []
    for kpi_input in kpi_array:
        kpi_input = kpi_input.strip()
        base = _expand_one(kpi_input, metadata)
        metrics.append(base)

        if include_historical and base.kind != MetricKind.VIRTUAL and metadata.find_metric_by_id(base.id):
            metrics.extend(_historical(base, modifier) for modifier in HISTORICAL_MODIFIERS)

    # Same id requested twice is computed once
    return list({metric.id: metric for metric in metrics}.values())


def _expand_one(kpi_input: str, metadata: MetadataPort) -> MetricDefinition:
    if is_adhoc_expression(kpi_input):
        logger.debug("adhoc_expression_recognized", expression=kpi_input)
        return MetricDefinition.virtual(kpi_input, kpi_input)

    shorthand = split_shorthand(kpi_input)
    if shorthand is not None:
        metric_id, modifier = shorthand
        source = _lookup(metric_id, metadata)
        expression = f"${{{metric_id}.{modifier}}}"
        logger.debug("shorthand_expanded", kpi_input=kpi_input, expression=expression)
        return MetricDefinition.composite(
            f"{metric_id}_{modifier}",
            expression,
            agg_func=source.agg_func,
            dim_combination_code=source.dim_combination_code,
        )

    return _lookup(kpi_input, metadata)


def _lookup(metric_id: str, metadata: MetadataPort) -> MetricDefinition:
    definition = metadata.find_metric_by_id(metric_id)
    if definition is None:
        logger.error("requested_metric_not_found", metric_id=metric_id)
        raise UnresolvedMetricReferenceError(metric_id)
    return definition


def _historical(base: MetricDefinition, modifier: TimeModifier) -> MetricDefinition:
    return MetricDefinition.composite(
        f"{base.id}_{modifier.value}",
        f"${{{base.id}.{modifier.value}}}",
        agg_func=base.agg_func,
        dim_combination_code=base.dim_combination_code,
    )
