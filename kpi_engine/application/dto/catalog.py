"""Metric catalog DTOs."""

from pydantic import BaseModel, ConfigDict, Field

from kpi_engine.domain.entities import MetricDefinition, MetricModel
from kpi_engine.domain.enums import MetricKind


class MetricEntry(BaseModel):
    """Metric definition as stored in the catalog."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    kind: MetricKind
    expression: str | None = None
    agg_func: str | None = Field(None, alias="aggFunc")
    dim_combination_code: str | None = Field(None, alias="dimCombinationCode")

    def to_definition(self) -> MetricDefinition:
        return MetricDefinition(
            id=self.id,
            kind=self.kind,
            expression=self.expression,
            agg_func=self.agg_func or "sum",
            dim_combination_code=self.dim_combination_code,
        )


class ModelEntry(BaseModel):
    """Metric model as stored in the catalog."""

    model_config = ConfigDict(populate_by_name=True)

    model_id: str = Field(alias="modelId")
    metric_ids: list[str] = Field(default_factory=list, alias="metricIds")
    source_tables: list[str] = Field(default_factory=list, alias="sourceTables")

    def to_model(self) -> MetricModel:
        return MetricModel(
            model_id=self.model_id,
            metric_ids=tuple(self.metric_ids),
            source_tables=tuple(self.source_tables),
        )


class MetricCatalog(BaseModel):
    """Catalog document: metrics, dimension columns per combination code, models."""

    metrics: list[MetricEntry] = Field(default_factory=list)
    dimensions: dict[str, list[str]] = Field(default_factory=dict)
    models: list[ModelEntry] = Field(default_factory=list)
