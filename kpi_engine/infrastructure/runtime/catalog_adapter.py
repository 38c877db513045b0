"""Metadata catalog adapters."""

import structlog
from pydantic import ValidationError

from kpi_engine.application.dto.catalog import MetricCatalog
from kpi_engine.domain.entities import MetricDefinition, MetricModel
from kpi_engine.domain.errors import InvalidMetricDefinitionError, ObjectNotFoundError
from kpi_engine.domain.ports import MetadataPort
from kpi_engine.infrastructure.aws.s3_io import S3IO
from kpi_engine.infrastructure.aws.s3_path import S3Path

logger = structlog.get_logger()


class InMemoryMetadataCatalog(MetadataPort):
    """Metadata served from in-process dictionaries."""

    def __init__(
        self,
        metrics: list[MetricDefinition] | None = None,
        dimensions: dict[str, list[str]] | None = None,
        models: list[MetricModel] | None = None,
    ) -> None:
        """Initialize catalog."""
        self._metrics: dict[str, MetricDefinition] = {}
        self._dimensions: dict[str, frozenset[str]] = {}
        self._models: list[MetricModel] = []
        self.replace(metrics or [], dimensions or {}, models or [])

    def replace(
        self,
        metrics: list[MetricDefinition],
        dimensions: dict[str, list[str]],
        models: list[MetricModel],
    ) -> None:
        """Swap in a new snapshot of the catalog."""
        self._metrics = {metric.id: metric for metric in metrics}
        self._dimensions = {code: frozenset(columns) for code, columns in dimensions.items()}
        self._models = list(models)

    def find_metric_by_id(self, metric_id: str) -> MetricDefinition | None:
        return self._metrics.get(metric_id)

    def get_dim_columns(self, dim_combination_code: str) -> frozenset[str]:
        return self._dimensions.get(dim_combination_code, frozenset())

    def find_models_by_source_table(self, src_table_name: str) -> list[MetricModel]:
        return [model for model in self._models if src_table_name in model.source_tables]

    def __len__(self) -> int:
        return len(self._metrics)


class S3MetricCatalog(InMemoryMetadataCatalog):
    """Catalog loaded from a JSON document in the object store."""

    def __init__(self, s3_io: S3IO, catalog_key: str) -> None:
        """Initialize catalog adapter."""
        super().__init__()
        self.s3_io = s3_io
        self.catalog_key = S3Path.normalize(catalog_key)

    async def load(self) -> None:
        """Fetch and parse the catalog, replacing the current snapshot."""
        logger.info("loading_metric_catalog", key=self.catalog_key, bucket=self.s3_io.bucket)
        try:
            document = await self.s3_io.get_json(self.catalog_key)
        except ObjectNotFoundError as e:
            logger.error("metric_catalog_not_found", key=self.catalog_key, bucket=self.s3_io.bucket)
            raise RuntimeError(f"Metric catalog not found: {self.catalog_key} (bucket: {self.s3_io.bucket})") from e

        try:
            catalog = MetricCatalog.model_validate(document)
            metrics = [entry.to_definition() for entry in catalog.metrics]
        except (ValidationError, InvalidMetricDefinitionError) as e:
            logger.error("metric_catalog_invalid", key=self.catalog_key, error=str(e))
            raise RuntimeError(f"Invalid metric catalog {self.catalog_key}: {e}") from e

        self.replace(metrics, catalog.dimensions, [entry.to_model() for entry in catalog.models])
        logger.info(
            "metric_catalog_loaded",
            metrics=len(metrics),
            dimension_codes=len(catalog.dimensions),
            models=len(catalog.models),
        )
