"""Event DTOs."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from kpi_engine.domain.entities import CacheInvalidationEvent


class SrcTableCompleteEvent(BaseModel):
    """A source table finished loading for one batch time point."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = "src_table_complete"
    src_table_name: str = Field(alias="srcTableName", min_length=1)
    op_time: str = Field(alias="opTime", min_length=1)


class CacheInvalidationMessage(BaseModel):
    """Wire form of a cache invalidation broadcast."""

    model_config = ConfigDict(populate_by_name=True)

    model_id: str = Field(alias="modelId")
    metric_ids: list[str] = Field(alias="metricIds", min_length=1)
    time_points: list[str] = Field(alias="timePoints", min_length=1)
    timestamp: datetime

    def to_event(self) -> CacheInvalidationEvent:
        return CacheInvalidationEvent(
            model_id=self.model_id,
            metric_ids=tuple(self.metric_ids),
            time_points=tuple(self.time_points),
            timestamp=self.timestamp,
        )
