"""Query request/response DTOs."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

STATUS_SUCCESS = "0000"
STATUS_FAILURE = "9999"


class DimCondition(BaseModel):
    """Restrict a dimension to a set of codes."""

    model_config = ConfigDict(populate_by_name=True)

    dim_code: str = Field(alias="dimConditionCode")
    dim_values: list[str] = Field(alias="dimConditionVal", min_length=1)

    @field_validator("dim_values", mode="before")
    @classmethod
    def _split_values(cls, value: Any) -> Any:
        # "4,10" selects codes 4 and 10
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class KpiQueryRequest(BaseModel):
    """KPI query request."""

    model_config = ConfigDict(populate_by_name=True)

    kpi_array: list[str] = Field(alias="kpiArray", min_length=1)
    op_time_array: list[str] = Field(alias="opTimeArray", min_length=1)
    dim_code_array: list[str] = Field(default_factory=list, alias="dimCodeArray")
    dim_condition_array: list[DimCondition] = Field(default_factory=list, alias="dimConditionArray")
    include_historical_data: bool = Field(False, alias="includeHistoricalData")
    include_target_data: bool = Field(False, alias="includeTargetData")

    @field_validator("dim_code_array", "dim_condition_array", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("include_historical_data", "include_target_data", mode="before")
    @classmethod
    def _null_as_false(cls, value: Any) -> Any:
        return False if value is None else value

    def dim_conditions(self) -> dict[str, list[str]]:
        """Merge conditions per dimension code, preserving value order."""
        merged: dict[str, list[str]] = {}
        for condition in self.dim_condition_array:
            values = merged.setdefault(condition.dim_code, [])
            values.extend(v for v in condition.dim_values if v not in values)
        return merged


class KpiQueryResponse(BaseModel):
    """KPI query response."""

    model_config = ConfigDict(populate_by_name=True)

    data_array: list[dict[str, Any]] = Field(default_factory=list, alias="dataArray")
    status: str
    msg: str

    @classmethod
    def success(cls, rows: list[dict[str, Any]], msg: str = "success") -> "KpiQueryResponse":
        return cls(data_array=rows, status=STATUS_SUCCESS, msg=msg)

    @classmethod
    def failure(cls, msg: str) -> "KpiQueryResponse":
        return cls(data_array=[], status=STATUS_FAILURE, msg=msg)
