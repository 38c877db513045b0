"""Shared fixtures."""

import pytest

from kpi_engine.domain.entities import MetricDefinition, MetricModel
from kpi_engine.infrastructure.runtime.catalog_adapter import InMemoryMetadataCatalog


@pytest.fixture
def catalog():
    """Small metric catalog: physical, composite, virtual and cumulative metrics."""
    return InMemoryMetadataCatalog(
        metrics=[
            MetricDefinition.physical("KD1001", dim_combination_code="CD003"),
            MetricDefinition.physical("KD1002", dim_combination_code="CD003"),
            MetricDefinition.physical("KD2001", agg_func="max", dim_combination_code="CD002"),
            MetricDefinition.composite("KC1001", "${KD1001}+${KD1001.lastYear}", dim_combination_code="CD003"),
            MetricDefinition.composite("KC1002", "${KC1001}*2", dim_combination_code="CD003"),
            MetricDefinition.virtual("KY1001", "${KD1001}/${KD1002}"),
            MetricDefinition.cumulative("KM1001", "KD1001", dim_combination_code="CD003"),
        ],
        dimensions={
            "CD003": ["city_id", "county_id"],
            "CD002": ["city_id"],
        },
        models=[
            MetricModel("M1", ("KC1001", "KC1002"), ("ods_user_day",)),
            MetricModel("M2", ("KD2001",), ("ods_user_day", "ods_cell_day")),
        ],
    )
