"""Integration tests: generated statements executed by DuckDB over parquet partitions."""

import shutil
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from kpi_engine.application.services.query_context import QueryContext
from kpi_engine.application.services.resolver import MetricDependencyResolver
from kpi_engine.application.services.sql_generator import QueryGenerator, projected_dims
from kpi_engine.application.use_cases.handle_query import QueryDependencies
from kpi_engine.domain.entities import MetricDefinition, PhysicalTableRef
from kpi_engine.domain.errors import ExecutionFailureError, ObjectNotFoundError
from kpi_engine.domain.ports import ObjectStorePort
from kpi_engine.infrastructure.cache.hierarchy import CacheHierarchy
from kpi_engine.infrastructure.cache.l1_memory import L1MemoryCache
from kpi_engine.infrastructure.cache.l3_file import L3FileCache
from kpi_engine.infrastructure.engine.duckdb_executor import DuckDBExecutor
from kpi_engine.infrastructure.runtime.catalog_adapter import InMemoryMetadataCatalog
from kpi_engine.interfaces.query_service import KpiQueryService

METRIC_IDS = [f"KD100{i}" for i in range(1, 10)]
TIME_POINTS = ["20241201", "20251101", "20251201", "20251202"]


class LocalStore(ObjectStorePort):
    """Object store backed by a local directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    async def upload(self, key, local_path):
        target = self.root / key
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, target)

    async def exists(self, key):
        return (self.root / key).exists()

    async def download(self, key, local_path):
        source = self.root / key
        if not source.exists():
            raise ObjectNotFoundError(key)
        shutil.copyfile(source, local_path)


class RecordingExecutor(DuckDBExecutor):
    def __init__(self) -> None:
        super().__init__()
        self.strategies: list[str] = []

    async def execute(self, ctx, statement):
        self.strategies.append("direct_attach")
        return await super().execute(ctx, statement)

    async def execute_with_staging(self, ctx, dims, statement_builder):
        self.strategies.append("staging")
        return await super().execute_with_staging(ctx, dims, statement_builder)


def _value(metric_id: str, time_point: str) -> float:
    # Distinct per metric and time point so shifted references are visible
    return int(metric_id[-1]) * 10 + int(time_point[-1]) + (100 if time_point.startswith("2024") else 0)


def _write(path: Path, table: pa.Table) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    pq.write_table(table, path)


@pytest.fixture
def store_root(tmp_path):
    root = tmp_path / "store"
    for metric_id in METRIC_IDS:
        for time_point in TIME_POINTS:
            ref = PhysicalTableRef(metric_id, time_point, "CD003")
            base = _value(metric_id, time_point)
            _write(
                root / ref.object_key,
                pa.table(
                    {
                        "city_id": ["4", "4", "10"],
                        "county_id": ["41", "42", "101"],
                        "kpi_val": [base, base * 2, base * 3],
                    }
                ),
            )
    _write(
        root / "dim/kpi_dim_CD003.parquet",
        pa.table(
            {
                "dim_id": ["city_id", "city_id", "county_id"],
                "dim_code": ["4", "10", "41"],
                "dim_val": ["Lisbon", "Porto", "Belem"],
            }
        ),
    )
    _write(
        root / "target/kpi_target_value_CD003.parquet",
        pa.table(
            {
                "kpi_id": ["KD1001", "KD1001", "KD1001"],
                "op_time": ["20251201", "20251201", "20251202"],
                "city_id": ["4", "10", "4"],
                "target_val": [100.0, 50.0, 999.0],
            }
        ),
    )
    return root


@pytest.fixture
def catalog():
    metrics = [MetricDefinition.physical(metric_id, dim_combination_code="CD003") for metric_id in METRIC_IDS]
    metrics.append(MetricDefinition.composite("KC1001", "${KD1001}+${KD1001.lastYear}", dim_combination_code="CD003"))
    return InMemoryMetadataCatalog(metrics, {"CD003": ["city_id", "county_id"]})


@pytest.fixture
def l3(store_root, tmp_path):
    return L3FileCache(LocalStore(store_root), str(tmp_path / "l3"))


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def service(catalog, l3, executor):
    deps = QueryDependencies(
        metadata=catalog,
        resolver=MetricDependencyResolver(catalog),
        generator=QueryGenerator(catalog),
        executor=executor,
        cache=CacheHierarchy(l3, l1=L1MemoryCache()),
        staging_threshold=8,
        dim_key_template="dim/kpi_dim_{code}.parquet",
        target_key_template="target/kpi_target_value_{code}.parquet",
    )
    return KpiQueryService(deps)


async def _prepared_context(catalog, l3, metric_ids, dims, time_point="20251201") -> QueryContext:
    ctx = QueryContext(time_point, dim_codes=dims)
    resolver = MetricDependencyResolver(catalog)
    for metric_id in metric_ids:
        resolver.resolve(catalog.find_metric_by_id(metric_id), time_point, ctx)
    QueryGenerator(catalog).assign_aliases(ctx)
    for ref in ctx.sorted_tables():
        ctx.local_paths[ref] = await l3.get_or_download(ref)
    return ctx


def _sorted(rows):
    return sorted(rows, key=lambda row: tuple(str(row.get(k)) for k in sorted(row)))


@pytest.mark.asyncio
@pytest.mark.parametrize("table_count", [7, 9])
async def test_direct_and_staging_strategies_agree(catalog, l3, table_count):
    metric_ids = METRIC_IDS[:table_count]
    metrics = [catalog.find_metric_by_id(metric_id) for metric_id in metric_ids]
    generator = QueryGenerator(catalog)
    executor = DuckDBExecutor()
    dims = ["city_id"]

    direct_ctx = await _prepared_context(catalog, l3, metric_ids, dims)
    assert len(direct_ctx.required_tables) == table_count
    direct = executor.execute_sync(direct_ctx, generator.generate(metrics, direct_ctx, dims))

    staging_ctx = await _prepared_context(catalog, l3, metric_ids, dims)
    staged = executor.execute_with_staging_sync(
        staging_ctx,
        projected_dims(staging_ctx, dims),
        lambda name: generator.generate_with_staging(metrics, staging_ctx, dims, name),
    )

    assert _sorted(direct) == _sorted(staged)
    by_city = {row["city_id"]: row for row in direct}
    assert by_city["4"]["KD1001"] == 11 * 3
    assert by_city["10"]["KD1009"] == 91 * 3


@pytest.mark.asyncio
async def test_strategy_selected_by_table_count(service, executor):
    direct = await service.query({"kpiArray": METRIC_IDS[:7], "opTimeArray": ["20251201"], "dimCodeArray": ["city_id"]})
    staged = await service.query({"kpiArray": METRIC_IDS, "opTimeArray": ["20251201"], "dimCodeArray": ["city_id"]})

    assert direct.status == staged.status == "0000"
    assert executor.strategies == ["direct_attach", "staging"]
    direct_rows = {row["city_id"]: row["kpiValues"] for row in direct.data_array}
    staged_rows = {row["city_id"]: row["kpiValues"] for row in staged.data_array}
    for city, values in direct_rows.items():
        for metric_id, value in values.items():
            assert staged_rows[city][metric_id] == value


@pytest.mark.asyncio
async def test_physical_metric_over_two_time_points(service, executor):
    response = await service.query({"kpiArray": ["KD1001"], "opTimeArray": ["20251201", "20251202"]})

    assert response.status == "0000"
    assert response.data_array == [
        {"opTime": "20251201", "kpiValues": {"KD1001": 11.0 * 6}},
        {"opTime": "20251202", "kpiValues": {"KD1001": 12.0 * 6}},
    ]
    assert executor.strategies == ["direct_attach", "direct_attach"]


@pytest.mark.asyncio
async def test_composite_with_last_year(service):
    response = await service.query({"kpiArray": ["KC1001"], "opTimeArray": ["20251201"]})

    assert response.status == "0000"
    [row] = response.data_array
    # 20251201 -> 11 per unit, 20241201 -> 111 per unit, six units per partition
    assert row["kpiValues"]["KC1001"] == (11 + 111) * 6


@pytest.mark.asyncio
async def test_historical_shorthand_and_adhoc(service):
    response = await service.query(
        {
            "kpiArray": ["KD1001", "KD1002.lastYear", "${KD1001}/${KD1002}"],
            "opTimeArray": ["20251201"],
            "dimCodeArray": ["city_id"],
            "includeHistoricalData": True,
        }
    )

    assert response.status == "0000"
    rows = {row["city_id"]: row for row in response.data_array}
    porto = rows["10"]
    assert porto["city_id_desc"] == "Porto"
    assert porto["kpiValues"]["KD1001"] == 11 * 3
    assert porto["kpiValues"]["KD1001_lastYear"] == 111 * 3
    assert porto["kpiValues"]["KD1002_lastYear"] == 121 * 3
    assert porto["kpiValues"]["${KD1001}/${KD1002}"] == pytest.approx(11 / 21)
    assert "KD1001_lastCycle" in porto["kpiValues"]


@pytest.mark.asyncio
async def test_targets_and_conditions(service):
    response = await service.query(
        {
            "kpiArray": ["KD1001"],
            "opTimeArray": ["20251201"],
            "dimCodeArray": ["city_id"],
            "dimConditionArray": [{"dimConditionCode": "county_id", "dimConditionVal": "41,101"}],
            "includeTargetData": True,
        }
    )

    assert response.status == "0000"
    rows = {row["city_id"]: row for row in response.data_array}
    assert rows["4"]["kpiValues"] == {"KD1001": 11.0, "KD1001_target": 100.0}
    assert rows["10"]["kpiValues"] == {"KD1001": 33.0, "KD1001_target": 50.0}
    assert rows["4"]["city_id_desc"] == "Lisbon"


@pytest.mark.asyncio
async def test_missing_partition_reported(service):
    response = await service.query({"kpiArray": ["KD1001"], "opTimeArray": ["20230101"]})

    assert response.status == "9999"
    assert response.msg == "Metric data not found: KD1001@20230101"


def test_engine_errors_are_wrapped(catalog, tmp_path):
    ref = PhysicalTableRef("KD1001", "20251201", "CD003")
    broken = tmp_path / "broken.parquet"
    broken.write_bytes(b"not parquet")
    ctx = QueryContext("20251201")
    ctx.add_physical_table(ref.metric_id, ref.time_point, ref.dim_combination_code)
    statement = QueryGenerator(catalog).generate([catalog.find_metric_by_id("KD1001")], ctx, [])
    ctx.local_paths[ref] = str(broken)

    with pytest.raises(ExecutionFailureError):
        DuckDBExecutor().execute_sync(ctx, statement)
