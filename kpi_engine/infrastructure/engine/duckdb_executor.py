"""DuckDB execution of generated statements over local parquet partitions."""

import asyncio
import uuid

import duckdb
import structlog

from kpi_engine.application.services.query_context import QueryContext
from kpi_engine.application.services.sql_generator import (
    partition_select_sql,
    quote_identifier,
    quote_literal,
)
from kpi_engine.domain.entities import PhysicalTableRef
from kpi_engine.domain.errors import ExecutionFailureError
from kpi_engine.domain.ports import QueryExecutorPort
from kpi_engine.domain.types import ResultRows, StatementBuilder

logger = structlog.get_logger()

STAGING_BATCH_SIZE = 10


def _fetch_rows(cursor: duckdb.DuckDBPyConnection) -> ResultRows:
    columns = [column[0] for column in cursor.description or []]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _read_parquet(path: str) -> str:
    return f"read_parquet({quote_literal(path)})"


class DuckDBExecutor(QueryExecutorPort):
    """Runs statements on a fresh in-memory DuckDB connection per call."""

    def __init__(self, threads: int | None = None) -> None:
        """Initialize executor."""
        self.threads = threads

    def _connect(self) -> duckdb.DuckDBPyConnection:
        config = {"threads": self.threads} if self.threads else {}
        return duckdb.connect(database=":memory:", config=config)

    async def execute(self, ctx: QueryContext, statement: str) -> ResultRows:
        """Attach each partition as schema <alias> and run statement."""
        return await asyncio.to_thread(self.execute_sync, ctx, statement)

    async def execute_with_staging(
        self,
        ctx: QueryContext,
        dims: list[str],
        statement_builder: StatementBuilder,
    ) -> ResultRows:
        """Load every partition into a temp staging table, then run the built statement."""
        return await asyncio.to_thread(self.execute_with_staging_sync, ctx, dims, statement_builder)

    def execute_sync(self, ctx: QueryContext, statement: str) -> ResultRows:
        if not statement:
            return []
        con = self._connect()
        try:
            for ref in ctx.sorted_tables():
                alias = quote_identifier(ctx.get_alias(ref))
                con.execute(f"CREATE SCHEMA {alias}")
                con.execute(
                    f"CREATE VIEW {alias}.{quote_identifier(ref.table_name)} AS "
                    f"SELECT * FROM {_read_parquet(self._local_path(ctx, ref))}"
                )
            self._register_relations(con, ctx)
            rows = _fetch_rows(con.execute(statement))
            logger.debug("statement_executed", time_point=ctx.time_point, strategy="direct_attach", rows=len(rows))
            return rows
        except duckdb.Error as e:
            logger.error("statement_execution_failed", time_point=ctx.time_point, error=str(e))
            raise ExecutionFailureError(f"Query execution failed for {ctx.time_point}: {e}") from e
        finally:
            con.close()

    def execute_with_staging_sync(
        self,
        ctx: QueryContext,
        dims: list[str],
        statement_builder: StatementBuilder,
    ) -> ResultRows:
        staging_name = f"staging_{uuid.uuid4().hex[:12]}"
        staging = quote_identifier(staging_name)
        con = self._connect()
        try:
            columns = ["kpi_id VARCHAR", "op_time VARCHAR", "kpi_val DOUBLE"]
            columns.extend(f"{quote_identifier(dim)} VARCHAR" for dim in dims)
            con.execute(f"CREATE TEMP TABLE {staging} ({', '.join(columns)})")

            refs = ctx.sorted_tables()
            for start in range(0, len(refs), STAGING_BATCH_SIZE):
                selects = [
                    partition_select_sql(
                        ref,
                        _read_parquet(self._local_path(ctx, ref)),
                        dims,
                        ctx.dim_columns.get(ref.dim_combination_code, frozenset()),
                    )
                    for ref in refs[start:start + STAGING_BATCH_SIZE]
                ]
                con.execute(f"INSERT INTO {staging} " + " UNION ALL ".join(selects))

            self._register_relations(con, ctx)
            statement = statement_builder(staging_name)
            rows = _fetch_rows(con.execute(statement)) if statement else []
            con.execute(f"DROP TABLE IF EXISTS {staging}")
            logger.debug(
                "statement_executed",
                time_point=ctx.time_point,
                strategy="staging",
                tables=len(refs),
                rows=len(rows),
            )
            return rows
        except duckdb.Error as e:
            logger.error("staging_execution_failed", time_point=ctx.time_point, error=str(e))
            raise ExecutionFailureError(f"Staging execution failed for {ctx.time_point}: {e}") from e
        finally:
            con.close()

    @staticmethod
    def _local_path(ctx: QueryContext, ref: PhysicalTableRef) -> str:
        try:
            return ctx.local_paths[ref]
        except KeyError as e:
            raise ExecutionFailureError(f"Partition {ref.key} was not materialized locally") from e

    @staticmethod
    def _register_relations(con: duckdb.DuckDBPyConnection, ctx: QueryContext) -> None:
        for name, path in ctx.relations.items():
            con.execute(f"CREATE VIEW {quote_identifier(name)} AS SELECT * FROM {_read_parquet(path)}")
