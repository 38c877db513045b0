"""Per-time-point query state shared by the resolver, generator and executor."""

from kpi_engine.domain.entities import PhysicalTableRef

DEFAULT_DIM_COMBINATION_CODE = "CD003"

# Auxiliary relations attached next to the partitions
DIM_DESC_RELATION = "dim_desc"
TARGET_RELATION = "target_values"


class QueryContext:
    """Mutable state for one time point of one query.

    The resolver fills ``required_tables``; the generator assigns one alias
    per required table; the use case records where each partition (and each
    auxiliary relation) was materialized locally before execution.
    """

    def __init__(
        self,
        time_point: str,
        dim_codes: list[str] | None = None,
        dim_conditions: dict[str, list[str]] | None = None,
        include_historical: bool = False,
        include_target: bool = False,
        default_dim_combination_code: str = DEFAULT_DIM_COMBINATION_CODE,
    ) -> None:
        """Initialize query context."""
        self.time_point = time_point
        self.include_historical = include_historical
        self.include_target = include_target
        self.default_dim_combination_code = default_dim_combination_code
        # Ordered, de-duplicated
        self.dim_codes: list[str] = list(dict.fromkeys(dim_codes or []))
        self.dim_conditions: dict[str, list[str]] = {
            code: list(values) for code, values in (dim_conditions or {}).items() if values
        }
        self.required_tables: set[PhysicalTableRef] = set()
        self.alias_map: dict[PhysicalTableRef, str] = {}
        self.local_paths: dict[PhysicalTableRef, str] = {}
        self.dim_columns: dict[str, frozenset[str]] = {}
        self.relations: dict[str, str] = {}

    def add_physical_table(self, metric_id: str, time_point: str, dim_combination_code: str) -> PhysicalTableRef:
        """Register a required partition; registering it twice is a no-op."""
        ref = PhysicalTableRef(metric_id, time_point, dim_combination_code)
        self.required_tables.add(ref)
        return ref

    def register_alias(self, ref: PhysicalTableRef, alias: str) -> None:
        if ref not in self.required_tables:
            raise KeyError(f"Alias for unknown table {ref.key}")
        self.alias_map[ref] = alias

    def get_alias(self, ref: PhysicalTableRef) -> str:
        try:
            return self.alias_map[ref]
        except KeyError as e:
            raise KeyError(f"Alias not found for {ref.key}") from e

    def sorted_tables(self) -> list[PhysicalTableRef]:
        """Required tables in a stable order (metric, time point, code)."""
        return sorted(
            self.required_tables,
            key=lambda ref: (ref.metric_id, ref.time_point, ref.dim_combination_code),
        )

    def required_metric_ids(self) -> set[str]:
        return {ref.metric_id for ref in self.required_tables}

    def required_time_points(self) -> set[str]:
        return {ref.time_point for ref in self.required_tables}

    def main_dim_combination_code(self) -> str:
        """Return the involved dimension-combination code covering most requested dims.

        Without requested dims (or without tables) the default code is used.
        """
        if not self.dim_codes:
            return self.default_dim_combination_code

        best_code = self.default_dim_combination_code
        max_matches = -1
        involved = sorted({ref.dim_combination_code for ref in self.required_tables})
        for code in involved:
            columns = self.dim_columns.get(code, frozenset())
            matches = sum(1 for dim in self.dim_codes if dim in columns)
            if matches > max_matches:
                max_matches = matches
                best_code = code
        return best_code
