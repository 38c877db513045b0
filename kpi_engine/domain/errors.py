"""Domain errors."""


class DomainError(Exception):
    """Base domain error."""


class InvalidMetricDefinitionError(DomainError):
    """Metric definition violates its kind's invariants."""


class CircularDependencyError(DomainError):
    """Metric expression references itself at the same time point."""

    def __init__(self, key: str, path: list[str] | None = None) -> None:
        self.key = key
        self.path = list(path or [])
        super().__init__(f"Circular dependency detected: {key} in path {self.path}")


class ExpressionTooComplexError(DomainError):
    """Expression nesting exceeds the depth limit."""

    def __init__(self, metric_id: str, max_depth: int) -> None:
        self.metric_id = metric_id
        self.max_depth = max_depth
        super().__init__(f"Expression depth limit ({max_depth}) exceeded: {metric_id}")


class UnresolvedMetricReferenceError(DomainError):
    """Referenced metric is not defined in metadata."""

    def __init__(self, metric_id: str) -> None:
        self.metric_id = metric_id
        super().__init__(f"Metric not found: {metric_id}")


class InvalidQueryError(DomainError):
    """Query request is malformed."""


class PartitionUnavailableError(DomainError):
    """One or more partitions do not exist in the object store."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Metric data not found: {', '.join(self.missing)}")


class ExecutionFailureError(DomainError):
    """Analytical engine rejected or failed a generated statement."""


class CacheTierUnavailableError(DomainError):
    """Backing store of a cache tier is unreachable."""

    def __init__(self, tier: str, reason: str) -> None:
        self.tier = tier
        super().__init__(f"Cache tier {tier} unavailable: {reason}")


class ObjectNotFoundError(DomainError):
    """Object does not exist in the object store."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Object does not exist: {key}")


class TransientStorageError(DomainError):
    """Object store call failed for a reason that may go away on retry."""
