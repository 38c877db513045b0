"""Domain enums for metric kinds, time modifiers and cache entries."""

from enum import Enum


class MetricKind(str, Enum):
    """Metric kind enum."""

    PHYSICAL = "physical"
    VIRTUAL = "virtual"
    COMPOSITE = "composite"
    CUMULATIVE = "cumulative"  # Month-to-date sum of a source metric


class TimeModifier(str, Enum):
    """Time modifier enum."""

    CURRENT = "current"
    LAST_YEAR = "lastYear"
    LAST_CYCLE = "lastCycle"
    LAST_MONTH = "lastMonth"


class CacheEntryKind(str, Enum):
    """Cache entry kind enum."""

    QUERY_RESULT = "QUERY_RESULT"
    FILE_PATH = "FILE_PATH"


class CacheTier(str, Enum):
    """Cache tier enum."""

    L1 = "l1"
    L2 = "l2"
    L3 = "l3"


class ExecutionStrategy(str, Enum):
    """Execution strategy enum."""

    DIRECT_ATTACH = "direct_attach"
    STAGING = "staging"
