"""Clock implementation."""

from datetime import datetime, timezone

from kpi_engine.domain.ports import ClockPort
from kpi_engine.domain.types import Timestamp


class SystemClock(ClockPort):
    """System clock implementation."""

    def now(self) -> Timestamp:
        """Get current timestamp (UTC)."""
        return datetime.now(timezone.utc)
