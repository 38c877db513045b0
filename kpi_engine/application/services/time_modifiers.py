"""Time point arithmetic for metric references."""

import calendar
from datetime import date, datetime, timedelta

import structlog

from kpi_engine.domain.enums import TimeModifier

logger = structlog.get_logger()

TIME_POINT_FORMAT = "%Y%m%d"

# Calendar months to step back per modifier
_MONTH_OFFSETS: dict[TimeModifier, int] = {
    TimeModifier.LAST_YEAR: -12,
    TimeModifier.LAST_CYCLE: -1,
    TimeModifier.LAST_MONTH: -1,
}


def _parse(time_point: str) -> date | None:
    if len(time_point) != 8 or not time_point.isdigit():
        return None
    try:
        return datetime.strptime(time_point, TIME_POINT_FORMAT).date()
    except ValueError:
        return None


def _shift_months(day: date, months: int) -> date:
    month_index = day.year * 12 + day.month - 1 + months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def calculate_time(time_point: str, modifier: str | None) -> str:
    """Shift a ``yyyyMMdd`` time point by a reference modifier.

    ``current`` (or no modifier) keeps the time point. ``lastYear`` moves to
    the same calendar day one year earlier, ``lastCycle`` and ``lastMonth``
    move one calendar month earlier; both clamp the day to the end of the
    target month (Feb 29 -> Feb 28). Unknown modifiers and time points that
    are not ``yyyyMMdd`` dates are returned unchanged.
    """
    if not modifier or modifier == TimeModifier.CURRENT.value:
        return time_point

    try:
        parsed_modifier = TimeModifier(modifier)
    except ValueError:
        logger.warning("unknown_time_modifier", modifier=modifier, time_point=time_point)
        return time_point

    day = _parse(time_point)
    if day is None:
        logger.warning("unparseable_time_point", time_point=time_point, modifier=modifier)
        return time_point

    shifted = _shift_months(day, _MONTH_OFFSETS.get(parsed_modifier, 0))
    return shifted.strftime(TIME_POINT_FORMAT)


def expand_to_month_start(time_point: str) -> list[str]:
    """Return every day from the first of the month up to time_point, in order.

    A time point that is not a ``yyyyMMdd`` date expands to itself.
    """
    day = _parse(time_point)
    if day is None:
        logger.warning("unparseable_time_point", time_point=time_point, modifier="monthToDate")
        return [time_point]

    current = day.replace(day=1)
    days = []
    while current <= day:
        days.append(current.strftime(TIME_POINT_FORMAT))
        current += timedelta(days=1)
    return days
