"""Working-day arithmetic for leave requests.

Pure functions over calendar dates: no database access, no clock. The
office-specific inputs (working week and holiday calendar) are loaded by
``load_calendar`` and passed in by the caller.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import WEEKDAY_CODES, HalfDay
from leaveflow.common.exceptions import InvalidRangeError
from leaveflow.core_hr.models import Office, PublicHoliday

FULL = Decimal("1")
HALF = Decimal("0.5")


def _as_calendar_date(value: Union[date, datetime]) -> date:
    # datetime is a date subclass; strip the time of day
    if isinstance(value, datetime):
        return value.date()
    return value


def compute(
    start: Union[date, datetime],
    end: Union[date, datetime],
    start_half_day: HalfDay,
    end_half_day: HalfDay,
    working_weekdays: Iterable[int],
    holidays: Iterable[Union[date, datetime]],
) -> Decimal:
    """Count the working days consumed by a leave range.

    Args:
        start, end: inclusive range; only the calendar date is used.
        start_half_day: ``afternoon`` makes the first day a half day.
        end_half_day: ``morning`` makes the last day a half day.
        working_weekdays: Python weekday numbers (0=Mon) that are worked.
        holidays: non-working calendar dates.

    Raises:
        InvalidRangeError: ``end`` falls before ``start``.
    """
    start = _as_calendar_date(start)
    end = _as_calendar_date(end)
    if end < start:
        raise InvalidRangeError(start, end)

    weekdays = frozenset(working_weekdays)
    off_days = frozenset(_as_calendar_date(h) for h in holidays)

    total = Decimal("0")
    current = start
    while current <= end:
        if current.weekday() in weekdays and current not in off_days:
            total += _day_value(current, start, end, start_half_day, end_half_day)
        current += timedelta(days=1)
    return total


def _day_value(
    day: date,
    start: date,
    end: date,
    start_half_day: HalfDay,
    end_half_day: HalfDay,
) -> Decimal:
    if day == start and day == end:
        # A single date is never discounted twice
        if start_half_day != HalfDay.full_day or end_half_day != HalfDay.full_day:
            return HALF
        return FULL
    if day == start:
        return HALF if start_half_day == HalfDay.afternoon else FULL
    if day == end:
        return HALF if end_half_day == HalfDay.morning else FULL
    return FULL


def working_weekdays_from_codes(codes: Iterable[str]) -> set[int]:
    """``["MON", "TUE", ...]`` → ``{0, 1, ...}``; unknown codes are dropped."""
    return {
        WEEKDAY_CODES[code.upper()]
        for code in codes
        if code.upper() in WEEKDAY_CODES
    }


async def load_calendar(
    db: AsyncSession,
    office: Office,
    from_date: date,
    to_date: date,
) -> tuple[set[int], set[date]]:
    """Return the office working week and its holidays inside the range."""
    result = await db.execute(
        select(PublicHoliday.date).where(
            PublicHoliday.office_id == office.id,
            PublicHoliday.date >= from_date,
            PublicHoliday.date <= to_date,
        )
    )
    holidays = {row[0] for row in result.all()}
    return working_weekdays_from_codes(office.working_days or []), holidays


async def compute_for_office(
    db: AsyncSession,
    office: Office,
    start: date,
    end: date,
    start_half_day: HalfDay,
    end_half_day: HalfDay,
) -> Decimal:
    if end < start:
        raise InvalidRangeError(start, end)
    weekdays, holidays = await load_calendar(db, office, start, end)
    return compute(start, end, start_half_day, end_half_day, weekdays, holidays)
