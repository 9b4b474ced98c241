"""
Date utilities for billing months.

payment_month values are stored as the first day of the month; scope filters
are half-open [start, end) ranges of such dates.
"""

import re
from datetime import date, datetime
from typing import Optional, Tuple


_PREFIX_PATTERN = re.compile(r'^(\d{4})(?:-(\d{1,2}))?(?:-(\d{1,2}))?$')


def get_first_day_of_month(year: int, month: int) -> date:
    """
    Get the first day of a given month.

    Args:
        year: Target year
        month: Target month (1-12)

    Returns:
        date: First day of the specified month
    """
    return date(year, month, 1)


def add_months(month_start: date, months: int) -> date:
    """Shift a first-of-month date by a number of months (may be negative)."""
    index = month_start.year * 12 + (month_start.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def normalize_payment_month(value) -> date:
    """
    Coerce a date, datetime or ISO string to the first day of its month.

    Raises:
        ValueError: If the value cannot be read as a month
    """
    if isinstance(value, datetime):
        return get_first_day_of_month(value.year, value.month)
    if isinstance(value, date):
        return get_first_day_of_month(value.year, value.month)
    if isinstance(value, str):
        start, end = parse_month_prefix(value)
        if add_months(start, 1) != end:
            raise ValueError(f"Expected a single month, got {value!r}")
        return start
    raise ValueError(f"Cannot interpret {value!r} as a payment month")


def parse_month_prefix(prefix: str) -> Tuple[date, date]:
    """
    Turn a payment_month prefix into a half-open [start, end) date range.

    Accepted forms:
        '2025'        -> [2025-01-01, 2026-01-01)
        '2025-10'     -> [2025-10-01, 2025-11-01)
        '2025-10-01'  -> [2025-10-01, 2025-11-01)   (the date's month)

    Raises:
        ValueError: On anything else
    """
    match = _PREFIX_PATTERN.match(prefix.strip()) if prefix else None
    if not match:
        raise ValueError(f"Invalid month prefix: {prefix!r} (expected YYYY, YYYY-MM or YYYY-MM-DD)")

    year = int(match.group(1))
    month = match.group(2)
    day = match.group(3)

    if month is None:
        start = date(year, 1, 1)
        return start, add_months(start, 12)

    month_number = int(month)
    if not 1 <= month_number <= 12:
        raise ValueError(f"Invalid month in prefix: {prefix!r}")

    start = get_first_day_of_month(year, month_number)
    if day is not None:
        # Validates the day, the range is still the whole month
        date(year, month_number, int(day))
    return start, add_months(start, 1)


def format_month(value: Optional[date]) -> str:
    """Format a payment month as YYYY-MM for logs and tables."""
    if value is None:
        return 'N/A'
    return value.strftime('%Y-%m')
