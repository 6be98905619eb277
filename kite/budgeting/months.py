"""Month arithmetic on YYYY-MM keys."""

from datetime import datetime


def month_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


def parse_month(month: str) -> tuple[int, int]:
    year, mon = month.split("-")
    return int(year), int(mon)


def shift_month(month: str, delta: int) -> str:
    year, mon = parse_month(month)
    index = year * 12 + (mon - 1) + delta
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def month_bounds(month: str) -> tuple[datetime, datetime]:
    """First instant of the month and first instant of the next one."""
    year, mon = parse_month(month)
    next_year, next_mon = parse_month(shift_month(month, 1))
    return datetime(year, mon, 1), datetime(next_year, next_mon, 1)


def month_range(start: str, end: str) -> list[str]:
    """Inclusive list of months from start to end."""
    months = []
    current = start
    while current <= end:
        months.append(current)
        current = shift_month(current, 1)
    return months
