"""Time helpers shared by the billing code. All datetimes are naive UTC."""
import calendar
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(value):
    """Gateway timestamps are unix seconds; 0 and None both mean "not set"."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def to_unix(value):
    if value is None:
        return None
    return calendar.timegm(value.utctimetuple())


def add_months(value, months):
    """
    Calendar month arithmetic: Jan 31 + 1 month is Feb 28 (or 29),
    never a fixed number of days.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def start_of_month(value):
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def isoformat(value):
    return value.isoformat() if value else None
