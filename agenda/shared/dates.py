"""Shared date helpers - all billing timestamps are naive UTC"""

from dataclasses import dataclass
from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta

MONTH_NAMES_PT = [
    "janeiro",
    "fevereiro",
    "março",
    "abril",
    "maio",
    "junho",
    "julho",
    "agosto",
    "setembro",
    "outubro",
    "novembro",
    "dezembro",
]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (matches DateTime columns)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class MonthCycle:
    start: datetime
    end: datetime
    label: str


def compute_month_cycle(now: datetime = None) -> MonthCycle:
    """Calendar month window [start, end) containing ``now``"""
    base = to_naive_utc(now) if now else utcnow()
    start = datetime(base.year, base.month, 1)
    end = start + relativedelta(months=1)
    return MonthCycle(start=start, end=end, label=f"{MONTH_NAMES_PT[start.month - 1]} de {start.year}")


def parse_gateway_datetime(value) -> datetime:
    """Parse an ISO-8601 timestamp from the gateway into naive UTC; None when absent or invalid"""
    if not value:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    from dateutil import parser as date_parser

    try:
        return to_naive_utc(date_parser.isoparse(str(value)))
    except (ValueError, OverflowError):
        return None
