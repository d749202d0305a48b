from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

PERIOD_MONTH = "month"
PERIOD_WEEK = "week"
SUPPORTED_PERIODS = {PERIOD_MONTH, PERIOD_WEEK}

DEFAULT_BUCKET_COUNT = 6
MIN_BUCKET_COUNT = 2
MAX_BUCKET_COUNT = 24
WEEK_DAYS = 7

MONTH_ABBREVIATIONS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


class ReportUnavailable(RuntimeError):
    """Raised when the rows backing a report cannot be fetched."""


@dataclass(frozen=True)
class ReportRow:
    date: date
    type: str
    amount: Decimal


@dataclass(frozen=True)
class ReportRequest:
    period: str
    count: int


@dataclass
class ReportBucket:
    key: str
    label: str
    income: Decimal = ZERO
    expense: Decimal = ZERO


@dataclass(frozen=True)
class ReportPlan:
    period: str
    count: int
    start: date
    end: date
    buckets: list[ReportBucket] = field(default_factory=list)


@dataclass(frozen=True)
class Summary:
    income: Decimal
    expense: Decimal

    @property
    def balance(self) -> Decimal:
        return self.income - self.expense


RowFetcher = Callable[[date, date], Iterable[ReportRow]]


def normalize_period(value: str | None) -> str:
    # Unknown values fall back to months instead of being rejected.
    normalized = value.strip().lower() if isinstance(value, str) else ""
    return normalized if normalized in SUPPORTED_PERIODS else PERIOD_MONTH


def normalize_count(value: object) -> int:
    if value is None or isinstance(value, bool):
        return DEFAULT_BUCKET_COUNT
    try:
        number = float(str(value).strip())
    except ValueError:
        return DEFAULT_BUCKET_COUNT
    if math.isnan(number):
        return DEFAULT_BUCKET_COUNT
    if math.isinf(number):
        return MAX_BUCKET_COUNT if number > 0 else MIN_BUCKET_COUNT
    return min(max(int(number), MIN_BUCKET_COUNT), MAX_BUCKET_COUNT)


def normalize_report_request(period: str | None, count: object) -> ReportRequest:
    return ReportRequest(period=normalize_period(period), count=normalize_count(count))


def parse_iso_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def format_date(value: date) -> str:
    return value.isoformat()


def add_days(value: date, days: int) -> date:
    return value + timedelta(days=days)


def week_start(value: date) -> date:
    # date.weekday() already maps Monday to 0 and Sunday to 6.
    return add_days(value, -value.weekday())


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_end(value: date) -> date:
    return shift_month(month_start(value), 1) - timedelta(days=1)


def bucket_start(value: date, period: str) -> date:
    if period == PERIOD_WEEK:
        return week_start(value)
    return month_start(value)


def bucket_key_for(value: date | str, period: str) -> str:
    """Return the key of the bucket that owns ``value``.

    Months are keyed ``YYYY-MM`` and weeks by their Monday as ``YYYY-MM-DD``.
    Both the planner and the aggregator derive keys through this function.
    """
    start = bucket_start(parse_iso_date(value), period)
    if period == PERIOD_WEEK:
        return format_date(start)
    return f"{start.year:04d}-{start.month:02d}"


def bucket_label(start: date, period: str) -> str:
    abbreviation = MONTH_ABBREVIATIONS[start.month - 1]
    if period == PERIOD_WEEK:
        return f"{abbreviation} {start.day:02d}"
    return f"{abbreviation} {start.year % 100:02d}"


def _step(value: date, period: str, steps: int) -> date:
    if period == PERIOD_WEEK:
        return add_days(value, steps * WEEK_DAYS)
    return shift_month(value, steps)


def plan_report(period: str | None, count: object, today: date) -> ReportPlan:
    request = normalize_report_request(period, count)
    newest = bucket_start(today, request.period)
    oldest = _step(newest, request.period, -(request.count - 1))

    buckets: list[ReportBucket] = []
    for index in range(request.count):
        current = _step(oldest, request.period, index)
        buckets.append(
            ReportBucket(
                key=bucket_key_for(current, request.period),
                label=bucket_label(current, request.period),
            )
        )

    if request.period == PERIOD_WEEK:
        range_end = add_days(newest, WEEK_DAYS - 1)
    else:
        range_end = month_end(newest)

    return ReportPlan(
        period=request.period,
        count=request.count,
        start=oldest,
        end=range_end,
        buckets=buckets,
    )


def aggregate_rows(plan: ReportPlan, rows: Iterable[ReportRow]) -> None:
    buckets_by_key = {bucket.key: bucket for bucket in plan.buckets}
    dropped = 0
    for row in rows:
        bucket = buckets_by_key.get(bucket_key_for(row.date, plan.period))
        if bucket is None:
            dropped += 1
            continue
        if row.type.strip().lower() == "income":
            bucket.income += _coerce_amount(row.amount)
        else:
            bucket.expense += _coerce_amount(row.amount)
    if dropped:
        logger.debug("Dropped %d rows outside %s..%s", dropped, plan.start, plan.end)


def build_report(
    fetch_rows: RowFetcher,
    period: str | None,
    count: object,
    today: date,
) -> ReportPlan:
    plan = plan_report(period, count, today)
    rows = fetch_rows(plan.start, plan.end)
    aggregate_rows(plan, rows)
    return plan


def _coerce_amount(amount: Decimal | float | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
