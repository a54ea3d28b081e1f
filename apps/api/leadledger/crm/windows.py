from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from leadledger.core.config import get_settings
from leadledger.errors import ValidationError


class TimeWindow(StrEnum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    CUSTOM = "custom"


class ReportPeriod(StrEnum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True, slots=True)
class DateRange:
    """Half-open UTC range ``[start, end)``. A missing bound is unbounded."""

    start: datetime | None = None
    end: datetime | None = None

    def contains(self, moment: datetime) -> bool:
        moment = as_utc(moment)
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment >= self.end:
            return False
        return True


def resolve_timezone(name: str | None = None) -> ZoneInfo:
    tz_name = name or get_settings().business_timezone
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"unknown timezone '{tz_name}'", details={"field": "timezone"}) from exc


def as_utc(moment: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""

    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _localize(moment: datetime, tz: ZoneInfo) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


def start_of_day(moment: datetime, tz: ZoneInfo) -> datetime:
    local = _localize(moment, tz)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(moment: datetime, tz: ZoneInfo) -> datetime:
    day = start_of_day(moment, tz)
    return day - timedelta(days=day.weekday())


def start_of_month(moment: datetime, tz: ZoneInfo) -> datetime:
    return start_of_day(moment, tz).replace(day=1)


def _to_utc(local: datetime) -> datetime:
    return local.astimezone(timezone.utc)


def resolve_window(
    window: TimeWindow | str,
    *,
    now: datetime | None = None,
    tz_name: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> DateRange:
    """Turn a named window into a UTC range.

    ``day`` starts at local midnight, ``week`` at Monday 00:00 and ``month`` on the
    first of the month, all in the business timezone and open-ended up to now.
    ``custom`` takes explicit bounds; naive bounds are read as business-local time
    and ``end`` is inclusive.
    """

    try:
        window = TimeWindow(window)
    except ValueError as exc:
        raise ValidationError(
            f"unknown time window '{window}'",
            details={"allowed": [item.value for item in TimeWindow]},
        ) from exc

    tz = resolve_timezone(tz_name)
    current = now or datetime.now(timezone.utc)

    if window is TimeWindow.DAY:
        return DateRange(start=_to_utc(start_of_day(current, tz)))
    if window is TimeWindow.WEEK:
        return DateRange(start=_to_utc(start_of_week(current, tz)))
    if window is TimeWindow.MONTH:
        return DateRange(start=_to_utc(start_of_month(current, tz)))

    return custom_range(start, end, tz_name=tz_name)


def custom_range(
    start: datetime | None,
    end: datetime | None,
    *,
    tz_name: str | None = None,
) -> DateRange:
    if start is None or end is None:
        raise ValidationError("custom window requires both start and end", details={"fields": ["start", "end"]})

    tz = resolve_timezone(tz_name)
    start_utc = _localize(start, tz).astimezone(timezone.utc)
    end_local = _localize(end, tz)
    if end_local.hour == 0 and end_local.minute == 0 and end_local.second == 0 and end_local.microsecond == 0:
        # A bare date as the end bound covers that whole day.
        end_local = end_local + timedelta(days=1)
    else:
        end_local = end_local + timedelta(microseconds=1)
    end_utc = end_local.astimezone(timezone.utc)

    if start_utc >= end_utc:
        raise ValidationError("start must not be after end", details={"fields": ["start", "end"]})
    return DateRange(start=start_utc, end=end_utc)


def bucket_key(moment: datetime, period: ReportPeriod | str, tz: ZoneInfo) -> str:
    """Label a timestamp with its reporting bucket in business-local time."""

    local = as_utc(moment).astimezone(tz)
    period = ReportPeriod(period)
    if period is ReportPeriod.DAY:
        return local.strftime("%Y-%m-%d")
    if period is ReportPeriod.WEEK:
        iso_year, iso_week, _ = local.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return local.strftime("%Y-%m")
