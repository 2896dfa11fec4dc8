"""Period keys for recurring task templates.

Instances are manufactured lazily: the first request inside a period creates
that period's instance, so every recurring type is always due for the current
period. The key identifies the period for de-duplication.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.config import settings
from app.models import RecurrenceType

ADHOC_PERIOD_KEY = 'ADHOC'


@dataclass(frozen=True)
class PeriodKey:
    value: str
    starts_at: datetime | None = None
    ends_at: datetime | None = None


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or settings.default_store_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo('UTC')


def resolve_recurrence_type(raw: RecurrenceType | str | None) -> RecurrenceType:
    if isinstance(raw, RecurrenceType):
        return raw
    value = (raw or '').strip().upper()
    try:
        return RecurrenceType(value)
    except ValueError:
        # "custom" and anything unrecognised are one-off; the pattern stays display text.
        return RecurrenceType.NONE


def _local_midnight(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def local_day_bounds(day: date, tz: ZoneInfo | str | None = None) -> tuple[datetime, datetime]:
    """UTC instants of midnight-to-midnight for a calendar day in the store timezone."""
    zone = tz if isinstance(tz, ZoneInfo) else resolve_timezone(tz)
    return _local_midnight(day, zone), _local_midnight(day + timedelta(days=1), zone)


def period_key_for(
    recurrence_type: RecurrenceType | str | None,
    reference_instant: datetime,
    tz: ZoneInfo | str | None = None,
) -> PeriodKey:
    kind = resolve_recurrence_type(recurrence_type)
    if kind == RecurrenceType.NONE:
        return PeriodKey(value=ADHOC_PERIOD_KEY)

    zone = tz if isinstance(tz, ZoneInfo) else resolve_timezone(tz)
    if reference_instant.tzinfo is None:
        reference_instant = reference_instant.replace(tzinfo=timezone.utc)
    local_day = reference_instant.astimezone(zone).date()

    if kind == RecurrenceType.DAILY:
        start = local_day
        end = local_day + timedelta(days=1)
        value = f'D:{local_day.isoformat()}'
    elif kind == RecurrenceType.WEEKLY:
        iso_year, iso_week, iso_weekday = local_day.isocalendar()
        start = local_day - timedelta(days=iso_weekday - 1)
        end = start + timedelta(days=7)
        value = f'W:{iso_year:04d}-W{iso_week:02d}'
    else:
        start = local_day.replace(day=1)
        end = date(start.year + 1, 1, 1) if start.month == 12 else date(start.year, start.month + 1, 1)
        value = f'M:{start.year:04d}-{start.month:02d}'

    return PeriodKey(value=value, starts_at=_local_midnight(start, zone), ends_at=_local_midnight(end, zone))


def is_due_at(recurrence_type: RecurrenceType | str | None, reference_instant: datetime) -> bool:
    # Lazy model: the current period is always due.
    return True


def is_instantiated_automatically(recurrence_type: RecurrenceType | str | None) -> bool:
    # One-off templates are issued only on explicit request, once per request.
    return resolve_recurrence_type(recurrence_type) != RecurrenceType.NONE
