"""Recurrence rules: a fixed frequency + interval, optionally pinned to a set
of weekdays, and the calendar arithmetic that rolls a task forward.

Weekday codes follow the 1=Sunday .. 7=Saturday convention used by the
remote documents, so a rule decoded from any client compares equal.
"""
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Optional
import logging

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .utils import as_utc, weekday_code

logger = logging.getLogger(__name__)

SUNDAY, MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY, SATURDAY = range(1, 8)

WEEKDAY_NAMES = {
    SUNDAY: 'Sunday',
    MONDAY: 'Monday',
    TUESDAY: 'Tuesday',
    WEDNESDAY: 'Wednesday',
    THURSDAY: 'Thursday',
    FRIDAY: 'Friday',
    SATURDAY: 'Saturday',
}

# RFC-5545 BYDAY tokens, listed Monday first as calendar apps emit them
RRULE_DAYS = {
    MONDAY: 'MO',
    TUESDAY: 'TU',
    WEDNESDAY: 'WE',
    THURSDAY: 'TH',
    FRIDAY: 'FR',
    SATURDAY: 'SA',
    SUNDAY: 'SU',
}

WEEKDAY_SET = frozenset({MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY})
WEEKEND_SET = frozenset({SATURDAY, SUNDAY})

# explicit-days scan never needs more than a week; two weeks is the hard cap
WEEKLY_SCAN_DAYS = 14


class Frequency(str, Enum):
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    YEARLY = 'yearly'


class RecurrenceRule(BaseModel):
    """Immutable repeat pattern.

    `days_of_week` only matters for weekly rules; when it is empty or None a
    weekly rule repeats on the anchor's own weekday every `interval` weeks.
    `end_date` of None means the series never ends.
    """
    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    days_of_week: Optional[frozenset[int]] = None
    end_date: Optional[datetime] = None

    @field_validator('days_of_week')
    @classmethod
    def _check_days(cls, v):
        if v is None:
            return v
        for d in v:
            if not 1 <= d <= 7:
                raise ValueError(f'weekday code out of range: {d}')
        return frozenset(v)

    @field_serializer('days_of_week')
    def _dump_days(self, v):
        return sorted(v) if v is not None else None

    # --- presets ---

    @classmethod
    def daily(cls) -> 'RecurrenceRule':
        return cls(frequency=Frequency.DAILY)

    @classmethod
    def weekdays(cls) -> 'RecurrenceRule':
        return cls(frequency=Frequency.WEEKLY, days_of_week=WEEKDAY_SET)

    @classmethod
    def weekends(cls) -> 'RecurrenceRule':
        return cls(frequency=Frequency.WEEKLY, days_of_week=WEEKEND_SET)

    @classmethod
    def weekly(cls) -> 'RecurrenceRule':
        return cls(frequency=Frequency.WEEKLY)

    @classmethod
    def biweekly(cls) -> 'RecurrenceRule':
        return cls(frequency=Frequency.WEEKLY, interval=2)

    @classmethod
    def monthly(cls) -> 'RecurrenceRule':
        return cls(frequency=Frequency.MONTHLY)

    @classmethod
    def yearly(cls) -> 'RecurrenceRule':
        return cls(frequency=Frequency.YEARLY)

    @classmethod
    def every(cls, weekday: int) -> 'RecurrenceRule':
        return cls(frequency=Frequency.WEEKLY, days_of_week=frozenset({weekday}))

    # --- computed ---

    @property
    def display_name(self) -> str:
        if self.days_of_week == WEEKDAY_SET:
            return 'Weekdays'
        if self.days_of_week == WEEKEND_SET:
            return 'Weekends'
        n = self.interval
        if self.frequency == Frequency.DAILY:
            return 'Daily' if n == 1 else f'Every {n} days'
        if self.frequency == Frequency.WEEKLY:
            if self.days_of_week and len(self.days_of_week) == 1:
                (day,) = self.days_of_week
                return f'Every {WEEKDAY_NAMES[day]}'
            return 'Weekly' if n == 1 else f'Every {n} weeks'
        if self.frequency == Frequency.MONTHLY:
            return 'Monthly' if n == 1 else f'Every {n} months'
        return 'Yearly' if n == 1 else f'Every {n} years'

    def next_occurrence(self, after: datetime, tz: tzinfo | None = None) -> datetime:
        """Return the first occurrence strictly after `after`.

        Arithmetic runs on the wall clock of `tz` (or of `after` itself when
        `tz` is None). Never raises: if the calendar cannot produce a date the
        input instant is returned unchanged.
        """
        try:
            base = after.astimezone(tz) if tz is not None else after
            if self.frequency == Frequency.DAILY:
                return base + relativedelta(days=self.interval)
            if self.frequency == Frequency.WEEKLY:
                if self.days_of_week:
                    candidate = base + timedelta(days=1)
                    for _ in range(WEEKLY_SCAN_DAYS):
                        if weekday_code(candidate) in self.days_of_week:
                            return candidate
                        candidate += timedelta(days=1)
                    return base + timedelta(days=WEEKLY_SCAN_DAYS)
                return base + relativedelta(weeks=self.interval)
            if self.frequency == Frequency.MONTHLY:
                # relativedelta clamps Jan 31 + 1 month to the end of February
                return base + relativedelta(months=self.interval)
            return base + relativedelta(years=self.interval)
        except (OverflowError, ValueError):
            logger.warning('next_occurrence failed for %s after %s; keeping anchor', self.display_name, after)
            return after

    def is_past_end(self, instant: datetime) -> bool:
        """True when the series has an end date and `instant` lies beyond it."""
        if self.end_date is None:
            return False
        return as_utc(instant) > as_utc(self.end_date)

    def to_rrule_string(self) -> str:
        """Export as an RFC-5545 RRULE value (no leading 'RRULE:')."""
        parts = [f'FREQ={self.frequency.value.upper()}']
        if self.interval != 1:
            parts.append(f'INTERVAL={self.interval}')
        if self.days_of_week and self.frequency == Frequency.WEEKLY:
            ordered = [tok for code, tok in RRULE_DAYS.items() if code in self.days_of_week]
            parts.append('BYDAY=' + ','.join(ordered))
        if self.end_date is not None:
            parts.append('UNTIL=' + as_utc(self.end_date).strftime('%Y%m%dT%H%M%SZ'))
        return ';'.join(parts)

    # --- blob codec ---

    def encode(self) -> str:
        """Self-describing JSON blob; `decode` restores an equal rule."""
        return self.model_dump_json()

    @classmethod
    def decode(cls, blob: str | bytes) -> 'RecurrenceRule':
        """Inverse of `encode`. Raises ValueError on malformed input."""
        return cls.model_validate_json(blob)
