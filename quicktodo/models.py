from typing import Optional
from datetime import datetime, timezone
import logging
import uuid

from pydantic import BaseModel
from sqlalchemy import BigInteger, Column, DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field

from .recurrence import RecurrenceRule
from .utils import as_utc, epoch_millis, now_utc

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """DateTime column that always stores UTC and always returns aware values.

    SQLite has no timezone support, so values are written as naive UTC and
    tagged with UTC again on the way out.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ParsedInput(BaseModel):
    """Structured result of parsing a line of free text. Not persisted."""
    title: str = ''
    scheduled_date: Optional[datetime] = None
    has_specific_time: bool = False
    recurrence_rule: Optional[RecurrenceRule] = None


class Task(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    title: str = ''
    # Original user input, kept verbatim so the task can be re-parsed
    raw_input: str = ''
    # None means "inbox": no date at all
    scheduled_date: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime, nullable=True, index=True))
    # Distinguishes "tomorrow" from "tomorrow at 3pm"
    has_specific_time: bool = Field(default=False)
    # Encoded RecurrenceRule (see RecurrenceRule.encode)
    recurrence_data: Optional[str] = None
    is_completed: bool = Field(default=False, index=True)
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime, nullable=True))
    created_at: datetime = Field(default_factory=now_utc, sa_column=Column(UTCDateTime, nullable=False))
    updated_at: datetime = Field(default_factory=now_utc, sa_column=Column(UTCDateTime, nullable=False))
    # Manual ordering; defaults to the creation time in epoch milliseconds
    sort_order: int = Field(default_factory=lambda: epoch_millis(now_utc()), sa_column=Column(BigInteger, nullable=False, index=True))

    @property
    def recurrence_rule(self) -> Optional[RecurrenceRule]:
        if not self.recurrence_data:
            return None
        try:
            return RecurrenceRule.decode(self.recurrence_data)
        except ValueError:
            logger.warning('task %s has an unreadable recurrence blob; ignoring it', self.id)
            return None

    def set_recurrence_rule(self, rule: Optional[RecurrenceRule]) -> None:
        self.recurrence_data = rule.encode() if rule is not None else None

    @property
    def is_reminder(self) -> bool:
        return self.scheduled_date is not None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_rule is not None
