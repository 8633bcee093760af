"""Task lifecycle: construction from parsed input, completion (with
recurrence roll-forward), edits, manual reordering and the date-bucketed
views used by the today / upcoming listings.

All functions take the current instant explicitly so callers (and tests)
control the clock.
"""
from datetime import datetime, timedelta, tzinfo
from typing import Iterable, Optional
import logging

from .models import ParsedInput, Task
from .utils import as_local, epoch_millis, start_of_tomorrow

logger = logging.getLogger(__name__)

# Sentinel so edit_task can tell "leave unchanged" apart from "clear to None".
UNSET = object()

UPCOMING_TOMORROW = 'Tomorrow'
UPCOMING_THIS_WEEK = 'This Week'
UPCOMING_LATER = 'Later'


def task_from_parsed(parsed: ParsedInput, raw_input: str, now: datetime) -> Task:
    task = Task(
        title=parsed.title,
        raw_input=raw_input,
        scheduled_date=parsed.scheduled_date,
        has_specific_time=parsed.has_specific_time,
        created_at=now,
        updated_at=now,
        sort_order=epoch_millis(now),
    )
    task.set_recurrence_rule(parsed.recurrence_rule)
    return task


def complete_task(task: Task, now: datetime, tz: Optional[tzinfo] = None) -> Task:
    """Mark a task done.

    A recurring task with a date is not left completed: it rolls forward to
    the rule's next occurrence after its current date and is reopened in the
    same step. When the rule has an end date and the next occurrence lies
    beyond it the series is over and the task stays completed.
    """
    task.is_completed = True
    task.completed_at = now
    task.updated_at = now

    rule = task.recurrence_rule
    if rule is not None and task.scheduled_date is not None:
        # roll forward on the local wall clock so "daily at 9am" stays at 9am
        current = as_local(task.scheduled_date, tz)
        nxt = rule.next_occurrence(current)
        if rule.is_past_end(nxt):
            logger.info('recurring task %s reached the end of its series', task.id)
            return task
        task.scheduled_date = nxt
        task.is_completed = False
        task.completed_at = None
    return task


def uncomplete_task(task: Task, now: datetime) -> Task:
    task.is_completed = False
    task.completed_at = None
    task.updated_at = now
    return task


def toggle_task(task: Task, now: datetime, tz: Optional[tzinfo] = None) -> Task:
    if task.is_completed:
        return uncomplete_task(task, now)
    return complete_task(task, now, tz)


def edit_task(
    task: Task,
    now: datetime,
    title=UNSET,
    scheduled_date=UNSET,
    has_specific_time=UNSET,
    recurrence_rule=UNSET,
) -> Task:
    """Apply an edit; fields left as UNSET are untouched, None clears."""
    if title is not UNSET:
        task.title = (title or '').strip()
    if scheduled_date is not UNSET:
        task.scheduled_date = scheduled_date
        if scheduled_date is None:
            task.has_specific_time = False
    if has_specific_time is not UNSET:
        task.has_specific_time = bool(has_specific_time) and task.scheduled_date is not None
    if recurrence_rule is not UNSET:
        task.set_recurrence_rule(recurrence_rule)
    task.updated_at = now
    return task


def reorder_tasks(visible: list[Task], source: Task, destination: Task, now: Optional[datetime] = None) -> list[Task]:
    """Move `source` into `destination`'s slot within the visible list.

    Adjacent tasks simply swap sort orders. For longer moves the tasks
    between the two slide one place towards where the source came from; the
    set of sort-order values in that window is reused, so tasks outside it
    keep their relative position. Returns the tasks whose sort order changed.
    """
    if source.id == destination.id:
        return []
    ids = [t.id for t in visible]
    try:
        src_idx = ids.index(source.id)
        dst_idx = ids.index(destination.id)
    except ValueError:
        return []

    lo, hi = sorted((src_idx, dst_idx))
    window = visible[lo:hi + 1]
    orders = [t.sort_order for t in window]
    moved = [t for t in window if t.id != source.id]
    moved.insert(dst_idx - lo, source)

    changed = []
    for task, order in zip(moved, orders):
        if task.sort_order != order:
            task.sort_order = order
            if now is not None:
                task.updated_at = now
            changed.append(task)
    return changed


def today_tasks(tasks: Iterable[Task], now: datetime) -> list[Task]:
    """Inbox items plus anything due today or overdue."""
    cutoff = start_of_tomorrow(now)
    return [t for t in tasks if t.scheduled_date is None or t.scheduled_date < cutoff]


def upcoming_groups(tasks: Iterable[Task], now: datetime) -> list[tuple[str, list[Task]]]:
    """Future-dated tasks bucketed as Tomorrow / This Week / Later.

    Empty buckets are omitted; order within a bucket follows the input.
    """
    tomorrow_start = start_of_tomorrow(now)
    day_after = tomorrow_start + timedelta(days=1)
    week_end = now + timedelta(days=7)
    buckets: dict[str, list[Task]] = {UPCOMING_TOMORROW: [], UPCOMING_THIS_WEEK: [], UPCOMING_LATER: []}
    for t in tasks:
        when = t.scheduled_date
        if when is None or when < tomorrow_start:
            continue
        if when < day_after:
            buckets[UPCOMING_TOMORROW].append(t)
        elif when < week_end:
            buckets[UPCOMING_THIS_WEEK].append(t)
        else:
            buckets[UPCOMING_LATER].append(t)
    return [(name, items) for name, items in buckets.items() if items]


def _clock(dt: datetime) -> str:
    return dt.strftime('%I:%M %p').lstrip('0')


def display_date(task: Task, now: datetime) -> Optional[str]:
    """Short human label for a task's date, relative to `now`'s calendar day."""
    if task.scheduled_date is None:
        return None
    when = as_local(task.scheduled_date, now.tzinfo)
    today = now.date()
    if when.date() == today:
        return _clock(when) if task.has_specific_time else 'Today'
    if when.date() == today + timedelta(days=1):
        return f'Tomorrow {_clock(when)}' if task.has_specific_time else 'Tomorrow'
    label = f'{when:%b} {when.day}'
    if task.has_specific_time:
        label += f', {_clock(when)}'
    return label
