"""Codec between local Task rows and the flat per-task remote document.

Document shape (camelCase keys, ISO-8601 UTC timestamps):

    {"id", "title", "rawInput", "hasSpecificTime", "isCompleted",
     "createdAt", "updatedAt", "sortOrder",
     "scheduledDate"?, "completedAt"?, "recurrenceData"?}

`recurrenceData` carries RecurrenceRule.encode() verbatim.
"""
from datetime import datetime
from typing import Any, NamedTuple, Optional
import logging
import uuid

from .models import Task
from .recurrence import RecurrenceRule
from .utils import parse_iso, to_iso

logger = logging.getLogger(__name__)


class DocumentDecodeError(ValueError):
    """A remote document is missing its id or carries malformed fields."""

    def __init__(self, doc_id, reason: str):
        super().__init__(f'cannot decode document {doc_id!r}: {reason}')
        self.doc_id = doc_id
        self.reason = reason


class DecodedDocument(NamedTuple):
    id: uuid.UUID
    # Remote modification stamp; None when the document carries none, in
    # which case it never wins a conflict.
    updated_at: Optional[datetime]
    # Task attribute name -> value, covering the full remote field set
    fields: dict[str, Any]


def task_to_document(task: Task) -> dict[str, Any]:
    doc: dict[str, Any] = {
        'id': str(task.id),
        'title': task.title,
        'rawInput': task.raw_input,
        'hasSpecificTime': task.has_specific_time,
        'isCompleted': task.is_completed,
        'createdAt': to_iso(task.created_at),
        'updatedAt': to_iso(task.updated_at),
        'sortOrder': task.sort_order,
    }
    if task.scheduled_date is not None:
        doc['scheduledDate'] = to_iso(task.scheduled_date)
    if task.completed_at is not None:
        doc['completedAt'] = to_iso(task.completed_at)
    if task.recurrence_data:
        doc['recurrenceData'] = task.recurrence_data
    return doc


def _timestamp(data: dict, key: str, doc_id) -> Optional[datetime]:
    try:
        return parse_iso(data.get(key))
    except ValueError:
        raise DocumentDecodeError(doc_id, f'bad {key} timestamp {data.get(key)!r}') from None


def decode_document(data: dict[str, Any], doc_id: Optional[str] = None) -> DecodedDocument:
    """Validate a remote document.

    The embedded `id` is required. `doc_id` is the key the document is
    stored under; when given it must agree with the embedded id.
    """
    if not isinstance(data, dict):
        raise DocumentDecodeError(doc_id, 'document is not an object')
    raw_id = data.get('id')
    if not raw_id:
        raise DocumentDecodeError(doc_id, 'missing id')
    try:
        task_id = uuid.UUID(str(raw_id))
    except ValueError:
        raise DocumentDecodeError(raw_id, 'id is not a UUID') from None
    if doc_id is not None and str(raw_id).lower() != str(doc_id).lower():
        raise DocumentDecodeError(doc_id, f'embedded id {raw_id!r} does not match key')

    recurrence_data = data.get('recurrenceData')
    if recurrence_data is not None:
        try:
            RecurrenceRule.decode(recurrence_data)
        except ValueError:
            raise DocumentDecodeError(raw_id, 'unreadable recurrenceData') from None

    sort_order = data.get('sortOrder')
    if sort_order is not None and (isinstance(sort_order, bool) or not isinstance(sort_order, int)):
        raise DocumentDecodeError(raw_id, f'sortOrder must be an integer, got {sort_order!r}')

    updated_at = _timestamp(data, 'updatedAt', raw_id)
    fields: dict[str, Any] = {
        'title': str(data.get('title') or ''),
        'raw_input': str(data.get('rawInput') or ''),
        'has_specific_time': bool(data.get('hasSpecificTime', False)),
        'is_completed': bool(data.get('isCompleted', False)),
        'scheduled_date': _timestamp(data, 'scheduledDate', raw_id),
        'completed_at': _timestamp(data, 'completedAt', raw_id),
        'recurrence_data': recurrence_data,
    }
    created_at = _timestamp(data, 'createdAt', raw_id)
    if created_at is not None:
        fields['created_at'] = created_at
    if updated_at is not None:
        fields['updated_at'] = updated_at
    if sort_order is not None:
        fields['sort_order'] = sort_order
    return DecodedDocument(task_id, updated_at, fields)


def apply_document(task: Task, decoded: DecodedDocument) -> Task:
    """Overwrite a local task with the remote field set. The id is kept."""
    for name, value in decoded.fields.items():
        setattr(task, name, value)
    return task


def task_from_document(decoded: DecodedDocument) -> Task:
    task = Task(id=decoded.id)
    return apply_document(task, decoded)
