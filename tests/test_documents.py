import uuid
from datetime import datetime, timezone

import pytest

from quicktodo.documents import (
    DocumentDecodeError, apply_document, decode_document, task_from_document, task_to_document,
)
from quicktodo.models import Task
from quicktodo.recurrence import RecurrenceRule

UTC = timezone.utc
T0 = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)


def sample_task(**kw):
    fields = dict(title='Pay rent', raw_input='pay rent monthly', created_at=T0, updated_at=T0, sort_order=42)
    fields.update(kw)
    return Task(**fields)


def test_document_shape():
    task = sample_task(scheduled_date=datetime(2025, 2, 1, 9, 0, tzinfo=UTC), has_specific_time=True)
    task.set_recurrence_rule(RecurrenceRule.monthly())
    doc = task_to_document(task)
    assert doc['id'] == str(task.id)
    assert doc['title'] == 'Pay rent'
    assert doc['rawInput'] == 'pay rent monthly'
    assert doc['hasSpecificTime'] is True
    assert doc['isCompleted'] is False
    assert doc['createdAt'] == '2025-01-15T10:00:00Z'
    assert doc['updatedAt'] == '2025-01-15T10:00:00Z'
    assert doc['scheduledDate'] == '2025-02-01T09:00:00Z'
    assert doc['sortOrder'] == 42
    assert RecurrenceRule.decode(doc['recurrenceData']) == RecurrenceRule.monthly()
    assert 'completedAt' not in doc


def test_optional_fields_are_omitted():
    doc = task_to_document(sample_task())
    for key in ('scheduledDate', 'completedAt', 'recurrenceData'):
        assert key not in doc


def test_decoded_document_rebuilds_the_task():
    original = sample_task(scheduled_date=datetime(2025, 2, 1, 9, 0, tzinfo=UTC), is_completed=True, completed_at=T0)
    original.set_recurrence_rule(RecurrenceRule.weekdays())
    decoded = decode_document(task_to_document(original), str(original.id))
    rebuilt = task_from_document(decoded)
    assert rebuilt.id == original.id
    for name in ('title', 'raw_input', 'scheduled_date', 'has_specific_time', 'is_completed',
                 'completed_at', 'created_at', 'updated_at', 'sort_order'):
        assert getattr(rebuilt, name) == getattr(original, name), name
    assert rebuilt.recurrence_rule == RecurrenceRule.weekdays()


def test_key_alone_does_not_supply_the_id():
    tid = uuid.uuid4()
    with pytest.raises(DocumentDecodeError, match='missing id'):
        decode_document({'title': 'x', 'updatedAt': '2025-01-15T10:00:00Z'}, str(tid))
    decoded = decode_document({'id': str(tid).upper(), 'title': 'x'}, str(tid))
    assert decoded.id == tid


def test_missing_updated_at_is_none():
    decoded = decode_document({'id': str(uuid.uuid4()), 'title': 'x'})
    assert decoded.updated_at is None
    assert 'updated_at' not in decoded.fields


def test_apply_document_clears_absent_optionals():
    task = sample_task(scheduled_date=T0, has_specific_time=True, completed_at=T0, is_completed=True)
    task.set_recurrence_rule(RecurrenceRule.daily())
    doc = {'id': str(task.id), 'title': 'Renamed', 'updatedAt': '2025-01-16T00:00:00Z'}
    apply_document(task, decode_document(doc))
    assert task.title == 'Renamed'
    assert task.scheduled_date is None
    assert task.completed_at is None
    assert task.recurrence_data is None
    assert task.is_completed is False
    # absent sortOrder/createdAt keep the local value
    assert task.sort_order == 42
    assert task.created_at == T0


@pytest.mark.parametrize('data, key', [
    ({'title': 'no id'}, None),
    ({'id': 'not-a-uuid'}, None),
    ({'id': str(uuid.UUID(int=1)), 'updatedAt': 'yesterday'}, None),
    ({'id': str(uuid.UUID(int=1)), 'scheduledDate': 12}, None),
    ({'id': str(uuid.UUID(int=1)), 'recurrenceData': '{"frequency": "hourly"}'}, None),
    ({'id': str(uuid.UUID(int=1)), 'sortOrder': 'first'}, None),
    ({'id': str(uuid.UUID(int=1))}, str(uuid.UUID(int=2))),
    ('not a dict', 'abc'),
])
def test_malformed_documents(data, key):
    with pytest.raises(DocumentDecodeError):
        decode_document(data, key)


def test_decode_error_is_a_value_error():
    assert issubclass(DocumentDecodeError, ValueError)
