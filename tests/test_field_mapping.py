"""Tests for the per-entity field mapping."""

import pytest
from datetime import datetime, timedelta

import pytz

from aqademiq_sync.exceptions import EventValidationError
from aqademiq_sync.field_mapping import (
    PRIVATE_ID_KEY, PRIVATE_TYPE_KEY, deserialize_fields, infer_entity_type,
    local_to_remote_body, remote_to_local_fields, serialize_fields, validate_merge_payload
)
from aqademiq_sync.models import EntityType, parse_remote_event

from fakes import T0, event_payload


@pytest.mark.parametrize("description, extended, expected", [
    (None, None, EntityType.ASSIGNMENT),
    ("Chapter 4 #exam", None, EntityType.EXAM),
    ("Weekly lecture #class", None, EntityType.SCHEDULE_BLOCK),
    ("#class", {'private': {PRIVATE_TYPE_KEY: 'exam'}}, EntityType.EXAM),
    ("plain", {'private': {PRIVATE_TYPE_KEY: 'bogus'}}, EntityType.ASSIGNMENT),
])
def test_infer_entity_type(description, extended, expected):
    extra = {'extendedProperties': extended} if extended else {}
    event = parse_remote_event(event_payload('evt-1', description=description, **extra))

    assert infer_entity_type(event) == expected


def test_remote_to_local_fields_per_type():
    event = parse_remote_event(event_payload(
        'evt-1', summary='Physics final', description='Formula sheet allowed',
        location='Hall B', minutes=90
    ))

    block = remote_to_local_fields(EntityType.SCHEDULE_BLOCK, event)
    assignment = remote_to_local_fields(EntityType.ASSIGNMENT, event)
    exam = remote_to_local_fields(EntityType.EXAM, event)

    assert block == {
        'title': 'Physics final',
        'description': 'Formula sheet allowed',
        'location': 'Hall B',
        'start_time': event.start,
        'end_time': event.end,
    }
    assert assignment == {
        'title': 'Physics final',
        'description': 'Formula sheet allowed',
        'due_date': event.start,
    }
    assert exam == {
        'title': 'Physics final',
        'location': 'Hall B',
        'notes': 'Formula sheet allowed',
        'exam_date': event.start,
        'duration_minutes': 90,
    }


def test_assignment_body_is_a_block_at_the_due_date():
    due = datetime(2024, 3, 8, 23, 59, tzinfo=pytz.UTC)

    body = local_to_remote_body(
        EntityType.ASSIGNMENT, 'a-1', {'title': 'Essay', 'description': None, 'due_date': due},
        'America/New_York', assignment_block_minutes=45
    )

    start = parse_remote_event(dict(body, id='x', updated=T0.isoformat()))
    assert start.start == due
    assert start.end == due + timedelta(minutes=45)
    assert body['start']['timeZone'] == 'America/New_York'
    assert body['colorId'] == '4'
    assert body['description'] == ''
    assert 'location' not in body
    assert body['extendedProperties']['private'] == {
        PRIVATE_TYPE_KEY: 'assignment',
        PRIVATE_ID_KEY: 'a-1',
    }


def test_exam_body_uses_duration_and_notes():
    exam_date = datetime(2024, 3, 8, 14, 0, tzinfo=pytz.UTC)

    body = local_to_remote_body(
        EntityType.EXAM, 'e-1',
        {'title': 'Midterm', 'location': 'Gym', 'notes': 'Bring ID', 'exam_date': exam_date, 'duration_minutes': 120},
        'UTC'
    )

    assert body['end']['dateTime'] == (exam_date + timedelta(minutes=120)).isoformat()
    assert body['description'] == 'Bring ID'
    assert body['location'] == 'Gym'
    assert body['colorId'] == '11'


def test_exam_body_falls_back_to_default_duration():
    exam_date = datetime(2024, 3, 8, 14, 0, tzinfo=pytz.UTC)

    body = local_to_remote_body(
        EntityType.EXAM, 'e-1', {'title': 'Quiz', 'exam_date': exam_date, 'duration_minutes': None},
        'UTC', default_exam_minutes=30
    )

    assert body['end']['dateTime'] == (exam_date + timedelta(minutes=30)).isoformat()


def test_body_without_date_is_rejected():
    with pytest.raises(EventValidationError, match="no date"):
        local_to_remote_body(EntityType.ASSIGNMENT, 'a-1', {'title': 'Essay', 'due_date': None}, 'UTC')


class TestValidateMergePayload:

    def test_coerces_values(self):
        payload = validate_merge_payload(EntityType.EXAM, {
            'title': 'Final',
            'exam_date': '2024-05-01T09:00:00Z',
            'duration_minutes': '90',
        })

        assert payload == {
            'title': 'Final',
            'exam_date': datetime(2024, 5, 1, 9, 0, tzinfo=pytz.UTC),
            'duration_minutes': 90,
        }

    def test_unknown_field_rejected(self):
        with pytest.raises(EventValidationError, match="due_date"):
            validate_merge_payload(EntityType.SCHEDULE_BLOCK, {'title': 'x', 'due_date': '2024-05-01T09:00:00Z'})

    def test_empty_payload_rejected(self):
        with pytest.raises(EventValidationError):
            validate_merge_payload(EntityType.ASSIGNMENT, {})

    def test_bad_datetime_rejected(self):
        with pytest.raises(EventValidationError, match="due_date"):
            validate_merge_payload(EntityType.ASSIGNMENT, {'due_date': 'next tuesday'})

    def test_bool_is_not_an_integer(self):
        with pytest.raises(EventValidationError):
            validate_merge_payload(EntityType.EXAM, {'duration_minutes': True})


def test_serialized_snapshot_reads_back():
    fields = {
        'title': 'Essay',
        'due_date': datetime(2024, 3, 8, 23, 59, tzinfo=pytz.UTC),
        'estimated_hours': 2.5,
        'is_completed': False,
    }

    restored = deserialize_fields(EntityType.ASSIGNMENT, serialize_fields(fields))

    assert restored == fields
