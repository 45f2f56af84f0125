"""Per-entity field mapping between local academic records and remote events."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from dateutil.parser import isoparse
import pytz

from .exceptions import EventValidationError
from .models import EntityType, RemoteEvent, ensure_timezone_aware


PRIVATE_TYPE_KEY = "aqademiqEntityType"
PRIVATE_ID_KEY = "aqademiqEntityId"

# Google Calendar colour ids per entity type
COLOR_IDS = {
    EntityType.SCHEDULE_BLOCK: "1",
    EntityType.ASSIGNMENT: "4",
    EntityType.EXAM: "11",
}

# Syncable fields and their value types, per entity type
ENTITY_FIELDS: Dict[EntityType, Dict[str, type]] = {
    EntityType.SCHEDULE_BLOCK: {
        'title': str,
        'description': str,
        'location': str,
        'start_time': datetime,
        'end_time': datetime,
    },
    EntityType.ASSIGNMENT: {
        'title': str,
        'description': str,
        'due_date': datetime,
    },
    EntityType.EXAM: {
        'title': str,
        'location': str,
        'notes': str,
        'exam_date': datetime,
        'duration_minutes': int,
    },
}

# Extra columns included in snapshots but never overwritten from the remote side
SNAPSHOT_EXTRA_FIELDS: Dict[EntityType, Dict[str, type]] = {
    EntityType.SCHEDULE_BLOCK: {'is_active': bool},
    EntityType.ASSIGNMENT: {'estimated_hours': float, 'is_completed': bool},
    EntityType.EXAM: {'exam_type': str},
}


def infer_entity_type(event: RemoteEvent) -> EntityType:
    """Pick the local entity type for a remote event with no mapping.

    Events we exported carry the type as a private extended property. Otherwise
    ``#exam`` and ``#class`` tags in the description decide, defaulting to an
    assignment.
    """
    tagged = event.private_properties.get(PRIVATE_TYPE_KEY)
    if tagged:
        try:
            return EntityType(tagged)
        except ValueError:
            pass

    description = event.description or ''
    if '#exam' in description:
        return EntityType.EXAM
    if '#class' in description:
        return EntityType.SCHEDULE_BLOCK
    return EntityType.ASSIGNMENT


def remote_to_local_fields(entity_type: EntityType, event: RemoteEvent) -> Dict[str, Any]:
    """Map remote event fields onto the local entity's columns."""
    if entity_type == EntityType.SCHEDULE_BLOCK:
        return {
            'title': event.summary,
            'description': event.description,
            'location': event.location,
            'start_time': event.start,
            'end_time': event.end,
        }
    if entity_type == EntityType.ASSIGNMENT:
        return {
            'title': event.summary,
            'description': event.description,
            'due_date': event.start,
        }
    if entity_type == EntityType.EXAM:
        return {
            'title': event.summary,
            'location': event.location,
            'notes': event.description,
            'exam_date': event.start,
            'duration_minutes': int((event.end - event.start).total_seconds() // 60),
        }
    raise ValueError(f"Unsupported entity type: {entity_type}")


def _format_time(dt: datetime, timezone: str) -> Dict[str, str]:
    tz = pytz.timezone(timezone)
    return {
        'dateTime': ensure_timezone_aware(dt).astimezone(tz).isoformat(),
        'timeZone': timezone,
    }


def local_to_remote_body(
    entity_type: EntityType,
    entity_id: str,
    fields: Dict[str, Any],
    timezone: str,
    assignment_block_minutes: int = 60,
    default_exam_minutes: int = 60,
) -> Dict[str, Any]:
    """Build a Google Calendar event body from local entity fields.

    Raises:
        EventValidationError: If the entity has no usable date.
    """
    if entity_type == EntityType.SCHEDULE_BLOCK:
        start = fields.get('start_time')
        end = fields.get('end_time') or start
        description = fields.get('description')
    elif entity_type == EntityType.ASSIGNMENT:
        start = fields.get('due_date')
        end = start + timedelta(minutes=assignment_block_minutes) if start else None
        description = fields.get('description')
    elif entity_type == EntityType.EXAM:
        start = fields.get('exam_date')
        minutes = fields.get('duration_minutes') or default_exam_minutes
        end = start + timedelta(minutes=minutes) if start else None
        description = fields.get('notes')
    else:
        raise ValueError(f"Unsupported entity type: {entity_type}")

    if start is None:
        raise EventValidationError(f"{entity_type.value} {entity_id} has no date to export")

    body: Dict[str, Any] = {
        'summary': fields.get('title') or '',
        'description': description or '',
        'start': _format_time(start, timezone),
        'end': _format_time(end, timezone),
        'colorId': COLOR_IDS[entity_type],
        'extendedProperties': {
            'private': {
                PRIVATE_TYPE_KEY: entity_type.value,
                PRIVATE_ID_KEY: str(entity_id),
            }
        },
    }
    location = fields.get('location')
    if location:
        body['location'] = location
    return body


def _coerce(name: str, value: Any, expected: type) -> Any:
    if value is None:
        return None
    if expected is datetime:
        if isinstance(value, datetime):
            return ensure_timezone_aware(value)
        if isinstance(value, str):
            try:
                return ensure_timezone_aware(isoparse(value))
            except ValueError as e:
                raise EventValidationError(f"Field '{name}' is not a valid datetime: {value!r}") from e
        raise EventValidationError(f"Field '{name}' must be a datetime, got {type(value).__name__}")
    if expected is int:
        if isinstance(value, bool):
            raise EventValidationError(f"Field '{name}' must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise EventValidationError(f"Field '{name}' must be an integer, got {value!r}") from e
    if expected is float:
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise EventValidationError(f"Field '{name}' must be a number, got {value!r}") from e
    if expected is bool:
        return bool(value)
    return str(value)


def validate_merge_payload(entity_type: EntityType, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Check a caller-supplied merge payload against the entity's field table.

    Returns the payload with values coerced to their column types.

    Raises:
        EventValidationError: On unknown fields or uncoercible values.
    """
    if not isinstance(payload, dict) or not payload:
        raise EventValidationError("Merged payload must be a non-empty object")

    allowed = ENTITY_FIELDS[entity_type]
    unknown = sorted(set(payload) - set(allowed))
    if unknown:
        raise EventValidationError(
            f"Fields not valid for {entity_type.value}: {', '.join(unknown)}"
        )
    return {name: _coerce(name, value, allowed[name]) for name, value in payload.items()}


def serialize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of a field dict."""
    return {
        name: value.isoformat() if isinstance(value, datetime) else value
        for name, value in fields.items()
    }


def deserialize_fields(entity_type: EntityType, data: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of serialize_fields for a stored snapshot."""
    types = dict(ENTITY_FIELDS[entity_type])
    types.update(SNAPSHOT_EXTRA_FIELDS[entity_type])
    result = {}
    for name, value in data.items():
        expected: Optional[type] = types.get(name)
        result[name] = _coerce(name, value, expected) if expected else value
    return result
