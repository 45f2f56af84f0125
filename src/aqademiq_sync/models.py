"""Data models for calendar synchronization."""

import hashlib
import json
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from dateutil.parser import isoparse
from pydantic import BaseModel, Field, validator
import pytz

from .exceptions import EventValidationError


class EntityType(str, Enum):
    """Local academic entities eligible for calendar sync."""

    SCHEDULE_BLOCK = "schedule_block"
    ASSIGNMENT = "assignment"
    EXAM = "exam"


class SyncAction(str, Enum):
    """Outcome of classifying a remote event against its mapping."""

    CREATE_LOCAL = "create_local"
    UPDATE_LOCAL_FROM_REMOTE = "update_local_from_remote"
    UPDATE_REMOTE_FROM_LOCAL = "update_remote_from_local"
    CONFLICT = "conflict"
    NOOP = "noop"


class ResolutionStrategy(str, Enum):
    """Conflict resolution strategies chosen by the user."""

    PREFER_LOCAL = "prefer_local"
    PREFER_REMOTE = "prefer_google"
    MERGE = "merge"


class ConflictStatus(str, Enum):
    """Conflict record lifecycle."""

    PENDING = "pending"
    RESOLVED = "resolved"
    # The mapping went away before anyone resolved it
    OBSOLETE = "obsolete"


class OperationType(str, Enum):
    """Sync operation types recorded in the audit log."""

    IMPORT = "import"
    EXPORT = "export"
    CONFLICT = "conflict"
    RESOLVE = "resolve"
    INCREMENTAL_SYNC = "incremental_sync"
    FULL_SYNC = "full_sync"


class OperationStatus(str, Enum):
    """Sync operation outcome."""

    SUCCESS = "success"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_timezone_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Return dt as an aware UTC datetime (naive values are assumed UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


class RemoteEvent(BaseModel):
    """Google Calendar event as seen by the sync logic."""

    id: str = Field(..., description="Remote event ID")
    summary: str = Field("", description="Event title")
    description: Optional[str] = Field(None)
    location: Optional[str] = Field(None)
    status: str = Field("confirmed", description="confirmed, tentative or cancelled")
    start: datetime = Field(..., description="Event start")
    end: datetime = Field(..., description="Event end")
    all_day: bool = Field(False)
    timezone: Optional[str] = Field(None, description="IANA timezone of the start time")
    updated: datetime = Field(..., description="Last modification, controlled by the remote system")
    etag: Optional[str] = Field(None)
    extended_properties: Dict[str, Any] = Field(default_factory=dict)
    original_data: Optional[Dict[str, Any]] = Field(None, description="Raw API payload")

    @validator('start', 'end', 'updated', pre=True)
    def ensure_timezone(cls, v):
        """Naive datetimes are treated as UTC."""
        if isinstance(v, datetime):
            return ensure_timezone_aware(v)
        return v

    @validator('end')
    def end_not_before_start(cls, v, values):
        if 'start' in values and v < values['start']:
            raise ValueError(f"End time ({v}) is before start time ({values['start']})")
        return v

    @property
    def is_cancelled(self) -> bool:
        return self.status == 'cancelled'

    @property
    def private_properties(self) -> Dict[str, str]:
        return dict(self.extended_properties.get('private') or {})

    def content_hash(self) -> str:
        """Generate content hash for change detection."""
        content = {
            'summary': self.summary,
            'description': self.description or '',
            'location': self.location or '',
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'all_day': self.all_day,
        }
        content_str = json.dumps(content, sort_keys=True)
        return hashlib.sha256(content_str.encode()).hexdigest()

    def as_payload(self) -> Dict[str, Any]:
        """Return the Google-shaped payload for snapshots."""
        if self.original_data:
            return dict(self.original_data)

        def _time(dt: datetime) -> Dict[str, str]:
            if self.all_day:
                return {'date': dt.date().isoformat()}
            value = {'dateTime': dt.isoformat()}
            if self.timezone:
                value['timeZone'] = self.timezone
            return value

        payload = {
            'id': self.id,
            'summary': self.summary,
            'status': self.status,
            'updated': self.updated.isoformat(),
            'start': _time(self.start),
            'end': _time(self.end),
        }
        if self.description is not None:
            payload['description'] = self.description
        if self.location is not None:
            payload['location'] = self.location
        if self.etag:
            payload['etag'] = self.etag
        if self.extended_properties:
            payload['extendedProperties'] = self.extended_properties
        return payload


def _resolve_timezone(name: Optional[str]):
    if not name:
        return pytz.UTC
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return pytz.UTC


def _parse_event_time(value: Dict[str, Any], tz_name: Optional[str]) -> datetime:
    tz = _resolve_timezone(value.get('timeZone') or tz_name)
    if value.get('dateTime'):
        dt = isoparse(value['dateTime'])
        if dt.tzinfo is None:
            dt = tz.localize(dt)
        return dt.astimezone(pytz.UTC)
    day = date.fromisoformat(value['date'])
    return tz.localize(datetime.combine(day, time.min)).astimezone(pytz.UTC)


def parse_remote_event(payload: Dict[str, Any]) -> RemoteEvent:
    """Build a RemoteEvent from a Google Calendar API payload.

    Raises:
        EventValidationError: If the payload lacks an id, ``updated`` or ``start``,
            or carries unparseable timestamps.
    """
    if not isinstance(payload, dict):
        raise EventValidationError(f"Remote event payload must be an object, got {type(payload).__name__}")

    event_id = payload.get('id')
    if not event_id:
        raise EventValidationError("Remote event is missing 'id'")
    if not payload.get('updated'):
        raise EventValidationError(f"Remote event {event_id} is missing 'updated'")

    start = payload.get('start') or {}
    if not (start.get('dateTime') or start.get('date')):
        raise EventValidationError(f"Remote event {event_id} is missing 'start'")
    end = payload.get('end') or {}
    if not (end.get('dateTime') or end.get('date')):
        end = start

    tz_name = start.get('timeZone')
    try:
        start_dt = _parse_event_time(start, tz_name)
        end_dt = _parse_event_time(end, tz_name)
        updated = isoparse(payload['updated'])

        return RemoteEvent(
            id=event_id,
            summary=payload.get('summary') or '',
            description=payload.get('description'),
            location=payload.get('location'),
            status=payload.get('status') or 'confirmed',
            start=start_dt,
            end=end_dt,
            all_day='dateTime' not in start,
            timezone=tz_name,
            updated=updated,
            etag=payload.get('etag'),
            extended_properties=payload.get('extendedProperties') or {},
            original_data=payload,
        )
    except (ValueError, TypeError, OverflowError) as e:
        raise EventValidationError(f"Remote event {event_id} is malformed: {e}") from e


class SyncResult(BaseModel):
    """Result of processing a single item."""

    action: SyncAction
    remote_event_id: Optional[str] = None
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    summary: Optional[str] = None


class SyncReport(BaseModel):
    """Summary of one sync run for a user."""

    sync_id: UUID = Field(default_factory=uuid4)
    user_id: str
    sync_type: OperationType = OperationType.INCREMENTAL_SYNC
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = Field(None)
    used_sync_token: bool = Field(False)
    cancelled: bool = Field(False)

    created_local: int = Field(0)
    updated_local: int = Field(0)
    pushed_remote: int = Field(0)
    conflicts: int = Field(0)
    unchanged: int = Field(0)
    skipped: int = Field(0)
    failed: int = Field(0)

    results: List[SyncResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def total_operations(self) -> int:
        return len(self.results)

    @property
    def success_rate(self) -> float:
        if not self.results:
            return 1.0
        successful = sum(1 for r in self.results if r.success)
        return successful / len(self.results)

    def record(self, result: SyncResult) -> None:
        """Append a result and bump the matching counter."""
        self.results.append(result)
        if not result.success:
            self.failed += 1
            if result.error_message:
                self.errors.append(result.error_message)
            return
        counter = {
            SyncAction.CREATE_LOCAL: 'created_local',
            SyncAction.UPDATE_LOCAL_FROM_REMOTE: 'updated_local',
            SyncAction.UPDATE_REMOTE_FROM_LOCAL: 'pushed_remote',
            SyncAction.CONFLICT: 'conflicts',
            SyncAction.NOOP: 'unchanged',
        }[result.action]
        setattr(self, counter, getattr(self, counter) + 1)


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    calendar_id: str = Field("primary", description="Remote calendar to sync with")
    sync_past_days: int = Field(30, ge=0, description="Window for syncs without a sync token")
    max_events_per_sync: int = Field(1000, ge=1)
    retry_attempts: int = Field(3, ge=1, le=5)
    retry_delay_seconds: float = Field(1.0, ge=0)
    default_timezone: str = Field("America/New_York")
    assignment_block_minutes: int = Field(60, ge=1, description="Length of exported assignment events")
    default_exam_minutes: int = Field(60, ge=1)
    export_unmapped: bool = Field(False, description="Create remote events for unmapped local entities")
    poll_interval_seconds: int = Field(300, ge=5)
    token_refresh_margin_minutes: int = Field(60, ge=0)
    operation_retention_days: int = Field(7, ge=1)

    @validator('default_timezone')
    def validate_timezone(cls, v):
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v}")
        return v


@dataclass
class ChangeSet:
    """Raw changed items returned by the remote calendar."""

    items: List[Dict[str, Any]]
    next_sync_token: Optional[str]
    used_sync_token: bool
