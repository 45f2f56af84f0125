"""Application of one-sided updates and user-chosen conflict resolutions."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from .database import EventMappingDB, SyncConflictDB
from .entity_store import EntityStore, entity_type_of
from .exceptions import ConflictStateError, EventValidationError, NotFoundError, RemoteWriteFailure
from .field_mapping import (
    ENTITY_FIELDS,
    deserialize_fields,
    local_to_remote_body,
    remote_to_local_fields,
    serialize_fields,
    validate_merge_payload,
)
from .mapping_store import MappingStore
from .models import (
    ConflictStatus,
    EntityType,
    RemoteEvent,
    ResolutionStrategy,
    SyncConfiguration,
    parse_remote_event,
    utc_now,
)
from .services.base import BaseCalendarService, CalendarServiceError

logger = logging.getLogger(__name__)

MERGE_SEPARATOR = "\n\n[From Google]: "


class ConflictResolver:
    """Resolves conflicts between the local entity and its Google event.

    The mapping checkpoint only advances after every side effect of a
    resolution succeeded. A failed remote write leaves the conflict pending so
    the divergence stays visible.
    """

    def __init__(
        self,
        mappings: MappingStore,
        entities: EntityStore,
        config: SyncConfiguration,
        clock: Callable[[], datetime] = utc_now
    ):
        self.mappings = mappings
        self.entities = entities
        self.config = config
        self.clock = clock

    def apply_remote_update(self, mapping: EventMappingDB, entity, event: RemoteEvent):
        """Copy a remote-only change onto the local entity and checkpoint the mapping.

        Returns:
            The updated entity
        """
        entity_type = EntityType(mapping.entity_type)
        now = self.clock()
        entity = self.entities.apply_fields(entity, remote_to_local_fields(entity_type, event), now)
        self.checkpoint(mapping, entity, event, now)
        logger.info(f"Applied Google event {event.id} to {entity_type.value} {entity.id}")
        return entity

    async def resolve(
        self,
        conflict_id: UUID,
        strategy: ResolutionStrategy,
        calendar: Optional[BaseCalendarService] = None,
        merged_payload: Optional[Dict[str, Any]] = None
    ) -> SyncConflictDB:
        """Apply a resolution strategy to a pending conflict.

        Args:
            conflict_id: Conflict to resolve
            strategy: How to settle the divergence
            calendar: Remote calendar, required for prefer_local and merge
            merged_payload: Local field values, required for merge

        Returns:
            The resolved conflict record, or the obsolete one when its
            mapping or entity no longer exists

        Raises:
            NotFoundError: Conflict does not exist
            ConflictStateError: Conflict is not pending
            EventValidationError: Merge payload is missing or invalid
            RemoteWriteFailure: The Google write failed; nothing was checkpointed
        """
        strategy = ResolutionStrategy(strategy)
        conflict = self.mappings.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        if conflict.status != ConflictStatus.PENDING.value:
            raise ConflictStateError(f"Conflict {conflict_id} is already {conflict.status}")

        mapping = self.mappings.get(conflict.mapping_id) if conflict.mapping_id else None
        entity_type = EntityType(conflict.entity_type)
        entity = self.entities.get(conflict.user_id, entity_type, conflict.entity_id) if mapping else None
        if entity is None:
            logger.warning(
                f"Conflict {conflict_id} outlived its {entity_type.value} or mapping; closing it as obsolete"
            )
            if mapping is not None:
                self.mappings.delete(mapping.id)
            return self.mappings.mark_obsolete(conflict.id)

        if strategy == ResolutionStrategy.PREFER_LOCAL:
            remote = await self.push_local(calendar, mapping, entity, self.entities.fields_of(entity))
            self.checkpoint(mapping, entity, remote, self.clock())

        elif strategy == ResolutionStrategy.PREFER_REMOTE:
            snapshot = parse_remote_event(conflict.remote_snapshot)
            now = self.clock()
            entity = self.entities.apply_fields(entity, remote_to_local_fields(entity_type, snapshot), now)
            self.checkpoint(mapping, entity, snapshot, now)

        else:
            if merged_payload is None:
                raise EventValidationError("A merged payload is required for the merge strategy")
            changes = validate_merge_payload(entity_type, merged_payload)
            fields = self.entities.fields_of(entity)
            fields.update(changes)
            remote = await self.push_local(calendar, mapping, entity, fields)
            now = self.clock()
            entity = self.entities.apply_fields(entity, changes, now)
            self.checkpoint(mapping, entity, remote, now)

        resolved = self.mappings.mark_resolved(conflict.id, strategy)
        logger.info(f"Resolved conflict {conflict.id} on {entity_type.value} {entity.id} with {strategy.value}")
        return resolved

    def suggest_merge(self, conflict: SyncConflictDB) -> Dict[str, Any]:
        """Propose a merged payload combining both snapshots.

        The longer title wins, differing descriptions are concatenated, a
        remote location wins and the remote start time is taken.
        """
        entity_type = EntityType(conflict.entity_type)
        names = ENTITY_FIELDS[entity_type]
        local = deserialize_fields(
            entity_type,
            {k: v for k, v in conflict.local_snapshot.items() if k in names}
        )
        remote = remote_to_local_fields(entity_type, parse_remote_event(conflict.remote_snapshot))

        merged = dict(local)
        local_title = local.get('title') or ''
        remote_title = remote.get('title') or ''
        merged['title'] = remote_title if len(remote_title) > len(local_title) else local_title

        text_field = 'notes' if entity_type == EntityType.EXAM else 'description'
        local_text = local.get(text_field) or ''
        remote_text = remote.get(text_field) or ''
        if local_text and remote_text and local_text != remote_text:
            merged[text_field] = local_text + MERGE_SEPARATOR + remote_text
        else:
            merged[text_field] = local_text or remote_text or None

        if 'location' in names and remote.get('location'):
            merged['location'] = remote['location']

        if entity_type == EntityType.SCHEDULE_BLOCK:
            merged['start_time'] = remote['start_time']
            merged['end_time'] = remote['end_time']
        elif entity_type == EntityType.ASSIGNMENT:
            merged['due_date'] = remote['due_date']
        else:
            merged['exam_date'] = remote['exam_date']

        return serialize_fields(merged)

    def remote_body(self, entity, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Google event body for an entity with the given field values."""
        return local_to_remote_body(
            entity_type_of(entity),
            entity.id,
            fields,
            self.config.default_timezone,
            assignment_block_minutes=self.config.assignment_block_minutes,
            default_exam_minutes=self.config.default_exam_minutes,
        )

    async def push_local(
        self,
        calendar: Optional[BaseCalendarService],
        mapping: EventMappingDB,
        entity,
        fields: Dict[str, Any]
    ) -> RemoteEvent:
        """Write local field values to the mapped Google event.

        Raises:
            RemoteWriteFailure: If the write fails after retries
        """
        if calendar is None:
            raise RemoteWriteFailure("No calendar service available for the remote write")
        body = self.remote_body(entity, fields)
        try:
            return await calendar.update_event(mapping.google_calendar_id, mapping.google_event_id, body)
        except CalendarServiceError as e:
            logger.error(f"Writing Google event {mapping.google_event_id} failed: {e}")
            raise RemoteWriteFailure(f"Failed to update Google event {mapping.google_event_id}: {e}", cause=e) from e

    def checkpoint(self, mapping: EventMappingDB, entity, event: RemoteEvent, now: datetime) -> EventMappingDB:
        """Record both sides as reconciled at or after now."""
        mapping.google_event_updated = event.updated
        mapping.local_event_updated = entity.updated_at
        mapping.last_synced_at = max(now, event.updated, entity.updated_at)
        mapping.content_hash = event.content_hash()
        return self.mappings.upsert(mapping)
