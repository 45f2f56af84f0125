"""Classification of remote events against the mapping table."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Tuple

from .database import EventMappingDB, SyncConflictDB
from .entity_store import EntityStore
from .exceptions import EntityStoreError, MappingStoreError
from .field_mapping import infer_entity_type, remote_to_local_fields
from .mapping_store import MappingStore
from .models import EntityType, RemoteEvent, SyncAction, utc_now

logger = logging.getLogger(__name__)


@dataclass
class Detection:
    """Outcome of classifying one remote event, with the rows involved."""

    action: SyncAction
    mapping: Optional[EventMappingDB] = None
    entity: Optional[Any] = None
    conflict: Optional[SyncConflictDB] = None
    # False when an identical pending conflict was already on record
    conflict_changed: bool = False


class ChangeDetector:
    """Decides which side of a mapping changed since its checkpoint.

    Divergence is never settled by recency: when both the remote event and the
    local entity moved past ``last_synced_at`` a conflict record is written and
    left for the user.
    """

    def __init__(
        self,
        mappings: MappingStore,
        entities: EntityStore,
        calendar_id: str = 'primary',
        clock: Callable[[], datetime] = utc_now
    ):
        self.mappings = mappings
        self.entities = entities
        self.calendar_id = calendar_id
        self.clock = clock

    def classify(self, user_id: str, event: RemoteEvent) -> SyncAction:
        """Classify a remote event. See detect()."""
        return self.detect(user_id, event).action

    def detect(self, user_id: str, event: RemoteEvent) -> Detection:
        """Classify a remote event and perform the bookkeeping for the outcome.

        - No mapping: a local entity and its mapping are created (CreateLocal).
        - Mapping whose entity is gone: the mapping is deleted (NoOp).
        - Both sides changed: a pending conflict record exists afterwards (Conflict).
        - Remote side changed: UpdateLocalFromRemote, or NoOp when only
          metadata changed and the content hash still matches.
        - Local side changed: the mapping's local timestamp is refreshed
          (UpdateRemoteFromLocal); the push belongs to the export pass.

        Raises:
            MappingStoreError: The mapping table is unavailable
            EntityStoreError: The entity tables are unavailable
        """
        mapping = self.mappings.find(user_id, event.id)
        now = self.clock()

        if mapping is None:
            if event.is_cancelled:
                return Detection(SyncAction.NOOP)
            return self._create_local(user_id, event, now)

        entity_type = EntityType(mapping.entity_type)
        entity = self.entities.get(user_id, entity_type, mapping.entity_id)
        if entity is None:
            logger.info(
                f"Local {entity_type.value} {mapping.entity_id} was deleted; unlinking event {event.id}"
            )
            self.mappings.delete(mapping.id)
            return Detection(SyncAction.NOOP)

        checkpoint = mapping.last_synced_at
        remote_changed = event.updated > checkpoint
        local_changed = entity.updated_at > checkpoint

        if remote_changed and local_changed:
            conflict, changed = self._record_conflict(mapping, entity, event)
            return Detection(SyncAction.CONFLICT, mapping, entity, conflict, conflict_changed=changed)

        if remote_changed:
            if mapping.content_hash and mapping.content_hash == event.content_hash():
                # Attendees, colour or reminders changed; nothing we sync
                mapping.google_event_updated = event.updated
                mapping.last_synced_at = max(checkpoint, event.updated)
                mapping = self.mappings.upsert(mapping)
                return Detection(SyncAction.NOOP, mapping, entity)
            return Detection(SyncAction.UPDATE_LOCAL_FROM_REMOTE, mapping, entity)

        if local_changed:
            mapping.local_event_updated = entity.updated_at
            mapping = self.mappings.upsert(mapping)
            return Detection(SyncAction.UPDATE_REMOTE_FROM_LOCAL, mapping, entity)

        return Detection(SyncAction.NOOP, mapping, entity)

    def _create_local(self, user_id: str, event: RemoteEvent, now: datetime) -> Detection:
        entity_type = infer_entity_type(event)
        entity = self.entities.create(
            user_id,
            entity_type,
            remote_to_local_fields(entity_type, event),
            created_by='google_calendar',
            now=now
        )
        mapping = EventMappingDB(
            user_id=user_id,
            entity_type=entity_type.value,
            entity_id=entity.id,
            google_event_id=event.id,
            google_calendar_id=self.calendar_id,
            local_event_updated=entity.updated_at,
            google_event_updated=event.updated,
            last_synced_at=max(now, event.updated),
            content_hash=event.content_hash()
        )
        try:
            mapping = self.mappings.upsert(mapping)
        except MappingStoreError:
            try:
                self.entities.delete(entity_type, entity.id)
            except EntityStoreError as cleanup_error:
                logger.error(f"Could not remove orphaned {entity_type.value} {entity.id}: {cleanup_error}")
            raise

        logger.info(f"Imported Google event {event.id} as {entity_type.value} {entity.id}")
        return Detection(SyncAction.CREATE_LOCAL, mapping, entity)

    def _record_conflict(self, mapping: EventMappingDB, entity, event: RemoteEvent) -> Tuple[SyncConflictDB, bool]:
        local_data = self.entities.snapshot(entity)
        remote_data = event.as_payload()

        existing = self.mappings.find_pending_conflict(mapping.id)
        if existing is not None:
            stale = (
                existing.google_event_updated != event.updated
                or existing.local_snapshot.get('updated_at') != local_data['updated_at']
            )
            if stale:
                existing = self.mappings.refresh_conflict(existing.id, local_data, remote_data, event.updated)
            return existing, stale

        conflict = self.mappings.create_conflict(mapping, local_data, remote_data, event.updated)
        logger.warning(
            f"Conflict on {mapping.entity_type} {mapping.entity_id}: "
            f"both the local entity and Google event {event.id} changed since {mapping.last_synced_at}"
        )
        return conflict, True
