"""Persistence of event mappings and conflict records."""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import DatabaseManager, EventMappingDB, SyncConflictDB
from .exceptions import MappingStoreError, NotFoundError
from .models import ConflictStatus, EntityType, ResolutionStrategy, utc_now

logger = logging.getLogger(__name__)


class MappingStore:
    """Mapping and conflict table access.

    Every method runs in its own session and commits before returning, so each
    call is atomic for the rows it touches. Rows are returned detached.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.db.get_session()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise MappingStoreError(f"Mapping store failure: {e}") from e
        finally:
            session.close()

    def find(self, user_id: str, remote_event_id: str) -> Optional[EventMappingDB]:
        with self._session() as session:
            return session.query(EventMappingDB).filter(
                EventMappingDB.user_id == user_id,
                EventMappingDB.google_event_id == remote_event_id
            ).first()

    def find_by_entity(self, entity_type: EntityType, entity_id: str) -> Optional[EventMappingDB]:
        with self._session() as session:
            return session.query(EventMappingDB).filter(
                EventMappingDB.entity_type == EntityType(entity_type).value,
                EventMappingDB.entity_id == str(entity_id)
            ).first()

    def get(self, mapping_id: UUID) -> Optional[EventMappingDB]:
        with self._session() as session:
            return session.get(EventMappingDB, mapping_id)

    def list_for_user(self, user_id: str) -> List[EventMappingDB]:
        with self._session() as session:
            return session.query(EventMappingDB).filter(
                EventMappingDB.user_id == user_id
            ).order_by(EventMappingDB.created_at).all()

    def count_for_user(self, user_id: str) -> int:
        with self._session() as session:
            return session.query(EventMappingDB).filter(EventMappingDB.user_id == user_id).count()

    def upsert(self, mapping: EventMappingDB) -> EventMappingDB:
        """Insert or update a mapping row.

        Returns:
            The persisted mapping
        """
        if mapping.id is None:
            mapping.id = uuid4()
        with self._session() as session:
            merged = session.merge(mapping)
            session.commit()
            return merged

    def delete(self, mapping_id: UUID) -> None:
        """Delete a mapping and close its pending conflicts as obsolete."""
        with self._session() as session:
            mapping = session.get(EventMappingDB, mapping_id)
            if mapping is None:
                return
            closed = session.query(SyncConflictDB).filter(
                SyncConflictDB.mapping_id == mapping_id,
                SyncConflictDB.status == ConflictStatus.PENDING.value
            ).update(
                {
                    SyncConflictDB.status: ConflictStatus.OBSOLETE.value,
                    SyncConflictDB.resolved_at: utc_now(),
                },
                synchronize_session=False
            )
            session.delete(mapping)
            session.commit()
            logger.debug(f"Deleted mapping {mapping_id}")
            if closed:
                logger.info(f"Closed {closed} pending conflict(s) of deleted mapping {mapping_id}")

    def create_conflict(
        self,
        mapping: EventMappingDB,
        local_data: Dict[str, Any],
        google_data: Dict[str, Any],
        google_event_updated: Optional[datetime] = None
    ) -> SyncConflictDB:
        """Persist a pending conflict for a mapping with both snapshots."""
        conflict = SyncConflictDB(
            id=uuid4(),
            user_id=mapping.user_id,
            mapping_id=mapping.id,
            entity_type=mapping.entity_type,
            entity_id=mapping.entity_id,
            google_event_id=mapping.google_event_id,
            local_data=json.dumps(local_data),
            google_data=json.dumps(google_data),
            google_event_updated=google_event_updated,
            status=ConflictStatus.PENDING.value,
            created_at=utc_now()
        )
        with self._session() as session:
            session.add(conflict)
            session.commit()
            return conflict

    def refresh_conflict(
        self,
        conflict_id: UUID,
        local_data: Dict[str, Any],
        google_data: Dict[str, Any],
        google_event_updated: Optional[datetime] = None
    ) -> SyncConflictDB:
        """Replace the snapshots of a pending conflict."""
        with self._session() as session:
            conflict = session.get(SyncConflictDB, conflict_id)
            if conflict is None:
                raise NotFoundError(f"Conflict {conflict_id} not found")
            conflict.local_data = json.dumps(local_data)
            conflict.google_data = json.dumps(google_data)
            conflict.google_event_updated = google_event_updated
            session.commit()
            return conflict

    def get_conflict(self, conflict_id: UUID) -> Optional[SyncConflictDB]:
        with self._session() as session:
            return session.get(SyncConflictDB, conflict_id)

    def find_pending_conflict(self, mapping_id: UUID) -> Optional[SyncConflictDB]:
        with self._session() as session:
            return session.query(SyncConflictDB).filter(
                SyncConflictDB.mapping_id == mapping_id,
                SyncConflictDB.status == ConflictStatus.PENDING.value
            ).first()

    def list_conflicts(
        self,
        user_id: str,
        status: Optional[ConflictStatus] = ConflictStatus.PENDING
    ) -> List[SyncConflictDB]:
        with self._session() as session:
            query = session.query(SyncConflictDB).filter(SyncConflictDB.user_id == user_id)
            if status is not None:
                query = query.filter(SyncConflictDB.status == ConflictStatus(status).value)
            return query.order_by(SyncConflictDB.created_at.desc()).all()

    def count_pending_conflicts(self, user_id: str) -> int:
        with self._session() as session:
            return session.query(SyncConflictDB).filter(
                SyncConflictDB.user_id == user_id,
                SyncConflictDB.status == ConflictStatus.PENDING.value
            ).count()

    def mark_resolved(self, conflict_id: UUID, resolution: ResolutionStrategy) -> SyncConflictDB:
        """Close a conflict. The record is kept for audit."""
        with self._session() as session:
            conflict = session.get(SyncConflictDB, conflict_id)
            if conflict is None:
                raise NotFoundError(f"Conflict {conflict_id} not found")
            conflict.status = ConflictStatus.RESOLVED.value
            conflict.resolution = ResolutionStrategy(resolution).value
            conflict.resolved_at = utc_now()
            session.commit()
            return conflict

    def mark_obsolete(self, conflict_id: UUID) -> SyncConflictDB:
        with self._session() as session:
            conflict = session.get(SyncConflictDB, conflict_id)
            if conflict is None:
                raise NotFoundError(f"Conflict {conflict_id} not found")
            if conflict.status == ConflictStatus.PENDING.value:
                conflict.status = ConflictStatus.OBSOLETE.value
                conflict.resolved_at = utc_now()
                session.commit()
            return conflict
