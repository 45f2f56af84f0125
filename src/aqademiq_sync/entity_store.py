"""Reads and writes of the local academic entity tables."""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import AssignmentDB, DatabaseManager, ExamDB, ScheduleBlockDB
from .exceptions import EntityStoreError, NotFoundError
from .field_mapping import ENTITY_FIELDS, SNAPSHOT_EXTRA_FIELDS, serialize_fields
from .models import EntityType, utc_now

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    EntityType.SCHEDULE_BLOCK: ScheduleBlockDB,
    EntityType.ASSIGNMENT: AssignmentDB,
    EntityType.EXAM: ExamDB,
}

_MODEL_TYPES = {model: entity_type for entity_type, model in ENTITY_MODELS.items()}


def entity_type_of(entity) -> EntityType:
    """Entity type tag of an ORM row."""
    return _MODEL_TYPES[type(entity)]


class EntityStore:
    """Typed access to schedule blocks, assignments and exams."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.db.get_session()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise EntityStoreError(f"Entity store failure: {e}") from e
        finally:
            session.close()

    def get(self, user_id: str, entity_type: EntityType, entity_id: str):
        model = ENTITY_MODELS[EntityType(entity_type)]
        with self._session() as session:
            return session.query(model).filter(
                model.id == str(entity_id),
                model.user_id == user_id
            ).first()

    def list_for_user(self, user_id: str, entity_type: EntityType) -> List[Any]:
        model = ENTITY_MODELS[EntityType(entity_type)]
        with self._session() as session:
            return session.query(model).filter(model.user_id == user_id).order_by(model.created_at).all()

    def create(
        self,
        user_id: str,
        entity_type: EntityType,
        fields: Dict[str, Any],
        created_by: str = 'user',
        now: Optional[datetime] = None
    ):
        """Insert a new entity.

        Args:
            user_id: Owner of the entity
            entity_type: Which table to write
            fields: Column values, limited to syncable and snapshot fields
            created_by: ``user`` or ``google_calendar``
            now: Timestamp for created_at/updated_at
        """
        entity_type = EntityType(entity_type)
        model = ENTITY_MODELS[entity_type]
        now = now or utc_now()
        entity = model(
            user_id=user_id,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            **self._column_values(entity_type, fields)
        )
        with self._session() as session:
            session.add(entity)
            session.commit()
            logger.debug(f"Created {entity_type.value} {entity.id} for user {user_id}")
            return entity

    def apply_fields(self, entity, fields: Dict[str, Any], now: Optional[datetime] = None):
        """Write field values onto an existing entity and bump updated_at.

        Raises:
            NotFoundError: If the entity no longer exists
        """
        entity_type = entity_type_of(entity)
        model = type(entity)
        with self._session() as session:
            current = session.get(model, entity.id)
            if current is None:
                raise NotFoundError(f"{entity_type.value} {entity.id} not found")
            for name, value in self._column_values(entity_type, fields).items():
                setattr(current, name, value)
            current.updated_at = now or utc_now()
            session.commit()
            return current

    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        model = ENTITY_MODELS[EntityType(entity_type)]
        with self._session() as session:
            entity = session.get(model, str(entity_id))
            if entity is not None:
                session.delete(entity)
                session.commit()

    def fields_of(self, entity) -> Dict[str, Any]:
        """Current values of the entity's syncable fields."""
        return {name: getattr(entity, name) for name in ENTITY_FIELDS[entity_type_of(entity)]}

    def snapshot(self, entity) -> Dict[str, Any]:
        """JSON-safe snapshot of the entity for conflict records."""
        entity_type = entity_type_of(entity)
        data = self.fields_of(entity)
        for name in SNAPSHOT_EXTRA_FIELDS[entity_type]:
            data[name] = getattr(entity, name)
        data['id'] = entity.id
        data['updated_at'] = entity.updated_at
        return serialize_fields(data)

    @staticmethod
    def _column_values(entity_type: EntityType, fields: Dict[str, Any]) -> Dict[str, Any]:
        allowed = set(ENTITY_FIELDS[entity_type]) | set(SNAPSHOT_EXTRA_FIELDS[entity_type])
        values = {name: value for name, value in fields.items() if name in allowed}
        if 'title' in values and values['title'] is None:
            values['title'] = ''
        return values
