"""Database models and operations for sync state management."""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import create_engine, Column, String, DateTime, Boolean, Text, Integer, Float, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import ConflictStatus, OperationStatus, ensure_timezone_aware, utc_now

Base = declarative_base()


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(str(value)).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(str(value))
            return value


class UTCDateTime(TypeDecorator):
    """DateTime stored as UTC and always returned timezone-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        value = ensure_timezone_aware(value)
        if dialect.name == 'sqlite':
            # SQLite has no timezone support; store naive UTC
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return ensure_timezone_aware(value)


def _new_id() -> str:
    return str(uuid4())


class ScheduleBlockDB(Base):
    """Class meeting on the student's timetable."""

    __tablename__ = 'schedule_blocks'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(500), nullable=False, default='')
    description = Column(Text, nullable=True)
    location = Column(String(500), nullable=True)
    start_time = Column(UTCDateTime(), nullable=True)
    end_time = Column(UTCDateTime(), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(32), nullable=False, default='user')
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime(), nullable=False, default=utc_now)


class AssignmentDB(Base):
    """Assignment with a due date."""

    __tablename__ = 'assignments'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(500), nullable=False, default='')
    description = Column(Text, nullable=True)
    due_date = Column(UTCDateTime(), nullable=True)
    estimated_hours = Column(Float, nullable=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(32), nullable=False, default='user')
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime(), nullable=False, default=utc_now)


class ExamDB(Base):
    """Scheduled exam."""

    __tablename__ = 'exams'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(500), nullable=False, default='')
    location = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)
    exam_date = Column(UTCDateTime(), nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    exam_type = Column(String(50), nullable=True)
    created_by = Column(String(32), nullable=False, default='user')
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime(), nullable=False, default=utc_now)


class EventMappingDB(Base):
    """Link between one local entity and one Google Calendar event."""

    __tablename__ = 'google_event_mappings'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False, index=True)

    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(36), nullable=False)
    google_event_id = Column(String(1024), nullable=False)
    google_calendar_id = Column(String(255), nullable=False, default='primary')

    # Last-seen timestamps for both sides
    local_event_updated = Column(UTCDateTime(), nullable=True)
    google_event_updated = Column(UTCDateTime(), nullable=True)
    # Checkpoint of the last successful reconciliation
    last_synced_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    content_hash = Column(String(64), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'google_event_id', name='uq_event_mapping_google_event'),
        UniqueConstraint('entity_type', 'entity_id', name='uq_event_mapping_entity'),
        Index('idx_event_mapping_user_event', 'user_id', 'google_event_id'),
        Index('idx_event_mapping_entity', 'entity_type', 'entity_id'),
        Index('idx_event_mapping_last_sync', 'last_synced_at'),
    )


class SyncConflictDB(Base):
    """Both sides of a mapping changed independently since the checkpoint."""

    __tablename__ = 'sync_conflicts'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    # Not a foreign key: conflicts outlive the mapping for audit
    mapping_id = Column(GUID(), nullable=True, index=True)

    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(36), nullable=False)
    google_event_id = Column(String(1024), nullable=False)

    local_data = Column(Text, nullable=False)  # JSON
    google_data = Column(Text, nullable=False)  # JSON
    google_event_updated = Column(UTCDateTime(), nullable=True)

    conflict_type = Column(String(50), nullable=False, default='simultaneous_update')
    status = Column(String(20), nullable=False, default=ConflictStatus.PENDING.value)
    resolution = Column(String(50), nullable=True)
    resolved_at = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_conflict_user_status', 'user_id', 'status'),
        Index('idx_conflict_mapping_status', 'mapping_id', 'status'),
        Index('idx_conflict_created', 'created_at'),
    )

    @property
    def local_snapshot(self) -> Dict[str, Any]:
        return json.loads(self.local_data)

    @property
    def remote_snapshot(self) -> Dict[str, Any]:
        return json.loads(self.google_data)


class SyncOperationDB(Base):
    """Audit log of sync operations."""

    __tablename__ = 'sync_operations'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False)

    operation_type = Column(String(32), nullable=False)
    operation_status = Column(String(20), nullable=False)
    entity_type = Column(String(32), nullable=True)
    entity_id = Column(String(64), nullable=True)
    google_event_id = Column(String(1024), nullable=True)
    sync_direction = Column(String(20), nullable=True)  # 'inbound', 'outbound', 'bidirectional'
    error_message = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_sync_operation_user_created', 'user_id', 'created_at'),
        Index('idx_sync_operation_status', 'operation_status'),
    )


class SyncStateDB(Base):
    """Per-user incremental sync state."""

    __tablename__ = 'google_sync_state'

    user_id = Column(String(64), primary_key=True)
    calendar_id = Column(String(255), nullable=False, default='primary')
    sync_token = Column(String(1000), nullable=True)
    last_sync_at = Column(UTCDateTime(), nullable=True)
    updated_at = Column(UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now)


class GoogleTokenDB(Base):
    """Per-user Google OAuth tokens."""

    __tablename__ = 'google_tokens'

    user_id = Column(String(64), primary_key=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(UTCDateTime(), nullable=True)
    scopes = Column(Text, nullable=True)  # space separated
    updated_at = Column(UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now)


class WatchChannelDB(Base):
    """Google push notification channel registered for a user."""

    __tablename__ = 'google_watch_channels'

    channel_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    calendar_id = Column(String(255), nullable=False)
    resource_id = Column(String(255), nullable=True)
    address = Column(String(1000), nullable=False)
    expiration = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)


class DatabaseManager:
    """Database manager for sync bookkeeping."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        # Detached rows are handed across store boundaries, keep their state loaded
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def get_google_token(self, session: Session, user_id: str) -> Optional[GoogleTokenDB]:
        return session.get(GoogleTokenDB, user_id)

    def save_google_token(
        self,
        session: Session,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        scopes: Optional[List[str]] = None
    ) -> GoogleTokenDB:
        """Create or update a user's Google tokens.

        A missing refresh token keeps the stored one, as Google only returns it
        on the first consent.
        """
        token = session.get(GoogleTokenDB, user_id)
        if token is None:
            token = GoogleTokenDB(user_id=user_id)
            session.add(token)
        token.access_token = access_token
        if refresh_token:
            token.refresh_token = refresh_token
        token.expires_at = expires_at
        if scopes:
            token.scopes = ' '.join(scopes)
        session.commit()
        return token

    def list_connected_users(self, session: Session) -> List[str]:
        """User ids that have Google tokens stored."""
        return [row.user_id for row in session.query(GoogleTokenDB.user_id).order_by(GoogleTokenDB.user_id).all()]

    def get_sync_state(self, session: Session, user_id: str) -> Optional[SyncStateDB]:
        return session.get(SyncStateDB, user_id)

    def _get_or_create_sync_state(self, session: Session, user_id: str) -> SyncStateDB:
        state = session.get(SyncStateDB, user_id)
        if state is None:
            state = SyncStateDB(user_id=user_id, calendar_id=self.settings.sync_config.calendar_id)
            session.add(state)
        return state

    def save_sync_token(self, session: Session, user_id: str, sync_token: Optional[str]) -> None:
        """Store the next incremental sync token (None clears it)."""
        state = self._get_or_create_sync_state(session, user_id)
        state.sync_token = sync_token
        session.commit()

    def mark_synced(self, session: Session, user_id: str, when: datetime) -> None:
        state = self._get_or_create_sync_state(session, user_id)
        state.last_sync_at = when
        session.commit()

    def create_sync_operation(
        self,
        session: Session,
        user_id: str,
        operation_type: str,
        operation_status: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        google_event_id: Optional[str] = None,
        sync_direction: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> SyncOperationDB:
        """Record a sync operation in the audit log."""
        operation = SyncOperationDB(
            user_id=user_id,
            operation_type=operation_type,
            operation_status=operation_status,
            entity_type=entity_type,
            entity_id=entity_id,
            google_event_id=google_event_id,
            sync_direction=sync_direction,
            error_message=error_message
        )
        session.add(operation)
        session.commit()
        return operation

    def get_recent_operations(
        self,
        session: Session,
        user_id: str,
        limit: int = 50
    ) -> List[SyncOperationDB]:
        return session.query(SyncOperationDB).filter(
            SyncOperationDB.user_id == user_id
        ).order_by(SyncOperationDB.created_at.desc()).limit(limit).all()

    def prune_operations(self, session: Session, older_than_days: int) -> int:
        """Delete successful operations older than the retention window.

        Returns:
            Number of deleted rows
        """
        cutoff = utc_now() - timedelta(days=older_than_days)
        deleted = session.query(SyncOperationDB).filter(
            SyncOperationDB.operation_status == OperationStatus.SUCCESS.value,
            SyncOperationDB.created_at < cutoff
        ).delete(synchronize_session=False)
        session.commit()
        return deleted

    def save_watch_channel(
        self,
        session: Session,
        channel_id: str,
        user_id: str,
        calendar_id: str,
        address: str,
        resource_id: Optional[str] = None,
        expiration: Optional[datetime] = None
    ) -> WatchChannelDB:
        channel = WatchChannelDB(
            channel_id=channel_id,
            user_id=user_id,
            calendar_id=calendar_id,
            address=address,
            resource_id=resource_id,
            expiration=expiration
        )
        session.add(channel)
        session.commit()
        return channel

    def get_watch_channel(self, session: Session, channel_id: str) -> Optional[WatchChannelDB]:
        return session.get(WatchChannelDB, channel_id)

    def get_watch_channels(self, session: Session, user_id: str) -> List[WatchChannelDB]:
        return session.query(WatchChannelDB).filter(WatchChannelDB.user_id == user_id).all()

    def delete_watch_channel(self, session: Session, channel_id: str) -> None:
        channel = session.get(WatchChannelDB, channel_id)
        if channel is not None:
            session.delete(channel)
            session.commit()

    def get_sync_statistics(self, session: Session, user_id: str, days: int = 30) -> Dict[str, Any]:
        """Get synchronization statistics for the past N days."""
        cutoff_date = datetime.now(pytz.UTC) - timedelta(days=days)

        operations = session.query(SyncOperationDB).filter(
            SyncOperationDB.user_id == user_id,
            SyncOperationDB.created_at >= cutoff_date
        ).all()

        return {
            'period_days': days,
            'total_operations': len(operations),
            'successful_operations': len([o for o in operations if o.operation_status == OperationStatus.SUCCESS.value]),
            'failed_operations': len([o for o in operations if o.operation_status == OperationStatus.FAILED.value]),
            'conflict_operations': len([o for o in operations if o.operation_status == OperationStatus.CONFLICT.value]),
        }
