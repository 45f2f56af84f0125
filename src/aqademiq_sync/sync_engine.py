"""Sync engine: batch import, export pass and conflict resolution per user."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError

from .change_detector import ChangeDetector
from .config import Settings
from .conflict_resolver import ConflictResolver
from .connectivity import ConnectivityService
from .database import DatabaseManager, EventMappingDB, SyncConflictDB, WatchChannelDB
from .entity_store import EntityStore
from .exceptions import (
    EntityStoreError,
    EventValidationError,
    MappingStoreError,
    NotFoundError,
    OfflineError,
    RemoteWriteFailure,
    StoreError,
    SyncError,
)
from .field_mapping import PRIVATE_ID_KEY
from .locking import KeyedLock
from .mapping_store import MappingStore
from .models import (
    ChangeSet,
    ConflictStatus,
    EntityType,
    OperationStatus,
    OperationType,
    ResolutionStrategy,
    SyncAction,
    SyncReport,
    SyncResult,
    parse_remote_event,
    utc_now,
)
from .services.base import (
    BaseCalendarService,
    CalendarServiceError,
    EventNotFoundError,
    SyncTokenExpired,
    TransientError,
)
from .services.google import GoogleCalendarService, parse_channel_expiration

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[str], BaseCalendarService]


class SyncEngine:
    """Runs synchronization for users between the planner and Google Calendar.

    All work for one user (imports, the export pass and conflict resolution)
    runs under that user's lock, so no two checkpoint updates for the same
    mapping interleave.
    """

    def __init__(
        self,
        settings: Settings,
        db: Optional[DatabaseManager] = None,
        service_factory: Optional[ServiceFactory] = None,
        connectivity: Optional[ConnectivityService] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db: Database manager, created from settings when omitted
            service_factory: Builds the calendar service for a user id
            connectivity: Shared online/offline state
            clock: Source of the current time
        """
        self.settings = settings
        self.config = settings.sync_config
        self.db = db or DatabaseManager(settings)
        self.connectivity = connectivity or ConnectivityService()
        self.service_factory = service_factory or self._google_service
        self.clock = clock

        self.mappings = MappingStore(self.db)
        self.entities = EntityStore(self.db)
        self.detector = ChangeDetector(self.mappings, self.entities, self.config.calendar_id, clock)
        self.resolver = ConflictResolver(self.mappings, self.entities, self.config, clock)
        self.locks = KeyedLock()

        self.logger = logger

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Initialize the sync engine."""
        self.db.init_db()
        self.logger.info("Sync engine initialized successfully")

    async def cleanup(self) -> None:
        """Clean up resources."""
        self.db.engine.dispose()
        self.logger.info("Sync engine cleaned up")

    def _google_service(self, user_id: str) -> BaseCalendarService:
        return GoogleCalendarService(self.settings, self.db, user_id, self.connectivity)

    async def _open_service(self, user_id: str) -> BaseCalendarService:
        service = self.service_factory(user_id)
        await service.authenticate()
        return service

    async def _ensure_online(self, user_id: str) -> None:
        """Re-check reachability while offline; raise OfflineError if Google is still unreachable."""
        if self.connectivity.is_online:
            return
        try:
            service = await self._open_service(user_id)
            await service.check_reachable(self.config.calendar_id)
        except TransientError as e:
            self.connectivity.report_failure(e)
            raise OfflineError(
                f"Google Calendar is unreachable; sync postponed until connectivity returns ({e})"
            ) from e
        self.connectivity.report_success()

    async def incremental_sync(self, user_id: str, cancel_event: Optional[asyncio.Event] = None) -> SyncReport:
        """Import changes since the stored sync token, then push local changes."""
        return await self._sync(user_id, full=False, cancel_event=cancel_event)

    async def full_sync(self, user_id: str, cancel_event: Optional[asyncio.Event] = None) -> SyncReport:
        """Drop the sync token and import the whole past window, then push local changes."""
        return await self._sync(user_id, full=True, cancel_event=cancel_event)

    async def _sync(self, user_id: str, full: bool, cancel_event: Optional[asyncio.Event]) -> SyncReport:
        await self._ensure_online(user_id)
        sync_type = OperationType.FULL_SYNC if full else OperationType.INCREMENTAL_SYNC

        async with self.locks.acquire(user_id):
            report = SyncReport(user_id=user_id, sync_type=sync_type)
            self.logger.info(f"Starting {sync_type.value} for user {user_id}")

            try:
                with self.db.get_session() as session:
                    if full:
                        self.db.save_sync_token(session, user_id, None)
                        sync_token = None
                    else:
                        state = self.db.get_sync_state(session, user_id)
                        sync_token = state.sync_token if state else None

                service = await self._open_service(user_id)
                changes = await self._fetch_changes(service, user_id, sync_token)
                report.used_sync_token = changes.used_sync_token

                await self._import_batch(user_id, changes.items, report, cancel_event)
                if not report.cancelled:
                    # A cancelled batch keeps the old token so the rest is fetched again
                    self._save_sync_token(user_id, changes.next_sync_token)
                    await self.push_local_changes(user_id, service, report, cancel_event)
                if not report.cancelled:
                    with self.db.get_session() as session:
                        self.db.mark_synced(session, user_id, self.clock())

            except (CalendarServiceError, StoreError, SQLAlchemyError) as e:
                report.errors.append(str(e))
                self.logger.error(f"{sync_type.value} for user {user_id} aborted: {e}")
                self._record_operation(
                    user_id, sync_type, OperationStatus.FAILED,
                    sync_direction='bidirectional', error_message=str(e)
                )
                raise

            report.completed_at = self.clock()
            self._record_operation(
                user_id, sync_type,
                OperationStatus.FAILED if report.failed else OperationStatus.SUCCESS,
                sync_direction='bidirectional',
                error_message='; '.join(report.errors[:5]) or None
            )
            self.logger.info(
                f"{sync_type.value} for user {user_id} finished: {report.created_local} created, "
                f"{report.updated_local} updated locally, {report.pushed_remote} pushed, "
                f"{report.conflicts} conflicts, {report.failed} failed"
                + (" (cancelled)" if report.cancelled else "")
            )
            return report

    async def _fetch_changes(
        self,
        service: BaseCalendarService,
        user_id: str,
        sync_token: Optional[str]
    ) -> ChangeSet:
        if sync_token:
            try:
                return await service.get_changes(self.config.calendar_id, sync_token=sync_token)
            except SyncTokenExpired:
                self.logger.warning(f"Sync token for user {user_id} expired; falling back to a full window")
                self._save_sync_token(user_id, None)

        window_start = self.clock() - timedelta(days=self.config.sync_past_days)
        return await service.get_changes(self.config.calendar_id, time_min=window_start)

    def _save_sync_token(self, user_id: str, sync_token: Optional[str]) -> None:
        with self.db.get_session() as session:
            self.db.save_sync_token(session, user_id, sync_token)

    async def _import_batch(
        self,
        user_id: str,
        items: List[Dict[str, Any]],
        report: SyncReport,
        cancel_event: Optional[asyncio.Event] = None
    ) -> None:
        """Classify and apply each changed remote item.

        Per-item failures are recorded on the report; a mapping store failure
        aborts the batch.
        """
        for raw in items:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                self.logger.info(f"Import for user {user_id} cancelled with items remaining")
                break
            self._import_item(user_id, raw, report)
            # Let cancellation and other users' work in between items
            await asyncio.sleep(0)

    def _import_item(self, user_id: str, raw: Dict[str, Any], report: SyncReport) -> None:
        event_id = raw.get('id') if isinstance(raw, dict) else None

        if isinstance(raw, dict) and raw.get('status') == 'cancelled' and event_id:
            self._handle_cancelled(user_id, event_id, report)
            return

        try:
            event = parse_remote_event(raw)
        except EventValidationError as e:
            self.logger.warning(f"Skipping malformed Google event {event_id}: {e}")
            report.skipped += 1
            self._record_operation(
                user_id, OperationType.IMPORT, OperationStatus.SKIPPED,
                google_event_id=event_id, sync_direction='inbound', error_message=str(e)
            )
            return

        if PRIVATE_ID_KEY in event.private_properties and self.mappings.find(user_id, event.id) is None:
            # Exported from an entity that has since been deleted here
            self.logger.debug(f"Skipping unlinked exported event {event.id}")
            report.skipped += 1
            return

        try:
            detection = self.detector.detect(user_id, event)
            if detection.action == SyncAction.UPDATE_LOCAL_FROM_REMOTE:
                self.resolver.apply_remote_update(detection.mapping, detection.entity, event)
        except MappingStoreError:
            raise
        except (EntityStoreError, NotFoundError) as e:
            self.logger.error(f"Failed to import Google event {event.id}: {e}")
            report.record(SyncResult(
                action=SyncAction.NOOP,
                remote_event_id=event.id,
                success=False,
                error_message=f"{event.id}: {e}",
                summary=event.summary
            ))
            self._record_operation(
                user_id, OperationType.IMPORT, OperationStatus.FAILED,
                google_event_id=event.id, sync_direction='inbound', error_message=str(e)
            )
            return

        mapping = detection.mapping
        if detection.action == SyncAction.CONFLICT and not detection.conflict_changed:
            # Still pending with the same snapshots; nothing new to report
            report.record(SyncResult(
                action=SyncAction.NOOP,
                remote_event_id=event.id,
                entity_type=EntityType(mapping.entity_type),
                entity_id=mapping.entity_id,
                summary=event.summary
            ))
            return

        report.record(SyncResult(
            action=detection.action,
            remote_event_id=event.id,
            entity_type=EntityType(mapping.entity_type) if mapping else None,
            entity_id=mapping.entity_id if mapping else None,
            summary=event.summary
        ))

        if detection.action in (SyncAction.CREATE_LOCAL, SyncAction.UPDATE_LOCAL_FROM_REMOTE):
            self._record_operation(
                user_id, OperationType.IMPORT, OperationStatus.SUCCESS,
                entity_type=mapping.entity_type, entity_id=mapping.entity_id,
                google_event_id=event.id, sync_direction='inbound'
            )
        elif detection.action == SyncAction.CONFLICT:
            self._record_operation(
                user_id, OperationType.CONFLICT, OperationStatus.CONFLICT,
                entity_type=mapping.entity_type, entity_id=mapping.entity_id,
                google_event_id=event.id, sync_direction='bidirectional'
            )

    def _handle_cancelled(self, user_id: str, event_id: str, report: SyncReport) -> None:
        mapping = self.mappings.find(user_id, event_id)
        if mapping is None:
            report.skipped += 1
            return
        # The local entity is kept; only the link goes away
        self.mappings.delete(mapping.id)
        self.logger.info(f"Google event {event_id} was deleted; unlinked {mapping.entity_type} {mapping.entity_id}")
        report.record(SyncResult(
            action=SyncAction.NOOP,
            remote_event_id=event_id,
            entity_type=EntityType(mapping.entity_type),
            entity_id=mapping.entity_id,
            summary="unlinked deleted event"
        ))

    async def push_local_changes(
        self,
        user_id: str,
        service: BaseCalendarService,
        report: Optional[SyncReport] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> SyncReport:
        """Export pass: push entities changed since their checkpoint.

        Mappings with a pending conflict are left alone until it is resolved.
        """
        report = report or SyncReport(user_id=user_id, sync_type=OperationType.EXPORT)

        for mapping in self.mappings.list_for_user(user_id):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                return report
            await self._export_mapping(user_id, service, mapping, report)

        if self.config.export_unmapped:
            await self._export_unmapped(user_id, service, report, cancel_event)
        return report

    async def _export_mapping(
        self,
        user_id: str,
        service: BaseCalendarService,
        mapping: EventMappingDB,
        report: SyncReport
    ) -> None:
        try:
            entity = self.entities.get(user_id, EntityType(mapping.entity_type), mapping.entity_id)
        except EntityStoreError as e:
            self._record_export_failure(user_id, mapping, report, e)
            return
        if entity is None or entity.updated_at <= mapping.last_synced_at:
            return
        if self.mappings.find_pending_conflict(mapping.id) is not None:
            return

        # Re-read the remote side so an unseen remote edit becomes a conflict instead of being overwritten
        try:
            current = await service.get_event(mapping.google_calendar_id, mapping.google_event_id)
        except EventNotFoundError:
            current = None
        except (CalendarServiceError, EventValidationError) as e:
            self._record_export_failure(user_id, mapping, report, e)
            return
        if current is None or current.is_cancelled:
            self.mappings.delete(mapping.id)
            self.logger.info(f"Google event {mapping.google_event_id} is gone; unlinked {mapping.entity_type} {mapping.entity_id}")
            return

        try:
            detection = self.detector.detect(user_id, current)
        except EntityStoreError as e:
            self._record_export_failure(user_id, mapping, report, e)
            return
        if detection.action == SyncAction.CONFLICT:
            if not detection.conflict_changed:
                return
            report.record(SyncResult(
                action=SyncAction.CONFLICT,
                remote_event_id=current.id,
                entity_type=EntityType(mapping.entity_type),
                entity_id=mapping.entity_id,
                summary=current.summary
            ))
            self._record_operation(
                user_id, OperationType.CONFLICT, OperationStatus.CONFLICT,
                entity_type=mapping.entity_type, entity_id=mapping.entity_id,
                google_event_id=current.id, sync_direction='bidirectional'
            )
            return
        if detection.action != SyncAction.UPDATE_REMOTE_FROM_LOCAL:
            return

        try:
            remote = await self.resolver.push_local(
                service, detection.mapping, detection.entity, self.entities.fields_of(detection.entity)
            )
        except (RemoteWriteFailure, EventValidationError) as e:
            self._record_export_failure(user_id, mapping, report, e)
            return
        self.resolver.checkpoint(detection.mapping, detection.entity, remote, self.clock())

        report.record(SyncResult(
            action=SyncAction.UPDATE_REMOTE_FROM_LOCAL,
            remote_event_id=remote.id,
            entity_type=EntityType(mapping.entity_type),
            entity_id=mapping.entity_id,
            summary=remote.summary
        ))
        self._record_operation(
            user_id, OperationType.EXPORT, OperationStatus.SUCCESS,
            entity_type=mapping.entity_type, entity_id=mapping.entity_id,
            google_event_id=remote.id, sync_direction='outbound'
        )

    async def _export_unmapped(
        self,
        user_id: str,
        service: BaseCalendarService,
        report: SyncReport,
        cancel_event: Optional[asyncio.Event] = None
    ) -> None:
        """Create Google events for entities the user created locally."""
        for entity_type in EntityType:
            for entity in self.entities.list_for_user(user_id, entity_type):
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    return
                if entity.created_by == 'google_calendar':
                    continue
                if entity_type == EntityType.SCHEDULE_BLOCK and not entity.is_active:
                    continue
                if self.mappings.find_by_entity(entity_type, entity.id) is not None:
                    continue

                try:
                    body = self.resolver.remote_body(entity, self.entities.fields_of(entity))
                except EventValidationError as e:
                    self.logger.debug(f"Not exporting {entity_type.value} {entity.id}: {e}")
                    report.skipped += 1
                    continue
                try:
                    remote = await service.create_event(self.config.calendar_id, body)
                except CalendarServiceError as e:
                    self.logger.error(f"Failed to export {entity_type.value} {entity.id}: {e}")
                    report.record(SyncResult(
                        action=SyncAction.UPDATE_REMOTE_FROM_LOCAL,
                        entity_type=entity_type,
                        entity_id=entity.id,
                        success=False,
                        error_message=f"{entity_type.value} {entity.id}: {e}"
                    ))
                    continue

                now = self.clock()
                self.mappings.upsert(EventMappingDB(
                    user_id=user_id,
                    entity_type=entity_type.value,
                    entity_id=entity.id,
                    google_event_id=remote.id,
                    google_calendar_id=self.config.calendar_id,
                    local_event_updated=entity.updated_at,
                    google_event_updated=remote.updated,
                    last_synced_at=max(now, remote.updated, entity.updated_at),
                    content_hash=remote.content_hash()
                ))
                report.record(SyncResult(
                    action=SyncAction.UPDATE_REMOTE_FROM_LOCAL,
                    remote_event_id=remote.id,
                    entity_type=entity_type,
                    entity_id=entity.id,
                    summary=remote.summary
                ))
                self._record_operation(
                    user_id, OperationType.EXPORT, OperationStatus.SUCCESS,
                    entity_type=entity_type.value, entity_id=entity.id,
                    google_event_id=remote.id, sync_direction='outbound'
                )

    def _record_export_failure(self, user_id: str, mapping: EventMappingDB, report: SyncReport, error: Exception) -> None:
        self.logger.error(f"Failed to push {mapping.entity_type} {mapping.entity_id}: {error}")
        report.record(SyncResult(
            action=SyncAction.UPDATE_REMOTE_FROM_LOCAL,
            remote_event_id=mapping.google_event_id,
            entity_type=EntityType(mapping.entity_type),
            entity_id=mapping.entity_id,
            success=False,
            error_message=f"{mapping.entity_type} {mapping.entity_id}: {error}"
        ))
        self._record_operation(
            user_id, OperationType.EXPORT, OperationStatus.FAILED,
            entity_type=mapping.entity_type, entity_id=mapping.entity_id,
            google_event_id=mapping.google_event_id, sync_direction='outbound',
            error_message=str(error)
        )

    async def resolve_conflict(
        self,
        conflict_id: UUID,
        strategy: ResolutionStrategy,
        merged_payload: Optional[Dict[str, Any]] = None
    ) -> SyncConflictDB:
        """Resolve a pending conflict under its user's lock."""
        strategy = ResolutionStrategy(strategy)
        conflict = self.get_conflict(conflict_id)
        user_id = conflict.user_id

        async with self.locks.acquire(user_id):
            service = None
            if strategy != ResolutionStrategy.PREFER_REMOTE:
                await self._ensure_online(user_id)
                service = await self._open_service(user_id)
            try:
                resolved = await self.resolver.resolve(conflict.id, strategy, service, merged_payload)
            except RemoteWriteFailure as e:
                self._record_operation(
                    user_id, OperationType.RESOLVE, OperationStatus.FAILED,
                    entity_type=conflict.entity_type, entity_id=conflict.entity_id,
                    google_event_id=conflict.google_event_id, sync_direction='outbound',
                    error_message=str(e)
                )
                raise

            self._record_operation(
                user_id, OperationType.RESOLVE,
                OperationStatus.SUCCESS if resolved.status == ConflictStatus.RESOLVED.value else OperationStatus.SKIPPED,
                entity_type=conflict.entity_type, entity_id=conflict.entity_id,
                google_event_id=conflict.google_event_id,
                sync_direction='inbound' if strategy == ResolutionStrategy.PREFER_REMOTE else 'bidirectional'
            )
            return resolved

    def get_conflict(self, conflict_id: UUID) -> SyncConflictDB:
        conflict = self.mappings.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        return conflict

    def list_conflicts(
        self,
        user_id: str,
        status: Optional[ConflictStatus] = ConflictStatus.PENDING
    ) -> List[SyncConflictDB]:
        return self.mappings.list_conflicts(user_id, status)

    def suggest_merge(self, conflict_id: UUID) -> Dict[str, Any]:
        return self.resolver.suggest_merge(self.get_conflict(conflict_id))

    async def setup_webhook(self, user_id: str) -> WatchChannelDB:
        """Register a Google push channel for the user's calendar.

        Raises:
            SyncError: If no webhook address is configured
        """
        address = self.settings.webhook_address
        if not address:
            raise SyncError("WEBHOOK_ADDRESS must be configured to register push notifications")

        service = await self._open_service(user_id)
        channel_id = str(uuid4())
        result = await service.watch_events(
            self.config.calendar_id, channel_id, address, token=self.settings.webhook_secret
        )
        with self.db.get_session() as session:
            channel = self.db.save_watch_channel(
                session,
                channel_id=result.get('id', channel_id),
                user_id=user_id,
                calendar_id=self.config.calendar_id,
                address=address,
                resource_id=result.get('resourceId'),
                expiration=parse_channel_expiration(result.get('expiration'))
            )
        self.logger.info(f"Registered Google push channel {channel.channel_id} for user {user_id}")
        return channel

    async def stop_webhooks(self, user_id: str) -> int:
        """Stop and forget every push channel of a user."""
        with self.db.get_session() as session:
            channels = self.db.get_watch_channels(session, user_id)
        if not channels:
            return 0

        service = await self._open_service(user_id)
        for channel in channels:
            if channel.resource_id:
                try:
                    await service.stop_channel(channel.channel_id, channel.resource_id)
                except EventNotFoundError:
                    self.logger.debug(f"Channel {channel.channel_id} already expired")
            with self.db.get_session() as session:
                self.db.delete_watch_channel(session, channel.channel_id)
        return len(channels)

    def handle_webhook(self, channel_id: str, resource_id: Optional[str], resource_state: Optional[str]) -> Optional[str]:
        """Map a push notification to the user whose calendar changed.

        Returns:
            The user id to sync, or None for the initial ``sync`` handshake

        Raises:
            NotFoundError: Unknown channel or mismatched resource
        """
        with self.db.get_session() as session:
            channel = self.db.get_watch_channel(session, channel_id)
        if channel is None:
            raise NotFoundError(f"Unknown push channel {channel_id}")
        if channel.resource_id and resource_id != channel.resource_id:
            raise NotFoundError(f"Resource {resource_id} does not belong to channel {channel_id}")
        if resource_state == 'sync':
            return None
        return channel.user_id

    def connected_users(self) -> List[str]:
        with self.db.get_session() as session:
            return self.db.list_connected_users(session)

    def prune_operations(self, older_than_days: Optional[int] = None) -> int:
        """Delete successful audit rows older than the retention window."""
        days = older_than_days or self.config.operation_retention_days
        with self.db.get_session() as session:
            deleted = self.db.prune_operations(session, days)
        self.logger.info(f"Pruned {deleted} sync operations older than {days} days")
        return deleted

    def get_sync_status(self, user_id: str) -> Dict[str, Any]:
        """Get current sync status and statistics for a user.

        Returns:
            Dictionary with sync status information
        """
        with self.db.get_session() as session:
            state = self.db.get_sync_state(session, user_id)
            statistics = self.db.get_sync_statistics(session, user_id, days=self.config.operation_retention_days)
            recent = self.db.get_recent_operations(session, user_id, limit=10)

        return {
            'user_id': user_id,
            'calendar_id': self.config.calendar_id,
            'total_event_mappings': self.mappings.count_for_user(user_id),
            'pending_conflicts': self.mappings.count_pending_conflicts(user_id),
            'last_sync_at': state.last_sync_at.isoformat() if state and state.last_sync_at else None,
            'has_sync_token': bool(state and state.sync_token),
            'connectivity': self.connectivity.status(),
            'statistics': statistics,
            'recent_failures': [
                {
                    'operation_type': op.operation_type,
                    'entity_type': op.entity_type,
                    'entity_id': op.entity_id,
                    'google_event_id': op.google_event_id,
                    'error_message': op.error_message,
                    'created_at': op.created_at.isoformat(),
                }
                for op in recent
                if op.operation_status == OperationStatus.FAILED.value
            ],
        }

    def _record_operation(
        self,
        user_id: str,
        operation_type: OperationType,
        status: OperationStatus,
        **details: Any
    ) -> None:
        """Append to the audit log. A failure here never fails the sync itself."""
        try:
            with self.db.get_session() as session:
                self.db.create_sync_operation(session, user_id, operation_type.value, status.value, **details)
        except SQLAlchemyError as e:
            self.logger.warning(f"Failed to record {operation_type.value} operation for user {user_id}: {e}")
