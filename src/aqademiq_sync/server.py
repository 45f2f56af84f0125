"""HTTP server with background sync runtime."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, load_settings
from .database import SyncConflictDB
from .exceptions import (
    ConflictStateError,
    EventValidationError,
    NotFoundError,
    OfflineError,
    RemoteWriteFailure,
    StoreError,
    SyncError,
)
from .models import ConflictStatus, ResolutionStrategy, utc_now
from .services.base import AuthenticationError, CalendarServiceError
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Background poll loop plus an explicit readiness signal.

    Created and torn down by the application lifespan; handlers reach it
    through ``app.state.runtime``.
    """

    def __init__(self, engine: SyncEngine, poll_interval_seconds: int, run_poller: bool = True):
        self.engine = engine
        self.poll_interval_seconds = poll_interval_seconds
        self.run_poller = run_poller
        self.ready = asyncio.Event()
        self.trigger = asyncio.Event()
        self.running = False
        self.pending_users: Set[str] = set()
        self.last_sync: Optional[datetime] = None
        self.sync_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self.engine.initialize()
        self.running = True
        if self.run_poller:
            self.sync_task = asyncio.create_task(self.run())
        self.ready.set()
        logger.info("Sync runtime ready")

    async def stop(self) -> None:
        self.ready.clear()
        self.running = False
        self.trigger.set()
        if self.sync_task:
            done, _ = await asyncio.wait([self.sync_task], timeout=5)
            if not done:
                self.sync_task.cancel()
        await self.engine.cleanup()
        logger.info("Sync runtime stopped")

    def signal(self, user_id: Optional[str] = None) -> None:
        """Request a sync soon, for one user or (without user_id) for everyone."""
        if user_id:
            self.pending_users.add(user_id)
        if not self.trigger.is_set():
            self.trigger.set()

    async def run(self) -> None:
        while self.running:
            # Wait for either trigger or interval timeout
            try:
                await asyncio.wait_for(self.trigger.wait(), timeout=self.poll_interval_seconds)
                timed_out = False
            except asyncio.TimeoutError:
                timed_out = True
            self.trigger.clear()
            if not self.running:
                break

            users = sorted(self.pending_users)
            self.pending_users.clear()
            if timed_out or not users:
                users = self.engine.connected_users()
            await self.sync_users(users)

    async def sync_users(self, users: Iterable[str]) -> None:
        for user_id in users:
            try:
                await self.engine.incremental_sync(user_id)
            except OfflineError:
                logger.info("Offline; skipping the remaining users until the next poll")
                break
            except (SyncError, CalendarServiceError, SQLAlchemyError):
                # The loop must outlive a single user's failure
                logger.exception(f"Background sync for user {user_id} failed")
        self.last_sync = utc_now()


class ResolveRequest(BaseModel):
    strategy: ResolutionStrategy
    merged_payload: Optional[Dict[str, Any]] = Field(None, description="Local field values for the merge strategy")


def conflict_to_dict(conflict: SyncConflictDB) -> Dict[str, Any]:
    return {
        'id': str(conflict.id),
        'user_id': conflict.user_id,
        'mapping_id': str(conflict.mapping_id) if conflict.mapping_id else None,
        'entity_type': conflict.entity_type,
        'entity_id': conflict.entity_id,
        'google_event_id': conflict.google_event_id,
        'conflict_type': conflict.conflict_type,
        'status': conflict.status,
        'resolution': conflict.resolution,
        'local_data': conflict.local_snapshot,
        'google_data': conflict.remote_snapshot,
        'created_at': conflict.created_at.isoformat() if conflict.created_at else None,
        'resolved_at': conflict.resolved_at.isoformat() if conflict.resolved_at else None,
    }


def get_runtime(request: Request) -> SyncRuntime:
    return request.app.state.runtime


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.runtime.engine


def _register_error_handlers(app: FastAPI) -> None:
    status_codes = [
        (NotFoundError, 404),
        (ConflictStateError, 409),
        (EventValidationError, 422),
        (RemoteWriteFailure, 502),
        (StoreError, 503),
        (OfflineError, 503),
        (AuthenticationError, 401),
        (CalendarServiceError, 502),
        (SyncError, 400),
    ]

    def make_handler(status_code: int):
        async def handler(request: Request, exc: Exception) -> JSONResponse:
            if status_code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc}")
            return JSONResponse(
                status_code=status_code,
                content={'error': type(exc).__name__, 'detail': str(exc)}
            )
        return handler

    for exc_class, status_code in status_codes:
        app.add_exception_handler(exc_class, make_handler(status_code))


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[SyncEngine] = None,
    run_poller: bool = True
) -> FastAPI:
    """Build the application.

    Args:
        settings: Application settings, loaded from the environment when omitted
        engine: Sync engine to serve, built from settings when omitted
        run_poller: Start the background poll loop
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = settings or (engine.settings if engine else load_settings())
        sync_engine = engine or SyncEngine(app_settings)
        runtime = SyncRuntime(sync_engine, app_settings.sync_config.poll_interval_seconds, run_poller)
        app.state.settings = app_settings
        app.state.runtime = runtime
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="Aqademiq Sync", version="1.0.0", lifespan=lifespan)
    _register_error_handlers(app)

    @app.get("/health")
    async def health(runtime: SyncRuntime = Depends(get_runtime)):
        return {
            "ok": runtime.ready.is_set(),
            "online": runtime.engine.connectivity.is_online,
            "last_sync": runtime.last_sync.isoformat() if runtime.last_sync else None,
            "interval_seconds": runtime.poll_interval_seconds,
        }

    @app.post("/users/{user_id}/sync")
    async def sync_user(user_id: str, full: bool = False, engine: SyncEngine = Depends(get_engine)):
        if full:
            report = await engine.full_sync(user_id)
        else:
            report = await engine.incremental_sync(user_id)
        return report.model_dump(mode='json')

    @app.get("/users/{user_id}/status")
    async def user_status(user_id: str, engine: SyncEngine = Depends(get_engine)):
        return engine.get_sync_status(user_id)

    @app.get("/users/{user_id}/conflicts")
    async def user_conflicts(
        user_id: str,
        status: Optional[str] = ConflictStatus.PENDING.value,
        engine: SyncEngine = Depends(get_engine)
    ) -> List[Dict[str, Any]]:
        if status == 'all':
            wanted = None
        else:
            try:
                wanted = ConflictStatus(status)
            except ValueError:
                raise HTTPException(status_code=422, detail=f"Unknown conflict status: {status}")
        return [conflict_to_dict(c) for c in engine.list_conflicts(user_id, wanted)]

    @app.post("/users/{user_id}/webhook")
    async def register_webhook(user_id: str, engine: SyncEngine = Depends(get_engine)):
        channel = await engine.setup_webhook(user_id)
        return {
            "channel_id": channel.channel_id,
            "resource_id": channel.resource_id,
            "expiration": channel.expiration.isoformat() if channel.expiration else None,
        }

    @app.get("/conflicts/{conflict_id}")
    async def get_conflict(conflict_id: UUID, engine: SyncEngine = Depends(get_engine)):
        return conflict_to_dict(engine.get_conflict(conflict_id))

    @app.get("/conflicts/{conflict_id}/suggested-merge")
    async def suggested_merge(conflict_id: UUID, engine: SyncEngine = Depends(get_engine)):
        return engine.suggest_merge(conflict_id)

    @app.post("/conflicts/{conflict_id}/resolve")
    async def resolve_conflict(
        conflict_id: UUID,
        body: ResolveRequest,
        engine: SyncEngine = Depends(get_engine)
    ):
        resolved = await engine.resolve_conflict(conflict_id, body.strategy, body.merged_payload)
        return conflict_to_dict(resolved)

    @app.post("/webhooks/google")
    async def google_webhook(request: Request, runtime: SyncRuntime = Depends(get_runtime)):
        # Validate channel token if configured
        expected = request.app.state.settings.webhook_secret
        token = request.headers.get("X-Goog-Channel-Token")
        if expected and token != expected:
            raise HTTPException(status_code=401, detail="invalid channel token")

        channel_id = request.headers.get("X-Goog-Channel-ID")
        resource_id = request.headers.get("X-Goog-Resource-ID")
        resource_state = request.headers.get("X-Goog-Resource-State")
        if not channel_id or not resource_id:
            raise HTTPException(status_code=400, detail="missing channel/resource headers")

        user_id = runtime.engine.handle_webhook(channel_id, resource_id, resource_state)
        if user_id:
            runtime.signal(user_id)

        # Google expects 2xx quickly
        return Response(status_code=204)

    return app
