"""Entry point for the FastAPI-powered Stash mirror service."""

from __future__ import annotations

import logging
import secrets
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Callable, TypeVar

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from .config import Settings, settings
from .database import Database
from .entities import ENTITY_TYPES
from .errors import MirrorError
from .models import ReconcileRequest, SyncSettingsUpdate, TriggerRequest
from .services.exclusions import ExclusionComputationService
from .services.instances import InstanceConfig, SourceInstanceManager
from .services.queries import LibraryQueryService
from .services.reconciliation import IdentityReconciliationService
from .services.scheduler import SyncScheduler, describe_validation_error
from .services.stash import StashClient
from .services.store import EntityStore
from .services.sync_engine import SyncEngine

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

app: FastAPI

ModelT = TypeVar("ModelT", bound=BaseModel)
ServiceT = TypeVar("ServiceT")


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    stash_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            timeout=httpx.Timeout(settings.upstream_timeout_seconds, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    def _client_factory(instance: InstanceConfig) -> StashClient:
        return StashClient(settings, stash_http_client, instance.url, instance.api_key)

    instances = SourceInstanceManager(
        settings, database.session_factory, client_factory=_client_factory
    )
    await instances.load()
    store = EntityStore(database.session_factory)
    engine = SyncEngine(settings, instances, store)
    reconciliation = IdentityReconciliationService(settings, database.session_factory)
    exclusions = ExclusionComputationService(settings, database.session_factory)
    scheduler = SyncScheduler(
        settings,
        engine,
        store,
        instances,
        reconciliation=reconciliation,
        exclusions=exclusions,
        migrations_applied=database.migrations_applied,
    )

    fastapi_app.state.settings = settings
    fastapi_app.state.database = database
    fastapi_app.state.scheduler = scheduler
    fastapi_app.state.reconciliation = reconciliation
    fastapi_app.state.exclusions = exclusions
    fastapi_app.state.library = LibraryQueryService(database.session_factory)
    await scheduler.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await scheduler.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Local mirror of a Stash catalog with per-user visibility",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def _service(fastapi_app: FastAPI, name: str, kind: type[ServiceT]) -> ServiceT:
    service = getattr(fastapi_app.state, name, None)
    if not isinstance(service, kind):
        raise RuntimeError(f"{kind.__name__} not initialised")
    return service


def get_scheduler(fastapi_app: FastAPI) -> SyncScheduler:
    return _service(fastapi_app, "scheduler", SyncScheduler)


def get_reconciliation_service(fastapi_app: FastAPI) -> IdentityReconciliationService:
    return _service(fastapi_app, "reconciliation", IdentityReconciliationService)


def get_exclusion_service(fastapi_app: FastAPI) -> ExclusionComputationService:
    return _service(fastapi_app, "exclusions", ExclusionComputationService)


def get_library_service(fastapi_app: FastAPI) -> LibraryQueryService:
    return _service(fastapi_app, "library", LibraryQueryService)


def _error(status_code: int, error: str, description: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": error, "description": description},
    )


def _translate(exc: MirrorError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


async def _read_model(request: Request, model: type[ModelT], *, optional: bool = False) -> ModelT:
    body = await request.body()
    if not body.strip():
        if optional:
            return model()
        raise _error(400, "validation", "Request body is required")
    try:
        payload = await request.json()
    except ValueError as exc:
        raise _error(400, "validation", "Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise _error(400, "validation", "Payload must be a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise _error(400, "validation", describe_validation_error(exc)) from exc


def _parse_int(value: str | None, name: str, default: int | None = None) -> int:
    if value is None or value == "":
        if default is None:
            raise _error(400, "validation", f"{name} is required")
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise _error(400, "validation", f"{name} must be an integer") from exc


def register_routes(fastapi_app: FastAPI) -> None:
    def _require_admin(request: Request) -> str | None:
        current: Settings = getattr(fastapi_app.state, "settings", settings)
        expected = current.admin_token
        if not expected:
            raise _error(503, "admin_disabled", "ADMIN_TOKEN is not configured")
        supplied = request.headers.get("x-admin-token") or ""
        if not secrets.compare_digest(supplied.encode(), expected.encode()):
            raise _error(401, "unauthorized", "Invalid admin token")
        return request.headers.get("x-actor-id") or None

    async def _call(factory: Callable[[], Any]) -> Any:
        try:
            return await factory()
        except MirrorError as exc:
            raise _translate(exc) from exc

    def _check_entity_type(entity_type: str) -> None:
        if entity_type not in ENTITY_TYPES:
            raise _error(400, "validation", f"Unknown entity type: {entity_type}")

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/sync/status")
    async def sync_status(request: Request) -> dict[str, Any]:
        _require_admin(request)
        scheduler = get_scheduler(fastapi_app)
        return await _call(scheduler.get_status)

    @fastapi_app.post("/api/sync/trigger", status_code=202)
    async def sync_trigger(request: Request) -> dict[str, Any]:
        _require_admin(request)
        scheduler = get_scheduler(fastapi_app)
        body = await _read_model(request, TriggerRequest, optional=True)
        if body.kind == "full":
            await _call(scheduler.trigger_full_sync)
        else:
            await _call(scheduler.trigger_incremental_sync)
        return {"started": True, "kind": body.kind}

    @fastapi_app.post("/api/sync/abort")
    async def sync_abort(request: Request) -> dict[str, Any]:
        _require_admin(request)
        scheduler = get_scheduler(fastapi_app)
        try:
            scheduler.abort()
        except MirrorError as exc:
            raise _translate(exc) from exc
        return {"aborting": True}

    @fastapi_app.get("/api/sync/settings")
    async def sync_settings(request: Request) -> dict[str, Any]:
        _require_admin(request)
        scheduler = get_scheduler(fastapi_app)
        schedule = await _call(scheduler.get_schedule)
        return schedule.to_payload()

    @fastapi_app.put("/api/sync/settings")
    async def update_sync_settings(request: Request) -> dict[str, Any]:
        _require_admin(request)
        scheduler = get_scheduler(fastapi_app)
        body = await _read_model(request, SyncSettingsUpdate)
        schedule = await _call(
            lambda: scheduler.update_settings(
                sync_interval_minutes=body.sync_interval_minutes,
                enable_plugin_webhook=body.enable_plugin_webhook,
                enable_scan_subscription=body.enable_scan_subscription,
            )
        )
        return schedule.to_payload()

    @fastapi_app.post("/api/sync/notify", status_code=202)
    async def sync_notify(request: Request) -> dict[str, Any]:
        _require_admin(request)
        scheduler = get_scheduler(fastapi_app)
        try:
            payload = await request.json()
        except ValueError as exc:
            raise _error(400, "validation", "Invalid JSON payload") from exc
        if not isinstance(payload, dict):
            raise _error(400, "validation", "Payload must be a JSON object")
        queued = await _call(lambda: scheduler.handle_webhook(payload))
        return {"accepted": True, "queued": queued}

    @fastapi_app.post("/api/sync/scan-complete", status_code=202)
    async def sync_scan_complete(request: Request) -> dict[str, Any]:
        _require_admin(request)
        scheduler = get_scheduler(fastapi_app)
        started = await _call(scheduler.handle_scan_complete)
        return {"started": started}

    @fastapi_app.get("/api/admin/orphans")
    async def list_orphans(request: Request, entity_type: str = "scene") -> dict[str, Any]:
        _require_admin(request)
        service = get_reconciliation_service(fastapi_app)
        orphans = await _call(
            lambda: service.find_orphaned_entities_with_activity(entity_type)
        )
        return {
            "entityType": entity_type,
            "total": len(orphans),
            "orphans": [orphan.to_payload() for orphan in orphans],
        }

    @fastapi_app.get("/api/admin/orphans/{entity_type}/{instance_id}/{entity_id}/matches")
    async def orphan_matches(
        request: Request, entity_type: str, instance_id: str, entity_id: str
    ) -> dict[str, Any]:
        _require_admin(request)
        _check_entity_type(entity_type)
        service = get_reconciliation_service(fastapi_app)
        matches = await _call(
            lambda: service.find_matches(entity_type, instance_id, entity_id)
        )
        return {
            "entityId": entity_id,
            "instanceId": instance_id,
            "matches": [match.to_payload() for match in matches],
        }

    @fastapi_app.post("/api/admin/orphans/{entity_type}/{instance_id}/{entity_id}/reconcile")
    async def reconcile_orphan(
        request: Request, entity_type: str, instance_id: str, entity_id: str
    ) -> dict[str, Any]:
        actor_id = _require_admin(request)
        _check_entity_type(entity_type)
        service = get_reconciliation_service(fastapi_app)
        body = await _read_model(request, ReconcileRequest)
        result = await _call(
            lambda: service.reconcile(
                entity_type,
                instance_id,
                entity_id,
                body.target_id,
                body.target_instance_id,
                actor_id=actor_id,
            )
        )
        return result.to_payload()

    @fastapi_app.post("/api/admin/orphans/{entity_type}/{instance_id}/{entity_id}/discard")
    async def discard_orphan(
        request: Request, entity_type: str, instance_id: str, entity_id: str
    ) -> dict[str, Any]:
        _require_admin(request)
        _check_entity_type(entity_type)
        service = get_reconciliation_service(fastapi_app)
        deleted = await _call(lambda: service.discard(entity_type, instance_id, entity_id))
        return {"discarded": True, "deleted": deleted}

    @fastapi_app.post("/api/admin/reconcile-all")
    async def reconcile_all(request: Request) -> dict[str, Any]:
        actor_id = _require_admin(request)
        service = get_reconciliation_service(fastapi_app)
        return await _call(lambda: service.reconcile_all(actor_id, automatic=False))

    @fastapi_app.get("/api/admin/duplicates")
    async def cross_instance_duplicates(request: Request) -> dict[str, Any]:
        _require_admin(request)
        service = get_reconciliation_service(fastapi_app)
        groups = await _call(service.find_cross_instance_duplicates)
        return {"total": len(groups), "groups": groups}

    @fastapi_app.post("/api/exclusions/recompute/{user_id}")
    async def recompute_user(request: Request, user_id: str) -> dict[str, Any]:
        _require_admin(request)
        service = get_exclusion_service(fastapi_app)
        parsed = _parse_int(user_id, "userId")
        if parsed <= 0:
            raise _error(400, "validation", "userId must be a positive integer")
        result = await _call(lambda: service.recompute_for_user(parsed))
        return result.to_payload()

    @fastapi_app.post("/api/exclusions/recompute-all")
    async def recompute_all(request: Request) -> dict[str, Any]:
        _require_admin(request)
        service = get_exclusion_service(fastapi_app)
        return await _call(service.recompute_all_users)

    @fastapi_app.get("/api/exclusions/stats")
    async def exclusion_stats(request: Request) -> dict[str, Any]:
        _require_admin(request)
        service = get_exclusion_service(fastapi_app)
        return await _call(service.stats)

    @fastapi_app.get("/api/library/{entity_type}")
    async def library(request: Request, entity_type: str) -> dict[str, Any]:
        params = request.query_params
        user_id = _parse_int(params.get("userId"), "userId")
        page = _parse_int(params.get("page"), "page", default=1)
        per_page = _parse_int(params.get("perPage"), "perPage", default=50)
        service = get_library_service(fastapi_app)
        result = await _call(
            lambda: service.list_visible(user_id, entity_type, page, per_page)
        )
        return result.to_payload()


app = create_app()
