from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from fastapi.testclient import TestClient

from mirror.errors import (
    NotFoundError,
    ReconciliationConflictError,
    SyncConflictError,
    SyncNotRunningError,
    ValidationFailure,
    WebhookDisabledError,
)
from mirror.main import register_routes
from mirror.services.exclusions import ExclusionComputationService, ExclusionResult
from mirror.services.queries import LibraryPage, LibraryQueryService
from mirror.services.reconciliation import (
    IdentityReconciliationService,
    ReconcileResult,
    UserTransfer,
)
from mirror.services.scheduler import SyncScheduler
from mirror.services.store import ScheduleSettings

from conftest import build_settings

TOKEN = "secret-token"
ADMIN = {"X-Admin-Token": TOKEN, "X-Actor-Id": "ops"}


class DummyScheduler(SyncScheduler):
    """Scheduler stub that records calls instead of syncing."""

    def __init__(self) -> None:  # pragma: no cover - nothing to initialise
        # Skip super().__init__ so no engine or database is needed.
        self.running = False
        self.webhook_enabled = True
        self.triggered: list[str] = []
        self.webhooks: list[dict[str, Any]] = []
        self.schedule = ScheduleSettings(60, True, False)

    async def trigger_full_sync(self, *, trigger: str = "manual"):  # type: ignore[override]
        return self._trigger("full")

    async def trigger_incremental_sync(self, *, trigger: str = "manual"):  # type: ignore[override]
        return self._trigger("incremental")

    def _trigger(self, kind: str) -> None:
        if self.running:
            raise SyncConflictError("A sync is already running")
        self.running = True
        self.triggered.append(kind)

    def abort(self) -> None:  # type: ignore[override]
        if not self.running:
            raise SyncNotRunningError("No sync is running")

    async def get_status(self) -> dict[str, Any]:  # type: ignore[override]
        return {"status": "running" if self.running else "idle"}

    async def get_schedule(self) -> ScheduleSettings:  # type: ignore[override]
        return self.schedule

    async def update_settings(  # type: ignore[override]
        self,
        *,
        sync_interval_minutes: int | None = None,
        enable_plugin_webhook: bool | None = None,
        enable_scan_subscription: bool | None = None,
    ) -> ScheduleSettings:
        if sync_interval_minutes is not None:
            self.schedule.sync_interval_minutes = sync_interval_minutes
        if enable_plugin_webhook is not None:
            self.schedule.enable_plugin_webhook = enable_plugin_webhook
        return self.schedule

    async def handle_webhook(self, payload: dict[str, Any]) -> bool:  # type: ignore[override]
        if not self.webhook_enabled:
            raise WebhookDisabledError("Plugin webhook is disabled")
        if payload.get("action") not in {"create", "update", "delete"}:
            raise ValidationFailure("action: invalid")
        self.webhooks.append(payload)
        return self.running

    async def handle_scan_complete(self) -> bool:  # type: ignore[override]
        return not self.running


class DummyReconciliation(IdentityReconciliationService):
    def __init__(self) -> None:  # pragma: no cover - nothing to initialise
        self.busy: set[str] = set()
        self.actors: list[str | None] = []

    async def reconcile(  # type: ignore[override]
        self,
        entity_type: str,
        instance_id: str,
        entity_id: str,
        target_id: str,
        target_instance_id: str,
        *,
        actor_id: str | None = None,
        automatic: bool = False,
        matched_by: str = "manual",
    ) -> ReconcileResult:
        if entity_id in self.busy:
            raise ReconciliationConflictError(f"{entity_id} is already being reconciled")
        if target_id == "missing":
            raise NotFoundError("Target does not exist")
        self.actors.append(actor_id)
        return ReconcileResult(
            entity_type,
            (entity_id, instance_id),
            (target_id, target_instance_id),
            [UserTransfer(1, play_count=4)],
        )


class DummyExclusions(ExclusionComputationService):
    def __init__(self) -> None:  # pragma: no cover - nothing to initialise
        self.users: list[int] = []

    async def recompute_for_user(self, user_id: int, *, snapshot=None) -> ExclusionResult:  # type: ignore[override]
        self.users.append(user_id)
        return ExclusionResult(
            user_id=user_id,
            excluded={("scene", "1", "main"): "hidden"},
            visible_counts={("scene", "main"): 2},
        )


class DummyLibrary(LibraryQueryService):
    def __init__(self) -> None:  # pragma: no cover - nothing to initialise
        self.calls: list[tuple[int, str, int, int]] = []

    async def list_visible(  # type: ignore[override]
        self, user_id: int, entity_type: str, page: int = 1, per_page: int = 50
    ) -> LibraryPage:
        if entity_type == "playlist":
            raise ValidationFailure("Unknown entity type: playlist")
        self.calls.append((user_id, entity_type, page, per_page))
        return LibraryPage(entity_type, page, per_page, total=1, items=[{"id": "2"}])


def _app(**overrides: Any) -> tuple[FastAPI, DummyScheduler]:
    app = FastAPI()
    register_routes(app)
    scheduler = DummyScheduler()
    app.state.settings = build_settings(ADMIN_TOKEN=TOKEN, **overrides)
    app.state.scheduler = scheduler
    app.state.reconciliation = DummyReconciliation()
    app.state.exclusions = DummyExclusions()
    app.state.library = DummyLibrary()
    return app, scheduler


def test_admin_routes_require_a_configured_token() -> None:
    app, _ = _app()
    app.state.settings = build_settings()

    with TestClient(app) as client:
        response = client.get("/api/sync/status", headers=ADMIN)

    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "admin_disabled"


def test_admin_routes_reject_wrong_token() -> None:
    app, _ = _app()

    with TestClient(app) as client:
        missing = client.get("/api/sync/status")
        wrong = client.post("/api/sync/trigger", headers={"X-Admin-Token": "nope"})
        health = client.get("/healthz")

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert health.json() == {"status": "ok"}


def test_trigger_conflict_and_abort() -> None:
    app, scheduler = _app()

    with TestClient(app) as client:
        idle_abort = client.post("/api/sync/abort", headers=ADMIN)
        started = client.post("/api/sync/trigger", headers=ADMIN, json={"type": "full"})
        conflict = client.post("/api/sync/trigger", headers=ADMIN)
        aborted = client.post("/api/sync/abort", headers=ADMIN)
        bad_kind = client.post("/api/sync/trigger", headers=ADMIN, json={"type": "partial"})

    assert idle_abort.status_code == 400
    assert idle_abort.json()["detail"]["error"] == "not_running"
    assert started.status_code == 202
    assert started.json() == {"started": True, "kind": "full"}
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["error"] == "conflict"
    assert aborted.json() == {"aborting": True}
    assert bad_kind.status_code == 400
    assert scheduler.triggered == ["full"]


def test_settings_round_trip_and_validation() -> None:
    app, _ = _app()

    with TestClient(app) as client:
        current = client.get("/api/sync/settings", headers=ADMIN)
        too_small = client.put(
            "/api/sync/settings", headers=ADMIN, json={"syncIntervalMinutes": 1}
        )
        updated = client.put(
            "/api/sync/settings",
            headers=ADMIN,
            json={"syncIntervalMinutes": 15, "enablePluginWebhook": True},
        )

    assert current.json()["syncIntervalMinutes"] == 60
    assert too_small.status_code == 400
    assert too_small.json()["detail"]["error"] == "validation"
    assert updated.json() == {
        "syncIntervalMinutes": 15,
        "enableScanSubscription": True,
        "enablePluginWebhook": True,
    }


def test_webhook_notify_reports_queueing_and_errors() -> None:
    app, scheduler = _app()
    payload = {"entityType": "scene", "entityId": "7", "action": "update"}

    with TestClient(app) as client:
        idle = client.post("/api/sync/notify", headers=ADMIN, json=payload)
        scheduler.running = True
        queued = client.post("/api/sync/notify", headers=ADMIN, json=payload)
        malformed = client.post(
            "/api/sync/notify", headers=ADMIN, json={**payload, "action": "merge"}
        )
        not_object = client.post("/api/sync/notify", headers=ADMIN, json=[payload])
        scheduler.webhook_enabled = False
        disabled = client.post("/api/sync/notify", headers=ADMIN, json=payload)

    assert idle.status_code == 202
    assert idle.json() == {"accepted": True, "queued": False}
    assert queued.json() == {"accepted": True, "queued": True}
    assert malformed.status_code == 400
    assert not_object.status_code == 400
    assert disabled.status_code == 403
    assert len(scheduler.webhooks) == 2


def test_reconcile_route_translates_service_errors() -> None:
    app, _ = _app()
    service = app.state.reconciliation
    route = "/api/admin/orphans/scene/main/1/reconcile"

    with TestClient(app) as client:
        ok = client.post(route, headers=ADMIN, json={"targetId": "2", "targetInstanceId": "main"})
        missing_body = client.post(route, headers=ADMIN)
        not_found = client.post(
            route, headers=ADMIN, json={"targetId": "missing", "targetInstanceId": "main"}
        )
        service.busy.add("1")
        conflict = client.post(
            route, headers=ADMIN, json={"targetId": "2", "targetInstanceId": "main"}
        )
        bad_type = client.post(
            "/api/admin/orphans/playlist/main/1/reconcile",
            headers=ADMIN,
            json={"targetId": "2", "targetInstanceId": "main"},
        )

    assert ok.status_code == 200
    assert ok.json()["playCountTransferred"] == 4
    assert service.actors == ["ops"]
    assert missing_body.status_code == 400
    assert not_found.status_code == 404
    assert conflict.status_code == 409
    assert bad_type.status_code == 400


def test_recompute_rejects_non_positive_user_ids() -> None:
    app, _ = _app()

    with TestClient(app) as client:
        zero = client.post("/api/exclusions/recompute/0", headers=ADMIN)
        text = client.post("/api/exclusions/recompute/abc", headers=ADMIN)
        ok = client.post("/api/exclusions/recompute/4", headers=ADMIN)

    assert zero.status_code == 400
    assert text.status_code == 400
    assert ok.status_code == 200
    assert ok.json()["byReason"] == {"hidden": 1}
    assert app.state.exclusions.users == [4]


def test_library_listing_parses_query_parameters() -> None:
    app, _ = _app()

    with TestClient(app) as client:
        ok = client.get("/api/library/scene", params={"userId": 3, "perPage": 10})
        missing_user = client.get("/api/library/scene")
        unknown = client.get("/api/library/playlist", params={"userId": 3})

    assert ok.status_code == 200
    assert ok.json()["items"] == [{"id": "2"}]
    assert app.state.library.calls == [(3, "scene", 1, 10)]
    assert missing_user.status_code == 400
    assert unknown.status_code == 400
