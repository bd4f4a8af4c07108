"""Scheduling and single-flight coordination of sync passes."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import suppress
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from pydantic import ValidationError

from ..config import MAX_SYNC_INTERVAL_MINUTES, MIN_SYNC_INTERVAL_MINUTES, Settings
from ..errors import (
    MirrorError,
    SyncConflictError,
    SyncNotRunningError,
    ValidationFailure,
    WebhookDisabledError,
)
from ..models import WebhookPayload
from ..utils import isoformat_or_none, utcnow
from .instances import SourceInstanceManager
from .store import EntityStore, ScheduleSettings
from .sync_engine import AbortSignal, SyncEngine, SyncProgress, SyncReport, TypeReport

if TYPE_CHECKING:  # pragma: no cover - import cycle guard for type checkers
    from .exclusions import ExclusionComputationService
    from .reconciliation import IdentityReconciliationService

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ABORTING = "aborting"


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid payload"


class SyncScheduler:
    """Own the "is a sync running" state and every entry point that starts one.

    Startup, the periodic timer, manual triggers, scan notifications and
    webhooks all go through :meth:`_launch`, so at most one pass is active
    at a time. Exclusion recompute and auto-reconciliation run after a pass
    has released the flag.
    """

    def __init__(
        self,
        settings: Settings,
        engine: SyncEngine,
        store: EntityStore,
        instances: SourceInstanceManager,
        *,
        reconciliation: IdentityReconciliationService | None = None,
        exclusions: ExclusionComputationService | None = None,
        migrations_applied: bool = False,
    ):
        self._settings = settings
        self._engine = engine
        self._store = store
        self._instances = instances
        self._reconciliation = reconciliation
        self._exclusions = exclusions
        self._migrations_applied = migrations_applied

        self._phase = SyncPhase.IDLE
        self._kind: str | None = None
        self._trigger: str | None = None
        self._started_at: datetime | None = None
        self._progress: SyncProgress | None = None
        self._abort = AbortSignal()
        self._current: asyncio.Task[Any] | None = None
        self._last_report: SyncReport | None = None
        self._last_single: TypeReport | None = None

        self._schedule: ScheduleSettings | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._pending: deque[WebhookPayload] = deque()
        self._post_sync_task: asyncio.Task[None] | None = None
        self._post_sync_requested = False

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def is_syncing(self) -> bool:
        return self._phase is not SyncPhase.IDLE

    @property
    def current_task(self) -> asyncio.Task[Any] | None:
        return self._current

    @property
    def post_sync_task(self) -> asyncio.Task[None] | None:
        return self._post_sync_task

    async def start(self) -> None:
        """Load settings, repair stray rows and kick off the startup pass."""

        self._schedule = await self._store.load_settings(self._settings)
        await self._store.repair_unconfigured_rows(await self._instances.known_ids())
        startup_kind = await self.decide_startup_kind()
        await self._store.close_stale_runs()

        if not self._instances.enabled():
            logger.info("No source instances configured; sync scheduler idle")
            return

        if self._settings.sync_on_startup:
            logger.info("Startup %s sync scheduled", startup_kind)
            self._launch(startup_kind, trigger="startup")
        self._start_timer()

    async def stop(self) -> None:
        """Stop the timer and let an in-flight pass wind down."""

        if self._timer_task is not None:
            self._timer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None
        if self._current is not None and not self._current.done():
            self._abort.request()
            with suppress(asyncio.CancelledError):
                await self._current
        if self._post_sync_task is not None:
            self._post_sync_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._post_sync_task
            self._post_sync_task = None

    async def decide_startup_kind(self) -> str:
        """Full after schema changes, first runs and interrupted runs."""

        if self._migrations_applied:
            logger.info("Schema migrations were applied; startup sync will be full")
            return "full"
        if not await self._store.has_sync_state():
            logger.info("No previous sync state found; startup sync will be full")
            return "full"
        last_status = await self._store.last_run_status()
        if last_status in {"running", "aborted"}:
            logger.info(
                "Previous sync ended as %s; startup sync will be full", last_status
            )
            return "full"
        return "incremental"

    async def trigger_full_sync(self, *, trigger: str = "manual") -> asyncio.Task[Any]:
        return self._launch("full", trigger=trigger)

    async def trigger_incremental_sync(
        self, *, trigger: str = "manual"
    ) -> asyncio.Task[Any]:
        return self._launch("incremental", trigger=trigger)

    def abort(self) -> None:
        """Ask the running pass to stop at its next page or batch boundary."""

        if self._phase is SyncPhase.IDLE:
            raise SyncNotRunningError("No sync is currently running")
        if self._phase is SyncPhase.RUNNING:
            logger.info("Abort requested for %s sync", self._kind)
        self._phase = SyncPhase.ABORTING
        self._abort.request()

    async def update_settings(
        self,
        *,
        sync_interval_minutes: int | None = None,
        enable_plugin_webhook: bool | None = None,
        enable_scan_subscription: bool | None = None,
    ) -> ScheduleSettings:
        if sync_interval_minutes is not None:
            if isinstance(sync_interval_minutes, bool) or not isinstance(
                sync_interval_minutes, int
            ):
                raise ValidationFailure("syncIntervalMinutes must be an integer")
            if not (
                MIN_SYNC_INTERVAL_MINUTES
                <= sync_interval_minutes
                <= MAX_SYNC_INTERVAL_MINUTES
            ):
                raise ValidationFailure(
                    "syncIntervalMinutes must be between "
                    f"{MIN_SYNC_INTERVAL_MINUTES} and {MAX_SYNC_INTERVAL_MINUTES}"
                )

        current = await self.get_schedule()
        updated = ScheduleSettings(
            sync_interval_minutes=(
                sync_interval_minutes
                if sync_interval_minutes is not None
                else current.sync_interval_minutes
            ),
            enable_plugin_webhook=(
                enable_plugin_webhook
                if enable_plugin_webhook is not None
                else current.enable_plugin_webhook
            ),
            enable_scan_subscription=(
                enable_scan_subscription
                if enable_scan_subscription is not None
                else current.enable_scan_subscription
            ),
        )
        await self._store.save_settings(updated)
        self._schedule = updated

        if (
            updated.sync_interval_minutes != current.sync_interval_minutes
            and self._timer_task is not None
        ):
            logger.info(
                "Sync interval changed from %s to %s minutes; restarting timer",
                current.sync_interval_minutes,
                updated.sync_interval_minutes,
            )
            self._timer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None
            self._start_timer()
        return updated

    async def get_schedule(self) -> ScheduleSettings:
        if self._schedule is None:
            self._schedule = await self._store.load_settings(self._settings)
        return self._schedule

    async def get_status(self) -> dict[str, Any]:
        schedule = await self.get_schedule()
        cursors = await self._store.load_cursors()
        return {
            "status": self._phase.value,
            "syncing": self.is_syncing,
            "kind": self._kind,
            "trigger": self._trigger,
            "entityType": self._progress.entity_type if self._progress else None,
            "instanceId": self._progress.instance_id if self._progress else None,
            "progress": self._progress.to_payload() if self._progress else None,
            "startedAt": isoformat_or_none(self._started_at),
            "pendingWebhooks": len(self._pending),
            "lastRun": self._last_report.to_payload() if self._last_report else None,
            "lastSingleEntity": (
                self._last_single.to_payload() if self._last_single else None
            ),
            "settings": schedule.to_payload(),
            "cursors": [cursor.to_payload() for cursor in cursors],
        }

    async def handle_webhook(self, payload: WebhookPayload | Mapping[str, Any]) -> bool:
        """Accept a single-entity change notification.

        Returns ``True`` when the change was queued behind a running pass and
        ``False`` when a single-entity sync was started right away.
        """

        schedule = await self.get_schedule()
        if not schedule.enable_plugin_webhook:
            raise WebhookDisabledError("Plugin webhook is disabled in sync settings")
        if not isinstance(payload, WebhookPayload):
            try:
                payload = WebhookPayload.model_validate(payload)
            except ValidationError as exc:
                raise ValidationFailure(describe_validation_error(exc)) from exc
        if payload.instance_id is not None and (
            payload.instance_id not in self._instances.configured_ids()
        ):
            raise ValidationFailure(
                f"instanceId {payload.instance_id} is not a configured source"
            )

        if self._phase is not SyncPhase.IDLE:
            self._pending.append(payload)
            logger.info(
                "Queued %s of %s %s behind the running sync",
                payload.action,
                payload.entity_type,
                payload.entity_id,
            )
            return True

        self._claim("single", "webhook")
        self._current = asyncio.create_task(self._run_single(payload))
        return False

    async def handle_scan_complete(self) -> bool:
        """Start an incremental pass after an upstream library scan."""

        schedule = await self.get_schedule()
        if not schedule.enable_scan_subscription:
            raise WebhookDisabledError("Scan subscription is disabled in sync settings")
        if self._phase is not SyncPhase.IDLE:
            logger.info("Scan completed during a running sync; skipping trigger")
            return False
        self._launch("incremental", trigger="scan")
        return True

    def _claim(self, kind: str, trigger: str) -> None:
        # No await between the check and the assignment.
        if self._phase is not SyncPhase.IDLE:
            raise SyncConflictError(
                f"A {self._kind} sync is already running; try again when it finishes"
            )
        self._phase = SyncPhase.RUNNING
        self._kind = kind
        self._trigger = trigger
        self._started_at = utcnow()
        self._progress = None
        self._abort = AbortSignal()

    def _release(self) -> None:
        self._phase = SyncPhase.IDLE
        self._kind = None
        self._trigger = None
        self._started_at = None
        self._progress = None
        self._current = None

    def _launch(self, kind: str, *, trigger: str) -> asyncio.Task[Any]:
        self._claim(kind, trigger)
        logger.info("%s sync triggered (%s)", kind.capitalize(), trigger)
        task = asyncio.create_task(self._run_pass(kind, trigger))
        self._current = task
        return task

    def _on_progress(self, progress: SyncProgress) -> None:
        self._progress = progress

    async def _run_pass(self, kind: str, trigger: str) -> SyncReport | None:
        changed = False
        report: SyncReport | None = None
        try:
            run_id = await self._store.record_run_start(kind, trigger)
            try:
                report = await self._engine.run(
                    kind, abort=self._abort, progress=self._on_progress
                )
            except Exception as exc:
                logger.exception("%s sync failed: %s", kind.capitalize(), exc)
                await self._store.record_run_finish(
                    run_id, status="failed", entities_synced=0, error=str(exc)
                )
            else:
                self._last_report = report
                await self._store.record_run_finish(
                    run_id,
                    status=report.status,
                    entities_synced=report.total_synced,
                    error=report.error,
                )
                changed = report.changed
                if report.status != "aborted":
                    changed = await self._drain_pending() or changed
        except Exception as exc:  # pragma: no cover - background safety net
            logger.exception("Sync bookkeeping failed: %s", exc)
        finally:
            self._release()
        if changed:
            self._request_post_sync()
        return report

    async def _run_single(self, payload: WebhookPayload) -> TypeReport | None:
        changed = False
        result: TypeReport | None = None
        try:
            result = await self._sync_one(payload)
            changed = bool(result and (result.synced or result.deleted))
            changed = await self._drain_pending() or changed
        finally:
            self._release()
        if changed:
            self._request_post_sync()
        return result

    async def _sync_one(self, payload: WebhookPayload) -> TypeReport | None:
        try:
            result = await self._engine.sync_single(
                payload.entity_type,
                payload.entity_id,
                payload.action,
                payload.instance_id,
            )
        except MirrorError as exc:
            logger.warning(
                "Single-entity sync of %s %s failed: %s",
                payload.entity_type,
                payload.entity_id,
                exc,
            )
            return None
        self._last_single = result
        return result

    async def _drain_pending(self) -> bool:
        changed = False
        while self._pending and not self._abort.requested:
            payload = self._pending.popleft()
            result = await self._sync_one(payload)
            if result and (result.synced or result.deleted):
                changed = True
        return changed

    def _request_post_sync(self) -> None:
        self._post_sync_requested = True
        existing = self._post_sync_task
        if existing is not None and not existing.done():
            return

        async def _runner() -> None:
            try:
                while self._post_sync_requested:
                    self._post_sync_requested = False
                    try:
                        await self.run_post_sync()
                    except Exception as exc:  # pragma: no cover - background safety net
                        logger.exception("Post-sync maintenance failed: %s", exc)
            finally:
                self._post_sync_task = None

        self._post_sync_task = asyncio.create_task(_runner())

    async def run_post_sync(self) -> dict[str, Any]:
        """Purge dangling rows, auto-reconcile and rebuild exclusions."""

        summary: dict[str, Any] = {
            "purged": await self._store.purge_dangling_references()
        }
        if self._settings.auto_reconcile and self._reconciliation is not None:
            result = await self._reconciliation.reconcile_all(
                actor_id=None, automatic=True
            )
            summary["reconciled"] = result
        if self._exclusions is not None:
            summary["exclusions"] = await self._exclusions.recompute_all_users()
        return summary

    def _start_timer(self) -> None:
        if self._timer_task is not None:
            return
        self._timer_task = asyncio.create_task(self._timer_loop())

    async def _timer_loop(self) -> None:
        while True:
            schedule = await self.get_schedule()
            await asyncio.sleep(schedule.sync_interval_minutes * 60)
            if self._phase is not SyncPhase.IDLE:
                logger.debug("Scheduled sync skipped; a sync is already running")
                continue
            try:
                self._launch("incremental", trigger="timer")
            except SyncConflictError:
                continue
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled sync failed to start: %s", exc)
