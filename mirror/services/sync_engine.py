"""Paged fetch and bulk upsert of upstream entities into the local mirror."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from ..config import Settings
from ..entities import SYNC_ORDER, revival_dependents
from ..errors import SyncAborted, UpstreamError
from ..utils import chunked, format_cursor, later, utcnow
from .instances import InstanceConfig, SourceInstanceManager
from .normalize import normalize_page, normalize_record
from .stash import UpstreamClient
from .store import CursorUpdate, EntityStore

logger = logging.getLogger(__name__)

SYNC_KINDS = ("full", "incremental")


class AbortSignal:
    """Cooperative cancellation flag checked between pages and batches."""

    def __init__(self) -> None:
        self._requested = False

    def request(self) -> None:
        self._requested = True

    @property
    def requested(self) -> bool:
        return self._requested

    def check(self) -> None:
        if self._requested:
            raise SyncAborted()


@dataclass(slots=True)
class SyncProgress:
    kind: str
    instance_id: str
    entity_type: str
    processed: int = 0
    total: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "instanceId": self.instance_id,
            "entityType": self.entity_type,
            "processed": self.processed,
            "total": self.total,
        }


ProgressCallback = Callable[[SyncProgress], None]


@dataclass(slots=True)
class TypeReport:
    """Result of one entity type's pass for one instance."""

    instance_id: str
    entity_type: str
    mode: str
    synced: int = 0
    deleted: int = 0
    revived: int = 0
    pages: int = 0
    max_updated_at: datetime | None = None
    duration_ms: int = 0
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "entityType": self.entity_type,
            "mode": self.mode,
            "synced": self.synced,
            "deleted": self.deleted,
            "revived": self.revived,
            "pages": self.pages,
            "maxUpdatedAt": self.max_updated_at.isoformat() if self.max_updated_at else None,
            "durationMs": self.duration_ms,
            "error": self.error,
        }


@dataclass(slots=True)
class SyncReport:
    kind: str
    status: str = "completed"
    types: list[TypeReport] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def total_synced(self) -> int:
        return sum(report.synced for report in self.types)

    @property
    def total_deleted(self) -> int:
        return sum(report.deleted for report in self.types)

    @property
    def changed(self) -> bool:
        return self.total_synced > 0 or self.total_deleted > 0

    @property
    def failures(self) -> list[TypeReport]:
        return [report for report in self.types if report.error]

    @property
    def error(self) -> str | None:
        failures = self.failures
        if not failures:
            return None
        return "; ".join(
            f"{report.entity_type}@{report.instance_id}: {report.error}"
            for report in failures
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "status": self.status,
            "totalSynced": self.total_synced,
            "totalDeleted": self.total_deleted,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "types": [report.to_payload() for report in self.types],
        }


class SyncEngine:
    """Run full and incremental passes across every configured instance."""

    def __init__(
        self,
        settings: Settings,
        instances: SourceInstanceManager,
        store: EntityStore,
        *,
        entity_types: Iterable[str] = SYNC_ORDER,
    ):
        self._settings = settings
        self._instances = instances
        self._store = store
        self._entity_types = tuple(entity_types)

    async def run(
        self,
        kind: str,
        *,
        abort: AbortSignal,
        progress: ProgressCallback | None = None,
    ) -> SyncReport:
        """Run one pass of ``kind`` over every instance and entity type.

        Cursor updates are staged while the pass runs and committed once at
        the end. An aborted pass commits none of them.
        """

        if kind not in SYNC_KINDS:
            raise ValueError(f"Unknown sync kind: {kind}")
        report = SyncReport(kind=kind)
        staged: list[CursorUpdate] = []
        try:
            for instance in self._instances.enabled():
                client = self._instances.client_for(instance.id)
                pending = deque(self._entity_types)
                forced: set[str] = set()
                swept_full: set[str] = set()
                while pending:
                    entity_type = pending.popleft()
                    abort.check()
                    type_report = await self._run_type(
                        kind,
                        instance,
                        client,
                        entity_type,
                        abort,
                        progress,
                        force_full=entity_type in forced,
                    )
                    if type_report.mode == "full" and type_report.error is None:
                        swept_full.add(entity_type)
                    if type_report.revived:
                        for dependent in revival_dependents(entity_type):
                            if dependent not in self._entity_types or dependent in forced:
                                continue
                            forced.add(dependent)
                            if dependent not in pending and dependent not in swept_full:
                                pending.append(dependent)
                    report.types.append(type_report)
                    staged.append(
                        CursorUpdate(
                            instance_id=instance.id,
                            entity_type=entity_type,
                            mode=type_report.mode,
                            max_updated_at=type_report.max_updated_at,
                            synced=type_report.synced,
                            duration_ms=type_report.duration_ms,
                            total_entities=(
                                await self._store.live_count(entity_type, instance.id)
                                if type_report.error is None
                                else 0
                            ),
                            error=type_report.error,
                        )
                    )
        except SyncAborted:
            report.status = "aborted"
            report.finished_at = utcnow()
            logger.info(
                "%s sync aborted after %s entities; cursors left untouched",
                kind.capitalize(),
                report.total_synced,
            )
            return report

        await self._store.save_cursors(staged)
        failures = report.failures
        if failures and len(failures) == len(report.types):
            report.status = "failed"
        report.finished_at = utcnow()
        logger.info(
            "%s sync %s: %s synced, %s soft-deleted, %s type failures",
            kind.capitalize(),
            report.status,
            report.total_synced,
            report.total_deleted,
            len(failures),
        )
        return report

    async def _run_type(
        self,
        kind: str,
        instance: InstanceConfig,
        client: UpstreamClient,
        entity_type: str,
        abort: AbortSignal,
        progress: ProgressCallback | None,
        *,
        force_full: bool = False,
    ) -> TypeReport:
        since: datetime | None = None
        mode = "full"
        if force_full and kind == "incremental":
            logger.info(
                "Revived rows on %s; sweeping %s in full to rebuild its links",
                instance.id,
                entity_type,
            )
        elif kind == "incremental":
            cursor = await self._store.load_cursor(instance.id, entity_type)
            since = cursor.since if cursor else None
            if since is not None:
                mode = "incremental"
            else:
                logger.info(
                    "No cursor for %s on %s; running a full sweep for this type",
                    entity_type,
                    instance.id,
                )

        report = TypeReport(instance_id=instance.id, entity_type=entity_type, mode=mode)
        started = time.monotonic()
        try:
            seen = await self._sweep(
                client, instance.id, entity_type, report, since, abort, progress, kind
            )
            if mode == "full":
                report.deleted = await self._store.tombstone_missing(
                    entity_type, instance.id, seen
                )
            elif self._settings.incremental_deletion_sweep:
                report.deleted = await self._deletion_sweep(
                    client, instance.id, entity_type, abort
                )
        except UpstreamError as exc:
            report.error = str(exc)
            logger.warning(
                "Sync of %s for instance %s failed; keeping previous cursor: %s",
                entity_type,
                instance.id,
                exc,
            )
        report.duration_ms = int((time.monotonic() - started) * 1000)
        return report

    async def _sweep(
        self,
        client: UpstreamClient,
        instance_id: str,
        entity_type: str,
        report: TypeReport,
        since: datetime | None,
        abort: AbortSignal,
        progress: ProgressCallback | None,
        kind: str,
    ) -> set[str]:
        page_size = self._settings.sync_page_size
        batch_size = self._settings.sync_batch_size
        updated_after = (
            format_cursor(since, subsecond_guard=self._settings.cursor_subsecond_guard)
            if since is not None
            else None
        )
        seen: set[str] = set()
        page = 1
        while True:
            abort.check()
            result = await client.fetch_page(
                entity_type, page=page, per_page=page_size, updated_after=updated_after
            )
            report.pages += 1
            if not result.items:
                break
            normalized = normalize_page(entity_type, result.items, instance_id, utcnow())
            for batch in chunked(normalized, batch_size):
                abort.check()
                revived = await self._store.upsert_batch(entity_type, instance_id, batch)
                report.synced += len(batch)
                report.revived += len(revived)
                for entity in batch:
                    seen.add(entity.id)
                    report.max_updated_at = later(report.max_updated_at, entity.updated_at)
            if progress is not None:
                progress(
                    SyncProgress(
                        kind=kind,
                        instance_id=instance_id,
                        entity_type=entity_type,
                        processed=report.synced,
                        total=result.count,
                    )
                )
            if len(result.items) < page_size or page * page_size >= result.count:
                break
            page += 1
        return seen

    async def _deletion_sweep(
        self,
        client: UpstreamClient,
        instance_id: str,
        entity_type: str,
        abort: AbortSignal,
    ) -> int:
        page_size = self._settings.cleanup_page_size
        upstream_ids: set[str] = set()
        page = 1
        while True:
            abort.check()
            result = await client.fetch_ids(entity_type, page=page, per_page=page_size)
            for item in result.items:
                identifier = item.get("id")
                if identifier is not None:
                    upstream_ids.add(str(identifier))
            if len(result.items) < page_size or page * page_size >= result.count:
                break
            page += 1

        if not upstream_ids and await self._store.live_count(entity_type, instance_id):
            logger.warning(
                "Upstream returned no %s ids for instance %s; skipping deletion sweep",
                entity_type,
                instance_id,
            )
            return 0
        return await self._store.tombstone_missing(entity_type, instance_id, upstream_ids)

    async def sync_single(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        instance_id: str | None = None,
    ) -> TypeReport:
        """Upsert or soft-delete exactly one entity, bypassing pagination."""

        instance = self._instances.get(instance_id)
        report = TypeReport(
            instance_id=instance.id, entity_type=entity_type, mode="single"
        )
        started = time.monotonic()
        if action == "delete":
            if await self._store.soft_delete_entity(entity_type, instance.id, entity_id):
                report.deleted = 1
        else:
            client = self._instances.client_for(instance.id)
            records = await client.fetch_by_ids(entity_type, [entity_id])
            matching = [
                record for record in records if str(record.get("id")) == str(entity_id)
            ]
            if not matching:
                if await self._store.soft_delete_entity(
                    entity_type, instance.id, entity_id
                ):
                    report.deleted = 1
            else:
                entity = normalize_record(entity_type, matching[0], instance.id, utcnow())
                if entity is not None:
                    revived = await self._store.upsert_batch(
                        entity_type, instance.id, [entity]
                    )
                    report.synced = 1
                    if revived:
                        report.revived = 1
                        await self._store.reset_cursors(
                            instance.id, revival_dependents(entity_type)
                        )
                    report.max_updated_at = entity.updated_at
        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Single-entity %s of %s %s on %s: %s synced, %s deleted",
            action,
            entity_type,
            entity_id,
            instance.id,
            report.synced,
            report.deleted,
        )
        return report
