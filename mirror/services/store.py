"""Write paths for the local entity mirror and its sync bookkeeping."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from ..config import Settings
from ..db_models import (
    Lifecycle,
    SyncRun,
    SyncSettings,
    SyncState,
    UserExcludedEntity,
    lifecycle_transition,
)
from ..entities import (
    ENTITY_MODELS,
    HIERARCHIES,
    junction_relations,
    junction_sides,
    model_for,
    owner_junctions,
)
from ..utils import chunked, isoformat_or_none, later, utcnow
from .normalize import NormalizedEntity

logger = logging.getLogger(__name__)

_ID_CHUNK = 500

# Instance ids written by single-instance releases before ids were generated.
PLACEHOLDER_INSTANCE_IDS = ("default", "")


@dataclass(slots=True)
class CursorState:
    """Snapshot of a stored sync cursor."""

    instance_id: str
    entity_type: str
    last_full_sync_timestamp: datetime | None = None
    last_incremental_sync_timestamp: datetime | None = None
    last_full_sync_actual: datetime | None = None
    last_incremental_sync_actual: datetime | None = None
    last_sync_count: int = 0
    last_sync_duration_ms: int = 0
    total_entities: int = 0
    last_error: str | None = None

    @property
    def since(self) -> datetime | None:
        """Most recent source-clock value either kind of pass reached."""

        return later(self.last_full_sync_timestamp, self.last_incremental_sync_timestamp)

    def to_payload(self) -> dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "entityType": self.entity_type,
            "lastFullSyncTimestamp": isoformat_or_none(self.last_full_sync_timestamp),
            "lastIncrementalSyncTimestamp": isoformat_or_none(
                self.last_incremental_sync_timestamp
            ),
            "lastFullSyncActual": isoformat_or_none(self.last_full_sync_actual),
            "lastIncrementalSyncActual": isoformat_or_none(
                self.last_incremental_sync_actual
            ),
            "lastSyncCount": self.last_sync_count,
            "lastSyncDurationMs": self.last_sync_duration_ms,
            "totalEntities": self.total_entities,
            "lastError": self.last_error,
        }


@dataclass(slots=True)
class CursorUpdate:
    """Outcome of one entity type's pass, staged until the run commits."""

    instance_id: str
    entity_type: str
    mode: str
    max_updated_at: datetime | None
    synced: int
    duration_ms: int
    total_entities: int = 0
    error: str | None = None


@dataclass(slots=True)
class ScheduleSettings:
    sync_interval_minutes: int
    enable_scan_subscription: bool
    enable_plugin_webhook: bool

    def to_payload(self) -> dict[str, Any]:
        return {
            "syncIntervalMinutes": self.sync_interval_minutes,
            "enableScanSubscription": self.enable_scan_subscription,
            "enablePluginWebhook": self.enable_plugin_webhook,
        }


def _placeholder(column: Any) -> Any:
    return or_(column.is_(None), column.in_(PLACEHOLDER_INSTANCE_IDS))


def _cursor_from_record(record: SyncState) -> CursorState:
    return CursorState(
        instance_id=record.instance_id,
        entity_type=record.entity_type,
        last_full_sync_timestamp=record.last_full_sync_timestamp,
        last_incremental_sync_timestamp=record.last_incremental_sync_timestamp,
        last_full_sync_actual=record.last_full_sync_actual,
        last_incremental_sync_actual=record.last_incremental_sync_actual,
        last_sync_count=record.last_sync_count or 0,
        last_sync_duration_ms=record.last_sync_duration_ms or 0,
        total_entities=record.total_entities or 0,
        last_error=record.last_error,
    )


async def purge_entity_links(
    session: AsyncSession,
    entity_type: str,
    instance_id: str,
    entity_ids: Sequence[str],
) -> None:
    for junction, side in junction_sides(entity_type):
        if side == "left":
            condition = and_(
                junction.left_instance_id == instance_id,
                junction.left_id.in_(entity_ids),
            )
        else:
            condition = and_(
                junction.right_instance_id == instance_id,
                junction.right_id.in_(entity_ids),
            )
        await session.execute(delete(junction).where(condition))
    hierarchy = HIERARCHIES.get(entity_type)
    if hierarchy is not None:
        await session.execute(
            delete(hierarchy).where(
                or_(
                    and_(
                        hierarchy.parent_instance_id == instance_id,
                        hierarchy.parent_id.in_(entity_ids),
                    ),
                    and_(
                        hierarchy.child_instance_id == instance_id,
                        hierarchy.child_id.in_(entity_ids),
                    ),
                )
            )
        )


class EntityStore:
    """Bulk writes against the mirror, each unit of work in one transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upsert_batch(
        self,
        entity_type: str,
        instance_id: str,
        entities: Sequence[NormalizedEntity],
    ) -> set[str]:
        """Insert or update a batch and rewrite its relationship rows.

        Existing rows are revived if they were soft-deleted, and their ids are
        returned. Junction and hierarchy rows owned by the batch are replaced
        in the same transaction, so a reader never sees a row without its
        links.
        """

        if not entities:
            return set()
        model = model_for(entity_type)
        active = lifecycle_transition(Lifecycle.ACTIVE)
        rows = [{**entity.row, **active} for entity in entities]
        ids = [entity.id for entity in entities]

        stmt = sqlite_insert(model).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id", "instance_id"],
            set_={
                column.name: stmt.excluded[column.name]
                for column in model.__table__.columns
                if not column.primary_key
            },
        )

        async with self._session_factory() as session:
            result = await session.execute(
                select(model.id).where(
                    model.instance_id == instance_id,
                    model.id.in_(ids),
                    model.deleted_at.is_not(None),
                )
            )
            revived = set(result.scalars())
            await session.execute(stmt)
            for relation in owner_junctions(entity_type):
                junction = relation.junction
                assert junction is not None
                await session.execute(
                    delete(junction).where(
                        junction.left_instance_id == instance_id,
                        junction.left_id.in_(ids),
                    )
                )
                link_rows = [
                    row for entity in entities for row in entity.links.get(junction, [])
                ]
                if link_rows:
                    await session.execute(
                        sqlite_insert(junction).values(link_rows).on_conflict_do_nothing()
                    )
            hierarchy = HIERARCHIES.get(entity_type)
            if hierarchy is not None:
                await session.execute(
                    delete(hierarchy).where(
                        hierarchy.child_instance_id == instance_id,
                        hierarchy.child_id.in_(ids),
                    )
                )
                edge_rows = [
                    {
                        "parent_id": parent_id,
                        "parent_instance_id": instance_id,
                        "child_id": entity.id,
                        "child_instance_id": instance_id,
                    }
                    for entity in entities
                    for parent_id in entity.parent_ids or []
                    if parent_id != entity.id
                ]
                if edge_rows:
                    await session.execute(
                        sqlite_insert(hierarchy).values(edge_rows).on_conflict_do_nothing()
                    )
            await session.commit()
        return revived

    async def live_ids(self, entity_type: str, instance_id: str) -> set[str]:
        model = model_for(entity_type)
        async with self._session_factory() as session:
            result = await session.execute(
                select(model.id).where(
                    model.instance_id == instance_id, model.deleted_at.is_(None)
                )
            )
            return set(result.scalars())

    async def live_count(self, entity_type: str, instance_id: str) -> int:
        model = model_for(entity_type)
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(model)
                .where(model.instance_id == instance_id, model.deleted_at.is_(None))
            )
            return int(result.scalar_one())

    async def tombstone_missing(
        self, entity_type: str, instance_id: str, seen_ids: set[str]
    ) -> int:
        """Soft-delete live rows of one instance that a sweep did not return."""

        model = model_for(entity_type)
        soft_deleted = lifecycle_transition(Lifecycle.SOFT_DELETED)
        async with self._session_factory() as session:
            result = await session.execute(
                select(model.id).where(
                    model.instance_id == instance_id, model.deleted_at.is_(None)
                )
            )
            missing = sorted(set(result.scalars()) - seen_ids)
            if not missing:
                return 0
            for chunk in chunked(missing, _ID_CHUNK):
                await session.execute(
                    update(model)
                    .where(model.instance_id == instance_id, model.id.in_(chunk))
                    .values(**soft_deleted)
                )
                await purge_entity_links(session, entity_type, instance_id, chunk)
            await session.commit()
        logger.info(
            "Soft-deleted %s %s rows missing upstream for instance %s",
            len(missing),
            entity_type,
            instance_id,
        )
        return len(missing)

    async def soft_delete_entity(
        self, entity_type: str, instance_id: str, entity_id: str
    ) -> bool:
        model = model_for(entity_type)
        async with self._session_factory() as session:
            result = await session.execute(
                update(model)
                .where(
                    model.instance_id == instance_id,
                    model.id == entity_id,
                    model.deleted_at.is_(None),
                )
                .values(**lifecycle_transition(Lifecycle.SOFT_DELETED))
            )
            changed = bool(result.rowcount)
            if changed:
                await purge_entity_links(session, entity_type, instance_id, [entity_id])
            await session.commit()
        return changed

    async def purge_dangling_references(self) -> dict[str, int]:
        """Delete junction, hierarchy and exclusion rows whose entities are gone."""

        purged: dict[str, int] = {}
        async with self._session_factory() as session:
            for relation in junction_relations():
                junction = relation.junction
                assert junction is not None
                left = model_for(relation.owner)
                right = model_for(relation.target)
                left_live = exists().where(
                    left.id == junction.left_id,
                    left.instance_id == junction.left_instance_id,
                    left.deleted_at.is_(None),
                ).correlate(junction)
                right_live = exists().where(
                    right.id == junction.right_id,
                    right.instance_id == junction.right_instance_id,
                    right.deleted_at.is_(None),
                ).correlate(junction)
                result = await session.execute(
                    delete(junction).where(or_(~left_live, ~right_live))
                )
                if result.rowcount:
                    name = junction.__tablename__
                    purged[name] = purged.get(name, 0) + result.rowcount

            for entity_type, hierarchy in HIERARCHIES.items():
                model = model_for(entity_type)
                parent = aliased(model)
                child = aliased(model)
                parent_live = exists().where(
                    parent.id == hierarchy.parent_id,
                    parent.instance_id == hierarchy.parent_instance_id,
                    parent.deleted_at.is_(None),
                ).correlate(hierarchy)
                child_live = exists().where(
                    child.id == hierarchy.child_id,
                    child.instance_id == hierarchy.child_instance_id,
                    child.deleted_at.is_(None),
                ).correlate(hierarchy)
                result = await session.execute(
                    delete(hierarchy).where(or_(~parent_live, ~child_live))
                )
                if result.rowcount:
                    purged[hierarchy.__tablename__] = result.rowcount

            for entity_type, model in ENTITY_MODELS.items():
                row_exists = exists().where(
                    model.id == UserExcludedEntity.entity_id,
                    model.instance_id == UserExcludedEntity.instance_id,
                ).correlate(UserExcludedEntity)
                result = await session.execute(
                    delete(UserExcludedEntity).where(
                        UserExcludedEntity.entity_type == entity_type, ~row_exists
                    )
                )
                if result.rowcount:
                    key = f"user_excluded_entities.{entity_type}"
                    purged[key] = result.rowcount
            await session.commit()

        if purged:
            logger.warning("Purged dangling references: %s", purged)
        return purged

    async def repair_unconfigured_rows(self, known_ids: set[str]) -> int:
        """Fix rows whose instance id names no registered instance.

        Only placeholder ids are re-homed, and only when exactly one instance
        is registered. Rows of a registered instance are never moved, even
        when it is disabled. Anything else that cannot be placed is
        soft-deleted.
        """

        if not known_ids:
            return 0
        known = sorted(known_ids)
        target = known[0] if len(known) == 1 else None
        repaired = 0
        async with self._session_factory() as session:
            for entity_type, model in ENTITY_MODELS.items():
                if target is not None:
                    shadow = aliased(model)
                    result = await session.execute(
                        update(model)
                        .where(
                            _placeholder(model.instance_id),
                            model.id.not_in(
                                select(shadow.id).where(shadow.instance_id == target)
                            ),
                        )
                        .values(instance_id=target)
                        .execution_options(synchronize_session=False)
                    )
                    repaired += result.rowcount or 0
                result = await session.execute(
                    update(model)
                    .where(
                        or_(model.instance_id.is_(None), model.instance_id.not_in(known)),
                        model.deleted_at.is_(None),
                    )
                    .values(**lifecycle_transition(Lifecycle.SOFT_DELETED))
                    .execution_options(synchronize_session=False)
                )
                repaired += result.rowcount or 0

            if target is not None:
                for relation in junction_relations():
                    junction = relation.junction
                    assert junction is not None
                    for column in ("left_instance_id", "right_instance_id"):
                        await session.execute(
                            update(junction)
                            .prefix_with("OR IGNORE")
                            .where(_placeholder(getattr(junction, column)))
                            .values({column: target})
                            .execution_options(synchronize_session=False)
                        )
            await session.commit()

        if repaired:
            logger.warning(
                "Repaired %s entity rows with an unregistered source instance", repaired
            )
        return repaired

    async def load_cursor(
        self, instance_id: str, entity_type: str
    ) -> CursorState | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncState).where(
                    SyncState.instance_id == instance_id,
                    SyncState.entity_type == entity_type,
                )
            )
            record = result.scalar_one_or_none()
        return _cursor_from_record(record) if record else None

    async def load_cursors(self) -> list[CursorState]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncState).order_by(SyncState.instance_id, SyncState.entity_type)
            )
            return [_cursor_from_record(record) for record in result.scalars()]

    async def has_sync_state(self) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(SyncState))
            return int(result.scalar_one()) > 0

    async def save_cursors(self, updates: Sequence[CursorUpdate]) -> None:
        """Persist staged cursor outcomes in one transaction.

        Timestamps only move forward, and only when the pass succeeded and
        observed an ``updated_at``. Counts and errors are always recorded.
        """

        if not updates:
            return
        now = utcnow()
        async with self._session_factory() as session:
            for staged in updates:
                result = await session.execute(
                    select(SyncState).where(
                        SyncState.instance_id == staged.instance_id,
                        SyncState.entity_type == staged.entity_type,
                    )
                )
                record = result.scalar_one_or_none()
                if record is None:
                    record = SyncState(
                        instance_id=staged.instance_id,
                        entity_type=staged.entity_type,
                        last_sync_count=0,
                        last_sync_duration_ms=0,
                        total_entities=0,
                    )
                    session.add(record)
                if staged.error is None:
                    if staged.mode == "full":
                        record.last_full_sync_actual = now
                        if staged.max_updated_at is not None:
                            record.last_full_sync_timestamp = later(
                                record.last_full_sync_timestamp, staged.max_updated_at
                            )
                    else:
                        record.last_incremental_sync_actual = now
                        if staged.max_updated_at is not None:
                            record.last_incremental_sync_timestamp = later(
                                record.last_incremental_sync_timestamp,
                                staged.max_updated_at,
                            )
                    record.total_entities = staged.total_entities
                record.last_sync_count = staged.synced
                record.last_sync_duration_ms = staged.duration_ms
                record.last_error = staged.error
            await session.commit()

    async def reset_cursors(self, instance_id: str, entity_types: Sequence[str]) -> None:
        """Drop the timestamps so the next pass sweeps these types in full."""

        if not entity_types:
            return
        async with self._session_factory() as session:
            await session.execute(
                update(SyncState)
                .where(
                    SyncState.instance_id == instance_id,
                    SyncState.entity_type.in_(entity_types),
                )
                .values(
                    last_full_sync_timestamp=None,
                    last_incremental_sync_timestamp=None,
                )
            )
            await session.commit()

    async def load_settings(self, defaults: Settings) -> ScheduleSettings:
        """Return persisted schedule settings, seeding them from ``defaults``."""

        async with self._session_factory() as session:
            record = await session.get(SyncSettings, 1)
            if record is None:
                record = SyncSettings(
                    id=1,
                    sync_interval_minutes=defaults.sync_interval_minutes,
                    enable_scan_subscription=defaults.scan_subscription_enabled,
                    enable_plugin_webhook=defaults.webhook_enabled,
                )
                session.add(record)
                await session.commit()
            return ScheduleSettings(
                sync_interval_minutes=record.sync_interval_minutes,
                enable_scan_subscription=record.enable_scan_subscription,
                enable_plugin_webhook=record.enable_plugin_webhook,
            )

    async def save_settings(self, state: ScheduleSettings) -> None:
        async with self._session_factory() as session:
            record = await session.get(SyncSettings, 1)
            if record is None:
                record = SyncSettings(id=1)
                session.add(record)
            record.sync_interval_minutes = state.sync_interval_minutes
            record.enable_scan_subscription = state.enable_scan_subscription
            record.enable_plugin_webhook = state.enable_plugin_webhook
            await session.commit()

    async def record_run_start(self, kind: str, trigger: str) -> int:
        async with self._session_factory() as session:
            run = SyncRun(kind=kind, trigger=trigger, status="running", started_at=utcnow())
            session.add(run)
            await session.commit()
            return run.id

    async def record_run_finish(
        self,
        run_id: int,
        *,
        status: str,
        entities_synced: int,
        error: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id)
                .values(
                    status=status,
                    finished_at=utcnow(),
                    entities_synced=entities_synced,
                    error=error,
                )
            )
            await session.commit()

    async def last_run_status(self) -> str | None:
        """Status of the most recent full or incremental run."""

        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncRun.status)
                .where(SyncRun.kind.in_(("full", "incremental")))
                .order_by(SyncRun.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def close_stale_runs(self) -> int:
        """Mark runs left ``running`` by a previous process as aborted."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncRun)
                .where(SyncRun.status == "running")
                .values(status="aborted", finished_at=utcnow(), error="interrupted")
            )
            await session.commit()
            return result.rowcount or 0
