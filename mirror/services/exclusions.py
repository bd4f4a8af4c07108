"""Materialize per-user visibility from hidden markers and restriction rules."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import (
    User,
    UserContentRestriction,
    UserEntityStats,
    UserExcludedEntity,
    UserHiddenEntity,
)
from ..entities import (
    ENTITY_MODELS,
    HIERARCHIES,
    RELATIONS,
    RESTRICTABLE_TYPES,
    relations_from,
)
from ..errors import NotFoundError, ValidationFailure
from ..utils import chunked, utcnow

logger = logging.getLogger(__name__)

Key = tuple[str, str]

REASON_PRIORITY = {"hidden": 0, "restricted": 1, "cascade": 2, "empty": 3}
RESTRICTION_MODES = ("none", "exclude", "include")

_INSERT_CHUNK = 500


@dataclass(slots=True)
class Restriction:
    entity_type: str
    mode: str
    entity_ids: frozenset[str]
    restrict_empty: bool = False

    @property
    def active(self) -> bool:
        if self.mode == "exclude":
            return bool(self.entity_ids)
        if self.mode == "include":
            return bool(self.entity_ids) or self.restrict_empty
        return self.restrict_empty


@dataclass(slots=True)
class LibrarySnapshot:
    """Live rows and their relationship edges, keyed by ``(id, instance_id)``."""

    live: dict[str, set[Key]] = field(default_factory=dict)
    # (owner_type, target_type) -> owner key -> target keys
    edges: dict[tuple[str, str], dict[Key, set[Key]]] = field(default_factory=dict)
    # entity_type -> parent key -> child keys
    children: dict[str, dict[Key, set[Key]]] = field(default_factory=dict)

    def targets(self, owner: str, target: str, key: Key) -> set[Key]:
        return self.edges.get((owner, target), {}).get(key, set())

    def owners_of(self, owner: str, target: str) -> dict[Key, set[Key]]:
        """Invert one edge map: target key -> owner keys."""

        inverted: dict[Key, set[Key]] = defaultdict(set)
        for owner_key, target_keys in self.edges.get((owner, target), {}).items():
            for target_key in target_keys:
                inverted[target_key].add(owner_key)
        return inverted


@dataclass(slots=True)
class ExclusionResult:
    user_id: int
    excluded: dict[tuple[str, str, str], str] = field(default_factory=dict)
    visible_counts: dict[tuple[str, str], int] = field(default_factory=dict)
    duration_ms: int = 0

    def by_reason(self) -> dict[str, int]:
        counts: dict[str, int] = defaultdict(int)
        for reason in self.excluded.values():
            counts[reason] += 1
        return dict(counts)

    def to_payload(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "totalExcluded": len(self.excluded),
            "byReason": self.by_reason(),
            "visibleCounts": [
                {"entityType": entity_type, "instanceId": instance_id, "visible": count}
                for (entity_type, instance_id), count in sorted(self.visible_counts.items())
            ],
            "durationMs": self.duration_ms,
        }


def _record(
    excluded: dict[tuple[str, str, str], str], entity_type: str, key: Key, reason: str
) -> None:
    slot = (entity_type, key[0], key[1])
    current = excluded.get(slot)
    if current is None or REASON_PRIORITY[reason] < REASON_PRIORITY[current]:
        excluded[slot] = reason


def expand_descendants(
    snapshot: LibrarySnapshot, entity_type: str, entity_ids: Iterable[str]
) -> set[str]:
    """Return ``entity_ids`` plus every descendant id in the hierarchy."""

    result = set(entity_ids)
    children = snapshot.children.get(entity_type)
    if not children:
        return result
    frontier = [key for key in children if key[0] in result]
    visited: set[Key] = set(frontier)
    while frontier:
        next_frontier: list[Key] = []
        for parent in frontier:
            for child in children.get(parent, ()):
                if child in visited:
                    continue
                visited.add(child)
                result.add(child[0])
                next_frontier.append(child)
        frontier = next_frontier
    return result


def attached_values(
    snapshot: LibrarySnapshot, restricted_type: str, depth: int
) -> dict[str, dict[Key, frozenset[str]]]:
    """Ids of ``restricted_type`` reachable from each live entity within ``depth`` hops.

    Level zero holds direct relations only. Each further level adds the values
    attached to the entities an owner points at.
    """

    level: dict[str, dict[Key, frozenset[str]]] = {}
    for entity_type, keys in snapshot.live.items():
        if entity_type == restricted_type:
            continue
        direct: dict[Key, frozenset[str]] = {}
        for key in keys:
            values: set[str] = set()
            for relation in relations_from(entity_type):
                if relation.target == restricted_type:
                    values.update(
                        target[0]
                        for target in snapshot.targets(entity_type, restricted_type, key)
                    )
            direct[key] = frozenset(values)
        level[entity_type] = direct

    for _ in range(depth):
        expanded: dict[str, dict[Key, frozenset[str]]] = {}
        for entity_type, values_by_key in level.items():
            intermediates = {
                relation.target
                for relation in relations_from(entity_type)
                if relation.target != restricted_type and relation.target in level
            }
            updated: dict[Key, frozenset[str]] = {}
            for key, values in values_by_key.items():
                merged = set(values)
                for target_type in intermediates:
                    for target in snapshot.targets(entity_type, target_type, key):
                        merged.update(level[target_type].get(target, ()))
                updated[key] = frozenset(merged)
            expanded[entity_type] = updated
        level = expanded
    return level


def reachable_types(restricted_type: str, depth: int) -> set[str]:
    """Entity types with a relation path to ``restricted_type`` of length <= depth + 1."""

    reached = {
        relation.owner for relation in RELATIONS if relation.target == restricted_type
    }
    for _ in range(depth):
        reached |= {
            relation.owner
            for relation in RELATIONS
            if relation.target in reached and relation.owner != restricted_type
        }
    reached.discard(restricted_type)
    return reached


def compute_exclusions(
    snapshot: LibrarySnapshot,
    restrictions: Iterable[Restriction],
    hidden: Iterable[tuple[str, str, str]],
    *,
    cascade_depth: int = 1,
    include_descendants: bool = True,
    hide_empty_containers: bool = False,
) -> dict[tuple[str, str, str], str]:
    """Return ``(entity_type, entity_id, instance_id) -> reason`` for one user."""

    excluded: dict[tuple[str, str, str], str] = {}
    inverted: dict[tuple[str, str], dict[Key, set[Key]]] = {}

    for entity_type, entity_id, instance_id in hidden:
        key = (entity_id, instance_id)
        if key not in snapshot.live.get(entity_type, set()):
            continue
        _record(excluded, entity_type, key, "hidden")
        for owner_type, target_type in {
            (relation.owner, relation.target) for relation in RELATIONS
        }:
            if target_type != entity_type:
                continue
            if (owner_type, target_type) not in inverted:
                inverted[(owner_type, target_type)] = snapshot.owners_of(
                    owner_type, target_type
                )
            for owner in inverted[(owner_type, target_type)].get(key, set()):
                _record(excluded, owner_type, owner, "cascade")

    for restriction in restrictions:
        if not restriction.active:
            continue
        restricted_type = restriction.entity_type
        ids = restriction.entity_ids
        if include_descendants and restricted_type in HIERARCHIES:
            ids = frozenset(expand_descendants(snapshot, restricted_type, ids))

        for key in snapshot.live.get(restricted_type, set()):
            if restriction.mode == "exclude" and key[0] in ids:
                _record(excluded, restricted_type, key, "restricted")
            elif restriction.mode == "include" and ids and key[0] not in ids:
                _record(excluded, restricted_type, key, "restricted")

        affected = reachable_types(restricted_type, cascade_depth)
        attached = attached_values(snapshot, restricted_type, cascade_depth)
        direct = (
            attached_values(snapshot, restricted_type, 0)
            if restriction.restrict_empty
            else {}
        )
        for entity_type in affected:
            for key, values in attached.get(entity_type, {}).items():
                if restriction.mode == "exclude" and values & ids:
                    _record(excluded, entity_type, key, "cascade")
                elif restriction.mode == "include" and ids and not values & ids:
                    _record(excluded, entity_type, key, "cascade")
        if restriction.restrict_empty:
            for key, values in direct.get("scene", {}).items():
                if not values:
                    _record(excluded, "scene", key, "empty")

    if hide_empty_containers:
        _hide_empty_containers(snapshot, excluded)
    return excluded


_CONTAINER_CONTENT: Mapping[str, tuple[str, ...]] = {
    "gallery": ("image",),
    "performer": ("scene", "image"),
    "studio": ("scene", "image"),
    "group": ("scene",),
    "tag": tuple(ENTITY_MODELS),
}


def _hide_empty_containers(
    snapshot: LibrarySnapshot, excluded: dict[tuple[str, str, str], str]
) -> None:
    def visible(entity_type: str, key: Key) -> bool:
        return (entity_type, key[0], key[1]) not in excluded

    parents = snapshot.children.get("tag", {})
    for container, content_types in _CONTAINER_CONTENT.items():
        used: set[Key] = set()
        for content_type in content_types:
            for (owner, target), mapping in snapshot.edges.items():
                if owner != content_type or target != container:
                    continue
                for owner_key, target_keys in mapping.items():
                    if visible(owner, owner_key):
                        used.update(target_keys)
        for key in snapshot.live.get(container, set()):
            if key in used or not visible(container, key):
                continue
            if container == "tag" and parents.get(key):
                continue
            _record(excluded, container, key, "empty")


class ExclusionComputationService:
    """Recompute and store each user's excluded set and visible counts."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._inflight: dict[int, asyncio.Task[ExclusionResult]] = {}

    async def recompute_for_user(
        self, user_id: int, *, snapshot: LibrarySnapshot | None = None
    ) -> ExclusionResult:
        """Rebuild one user's rows, sharing the work with concurrent callers."""

        if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
            raise ValidationFailure("userId must be a positive integer")
        task = self._inflight.get(user_id)
        if task is None:
            task = asyncio.create_task(self._recompute(user_id, snapshot))
            self._inflight[user_id] = task

            def _forget(done: asyncio.Task[ExclusionResult]) -> None:
                if self._inflight.get(user_id) is done:
                    self._inflight.pop(user_id, None)

            task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def recompute_all_users(self) -> dict[str, Any]:
        async with self._session_factory() as session:
            result = await session.execute(select(User.id).order_by(User.id))
            user_ids = list(result.scalars())
        if not user_ids:
            return {"success": 0, "failed": 0, "errors": []}

        snapshot = await self.load_snapshot()
        semaphore = asyncio.Semaphore(self._settings.exclusion_concurrency)
        errors: list[dict[str, Any]] = []

        async def _run(user_id: int) -> bool:
            async with semaphore:
                attempts = self._settings.exclusion_retry_limit + 1
                for attempt in range(1, attempts + 1):
                    try:
                        await self.recompute_for_user(user_id, snapshot=snapshot)
                        return True
                    except NotFoundError as exc:
                        errors.append({"userId": user_id, "error": exc.message})
                        return False
                    except Exception as exc:
                        if attempt >= attempts:
                            logger.exception(
                                "Exclusion recompute for user %s failed: %s", user_id, exc
                            )
                            errors.append({"userId": user_id, "error": str(exc)})
                            return False
                        logger.warning(
                            "Exclusion recompute for user %s failed (attempt %s/%s): %s",
                            user_id,
                            attempt,
                            attempts,
                            exc,
                        )
                        await asyncio.sleep(0.1 * attempt)
                return False

        outcomes = await asyncio.gather(*(_run(user_id) for user_id in user_ids))
        success = sum(1 for outcome in outcomes if outcome)
        failed = len(outcomes) - success
        logger.info(
            "Recomputed exclusions for %s users (%s failed)", success, failed
        )
        return {"success": success, "failed": failed, "errors": errors}

    async def stats(self) -> dict[str, Any]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    UserExcludedEntity.user_id,
                    UserExcludedEntity.entity_type,
                    UserExcludedEntity.reason,
                    func.count(),
                )
                .group_by(
                    UserExcludedEntity.user_id,
                    UserExcludedEntity.entity_type,
                    UserExcludedEntity.reason,
                )
                .order_by(
                    UserExcludedEntity.user_id,
                    UserExcludedEntity.entity_type,
                    UserExcludedEntity.reason,
                )
            )
            rows = [
                {
                    "userId": user_id,
                    "entityType": entity_type,
                    "reason": reason,
                    "count": int(count),
                }
                for user_id, entity_type, reason, count in result
            ]
        by_reason: dict[str, int] = defaultdict(int)
        for row in rows:
            by_reason[row["reason"]] += row["count"]
        return {
            "total": sum(row["count"] for row in rows),
            "byReason": dict(by_reason),
            "rows": rows,
        }

    async def load_snapshot(self) -> LibrarySnapshot:
        snapshot = LibrarySnapshot()
        async with self._session_factory() as session:
            column_relations = [relation for relation in RELATIONS if relation.column]
            for entity_type, model in ENTITY_MODELS.items():
                columns = [
                    getattr(model, relation.column)
                    for relation in column_relations
                    if relation.owner == entity_type and relation.column
                ]
                result = await session.execute(
                    select(model.id, model.instance_id, *columns).where(
                        model.deleted_at.is_(None)
                    )
                )
                keys: set[Key] = set()
                owned = [
                    relation for relation in column_relations if relation.owner == entity_type
                ]
                for row in result:
                    key = (row[0], row[1])
                    keys.add(key)
                    for index, relation in enumerate(owned):
                        value = row[2 + index]
                        if value is None:
                            continue
                        mapping = snapshot.edges.setdefault(
                            (entity_type, relation.target), {}
                        )
                        mapping.setdefault(key, set()).add((str(value), key[1]))
                snapshot.live[entity_type] = keys

            for relation in RELATIONS:
                junction = relation.junction
                if junction is None:
                    continue
                owners = snapshot.live.get(relation.owner, set())
                result = await session.execute(
                    select(
                        junction.left_id,
                        junction.left_instance_id,
                        junction.right_id,
                        junction.right_instance_id,
                    )
                )
                mapping = snapshot.edges.setdefault((relation.owner, relation.target), {})
                for left_id, left_instance, right_id, right_instance in result:
                    owner_key = (left_id, left_instance)
                    if owner_key in owners:
                        mapping.setdefault(owner_key, set()).add((right_id, right_instance))

            for entity_type, hierarchy in HIERARCHIES.items():
                result = await session.execute(
                    select(
                        hierarchy.parent_id,
                        hierarchy.parent_instance_id,
                        hierarchy.child_id,
                        hierarchy.child_instance_id,
                    )
                )
                children: dict[Key, set[Key]] = {}
                for parent_id, parent_instance, child_id, child_instance in result:
                    children.setdefault((parent_id, parent_instance), set()).add(
                        (child_id, child_instance)
                    )
                snapshot.children[entity_type] = children
        return snapshot

    async def _recompute(
        self, user_id: int, snapshot: LibrarySnapshot | None
    ) -> ExclusionResult:
        started = time.monotonic()
        async with self._session_factory() as session:
            if await session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} does not exist")
            restrictions = await self._load_restrictions(session, user_id)
            hidden_rows = await session.execute(
                select(
                    UserHiddenEntity.entity_type,
                    UserHiddenEntity.entity_id,
                    UserHiddenEntity.instance_id,
                ).where(UserHiddenEntity.user_id == user_id)
            )
            hidden = [tuple(row) for row in hidden_rows]

        if snapshot is None:
            snapshot = await self.load_snapshot()
        excluded = compute_exclusions(
            snapshot,
            restrictions,
            hidden,
            cascade_depth=self._settings.restriction_cascade_depth,
            include_descendants=self._settings.restriction_include_descendants,
            hide_empty_containers=self._settings.hide_empty_containers,
        )

        visible_counts: dict[tuple[str, str], int] = {}
        excluded_per_slot: dict[tuple[str, str], int] = defaultdict(int)
        for entity_type, _entity_id, instance_id in excluded:
            excluded_per_slot[(entity_type, instance_id)] += 1
        for entity_type, keys in snapshot.live.items():
            totals: dict[str, int] = defaultdict(int)
            for _entity_id, instance_id in keys:
                totals[instance_id] += 1
            for instance_id, total in totals.items():
                visible_counts[(entity_type, instance_id)] = max(
                    total - excluded_per_slot[(entity_type, instance_id)], 0
                )

        now = utcnow()
        async with self._session_factory() as session:
            await session.execute(
                delete(UserExcludedEntity).where(UserExcludedEntity.user_id == user_id)
            )
            await session.execute(
                delete(UserEntityStats).where(UserEntityStats.user_id == user_id)
            )
            rows = [
                {
                    "user_id": user_id,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "instance_id": instance_id,
                    "reason": reason,
                    "computed_at": now,
                }
                for (entity_type, entity_id, instance_id), reason in excluded.items()
            ]
            for chunk in chunked(rows, _INSERT_CHUNK):
                await session.execute(insert(UserExcludedEntity), list(chunk))
            stats_rows = [
                {
                    "user_id": user_id,
                    "entity_type": entity_type,
                    "instance_id": instance_id,
                    "visible_count": count,
                    "updated_at": now,
                }
                for (entity_type, instance_id), count in visible_counts.items()
            ]
            if stats_rows:
                await session.execute(insert(UserEntityStats), stats_rows)
            await session.commit()

        result = ExclusionResult(
            user_id=user_id,
            excluded=excluded,
            visible_counts=visible_counts,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "Recomputed exclusions for user %s: %s rows %s",
            user_id,
            len(excluded),
            result.by_reason(),
        )
        return result

    @staticmethod
    async def _load_restrictions(
        session: AsyncSession, user_id: int
    ) -> list[Restriction]:
        result = await session.execute(
            select(UserContentRestriction).where(UserContentRestriction.user_id == user_id)
        )
        restrictions: list[Restriction] = []
        for row in result.scalars():
            if row.entity_type not in RESTRICTABLE_TYPES:
                logger.warning(
                    "Ignoring restriction on unsupported type %s for user %s",
                    row.entity_type,
                    user_id,
                )
                continue
            mode = row.mode if row.mode in RESTRICTION_MODES else "none"
            restrictions.append(
                Restriction(
                    entity_type=row.entity_type,
                    mode=mode,
                    entity_ids=frozenset(str(value) for value in row.entity_ids or []),
                    restrict_empty=bool(row.restrict_empty),
                )
            )
        return restrictions
