"""Transfer user activity from orphaned identities onto their live duplicates."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import Text, and_, case, cast, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import (
    EntityMixin,
    EntityRating,
    MergeRecord,
    Scene,
    UserExcludedEntity,
    UserHiddenEntity,
    WatchHistory,
)
from ..entities import ENTITY_TYPES, FINGERPRINTED_TYPES, model_for
from ..errors import (
    MirrorError,
    NotFoundError,
    ReconciliationAmbiguityError,
    ReconciliationConflictError,
    ValidationFailure,
)
from ..utils import (
    isoformat_or_none,
    later,
    normalise_phash,
    phash_bands,
    phash_distance,
    unique,
    utcnow,
)
from .store import purge_entity_links

logger = logging.getLogger(__name__)

EntityKey = tuple[str, str, str]


def merge_history(first: Any, second: Any) -> list[Any]:
    """Union two play or o-count histories, deduplicated and time ordered."""

    merged: list[Any] = []
    seen: set[str] = set()
    for item in [*_as_list(first), *_as_list(second)]:
        key = json.dumps(item, sort_keys=True, default=str)
        if key in seen:
            continue
        seen.add(key)
        merged.append(item)
    merged.sort(key=_history_time)
    return merged


def _as_list(value: Any) -> list[Any]:
    if not value:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return [value]
        return parsed if isinstance(parsed, list) else [parsed]
    return [value]


def _history_time(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("startTime") or item.get("time") or "")
    return str(item)


def fingerprints(row: EntityMixin) -> list[str]:
    """Every known phash of a scene or image row, primary first."""

    values = [getattr(row, "phash", None), *(getattr(row, "phashes", None) or [])]
    return unique(
        phash for phash in (normalise_phash(value) for value in values) if phash
    )


@dataclass(slots=True)
class OrphanedEntity:
    entity_type: str
    entity_id: str
    instance_id: str
    name: str | None
    phash: str | None
    deleted_at: datetime | None
    watch_history_count: int = 0
    rating_count: int = 0
    favorite_count: int = 0
    hidden_count: int = 0
    total_plays: int = 0

    @property
    def activity_count(self) -> int:
        return self.watch_history_count + self.rating_count + self.hidden_count

    def to_payload(self) -> dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "instanceId": self.instance_id,
            "name": self.name,
            "phash": self.phash,
            "deletedAt": isoformat_or_none(self.deleted_at),
            "watchHistoryCount": self.watch_history_count,
            "ratingCount": self.rating_count,
            "favoriteCount": self.favorite_count,
            "hiddenCount": self.hidden_count,
            "totalPlays": self.total_plays,
            "userActivityCount": self.activity_count,
        }


@dataclass(slots=True)
class MatchCandidate:
    entity_id: str
    instance_id: str
    name: str | None
    phash: str | None
    confidence: str
    distance: int
    updated_at: datetime | None = None
    recommended: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "entityId": self.entity_id,
            "instanceId": self.instance_id,
            "name": self.name,
            "phash": self.phash,
            "confidence": self.confidence,
            "distance": self.distance,
            "updatedAt": isoformat_or_none(self.updated_at),
            "recommended": self.recommended,
        }


@dataclass(slots=True)
class UserTransfer:
    user_id: int | None
    play_count: int = 0
    o_count: int = 0
    rating: bool = False
    favorite: bool = False
    hidden: int = 0


@dataclass(slots=True)
class ReconcileResult:
    entity_type: str
    source: tuple[str, str]
    target: tuple[str, str]
    transfers: list[UserTransfer] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "source": {"id": self.source[0], "instanceId": self.source[1]},
            "target": {"id": self.target[0], "instanceId": self.target[1]},
            "usersAffected": len(self.transfers),
            "playCountTransferred": sum(item.play_count for item in self.transfers),
            "oCountTransferred": sum(item.o_count for item in self.transfers),
            "ratingsTransferred": sum(1 for item in self.transfers if item.rating),
            "favoritesTransferred": sum(1 for item in self.transfers if item.favorite),
            "hiddenTransferred": sum(item.hidden for item in self.transfers),
        }


class IdentityReconciliationService:
    """Find orphaned user data and move it onto a surviving identity."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._locks: dict[EntityKey, asyncio.Lock] = {}

    async def find_orphaned_entities_with_activity(
        self, entity_type: str = "scene"
    ) -> list[OrphanedEntity]:
        """List soft-deleted rows that still carry user activity."""

        model = self._model(entity_type)
        orphans: dict[tuple[str, str], OrphanedEntity] = {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(model).where(model.deleted_at.is_not(None))
            )
            for row in result.scalars():
                phashes = fingerprints(row) if entity_type in FINGERPRINTED_TYPES else []
                orphans[(row.id, row.instance_id)] = OrphanedEntity(
                    entity_type=entity_type,
                    entity_id=row.id,
                    instance_id=row.instance_id,
                    name=row.name,
                    phash=phashes[0] if phashes else None,
                    deleted_at=row.deleted_at,
                )
            if not orphans:
                return []

            if entity_type == "scene":
                watch = await session.execute(
                    select(
                        WatchHistory.scene_id,
                        WatchHistory.instance_id,
                        func.count(),
                        func.coalesce(func.sum(WatchHistory.play_count), 0),
                    ).group_by(WatchHistory.scene_id, WatchHistory.instance_id)
                )
                for entity_id, instance_id, rows, plays in watch:
                    orphan = orphans.get((entity_id, instance_id))
                    if orphan is not None:
                        orphan.watch_history_count = int(rows)
                        orphan.total_plays = int(plays)

            ratings = await session.execute(
                select(
                    EntityRating.entity_id,
                    EntityRating.instance_id,
                    func.count(),
                    func.sum(case((EntityRating.favorite.is_(True), 1), else_=0)),
                )
                .where(EntityRating.entity_type == entity_type)
                .group_by(EntityRating.entity_id, EntityRating.instance_id)
            )
            for entity_id, instance_id, rows, favorites in ratings:
                orphan = orphans.get((entity_id, instance_id))
                if orphan is not None:
                    orphan.rating_count = int(rows)
                    orphan.favorite_count = int(favorites or 0)

            hidden = await session.execute(
                select(
                    UserHiddenEntity.entity_id,
                    UserHiddenEntity.instance_id,
                    func.count(),
                )
                .where(UserHiddenEntity.entity_type == entity_type)
                .group_by(UserHiddenEntity.entity_id, UserHiddenEntity.instance_id)
            )
            for entity_id, instance_id, rows in hidden:
                orphan = orphans.get((entity_id, instance_id))
                if orphan is not None:
                    orphan.hidden_count = int(rows)

        active = [orphan for orphan in orphans.values() if orphan.activity_count > 0]
        active.sort(key=lambda item: (item.deleted_at or datetime.min), reverse=True)
        return active

    async def find_matches(
        self, entity_type: str, instance_id: str, entity_id: str
    ) -> list[MatchCandidate]:
        """Rank live candidates sharing the orphan's fingerprint.

        Exact matches come first, then near matches by distance. Ties prefer
        the orphan's own instance and then the most recently updated row.
        """

        model = self._model(entity_type)
        if entity_type not in FINGERPRINTED_TYPES:
            return []
        limit = self._settings.match_candidate_limit
        async with self._session_factory() as session:
            orphan = await session.get(model, {"id": entity_id, "instance_id": instance_id})
            if orphan is None:
                raise NotFoundError(
                    f"{entity_type} {entity_id} on {instance_id} does not exist"
                )
            hashes = fingerprints(orphan)
            if not hashes:
                return []

            not_self = or_(model.id != entity_id, model.instance_id != instance_id)
            exact_conditions = [model.phash.in_(hashes)]
            if model is Scene:
                exact_conditions.extend(
                    cast(Scene.phashes, Text).like(f'%"{phash}"%') for phash in hashes
                )
            exact_rows = (
                await session.execute(
                    select(model)
                    .where(model.deleted_at.is_(None), not_self, or_(*exact_conditions))
                    .limit(limit)
                )
            ).scalars().all()

            candidates = [
                self._candidate(row, "exact", 0) for row in exact_rows
            ]
            seen = {(row.id, row.instance_id) for row in exact_rows}

            near_rows = await self._near_rows(session, model, hashes, not_self, limit)
            threshold = self._settings.near_match_distance
            for row in near_rows:
                if (row.id, row.instance_id) in seen:
                    continue
                row_hashes = fingerprints(row)
                if not row_hashes:
                    continue
                distance = min(
                    phash_distance(left, right) for left in hashes for right in row_hashes
                )
                if distance <= threshold:
                    seen.add((row.id, row.instance_id))
                    candidates.append(self._candidate(row, "near", distance))

        candidates.sort(key=lambda item: item.updated_at or datetime.min, reverse=True)
        candidates.sort(
            key=lambda item: (
                0 if item.confidence == "exact" else 1,
                item.distance,
                0 if item.instance_id == instance_id else 1,
            )
        )
        candidates = candidates[:limit]
        if candidates:
            candidates[0].recommended = True
        return candidates

    @staticmethod
    async def _near_rows(
        session: AsyncSession,
        model: type[EntityMixin],
        hashes: Sequence[str],
        not_self: Any,
        limit: int,
    ) -> Sequence[EntityMixin]:
        phash_column = getattr(model, "phash")
        band_matches = []
        for phash in hashes:
            for index, band in enumerate(phash_bands(phash)):
                band_matches.append(
                    func.substr(phash_column, index * len(band) + 1, len(band)) == band
                )
        score = sum(case((condition, 1), else_=0) for condition in band_matches)
        result = await session.execute(
            select(model)
            .where(
                model.deleted_at.is_(None),
                phash_column.is_not(None),
                not_self,
                or_(*band_matches),
            )
            .order_by(score.desc())
            .limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    def _candidate(row: EntityMixin, confidence: str, distance: int) -> MatchCandidate:
        phashes = fingerprints(row)
        return MatchCandidate(
            entity_id=row.id,
            instance_id=row.instance_id,
            name=row.name,
            phash=phashes[0] if phashes else None,
            confidence=confidence,
            distance=distance,
            updated_at=row.source_updated_at,
        )

    async def reconcile(
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
        """Move the orphan's user data onto the target and drop the orphan."""

        model = self._model(entity_type)
        if (entity_id, instance_id) == (target_id, target_instance_id):
            raise ValidationFailure("An entity cannot be reconciled onto itself")

        async with self._orphan_lock((entity_type, instance_id, entity_id)):
            async with self._session_factory() as session:
                orphan = await self._load_orphan(session, model, instance_id, entity_id)
                target = await session.get(
                    model, {"id": target_id, "instance_id": target_instance_id}
                )
                if target is None or target.deleted_at is not None:
                    raise NotFoundError(
                        f"Target {entity_type} {target_id} on {target_instance_id} "
                        "does not exist or is deleted"
                    )

                transfers: dict[int, UserTransfer] = {}
                source_key = (orphan.id, orphan.instance_id)
                target_key = (target.id, target.instance_id)
                await self._transfer_ratings(
                    session, entity_type, source_key, target_key, transfers
                )
                if entity_type == "scene":
                    await self._transfer_watch_history(
                        session, source_key, target_key, transfers
                    )
                await self._transfer_hidden(
                    session, entity_type, source_key, target_key, transfers
                )

                now = utcnow()
                # The audit trail always gets at least one row, userless when
                # nothing moved.
                audited = list(transfers.values()) or [UserTransfer(user_id=None)]
                for transfer in audited:
                    session.add(
                        MergeRecord(
                            entity_type=entity_type,
                            source_id=orphan.id,
                            source_instance_id=orphan.instance_id,
                            target_id=target.id,
                            target_instance_id=target.instance_id,
                            user_id=transfer.user_id,
                            actor_id=actor_id,
                            automatic=automatic,
                            matched_by=matched_by,
                            play_count_transferred=transfer.play_count,
                            o_count_transferred=transfer.o_count,
                            rating_transferred=transfer.rating,
                            favorite_transferred=transfer.favorite,
                            hidden_transferred=transfer.hidden,
                            created_at=now,
                        )
                    )
                await self._drop_orphan(session, entity_type, orphan)
                await session.commit()

        result = ReconcileResult(
            entity_type=entity_type,
            source=(entity_id, instance_id),
            target=(target_id, target_instance_id),
            transfers=list(transfers.values()),
        )
        logger.info(
            "Reconciled %s %s@%s onto %s@%s for %s users",
            entity_type,
            entity_id,
            instance_id,
            target_id,
            target_instance_id,
            len(result.transfers),
        )
        return result

    async def discard(
        self, entity_type: str, instance_id: str, entity_id: str
    ) -> dict[str, int]:
        """Delete an orphan's user data and the orphan row itself."""

        model = self._model(entity_type)
        async with self._orphan_lock((entity_type, instance_id, entity_id)):
            async with self._session_factory() as session:
                orphan = await self._load_orphan(session, model, instance_id, entity_id)
                deleted = await self._drop_orphan(session, entity_type, orphan)
                await session.commit()
        logger.info(
            "Discarded orphaned %s %s@%s: %s", entity_type, entity_id, instance_id, deleted
        )
        return deleted

    async def auto_target(
        self, entity_type: str, instance_id: str, entity_id: str
    ) -> MatchCandidate:
        """Pick the only exact match, preferring one on the orphan's own instance."""

        matches = await self.find_matches(entity_type, instance_id, entity_id)
        exact = [match for match in matches if match.confidence == "exact"]
        local = [match for match in exact if match.instance_id == instance_id]
        if len(local) == 1:
            return local[0]
        if len(exact) == 1:
            return exact[0]
        raise ReconciliationAmbiguityError(
            f"{entity_type} {entity_id} on {instance_id} has {len(exact)} exact matches"
        )

    async def reconcile_all(
        self,
        actor_id: str | None = None,
        *,
        automatic: bool = True,
        entity_types: Iterable[str] = FINGERPRINTED_TYPES,
    ) -> dict[str, Any]:
        """Reconcile every orphan that has exactly one unambiguous exact match."""

        reconciled = 0
        skipped = 0
        failed = 0
        errors: list[dict[str, str]] = []
        for entity_type in entity_types:
            for orphan in await self.find_orphaned_entities_with_activity(entity_type):
                try:
                    target = await self.auto_target(
                        entity_type, orphan.instance_id, orphan.entity_id
                    )
                except ReconciliationAmbiguityError as exc:
                    logger.debug("Skipping orphan: %s", exc.message)
                    skipped += 1
                    continue
                try:
                    await self.reconcile(
                        entity_type,
                        orphan.instance_id,
                        orphan.entity_id,
                        target.entity_id,
                        target.instance_id,
                        actor_id=actor_id,
                        automatic=automatic,
                        matched_by="phash",
                    )
                except MirrorError as exc:
                    failed += 1
                    errors.append(
                        {
                            "entityType": entity_type,
                            "entityId": orphan.entity_id,
                            "instanceId": orphan.instance_id,
                            "error": exc.message,
                        }
                    )
                    continue
                reconciled += 1

        if reconciled or failed:
            logger.info(
                "Reconcile-all finished: %s reconciled, %s skipped, %s failed",
                reconciled,
                skipped,
                failed,
            )
        return {
            "reconciled": reconciled,
            "skipped": skipped,
            "failed": failed,
            "errors": errors,
        }

    async def find_cross_instance_duplicates(self) -> list[dict[str, Any]]:
        """Group live scenes sharing a phash across more than one instance."""

        async with self._session_factory() as session:
            shared = (
                select(Scene.phash)
                .where(Scene.deleted_at.is_(None), Scene.phash.is_not(None))
                .group_by(Scene.phash)
                .having(func.count(func.distinct(Scene.instance_id)) > 1)
            )
            result = await session.execute(
                select(Scene)
                .where(Scene.deleted_at.is_(None), Scene.phash.in_(shared))
                .order_by(Scene.phash, Scene.instance_id, Scene.id)
            )
            groups: dict[str, list[dict[str, Any]]] = defaultdict(list)
            for scene in result.scalars():
                groups[scene.phash].append(
                    {
                        "entityId": scene.id,
                        "instanceId": scene.instance_id,
                        "name": scene.name,
                        "updatedAt": isoformat_or_none(scene.source_updated_at),
                    }
                )
        return [
            {"phash": phash, "entityType": "scene", "members": members}
            for phash, members in groups.items()
        ]

    def _model(self, entity_type: str) -> type[EntityMixin]:
        if entity_type not in ENTITY_TYPES:
            raise ValidationFailure(f"Unknown entity type: {entity_type}")
        return model_for(entity_type)

    def _orphan_lock(self, key: EntityKey) -> _OrphanLock:
        return _OrphanLock(self._locks, key)

    @staticmethod
    async def _load_orphan(
        session: AsyncSession,
        model: type[EntityMixin],
        instance_id: str,
        entity_id: str,
    ) -> EntityMixin:
        orphan = await session.get(model, {"id": entity_id, "instance_id": instance_id})
        if orphan is None:
            raise NotFoundError(f"Entity {entity_id} on {instance_id} does not exist")
        if orphan.deleted_at is None:
            raise ValidationFailure(
                f"Entity {entity_id} on {instance_id} is live; only orphans can be "
                "reconciled or discarded"
            )
        return orphan

    @staticmethod
    async def _transfer_ratings(
        session: AsyncSession,
        entity_type: str,
        source: tuple[str, str],
        target: tuple[str, str],
        transfers: dict[int, UserTransfer],
    ) -> None:
        sources = (
            await session.execute(
                select(EntityRating).where(
                    EntityRating.entity_type == entity_type,
                    EntityRating.entity_id == source[0],
                    EntityRating.instance_id == source[1],
                )
            )
        ).scalars().all()
        for rating in sources:
            transfer = transfers.setdefault(rating.user_id, UserTransfer(rating.user_id))
            existing = (
                await session.execute(
                    select(EntityRating).where(
                        EntityRating.user_id == rating.user_id,
                        EntityRating.entity_type == entity_type,
                        EntityRating.entity_id == target[0],
                        EntityRating.instance_id == target[1],
                    )
                )
            ).scalar_one_or_none()
            if existing is None:
                session.add(
                    EntityRating(
                        user_id=rating.user_id,
                        entity_type=entity_type,
                        entity_id=target[0],
                        instance_id=target[1],
                        rating=rating.rating,
                        favorite=rating.favorite,
                    )
                )
                transfer.rating = rating.rating is not None
                transfer.favorite = bool(rating.favorite)
                continue
            if existing.rating is None and rating.rating is not None:
                existing.rating = rating.rating
                transfer.rating = True
            if rating.favorite and not existing.favorite:
                existing.favorite = True
                transfer.favorite = True

    @staticmethod
    async def _transfer_watch_history(
        session: AsyncSession,
        source: tuple[str, str],
        target: tuple[str, str],
        transfers: dict[int, UserTransfer],
    ) -> None:
        sources = (
            await session.execute(
                select(WatchHistory).where(
                    WatchHistory.scene_id == source[0],
                    WatchHistory.instance_id == source[1],
                )
            )
        ).scalars().all()
        for history in sources:
            transfer = transfers.setdefault(history.user_id, UserTransfer(history.user_id))
            transfer.play_count += history.play_count or 0
            transfer.o_count += history.o_count or 0
            existing = (
                await session.execute(
                    select(WatchHistory).where(
                        WatchHistory.user_id == history.user_id,
                        WatchHistory.scene_id == target[0],
                        WatchHistory.instance_id == target[1],
                    )
                )
            ).scalar_one_or_none()
            if existing is None:
                session.add(
                    WatchHistory(
                        user_id=history.user_id,
                        scene_id=target[0],
                        instance_id=target[1],
                        play_count=history.play_count or 0,
                        play_duration=history.play_duration or 0.0,
                        o_count=history.o_count or 0,
                        o_history=merge_history(history.o_history, None),
                        play_history=merge_history(history.play_history, None),
                        resume_time=history.resume_time,
                        last_played_at=history.last_played_at,
                    )
                )
                continue
            existing.play_count = (existing.play_count or 0) + (history.play_count or 0)
            existing.play_duration = (existing.play_duration or 0.0) + (
                history.play_duration or 0.0
            )
            existing.o_count = (existing.o_count or 0) + (history.o_count or 0)
            existing.o_history = merge_history(existing.o_history, history.o_history)
            existing.play_history = merge_history(
                existing.play_history, history.play_history
            )
            existing.last_played_at = later(existing.last_played_at, history.last_played_at)
            if existing.resume_time is None:
                existing.resume_time = history.resume_time

    @staticmethod
    async def _transfer_hidden(
        session: AsyncSession,
        entity_type: str,
        source: tuple[str, str],
        target: tuple[str, str],
        transfers: dict[int, UserTransfer],
    ) -> None:
        sources = (
            await session.execute(
                select(UserHiddenEntity).where(
                    UserHiddenEntity.entity_type == entity_type,
                    UserHiddenEntity.entity_id == source[0],
                    UserHiddenEntity.instance_id == source[1],
                )
            )
        ).scalars().all()
        for hidden in sources:
            transfer = transfers.setdefault(hidden.user_id, UserTransfer(hidden.user_id))
            existing = (
                await session.execute(
                    select(UserHiddenEntity.id).where(
                        UserHiddenEntity.user_id == hidden.user_id,
                        UserHiddenEntity.entity_type == entity_type,
                        UserHiddenEntity.entity_id == target[0],
                        UserHiddenEntity.instance_id == target[1],
                    )
                )
            ).first()
            if existing is None:
                session.add(
                    UserHiddenEntity(
                        user_id=hidden.user_id,
                        entity_type=entity_type,
                        entity_id=target[0],
                        instance_id=target[1],
                        hidden_at=hidden.hidden_at,
                    )
                )
                transfer.hidden += 1

    @staticmethod
    async def _drop_orphan(
        session: AsyncSession, entity_type: str, orphan: EntityMixin
    ) -> dict[str, int]:
        entity_id = orphan.id
        instance_id = orphan.instance_id
        deleted: dict[str, int] = {}
        await session.flush()
        if entity_type == "scene":
            result = await session.execute(
                delete(WatchHistory).where(
                    WatchHistory.scene_id == entity_id,
                    WatchHistory.instance_id == instance_id,
                )
            )
            deleted["watchHistory"] = result.rowcount or 0
        for label, model in (
            ("ratings", EntityRating),
            ("hidden", UserHiddenEntity),
            ("exclusions", UserExcludedEntity),
        ):
            result = await session.execute(
                delete(model).where(
                    and_(
                        model.entity_type == entity_type,
                        model.entity_id == entity_id,
                        model.instance_id == instance_id,
                    )
                )
            )
            deleted[label] = result.rowcount or 0
        await purge_entity_links(session, entity_type, instance_id, [entity_id])
        await session.delete(orphan)
        return deleted


class _OrphanLock:
    """Fail-fast per-orphan lock: a second caller gets a conflict, not a wait."""

    def __init__(self, locks: dict[EntityKey, asyncio.Lock], key: EntityKey):
        self._locks = locks
        self._key = key

    async def __aenter__(self) -> None:
        lock = self._locks.get(self._key)
        if lock is not None and lock.locked():
            entity_type, instance_id, entity_id = self._key
            raise ReconciliationConflictError(
                f"{entity_type} {entity_id} on {instance_id} is already being reconciled"
            )
        lock = self._locks.setdefault(self._key, asyncio.Lock())
        await lock.acquire()

    async def __aexit__(self, *exc_info: Any) -> None:
        lock = self._locks.pop(self._key, None)
        if lock is not None:
            lock.release()
