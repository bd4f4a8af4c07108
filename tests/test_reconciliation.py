from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from sqlalchemy import select

from mirror.db_models import (
    EntityRating,
    MergeRecord,
    Scene,
    User,
    UserHiddenEntity,
    WatchHistory,
)
from mirror.errors import (
    NotFoundError,
    ReconciliationAmbiguityError,
    ReconciliationConflictError,
    ValidationFailure,
)
from mirror.services.reconciliation import IdentityReconciliationService, merge_history
from mirror.services.sync_engine import AbortSignal

from conftest import FakeUpstream, build_stack, scene

EXACT = "aaaaaaaaaaaaaaaa"
NEAR = "aaaaaaaaaaaaaaab"
FAR = "0000000000000000"


async def _orphan_library(tmp_path, name: str):
    upstream = FakeUpstream(
        {
            "scene": [
                scene(1, phash=EXACT),
                scene(2, phash=EXACT, updated=5),
                scene(3, phash=NEAR),
                scene(4, phash=FAR),
            ]
        }
    )
    stack = await build_stack(tmp_path / name, {"main": upstream})
    await stack.engine.run("full", abort=AbortSignal())
    upstream.set("scene", [scene(2, phash=EXACT, updated=5), scene(3, phash=NEAR), scene(4, phash=FAR)])
    await stack.engine.run("full", abort=AbortSignal())
    return stack


async def _seed_activity(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                User(id=1, username="alice"),
                User(id=2, username="bob"),
                WatchHistory(
                    user_id=1,
                    scene_id="1",
                    instance_id="main",
                    play_count=2,
                    play_duration=120.0,
                    o_count=1,
                    o_history=["2024-01-02T00:00:00"],
                    play_history=["2024-01-01T00:00:00"],
                    resume_time=10.0,
                    last_played_at=datetime(2024, 1, 2),
                ),
                WatchHistory(
                    user_id=1,
                    scene_id="2",
                    instance_id="main",
                    play_count=3,
                    play_duration=30.0,
                    o_count=0,
                    o_history=["2024-01-03T00:00:00"],
                    play_history=["2024-01-01T00:00:00"],
                    resume_time=50.0,
                    last_played_at=datetime(2024, 1, 1),
                ),
                EntityRating(
                    user_id=1,
                    entity_type="scene",
                    entity_id="1",
                    instance_id="main",
                    rating=80,
                    favorite=True,
                ),
                EntityRating(
                    user_id=1,
                    entity_type="scene",
                    entity_id="2",
                    instance_id="main",
                    rating=None,
                    favorite=False,
                ),
                UserHiddenEntity(
                    user_id=2, entity_type="scene", entity_id="1", instance_id="main"
                ),
            ]
        )
        await session.commit()


def test_merge_history_deduplicates_and_sorts() -> None:
    merged = merge_history(
        ["2024-01-03", "2024-01-01"],
        '["2024-01-02", "2024-01-01"]',
    )

    assert merged == ["2024-01-01", "2024-01-02", "2024-01-03"]
    assert merge_history(None, [{"startTime": "b"}, {"startTime": "a"}]) == [
        {"startTime": "a"},
        {"startTime": "b"},
    ]


def test_orphans_and_ranked_matches(tmp_path) -> None:
    async def runner() -> None:
        stack = await _orphan_library(tmp_path, "matches.db")
        await _seed_activity(stack.database.session_factory)
        service = IdentityReconciliationService(stack.settings, stack.database.session_factory)

        orphans = await service.find_orphaned_entities_with_activity()
        assert [(item.entity_id, item.instance_id) for item in orphans] == [("1", "main")]
        orphan = orphans[0]
        assert orphan.watch_history_count == 1
        assert orphan.total_plays == 2
        assert orphan.rating_count == 1
        assert orphan.favorite_count == 1
        assert orphan.hidden_count == 1
        assert orphan.phash == EXACT

        matches = await service.find_matches("scene", "main", "1")
        assert [(item.entity_id, item.confidence) for item in matches] == [
            ("2", "exact"),
            ("3", "near"),
        ]
        assert matches[0].recommended is True
        assert matches[1].distance == 1
        assert matches[1].recommended is False

        with pytest.raises(NotFoundError):
            await service.find_matches("scene", "main", "missing")
        await stack.database.dispose()

    asyncio.run(runner())


def test_reconcile_transfers_user_data(tmp_path) -> None:
    async def runner() -> None:
        stack = await _orphan_library(tmp_path, "reconcile.db")
        factory = stack.database.session_factory
        await _seed_activity(factory)
        service = IdentityReconciliationService(stack.settings, factory)

        result = await service.reconcile("scene", "main", "1", "2", "main", actor_id="admin")
        payload = result.to_payload()
        assert payload["usersAffected"] == 2
        assert payload["playCountTransferred"] == 2
        assert payload["hiddenTransferred"] == 1

        async with factory() as session:
            history = (
                await session.execute(
                    select(WatchHistory).where(WatchHistory.user_id == 1)
                )
            ).scalars().all()
            rating = (
                await session.execute(
                    select(EntityRating).where(EntityRating.user_id == 1)
                )
            ).scalars().all()
            hidden = (
                await session.execute(
                    select(UserHiddenEntity).where(UserHiddenEntity.user_id == 2)
                )
            ).scalars().all()
            records = (await session.execute(select(MergeRecord))).scalars().all()
            orphan_row = await session.get(Scene, {"id": "1", "instance_id": "main"})

        assert len(history) == 1
        merged = history[0]
        assert merged.scene_id == "2"
        assert merged.play_count == 5
        assert merged.play_duration == 150.0
        assert merged.o_count == 1
        assert merged.o_history == ["2024-01-02T00:00:00", "2024-01-03T00:00:00"]
        assert merged.play_history == ["2024-01-01T00:00:00"]
        assert merged.resume_time == 50.0
        assert merged.last_played_at == datetime(2024, 1, 2)

        assert [(item.entity_id, item.rating, item.favorite) for item in rating] == [
            ("2", 80, True)
        ]
        assert [(item.entity_id, item.instance_id) for item in hidden] == [("2", "main")]
        assert sorted(record.user_id for record in records) == [1, 2]
        assert all(record.actor_id == "admin" for record in records)
        assert orphan_row is None

        with pytest.raises(NotFoundError):
            await service.reconcile("scene", "main", "1", "2", "main")
        await stack.database.dispose()

    asyncio.run(runner())


def test_reconcile_without_user_data_still_writes_merge_record(tmp_path) -> None:
    async def runner() -> None:
        stack = await _orphan_library(tmp_path, "no-activity.db")
        factory = stack.database.session_factory
        service = IdentityReconciliationService(stack.settings, factory)

        result = await service.reconcile("scene", "main", "1", "2", "main", actor_id="admin")

        assert result.to_payload()["usersAffected"] == 0
        async with factory() as session:
            records = (await session.execute(select(MergeRecord))).scalars().all()
            orphan_row = await session.get(Scene, {"id": "1", "instance_id": "main"})
        assert len(records) == 1
        record = records[0]
        assert record.user_id is None
        assert (record.source_id, record.target_id) == ("1", "2")
        assert record.actor_id == "admin"
        assert record.play_count_transferred == 0
        assert record.hidden_transferred == 0
        assert record.rating_transferred is False
        assert orphan_row is None
        await stack.database.dispose()

    asyncio.run(runner())


def test_reconcile_rejects_live_orphans_and_bad_targets(tmp_path) -> None:
    async def runner() -> None:
        stack = await _orphan_library(tmp_path, "reject.db")
        service = IdentityReconciliationService(stack.settings, stack.database.session_factory)

        with pytest.raises(ValidationFailure):
            await service.reconcile("scene", "main", "2", "3", "main")
        with pytest.raises(ValidationFailure):
            await service.reconcile("scene", "main", "1", "1", "main")
        with pytest.raises(NotFoundError):
            await service.reconcile("scene", "main", "1", "99", "main")
        with pytest.raises(ValidationFailure):
            await service.find_orphaned_entities_with_activity("playlist")
        await stack.database.dispose()

    asyncio.run(runner())


def test_concurrent_reconcile_of_same_orphan_fails_fast(tmp_path) -> None:
    async def runner() -> None:
        stack = await _orphan_library(tmp_path, "concurrent.db")
        await _seed_activity(stack.database.session_factory)
        service = IdentityReconciliationService(stack.settings, stack.database.session_factory)

        outcomes = await asyncio.gather(
            service.reconcile("scene", "main", "1", "2", "main"),
            service.discard("scene", "main", "1"),
            return_exceptions=True,
        )

        assert not isinstance(outcomes[0], BaseException)
        assert isinstance(outcomes[1], ReconciliationConflictError)
        await stack.database.dispose()

    asyncio.run(runner())


def test_discard_removes_user_data_and_row(tmp_path) -> None:
    async def runner() -> None:
        stack = await _orphan_library(tmp_path, "discard.db")
        factory = stack.database.session_factory
        await _seed_activity(factory)
        service = IdentityReconciliationService(stack.settings, factory)

        deleted = await service.discard("scene", "main", "1")

        assert deleted["watchHistory"] == 1
        assert deleted["ratings"] == 1
        assert deleted["hidden"] == 1
        assert await service.find_orphaned_entities_with_activity() == []
        async with factory() as session:
            assert await session.get(Scene, {"id": "1", "instance_id": "main"}) is None
            target_history = (
                await session.execute(select(WatchHistory).where(WatchHistory.scene_id == "2"))
            ).scalars().all()
        assert [item.play_count for item in target_history] == [3]
        await stack.database.dispose()

    asyncio.run(runner())


def test_reconcile_all_only_takes_unambiguous_exact_matches(tmp_path) -> None:
    async def runner() -> None:
        main = FakeUpstream(
            {
                "scene": [
                    scene(1, phash="1111111111111111"),
                    scene(2, phash="1111111111111111"),
                    scene(3, phash="2222222222222222"),
                    scene(5, phash="3333333333333333"),
                ]
            }
        )
        backup = FakeUpstream(
            {
                "scene": [
                    scene(30, phash="2222222222222222"),
                    scene(31, phash="2222222222222222"),
                ]
            }
        )
        stack = await build_stack(tmp_path / "reconcile-all.db", {"main": main, "backup": backup})
        await stack.engine.run("full", abort=AbortSignal())
        main.set("scene", [scene(2, phash="1111111111111111")])
        await stack.engine.run("full", abort=AbortSignal())

        factory = stack.database.session_factory
        async with factory() as session:
            session.add(User(id=1, username="alice"))
            for entity_id in ("1", "3", "5"):
                session.add(
                    EntityRating(
                        user_id=1,
                        entity_type="scene",
                        entity_id=entity_id,
                        instance_id="main",
                        rating=60,
                    )
                )
            await session.commit()

        service = IdentityReconciliationService(stack.settings, factory)
        result = await service.reconcile_all("system")

        assert result == {"reconciled": 1, "skipped": 2, "failed": 0, "errors": []}
        remaining = await service.find_orphaned_entities_with_activity()
        assert sorted(item.entity_id for item in remaining) == ["3", "5"]
        async with factory() as session:
            record = (await session.execute(select(MergeRecord))).scalar_one()
        assert (record.source_id, record.target_id) == ("1", "2")
        assert record.automatic is True
        assert record.matched_by == "phash"
        with pytest.raises(ReconciliationAmbiguityError):
            await service.auto_target("scene", "main", "3")
        with pytest.raises(ReconciliationAmbiguityError):
            await service.auto_target("scene", "main", "5")
        await stack.database.dispose()

    asyncio.run(runner())


def test_cross_instance_duplicates_grouped_by_phash(tmp_path) -> None:
    async def runner() -> None:
        main = FakeUpstream({"scene": [scene(1, phash=EXACT), scene(2, phash=FAR)]})
        backup = FakeUpstream({"scene": [scene(9, phash=EXACT)]})
        stack = await build_stack(tmp_path / "duplicates.db", {"main": main, "backup": backup})
        await stack.engine.run("full", abort=AbortSignal())
        service = IdentityReconciliationService(stack.settings, stack.database.session_factory)

        groups = await service.find_cross_instance_duplicates()

        assert len(groups) == 1
        assert groups[0]["phash"] == EXACT
        assert sorted(
            (member["instanceId"], member["entityId"]) for member in groups[0]["members"]
        ) == [("backup", "9"), ("main", "1")]
        await stack.database.dispose()

    asyncio.run(runner())
