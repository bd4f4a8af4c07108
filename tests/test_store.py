from __future__ import annotations

import asyncio

from sqlalchemy import select

from mirror.db_models import (
    Scene,
    SceneTag,
    SourceInstance,
    Tag,
    TagHierarchy,
    User,
    UserExcludedEntity,
)
from mirror.services.instances import SourceInstanceManager
from mirror.services.sync_engine import AbortSignal

from conftest import FakeUpstream, build_stack, named, scene


async def _scene_keys(session_factory, *, live: bool) -> list[tuple[str, str]]:
    async with session_factory() as session:
        statement = select(Scene.id, Scene.instance_id)
        if live:
            statement = statement.where(Scene.deleted_at.is_(None))
        rows = (await session.execute(statement)).all()
    return sorted((row[0], row[1]) for row in rows)


def test_repair_keeps_rows_of_disabled_instances(tmp_path) -> None:
    async def runner() -> None:
        first = FakeUpstream({"scene": [scene(1), scene(2)]})
        second = FakeUpstream({"scene": [scene(7), scene(8)]})
        stack = await build_stack(tmp_path / "disabled.db", {"A": first, "B": second})
        await stack.engine.run("full", abort=AbortSignal())
        factory = stack.database.session_factory

        async with factory() as session:
            session.add_all(
                [
                    SourceInstance(id="A", name="A", url="http://a/graphql", enabled=True),
                    SourceInstance(id="B", name="B", url="http://b/graphql", enabled=False),
                    Scene(id="9", instance_id="default", name="legacy"),
                    Scene(id="5", instance_id="retired", name="stray"),
                ]
            )
            await session.commit()

        manager = SourceInstanceManager(
            stack.settings, factory, client_factory=lambda _config: FakeUpstream()
        )
        await manager.load()
        assert [instance.id for instance in manager.enabled()] == ["A"]
        known = await manager.known_ids()
        assert known == {"A", "B"}

        repaired = await stack.store.repair_unconfigured_rows(known)

        # Two registered instances leave the placeholder row nowhere to go.
        assert repaired == 2
        assert await _scene_keys(factory, live=True) == [
            ("1", "A"),
            ("2", "A"),
            ("7", "B"),
            ("8", "B"),
        ]
        assert ("9", "default") in await _scene_keys(factory, live=False)
        await stack.database.dispose()

    asyncio.run(runner())


def test_repair_rehomes_placeholder_rows_onto_the_only_instance(tmp_path) -> None:
    async def runner() -> None:
        upstream = FakeUpstream({"scene": [scene(1)]})
        stack = await build_stack(tmp_path / "placeholder.db", {"main": upstream})
        await stack.engine.run("full", abort=AbortSignal())
        factory = stack.database.session_factory

        async with factory() as session:
            session.add_all(
                [
                    Scene(id="9", instance_id="default", name="legacy"),
                    Scene(id="1", instance_id="default", name="duplicate"),
                    Tag(id="t1", instance_id="default", name="legacy tag"),
                    SceneTag(
                        left_id="9",
                        left_instance_id="default",
                        right_id="t1",
                        right_instance_id="default",
                    ),
                ]
            )
            await session.commit()

        repaired = await stack.store.repair_unconfigured_rows({"main"})

        assert repaired == 3
        assert await _scene_keys(factory, live=True) == [("1", "main"), ("9", "main")]
        async with factory() as session:
            duplicate = await session.get(Scene, {"id": "1", "instance_id": "default"})
            tag = await session.get(Tag, {"id": "t1", "instance_id": "main"})
            links = (await session.execute(select(SceneTag))).scalars().all()
        assert duplicate is not None and duplicate.deleted_at is not None
        assert tag is not None and tag.deleted_at is None
        assert [
            (link.left_id, link.left_instance_id, link.right_id, link.right_instance_id)
            for link in links
        ] == [("9", "main", "t1", "main")]

        assert await stack.store.repair_unconfigured_rows(set()) == 0
        await stack.database.dispose()

    asyncio.run(runner())


def test_purge_dangling_references_removes_broken_rows(tmp_path) -> None:
    async def runner() -> None:
        upstream = FakeUpstream(
            {
                "tag": [named("t1"), named("t2", parents=[{"id": "t1"}])],
                "scene": [scene(1, tags=["t1"]), scene(2, tags=["t2"])],
            }
        )
        stack = await build_stack(tmp_path / "dangling.db", {"main": upstream})
        await stack.engine.run("full", abort=AbortSignal())
        factory = stack.database.session_factory

        async with factory() as session:
            session.add_all(
                [
                    User(id=1, username="alice"),
                    SceneTag(
                        left_id="1",
                        left_instance_id="main",
                        right_id="missing",
                        right_instance_id="main",
                    ),
                    TagHierarchy(
                        parent_id="missing",
                        parent_instance_id="main",
                        child_id="t2",
                        child_instance_id="main",
                    ),
                    UserExcludedEntity(
                        user_id=1,
                        entity_type="scene",
                        entity_id="404",
                        instance_id="main",
                        reason="hidden",
                    ),
                    UserExcludedEntity(
                        user_id=1,
                        entity_type="scene",
                        entity_id="2",
                        instance_id="main",
                        reason="hidden",
                    ),
                ]
            )
            await session.commit()

        purged = await stack.store.purge_dangling_references()

        assert purged == {
            "scene_tags": 1,
            "tag_hierarchy": 1,
            "user_excluded_entities.scene": 1,
        }
        async with factory() as session:
            links = (await session.execute(select(SceneTag))).scalars().all()
            edges = (await session.execute(select(TagHierarchy))).scalars().all()
            excluded = (await session.execute(select(UserExcludedEntity))).scalars().all()
        assert sorted((link.left_id, link.right_id) for link in links) == [
            ("1", "t1"),
            ("2", "t2"),
        ]
        assert [(edge.parent_id, edge.child_id) for edge in edges] == [("t1", "t2")]
        assert [row.entity_id for row in excluded] == ["2"]
        assert await stack.store.purge_dangling_references() == {}
        await stack.database.dispose()

    asyncio.run(runner())
