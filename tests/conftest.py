"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``mirror``
# sits at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from mirror.config import Settings  # noqa: E402
from mirror.database import Database  # noqa: E402
from mirror.errors import UpstreamError  # noqa: E402
from mirror.services.instances import InstanceConfig, SourceInstanceManager  # noqa: E402
from mirror.services.stash import EntityPage  # noqa: E402
from mirror.services.store import EntityStore  # noqa: E402
from mirror.services.sync_engine import SyncEngine  # noqa: E402
from mirror.utils import parse_source_timestamp  # noqa: E402

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def stamp(offset_seconds: int) -> str:
    """Upstream-style timestamp ``offset_seconds`` after ``BASE_TIME``."""

    return (BASE_TIME + timedelta(seconds=offset_seconds)).isoformat() + "Z"


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base: dict[str, Any] = {"SYNC_ON_STARTUP": False}
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def _sort_key(record: dict[str, Any]) -> tuple[int, str]:
    identifier = str(record.get("id"))
    return (int(identifier), identifier) if identifier.isdigit() else (10**12, identifier)


class FakeUpstream:
    """In-memory stand-in for one upstream catalog."""

    def __init__(self, records: dict[str, list[dict[str, Any]]] | None = None):
        self.records: dict[str, list[dict[str, Any]]] = {
            entity_type: list(items) for entity_type, items in (records or {}).items()
        }
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.failing: set[str] = set()

    def set(self, entity_type: str, records: list[dict[str, Any]]) -> None:
        self.records[entity_type] = list(records)

    def _items(self, entity_type: str) -> list[dict[str, Any]]:
        if entity_type in self.failing:
            raise UpstreamError(f"{entity_type} query failed")
        return sorted(self.records.get(entity_type, []), key=_sort_key)

    async def fetch_page(
        self,
        entity_type: str,
        *,
        page: int,
        per_page: int,
        updated_after: str | None = None,
    ) -> EntityPage:
        self.calls.append(
            ("page", entity_type, {"page": page, "updated_after": updated_after})
        )
        items = self._items(entity_type)
        if updated_after is not None:
            threshold = parse_source_timestamp(updated_after)
            items = [
                item
                for item in items
                if (parse_source_timestamp(item.get("updated_at")) or BASE_TIME) > threshold
            ]
        start = (page - 1) * per_page
        return EntityPage(items=items[start : start + per_page], count=len(items))

    async def fetch_ids(
        self, entity_type: str, *, page: int, per_page: int
    ) -> EntityPage:
        self.calls.append(("ids", entity_type, {"page": page}))
        items = [{"id": item["id"]} for item in self._items(entity_type)]
        start = (page - 1) * per_page
        return EntityPage(items=items[start : start + per_page], count=len(items))

    async def fetch_by_ids(
        self, entity_type: str, ids: list[str]
    ) -> list[dict[str, Any]]:
        self.calls.append(("ids_lookup", entity_type, {"ids": list(ids)}))
        wanted = {str(value) for value in ids}
        return [item for item in self._items(entity_type) if str(item["id"]) in wanted]

    def page_calls(self, entity_type: str) -> list[dict[str, Any]]:
        return [
            params
            for kind, called_type, params in self.calls
            if kind == "page" and called_type == entity_type
        ]


@dataclass
class Stack:
    settings: Settings
    database: Database
    instances: SourceInstanceManager
    store: EntityStore
    engine: SyncEngine


async def build_stack(
    database_path: Path,
    upstreams: dict[str, FakeUpstream],
    **overrides: Any,
) -> Stack:
    """Create a database and a sync engine wired to fake upstreams."""

    settings = build_settings(**overrides)
    database = Database(f"sqlite+aiosqlite:///{database_path}")
    await database.create_all()
    instances = SourceInstanceManager(settings, database.session_factory)
    for priority, (instance_id, upstream) in enumerate(upstreams.items()):
        instances.register(
            InstanceConfig(
                id=instance_id,
                name=instance_id,
                url=f"http://{instance_id}/graphql",
                priority=priority,
            ),
            client=upstream,
        )
    store = EntityStore(database.session_factory)
    engine = SyncEngine(settings, instances, store)
    return Stack(settings, database, instances, store, engine)


def scene(
    identifier: int | str,
    *,
    updated: int = 0,
    title: str | None = None,
    studio: str | None = None,
    performers: list[str] | None = None,
    tags: list[str] | None = None,
    groups: list[str] | None = None,
    phash: str | list[str] | None = None,
) -> dict[str, Any]:
    """Build an upstream scene record."""

    fingerprints: list[dict[str, str]] = []
    for value in [phash] if isinstance(phash, str) else phash or []:
        fingerprints.append({"type": "phash", "value": value})
    return {
        "id": str(identifier),
        "title": title or f"Scene {identifier}",
        "created_at": stamp(0),
        "updated_at": stamp(updated),
        "studio": {"id": studio} if studio else None,
        "performers": [{"id": value} for value in performers or []],
        "tags": [{"id": value} for value in tags or []],
        "groups": [{"group": {"id": value}, "scene_index": None} for value in groups or []],
        "galleries": [],
        "files": [{"path": f"/media/{identifier}.mp4", "duration": 60, "fingerprints": fingerprints}],
    }


def named(identifier: int | str, *, updated: int = 0, **extra: Any) -> dict[str, Any]:
    """Build a generic named record (performer, studio, tag, group)."""

    record = {
        "id": str(identifier),
        "name": f"Entity {identifier}",
        "title": f"Entity {identifier}",
        "created_at": stamp(0),
        "updated_at": stamp(updated),
    }
    record.update(extra)
    return record
