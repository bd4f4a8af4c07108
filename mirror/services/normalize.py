"""Map upstream GraphQL records onto local row shapes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from ..db_models import JunctionMixin, SceneGroup
from ..entities import HIERARCHIES, owner_junctions
from ..utils import normalise_phash, parse_source_timestamp, unique


@dataclass(slots=True)
class NormalizedEntity:
    """A single upstream record ready to be written."""

    id: str
    row: dict[str, Any]
    links: dict[type[JunctionMixin], list[dict[str, Any]]] = field(default_factory=dict)
    parent_ids: list[str] | None = None
    updated_at: datetime | None = None


def _clean_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _nested_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return _clean_id(value.get("id"))
    return None


def _related_ids(values: Any, *, nested_key: str | None = None) -> list[str]:
    if not isinstance(values, list):
        return []
    collected: list[str] = []
    for entry in values:
        if nested_key and isinstance(entry, dict):
            entry = entry.get(nested_key)
        identifier = _nested_id(entry)
        if identifier:
            collected.append(identifier)
    return unique(collected)


def _first_text(record: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _as_float(value: Any, default: float | None = 0.0) -> float | None:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def extract_phashes(files: Iterable[dict[str, Any]] | None) -> tuple[str | None, list[str] | None]:
    """Return the primary phash and, when there are several, all of them."""

    found: list[str] = []
    for file in files or []:
        if not isinstance(file, dict):
            continue
        for fingerprint in file.get("fingerprints") or []:
            if not isinstance(fingerprint, dict) or fingerprint.get("type") != "phash":
                continue
            value = normalise_phash(fingerprint.get("value"))
            if value:
                found.append(value)
    found = unique(found)
    if not found:
        return None, None
    return found[0], (found if len(found) > 1 else None)


def _scene_columns(record: dict[str, Any]) -> dict[str, Any]:
    files = record.get("files") or []
    first_file = files[0] if files and isinstance(files[0], dict) else {}
    phash, phashes = extract_phashes(files)
    return {
        "name": _first_text(record, "title"),
        "details": _first_text(record, "details"),
        "studio_id": _nested_id(record.get("studio")),
        "date": _first_text(record, "date"),
        "duration": _as_int(first_file.get("duration")),
        "organized": bool(record.get("organized")),
        "o_counter": _as_int(record.get("o_counter")) or 0,
        "play_count": _as_int(record.get("play_count")) or 0,
        "play_duration": _as_float(record.get("play_duration")),
        "phash": phash,
        "phashes": phashes,
        "payload": {
            "code": record.get("code"),
            "urls": record.get("urls") or [],
            "paths": record.get("paths") or {},
            "width": first_file.get("width"),
            "height": first_file.get("height"),
            "path": first_file.get("path"),
        },
    }


def _performer_columns(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": _first_text(record, "name"),
        "details": _first_text(record, "details"),
        "gender": _first_text(record, "gender"),
        "payload": {
            "disambiguation": record.get("disambiguation"),
            "birthdate": record.get("birthdate"),
            "country": record.get("country"),
            "image_path": record.get("image_path"),
            "alias_list": record.get("alias_list") or [],
        },
    }


def _studio_columns(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": _first_text(record, "name"),
        "details": _first_text(record, "details"),
        "payload": {"url": record.get("url"), "image_path": record.get("image_path")},
    }


def _tag_columns(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": _first_text(record, "name"),
        "details": _first_text(record, "description"),
        "payload": {
            "aliases": record.get("aliases") or [],
            "image_path": record.get("image_path"),
        },
    }


def _group_columns(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": _first_text(record, "name"),
        "details": _first_text(record, "synopsis"),
        "studio_id": _nested_id(record.get("studio")),
        "date": _first_text(record, "date"),
        "duration": _as_int(record.get("duration")),
        "payload": {
            "aliases": record.get("aliases"),
            "director": record.get("director"),
            "front_image_path": record.get("front_image_path"),
        },
    }


def _gallery_columns(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": _first_text(record, "title"),
        "details": _first_text(record, "details"),
        "studio_id": _nested_id(record.get("studio")),
        "date": _first_text(record, "date"),
        "image_count": _as_int(record.get("image_count")) or 0,
        "payload": {"code": record.get("code"), "urls": record.get("urls") or []},
    }


def _image_columns(record: dict[str, Any]) -> dict[str, Any]:
    phash, _ = extract_phashes(record.get("visual_files"))
    return {
        "name": _first_text(record, "title"),
        "details": _first_text(record, "details"),
        "studio_id": _nested_id(record.get("studio")),
        "date": _first_text(record, "date"),
        "organized": bool(record.get("organized")),
        "o_counter": _as_int(record.get("o_counter")) or 0,
        "phash": phash,
        "payload": {"code": record.get("code"), "paths": record.get("paths") or {}},
    }


def _clip_columns(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": _first_text(record, "title"),
        "details": None,
        "scene_id": _nested_id(record.get("scene")),
        "primary_tag_id": _nested_id(record.get("primary_tag")),
        "seconds": _as_float(record.get("seconds")),
        "end_seconds": _as_float(record.get("end_seconds"), None),
        "payload": {
            "stream": record.get("stream"),
            "preview": record.get("preview"),
            "screenshot": record.get("screenshot"),
        },
    }


_COLUMN_BUILDERS: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    "scene": _scene_columns,
    "performer": _performer_columns,
    "studio": _studio_columns,
    "tag": _tag_columns,
    "group": _group_columns,
    "gallery": _gallery_columns,
    "image": _image_columns,
    "clip": _clip_columns,
}


def _parent_ids(entity_type: str, record: dict[str, Any]) -> list[str]:
    if entity_type == "tag":
        return _related_ids(record.get("parents"))
    if entity_type == "studio":
        parent = _nested_id(record.get("parent_studio"))
        return [parent] if parent else []
    if entity_type == "group":
        return _related_ids(record.get("containing_groups"), nested_key="group")
    return []


def _junction_rows(
    entity_type: str, entity_id: str, instance_id: str, record: dict[str, Any]
) -> dict[type[JunctionMixin], list[dict[str, Any]]]:
    links: dict[type[JunctionMixin], list[dict[str, Any]]] = {}
    for relation in owner_junctions(entity_type):
        junction = relation.junction
        assert junction is not None and relation.source_field is not None
        raw = record.get(relation.source_field)
        rows: list[dict[str, Any]] = []
        if junction is SceneGroup:
            seen: set[str] = set()
            for entry in raw or []:
                if not isinstance(entry, dict):
                    continue
                group_id = _nested_id(entry.get("group"))
                if not group_id or group_id in seen:
                    continue
                seen.add(group_id)
                rows.append(
                    {
                        "left_id": entity_id,
                        "left_instance_id": instance_id,
                        "right_id": group_id,
                        "right_instance_id": instance_id,
                        "scene_index": _as_int(entry.get("scene_index")),
                    }
                )
        else:
            for related_id in _related_ids(raw):
                rows.append(
                    {
                        "left_id": entity_id,
                        "left_instance_id": instance_id,
                        "right_id": related_id,
                        "right_instance_id": instance_id,
                    }
                )
        links[junction] = rows
    return links


def normalize_record(
    entity_type: str,
    record: dict[str, Any],
    instance_id: str,
    synced_at: datetime,
) -> NormalizedEntity | None:
    """Turn one upstream record into a row, its links and its parents.

    Records without a usable id are skipped and ``None`` is returned.
    """

    entity_id = _clean_id(record.get("id"))
    if entity_id is None:
        return None
    builder = _COLUMN_BUILDERS[entity_type]
    updated_at = parse_source_timestamp(record.get("updated_at"))
    row = {
        "id": entity_id,
        "instance_id": instance_id,
        "rating": _as_int(record.get("rating100")),
        "favorite": bool(record.get("favorite")),
        "source_created_at": parse_source_timestamp(record.get("created_at")),
        "source_updated_at": updated_at,
        "synced_at": synced_at,
    }
    row.update(builder(record))
    return NormalizedEntity(
        id=entity_id,
        row=row,
        links=_junction_rows(entity_type, entity_id, instance_id, record),
        parent_ids=_parent_ids(entity_type, record) if entity_type in HIERARCHIES else None,
        updated_at=updated_at,
    )


def normalize_page(
    entity_type: str,
    records: Iterable[dict[str, Any]],
    instance_id: str,
    synced_at: datetime,
) -> list[NormalizedEntity]:
    normalized: list[NormalizedEntity] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        entity = normalize_record(entity_type, record, instance_id, synced_at)
        if entity is not None:
            normalized.append(entity)
    return normalized
