"""Registry describing mirrored entity types and how they relate."""

from __future__ import annotations

from dataclasses import dataclass

from .db_models import (
    Clip,
    ClipTag,
    EntityMixin,
    Gallery,
    GalleryPerformer,
    GalleryTag,
    Group,
    GroupHierarchy,
    GroupTag,
    HierarchyMixin,
    Image,
    ImageGallery,
    ImagePerformer,
    ImageTag,
    JunctionMixin,
    Performer,
    PerformerTag,
    Scene,
    SceneGallery,
    SceneGroup,
    ScenePerformer,
    SceneTag,
    Studio,
    StudioHierarchy,
    StudioTag,
    Tag,
    TagHierarchy,
)

ENTITY_MODELS: dict[str, type[EntityMixin]] = {
    "scene": Scene,
    "performer": Performer,
    "studio": Studio,
    "tag": Tag,
    "group": Group,
    "gallery": Gallery,
    "image": Image,
    "clip": Clip,
}
ENTITY_TYPES: tuple[str, ...] = tuple(ENTITY_MODELS)

# Referenced types come first so junction targets exist when owners land.
SYNC_ORDER: tuple[str, ...] = (
    "tag",
    "studio",
    "performer",
    "group",
    "gallery",
    "scene",
    "clip",
    "image",
)

RESTRICTABLE_TYPES: tuple[str, ...] = ("tag", "studio", "group", "gallery")
FINGERPRINTED_TYPES: tuple[str, ...] = ("scene", "image")

WEBHOOK_ENTITY_ALIASES: dict[str, str] = {
    "scene": "scene",
    "performer": "performer",
    "studio": "studio",
    "tag": "tag",
    "group": "group",
    "movie": "group",
    "gallery": "gallery",
    "image": "image",
    "clip": "clip",
    "scene_marker": "clip",
}


@dataclass(frozen=True, slots=True)
class Relation:
    """``owner`` rows reference ``target`` rows.

    A relation is stored either in a junction table (``junction``) or as a
    column on the owner row (``column``).
    """

    owner: str
    target: str
    junction: type[JunctionMixin] | None = None
    column: str | None = None
    source_field: str | None = None


RELATIONS: tuple[Relation, ...] = (
    Relation("scene", "performer", junction=ScenePerformer, source_field="performers"),
    Relation("scene", "tag", junction=SceneTag, source_field="tags"),
    Relation("scene", "group", junction=SceneGroup, source_field="groups"),
    Relation("scene", "gallery", junction=SceneGallery, source_field="galleries"),
    Relation("scene", "studio", column="studio_id"),
    Relation("performer", "tag", junction=PerformerTag, source_field="tags"),
    Relation("studio", "tag", junction=StudioTag, source_field="tags"),
    Relation("group", "tag", junction=GroupTag, source_field="tags"),
    Relation("group", "studio", column="studio_id"),
    Relation("gallery", "tag", junction=GalleryTag, source_field="tags"),
    Relation("gallery", "performer", junction=GalleryPerformer, source_field="performers"),
    Relation("gallery", "studio", column="studio_id"),
    Relation("image", "tag", junction=ImageTag, source_field="tags"),
    Relation("image", "performer", junction=ImagePerformer, source_field="performers"),
    Relation("image", "gallery", junction=ImageGallery, source_field="galleries"),
    Relation("image", "studio", column="studio_id"),
    Relation("clip", "tag", junction=ClipTag, source_field="tags"),
    Relation("clip", "tag", column="primary_tag_id"),
    Relation("clip", "scene", column="scene_id"),
)

HIERARCHIES: dict[str, type[HierarchyMixin]] = {
    "tag": TagHierarchy,
    "studio": StudioHierarchy,
    "group": GroupHierarchy,
}


def model_for(entity_type: str) -> type[EntityMixin]:
    try:
        return ENTITY_MODELS[entity_type]
    except KeyError as exc:
        raise ValueError(f"Unknown entity type: {entity_type}") from exc


def relations_from(owner: str) -> tuple[Relation, ...]:
    return tuple(relation for relation in RELATIONS if relation.owner == owner)


def owner_junctions(owner: str) -> tuple[Relation, ...]:
    """Junction-backed relations written while syncing ``owner`` rows."""

    return tuple(
        relation for relation in relations_from(owner) if relation.junction is not None
    )


def junction_sides(entity_type: str) -> list[tuple[type[JunctionMixin], str]]:
    """Return every junction that references ``entity_type`` and on which side."""

    sides: list[tuple[type[JunctionMixin], str]] = []
    for relation in RELATIONS:
        if relation.junction is None:
            continue
        if relation.owner == entity_type:
            sides.append((relation.junction, "left"))
        if relation.target == entity_type:
            sides.append((relation.junction, "right"))
    return sides


def junction_relations() -> tuple[Relation, ...]:
    return tuple(relation for relation in RELATIONS if relation.junction is not None)


def revival_dependents(entity_type: str) -> tuple[str, ...]:
    """Types whose link rows must be rebuilt when ``entity_type`` rows revive.

    Soft deletes drop every junction and hierarchy row touching the entity, so
    the owners pointing at it (and its children, for hierarchical types) only
    get their links back by being swept again.
    """

    dependents = {
        relation.owner
        for relation in RELATIONS
        if relation.junction is not None and relation.target == entity_type
    }
    if entity_type in HIERARCHIES:
        dependents.add(entity_type)
    return tuple(name for name in SYNC_ORDER if name in dependents)
