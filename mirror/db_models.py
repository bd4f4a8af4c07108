"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .utils import utcnow


class Lifecycle(str, Enum):
    """Lifecycle of a mirrored entity row."""

    ACTIVE = "active"
    SOFT_DELETED = "soft_deleted"


def lifecycle_transition(
    target: Lifecycle, *, at: datetime | None = None
) -> dict[str, Any]:
    """Return the column values that move a row into ``target``.

    Every write that changes an entity's lifecycle goes through here so the
    meaning of ``deleted_at`` lives in one place.
    """

    if target is Lifecycle.ACTIVE:
        return {"deleted_at": None}
    return {"deleted_at": at or utcnow()}


class EntityMixin:
    """Columns shared by every mirrored entity table."""

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    instance_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)
    name: Mapped[str | None] = mapped_column(String(512), nullable=True, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    source_created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    source_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True, index=True
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    @property
    def lifecycle(self) -> Lifecycle:
        if self.deleted_at is None:
            return Lifecycle.ACTIVE
        return Lifecycle.SOFT_DELETED


class Scene(EntityMixin, Base):
    __tablename__ = "stash_scenes"

    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    organized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    o_counter: Mapped[int] = mapped_column(Integer, default=0)
    play_count: Mapped[int] = mapped_column(Integer, default=0)
    play_duration: Mapped[float] = mapped_column(Float, default=0.0)
    phash: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    phashes: Mapped[list[str] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )


class Performer(EntityMixin, Base):
    __tablename__ = "stash_performers"

    gender: Mapped[str | None] = mapped_column(String(32), nullable=True)


class Studio(EntityMixin, Base):
    __tablename__ = "stash_studios"


class Tag(EntityMixin, Base):
    __tablename__ = "stash_tags"


class Group(EntityMixin, Base):
    __tablename__ = "stash_groups"

    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Gallery(EntityMixin, Base):
    __tablename__ = "stash_galleries"

    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    image_count: Mapped[int] = mapped_column(Integer, default=0)


class Image(EntityMixin, Base):
    __tablename__ = "stash_images"

    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    organized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    o_counter: Mapped[int] = mapped_column(Integer, default=0)
    phash: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)


class Clip(EntityMixin, Base):
    __tablename__ = "stash_clips"

    scene_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    primary_tag_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seconds: Mapped[float] = mapped_column(Float, default=0.0)
    end_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)


class JunctionMixin:
    """Relationship row scoped by instance on both sides."""

    left_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    left_instance_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    right_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)
    right_instance_id: Mapped[str] = mapped_column(String(64), primary_key=True)


class ScenePerformer(JunctionMixin, Base):
    __tablename__ = "scene_performers"


class SceneTag(JunctionMixin, Base):
    __tablename__ = "scene_tags"


class SceneGroup(JunctionMixin, Base):
    __tablename__ = "scene_groups"

    scene_index: Mapped[int | None] = mapped_column(Integer, nullable=True)


class SceneGallery(JunctionMixin, Base):
    __tablename__ = "scene_galleries"


class PerformerTag(JunctionMixin, Base):
    __tablename__ = "performer_tags"


class StudioTag(JunctionMixin, Base):
    __tablename__ = "studio_tags"


class GroupTag(JunctionMixin, Base):
    __tablename__ = "group_tags"


class GalleryTag(JunctionMixin, Base):
    __tablename__ = "gallery_tags"


class GalleryPerformer(JunctionMixin, Base):
    __tablename__ = "gallery_performers"


class ImageTag(JunctionMixin, Base):
    __tablename__ = "image_tags"


class ImagePerformer(JunctionMixin, Base):
    __tablename__ = "image_performers"


class ImageGallery(JunctionMixin, Base):
    __tablename__ = "image_galleries"


class ClipTag(JunctionMixin, Base):
    __tablename__ = "clip_tags"


class HierarchyMixin:
    """Adjacency row for self-referential parent/child relations."""

    parent_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)
    parent_instance_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    child_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    child_instance_id: Mapped[str] = mapped_column(String(64), primary_key=True)


class TagHierarchy(HierarchyMixin, Base):
    __tablename__ = "tag_hierarchy"


class StudioHierarchy(HierarchyMixin, Base):
    __tablename__ = "studio_hierarchy"


class GroupHierarchy(HierarchyMixin, Base):
    __tablename__ = "group_hierarchy"


class SourceInstance(Base):
    """A configured upstream catalog connection."""

    __tablename__ = "source_instances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    url: Mapped[str] = mapped_column(String(512))
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class SyncState(Base):
    """Per-instance, per-entity-type sync cursor."""

    __tablename__ = "sync_state"
    __table_args__ = (
        UniqueConstraint("instance_id", "entity_type", name="uq_sync_state_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(String(64))
    entity_type: Mapped[str] = mapped_column(String(32))
    last_full_sync_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_incremental_sync_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_full_sync_actual: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_incremental_sync_actual: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_sync_count: Mapped[int] = mapped_column(Integer, default=0)
    last_sync_duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    total_entities: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class SyncSettings(Base):
    """Single-row schedule configuration editable at runtime."""

    __tablename__ = "sync_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    sync_interval_minutes: Mapped[int] = mapped_column(Integer, default=60)
    enable_scan_subscription: Mapped[bool] = mapped_column(Boolean, default=True)
    enable_plugin_webhook: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16))
    trigger: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    entities_synced: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    applied_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class MergeRecord(Base):
    """Append-only audit of a user-data transfer between identities."""

    __tablename__ = "merge_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32))
    source_id: Mapped[str] = mapped_column(String(64), index=True)
    source_instance_id: Mapped[str] = mapped_column(String(64))
    target_id: Mapped[str] = mapped_column(String(64), index=True)
    target_instance_id: Mapped[str] = mapped_column(String(64))
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    automatic: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    matched_by: Mapped[str] = mapped_column(String(16), default="manual")
    play_count_transferred: Mapped[int] = mapped_column(Integer, default=0)
    o_count_transferred: Mapped[int] = mapped_column(Integer, default=0)
    rating_transferred: Mapped[bool] = mapped_column(Boolean, default=False)
    favorite_transferred: Mapped[bool] = mapped_column(Boolean, default=False)
    hidden_transferred: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(120), unique=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class UserContentRestriction(Base):
    """One visibility rule per user and container type."""

    __tablename__ = "user_content_restrictions"
    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", name="uq_restriction_user_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    entity_type: Mapped[str] = mapped_column(String(32))
    mode: Mapped[str] = mapped_column(String(16), default="none")
    entity_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    restrict_empty: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class UserHiddenEntity(Base):
    __tablename__ = "user_hidden_entities"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "entity_type", "entity_id", "instance_id", name="uq_hidden_entity"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    entity_type: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[str] = mapped_column(String(64))
    instance_id: Mapped[str] = mapped_column(String(64))
    hidden_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class EntityRating(Base):
    __tablename__ = "entity_ratings"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "entity_type", "entity_id", "instance_id", name="uq_entity_rating"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    entity_type: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[str] = mapped_column(String(64))
    instance_id: Mapped[str] = mapped_column(String(64))
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class WatchHistory(Base):
    __tablename__ = "watch_history"
    __table_args__ = (
        UniqueConstraint("user_id", "scene_id", "instance_id", name="uq_watch_history"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    scene_id: Mapped[str] = mapped_column(String(64))
    instance_id: Mapped[str] = mapped_column(String(64))
    play_count: Mapped[int] = mapped_column(Integer, default=0)
    play_duration: Mapped[float] = mapped_column(Float, default=0.0)
    o_count: Mapped[int] = mapped_column(Integer, default=0)
    o_history: Mapped[list[str]] = mapped_column(JSON, default=list)
    play_history: Mapped[list[str]] = mapped_column(JSON, default=list)
    resume_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_played_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class UserExcludedEntity(Base):
    """Materialized "hidden from this user" row, rebuilt on every recompute."""

    __tablename__ = "user_excluded_entities"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "entity_type", "entity_id", "instance_id", name="uq_user_excluded"
        ),
        Index("ix_user_excluded_lookup", "user_id", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    entity_type: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[str] = mapped_column(String(64))
    instance_id: Mapped[str] = mapped_column(String(64))
    reason: Mapped[str] = mapped_column(String(16))
    computed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class UserEntityStats(Base):
    __tablename__ = "user_entity_stats"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    instance_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    visible_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
