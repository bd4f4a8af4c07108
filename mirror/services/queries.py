"""Read path that lists a user's visible library."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import EntityMixin, UserEntityStats, UserExcludedEntity
from ..entities import ENTITY_TYPES, model_for
from ..errors import ValidationFailure
from ..utils import isoformat_or_none

MAX_PER_PAGE = 500


@dataclass(slots=True)
class LibraryPage:
    entity_type: str
    page: int
    per_page: int
    total: int
    items: list[dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "page": self.page,
            "perPage": self.per_page,
            "total": self.total,
            "items": self.items,
        }


def _item_payload(row: EntityMixin) -> dict[str, Any]:
    return {
        "id": row.id,
        "instanceId": row.instance_id,
        "name": row.name,
        "rating": row.rating,
        "favorite": row.favorite,
        "updatedAt": isoformat_or_none(row.source_updated_at),
    }


class LibraryQueryService:
    """Serve visible rows by joining against the materialized exclusions.

    Only the exclusion and visible-count tables are consulted; sync state never
    is.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_visible(
        self,
        user_id: int,
        entity_type: str,
        page: int = 1,
        per_page: int = 50,
    ) -> LibraryPage:
        if entity_type not in ENTITY_TYPES:
            raise ValidationFailure(f"Unknown entity type: {entity_type}")
        if user_id <= 0:
            raise ValidationFailure("userId must be a positive integer")
        if page < 1:
            raise ValidationFailure("page must be at least 1")
        if not 1 <= per_page <= MAX_PER_PAGE:
            raise ValidationFailure(f"perPage must be between 1 and {MAX_PER_PAGE}")

        model = model_for(entity_type)
        excluded = and_(
            UserExcludedEntity.user_id == user_id,
            UserExcludedEntity.entity_type == entity_type,
            UserExcludedEntity.entity_id == model.id,
            UserExcludedEntity.instance_id == model.instance_id,
        )
        visible = (
            select(model)
            .outerjoin(UserExcludedEntity, excluded)
            .where(model.deleted_at.is_(None), UserExcludedEntity.id.is_(None))
        )
        async with self._session_factory() as session:
            result = await session.execute(
                visible.order_by(model.name, model.id)
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
            items = [_item_payload(row) for row in result.scalars()]
            total = await self._cached_total(session, user_id, entity_type)
            if total is None:
                count = await session.execute(
                    select(func.count()).select_from(visible.subquery())
                )
                total = int(count.scalar_one())
        return LibraryPage(
            entity_type=entity_type,
            page=page,
            per_page=per_page,
            total=total,
            items=items,
        )

    @staticmethod
    async def _cached_total(
        session: AsyncSession, user_id: int, entity_type: str
    ) -> int | None:
        result = await session.execute(
            select(func.count(), func.sum(UserEntityStats.visible_count)).where(
                UserEntityStats.user_id == user_id,
                UserEntityStats.entity_type == entity_type,
            )
        )
        rows, total = result.one()
        if not rows:
            return None
        return int(total or 0)
