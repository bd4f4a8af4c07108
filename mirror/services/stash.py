"""Utilities for communicating with a Stash GraphQL server."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ..config import Settings
from ..errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EntityPage:
    """Container for a page of upstream records and the reported total."""

    items: list[dict[str, Any]]
    count: int = 0


@dataclass(frozen=True, slots=True)
class QuerySpec:
    operation: str
    result_key: str
    filter_arg: str
    filter_type: str
    fields: str


_SCENE_FIELDS = """
    id title code details date rating100 organized o_counter play_count
    play_duration created_at updated_at urls
    studio { id }
    performers { id }
    tags { id }
    groups { group { id } scene_index }
    galleries { id }
    files { path duration width height fingerprints { type value } }
    paths { screenshot preview stream }
"""

QUERY_SPECS: dict[str, QuerySpec] = {
    "scene": QuerySpec(
        "findScenes", "scenes", "scene_filter", "SceneFilterType", _SCENE_FIELDS
    ),
    "performer": QuerySpec(
        "findPerformers",
        "performers",
        "performer_filter",
        "PerformerFilterType",
        """
        id name disambiguation gender birthdate country favorite rating100
        details alias_list image_path created_at updated_at
        tags { id }
        """,
    ),
    "studio": QuerySpec(
        "findStudios",
        "studios",
        "studio_filter",
        "StudioFilterType",
        """
        id name url details favorite rating100 image_path created_at updated_at
        parent_studio { id }
        tags { id }
        """,
    ),
    "tag": QuerySpec(
        "findTags",
        "tags",
        "tag_filter",
        "TagFilterType",
        """
        id name description aliases favorite image_path created_at updated_at
        parents { id }
        """,
    ),
    "group": QuerySpec(
        "findGroups",
        "groups",
        "group_filter",
        "GroupFilterType",
        """
        id name aliases date duration director synopsis rating100
        front_image_path created_at updated_at
        studio { id }
        tags { id }
        containing_groups { group { id } }
        """,
    ),
    "gallery": QuerySpec(
        "findGalleries",
        "galleries",
        "gallery_filter",
        "GalleryFilterType",
        """
        id title code date details rating100 organized image_count urls
        created_at updated_at
        studio { id }
        performers { id }
        tags { id }
        """,
    ),
    "image": QuerySpec(
        "findImages",
        "images",
        "image_filter",
        "ImageFilterType",
        """
        id title code date details rating100 organized o_counter
        created_at updated_at
        studio { id }
        performers { id }
        tags { id }
        galleries { id }
        visual_files { ... on BaseFile { fingerprints { type value } } }
        paths { thumbnail image }
        """,
    ),
    "clip": QuerySpec(
        "findSceneMarkers",
        "scene_markers",
        "scene_marker_filter",
        "SceneMarkerFilterType",
        """
        id title seconds end_seconds created_at updated_at
        stream preview screenshot
        scene { id }
        primary_tag { id }
        tags { id }
        """,
    ),
}


def build_query(entity_type: str, *, id_only: bool = False) -> str:
    """Return the paged GraphQL query document for ``entity_type``."""

    spec = QUERY_SPECS[entity_type]
    fields = "id" if id_only else spec.fields
    return (
        f"query Find($filter: FindFilterType, $entity_filter: {spec.filter_type}, "
        f"$ids: [ID!]) {{ {spec.operation}(filter: $filter, "
        f"{spec.filter_arg}: $entity_filter, ids: $ids) "
        f"{{ count {spec.result_key} {{ {fields} }} }} }}"
    )


class UpstreamClient(Protocol):
    """The paged query contract the sync engine relies on."""

    async def fetch_page(
        self,
        entity_type: str,
        *,
        page: int,
        per_page: int,
        updated_after: str | None = None,
    ) -> EntityPage: ...

    async def fetch_ids(
        self, entity_type: str, *, page: int, per_page: int
    ) -> EntityPage: ...

    async def fetch_by_ids(
        self, entity_type: str, ids: list[str]
    ) -> list[dict[str, Any]]: ...


class StashClient:
    """Thin wrapper around the Stash GraphQL API."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        url: str,
        api_key: str | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._url = url
        self._api_key = api_key
        self._max_retries = settings.upstream_max_retries

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"{self._settings.app_name} (stashmirror)",
        }
        if self._api_key:
            headers["ApiKey"] = self._api_key
        return headers

    async def fetch_page(
        self,
        entity_type: str,
        *,
        page: int,
        per_page: int,
        updated_after: str | None = None,
    ) -> EntityPage:
        """Fetch one page of records ordered by ascending id."""

        variables: dict[str, Any] = {
            "filter": {
                "page": page,
                "per_page": per_page,
                "sort": "id",
                "direction": "ASC",
            }
        }
        if updated_after:
            variables["entity_filter"] = {
                "updated_at": {"modifier": "GREATER_THAN", "value": updated_after}
            }
        return await self._query_page(entity_type, build_query(entity_type), variables)

    async def fetch_ids(
        self, entity_type: str, *, page: int, per_page: int
    ) -> EntityPage:
        """Fetch a page of bare ids, used by deletion sweeps."""

        variables = {
            "filter": {
                "page": page,
                "per_page": per_page,
                "sort": "id",
                "direction": "ASC",
            }
        }
        return await self._query_page(
            entity_type, build_query(entity_type, id_only=True), variables
        )

    async def fetch_by_ids(
        self, entity_type: str, ids: list[str]
    ) -> list[dict[str, Any]]:
        if not ids:
            return []
        variables = {"filter": {"per_page": -1}, "ids": list(ids)}
        page = await self._query_page(entity_type, build_query(entity_type), variables)
        return page.items

    async def _query_page(
        self, entity_type: str, query: str, variables: dict[str, Any]
    ) -> EntityPage:
        spec = QUERY_SPECS[entity_type]
        data = await self._execute(query, variables, label=spec.operation)
        container = data.get(spec.operation) or {}
        items = container.get(spec.result_key) or []
        try:
            count = int(container.get("count") or 0)
        except (TypeError, ValueError):
            count = 0
        return EntityPage(items=[item for item in items if isinstance(item, dict)], count=count)

    async def _execute(
        self, query: str, variables: dict[str, Any], *, label: str
    ) -> dict[str, Any]:
        body = {"query": query, "variables": variables}
        attempt = 0
        while True:
            try:
                response = await self._client.post(
                    self._url, json=body, headers=self._headers()
                )
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error talking to Stash (%s). Retrying %s in %.1fs",
                        exc.__class__.__name__,
                        label,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise UpstreamError(f"{label} failed after retries: {exc}") from exc

            if 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Stash %s during %s. Retrying in %.1fs",
                        response.status_code,
                        label,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise UpstreamError(
                    f"{label} failed with status {response.status_code}"
                )

            if response.status_code >= 400:
                raise UpstreamError(
                    f"{label} rejected with status {response.status_code}"
                )

            try:
                payload = response.json()
            except ValueError as exc:
                raise UpstreamError(f"{label} returned invalid JSON") from exc
            errors = payload.get("errors") if isinstance(payload, dict) else None
            if errors:
                messages = "; ".join(
                    str(error.get("message", error)) if isinstance(error, dict) else str(error)
                    for error in errors
                )
                raise UpstreamError(f"{label} returned errors: {messages}")
            data = payload.get("data") if isinstance(payload, dict) else None
            if not isinstance(data, dict):
                raise UpstreamError(f"{label} returned no data")
            return data
