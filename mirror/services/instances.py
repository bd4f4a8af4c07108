"""Configured upstream catalog connections."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import SourceInstance
from ..errors import NotFoundError
from .stash import UpstreamClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InstanceConfig:
    """Snapshot of a configured source instance."""

    id: str
    name: str
    url: str
    api_key: str | None = None
    priority: int = 0


ClientFactory = Callable[[InstanceConfig], UpstreamClient]


class SourceInstanceManager:
    """Track enabled source instances and their upstream clients."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        client_factory: ClientFactory | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._instances: dict[str, InstanceConfig] = {}
        self._clients: dict[str, UpstreamClient] = {}

    async def load(self) -> list[InstanceConfig]:
        """Read enabled instances, seeding one from settings on first start."""

        async with self._session_factory() as session:
            result = await session.execute(select(SourceInstance))
            records = list(result.scalars())
            if not records and self._settings.stash_url:
                seeded = SourceInstance(
                    id=uuid.uuid4().hex,
                    name=self._settings.stash_instance_name,
                    url=self._settings.stash_url,
                    api_key=self._settings.stash_api_key,
                    enabled=True,
                    priority=0,
                )
                session.add(seeded)
                await session.commit()
                logger.info("Registered source instance %s from settings", seeded.id)
                records = [seeded]

        self._instances = {}
        self._clients = {}
        for record in sorted(records, key=lambda item: (item.priority, item.id)):
            if not record.enabled:
                continue
            self.register(
                InstanceConfig(
                    id=record.id,
                    name=record.name,
                    url=record.url,
                    api_key=record.api_key,
                    priority=record.priority,
                )
            )
        return self.enabled()

    def register(
        self, instance: InstanceConfig, client: UpstreamClient | None = None
    ) -> None:
        """Attach an instance and its client to the running set."""

        if client is None:
            if self._client_factory is None:
                raise RuntimeError("No upstream client available for instance")
            client = self._client_factory(instance)
        self._instances[instance.id] = instance
        self._clients[instance.id] = client

    def enabled(self) -> list[InstanceConfig]:
        return sorted(self._instances.values(), key=lambda item: item.priority)

    def configured_ids(self) -> set[str]:
        return set(self._instances)

    async def known_ids(self) -> set[str]:
        """Every registered instance id, disabled ones included."""

        async with self._session_factory() as session:
            result = await session.execute(select(SourceInstance.id))
            return set(result.scalars()) | set(self._instances)

    def get(self, instance_id: str | None) -> InstanceConfig:
        """Resolve an instance, falling back to the highest-priority one."""

        if instance_id is None:
            instances = self.enabled()
            if not instances:
                raise NotFoundError("No source instance is configured")
            return instances[0]
        instance = self._instances.get(instance_id)
        if instance is None:
            raise NotFoundError(f"Source instance {instance_id} is not configured")
        return instance

    def client_for(self, instance_id: str) -> UpstreamClient:
        client = self._clients.get(instance_id)
        if client is None:
            raise NotFoundError(f"Source instance {instance_id} is not configured")
        return client
