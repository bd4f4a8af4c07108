"""Database utilities for the StashMirror service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from sqlalchemy import MetaData, event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


@dataclass(frozen=True, slots=True)
class ColumnMigration:
    """A column added after the table first shipped."""

    table: str
    column: str
    ddl: str
    init_sql: str | None = None

    @property
    def name(self) -> str:
        return f"{self.table}.{self.column}"


COLUMN_MIGRATIONS: tuple[ColumnMigration, ...] = (
    ColumnMigration(
        "stash_scenes",
        "phashes",
        "ALTER TABLE stash_scenes ADD COLUMN phashes JSON",
    ),
    ColumnMigration(
        "stash_images",
        "phash",
        "ALTER TABLE stash_images ADD COLUMN phash VARCHAR(32)",
    ),
    ColumnMigration(
        "sync_state",
        "last_sync_duration_ms",
        "ALTER TABLE sync_state ADD COLUMN last_sync_duration_ms INTEGER DEFAULT 0",
        "UPDATE sync_state SET last_sync_duration_ms = 0 WHERE last_sync_duration_ms IS NULL",
    ),
    ColumnMigration(
        "sync_state",
        "total_entities",
        "ALTER TABLE sync_state ADD COLUMN total_entities INTEGER DEFAULT 0",
        "UPDATE sync_state SET total_entities = 0 WHERE total_entities IS NULL",
    ),
    ColumnMigration(
        "sync_state",
        "last_error",
        "ALTER TABLE sync_state ADD COLUMN last_error TEXT",
    ),
    ColumnMigration(
        "user_content_restrictions",
        "restrict_empty",
        "ALTER TABLE user_content_restrictions ADD COLUMN restrict_empty BOOLEAN DEFAULT 0",
        (
            "UPDATE user_content_restrictions SET restrict_empty = 0 "
            "WHERE restrict_empty IS NULL"
        ),
    ),
    ColumnMigration(
        "merge_records",
        "hidden_transferred",
        "ALTER TABLE merge_records ADD COLUMN hidden_transferred INTEGER DEFAULT 0",
        "UPDATE merge_records SET hidden_transferred = 0 WHERE hidden_transferred IS NULL",
    ),
)


def _enable_sqlite_pragmas(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
    finally:
        cursor.close()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        if self._engine.dialect.name == "sqlite" and ":memory:" not in database_url:
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_pragmas)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )
        self.applied_migrations: list[str] = []

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def migrations_applied(self) -> bool:
        """Whether the last ``create_all`` changed an existing schema."""

        return bool(self.applied_migrations)

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        # Registers every mapped table on ``Base.metadata``.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            applied = await connection.run_sync(self._apply_schema_migrations)
        self.applied_migrations = applied
        if applied:
            logger.info("Applied schema migrations: %s", ", ".join(applied))

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> list[str]:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        table_names = set(inspector.get_table_names())
        columns_by_table: dict[str, set[str]] = {}
        applied: list[str] = []

        def _ensure_column(migration: ColumnMigration) -> None:
            if migration.table not in table_names:
                return
            existing_columns = columns_by_table.setdefault(
                migration.table,
                {column["name"] for column in inspector.get_columns(migration.table)},
            )
            if migration.column in existing_columns:
                return
            sync_connection.execute(text(migration.ddl))
            if migration.init_sql:
                sync_connection.execute(text(migration.init_sql))
            existing_columns.add(migration.column)
            applied.append(migration.name)

        for migration in COLUMN_MIGRATIONS:
            _ensure_column(migration)

        for name in applied:
            sync_connection.execute(
                text(
                    "INSERT OR IGNORE INTO schema_migrations (name, applied_at) "
                    "VALUES (:name, CURRENT_TIMESTAMP)"
                ),
                {"name": name},
            )
        return applied

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session
