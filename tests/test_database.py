from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect, text

from mirror.database import Database


def _initialise_legacy_schema(database_path: str) -> None:
    """Create a legacy scenes table lacking the phashes column."""

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.begin() as connection:
            connection.execute(
                text(
                    """
                    CREATE TABLE stash_scenes (
                        id VARCHAR(64) NOT NULL,
                        instance_id VARCHAR(64) NOT NULL,
                        name VARCHAR(512),
                        details TEXT,
                        rating INTEGER,
                        favorite BOOLEAN NOT NULL DEFAULT 0,
                        source_created_at DATETIME,
                        source_updated_at DATETIME,
                        synced_at DATETIME,
                        deleted_at DATETIME,
                        payload JSON,
                        studio_id VARCHAR(64),
                        date VARCHAR(10),
                        duration INTEGER,
                        organized BOOLEAN NOT NULL DEFAULT 0,
                        o_counter INTEGER,
                        play_count INTEGER,
                        play_duration FLOAT,
                        phash VARCHAR(32),
                        PRIMARY KEY (id, instance_id)
                    )
                    """
                )
            )
            connection.execute(
                text(
                    "INSERT INTO stash_scenes (id, instance_id, name, phash) "
                    "VALUES ('1', 'legacy', 'Old scene', 'abc')"
                )
            )
    finally:
        engine.dispose()


def test_create_all_adds_phashes_column(tmp_path) -> None:
    """Schema migrations should backfill columns on legacy tables."""

    database_path = tmp_path / "legacy.db"
    _initialise_legacy_schema(str(database_path))

    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    assert database.migrations_applied is True
    assert "stash_scenes.phashes" in database.applied_migrations

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        columns = {column["name"] for column in inspector.get_columns("stash_scenes")}
        with inspector_engine.connect() as connection:
            recorded = set(
                connection.execute(text("SELECT name FROM schema_migrations")).scalars()
            )
            preserved = connection.execute(
                text("SELECT name FROM stash_scenes WHERE id = '1'")
            ).scalar_one()
    finally:
        inspector_engine.dispose()

    assert "phashes" in columns
    assert "stash_scenes.phashes" in recorded
    assert preserved == "Old scene"


def test_fresh_database_reports_no_migrations(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}")

    async def runner() -> None:
        await database.create_all()
        # A second start against the same file must not re-run anything.
        await database.create_all()
        await database.dispose()

    asyncio.run(runner())

    assert database.migrations_applied is False
