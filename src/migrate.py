"""
Schema migrations for the object store.

Numbered SQL files in migrations/ (``001_objects.sql``, ...) are applied in
order, each in its own transaction, and recorded in ``schema_migrations``
so every file runs once per database.
"""

import logging
import re
from pathlib import Path
from typing import List, NamedTuple, Optional

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

CREATE_MIGRATIONS_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version VARCHAR(16) PRIMARY KEY,
        filename VARCHAR(255) NOT NULL,
        applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
"""

RECORD_MIGRATION = "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)"


class Migration(NamedTuple):
    version: str
    path: Path


def discover_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    Return the migration files in a directory, ordered by version.

    Raises:
        FileNotFoundError: If the directory doesn't exist.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append(Migration(match.group(1), entry))
    return migrations


async def run_migrations(pool: asyncpg.Pool, directory: Optional[Path] = None) -> int:
    """
    Apply the migrations the database has not recorded yet.

    A failing migration is rolled back and its error raised; migrations
    applied before it stay applied.

    Returns:
        Number of migrations applied.
    """
    migrations = discover_migrations(directory)

    async with pool.acquire() as conn:
        await conn.execute(CREATE_MIGRATIONS_TABLE)
        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row["version"] for row in rows}
        pending = [m for m in migrations if m.version not in applied]

        for migration in pending:
            async with conn.transaction():
                await conn.execute(migration.path.read_text(encoding="utf-8"))
                await conn.execute(
                    RECORD_MIGRATION, migration.version, migration.path.name
                )
            logger.info(f"Applied migration {migration.path.name}")

    if not pending:
        logger.info("Database schema is up to date")
    return len(pending)
