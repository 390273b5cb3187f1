"""
Schema migrations for the secretsync database.

Migrations are forward-only SQL files named ``NNN_description.sql`` in the
migrations/ directory next to this module. Each one is applied in its own
transaction and recorded with a checksum of its contents, so an edit to a
file that has already been applied is reported instead of silently ignored.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")


@dataclass(frozen=True)
class Migration:
    """A migration file found on disk."""

    version: str
    filename: str
    path: Path

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum VARCHAR(64) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    Find migration files, ordered by version.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
        ValueError: If two files share a version number.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    found: Dict[str, Migration] = {}
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        version = match.group(1)
        if version in found:
            raise ValueError(
                f"Duplicate migration version {version}: "
                f"{found[version].filename} and {entry.name}"
            )
        found[version] = Migration(version, entry.name, entry)

    return [found[v] for v in sorted(found)]


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map each applied migration version to the checksum recorded for it."""
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(pool: asyncpg.Pool, migration: Migration) -> None:
    """Apply one migration and record it, in a single transaction."""
    sql = migration.path.read_text(encoding="utf-8")

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename, checksum) "
                "VALUES ($1, $2, $3)",
                migration.version,
                migration.filename,
                migration.checksum,
            )

    logger.info(f"Applied migration {migration.filename}")


async def pending_migrations(pool: asyncpg.Pool) -> List[Migration]:
    """
    List the migrations not yet applied, warning about edited ones.

    Args:
        pool: An asyncpg connection pool (must already be connected).
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_checksums(conn)

    pending = []
    for migration in discover_migrations():
        recorded = applied.get(migration.version)
        if recorded is None:
            pending.append(migration)
        elif recorded != migration.checksum:
            logger.warning(
                f"Migration {migration.filename} changed after it was applied; "
                "the database keeps the original version"
            )
    return pending


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply all pending migrations in order.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    pending = await pending_migrations(pool)
    if not pending:
        logger.info("Database schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for migration in pending:
        await apply_migration(pool, migration)

    logger.info(f"Successfully applied {len(pending)} migration(s)")
    return len(pending)
