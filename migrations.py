"""
Database Migration System

Versioned schema migrations: migrations/NNN_name.sql, applied in numeric order.
Each migration runs in its own transaction and is recorded in schema_migrations,
so applying is idempotent and a failed migration leaves earlier ones in place.
"""
import logging
import re
from pathlib import Path
from typing import List, Set, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_MIGRATION_NAME = re.compile(r"^(\d+)_(.+)\.sql$")


async def ensure_migrations_table(conn: asyncpg.Connection):
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc')
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> List[Tuple[str, Path]]:
    """
    List migration files sorted by numeric version.

    Returns:
        [(version, path), ...]; files not matching NNN_name.sql are skipped with a warning
    """
    if not directory.exists():
        logger.warning(f"Migrations directory not found: {directory}")
        return []

    found = []
    for file_path in directory.glob("*.sql"):
        match = _MIGRATION_NAME.match(file_path.name)
        if match:
            found.append((match.group(1), file_path))
        else:
            logger.warning(f"Migration file name doesn't match pattern: {file_path.name}")

    # Numeric, not lexicographic: 010 after 009, 1000 after 999
    found.sort(key=lambda item: int(item[0]))
    return found


async def apply_migration(conn: asyncpg.Connection, version: str, migration_path: Path):
    """
    Execute one migration file and record its version.

    Must be called inside a transaction. Errors propagate.
    """
    sql_content = migration_path.read_text(encoding="utf-8")
    if not sql_content.strip():
        logger.warning(f"Migration {version} is empty, skipping")
    else:
        logger.info(f"Applying migration {version}: {migration_path.name}")
        # asyncpg executes multi-statement SQL natively
        await conn.execute(sql_content)

    await conn.execute(
        "INSERT INTO schema_migrations (version) VALUES ($1) ON CONFLICT (version) DO NOTHING",
        version,
    )
    logger.info(f"Migration {version} applied successfully")


async def run_migrations(conn: asyncpg.Connection, directory: Path = MIGRATIONS_DIR) -> int:
    """
    Apply every migration not yet recorded in schema_migrations.

    Args:
        conn: Connection outside any transaction (one transaction per migration is opened here)
        directory: Folder holding NNN_name.sql files

    Returns:
        Number of migrations applied in this run

    Raises:
        asyncpg.PostgresError: first failing migration (rolled back; later ones not attempted)
    """
    await ensure_migrations_table(conn)
    applied = await get_applied_migrations(conn)
    logger.info(f"Applied migrations: {sorted(applied)}")

    count = 0
    for version, migration_path in get_migration_files(directory):
        if version in applied:
            continue
        try:
            async with conn.transaction():
                await apply_migration(conn, version, migration_path)
        except asyncpg.PostgresError:
            logger.exception(f"CRITICAL: Migration {version} ({migration_path.name}) FAILED")
            raise
        count += 1

    logger.info(f"Migrations complete: {count} applied")
    return count


async def run_migrations_safe(pool: asyncpg.Pool) -> bool:
    """
    Apply migrations using a pooled connection.

    Returns:
        True on success, False if a migration failed (already logged)
    """
    async with pool.acquire() as conn:
        try:
            await run_migrations(conn)
        except asyncpg.PostgresError:
            return False
    return True
