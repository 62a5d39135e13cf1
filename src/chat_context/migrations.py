"""Schema migrations for the metadata store.

The schema version lives in a single-row ``schema_version`` table. Fresh
stores are created directly at :data:`LATEST_VERSION`; older stores get the
pending migrations applied in order. Migrations only add, never drop.

Version history:

1. ``session_metadata`` keyed by bare Cursor composer ids.
2. ``last_synced_at`` column for incremental sync.
3. ``source`` column; bare ids rewritten to ``<source>:<id>``.
"""

import logging
from typing import NamedTuple, Optional

import aiosqlite

logger = logging.getLogger(__name__)


class Migration(NamedTuple):
    """A single schema migration step.

    ``column`` names the column the step adds, if any. Stores that already
    have it (hand-patched or partially migrated) skip the step's statements
    and are only re-stamped.
    """

    version: int
    description: str
    statements: list[str]
    column: Optional[str] = None


_FULL_SCHEMA: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS session_metadata (
        session_id            TEXT PRIMARY KEY,
        source                TEXT    NOT NULL DEFAULT 'cursor',
        nickname              TEXT UNIQUE,
        tags                  TEXT    NOT NULL DEFAULT '[]',
        project_path          TEXT,
        project_name          TEXT,
        has_project           INTEGER NOT NULL DEFAULT 0,
        created_at            INTEGER,
        last_synced_at        INTEGER,
        first_message_preview TEXT,
        message_count         INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_source ON session_metadata (source)",
    "CREATE INDEX IF NOT EXISTS idx_project_path ON session_metadata (project_path)",
    "CREATE INDEX IF NOT EXISTS idx_has_project ON session_metadata (has_project)",
    "CREATE INDEX IF NOT EXISTS idx_created_at ON session_metadata (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_last_synced_at ON session_metadata (last_synced_at DESC)",
]

MIGRATIONS: list[Migration] = [
    Migration(
        version=1,
        description="Initial schema",
        statements=[],
    ),
    Migration(
        version=2,
        description="Track last sync time",
        statements=[
            "ALTER TABLE session_metadata ADD COLUMN last_synced_at INTEGER",
            "CREATE INDEX IF NOT EXISTS idx_last_synced_at ON session_metadata (last_synced_at DESC)",
        ],
        column="last_synced_at",
    ),
    Migration(
        version=3,
        description="Multi-source composite session ids",
        statements=[
            "ALTER TABLE session_metadata ADD COLUMN source TEXT NOT NULL DEFAULT 'cursor'",
            "UPDATE session_metadata SET session_id = source || ':' || session_id "
            "WHERE instr(session_id, ':') = 0",
            "CREATE INDEX IF NOT EXISTS idx_source ON session_metadata (source)",
        ],
        column="source",
    ),
]

LATEST_VERSION: int = MIGRATIONS[-1].version


async def get_schema_version(conn: aiosqlite.Connection) -> int:
    """Return the stored schema version, ``0`` if none was ever recorded."""
    if not await _table_exists(conn, "schema_version"):
        return 0
    async with conn.execute("SELECT MAX(version) FROM schema_version") as cursor:
        row = await cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


async def ensure_schema(conn: aiosqlite.Connection) -> int:
    """Bring the metadata schema up to date and return the resulting version.

    A store with no ``session_metadata`` table is created at the latest
    version. A store with the table but no version marker predates version
    tracking and is treated as version 1. Each migration runs in its own
    transaction; a failed one is rolled back and the version is not bumped.
    """
    await conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    await conn.commit()
    current = await get_schema_version(conn)

    if current > LATEST_VERSION:
        logger.warning(
            "Metadata schema version (%d) is newer than supported (%d). Skipping migrations.",
            current,
            LATEST_VERSION,
        )
        return current

    if current == 0 and not await _table_exists(conn, "session_metadata"):
        logger.debug("Creating metadata schema at version %d", LATEST_VERSION)
        await conn.execute("BEGIN")
        try:
            for stmt in _FULL_SCHEMA:
                await conn.execute(stmt)
            await _stamp(conn, LATEST_VERSION)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
        return LATEST_VERSION

    if current == 0:
        current = 1

    for migration in MIGRATIONS:
        if migration.version <= current:
            continue
        logger.info("Applying metadata migration v%d: %s", migration.version, migration.description)
        await conn.execute("BEGIN")
        try:
            if migration.column is None or not await _column_exists(conn, "session_metadata", migration.column):
                for stmt in migration.statements:
                    await conn.execute(stmt)
            await _stamp(conn, migration.version)
            await conn.commit()
        except Exception:
            await conn.rollback()
            logger.exception("Metadata migration v%d failed, rolled back", migration.version)
            raise
        current = migration.version

    return current


async def _stamp(conn: aiosqlite.Connection, version: int) -> None:
    await conn.execute("DELETE FROM schema_version")
    await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))


async def _table_exists(conn: aiosqlite.Connection, table_name: str) -> bool:
    async with conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table_name,)
    ) as cursor:
        return await cursor.fetchone() is not None


async def _column_exists(conn: aiosqlite.Connection, table_name: str, column: str) -> bool:
    async with conn.execute(f"PRAGMA table_info({table_name})") as cursor:
        rows = await cursor.fetchall()
    return any(row[1] == column for row in rows)
