"""SQLite store for the locally owned session index.

Holds nicknames, tags, project associations and sync bookkeeping for every
imported session, keyed by composite id (``cursor:<uuid>``). The store is
separate from both source histories, which are never written.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .config import get_metadata_db_path
from .core import ProjectInfo, SessionMetadata, Source, TagCount, make_session_id
from .errors import (
    AmbiguousIdentifier,
    NicknameConflict,
    SessionNotFound,
    StoreConnectionFailure,
    StoreLockedFailure,
)
from .migrations import ensure_schema
from .workspace import project_name_from_path

logger = logging.getLogger(__name__)

# Tags are a JSON array; rows written by hand or by old versions may not be.
_TAGS_JSON = (
    "(CASE WHEN json_valid(tags) THEN "
    "CASE WHEN json_type(tags) = 'array' THEN tags ELSE '[]' END "
    "ELSE '[]' END)"
)

# Single statements, so a tag change never races a concurrent one.
_ADD_TAG_SQL = f"""
    UPDATE session_metadata SET tags = json_insert({_TAGS_JSON}, '$[#]', ?)
    WHERE session_id = ?
      AND NOT EXISTS (SELECT 1 FROM json_each({_TAGS_JSON}) WHERE value = ?)
"""

_REMOVE_TAG_SQL = f"""
    UPDATE session_metadata SET tags = (
        SELECT json_group_array(value) FROM (
            SELECT value FROM json_each({_TAGS_JSON}) WHERE value != ? ORDER BY key
        )
    )
    WHERE session_id = ?
"""

_UPSERT_SQL = """
    INSERT INTO session_metadata (
        session_id, source, nickname, tags, project_path, project_name,
        has_project, created_at, last_synced_at, first_message_preview,
        message_count
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(session_id) DO UPDATE SET
        source = excluded.source,
        nickname = excluded.nickname,
        tags = excluded.tags,
        project_path = excluded.project_path,
        project_name = excluded.project_name,
        has_project = excluded.has_project,
        created_at = excluded.created_at,
        last_synced_at = CASE
            WHEN excluded.last_synced_at IS NULL THEN session_metadata.last_synced_at
            WHEN session_metadata.last_synced_at IS NULL THEN excluded.last_synced_at
            ELSE MAX(session_metadata.last_synced_at, excluded.last_synced_at)
        END,
        first_message_preview = excluded.first_message_preview,
        message_count = excluded.message_count
"""


class MetadataStore:
    """Async access to the ``session_metadata`` table.

    The connection is opened lazily on first use and the schema is migrated
    at that point. Every change is a single statement; the write lock only
    spans that statement's transaction on the shared connection.
    """

    def __init__(self, db_path: Path | str | None = None, timeout: float = 5.0):
        self._db_path = Path(db_path) if db_path else get_metadata_db_path()
        self._timeout = timeout
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        if self._conn is not None:
            return

        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreConnectionFailure(
                f"Cannot create metadata directory {self._db_path.parent}: {e}", str(self._db_path)
            ) from e

        conn = None
        try:
            conn = await aiosqlite.connect(str(self._db_path), timeout=self._timeout)
            conn.row_factory = aiosqlite.Row
            version = await ensure_schema(conn)
        except sqlite3.Error as e:
            if conn is not None:
                await conn.close()
            raise _translate(e, self._db_path) from e

        logger.debug("Opened metadata store %s (schema v%d)", self._db_path, version)
        self._conn = conn

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()

    async def __aenter__(self) -> "MetadataStore":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── Writes ───────────────────────────────────────────────────────

    async def upsert(self, metadata: SessionMetadata) -> None:
        """Insert or fully replace a record.

        ``last_synced_at`` is never moved backwards: an older or missing
        value keeps the stored one.
        """
        try:
            await self._write(_UPSERT_SQL, _metadata_to_params(metadata))
        except sqlite3.IntegrityError as e:
            owner = await self._nickname_owner(metadata.nickname)
            if owner is not None:
                raise NicknameConflict(metadata.nickname, owner) from e
            raise StoreConnectionFailure(f"Failed to write metadata: {e}", str(self._db_path)) from e

    async def set_nickname(self, session_id: str, nickname: str) -> SessionMetadata:
        nickname = nickname.strip() if nickname else ""
        if not nickname:
            raise ValueError("Nickname cannot be empty")

        owner = await self._nickname_owner(nickname)
        if owner is not None and owner != session_id:
            raise NicknameConflict(nickname, owner)

        try:
            await self._write("UPDATE session_metadata SET nickname = ? WHERE session_id = ?", (nickname, session_id))
        except sqlite3.IntegrityError as e:
            # Another writer took the nickname after the check above.
            owner = await self._nickname_owner(nickname)
            raise NicknameConflict(nickname, owner or "unknown") from e
        return await self._require(session_id)

    async def clear_nickname(self, session_id: str) -> SessionMetadata:
        await self._write("UPDATE session_metadata SET nickname = NULL WHERE session_id = ?", (session_id,))
        return await self._require(session_id)

    async def add_tag(self, session_id: str, tag: str) -> SessionMetadata:
        tag = _clean_tag(tag)
        await self._write(_ADD_TAG_SQL, (tag, session_id, tag))
        return await self._require(session_id)

    async def remove_tag(self, session_id: str, tag: str) -> SessionMetadata:
        tag = _clean_tag(tag)
        await self._write(_REMOVE_TAG_SQL, (tag, session_id))
        return await self._require(session_id)

    async def delete(self, session_id: str) -> bool:
        return await self._write("DELETE FROM session_metadata WHERE session_id = ?", (session_id,)) > 0

    # ── Lookups ──────────────────────────────────────────────────────

    async def get(self, session_id: str) -> Optional[SessionMetadata]:
        rows = await self._fetch("SELECT * FROM session_metadata WHERE session_id = ?", (session_id,))
        return _row_to_metadata(rows[0]) if rows else None

    async def get_by_nickname(self, nickname: str) -> Optional[SessionMetadata]:
        rows = await self._fetch("SELECT * FROM session_metadata WHERE nickname = ?", (nickname,))
        return _row_to_metadata(rows[0]) if rows else None

    async def find_by_native_id(self, native_id: str) -> Optional[SessionMetadata]:
        """Look up a bare id under every source.

        Raises AmbiguousIdentifier when more than one source holds it.
        """
        candidates = [make_session_id(source, native_id) for source in Source]
        placeholders = ", ".join("?" for _ in candidates)
        rows = await self._fetch(
            f"SELECT * FROM session_metadata WHERE session_id IN ({placeholders}) ORDER BY session_id",
            tuple(candidates),
        )
        if len(rows) > 1:
            raise AmbiguousIdentifier(native_id, [row["session_id"] for row in rows])
        return _row_to_metadata(rows[0]) if rows else None

    async def find_by_prefix(self, prefix: str) -> Optional[SessionMetadata]:
        """Resolve an id prefix, like a short commit hash.

        The prefix may start a composite id (``cursor:ab``) or a native id
        (``ab``). More than one match raises AmbiguousIdentifier.
        """
        if not prefix:
            return None

        pattern = _escape_like(prefix) + "%"
        rows = await self._fetch(
            "SELECT * FROM session_metadata "
            "WHERE session_id LIKE ? ESCAPE '\\' "
            "OR substr(session_id, instr(session_id, ':') + 1) LIKE ? ESCAPE '\\' "
            "ORDER BY session_id LIMIT 11",
            (pattern, pattern),
        )
        if len(rows) > 1:
            raise AmbiguousIdentifier(prefix, [row["session_id"] for row in rows])
        return _row_to_metadata(rows[0]) if rows else None

    async def list_sessions(
        self,
        project: Optional[str] = None,
        tagged_only: bool = False,
        source: Optional[Source] = None,
        tag: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SessionMetadata]:
        """List records, newest first, with composable filters.

        ``project`` matches either the full project path or the project
        name. ``tagged_only`` keeps records carrying at least one tag.
        """
        query = "SELECT * FROM session_metadata WHERE 1=1"
        params: list[Any] = []

        if project:
            query += " AND (project_path = ? OR project_name = ?)"
            params.extend([project, project])
        if tagged_only:
            query += f" AND json_array_length({_TAGS_JSON}) > 0"
        if source is not None:
            query += " AND source = ?"
            params.append(Source(source).value)
        if tag:
            query += f" AND EXISTS (SELECT 1 FROM json_each({_TAGS_JSON}) WHERE value = ?)"
            params.append(tag)

        query += " ORDER BY created_at IS NULL, created_at DESC, session_id"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        return [_row_to_metadata(row) for row in await self._fetch(query, tuple(params))]

    async def list_by_tag(self, tag: str) -> list[SessionMetadata]:
        return await self.list_sessions(tag=tag)

    async def list_by_project(self, project_path: str) -> list[SessionMetadata]:
        rows = await self._fetch(
            "SELECT * FROM session_metadata WHERE project_path = ? "
            "ORDER BY created_at IS NULL, created_at DESC, session_id",
            (project_path,),
        )
        return [_row_to_metadata(row) for row in rows]

    async def list_projects(self) -> list[ProjectInfo]:
        rows = await self._fetch(
            "SELECT project_path, MAX(project_name) AS project_name, COUNT(*) AS session_count "
            "FROM session_metadata WHERE has_project = 1 AND project_path IS NOT NULL "
            "GROUP BY project_path ORDER BY session_count DESC, project_path"
        )
        return [
            ProjectInfo(
                path=row["project_path"],
                name=row["project_name"] or project_name_from_path(row["project_path"]),
                session_count=row["session_count"],
            )
            for row in rows
        ]

    async def list_tags(self) -> list[TagCount]:
        rows = await self._fetch(
            f"SELECT t.value AS tag, COUNT(*) AS count "
            f"FROM session_metadata, json_each({_TAGS_JSON}) AS t "
            f"GROUP BY t.value ORDER BY count DESC, tag"
        )
        return [TagCount(tag=row["tag"], count=row["count"]) for row in rows]

    async def list_nicknames(self) -> list[str]:
        rows = await self._fetch(
            "SELECT nickname FROM session_metadata WHERE nickname IS NOT NULL ORDER BY nickname"
        )
        return [row["nickname"] for row in rows]

    async def get_stats(self) -> dict[str, Any]:
        rows = await self._fetch(
            f"""
            SELECT
                COUNT(*) AS total_sessions,
                COALESCE(SUM(CASE WHEN nickname IS NOT NULL THEN 1 ELSE 0 END), 0) AS sessions_with_nicknames,
                COALESCE(SUM(CASE WHEN json_array_length({_TAGS_JSON}) > 0 THEN 1 ELSE 0 END), 0) AS sessions_with_tags,
                COALESCE(SUM(CASE WHEN has_project = 1 THEN 1 ELSE 0 END), 0) AS sessions_with_projects,
                COUNT(DISTINCT project_path) AS total_projects
            FROM session_metadata
            """
        )
        stats = dict(rows[0])

        by_source = {source.value: 0 for source in Source}
        for row in await self._fetch("SELECT source, COUNT(*) AS n FROM session_metadata GROUP BY source"):
            by_source[row["source"]] = row["n"]

        stats["total_tags"] = len(await self.list_tags())
        stats["by_source"] = by_source
        return stats

    # ── Private helpers ──────────────────────────────────────────────

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            await self.open()
        return self._conn

    @contextmanager
    def _errors(self):
        try:
            yield
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise _translate(e, self._db_path) from e

    async def _fetch(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        conn = await self._connection()
        with self._errors():
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def _require(self, session_id: str) -> SessionMetadata:
        record = await self.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    async def _nickname_owner(self, nickname: Optional[str]) -> Optional[str]:
        if not nickname:
            return None
        rows = await self._fetch("SELECT session_id FROM session_metadata WHERE nickname = ?", (nickname,))
        return rows[0]["session_id"] if rows else None

    async def _write(self, sql: str, params: tuple) -> int:
        """Run one statement in its own transaction and return the row count.

        Coroutines share a single connection, so each transaction holds the
        write lock until it commits or rolls back. Integrity errors are
        re-raised for the caller to interpret.
        """
        conn = await self._connection()
        async with self._write_lock:
            try:
                cursor = await conn.execute(sql, params)
                await conn.commit()
            except sqlite3.Error as e:
                await conn.rollback()
                if isinstance(e, sqlite3.IntegrityError):
                    raise
                raise _translate(e, self._db_path) from e
            return cursor.rowcount


def _translate(exc: sqlite3.Error, path: Path) -> Exception:
    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return StoreLockedFailure(f"Metadata database is locked: {path}")
    return StoreConnectionFailure(f"Metadata database error: {exc}", str(path))


def _clean_tag(tag: str) -> str:
    tag = tag.strip() if tag else ""
    if not tag:
        raise ValueError("Tag cannot be empty")
    return tag


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _load_tags(value: Any) -> list[str]:
    if not value:
        return []
    try:
        tags = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Ignoring unreadable tags value %r", value)
        return []
    if not isinstance(tags, list):
        return []
    return [t for t in tags if isinstance(t, str)]


def _ms_to_datetime(ms: Optional[int]) -> Optional[datetime]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _datetime_to_ms(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _metadata_to_params(m: SessionMetadata) -> tuple:
    return (
        m.session_id,
        Source(m.source).value,
        m.nickname,
        json.dumps(list(m.tags)),
        m.project_path,
        m.project_name,
        1 if m.has_project else 0,
        _datetime_to_ms(m.created_at),
        _datetime_to_ms(m.last_synced_at),
        m.first_message_preview,
        m.message_count,
    )


def _row_to_metadata(row: aiosqlite.Row) -> SessionMetadata:
    return SessionMetadata(
        session_id=row["session_id"],
        source=row["source"],
        nickname=row["nickname"],
        tags=_load_tags(row["tags"]),
        project_path=row["project_path"],
        project_name=row["project_name"],
        has_project=bool(row["has_project"]),
        first_message_preview=row["first_message_preview"],
        message_count=row["message_count"] or 0,
        created_at=_ms_to_datetime(row["created_at"]),
        last_synced_at=_ms_to_datetime(row["last_synced_at"]),
    )
