"""Cursor IDE chat history backend.

Reads chat data from Cursor's global SQLite database (state.vscdb). Two
generations of the on-disk layout are supported:

- newer: ``ItemTable['composer.composerData']`` holds one JSON document whose
  ``allComposers`` array summarizes every session (``composerId``,
  ``createdAt``, ``lastUpdatedAt``, nested message headers).
- legacy: ``cursorDiskKV`` holds one ``composerData:<sessionId>`` key per
  session and one ``bubbleId:<sessionId>:<bubbleId>`` key per message.

The newer layout is tried first. Message bodies always live in the
per-message keys. All database access is read-only.
"""

import json
import logging
import sqlite3
import urllib.parse
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import get_cursor_db_path
from ..core import Message, Session, Source, make_session_id
from ..errors import DataCorruption, SessionNotFound, StoreConnectionFailure, StoreLockedFailure
from ..normalize import parse_cursor_bubbles, parse_timestamp
from ..provider import SourceReader

logger = logging.getLogger(__name__)

COMPOSER_INDEX_KEY = "composer.composerData"
COMPOSER_KEY_PREFIX = "composerData:"
BUBBLE_KEY_PREFIX = "bubbleId:"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_LEGACY_TIMESTAMPS_SQL = """
    SELECT
        key,
        CASE WHEN json_valid(CAST(value AS TEXT))
             THEN json_extract(CAST(value AS TEXT), '$.lastUpdatedAt') END,
        CASE WHEN json_valid(CAST(value AS TEXT))
             THEN json_extract(CAST(value AS TEXT), '$.createdAt') END
    FROM cursorDiskKV
    WHERE key LIKE 'composerData:%'
"""


class CursorReader(SourceReader):
    """Reader for Cursor's composer sessions."""

    source = Source.CURSOR

    def __init__(
        self,
        db_path: Path | str | None = None,
        timeout: float = 5.0,
        max_retries: int = 3,
        max_wait: float = 1.0,
    ):
        self._db_path = Path(db_path) if db_path else get_cursor_db_path()
        self._timeout = timeout
        self._max_retries = max_retries
        self._max_wait = max_wait
        self._conn: aiosqlite.Connection | None = None
        self._tables: set[str] | None = None
        # (data_version, decoded composer index)
        self._index_cache: tuple[int, list[dict] | None] | None = None

    def get_base_path(self) -> Path:
        return self._db_path

    def is_available(self) -> bool:
        return self._db_path.is_file()

    async def get_session(self, native_id: str) -> Session:
        return self._to_session(native_id, await self._get_composer(native_id))

    async def get_session_messages(self, native_id: str) -> list[Message]:
        return await self._load_messages(native_id, await self._get_composer(native_id))

    async def load_session(self, native_id: str) -> tuple[Session, list[Message]]:
        composer = await self._get_composer(native_id)
        return self._to_session(native_id, composer), await self._load_messages(native_id, composer)

    async def get_session_timestamps(self, limit: int | None = None) -> dict[str, datetime]:
        """Return session id -> last update time without loading any messages."""
        entries: list[tuple[str, datetime]] = []

        index = await self._load_composer_index_or_none()
        if index is not None:
            for composer in index:
                ts = parse_timestamp(composer.get("lastUpdatedAt") or composer.get("createdAt"))
                entries.append((composer["composerId"], ts or EPOCH))
        elif await self._has_table("cursorDiskKV"):
            for key, updated, created in await self._fetchall(_LEGACY_TIMESTAMPS_SQL):
                ts = parse_timestamp(updated) or parse_timestamp(created)
                entries.append((key[len(COMPOSER_KEY_PREFIX):], ts or EPOCH))

        entries.sort(key=lambda e: e[1], reverse=True)
        if limit:
            entries = entries[:limit]
        return dict(entries)

    async def count_sessions(self) -> int:
        index = await self._load_composer_index_or_none()
        if index is not None:
            return len(index)
        if not await self._has_table("cursorDiskKV"):
            return 0
        rows = await self._fetchall("SELECT COUNT(*) FROM cursorDiskKV WHERE key LIKE 'composerData:%'")
        return rows[0][0]

    async def close(self) -> None:
        if self._conn is None:
            return
        try:
            await self._conn.close()
        except sqlite3.Error as e:
            logger.debug("Error closing %s: %s", self._db_path, e)
        self._conn = None
        self._tables = None
        self._index_cache = None

    # ── Private helpers ──────────────────────────────────────────────

    def _to_session(self, native_id: str, composer: dict) -> Session:
        name = composer.get("name")
        return Session(
            id=make_session_id(self.source, native_id),
            source=self.source,
            message_count=len(_headers(composer)),
            created=parse_timestamp(composer.get("createdAt")),
            updated=parse_timestamp(composer.get("lastUpdatedAt") or composer.get("createdAt")),
            title=name.strip() if isinstance(name, str) else "",
            workspace_hints=_composer_workspace_hints(composer),
        )

    async def _load_messages(self, native_id: str, composer: dict) -> list[Message]:
        headers = _headers(composer)
        if not headers:
            return []

        bubbles = await self._load_bubbles(native_id)
        ordered = []
        for header in headers:
            bubble_id = header.get("bubbleId")
            bubble = bubbles.get(bubble_id)
            if bubble is None and ("text" in header or "richText" in header):
                # Old "conversation" arrays carry the bubble inline.
                bubble = header
            if bubble is None:
                logger.debug("Missing bubble %s in session %s", bubble_id, native_id)
                continue
            ordered.append(bubble)

        return parse_cursor_bubbles(ordered)

    async def _connect(self) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn

        if not self._db_path.exists():
            raise StoreConnectionFailure(
                f"Cursor database not found at: {self._db_path}", str(self._db_path)
            )

        async def _open() -> aiosqlite.Connection:
            conn = await aiosqlite.connect(
                f"file:{self._db_path}?mode=ro", uri=True, timeout=self._timeout
            )
            try:
                # Reading the schema fails fast if the file is locked or not a database.
                await conn.execute("SELECT count(*) FROM sqlite_master")
            except sqlite3.Error:
                await conn.close()
                raise
            return conn

        self._conn = await self._with_retries(_open)
        return self._conn

    async def _with_retries(self, func):
        """Run ``func`` retrying on SQLITE_BUSY, translating sqlite errors."""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_busy),
                wait=wait_exponential(multiplier=0.1, max=self._max_wait),
                stop=stop_after_attempt(self._max_retries),
                before_sleep=_on_retry,
                reraise=True,
            ):
                with attempt:
                    return await func()
        except sqlite3.Error as e:
            if _is_busy(e):
                raise StoreLockedFailure(
                    "Database is locked. Make sure Cursor is not performing intensive operations."
                ) from e
            raise StoreConnectionFailure(
                f"Failed to query Cursor database: {e}", str(self._db_path)
            ) from e

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = await self._connect()

        async def _run():
            async with conn.execute(sql, params) as cursor:
                return await cursor.fetchall()

        return await self._with_retries(_run)

    async def _has_table(self, name: str) -> bool:
        if self._tables is None:
            rows = await self._fetchall("SELECT name FROM sqlite_master WHERE type = 'table'")
            self._tables = {row[0] for row in rows}
        return name in self._tables

    async def _data_version(self) -> int:
        rows = await self._fetchall("PRAGMA data_version")
        return rows[0][0]

    async def _load_composer_index(self) -> list[dict] | None:
        """Return the newer-layout session summaries, or None if absent.

        The decoded document is reused until another connection commits to
        the database, so a sync pass decodes it once.
        """
        version = await self._data_version()
        if self._index_cache is not None:
            if self._index_cache[0] == version:
                return self._index_cache[1]
            self._tables = None

        index = await self._read_composer_index() if await self._has_table("ItemTable") else None
        self._index_cache = (version, index)
        return index

    async def _read_composer_index(self) -> list[dict] | None:
        rows = await self._fetchall("SELECT value FROM ItemTable WHERE key = ?", (COMPOSER_INDEX_KEY,))
        if not rows:
            return None

        data = _decode_json(rows[0][0], COMPOSER_INDEX_KEY)
        composers = data.get("allComposers") if isinstance(data, dict) else None
        if not isinstance(composers, list):
            return None
        return [c for c in composers if isinstance(c, dict) and c.get("composerId")]

    async def _load_composer_index_or_none(self) -> list[dict] | None:
        try:
            return await self._load_composer_index()
        except DataCorruption as e:
            logger.warning("Ignoring unreadable %s, falling back to legacy keys: %s", COMPOSER_INDEX_KEY, e)
            return None

    async def _load_legacy_composer(self, native_id: str) -> dict | None:
        if not await self._has_table("cursorDiskKV"):
            return None
        rows = await self._fetchall(
            "SELECT value FROM cursorDiskKV WHERE key = ?", (f"{COMPOSER_KEY_PREFIX}{native_id}",)
        )
        if not rows:
            return None
        data = _decode_json(rows[0][0], f"composer data: {native_id}")
        if not isinstance(data, dict):
            raise DataCorruption(f"Unexpected composer data shape: {native_id}")
        return data

    async def _get_composer(self, native_id: str) -> dict:
        index_error: DataCorruption | None = None
        try:
            index = await self._load_composer_index()
        except DataCorruption as e:
            index_error = e
            index = None

        summary = None
        if index is not None:
            summary = next((c for c in index if c.get("composerId") == native_id), None)
            if summary is not None and _headers(summary):
                return summary

        legacy = await self._load_legacy_composer(native_id)
        if summary is not None:
            # The summary wins for its own fields; legacy data fills in headers.
            return {**(legacy or {}), **summary}
        if legacy is not None:
            return legacy
        if index_error is not None:
            raise index_error
        raise SessionNotFound(native_id)

    async def _load_bubbles(self, native_id: str) -> dict[str, dict]:
        if not await self._has_table("cursorDiskKV"):
            return {}

        prefix = f"{BUBBLE_KEY_PREFIX}{native_id}:"
        rows = await self._fetchall(
            "SELECT key, value FROM cursorDiskKV WHERE substr(key, 1, ?) = ?",
            (len(prefix), prefix),
        )

        bubbles = {}
        for key, value in rows:
            bubble_id = key[len(prefix):]
            data = _decode_json(value, f"bubble data: {bubble_id}")
            if isinstance(data, dict):
                data.setdefault("bubbleId", bubble_id)
                bubbles[bubble_id] = data
        return bubbles


def _is_busy(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning("Cursor database busy. Retrying in %.2fs (attempt %d)...", wait, attempt)


def _decode_json(value: Any, what: str) -> Any:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str):
        raise DataCorruption(f"Missing JSON in {what}")
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise DataCorruption(f"Invalid JSON in {what}") from e


def _headers(composer: dict) -> list[dict]:
    headers = composer.get("fullConversationHeadersOnly") or composer.get("conversation") or []
    if not isinstance(headers, list):
        return []
    return [h for h in headers if isinstance(h, dict)]


def _composer_workspace_hints(composer: dict) -> list[str]:
    """Session-level workspace fields some Cursor versions record."""
    hints = []
    for key in ("workspacePath", "workspaceUri", "folder"):
        value = composer.get(key)
        if not isinstance(value, str) or not value:
            continue
        if value.startswith("file://"):
            value = urllib.parse.unquote(value[7:])
        hints.append(value)
    return hints
