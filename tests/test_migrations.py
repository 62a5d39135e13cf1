"""Tests for metadata schema migrations."""

import sqlite3

import aiosqlite
import pytest

from chat_context.metadata import MetadataStore
from chat_context.migrations import LATEST_VERSION, ensure_schema, get_schema_version

V1_SCHEMA = """
    CREATE TABLE session_metadata (
        session_id TEXT PRIMARY KEY,
        nickname TEXT UNIQUE,
        tags TEXT NOT NULL DEFAULT '[]',
        project_path TEXT,
        project_name TEXT,
        has_project INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER,
        first_message_preview TEXT,
        message_count INTEGER NOT NULL DEFAULT 0
    )
"""


def _columns(path):
    conn = sqlite3.connect(str(path))
    try:
        return {row[1] for row in conn.execute("PRAGMA table_info(session_metadata)")}
    finally:
        conn.close()


class TestEnsureSchema:

    @pytest.mark.asyncio
    async def test_fresh_store_created_at_latest(self, tmp_path):
        path = tmp_path / "fresh.db"
        async with aiosqlite.connect(str(path)) as conn:
            assert await ensure_schema(conn) == LATEST_VERSION
            assert await get_schema_version(conn) == LATEST_VERSION
            # Running again is a no-op
            assert await ensure_schema(conn) == LATEST_VERSION

        assert {"source", "last_synced_at", "nickname", "tags"} <= _columns(path)

    @pytest.mark.asyncio
    async def test_unversioned_legacy_store_is_migrated(self, tmp_path):
        path = tmp_path / "legacy.db"
        conn = sqlite3.connect(str(path))
        conn.execute(V1_SCHEMA)
        conn.execute(
            "INSERT INTO session_metadata (session_id, nickname, tags, project_path, project_name, "
            "has_project, created_at, message_count) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            ("abc-123", "old-work", '["bug"]', "/x/proj", "proj", 1, 1736935200000, 7),
        )
        conn.commit()
        conn.close()

        store = MetadataStore(path)
        try:
            await store.open()
            record = await store.get("cursor:abc-123")
            assert await store.get("abc-123") is None
        finally:
            await store.close()

        assert record.nickname == "old-work"
        assert record.tags == ["bug"]
        assert record.project_name == "proj"
        assert record.message_count == 7
        assert record.last_synced_at is None
        assert record.source.value == "cursor"

    @pytest.mark.asyncio
    async def test_partially_migrated_store(self, tmp_path):
        path = tmp_path / "partial.db"
        conn = sqlite3.connect(str(path))
        conn.execute(V1_SCHEMA)
        # Column added by hand without a version stamp
        conn.execute("ALTER TABLE session_metadata ADD COLUMN last_synced_at INTEGER")
        conn.execute("INSERT INTO session_metadata (session_id, last_synced_at) VALUES ('p1', 5)")
        conn.commit()
        conn.close()

        async with aiosqlite.connect(str(path)) as aconn:
            assert await ensure_schema(aconn) == LATEST_VERSION

        conn = sqlite3.connect(str(path))
        try:
            row = conn.execute("SELECT session_id, source, last_synced_at FROM session_metadata").fetchone()
        finally:
            conn.close()
        assert row == ("cursor:p1", "cursor", 5)

    @pytest.mark.asyncio
    async def test_newer_version_is_left_alone(self, tmp_path, caplog):
        path = tmp_path / "future.db"
        conn = sqlite3.connect(str(path))
        conn.execute("CREATE TABLE schema_version (version INTEGER PRIMARY KEY)")
        conn.execute("INSERT INTO schema_version VALUES (?)", (LATEST_VERSION + 5,))
        conn.commit()
        conn.close()

        async with aiosqlite.connect(str(path)) as aconn:
            assert await ensure_schema(aconn) == LATEST_VERSION + 5

        assert "newer than supported" in caplog.text
        assert _columns(path) == set()
