"""Shared test fixtures for chat-context."""

import json
import os
import sqlite3
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from chat_context.config import Settings
from chat_context.metadata import MetadataStore


def _ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


T_CREATED = _ms(2025, 1, 15, 10, 0, 0)
T_UPDATED = _ms(2025, 1, 15, 11, 0, 0)


def _rich_text(*children) -> str:
    return json.dumps({"root": {"type": "root", "children": list(children)}})


def _paragraph(text: str) -> dict:
    return {"type": "paragraph", "children": [{"type": "text", "text": text}]}


def write_cursor_db(path, composers=None, bubbles=None, legacy_composers=None, index_value=None):
    """Build a Cursor-style state.vscdb.

    ``composers`` go into the newer ``composer.composerData`` document,
    ``legacy_composers`` into ``composerData:<id>`` keys, ``bubbles`` maps
    ``(composer_id, bubble_id)`` to a bubble dict or a raw string value.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE IF NOT EXISTS ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    conn.execute("CREATE TABLE IF NOT EXISTS cursorDiskKV (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")

    if index_value is not None:
        conn.execute("INSERT INTO ItemTable VALUES (?, ?)", ("composer.composerData", index_value))
    elif composers is not None:
        doc = {"allComposers": composers, "selectedComposerIds": []}
        conn.execute("INSERT INTO ItemTable VALUES (?, ?)", ("composer.composerData", json.dumps(doc)))

    for composer_id, data in (legacy_composers or {}).items():
        value = data if isinstance(data, str) else json.dumps(data)
        conn.execute("INSERT INTO cursorDiskKV VALUES (?, ?)", (f"composerData:{composer_id}", value))

    for (composer_id, bubble_id), data in (bubbles or {}).items():
        value = data if isinstance(data, str) else json.dumps(data)
        conn.execute("INSERT INTO cursorDiskKV VALUES (?, ?)", (f"bubbleId:{composer_id}:{bubble_id}", value))

    conn.commit()
    conn.close()
    return path


@pytest.fixture
def cursor_db(tmp_path):
    """A Cursor database in the newer single-document layout.

    - comp-001: user (rich text with a python block), assistant, a
      workspace-reporting tool call and a nickname tool call.
    - comp-002: exists but has no messages.
    - comp-003: its only bubble holds malformed JSON.
    """
    composers = [
        {
            "composerId": "comp-001",
            "name": "Fix auth bug",
            "createdAt": T_CREATED,
            "lastUpdatedAt": T_UPDATED,
            "fullConversationHeadersOnly": [
                {"bubbleId": "b1", "type": 1},
                {"bubbleId": "b2", "type": 2},
                {"bubbleId": "b3", "type": 2},
                {"bubbleId": "b4", "type": 2},
            ],
        },
        {
            "composerId": "comp-002",
            "name": "Empty chat",
            "createdAt": _ms(2025, 1, 14, 9, 0, 0),
            "lastUpdatedAt": _ms(2025, 1, 14, 9, 0, 0),
            "fullConversationHeadersOnly": [],
        },
        {
            "composerId": "comp-003",
            "name": "Broken",
            "createdAt": _ms(2025, 1, 13, 9, 0, 0),
            "lastUpdatedAt": _ms(2025, 1, 13, 9, 30, 0),
            "fullConversationHeadersOnly": [{"bubbleId": "x1", "type": 1}],
        },
    ]
    bubbles = {
        ("comp-001", "b1"): {
            "bubbleId": "b1",
            "type": 1,
            "text": "Fix the login bug",
            "richText": _rich_text(
                _paragraph("Fix the login bug"),
                {"type": "code", "language": "python", "children": [{"type": "text", "text": "x=1"}]},
            ),
            "createdAt": "2025-01-15T10:00:00Z",
        },
        ("comp-001", "b2"): {
            "bubbleId": "b2",
            "type": 2,
            "text": "Let me look at the workspace.",
            "createdAt": "2025-01-15T10:00:10Z",
        },
        ("comp-001", "b3"): {
            "bubbleId": "b3",
            "type": 15,
            "text": "",
            "toolFormerData": {
                "name": "list_dir",
                "tool": 39,
                "params": json.dumps({"path": "."}),
                "result": json.dumps({"success": {"workspaceResults": {"/Users/me/projects/my-app": {}}}}),
            },
        },
        ("comp-001", "b4"): {
            "bubbleId": "b4",
            "type": 15,
            "toolFormerData": {
                "name": "mcp__cursor-context__nickname_current_session",
                "params": json.dumps({"nickname": "auth-work"}),
            },
        },
        ("comp-003", "x1"): "{not valid json",
    }
    return write_cursor_db(tmp_path / "globalStorage" / "state.vscdb", composers=composers, bubbles=bubbles)


@pytest.fixture
def legacy_cursor_db(tmp_path):
    """A Cursor database using only the legacy per-key layout."""
    legacy = {
        "leg-001": {
            "composerId": "leg-001",
            "createdAt": _ms(2024, 6, 1, 8, 0, 0),
            "lastUpdatedAt": _ms(2024, 6, 1, 9, 0, 0),
            "conversation": [
                {"bubbleId": "lb1", "type": 1, "text": "hello from the old format"},
                {"bubbleId": "lb2", "type": 2},
            ],
        },
        "leg-002": {
            "composerId": "leg-002",
            "createdAt": _ms(2024, 5, 1, 8, 0, 0),
            "fullConversationHeadersOnly": [{"bubbleId": "mb1", "type": 1}],
        },
        "leg-bad": "{broken",
    }
    bubbles = {
        ("leg-001", "lb2"): {"bubbleId": "lb2", "type": 2, "text": "legacy answer"},
        ("leg-002", "mb1"): {"bubbleId": "mb1", "type": 1, "text": "older question"},
    }
    return write_cursor_db(tmp_path / "legacy" / "state.vscdb", legacy_composers=legacy, bubbles=bubbles)


def _jsonl(path, entries, mtime):
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [e if isinstance(e, str) else json.dumps(e) for e in entries]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    os.utime(path, (mtime, mtime))


@pytest.fixture
def claude_projects(tmp_path):
    """A Claude Code projects directory.

    - sess-aaa: text, tool use and tool result, a summary and a malformed line.
    - sess-bbb: string content, no cwd recorded.
    - sess-empty: bookkeeping lines only.
    """
    projects = tmp_path / "projects"
    base = datetime(2025, 2, 1, 12, 0, 0, tzinfo=timezone.utc).timestamp()

    _jsonl(
        projects / "-Users-me-projects-api" / "sess-aaa.jsonl",
        [
            {"type": "file-history-snapshot", "snapshot": {}},
            {
                "type": "user",
                "sessionId": "sess-aaa",
                "cwd": "/Users/me/projects/api",
                "uuid": "u1",
                "timestamp": "2025-02-01T10:00:00Z",
                "message": {"role": "user", "content": [{"type": "text", "text": "Add pagination to the API"}]},
            },
            {
                "type": "assistant",
                "sessionId": "sess-aaa",
                "cwd": "/Users/me/projects/api",
                "uuid": "u2",
                "timestamp": "2025-02-01T10:00:05Z",
                "message": {"role": "assistant", "content": [
                    {"type": "text", "text": "Reading the handlers first."},
                    {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "/src/api.py"}},
                ]},
            },
            "{not json",
            {
                "type": "user",
                "sessionId": "sess-aaa",
                "cwd": "/Users/me/projects/api",
                "uuid": "u3",
                "timestamp": "2025-02-01T10:00:06Z",
                "message": {"role": "user", "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_1", "content": "def handler(): ..."},
                ]},
            },
            {
                "type": "assistant",
                "sessionId": "sess-aaa",
                "cwd": "/Users/me/projects/api",
                "uuid": "u4",
                "timestamp": "2025-02-01T10:01:00Z",
                "message": {"role": "assistant", "content": [{"type": "text", "text": "Done."}]},
            },
            {"type": "summary", "summary": "API pagination"},
        ],
        base,
    )
    _jsonl(
        projects / "-Users-me-other" / "sess-bbb.jsonl",
        [
            {"type": "user", "timestamp": "2025-01-20T08:00:00Z", "message": {"role": "user", "content": "What is a monad?"}},
            {"type": "assistant", "timestamp": "2025-01-20T08:00:09Z", "message": {"role": "assistant", "content": "A monoid in the category of endofunctors."}},
        ],
        base - 86400,
    )
    _jsonl(
        projects / "-Users-me-other" / "sess-empty.jsonl",
        [{"type": "file-history-snapshot", "snapshot": {}}],
        base - 2 * 86400,
    )
    return projects


@pytest.fixture
def settings(tmp_path, cursor_db, claude_projects):
    return Settings(
        cursor_db_path=cursor_db,
        claude_path=claude_projects,
        metadata_db_path=tmp_path / "meta" / "metadata.db",
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    store = MetadataStore(tmp_path / "store" / "metadata.db")
    await store.open()
    yield store
    await store.close()
