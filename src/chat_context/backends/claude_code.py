"""Claude Code chat history backend.

Reads chat data from the ~/.claude/projects/ directory structure. Each
project directory holds one ``<sessionId>.jsonl`` file per session.

JSONL entry types:
- "user" or "human": User messages. Content can be a string or array of blocks.
  May also contain tool_result blocks answering an earlier tool_use.
- "assistant": AI responses. Content is an array of text and/or tool_use blocks.
- "summary": A generated session title.
- "file-history-snapshot", "progress", "system": Skipped (metadata only).

Most lines also carry ``sessionId``, ``cwd`` and an ISO ``timestamp``.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from ..config import get_claude_code_path
from ..core import Message, Session, Source, make_session_id
from ..errors import SessionNotFound, StoreConnectionFailure
from ..normalize import PREVIEW_LENGTH, claude_entry_text, parse_claude_entries, parse_timestamp
from ..provider import SourceReader

logger = logging.getLogger(__name__)


class ClaudeCodeReader(SourceReader):
    """Reader for Claude Code session logs."""

    source = Source.CLAUDE

    def __init__(self, base_path: Path | str | None = None):
        self._base_path = Path(base_path) if base_path else get_claude_code_path()

    def get_base_path(self) -> Path:
        return self._base_path

    def is_available(self) -> bool:
        return self._base_path.is_dir()

    async def list_sessions(self) -> list[Session]:
        """Every session on disk, most recently updated first."""
        sessions = []
        for path in await asyncio.to_thread(self._session_files):
            try:
                entries = await asyncio.to_thread(self._read_entries, path)
            except OSError as e:
                logger.warning("Skipping unreadable session file %s: %s", path, e)
                continue
            sessions.append(self._build_session(path, entries))

        sessions.sort(key=lambda s: s.updated or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return sessions

    async def get_session(self, native_id: str) -> Session:
        path = await asyncio.to_thread(self._find_session_file, native_id)
        entries = await self._load(path, native_id)
        return self._build_session(path, entries)

    async def get_session_messages(self, native_id: str) -> list[Message]:
        path = await asyncio.to_thread(self._find_session_file, native_id)
        entries = await self._load(path, native_id)
        return parse_claude_entries(entries)

    async def load_session(self, native_id: str) -> tuple[Session, list[Message]]:
        path = await asyncio.to_thread(self._find_session_file, native_id)
        entries = await self._load(path, native_id)
        return self._build_session(path, entries), parse_claude_entries(entries)

    async def get_session_timestamps(self, limit: int | None = None) -> dict[str, datetime]:
        """Session id -> file modification time, newest first.

        Only ``stat`` is used so no session file is opened.
        """
        entries = await asyncio.to_thread(self._scan_timestamps)
        entries.sort(key=lambda e: e[1], reverse=True)
        if limit:
            entries = entries[:limit]
        return dict(entries)

    # ── Private helpers ──────────────────────────────────────────────

    def _session_files(self) -> list[Path]:
        base = self._base_path
        if not base.is_dir():
            return []

        files = []
        for project_dir in sorted(base.iterdir()):
            if not project_dir.is_dir():
                continue
            files.extend(sorted(project_dir.glob("*.jsonl")))
        return files

    def _scan_timestamps(self) -> list[tuple[str, datetime]]:
        latest: dict[str, datetime] = {}
        for path in self._session_files():
            try:
                mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            except OSError:
                continue
            if path.stem not in latest or mtime > latest[path.stem]:
                latest[path.stem] = mtime
        return list(latest.items())

    def _find_session_file(self, native_id: str) -> Path:
        if not native_id or "/" in native_id or "\\" in native_id or native_id in (".", ".."):
            raise SessionNotFound(native_id)

        base = self._base_path
        if not base.is_dir():
            raise SessionNotFound(native_id)

        # Exact file name per project directory; ids are never glob patterns.
        filename = f"{native_id}.jsonl"
        candidates = [d / filename for d in base.iterdir() if d.is_dir() and (d / filename).is_file()]
        if not candidates:
            raise SessionNotFound(native_id)
        # The same session can be resumed from another project directory.
        return max(candidates, key=lambda p: p.stat().st_mtime)

    async def _load(self, path: Path, native_id: str) -> list[dict]:
        try:
            return await asyncio.to_thread(self._read_entries, path)
        except FileNotFoundError as e:
            raise SessionNotFound(native_id) from e
        except OSError as e:
            raise StoreConnectionFailure(f"Failed to read {path}: {e}", str(path)) from e

    def _read_entries(self, path: Path) -> list[dict]:
        entries = []
        with path.open(encoding="utf-8", errors="replace") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.debug("Bad JSON at %s:%d: %s", path, line_num, e)
                    continue
                if isinstance(entry, dict):
                    entries.append(entry)
        return entries

    def _build_session(self, path: Path, entries: list[dict]) -> Session:
        native_id = path.stem
        cwds: list[str] = []
        timestamps = []
        title = ""
        preview = ""

        for entry in entries:
            cwd = entry.get("cwd")
            if isinstance(cwd, str) and cwd and cwd not in cwds:
                cwds.append(cwd)

            ts = parse_timestamp(entry.get("timestamp"))
            if ts is not None:
                timestamps.append(ts)

            entry_type = entry.get("type")
            if entry_type == "summary" and not title and isinstance(entry.get("summary"), str):
                title = entry["summary"].strip()
            elif entry_type in ("user", "human") and not preview:
                preview = claude_entry_text(entry).strip()[:PREVIEW_LENGTH]

        for entry in entries:
            session_id = entry.get("sessionId")
            if isinstance(session_id, str) and session_id:
                native_id = session_id
                break

        project_path = cwds[0] if cwds else _decode_project_dir(path.parent.name)

        return Session(
            id=make_session_id(self.source, native_id),
            source=self.source,
            message_count=len(entries),
            created=min(timestamps) if timestamps else None,
            updated=max(timestamps) if timestamps else None,
            title=title or preview[:80],
            project_path=project_path,
            first_message_preview=preview,
            workspace_hints=cwds or ([project_path] if project_path else []),
        )


def _decode_project_dir(name: str) -> str:
    """Derive a path from a folder name: -Users-me-dev-foo -> /Users/me/dev/foo."""
    if name.startswith("-"):
        return name.replace("-", "/")
    return name
