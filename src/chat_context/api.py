"""High-level async API over the readers, sync engine and metadata store.

Typical use::

    async with ChatContext() as ctx:
        for meta in await ctx.list_sessions(project="my-app", limit=10):
            print(meta.session_id, meta.nickname)
        detail = await ctx.get_session("auth-refactor")

Reads trigger a bulk sync automatically when none has run on this instance
yet or the previous one is older than ``Settings.sync_interval``.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from .backends import get_available_readers
from .config import Settings
from .core import ProjectInfo, SessionDetail, SessionMetadata, Source, TagCount, make_session_id, split_session_id
from .errors import SessionNotFound
from .metadata import MetadataStore
from .normalize import ParseOptions, apply_parse_options
from .provider import SourceReader
from .sync import SyncEngine, SyncResult

logger = logging.getLogger(__name__)

SORT_ORDERS = ("newest", "oldest", "most_messages")

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatContext:
    """Session listing, lookup, search and organization across sources."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[MetadataStore] = None,
        readers: Optional[Iterable[SourceReader]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or Settings.from_env()
        self._store = store or MetadataStore(self.settings.metadata_db_path)
        self._readers = {
            r.source: r
            for r in (readers if readers is not None else get_available_readers(self.settings))
        }
        self._clock = clock
        self._engine = SyncEngine(self._store, self._readers.values(), clock=clock)
        self._sync_task: Optional[asyncio.Task] = None
        self._closed = False
        self.last_sync: Optional[datetime] = None

    async def __aenter__(self) -> "ChatContext":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def sources(self) -> list[Source]:
        return list(self._readers)

    # ── Sync ─────────────────────────────────────────────────────────

    async def sync_sessions(
        self,
        limit: Optional[int] = None,
        sources: Optional[Iterable[Source]] = None,
    ) -> SyncResult:
        """Run a bulk sync, or wait for the one already in flight."""
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.ensure_future(self._run_sync(limit, sources))
        return await self._sync_task

    async def _run_sync(self, limit, sources) -> SyncResult:
        result = await self._engine.sync_all(limit=limit, sources=sources)
        self.last_sync = self._clock()
        return result

    def needs_sync(self) -> bool:
        if not self.settings.auto_sync:
            return False
        if self.last_sync is None:
            return True
        return (self._clock() - self.last_sync).total_seconds() > self.settings.sync_interval

    async def _maybe_sync(self, force: bool = False) -> None:
        if force or self.needs_sync():
            await self.sync_sessions(limit=self.settings.auto_sync_limit)

    # ── Reads ────────────────────────────────────────────────────────

    async def list_sessions(
        self,
        project: Optional[str] = None,
        tag: Optional[str] = None,
        source: Optional[Source] = None,
        tagged_only: bool = False,
        sort: str = "newest",
        limit: Optional[int] = None,
        sync_first: bool = False,
    ) -> list[SessionMetadata]:
        _check_sort(sort)
        await self._maybe_sync(force=sync_first)
        records = await self._store.list_sessions(
            project=project,
            tagged_only=tagged_only,
            source=source,
            tag=tag,
        )
        return sort_and_limit(records, sort, limit)

    async def get_session(
        self,
        identifier: str,
        include_messages: bool = True,
        options: Optional[ParseOptions] = None,
    ) -> SessionDetail:
        """Find a session by nickname, id or id prefix.

        When nothing in the metadata store matches and auto-sync is on, the
        session is imported on demand from its source before giving up.
        """
        await self._maybe_sync()
        metadata = await self._resolve(identifier)

        messages = []
        if include_messages:
            reader = self._readers.get(metadata.source)
            if reader is None:
                logger.warning("No %s reader available for %s", metadata.source.value, metadata.session_id)
            else:
                native_id = split_session_id(metadata.session_id)[1]
                messages = apply_parse_options(await reader.get_session_messages(native_id), options)

        return SessionDetail(metadata=metadata, messages=messages)

    async def search_sessions(
        self,
        query: str,
        case_sensitive: bool = False,
        project: Optional[str] = None,
        tag: Optional[str] = None,
        source: Optional[Source] = None,
        tagged_only: bool = False,
        sort: str = "newest",
        limit: Optional[int] = None,
    ) -> list[SessionMetadata]:
        """Substring search over nickname, tags, preview and project name."""
        candidates = await self.list_sessions(
            project=project, tag=tag, source=source, tagged_only=tagged_only, sort=sort
        )
        needle = query if case_sensitive else query.lower()

        matches = []
        for meta in candidates:
            fields = [meta.nickname, meta.first_message_preview, meta.project_name, *meta.tags]
            for value in fields:
                if not value:
                    continue
                haystack = value if case_sensitive else value.lower()
                if needle in haystack:
                    matches.append(meta)
                    break

        return matches[:limit] if limit else matches

    async def list_projects(self) -> list[ProjectInfo]:
        await self._maybe_sync()
        return await self._store.list_projects()

    async def list_tags(self) -> list[TagCount]:
        await self._maybe_sync()
        return await self._store.list_tags()

    async def get_stats(self) -> dict[str, Any]:
        """Metadata aggregates plus live session counts per source.

        Comparing ``source_sessions`` with ``by_source`` shows how far the
        metadata store lags behind the sources.
        """
        await self._maybe_sync()
        stats = await self._store.get_stats()
        stats["source_sessions"] = {
            source.value: await reader.count_sessions() for source, reader in self._readers.items()
        }
        stats["last_sync"] = self.last_sync.isoformat() if self.last_sync else None
        return stats

    # ── Organization ─────────────────────────────────────────────────

    async def set_nickname(self, identifier: str, nickname: str) -> SessionMetadata:
        session_id = await self._resolve_for_write(identifier)
        return await self._store.set_nickname(session_id, nickname)

    async def clear_nickname(self, identifier: str) -> SessionMetadata:
        session_id = await self._resolve_for_write(identifier)
        return await self._store.clear_nickname(session_id)

    async def add_tag(self, identifier: str, tag: str) -> SessionMetadata:
        session_id = await self._resolve_for_write(identifier)
        return await self._store.add_tag(session_id, tag)

    async def remove_tag(self, identifier: str, tag: str) -> SessionMetadata:
        session_id = await self._resolve_for_write(identifier)
        return await self._store.remove_tag(session_id, tag)

    async def forget_session(self, identifier: str) -> bool:
        """Delete a session's metadata. The source history is untouched."""
        metadata = await self._resolve(identifier, import_missing=False)
        return await self._store.delete(metadata.session_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for reader in self._readers.values():
            await reader.close()
        await self._store.close()

    # ── Private helpers ──────────────────────────────────────────────

    async def _resolve(self, identifier: str, import_missing: bool = True) -> SessionMetadata:
        metadata = await self._store.get_by_nickname(identifier)
        if metadata is not None:
            return metadata

        source, native_id = split_session_id(identifier)
        if source is not None:
            metadata = await self._store.get(identifier)
        else:
            metadata = await self._store.find_by_native_id(native_id)
        if metadata is not None:
            return metadata

        metadata = await self._store.find_by_prefix(identifier)
        if metadata is not None:
            return metadata

        if import_missing and self.settings.auto_sync:
            metadata = await self._engine.sync_session(identifier)
            if metadata is not None:
                return metadata

        raise SessionNotFound(identifier)

    async def _resolve_for_write(self, identifier: str) -> str:
        """Return the composite id to mutate, importing the session if needed."""
        await self._maybe_sync()
        metadata = await self._store.get_by_nickname(identifier)
        if metadata is not None:
            return metadata.session_id

        source, native_id = split_session_id(identifier)
        if source is None:
            try:
                source = await self._engine.resolve_source(native_id)
            except SessionNotFound:
                # Known locally even if its source is gone.
                metadata = await self._store.find_by_native_id(native_id)
                if metadata is None:
                    raise
                return metadata.session_id

        session_id = make_session_id(source, native_id)
        if await self._store.get(session_id) is None:
            if await self._engine.sync_session(session_id) is None:
                raise SessionNotFound(identifier)
        return session_id


def _check_sort(sort: str) -> None:
    if sort not in SORT_ORDERS:
        raise ValueError(f"Unknown sort order {sort!r}, expected one of {', '.join(SORT_ORDERS)}")


def sort_and_limit(records: list[SessionMetadata], sort: str = "newest", limit: Optional[int] = None) -> list[SessionMetadata]:
    """Order records and cap their count.

    A missing creation time sorts as the oldest possible, a missing message
    count as zero.
    """
    _check_sort(sort)
    if sort == "newest":
        ordered = sorted(records, key=lambda r: r.created_at or _OLDEST, reverse=True)
    elif sort == "oldest":
        ordered = sorted(records, key=lambda r: r.created_at or _OLDEST)
    else:
        ordered = sorted(records, key=lambda r: r.message_count or 0, reverse=True)
    return ordered[:limit] if limit else ordered
