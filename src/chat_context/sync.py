"""Incremental source → metadata sync.

Each session moves through ``Unknown → Imported → Stale → Imported``. A
session is (re)imported when the metadata store has no record of it, when
the record was never synced, or when the source reports a modification
strictly newer than the record's ``last_synced_at``. Sessions are processed
one at a time, in the order the readers return them (newest first).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .core import SessionMetadata, Source, make_session_id, split_session_id
from .errors import AmbiguousIdentifier, DataCorruption, NicknameConflict, SessionNotFound
from .metadata import MetadataStore
from .normalize import first_user_preview
from .provider import SourceReader
from .workspace import locate_workspace

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncResult:
    """Outcome of a bulk pass.

    ``synced`` counts imported sessions only; up-to-date, empty and
    unreadable sessions are tallied separately.
    """

    synced: int = 0
    up_to_date: int = 0
    empty: int = 0
    failed: int = 0
    by_source: dict[str, int] = field(default_factory=dict)


class SyncEngine:
    """Imports source sessions into the metadata store."""

    def __init__(
        self,
        store: MetadataStore,
        readers: Iterable[SourceReader],
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._readers = {reader.source: reader for reader in readers}
        self._clock = clock

    @property
    def readers(self) -> dict[Source, SourceReader]:
        return dict(self._readers)

    async def sync_all(
        self,
        limit: Optional[int] = None,
        sources: Optional[Iterable[Source]] = None,
    ) -> SyncResult:
        """Run one bulk pass over every reader (or only ``sources``).

        ``limit`` caps the number of most recent sessions looked at per
        source. Store-level failures abort the pass; per-session
        SessionNotFound and DataCorruption are logged and skipped.
        """
        wanted = {Source(s) for s in sources} if sources else None
        result = SyncResult()

        for source, reader in self._readers.items():
            if wanted is not None and source not in wanted:
                continue

            timestamps = await reader.get_session_timestamps(limit)
            logger.debug("Checking %d %s sessions", len(timestamps), source.value)
            imported = 0

            for native_id, source_updated in timestamps.items():
                session_id = make_session_id(source, native_id)
                existing = await self._store.get(session_id)
                if not _is_stale(existing, source_updated):
                    result.up_to_date += 1
                    continue

                try:
                    metadata = await self._import(reader, native_id, existing)
                except (SessionNotFound, DataCorruption) as e:
                    logger.warning("Skipping %s: %s", session_id, e)
                    result.failed += 1
                    continue

                if metadata is None:
                    result.empty += 1
                else:
                    imported += 1

            result.by_source[source.value] = imported
            result.synced += imported

        logger.info(
            "Sync finished: %d imported, %d up to date, %d empty, %d failed",
            result.synced, result.up_to_date, result.empty, result.failed,
        )
        return result

    async def sync_session(self, session_id: str) -> Optional[SessionMetadata]:
        """Import one session on demand, regardless of staleness.

        A bare native id is probed against every reader. Returns None when
        the session exists but has no messages.
        """
        source, native_id = split_session_id(session_id)
        if source is None:
            reader = await self._probe(native_id)
        else:
            reader = self._readers.get(source)
            if reader is None:
                raise SessionNotFound(session_id)

        existing = await self._store.get(make_session_id(reader.source, native_id))
        return await self._import(reader, native_id, existing)

    async def resolve_source(self, native_id: str) -> Source:
        """Return the single source that knows ``native_id``."""
        return (await self._probe(native_id)).source

    # ── Private helpers ──────────────────────────────────────────────

    async def _probe(self, native_id: str) -> SourceReader:
        matches = [reader for reader in self._readers.values() if await reader.has_session(native_id)]
        if not matches:
            raise SessionNotFound(native_id)
        if len(matches) > 1:
            raise AmbiguousIdentifier(
                native_id, [make_session_id(r.source, native_id) for r in matches]
            )
        return matches[0]

    async def _import(
        self,
        reader: SourceReader,
        native_id: str,
        existing: Optional[SessionMetadata],
    ) -> Optional[SessionMetadata]:
        session, messages = await reader.load_session(native_id)
        session_id = make_session_id(reader.source, native_id)
        if not messages:
            logger.debug("Not importing empty session %s", session_id)
            return None

        hints = session.workspace_hints or ([session.project_path] if session.project_path else [])
        workspace = locate_workspace(messages, hints)

        # Nickname and tags belong to the user and survive re-import.
        nickname = existing.nickname if existing else None
        tags = list(existing.tags) if existing else []
        proposed = None
        if nickname is None and workspace.nickname:
            owner = await self._store.get_by_nickname(workspace.nickname)
            if owner is None:
                nickname = proposed = workspace.nickname
            else:
                logger.debug("Nickname %r already used by %s", workspace.nickname, owner.session_id)

        created = session.created or next((m.timestamp for m in messages if m.timestamp), None)
        metadata = SessionMetadata(
            session_id=session_id,
            source=reader.source,
            nickname=nickname,
            tags=tags,
            project_path=workspace.primary_path,
            project_name=workspace.project_name,
            first_message_preview=first_user_preview(messages) or session.first_message_preview or None,
            message_count=len(messages),
            created_at=created,
            last_synced_at=self._clock(),
        )

        try:
            await self._store.upsert(metadata)
        except NicknameConflict:
            if proposed is None:
                raise
            # Taken between the check and the write; import without it.
            metadata.nickname = None
            await self._store.upsert(metadata)

        return metadata


def _is_stale(existing: Optional[SessionMetadata], source_updated: Optional[datetime]) -> bool:
    if existing is None or existing.last_synced_at is None:
        return True
    if source_updated is None:
        return False
    return source_updated > existing.last_synced_at
