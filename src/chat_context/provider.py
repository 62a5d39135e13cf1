"""Abstract base class for chat history source readers."""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from .core import Message, Session, Source
from .errors import DataCorruption, SessionNotFound


class SourceReader(ABC):
    """Base class for read-only access to one host application's history.

    Each reader (Cursor, Claude Code) implements this interface so the sync
    engine and the facade can treat both stores alike. Readers take and
    return native ids; composite ids are built with ``make_session_id``.
    """

    source: Source

    @abstractmethod
    def get_base_path(self) -> Path:
        """Return the file or directory where the host stores chat data."""
        ...

    def is_available(self) -> bool:
        """Return True if this host's data exists on this machine."""
        return self.get_base_path().exists()

    @abstractmethod
    async def get_session(self, native_id: str) -> Session:
        """Return session-level data, raising SessionNotFound if absent."""
        ...

    @abstractmethod
    async def get_session_messages(self, native_id: str) -> list[Message]:
        """Return the ordered messages of a session.

        Raises SessionNotFound when no such session exists. An existing
        session without messages yields an empty list.
        """
        ...

    @abstractmethod
    async def get_session_timestamps(self, limit: int | None = None) -> dict[str, datetime]:
        """Return native id -> last-modified time, newest first."""
        ...

    async def load_session(self, native_id: str) -> tuple[Session, list[Message]]:
        """Return session data and messages together.

        Readers override this when both come from the same read.
        """
        session = await self.get_session(native_id)
        return session, await self.get_session_messages(native_id)

    async def has_session(self, native_id: str) -> bool:
        try:
            await self.get_session(native_id)
        except SessionNotFound:
            return False
        except DataCorruption:
            # The record exists even if it cannot be decoded.
            return True
        return True

    async def count_sessions(self) -> int:
        return len(await self.get_session_timestamps())

    async def close(self) -> None:
        """Release any resources held by the reader."""
