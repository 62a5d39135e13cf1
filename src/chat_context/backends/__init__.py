"""Auto-detect installed host applications and build their readers."""

import logging

from ..config import Settings
from ..provider import SourceReader
from .claude_code import ClaudeCodeReader
from .cursor import CursorReader

logger = logging.getLogger(__name__)


def create_readers(settings: Settings) -> list[SourceReader]:
    """Return one reader per source, whether or not its data exists."""
    return [
        CursorReader(settings.cursor_db_path),
        ClaudeCodeReader(settings.claude_path),
    ]


def get_available_readers(settings: Settings | None = None) -> list[SourceReader]:
    """Auto-detect which hosts have chat data here and return their readers."""
    settings = settings or Settings.from_env()
    readers = []
    for reader in create_readers(settings):
        if reader.is_available():
            readers.append(reader)
        else:
            logger.debug("No %s history at %s", reader.source.value, reader.get_base_path())
    return readers
