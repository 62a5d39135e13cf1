"""Platform-aware path resolution and runtime settings."""

import os
import sys
from dataclasses import dataclass
from pathlib import Path

SYNC_INTERVAL_SECONDS = 5 * 60
DEFAULT_AUTO_SYNC_LIMIT = 100_000


def get_cursor_db_path() -> Path:
    """Return the path to Cursor's globalStorage state.vscdb."""
    env = os.environ.get("CHAT_CONTEXT_CURSOR_DB")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Cursor" / "User" / "globalStorage" / "state.vscdb"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "Cursor" / "User" / "globalStorage" / "state.vscdb"
    else:  # Linux
        return Path.home() / ".config" / "Cursor" / "User" / "globalStorage" / "state.vscdb"


def get_claude_code_path() -> Path:
    """Return the path to Claude Code's projects directory."""
    env = os.environ.get("CHAT_CONTEXT_CLAUDE_PATH")
    if env:
        return Path(env)

    return Path.home() / ".claude" / "projects"


def get_metadata_db_path() -> Path:
    """Return the path of the metadata database owned by chat-context."""
    env = os.environ.get("CHAT_CONTEXT_METADATA_DB")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    elif sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", ""))
    else:  # Linux
        base = Path(os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share")
    return base / "chat-context" / "metadata.db"


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class Settings:
    """Runtime configuration for a ChatContext instance."""

    cursor_db_path: Path
    claude_path: Path
    metadata_db_path: Path
    auto_sync: bool = True
    auto_sync_limit: int = DEFAULT_AUTO_SYNC_LIMIT
    sync_interval: float = SYNC_INTERVAL_SECONDS

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from the platform defaults and environment."""
        return cls(
            cursor_db_path=get_cursor_db_path(),
            claude_path=get_claude_code_path(),
            metadata_db_path=get_metadata_db_path(),
            auto_sync=_env_flag("CHAT_CONTEXT_AUTO_SYNC", True),
            auto_sync_limit=int(os.environ.get("CHAT_CONTEXT_AUTO_SYNC_LIMIT", DEFAULT_AUTO_SYNC_LIMIT)),
        )
