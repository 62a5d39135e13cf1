"""Core data models for chat-context."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Source(str, Enum):
    """Host applications whose chat history can be read."""

    CURSOR = "cursor"
    CLAUDE = "claude"


ROLES = ("user", "assistant", "tool")


def make_session_id(source: Source, native_id: str) -> str:
    """Build the composite ``<source>:<native-id>`` identifier."""
    return f"{Source(source).value}:{native_id}"


def split_session_id(session_id: str) -> tuple[Optional[Source], str]:
    """Split a composite id into (source, native id).

    Returns ``(None, session_id)`` when the identifier carries no known
    source prefix, i.e. it is a bare native id.
    """
    prefix, sep, rest = session_id.partition(":")
    if not sep:
        return None, session_id
    try:
        return Source(prefix), rest
    except ValueError:
        return None, session_id


@dataclass
class ToolInvocation:
    """A tool call recorded during a turn."""

    name: str
    params: Any = None
    result: Any = None
    workspace_path: Optional[str] = None  # recovered from the tool result


@dataclass
class Message:
    """A single message within a chat session."""

    role: str  # "user" | "assistant" | "tool"
    content: str
    id: Optional[str] = None
    timestamp: Optional[datetime] = None
    tool: Optional[ToolInvocation] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role {self.role!r}, expected one of {', '.join(ROLES)}")


@dataclass
class Session:
    """A conversation as reported by its source store (read-only)."""

    id: str  # composite: "cursor:<uuid>", "claude:<uuid>"
    source: Source
    message_count: int = 0
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    title: str = ""
    project_path: str = ""
    first_message_preview: str = ""
    workspace_hints: list[str] = field(default_factory=list)

    @property
    def native_id(self) -> str:
        return split_session_id(self.id)[1]


@dataclass
class SessionMetadata:
    """The locally-owned organizational record for one session."""

    session_id: str
    source: Source = Source.CURSOR
    nickname: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    project_path: Optional[str] = None
    project_name: Optional[str] = None
    has_project: bool = False
    first_message_preview: Optional[str] = None
    message_count: int = 0
    created_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    def __post_init__(self):
        self.source = Source(self.source)
        # Keep insertion order, drop duplicates.
        self.tags = list(dict.fromkeys(self.tags or []))
        if self.project_path:
            if not self.project_name:
                from .workspace import project_name_from_path

                self.project_name = project_name_from_path(self.project_path)
            self.has_project = True
        else:
            self.project_path = None
            self.project_name = None
            self.has_project = False


@dataclass
class ProjectInfo:
    """A project path and the number of sessions that reference it."""

    path: str
    name: str
    session_count: int


@dataclass
class TagCount:
    tag: str
    count: int


@dataclass
class SessionDetail:
    """Metadata plus (optionally) the normalized messages of a session."""

    metadata: SessionMetadata
    messages: list[Message] = field(default_factory=list)
