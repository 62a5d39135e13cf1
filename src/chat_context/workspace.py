"""Recover the project a session was working in.

Neither source records a session's project directly. The best evidence is
a tool result that reports workspace paths; the first one seen wins, even
when a session touches several projects. Sources may also supply
session-level path hints (Claude Code's ``cwd``) which are used only when no
tool evidence exists.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .core import Message

UNKNOWN_PROJECT = "unknown"

NICKNAME_TOOL = "nickname_current_session"

_TRAILING_SEPARATORS = re.compile(r"[/\\]+$")


@dataclass
class WorkspaceInfo:
    primary_path: Optional[str] = None
    all_paths: list[str] = field(default_factory=list)
    nickname: Optional[str] = None

    @property
    def has_project(self) -> bool:
        return self.primary_path is not None

    @property
    def is_multi_workspace(self) -> bool:
        return len(self.all_paths) > 1

    @property
    def project_name(self) -> Optional[str]:
        return project_name_from_path(self.primary_path) if self.primary_path else None


def project_name_from_path(path: str) -> str:
    """Return the final path segment, e.g. ``/Users/me/my-app/`` -> ``my-app``.

    Both ``/`` and ``\\`` separators are understood. Empty or
    separator-only paths give ``"unknown"``.
    """
    if not path:
        return UNKNOWN_PROJECT

    cleaned = _TRAILING_SEPARATORS.sub("", path)
    if not cleaned:
        return UNKNOWN_PROJECT

    separator = "\\" if "\\" in cleaned else "/"
    return cleaned.split(separator)[-1] or UNKNOWN_PROJECT


def extract_workspace_paths(messages: Iterable[Message]) -> list[str]:
    """All distinct tool-reported workspace paths, in first-seen order."""
    paths: dict[str, None] = {}
    for msg in messages:
        if msg.tool is not None and msg.tool.workspace_path:
            paths.setdefault(msg.tool.workspace_path)
    return list(paths)


def extract_nickname(messages: Iterable[Message]) -> Optional[str]:
    """Nickname proposed by a ``nickname_current_session`` tool call, if any.

    Namespaced tool names such as
    ``mcp__cursor-context__nickname_current_session`` are accepted too.
    """
    for msg in messages:
        tool = msg.tool
        if tool is None:
            continue
        if tool.name != NICKNAME_TOOL and not tool.name.endswith("__" + NICKNAME_TOOL):
            continue
        if isinstance(tool.params, dict):
            nickname = tool.params.get("nickname")
            if isinstance(nickname, str) and nickname.strip():
                return nickname.strip()
    return None


def locate_workspace(messages: list[Message], fallback_paths: Iterable[str] = ()) -> WorkspaceInfo:
    """Work out the primary project path of a session."""
    paths = extract_workspace_paths(messages)
    if not paths:
        paths = list(dict.fromkeys(p for p in fallback_paths if p))

    return WorkspaceInfo(
        primary_path=paths[0] if paths else None,
        all_paths=paths,
        nickname=extract_nickname(messages),
    )
