"""Convert each source's native message shape into the unified Message.

Cursor (Source A) stores one "bubble" per turn::

    {"bubbleId": "...", "type": 1, "text": "...", "richText": "{...}",
     "createdAt": "2025-01-15T10:00:00Z",
     "toolFormerData": {"name": "grep", "tool": 41,
                        "params": "{...}", "result": "{...}"}}

``type`` 1 is a user turn, 2 an assistant turn, anything else a tool turn.

Claude Code (Source B) stores one JSON line per event. ``user`` and
``assistant`` lines carry ``message.content`` as a string or a list of
blocks (``text``, ``tool_use``, ``tool_result``); every other line type is
bookkeeping and is skipped.
"""

import json
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .core import Message, ToolInvocation
from .richtext import flatten_rich_text

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200


@dataclass
class ParseOptions:
    """Options applied when messages are handed back to a caller."""

    exclude_tools: bool = False
    max_content_length: Optional[int] = None


# ── Shared helpers ───────────────────────────────────────────────


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a millisecond epoch or an ISO 8601 string, or return None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (ValueError, OSError, OverflowError):
            return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        if value.isdigit():
            return parse_timestamp(int(value))
        try:
            if value.endswith("Z"):
                value = value[:-1] + "+00:00"
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def extract_workspace_path(result: Any) -> str | None:
    """Return the first key of ``success.workspaceResults`` in a tool result.

    ``result`` may be the raw JSON string or the decoded payload.
    """
    if isinstance(result, str):
        result = _maybe_json(result)
    if not isinstance(result, dict):
        return None
    success = result.get("success")
    if not isinstance(success, dict):
        return None
    workspace_results = success.get("workspaceResults")
    if not isinstance(workspace_results, dict):
        return None
    for path in workspace_results:
        if path:
            return path
    return None


def first_user_preview(messages: Iterable[Message], length: int = PREVIEW_LENGTH) -> str:
    for msg in messages:
        if msg.role == "user" and msg.content:
            return msg.content[:length]
    return ""


def _maybe_json(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return value
    if not isinstance(value, str):
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


# ── Cursor ───────────────────────────────────────────────────────


def parse_cursor_bubble(bubble: dict) -> Message:
    """Convert one Cursor bubble into a Message."""
    bubble_type = bubble.get("type")
    if bubble_type == 1:
        role = "user"
    elif bubble_type == 2:
        role = "assistant"
    else:
        role = "tool"

    text = bubble.get("text")
    text = text if isinstance(text, str) else ""
    content = ""
    if bubble_type == 1:
        rich_text = bubble.get("richText")
        if rich_text:
            content = flatten_rich_text(rich_text)
        if not content.strip():
            content = text
    elif bubble_type == 2:
        content = text

    bubble_id = bubble.get("bubbleId")
    return Message(
        role=role,
        content=content.strip(),
        id=bubble_id if isinstance(bubble_id, str) else None,
        timestamp=parse_timestamp(bubble.get("createdAt")),
        tool=parse_tool_former_data(bubble.get("toolFormerData")),
    )


def parse_tool_former_data(data: Any) -> ToolInvocation | None:
    """Decode Cursor's ``toolFormerData`` block."""
    if not isinstance(data, dict):
        return None

    name = data.get("name")
    if not name:
        tool_id = data.get("tool")
        name = f"tool_{tool_id}" if tool_id is not None else "unknown_tool"

    result = _maybe_json(data.get("result"))
    return ToolInvocation(
        name=str(name),
        params=_maybe_json(data.get("params")),
        result=result,
        workspace_path=extract_workspace_path(result),
    )


def parse_cursor_bubbles(bubbles: Iterable[dict]) -> list[Message]:
    return [parse_cursor_bubble(b) for b in bubbles if isinstance(b, dict)]


# ── Claude Code ──────────────────────────────────────────────────


def parse_claude_entries(entries: Iterable[dict]) -> list[Message]:
    """Convert decoded Claude Code JSONL lines into Messages.

    A ``tool_result`` block in a later user line is attached to the
    invocation it answers (matched by ``tool_use_id``), so workspace paths
    reported by tools end up on the invocation record.
    """
    messages: list[Message] = []
    invocations: dict[str, ToolInvocation] = {}

    for entry in entries:
        if not isinstance(entry, dict):
            continue

        entry_type = entry.get("type", "")
        msg_data = entry.get("message")
        content = msg_data.get("content") if isinstance(msg_data, dict) else None
        timestamp = parse_timestamp(entry.get("timestamp"))
        native_id = entry.get("uuid") if isinstance(entry.get("uuid"), str) else None

        if entry_type in ("user", "human"):
            if isinstance(content, list):
                _attach_tool_results(content, invocations)
            text = _join_text(content)
            if text.strip():
                messages.append(Message(
                    role="user",
                    content=text,
                    id=native_id,
                    timestamp=timestamp,
                ))

        elif entry_type == "assistant":
            text, tool, tool_use_id = _parse_assistant_content(content)
            if not text and tool is None:
                continue
            if tool is not None and tool_use_id:
                invocations[tool_use_id] = tool
            messages.append(Message(
                role="tool" if tool is not None else "assistant",
                content=text,
                id=native_id,
                timestamp=timestamp,
                tool=tool,
            ))

    return messages


def claude_entry_text(entry: dict) -> str:
    """Plain text of a user entry, ignoring tool results."""
    msg_data = entry.get("message")
    if not isinstance(msg_data, dict):
        return ""
    return _join_text(msg_data.get("content"))


def _join_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                parts.append(text)
    return "\n".join(parts)


def _parse_assistant_content(content: Any) -> tuple[str, ToolInvocation | None, str | None]:
    if isinstance(content, str):
        return content.strip(), None, None
    if not isinstance(content, list):
        return "", None, None

    text_parts = []
    tool = None
    tool_use_id = None
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                text_parts.append(text)
        elif block_type == "tool_use" and block.get("name"):
            # The last invocation of a turn is the one recorded.
            tool = ToolInvocation(name=str(block["name"]), params=block.get("input") or {})
            tool_use_id = block.get("id")

    return "\n".join(text_parts).strip(), tool, tool_use_id


def _attach_tool_results(content: list, invocations: dict[str, ToolInvocation]) -> None:
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        invocation = invocations.get(block.get("tool_use_id"))
        if invocation is None:
            continue

        payload = block.get("content")
        if isinstance(payload, list):
            payload = _join_text(payload)
        decoded = _maybe_json(payload)
        invocation.result = decoded if decoded is not None else payload
        invocation.workspace_path = extract_workspace_path(decoded)


# ── Post-processing ──────────────────────────────────────────────


def apply_parse_options(messages: list[Message], options: ParseOptions | None) -> list[Message]:
    if options is None:
        return messages

    result = []
    limit = options.max_content_length
    for msg in messages:
        if options.exclude_tools and msg.tool is not None:
            msg = replace(msg, tool=None)
        if limit and len(msg.content) > limit:
            msg = replace(msg, content=msg.content[:limit] + "...")
        result.append(msg)
    return result


def filter_messages_by_role(messages: Iterable[Message], roles: Iterable[str]) -> list[Message]:
    wanted = set(roles)
    return [m for m in messages if m.role in wanted]


def conversation_only(messages: Iterable[Message]) -> list[Message]:
    """Drop tool turns, keeping the user/assistant exchange."""
    return filter_messages_by_role(messages, ("user", "assistant"))


def estimate_tokens(content: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return math.ceil(len(content) / 4)
