"""Flatten Cursor's rich-text (Lexical) documents into plain text.

User turns in Cursor are stored as a serialized editor tree::

    {"root": {"type": "root", "children": [
        {"type": "paragraph", "children": [{"type": "text", "text": "Hi"}]},
        {"type": "code", "language": "python", "children": [...]}
    ]}}

Only a little markup survives flattening: fenced code blocks, inline code
in backticks and a line break after each paragraph. Every other node type
is walked for its children and contributes nothing of its own.
"""

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

_CODE_BLOCK = "code"
_INLINE_CODE = "code-highlight"
_PARAGRAPH = "paragraph"


def flatten_rich_text(document: Any) -> str:
    """Return the plain text of a rich-text document.

    ``document`` may be the serialized JSON string or an already decoded
    mapping. Anything that cannot be decoded, or has no ``root`` node,
    yields an empty string.
    """
    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.debug("Unparsable rich text: %s", e)
            return ""

    if not isinstance(document, dict):
        return ""
    root = document.get("root")
    if not isinstance(root, dict):
        return ""

    return _flatten(root)


def _flatten(root: dict) -> str:
    # Depth-first walk with an explicit stack. Entries are either a node
    # still to expand or a literal string to emit.
    out: list[str] = []
    stack: list[Any] = [root]

    while stack:
        item = stack.pop()
        if isinstance(item, str):
            out.append(item)
            continue
        stack.extend(reversed(_expand(item)))

    return "".join(out)


def _expand(node: dict) -> list[Any]:
    node_type = node.get("type")
    text = node.get("text")
    text = text if isinstance(text, str) else ""
    children = node.get("children")
    children = [c for c in children if isinstance(c, dict)] if isinstance(children, list) else []

    if node_type == _CODE_BLOCK:
        language = node.get("language")
        language = language if isinstance(language, str) else ""
        items: list[Any] = [text] if text else []
        items.append(f"\n```{language}\n")
        items.extend(children)
        items.append("\n```\n")
        return items

    if node_type == _INLINE_CODE:
        # Wrapped wherever it appears, fenced blocks included.
        return [f"`{text}`"]

    items = [text] if text else []
    items.extend(children)
    if node_type == _PARAGRAPH and items:
        items.append("\n")
    return items
