"""Tests for rich-text flattening."""

import json

from chat_context.richtext import flatten_rich_text


def _doc(*children):
    return {"root": {"type": "root", "children": list(children)}}


def _text(text):
    return {"type": "text", "text": text}


class TestFlattenRichText:
    """Tests for flatten_rich_text."""

    def test_paragraphs_end_with_newline(self):
        doc = _doc(
            {"type": "paragraph", "children": [_text("Hello "), _text("world")]},
            {"type": "paragraph", "children": [_text("Second")]},
        )
        assert flatten_rich_text(doc) == "Hello world\nSecond\n"

    def test_python_code_block(self):
        doc = _doc({"type": "code", "language": "python", "children": [_text("x=1")]})
        out = flatten_rich_text(doc)
        assert out.count("```python") == 1
        assert out.count("```") == 2
        assert "```python\nx=1\n```" in out

    def test_code_block_without_language_keeps_fences(self):
        doc = _doc({"type": "code", "children": [_text("ls -la")]})
        assert flatten_rich_text(doc) == "\n```\nls -la\n```\n"

    def test_inline_code(self):
        doc = _doc({"type": "paragraph", "children": [
            _text("run "),
            {"type": "code-highlight", "text": "make test"},
        ]})
        assert flatten_rich_text(doc) == "run `make test`\n"

    def test_highlight_tokens_inside_code_block_keep_backticks(self):
        doc = _doc({"type": "code", "language": "js", "children": [
            {"type": "code-highlight", "text": "const"},
            _text(" a = 1;"),
        ]})
        assert flatten_rich_text(doc) == "\n```js\n`const` a = 1;\n```\n"

    def test_unknown_nodes_are_traversed(self):
        doc = _doc({"type": "list", "children": [
            {"type": "listitem", "children": [_text("one")]},
            {"type": "listitem", "children": [{"type": "mention", "children": [_text("two")]}]},
        ]})
        assert flatten_rich_text(doc) == "onetwo"

    def test_accepts_serialized_json(self):
        doc = _doc({"type": "paragraph", "children": [_text("hi")]})
        assert flatten_rich_text(json.dumps(doc)) == "hi\n"

    def test_parse_failure_yields_empty(self):
        assert flatten_rich_text("{not json") == ""

    def test_missing_root_yields_empty(self):
        assert flatten_rich_text({"children": []}) == ""
        assert flatten_rich_text([1, 2, 3]) == ""

    def test_deterministic(self):
        doc = json.dumps(_doc(
            {"type": "paragraph", "children": [_text("a"), {"type": "code-highlight", "text": "b"}]},
            {"type": "code", "language": "sh", "children": [_text("echo c")]},
        ))
        assert flatten_rich_text(doc) == flatten_rich_text(doc)

    def test_deep_nesting_does_not_recurse(self):
        node = _text("deep")
        for _ in range(5000):
            node = {"type": "quote", "children": [node]}
        assert flatten_rich_text(_doc(node)) == "deep"
