"""FastAPI server exposing the chat-context API over HTTP.

Besides the REST-style routes, ``POST /api/call/{operation}`` invokes a
facade operation by name with a JSON object of arguments, for agents that
drive the API generically. Typed failures come back as::

    {"error": {"type": "SessionNotFound", "message": "Session not found: x"}}
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .api import ChatContext
from .core import Message, SessionMetadata, Source
from .errors import (
    AmbiguousIdentifier,
    ChatContextError,
    DataCorruption,
    NicknameConflict,
    SessionNotFound,
    StoreConnectionFailure,
    StoreLockedFailure,
)
from .normalize import ParseOptions
from .sync import SyncResult

logger = logging.getLogger(__name__)

# Context cache (created on first request)
_context: ChatContext | None = None


def _get_context() -> ChatContext:
    """Lazily create and cache the ChatContext."""
    global _context
    if _context is None:
        _context = ChatContext()
        logger.info("Detected sources: %s", [s.value for s in _context.sources])
    return _context


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    global _context
    if _context is not None:
        await _context.close()
        _context = None


app = FastAPI(title="chat-context", version="0.1.0", lifespan=_lifespan)

_STATUS_CODES = {
    SessionNotFound: 404,
    AmbiguousIdentifier: 409,
    NicknameConflict: 409,
    DataCorruption: 422,
    StoreLockedFailure: 503,
    StoreConnectionFailure: 503,
}


def _error_response(status_code: int, error_type: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": message}},
    )


@app.exception_handler(ChatContextError)
async def _handle_chat_context_error(request: Request, exc: ChatContextError):
    status_code = _STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return _error_response(status_code, type(exc).__name__, str(exc))


@app.exception_handler(ValueError)
async def _handle_value_error(request: Request, exc: ValueError):
    return _error_response(400, "InvalidArgument", str(exc))


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _metadata_to_dict(meta: SessionMetadata) -> dict:
    """Convert a SessionMetadata dataclass to a JSON-serializable dict."""
    return {
        "session_id": meta.session_id,
        "source": meta.source.value,
        "nickname": meta.nickname,
        "tags": list(meta.tags),
        "project_path": meta.project_path,
        "project_name": meta.project_name,
        "has_project": meta.has_project,
        "first_message_preview": meta.first_message_preview,
        "message_count": meta.message_count,
        "created_at": _iso(meta.created_at),
        "last_synced_at": _iso(meta.last_synced_at),
    }


def _message_to_dict(msg: Message) -> dict:
    """Convert a Message dataclass to a JSON-serializable dict."""
    tool = None
    if msg.tool is not None:
        tool = {
            "name": msg.tool.name,
            "params": msg.tool.params,
            "result": msg.tool.result,
            "workspace_path": msg.tool.workspace_path,
        }
    return {
        "id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "timestamp": _iso(msg.timestamp),
        "tool": tool,
    }


def _sync_result_to_dict(result: SyncResult) -> dict:
    return {
        "synced": result.synced,
        "up_to_date": result.up_to_date,
        "empty": result.empty,
        "failed": result.failed,
        "by_source": dict(result.by_source),
    }


def _source(value: Optional[str]) -> Optional[Source]:
    if not value:
        return None
    try:
        return Source(value)
    except ValueError:
        raise ValueError(f"Unknown source {value!r}, expected one of {', '.join(s.value for s in Source)}") from None


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/sources")
async def get_sources():
    """Return the sources with chat history on this machine."""
    return [s.value for s in _get_context().sources]


@app.get("/api/sessions")
async def get_sessions(
    project: str | None = Query(None, description="Filter by project path or name"),
    tag: str | None = Query(None),
    source: str | None = Query(None, description="cursor or claude"),
    tagged_only: bool = Query(False),
    sort: str = Query("newest", description="Sort: newest, oldest, most_messages"),
    limit: int | None = Query(None, ge=1),
    sync: bool = Query(False, description="Sync before listing"),
):
    sessions = await _get_context().list_sessions(
        project=project,
        tag=tag,
        source=_source(source),
        tagged_only=tagged_only,
        sort=sort,
        limit=limit,
        sync_first=sync,
    )
    return {"total": len(sessions), "sessions": [_metadata_to_dict(m) for m in sessions]}


@app.get("/api/session/{identifier}")
async def get_session(
    identifier: str,
    messages: bool = Query(True, description="Include messages"),
    exclude_tools: bool = Query(False),
    max_length: int | None = Query(None, ge=1),
):
    """Return a session (by nickname, id or prefix) with its messages."""
    options = ParseOptions(exclude_tools=exclude_tools, max_content_length=max_length)
    detail = await _get_context().get_session(identifier, include_messages=messages, options=options)
    return {
        "metadata": _metadata_to_dict(detail.metadata),
        "messages": [_message_to_dict(m) for m in detail.messages],
    }


@app.get("/api/search")
async def search_sessions(
    q: str = Query(..., min_length=1),
    case_sensitive: bool = Query(False),
    project: str | None = Query(None),
    source: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
):
    sessions = await _get_context().search_sessions(
        q, case_sensitive=case_sensitive, project=project, source=_source(source), limit=limit
    )
    return {"total": len(sessions), "sessions": [_metadata_to_dict(m) for m in sessions]}


@app.get("/api/projects")
async def get_projects():
    projects = await _get_context().list_projects()
    return [{"path": p.path, "name": p.name, "session_count": p.session_count} for p in projects]


@app.get("/api/tags")
async def get_tags():
    return [{"tag": t.tag, "count": t.count} for t in await _get_context().list_tags()]


@app.get("/api/stats")
async def get_stats():
    return await _get_context().get_stats()


@app.post("/api/sync")
async def run_sync(limit: int | None = Body(None, embed=True), source: str | None = Body(None, embed=True)):
    selected = _source(source)
    result = await _get_context().sync_sessions(limit=limit, sources=[selected] if selected else None)
    return _sync_result_to_dict(result)


@app.put("/api/nickname/{identifier}")
async def set_nickname(identifier: str, nickname: str = Body(..., embed=True)):
    return _metadata_to_dict(await _get_context().set_nickname(identifier, nickname))


@app.delete("/api/nickname/{identifier}")
async def clear_nickname(identifier: str):
    return _metadata_to_dict(await _get_context().clear_nickname(identifier))


@app.post("/api/tag/{identifier}")
async def add_tag(identifier: str, tag: str = Body(..., embed=True)):
    return _metadata_to_dict(await _get_context().add_tag(identifier, tag))


@app.delete("/api/tag/{identifier}/{tag}")
async def remove_tag(identifier: str, tag: str):
    return _metadata_to_dict(await _get_context().remove_tag(identifier, tag))


# ── Operation dispatch ───────────────────────────────────────────


async def _op_list_sessions(ctx: ChatContext, args: dict) -> Any:
    args["source"] = _source(args.get("source"))
    return [_metadata_to_dict(m) for m in await ctx.list_sessions(**args)]


async def _op_get_session(ctx: ChatContext, args: dict) -> Any:
    options = ParseOptions(
        exclude_tools=args.pop("exclude_tools", False),
        max_content_length=args.pop("max_content_length", None),
    )
    detail = await ctx.get_session(options=options, **args)
    return {
        "metadata": _metadata_to_dict(detail.metadata),
        "messages": [_message_to_dict(m) for m in detail.messages],
    }


async def _op_search_sessions(ctx: ChatContext, args: dict) -> Any:
    args["source"] = _source(args.get("source"))
    return [_metadata_to_dict(m) for m in await ctx.search_sessions(**args)]


async def _op_sync_sessions(ctx: ChatContext, args: dict) -> Any:
    sources = args.get("sources")
    if sources:
        args["sources"] = [_source(s) for s in sources]
    return _sync_result_to_dict(await ctx.sync_sessions(**args))


async def _op_list_projects(ctx: ChatContext, args: dict) -> Any:
    return [{"path": p.path, "name": p.name, "session_count": p.session_count} for p in await ctx.list_projects()]


async def _op_list_tags(ctx: ChatContext, args: dict) -> Any:
    return [{"tag": t.tag, "count": t.count} for t in await ctx.list_tags()]


async def _op_get_stats(ctx: ChatContext, args: dict) -> Any:
    return await ctx.get_stats()


def _metadata_op(method: str) -> Callable[[ChatContext, dict], Awaitable[Any]]:
    async def _op(ctx: ChatContext, args: dict) -> Any:
        return _metadata_to_dict(await getattr(ctx, method)(**args))
    return _op


async def _op_forget_session(ctx: ChatContext, args: dict) -> Any:
    return {"deleted": await ctx.forget_session(**args)}


# operation -> (handler, accepted arguments, required arguments)
_OPERATIONS: dict[str, tuple[Callable, set[str], set[str]]] = {
    "list_sessions": (
        _op_list_sessions,
        {"project", "tag", "source", "tagged_only", "sort", "limit", "sync_first"},
        set(),
    ),
    "get_session": (
        _op_get_session,
        {"identifier", "include_messages", "exclude_tools", "max_content_length"},
        {"identifier"},
    ),
    "search_sessions": (
        _op_search_sessions,
        {"query", "case_sensitive", "project", "tag", "source", "tagged_only", "sort", "limit"},
        {"query"},
    ),
    "sync_sessions": (_op_sync_sessions, {"limit", "sources"}, set()),
    "set_nickname": (_metadata_op("set_nickname"), {"identifier", "nickname"}, {"identifier", "nickname"}),
    "clear_nickname": (_metadata_op("clear_nickname"), {"identifier"}, {"identifier"}),
    "add_tag": (_metadata_op("add_tag"), {"identifier", "tag"}, {"identifier", "tag"}),
    "remove_tag": (_metadata_op("remove_tag"), {"identifier", "tag"}, {"identifier", "tag"}),
    "list_projects": (_op_list_projects, set(), set()),
    "list_tags": (_op_list_tags, set(), set()),
    "get_stats": (_op_get_stats, set(), set()),
    "forget_session": (_op_forget_session, {"identifier"}, {"identifier"}),
}


@app.post("/api/call/{operation}")
async def call_operation(operation: str, arguments: dict[str, Any] | None = Body(None)):
    """Invoke a facade operation by name."""
    entry = _OPERATIONS.get(operation)
    if entry is None:
        return _error_response(404, "UnknownOperation", f"Unknown operation: {operation}")

    handler, accepted, required = entry
    args = dict(arguments or {})
    unexpected = sorted(set(args) - accepted)
    if unexpected:
        raise ValueError(f"Unexpected arguments for {operation}: {', '.join(unexpected)}")
    missing = sorted(required - set(args))
    if missing:
        raise ValueError(f"Missing arguments for {operation}: {', '.join(missing)}")

    return {"result": await handler(_get_context(), args)}
