"""CLI entry point for chat-context."""

import asyncio
import logging
import sys
from typing import Awaitable, Callable, TypeVar

import click
import uvicorn

from .api import SORT_ORDERS, ChatContext
from .config import Settings
from .core import Source
from .errors import ChatContextError
from .normalize import ParseOptions

T = TypeVar("T")


def _run(action: Callable[[ChatContext], Awaitable[T]]) -> T:
    """Run one facade call on a fresh ChatContext, reporting failures."""

    async def _main() -> T:
        async with ChatContext(Settings.from_env()) as ctx:
            return await action(ctx)

    try:
        return asyncio.run(_main())
    except (ChatContextError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _format_row(meta) -> str:
    created = meta.created_at.strftime("%Y-%m-%d %H:%M") if meta.created_at else "-"
    label = meta.nickname or meta.session_id
    project = meta.project_name or "-"
    tags = f" [{', '.join(meta.tags)}]" if meta.tags else ""
    return f"{label}  {created}  {meta.message_count:>4} msgs  {project}{tags}"


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log progress to stderr.")
def main(verbose: bool):
    """Organize Cursor and Claude Code chat history."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--limit", type=int, default=None, help="Only check the N most recent sessions per source.")
@click.option("--source", type=click.Choice([s.value for s in Source]), default=None)
def sync(limit: int | None, source: str | None):
    """Import new and changed sessions into the metadata store."""
    sources = [Source(source)] if source else None
    result = _run(lambda ctx: ctx.sync_sessions(limit=limit, sources=sources))
    click.echo(f"Synced {result.synced} sessions ({result.up_to_date} up to date, {result.failed} failed)")


@main.command("list")
@click.option("--project", default=None, help="Project path or name.")
@click.option("--tag", default=None)
@click.option("--source", type=click.Choice([s.value for s in Source]), default=None)
@click.option("--tagged-only", is_flag=True, help="Only sessions with at least one tag.")
@click.option("--sort", type=click.Choice(SORT_ORDERS), default="newest")
@click.option("--limit", type=int, default=20)
def list_cmd(project, tag, source, tagged_only, sort, limit):
    """List sessions."""
    sessions = _run(lambda ctx: ctx.list_sessions(
        project=project,
        tag=tag,
        source=Source(source) if source else None,
        tagged_only=tagged_only,
        sort=sort,
        limit=limit,
    ))
    if not sessions:
        click.echo("No sessions found.")
        return
    for meta in sessions:
        click.echo(_format_row(meta))


@main.command()
@click.argument("identifier")
@click.option("--no-tools", is_flag=True, help="Hide tool invocation details.")
@click.option("--max-length", type=int, default=None, help="Truncate each message.")
def show(identifier: str, no_tools: bool, max_length: int | None):
    """Show a session by nickname, id or id prefix."""
    options = ParseOptions(exclude_tools=no_tools, max_content_length=max_length)
    detail = _run(lambda ctx: ctx.get_session(identifier, options=options))

    meta = detail.metadata
    click.echo(f"Session:  {meta.session_id}")
    if meta.nickname:
        click.echo(f"Nickname: {meta.nickname}")
    if meta.tags:
        click.echo(f"Tags:     {', '.join(meta.tags)}")
    if meta.project_path:
        click.echo(f"Project:  {meta.project_name} ({meta.project_path})")
    click.echo("")
    for msg in detail.messages:
        header = msg.role.upper()
        if msg.tool is not None:
            header += f" [{msg.tool.name}]"
        click.echo(f"{header}:")
        if msg.content:
            click.echo(msg.content)
        click.echo("")


@main.command()
@click.argument("query")
@click.option("--case-sensitive", is_flag=True)
@click.option("--project", default=None)
@click.option("--limit", type=int, default=20)
def search(query: str, case_sensitive: bool, project: str | None, limit: int):
    """Search nicknames, tags, previews and project names."""
    sessions = _run(lambda ctx: ctx.search_sessions(
        query, case_sensitive=case_sensitive, project=project, limit=limit
    ))
    if not sessions:
        click.echo("No matching sessions.")
        return
    for meta in sessions:
        click.echo(_format_row(meta))


@main.command()
@click.argument("identifier")
@click.argument("name", required=False)
@click.option("--clear", is_flag=True, help="Remove the session's nickname.")
def nickname(identifier: str, name: str | None, clear: bool):
    """Set (or clear) a session's nickname."""
    if clear:
        meta = _run(lambda ctx: ctx.clear_nickname(identifier))
        click.echo(f"Cleared nickname of {meta.session_id}")
        return
    if not name:
        raise click.UsageError("NAME is required unless --clear is given")
    meta = _run(lambda ctx: ctx.set_nickname(identifier, name))
    click.echo(f"{meta.session_id} is now '{meta.nickname}'")


@main.group()
def tag():
    """Add or remove session tags."""


@tag.command("add")
@click.argument("identifier")
@click.argument("tags", nargs=-1, required=True)
def tag_add(identifier: str, tags: tuple[str, ...]):
    async def _add(ctx: ChatContext):
        meta = None
        for t in tags:
            meta = await ctx.add_tag(identifier, t)
        return meta

    meta = _run(_add)
    click.echo(f"{meta.session_id}: {', '.join(meta.tags)}")


@tag.command("remove")
@click.argument("identifier")
@click.argument("tags", nargs=-1, required=True)
def tag_remove(identifier: str, tags: tuple[str, ...]):
    async def _remove(ctx: ChatContext):
        meta = None
        for t in tags:
            meta = await ctx.remove_tag(identifier, t)
        return meta

    meta = _run(_remove)
    click.echo(f"{meta.session_id}: {', '.join(meta.tags) or '(no tags)'}")


@main.command()
def projects():
    """List projects with their session counts."""
    for project in _run(lambda ctx: ctx.list_projects()):
        click.echo(f"{project.session_count:>5}  {project.name}  {project.path}")


@main.command()
def tags():
    """List tags with their session counts."""
    for tag_count in _run(lambda ctx: ctx.list_tags()):
        click.echo(f"{tag_count.count:>5}  {tag_count.tag}")


@main.command()
def stats():
    """Show metadata and source statistics."""
    data = _run(lambda ctx: ctx.get_stats())
    click.echo(f"Sessions:       {data['total_sessions']}")
    click.echo(f"  nicknamed:    {data['sessions_with_nicknames']}")
    click.echo(f"  tagged:       {data['sessions_with_tags']}")
    click.echo(f"  with project: {data['sessions_with_projects']}")
    click.echo(f"Projects:       {data['total_projects']}")
    click.echo(f"Tags:           {data['total_tags']}")
    for source, count in data["source_sessions"].items():
        synced = data["by_source"].get(source, 0)
        click.echo(f"{source}: {synced} synced / {count} in source")


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the HTTP API."""
    click.echo(f"Starting chat-context on http://{host}:{port}")
    uvicorn.run("chat_context.server:app", host=host, port=port, reload=False)
