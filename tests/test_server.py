"""Tests for the FastAPI server."""

from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chat_context.api import ChatContext
from chat_context.server import app


@pytest.fixture(autouse=True)
def reset_context_cache():
    """Reset the context cache before each test."""
    import chat_context.server as srv
    srv._context = None
    yield
    srv._context = None


@pytest_asyncio.fixture
async def context(settings):
    ctx = ChatContext(settings)
    yield ctx
    await ctx.close()


@pytest_asyncio.fixture
async def client(context):
    with patch("chat_context.server._context", context):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.mark.asyncio
async def test_get_sources(client):
    resp = await client.get("/api/sources")
    assert resp.status_code == 200
    assert resp.json() == ["cursor", "claude"]


@pytest.mark.asyncio
async def test_get_sessions(client):
    resp = await client.get("/api/sessions")
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 3
    for session in data["sessions"]:
        assert "session_id" in session
        assert "nickname" in session
        assert "source" in session


@pytest.mark.asyncio
async def test_get_sessions_filtered(client):
    resp = await client.get("/api/sessions", params={"source": "claude", "sort": "oldest"})
    assert resp.status_code == 200
    ids = [s["session_id"] for s in resp.json()["sessions"]]
    assert ids == ["claude:sess-bbb", "claude:sess-aaa"]


@pytest.mark.asyncio
async def test_get_session_detail(client):
    resp = await client.get("/api/session/auth-work")
    assert resp.status_code == 200
    data = resp.json()
    assert data["metadata"]["session_id"] == "cursor:comp-001"
    assert data["metadata"]["project_name"] == "my-app"
    assert len(data["messages"]) == 4
    assert data["messages"][2]["tool"]["workspace_path"] == "/Users/me/projects/my-app"


@pytest.mark.asyncio
async def test_get_session_without_tools(client):
    resp = await client.get("/api/session/comp-001", params={"exclude_tools": "true", "max_length": 3})
    assert resp.status_code == 200
    messages = resp.json()["messages"]
    assert all(m["tool"] is None for m in messages)
    assert messages[1]["content"] == "Let..."


@pytest.mark.asyncio
async def test_session_not_found(client):
    resp = await client.get("/api/session/nonexistent")
    assert resp.status_code == 404
    error = resp.json()["error"]
    assert error["type"] == "SessionNotFound"
    assert "nonexistent" in error["message"]


@pytest.mark.asyncio
async def test_ambiguous_prefix(client):
    resp = await client.get("/api/session/sess-")
    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "AmbiguousIdentifier"


@pytest.mark.asyncio
async def test_invalid_arguments(client):
    resp = await client.get("/api/sessions", params={"sort": "sideways"})
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "InvalidArgument"

    resp = await client.get("/api/sessions", params={"source": "vim"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_search(client):
    resp = await client.get("/api/search", params={"q": "pagination"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 1
    assert data["sessions"][0]["session_id"] == "claude:sess-aaa"


@pytest.mark.asyncio
async def test_nickname_routes(client):
    resp = await client.put("/api/nickname/sess-aaa", json={"nickname": "pagination"})
    assert resp.status_code == 200
    assert resp.json()["nickname"] == "pagination"

    resp = await client.put("/api/nickname/sess-bbb", json={"nickname": "pagination"})
    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "NicknameConflict"

    resp = await client.delete("/api/nickname/pagination")
    assert resp.status_code == 200
    assert resp.json()["nickname"] is None

    resp = await client.put("/api/nickname/sess-bbb", json={"nickname": "  "})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_tag_routes(client):
    resp = await client.post("/api/tag/sess-bbb", json={"tag": "math"})
    assert resp.status_code == 200
    assert resp.json()["tags"] == ["math"]

    resp = await client.get("/api/tags")
    assert resp.json() == [{"tag": "math", "count": 1}]

    resp = await client.delete("/api/tag/sess-bbb/math")
    assert resp.status_code == 200
    assert resp.json()["tags"] == []


@pytest.mark.asyncio
async def test_sync(client):
    resp = await client.post("/api/sync", json={"source": "claude"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["synced"] == 2
    assert data["empty"] == 1
    assert data["by_source"] == {"claude": 2}


@pytest.mark.asyncio
async def test_projects_and_stats(client):
    resp = await client.get("/api/projects")
    assert resp.status_code == 200
    assert {p["name"] for p in resp.json()} == {"my-app", "api", "other"}

    resp = await client.get("/api/stats")
    data = resp.json()
    assert data["total_sessions"] == 3
    assert data["source_sessions"] == {"cursor": 3, "claude": 3}
    assert data["last_sync"] is not None


@pytest.mark.asyncio
async def test_call_operation(client):
    resp = await client.post("/api/call/list_sessions", json={"limit": 1, "source": "cursor"})
    assert resp.status_code == 200
    assert [s["session_id"] for s in resp.json()["result"]] == ["cursor:comp-001"]

    resp = await client.post("/api/call/get_session", json={"identifier": "auth-work", "include_messages": False})
    assert resp.json()["result"]["messages"] == []

    resp = await client.post("/api/call/add_tag", json={"identifier": "comp-001", "tag": "bug"})
    assert resp.json()["result"]["tags"] == ["bug"]

    resp = await client.post("/api/call/get_stats")
    assert resp.json()["result"]["sessions_with_tags"] == 1


@pytest.mark.asyncio
async def test_call_operation_errors(client):
    resp = await client.post("/api/call/drop_tables", json={})
    assert resp.status_code == 404
    assert resp.json()["error"]["type"] == "UnknownOperation"

    resp = await client.post("/api/call/add_tag", json={"identifier": "comp-001"})
    assert resp.status_code == 400
    assert "tag" in resp.json()["error"]["message"]

    resp = await client.post("/api/call/list_tags", json={"verbose": True})
    assert resp.status_code == 400

    resp = await client.post("/api/call/get_session", json={"identifier": "nope"})
    assert resp.status_code == 404
