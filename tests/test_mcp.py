"""Unit tests for the MCP tool server handlers.

Handlers are pulled out of the low-level Server registered on the session
manager and invoked directly, without HTTP transport. The conversation
header is supplied by setting the server request context by hand.
"""

import json
from importlib.metadata import version
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio
from mcp.server.lowlevel.server import request_ctx
from mcp.shared.context import RequestContext
from mcp.types import CallToolRequest, CallToolRequestParams, ListToolsRequest

from ideaflow.agent.session import CONVERSATION_HEADER
from ideaflow.api.mcp import create_mcp_server
from ideaflow.tools import build_router


@pytest_asyncio.fixture
async def manager(settings, store):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as http:
        yield create_mcp_server(build_router(settings, store, http))


def _handler(manager, request_type):
    return manager.app.request_handlers[request_type]


async def _call(manager, name: str, arguments: dict, conversation_id: str | None):
    headers = {CONVERSATION_HEADER: conversation_id} if conversation_id else {}
    token = request_ctx.set(
        RequestContext(
            request_id=1,
            meta=None,
            session=None,
            lifespan_context=None,
            request=SimpleNamespace(headers=headers),
        )
    )
    try:
        response = await _handler(manager, CallToolRequest)(
            CallToolRequest(method="tools/call", params=CallToolRequestParams(name=name, arguments=arguments))
        )
    finally:
        request_ctx.reset(token)
    return json.loads(response.root.content[0].text)


class TestMcpServer:
    @pytest.mark.asyncio
    async def test_lists_router_tools(self, manager):
        response = await _handler(manager, ListToolsRequest)(ListToolsRequest(method="tools/list"))
        tools = {t.name: t for t in response.root.tools}

        assert "propose_note" in tools
        assert "firecrawl_search" in tools
        assert tools["read_file"].inputSchema["required"] == ["file_path"]

    @pytest.mark.asyncio
    async def test_call_runs_tool_for_conversation(self, manager, store, idea):
        result = await _call(manager, "update_synthesis", {"content": "Start local"}, idea.id)

        assert result["success"] is True
        assert (await store.require_idea(idea.id)).synthesis == "Start local"

    @pytest.mark.asyncio
    async def test_tool_failure_returned_as_data(self, manager, idea):
        result = await _call(manager, "read_file", {"file_path": "App.tsx"}, idea.id)
        assert result == {"success": False, "error": "File not found: App.tsx"}

    @pytest.mark.asyncio
    async def test_missing_conversation_header(self, manager):
        result = await _call(manager, "read_notes", {}, None)
        assert result == {"success": False, "error": "Missing conversation id"}


def test_mcp_major_version_matches_server_api():
    # request_ctx and Server.list_tools are the 1.x low-level API
    assert version("mcp").split(".")[0] == "1"
