"""MCP tool server -- exposes the tool router to the agent runtime.

The runtime connects over Streamable HTTP at /mcp on the same Starlette
app. Every request carries the conversation header, so one server
serves all ideas.

Uses mcp library's Server + StreamableHTTPSessionManager.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server import Server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from mcp.types import TextContent, Tool

from ideaflow.agent.session import CONVERSATION_HEADER
from ideaflow.tools.router import ToolRouter

logger = logging.getLogger(__name__)


def create_mcp_server(router: ToolRouter, name: str = "fw") -> StreamableHTTPSessionManager:
    """Create the MCP server for the router's tools.

    Returns StreamableHTTPSessionManager to be mounted on Starlette.
    The caller must enter ``manager.run()`` before serving requests.
    """
    server = Server(name)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=d["name"], description=d["description"], inputSchema=d["input_schema"])
            for d in router.tool_definitions()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        conversation_id = _conversation_id(server)
        if not conversation_id:
            return [TextContent(type="text", text=json.dumps({"success": False, "error": "Missing conversation id"}))]

        logger.info("MCP tool call %s for %s", name, conversation_id)
        outcome = await router.execute(conversation_id, name, arguments)
        return [TextContent(type="text", text=json.dumps(outcome.to_dict(), default=str))]

    return StreamableHTTPSessionManager(app=server, stateless=True)


def _conversation_id(server: Server) -> str | None:
    try:
        request = server.request_context.request
    except LookupError:
        # called outside an HTTP request
        return None
    if request is None:
        return None
    return request.headers.get(CONVERSATION_HEADER)
