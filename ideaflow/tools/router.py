"""Tool router -- registers tool handlers and executes agent tool calls.

A handler is an async callable (conversation_id, validated_input) -> data.
Handlers report failures by raising; the router turns every exception
into a structured failure so nothing escapes to the agentic loop.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from ideaflow.agent.history import ToolUseBlock
from ideaflow.agent.session import ToolServerHandle
from ideaflow.agent.stream import NoteProposal, StreamEvent, ToolResult, WebSearch, WebSearchResult
from ideaflow.config import Settings

logger = logging.getLogger(__name__)

ToolHandler = Callable[[str, Any], Awaitable[Any]]


class ToolError(Exception):
    """Expected tool failure; the message goes back to the agent as-is."""


@dataclass(frozen=True)
class ToolOutcome:
    success: bool
    data: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}

    @classmethod
    def from_text(cls, text: Any) -> ToolOutcome:
        """Parse the text the tool server sent back for a call."""
        if not isinstance(text, str):
            return cls(success=True, data=text)
        try:
            parsed = json.loads(text)
        except ValueError:
            return cls(success=True, data=text)
        if isinstance(parsed, dict) and isinstance(parsed.get("success"), bool):
            return cls(success=parsed["success"], data=parsed.get("data"), error=parsed.get("error"))
        return cls(success=True, data=parsed)


@dataclass(frozen=True)
class _Registration:
    handler: ToolHandler
    input_model: type[BaseModel]
    description: str


class ToolRouter:
    """Registers tool handlers and dispatches tool calls by name."""

    def __init__(self) -> None:
        self._tools: dict[str, _Registration] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        input_model: type[BaseModel],
        description: str = "",
    ) -> None:
        """Register a handler with the pydantic model describing its input."""
        self._tools[name] = _Registration(handler, input_model, description or (input_model.__doc__ or "").strip())

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    async def execute(self, conversation_id: str, tool_name: str, tool_input: dict[str, Any]) -> ToolOutcome:
        """Run one tool call. Never raises."""
        registration = self._tools.get(tool_name)
        if registration is None:
            logger.warning("Unknown tool requested: %s", tool_name)
            return ToolOutcome(success=False, error=f"Unknown tool: {tool_name}")

        try:
            args = registration.input_model.model_validate(tool_input or {})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
            )
            return ToolOutcome(success=False, error=f"Invalid input for {tool_name}: {problems}")

        try:
            data = await registration.handler(conversation_id, args)
        except (ToolError, LookupError, ValueError) as e:
            logger.info("Tool %s failed: %s", tool_name, e)
            return ToolOutcome(success=False, error=str(e))
        except Exception as e:
            logger.exception("Tool execution error for %s", tool_name)
            return ToolOutcome(success=False, error=f"Tool error: {e}")

        return ToolOutcome(success=True, data=data)

    async def run(self, conversation_id: str, call: ToolUseBlock) -> AsyncIterator[StreamEvent]:
        """Execute a call and yield its notifications, then the tool_result event."""
        if call.name == "firecrawl_search":
            yield StreamEvent(WebSearch(tool_id=call.id, query=str(call.input.get("query", ""))))

        logger.info("Executing tool %s (%s)", call.name, call.id)
        outcome = await self.execute(conversation_id, call.name, call.input)

        for item in _result_notifications(call, outcome):
            yield item

        yield StreamEvent(
            ToolResult(
                tool_id=call.id,
                success=outcome.success,
                data=outcome.data,
                error=outcome.error,
                tool_name=call.name,
            )
        )

    def answered_notifications(self, call: ToolUseBlock, result: ToolResult) -> list[StreamEvent]:
        """Notifications for a call the runtime already ran through the tool server."""
        events: list[StreamEvent] = []
        if call.name == "firecrawl_search":
            events.append(StreamEvent(WebSearch(tool_id=call.id, query=str(call.input.get("query", "")))))
        if result.success:
            events.extend(_result_notifications(call, ToolOutcome.from_text(result.data)))
        return events

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in provider format."""
        definitions = []
        for name, registration in self._tools.items():
            schema = registration.input_model.model_json_schema()
            schema.pop("title", None)
            schema.pop("description", None)
            schema.setdefault("properties", {})
            definitions.append({
                "name": name,
                "description": registration.description,
                "input_schema": schema,
            })
        return definitions

    def server_handle(self, settings: Settings) -> ToolServerHandle:
        """Describe how the agent runtime reaches these tools."""
        return ToolServerHandle(
            name=settings.tool_server_name,
            url=settings.tool_server_url,
            tool_names=tuple(self._tools),
        )


def _result_notifications(call: ToolUseBlock, outcome: ToolOutcome) -> list[StreamEvent]:
    if not outcome.success or not isinstance(outcome.data, dict):
        return []
    if call.name == "firecrawl_search":
        return [StreamEvent(WebSearchResult(tool_id=call.id, results=list(outcome.data.get("results", []))))]
    if call.name == "propose_note" and outcome.data.get("type") == "note_proposal":
        return [StreamEvent(NoteProposal(tool_id=call.id, proposal=outcome.data["proposal"]))]
    return []
