"""Agentic loop controller -- drives one exchange to completion.

An exchange is an outer loop of error-fix passes, each an inner loop of
tool rounds:

    pass 0: round 1 -> tools -> round 2 -> ... -> no tool calls
            -> wait for preview errors -> none: done
                                       -> some: pass 1 with a fix request
    ...
    pass N == max_error_fix_rounds: done without checking

Every event from the runtime is forwarded to the caller as it arrives.
Abort is checked before each round, while streaming, after each round,
before tools and during the error-check wait; it ends the exchange
quietly with outcome "aborted".
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ideaflow.agent.cancellation import AbortToken, CancellationRegistry
from ideaflow.agent.errors import AgentProcessError, UpstreamAPIError
from ideaflow.agent.history import ConversationTurn, HistoryBuilder, RoundResult, ToolResultEntry
from ideaflow.agent.session import RunRequest, SessionRegistry, SessionRunner
from ideaflow.agent.stream import ExchangeEnded, ExchangeStarted, StreamEvent, ToolResult, ToolUse
from ideaflow.config import Settings
from ideaflow.events import (
    EXCHANGE_ABORTED,
    EXCHANGE_COMPLETED,
    EXCHANGE_FAILED,
    EXCHANGE_STARTED,
    EventBus,
)

if TYPE_CHECKING:
    from ideaflow.agent.session import ToolServerHandle
    from ideaflow.feedback import RuntimeErrorFeed
    from ideaflow.storage.snapshots import SnapshotService
    from ideaflow.tools.router import ToolRouter

logger = logging.getLogger(__name__)

PromptBuilderFn = Callable[[str], Awaitable[str]]


@dataclass
class _ExchangeState:
    conversation_id: str
    token: AbortToken
    base_messages: list[dict[str, Any]]
    system_prompt: str = ""
    error_fix_round: int = 0
    rounds: int = 0
    tools_used: set[str] = field(default_factory=set)

    @property
    def aborted(self) -> bool:
        return self.token.aborted


class AgenticLoopController:
    """Runs exchanges for many conversations; one active exchange per conversation."""

    def __init__(
        self,
        runner: SessionRunner,
        router: ToolRouter,
        sessions: SessionRegistry,
        cancellations: CancellationRegistry,
        settings: Settings,
        error_feed: RuntimeErrorFeed | None = None,
        snapshots: SnapshotService | None = None,
        bus: EventBus | None = None,
        prompt_builder: PromptBuilderFn | None = None,
        tool_server: ToolServerHandle | None = None,
    ) -> None:
        self._runner = runner
        self._router = router
        self._sessions = sessions
        self._cancellations = cancellations
        self._settings = settings
        self._error_feed = error_feed
        self._snapshots = snapshots
        self._bus = bus
        self._prompt_builder = prompt_builder
        self._tool_server = tool_server

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_exchange(
        self,
        conversation_id: str,
        user_message: str,
        history: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one exchange. Ends with an exchange_ended event.

        Raises UpstreamAPIError or AgentProcessError after cleanup when the
        runtime cannot complete the exchange.
        """
        token = self._cancellations.begin(conversation_id)
        state = _ExchangeState(
            conversation_id=conversation_id,
            token=token,
            base_messages=[*(history or []), {"role": "user", "content": user_message}],
        )

        logger.info("Exchange started for %s", conversation_id)
        await self._publish(EXCHANGE_STARTED, conversation_id, {"message_length": len(user_message)})
        yield StreamEvent(ExchangeStarted(conversation_id=conversation_id))

        try:
            if self._prompt_builder is not None:
                state.system_prompt = await self._prompt_builder(conversation_id)

            while True:
                async for item in self._run_pass(state):
                    yield item
                if state.aborted:
                    break
                fix_message = await self._check_runtime_errors(state)
                if fix_message is None:
                    break
                state.base_messages = [*state.base_messages, {"role": "user", "content": fix_message}]
                state.error_fix_round += 1

        except (UpstreamAPIError, AgentProcessError) as e:
            if isinstance(e, AgentProcessError):
                await self._sessions.invalidate(conversation_id)
            logger.error("Exchange failed for %s: %s", conversation_id, e)
            await self._publish(EXCHANGE_FAILED, conversation_id, {"error": str(e), "kind": type(e).__name__})
            raise
        finally:
            self._cancellations.finish(conversation_id, token)
            self._sessions.detach(conversation_id)

        if state.aborted:
            logger.info("Exchange aborted for %s after %d rounds", conversation_id, state.rounds)
            await self._publish(EXCHANGE_ABORTED, conversation_id, {"rounds": state.rounds})
            yield StreamEvent(ExchangeEnded(conversation_id=conversation_id, outcome="aborted"))
            return

        await self._take_snapshot(state)
        logger.info(
            "Exchange completed for %s: rounds=%d fix_rounds=%d tools=%s",
            conversation_id,
            state.rounds,
            state.error_fix_round,
            sorted(state.tools_used),
        )
        await self._publish(
            EXCHANGE_COMPLETED,
            conversation_id,
            {"rounds": state.rounds, "error_fix_rounds": state.error_fix_round, "tools": sorted(state.tools_used)},
        )
        yield StreamEvent(ExchangeEnded(conversation_id=conversation_id, outcome="done"))

    def abort_exchange(self, conversation_id: str) -> bool:
        """Signal the active exchange to stop. Returns False if none is running."""
        return self._cancellations.abort(conversation_id)

    # ------------------------------------------------------------------
    # One pass: tool rounds until the agent stops asking for tools
    # ------------------------------------------------------------------

    async def _run_pass(self, state: _ExchangeState) -> AsyncIterator[StreamEvent]:
        history = HistoryBuilder()
        max_rounds = self._settings.max_tool_rounds

        for round_number in range(1, max_rounds + 1):
            if state.aborted:
                logger.info("Aborted before round %d", round_number)
                return

            result = RoundResult()
            async for item in self._stream_round(state, history):
                result.collect(item)
                yield item
                for notification in self._track_runtime_tool(state, result, item):
                    yield notification
            state.rounds += 1

            if state.aborted:
                logger.info("Aborted after round %d", round_number)
                return

            logger.info(
                "Round %d done: stop=%s tools=%d pending=%d text=%d thinking=%d signed=%s",
                round_number,
                result.stop_reason,
                len(result.tool_calls),
                len(result.pending_calls()),
                len(result.text_accumulated),
                len(result.thinking_accumulated),
                bool(result.thinking_signature),
            )

            if not result.wants_tools:
                return

            if state.aborted:
                return

            tool_results: list[ToolResultEntry] = []
            for call in result.tool_calls:
                if call.id in result.answered:
                    tool_results.append(_answered_entry(result.answered[call.id]))
                    continue
                async with aclosing(self._router.run(state.conversation_id, call)) as notifications:
                    async for item in notifications:
                        if isinstance(item.payload, ToolResult):
                            tool_results.append(_result_entry(item.payload))
                        yield item

            history.append(ConversationTurn(assistant_content=result.assistant_content(), tool_results=tool_results))

        logger.warning("Tool loop reached max_tool_rounds=%d for %s", max_rounds, state.conversation_id)

    def _track_runtime_tool(self, state: _ExchangeState, result: RoundResult, item: StreamEvent) -> list[StreamEvent]:
        """Record root tool calls and surface side effects of calls the runtime ran itself."""
        if not item.is_root:
            return []
        payload = item.payload
        if isinstance(payload, ToolUse):
            state.tools_used.add(payload.tool_name)
        elif isinstance(payload, ToolResult):
            for call in result.tool_calls:
                if call.id == payload.tool_id:
                    return self._router.answered_notifications(call, payload)
        return []

    async def _stream_round(self, state: _ExchangeState, history: HistoryBuilder) -> AsyncIterator[StreamEvent]:
        session = await self._sessions.get(state.conversation_id)
        prompt: str | list[dict[str, Any]]
        if len(history) == 0 and len(state.base_messages) == 1:
            prompt = state.base_messages[0]["content"]
        else:
            prompt = history.render(state.base_messages)

        request = RunRequest(
            prompt=prompt,
            system_prompt_append=state.system_prompt,
            session_id=session.session_id,
            tool_server=self._tool_server.for_conversation(state.conversation_id) if self._tool_server else None,
            working_directory=self._working_directory(state.conversation_id),
            model=self._settings.model,
        )

        async def remember(session_id: str) -> None:
            await self._sessions.set_session_id(state.conversation_id, session_id)

        async with aclosing(self._runner.run(request, state.token, on_session_id=remember, session=session)) as stream:
            async for item in stream:
                yield item
                if state.aborted:
                    return

    # ------------------------------------------------------------------
    # Error-fix check
    # ------------------------------------------------------------------

    async def _check_runtime_errors(self, state: _ExchangeState) -> str | None:
        """Return a fix request for the agent, or None when the exchange is done."""
        if self._error_feed is None or state.aborted:
            return None

        if state.error_fix_round >= self._settings.max_error_fix_rounds:
            logger.warning(
                "Max error-fix rounds (%d) reached for %s, not checking for more errors",
                self._settings.max_error_fix_rounds,
                state.conversation_id,
            )
            return None

        if await state.token.sleep(self._settings.error_check_delay):
            logger.info("Aborted during error-check wait")
            return None

        if not self._error_feed.has_errors(state.conversation_id):
            return None

        message = self._error_feed.format_for_agent(state.conversation_id)
        self._error_feed.clear_errors(state.conversation_id)
        if message:
            logger.info(
                "Runtime errors reported for %s, starting fix round %d",
                state.conversation_id,
                state.error_fix_round + 1,
            )
        return message

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _take_snapshot(self, state: _ExchangeState) -> None:
        if self._snapshots is None:
            return
        try:
            snapshot_id = await self._snapshots.create_snapshot(state.conversation_id, sorted(state.tools_used))
            logger.debug("Snapshot %s taken for %s", snapshot_id, state.conversation_id)
        except Exception:
            logger.exception("Snapshot failed for %s", state.conversation_id)

    async def _publish(self, event_type: str, conversation_id: str, data: dict[str, Any]) -> None:
        if self._bus is None:
            return
        await self._bus.publish(event_type, conversation_id, **data)

    def _working_directory(self, conversation_id: str) -> str | None:
        if not self._settings.projects_dir:
            return None
        path = Path(self._settings.projects_dir) / conversation_id
        path.mkdir(parents=True, exist_ok=True)
        return str(path)


def _result_entry(result: ToolResult) -> ToolResultEntry:
    if result.success:
        content = json.dumps({"success": True, "data": result.data}, default=str)
    else:
        content = json.dumps({"success": False, "error": result.error}, default=str)
    return ToolResultEntry(tool_use_id=result.tool_id, content=content, is_error=not result.success)


def _answered_entry(result: ToolResult) -> ToolResultEntry:
    """Replay a result the runtime already received from the tool server."""
    if result.success:
        content = result.data if isinstance(result.data, str) else json.dumps(result.data, default=str)
    else:
        content = result.error or "Tool failed"
    return ToolResultEntry(tool_use_id=result.tool_id, content=content, is_error=not result.success)
