"""Agent core -- streaming orchestration of the agent runtime.

Public API: AgenticLoopController, its collaborators and the event types.
"""

from ideaflow.agent.cancellation import AbortToken, CancellationRegistry
from ideaflow.agent.controller import AgenticLoopController
from ideaflow.agent.errors import (
    AgentError,
    AgentProcessError,
    HistoryError,
    TransientProcessError,
    UpstreamAPIError,
)
from ideaflow.agent.history import (
    ConversationTurn,
    HistoryBuilder,
    RoundResult,
    TextBlock,
    ThinkingBlock,
    ToolResultEntry,
    ToolUseBlock,
)
from ideaflow.agent.normalizer import EventNormalizer
from ideaflow.agent.session import (
    RunRequest,
    Session,
    SessionRegistry,
    SessionRunner,
    SessionStore,
    ToolServerHandle,
)
from ideaflow.agent.stream import StreamEvent

__all__ = [
    "AgenticLoopController",
    # Cancellation
    "AbortToken",
    "CancellationRegistry",
    # Errors
    "AgentError",
    "AgentProcessError",
    "HistoryError",
    "TransientProcessError",
    "UpstreamAPIError",
    # History
    "ConversationTurn",
    "HistoryBuilder",
    "RoundResult",
    "TextBlock",
    "ThinkingBlock",
    "ToolResultEntry",
    "ToolUseBlock",
    # Runtime
    "EventNormalizer",
    "RunRequest",
    "Session",
    "SessionRegistry",
    "SessionRunner",
    "SessionStore",
    "StreamEvent",
    "ToolServerHandle",
]
