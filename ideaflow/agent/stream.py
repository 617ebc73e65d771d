"""Normalized stream events emitted to exchange consumers.

Each event kind is its own frozen dataclass (the payload). The
StreamEvent wrapper carries the payload plus the optional scope_id that
attributes the event to a nested sub-agent task. Root agent events have
scope_id None.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Literal, Union


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


# --- Block lifecycle ---


@dataclass(frozen=True)
class ThinkingStart:
    type: ClassVar[str] = "thinking_start"


@dataclass(frozen=True)
class Thinking:
    type: ClassVar[str] = "thinking"
    content: str


@dataclass(frozen=True)
class ThinkingDone:
    type: ClassVar[str] = "thinking_done"
    signature: str | None = None


@dataclass(frozen=True)
class Text:
    type: ClassVar[str] = "text"
    content: str


@dataclass(frozen=True)
class ToolStart:
    type: ClassVar[str] = "tool_start"
    tool_id: str
    tool_name: str


@dataclass(frozen=True)
class ToolInputDelta:
    """Cumulative partial JSON for a tool_use block (not just the fragment)."""

    type: ClassVar[str] = "tool_input_delta"
    tool_id: str
    tool_name: str
    partial_json: str


@dataclass(frozen=True)
class ToolUse:
    type: ClassVar[str] = "tool_use"
    tool_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    type: ClassVar[str] = "tool_result"
    tool_id: str
    success: bool
    data: Any = None
    error: str | None = None
    tool_name: str | None = None


@dataclass(frozen=True)
class RoundComplete:
    type: ClassVar[str] = "round_complete"


@dataclass(frozen=True)
class Done:
    type: ClassVar[str] = "done"
    stop_reason: str
    usage: TokenUsage | None = None


# --- Runtime status ---


@dataclass(frozen=True)
class ToolProgress:
    type: ClassVar[str] = "tool_progress"
    tool_id: str
    tool_name: str
    elapsed_seconds: float


@dataclass(frozen=True)
class SubagentDone:
    type: ClassVar[str] = "subagent_done"
    tool_id: str
    summary: str = ""


@dataclass(frozen=True)
class CompactStatus:
    type: ClassVar[str] = "compact_status"
    compacting: bool


@dataclass(frozen=True)
class CompactBoundary:
    type: ClassVar[str] = "compact_boundary"
    trigger: Literal["manual", "auto"] = "auto"
    pre_tokens: int = 0


@dataclass(frozen=True)
class RoundRetry:
    """The runtime crashed mid-round and the round is being replayed.

    Consumers that aggregate round state must discard what they have so far.
    """

    type: ClassVar[str] = "round_retry"
    attempt: int
    reason: str = ""


# --- Tool side-effect notifications ---


@dataclass(frozen=True)
class NoteProposal:
    type: ClassVar[str] = "note_proposal"
    tool_id: str
    proposal: dict[str, Any]


@dataclass(frozen=True)
class WebSearch:
    type: ClassVar[str] = "web_search"
    tool_id: str
    query: str


@dataclass(frozen=True)
class WebSearchResult:
    type: ClassVar[str] = "web_search_result"
    tool_id: str
    results: list[dict[str, Any]] = field(default_factory=list)


# --- Exchange lifecycle ---


@dataclass(frozen=True)
class ExchangeStarted:
    type: ClassVar[str] = "exchange_started"
    conversation_id: str


@dataclass(frozen=True)
class ExchangeEnded:
    type: ClassVar[str] = "exchange_ended"
    conversation_id: str
    outcome: Literal["done", "aborted"] = "done"


EventPayload = Union[
    ThinkingStart,
    Thinking,
    ThinkingDone,
    Text,
    ToolStart,
    ToolInputDelta,
    ToolUse,
    ToolResult,
    RoundComplete,
    Done,
    ToolProgress,
    SubagentDone,
    CompactStatus,
    CompactBoundary,
    RoundRetry,
    NoteProposal,
    WebSearch,
    WebSearchResult,
    ExchangeStarted,
    ExchangeEnded,
]


@dataclass(frozen=True)
class StreamEvent:
    """A normalized event plus the scope (sub-agent) it belongs to."""

    payload: EventPayload
    scope_id: str | None = None

    @property
    def type(self) -> str:
        return self.payload.type

    @property
    def is_root(self) -> bool:
        return self.scope_id is None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.payload.type, **asdict(self.payload)}
        if self.scope_id is not None:
            data["scope_id"] = self.scope_id
        return data
