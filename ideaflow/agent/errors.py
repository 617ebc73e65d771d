"""Exception taxonomy for the agent core.

Only UpstreamAPIError and AgentProcessError are meant to reach the
caller of an exchange. Malformed stream data and tool failures are
degraded in place and never raise.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for agent core failures."""


class AgentProcessError(AgentError):
    """The agent runtime subprocess exited abnormally."""

    def __init__(self, message: str, exit_code: int | None = None, stderr_tail: list[str] | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail or []


class TransientProcessError(AgentProcessError):
    """The runtime exited with the known transient crash status. Retryable."""


class UpstreamAPIError(AgentError):
    """The provider rejected the request (quota, auth, rate limit, overload).

    The message is the provider's own text so callers can show something
    actionable. Never retried.
    """

    def __init__(self, message: str, error_type: str | None = None) -> None:
        super().__init__(message)
        self.error_type = error_type


class HistoryError(AgentError, ValueError):
    """A conversation turn violates the replay pairing rules."""
