"""Runtime error feed from the live preview.

Errors are held per conversation until the agentic loop hands them to the
agent in an error-fix round, then cleared.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuntimeErrorReport:
    conversation_id: str
    message: str
    source: str | None = None
    line: int | None = None
    column: int | None = None
    stack: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def location(self) -> str:
        if not self.line:
            return ""
        return f"{self.line}:{self.column}" if self.column else str(self.line)

    def log_line(self) -> str:
        location = f" (line {self.location})" if self.location else ""
        source = f" in {self.source}" if self.source else ""
        stack = f"\n  Stack: {self.stack}" if self.stack else ""
        return f"[{self.timestamp.isoformat()}] [Idea: {self.conversation_id}] {self.message}{source}{location}{stack}"


class RuntimeErrorFeed:
    """Per-conversation store of preview runtime errors."""

    def __init__(self, log_path: str | Path | None = None) -> None:
        self._errors: dict[str, list[RuntimeErrorReport]] = {}
        self._log_path = Path(log_path) if log_path else None

    def report(
        self,
        conversation_id: str,
        message: str,
        source: str | None = None,
        line: int | None = None,
        column: int | None = None,
        stack: str | None = None,
    ) -> RuntimeErrorReport:
        error = RuntimeErrorReport(
            conversation_id=conversation_id,
            message=message,
            source=source,
            line=line,
            column=column,
            stack=stack,
        )
        self._errors.setdefault(conversation_id, []).append(error)
        logger.warning("Preview runtime error: %s", error.log_line())

        if self._log_path is not None:
            try:
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                with self._log_path.open("a", encoding="utf-8") as f:
                    f.write(error.log_line() + "\n")
            except OSError as e:
                logger.error("Failed to write runtime error log %s: %s", self._log_path, e)
        return error

    def errors(self, conversation_id: str) -> list[RuntimeErrorReport]:
        return list(self._errors.get(conversation_id, []))

    def has_errors(self, conversation_id: str) -> bool:
        return bool(self._errors.get(conversation_id))

    def clear_errors(self, conversation_id: str) -> None:
        self._errors.pop(conversation_id, None)
        logger.debug("Cleared runtime errors for %s", conversation_id)

    def format_for_agent(self, conversation_id: str) -> str | None:
        """Build the fix request sent to the agent, or None if there are no errors."""
        errors = self._errors.get(conversation_id)
        if not errors:
            return None

        described = []
        for i, err in enumerate(errors, 1):
            source = f" in {err.source}" if err.source else ""
            location = f" at line {err.location}" if err.location else ""
            described.append(f"{i}. {err.message}{source}{location}")

        return (
            "The code you created has runtime errors in the preview panel. Please fix these errors:\n\n"
            + "\n".join(described)
            + "\n\nReview the code files and fix the issues. Use the read_file and update_file "
            "or modify_file_lines tools to correct the errors."
        )
