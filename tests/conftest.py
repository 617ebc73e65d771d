"""Test fixtures: in-memory SQLite record store and a scripted agent runtime."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
import pytest_asyncio

from ideaflow.config import Settings
from ideaflow.storage.database import Database
from ideaflow.storage.repository import IdeaStore

# ---------------------------------------------------------------------------
# Settings / database fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings for tests: in-memory SQLite, no delays, no project dirs."""
    values: dict[str, Any] = {
        "db_url": "sqlite+aiosqlite:///:memory:",
        "projects_dir": "",
        "error_check_delay": 0.0,
        "retry_backoff_seconds": 0.0,
        "kill_grace_seconds": 0.1,
        "runtime_error_log": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def db(settings):
    """Fresh in-memory database with the schema created."""
    database = Database(settings)
    await database.connect()
    await database.create_schema()
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def store(db) -> IdeaStore:
    return IdeaStore(db)


@pytest_asyncio.fixture
async def idea(store):
    return await store.create_idea("Fish market app")


# ---------------------------------------------------------------------------
# Scripted agent runtime
# ---------------------------------------------------------------------------


class FakeStdin:
    def __init__(self) -> None:
        self.lines: list[dict] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        for raw in data.splitlines():
            if raw.strip():
                self.lines.append(json.loads(raw))

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeStream:
    """Line stream; with hang=True it blocks after the last line until closed."""

    def __init__(self, lines: list[bytes], hang: bool = False) -> None:
        self._lines = list(lines)
        self._hang = hang
        self._closed = asyncio.Event()

    async def readline(self) -> bytes:
        if self._lines:
            await asyncio.sleep(0)
            return self._lines.pop(0)
        if self._hang:
            await self._closed.wait()
        return b""

    def close(self) -> None:
        self._closed.set()


class FakeProcess:
    """Stands in for the runtime subprocess: replays stdout lines, then exits."""

    def __init__(
        self,
        messages: list[dict | str],
        exit_code: int = 0,
        stderr: list[str] | None = None,
        hang: bool = False,
    ) -> None:
        lines = [(m if isinstance(m, str) else json.dumps(m)).encode() + b"\n" for m in messages]
        self.stdin = FakeStdin()
        self.stdout = FakeStream(lines, hang=hang)
        self.stderr = FakeStream([s.encode() + b"\n" for s in (stderr or [])])
        self.returncode: int | None = None
        self.terminated = False
        self._exit_code = exit_code

    async def wait(self) -> int:
        if self.returncode is None:
            self.returncode = self._exit_code
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15
        self.stdout.close()

    def kill(self) -> None:
        self.returncode = -9
        self.stdout.close()


class ScriptedSpawner:
    """Process spawner returning one scripted FakeProcess per runtime start."""

    def __init__(self, *processes: FakeProcess) -> None:
        self.processes = list(processes)
        self.started: list[FakeProcess] = []
        self.commands: list[list[str]] = []
        self.envs: list[dict[str, str]] = []
        self.cwds: list[str | None] = []

    def add(self, process: FakeProcess) -> None:
        self.processes.append(process)

    async def __call__(self, command: list[str], env: dict[str, str], cwd: str | None) -> FakeProcess:
        if not self.processes:
            raise AssertionError(f"Unexpected runtime start: {command}")
        proc = self.processes.pop(0)
        self.started.append(proc)
        self.commands.append(command)
        self.envs.append(env)
        self.cwds.append(cwd)
        return proc

    def prompts(self, index: int) -> list[dict]:
        """The stream-JSON input lines written to the n-th process."""
        return self.started[index].stdin.lines


def stream_event(event: dict, parent: str | None = None) -> dict:
    return {"type": "stream_event", "event": event, "parent_tool_use_id": parent, "session_id": "ignored"}


def text_round(text: str, session_id: str = "sess-1", stop_reason: str = "end_turn") -> list[dict]:
    """Runtime messages for a round that streams one text block."""
    return [
        {"type": "system", "subtype": "init", "session_id": session_id},
        stream_event({"type": "message_start", "message": {"usage": {"input_tokens": 10}}}),
        stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        stream_event({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}),
        stream_event({"type": "content_block_stop", "index": 0}),
        stream_event({"type": "message_delta", "delta": {"stop_reason": stop_reason}, "usage": {"output_tokens": 5}}),
        stream_event({"type": "message_stop"}),
        {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}, "session_id": session_id},
        {"type": "result", "subtype": "success", "is_error": False, "session_id": session_id},
    ]


def tool_round(
    tool_id: str,
    name: str,
    tool_input: dict,
    session_id: str = "sess-1",
    text: str = "",
    prefix: str = "mcp__fw__",
) -> list[dict]:
    """Runtime messages for a round that ends asking for one tool."""
    messages: list[dict] = [
        {"type": "system", "subtype": "init", "session_id": session_id},
        stream_event({"type": "message_start", "message": {}}),
    ]
    index = 0
    if text:
        messages += [
            stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
            stream_event({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}),
            stream_event({"type": "content_block_stop", "index": 0}),
        ]
        index = 1
    raw_input = json.dumps(tool_input)
    half = len(raw_input) // 2
    messages += [
        stream_event({
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "tool_use", "id": tool_id, "name": prefix + name},
        }),
        stream_event({
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": raw_input[:half]},
        }),
        stream_event({
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": raw_input[half:]},
        }),
        stream_event({"type": "content_block_stop", "index": index}),
        stream_event({"type": "message_delta", "delta": {"stop_reason": "tool_use"}}),
        stream_event({"type": "message_stop"}),
        {"type": "result", "subtype": "success", "is_error": False, "session_id": session_id},
    ]
    return messages


@pytest.fixture
def spawner() -> ScriptedSpawner:
    return ScriptedSpawner()
