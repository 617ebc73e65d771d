"""Tests for SessionRunner against a scripted runtime subprocess.

No real CLI is started: ScriptedSpawner hands out FakeProcess objects
that replay canned stream-JSON lines and exit codes.
"""

from __future__ import annotations

import json

import pytest

from ideaflow.agent.cancellation import AbortToken
from ideaflow.agent.errors import AgentProcessError, TransientProcessError, UpstreamAPIError
from ideaflow.agent.session import (
    CONVERSATION_HEADER,
    RunRequest,
    Session,
    SessionRegistry,
    SessionRunner,
    ToolServerHandle,
    clean_environment,
    find_upstream_error,
)
from ideaflow.agent.stream import Done, RoundRetry, Text, ToolStart, ToolUse
from tests.conftest import FakeProcess, ScriptedSpawner, make_settings, stream_event, text_round, tool_round


async def _drain(runner, request, token=None, **kwargs):
    token = token or AbortToken("c1")
    return [e async for e in runner.run(request, token, **kwargs)]


def _session_ids():
    seen: list[str] = []

    async def record(session_id: str) -> None:
        seen.append(session_id)

    return seen, record


class TestRun:
    @pytest.mark.asyncio
    async def test_streams_events_and_reports_session_once(self, settings):
        spawner = ScriptedSpawner(FakeProcess(text_round("Hello there", session_id="sess-1")))
        runner = SessionRunner(settings, spawner=spawner)
        seen, record = _session_ids()

        events = await _drain(runner, RunRequest(prompt="hello"), on_session_id=record)

        payloads = [e.payload for e in events]
        assert Text(content="Hello there") in payloads
        assert isinstance(payloads[-1], Done)
        assert payloads[-1].stop_reason == "end_turn"
        assert seen == ["sess-1"]
        assert spawner.prompts(0) == [{"type": "user", "message": {"role": "user", "content": "hello"}}]
        assert spawner.started[0].stdin.closed

    @pytest.mark.asyncio
    async def test_rendered_history_written_line_per_message(self, settings):
        spawner = ScriptedSpawner(FakeProcess(text_round("ok")))
        runner = SessionRunner(settings, spawner=spawner)
        prompt = [
            {"role": "user", "content": "save a note"},
            {"role": "assistant", "content": [{"type": "tool_use", "id": "tu_1", "name": "propose_note", "input": {}}]},
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "{}"}]},
        ]

        await _drain(runner, RunRequest(prompt=prompt))

        assert [line["type"] for line in spawner.prompts(0)] == ["user", "assistant", "user"]
        assert spawner.prompts(0)[1]["message"] == prompt[1]

    @pytest.mark.asyncio
    async def test_tool_names_stripped_of_server_prefix(self, settings):
        spawner = ScriptedSpawner(FakeProcess(tool_round("tu_1", "list_files", {})))
        runner = SessionRunner(settings, spawner=spawner)
        handle = ToolServerHandle(name="fw", url="http://127.0.0.1:8000/mcp/", tool_names=("list_files",))

        events = await _drain(runner, RunRequest(prompt="files?", tool_server=handle))

        payloads = [e.payload for e in events]
        assert ToolStart(tool_id="tu_1", tool_name="list_files") in payloads
        assert ToolUse(tool_id="tu_1", tool_name="list_files", input={}) in payloads
        assert payloads[-1] == Done(stop_reason="tool_use", usage=None)

    @pytest.mark.asyncio
    async def test_session_live_handle_set_while_running(self, settings):
        session = Session(conversation_id="c1")
        spawner = ScriptedSpawner(FakeProcess(text_round("ok")))
        runner = SessionRunner(settings, spawner=spawner)

        live_states = []
        async for _ in runner.run(RunRequest(prompt="x"), AbortToken("c1"), session=session):
            live_states.append(session.is_live)

        assert all(live_states)
        assert not session.is_live

    @pytest.mark.asyncio
    async def test_non_json_lines_skipped(self, settings):
        messages = ["not json at all", *text_round("fine")]
        spawner = ScriptedSpawner(FakeProcess(messages))
        runner = SessionRunner(settings, spawner=spawner)

        events = await _drain(runner, RunRequest(prompt="x"))

        assert Text(content="fine") in [e.payload for e in events]


class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_crash_retried_with_fresh_session(self, settings):
        crashed = FakeProcess(
            [{"type": "system", "subtype": "init", "session_id": "sess-bad"}, stream_event({"type": "message_start"})],
            exit_code=1,
        )
        spawner = ScriptedSpawner(crashed, FakeProcess(text_round("recovered", session_id="sess-good")))
        runner = SessionRunner(settings, spawner=spawner)
        seen, record = _session_ids()

        events = await _drain(runner, RunRequest(prompt="x", session_id="sess-old"), on_session_id=record)

        payloads = [e.payload for e in events]
        assert RoundRetry(attempt=1, reason="Agent runtime process exited with code 1") in payloads
        assert Text(content="recovered") in payloads
        assert seen == ["sess-good"]
        assert "--resume" in spawner.commands[0]
        assert "sess-old" in spawner.commands[0]
        assert "--resume" not in spawner.commands[1]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, settings):
        spawner = ScriptedSpawner(*(FakeProcess([], exit_code=1) for _ in range(3)))
        runner = SessionRunner(settings, spawner=spawner)
        seen, record = _session_ids()

        with pytest.raises(TransientProcessError):
            await _drain(runner, RunRequest(prompt="x"), on_session_id=record)

        assert len(spawner.started) == 3
        assert seen == []

    @pytest.mark.asyncio
    async def test_other_exit_codes_not_retried(self, settings):
        spawner = ScriptedSpawner(FakeProcess([], exit_code=2, stderr=["segfault"]))
        runner = SessionRunner(settings, spawner=spawner)

        with pytest.raises(AgentProcessError) as exc_info:
            await _drain(runner, RunRequest(prompt="x"))

        assert not isinstance(exc_info.value, TransientProcessError)
        assert exc_info.value.exit_code == 2
        assert exc_info.value.stderr_tail == ["segfault"]


class TestUpstreamErrors:
    @pytest.mark.asyncio
    async def test_upstream_error_in_stderr_not_retried(self, settings):
        stderr = [
            "API Error: 429",
            '{"type":"error","error":{"type":"rate_limit_error","message":"Number of requests exceeded"}}',
        ]
        spawner = ScriptedSpawner(FakeProcess([], exit_code=1, stderr=stderr))
        runner = SessionRunner(settings, spawner=spawner)

        with pytest.raises(UpstreamAPIError) as exc_info:
            await _drain(runner, RunRequest(prompt="x"))

        assert str(exc_info.value) == "Number of requests exceeded"
        assert exc_info.value.error_type == "rate_limit_error"
        assert len(spawner.started) == 1

    @pytest.mark.asyncio
    async def test_upstream_error_in_result_message(self, settings):
        messages = [
            {"type": "system", "subtype": "init", "session_id": "s"},
            {
                "type": "result",
                "subtype": "success",
                "is_error": True,
                "result": "Credit balance is too low",
                "session_id": "s",
            },
        ]
        spawner = ScriptedSpawner(FakeProcess(messages, exit_code=0))
        runner = SessionRunner(settings, spawner=spawner)
        seen, record = _session_ids()

        with pytest.raises(UpstreamAPIError) as exc_info:
            await _drain(runner, RunRequest(prompt="x"), on_session_id=record)

        assert exc_info.value.error_type == "billing_error"
        assert seen == []

    @pytest.mark.asyncio
    async def test_markers_ignored_on_clean_exit(self, settings):
        spawner = ScriptedSpawner(FakeProcess(text_round("ok"), stderr=["warning: overloaded_error seen earlier"]))
        runner = SessionRunner(settings, spawner=spawner)

        events = await _drain(runner, RunRequest(prompt="x"))

        assert isinstance(events[-1].payload, Done)


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_stops_process_and_ends_quietly(self, settings):
        partial = [
            {"type": "system", "subtype": "init", "session_id": "s"},
            stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}),
            stream_event({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}}),
        ]
        proc = FakeProcess(partial, hang=True)
        spawner = ScriptedSpawner(proc)
        runner = SessionRunner(settings, spawner=spawner)
        token = AbortToken("c1")

        received = []
        async for item in runner.run(RunRequest(prompt="x"), token):
            received.append(item.payload)
            if item.payload == Text(content="Hi"):
                token.abort()

        assert received == [Text(content="Hi")]
        assert proc.terminated
        assert len(spawner.started) == 1

    @pytest.mark.asyncio
    async def test_already_aborted_never_spawns(self, settings):
        spawner = ScriptedSpawner()
        runner = SessionRunner(settings, spawner=spawner)
        token = AbortToken("c1")
        token.abort()

        assert await _drain(runner, RunRequest(prompt="x"), token) == []
        assert spawner.started == []


class TestCommand:
    def test_command_flags(self):
        settings = make_settings(agent_cli_path="/opt/bin/claude", model="claude-test", runtime_max_turns=5)
        runner = SessionRunner(settings)
        handle = ToolServerHandle(
            name="fw",
            url="http://127.0.0.1:8000/mcp/",
            tool_names=("propose_note", "read_file"),
        ).for_conversation("idea-1")
        request = RunRequest(prompt="x", system_prompt_append="## Idea", tool_server=handle)

        command = runner.build_command(request, "sess-9")

        assert command[0] == "/opt/bin/claude"
        assert command[command.index("--input-format") + 1] == "stream-json"
        assert command[command.index("--output-format") + 1] == "stream-json"
        assert command[command.index("--model") + 1] == "claude-test"
        assert command[command.index("--max-turns") + 1] == "5"
        assert command[command.index("--append-system-prompt") + 1] == "## Idea"
        assert command[command.index("--resume") + 1] == "sess-9"
        assert command[command.index("--allowedTools") + 1] == "mcp__fw__propose_note,mcp__fw__read_file"
        config = json.loads(command[command.index("--mcp-config") + 1])
        assert config == {
            "mcpServers": {
                "fw": {
                    "type": "http",
                    "url": "http://127.0.0.1:8000/mcp/",
                    "headers": {CONVERSATION_HEADER: "idea-1"},
                }
            }
        }

    def test_command_without_optional_flags(self, settings):
        command = SessionRunner(settings).build_command(RunRequest(prompt="x"), None)
        assert "--resume" not in command
        assert "--mcp-config" not in command
        assert "--max-turns" not in command

    def test_environment_sanitized(self, settings, monkeypatch):
        monkeypatch.setenv("NODE_OPTIONS", "--inspect")
        monkeypatch.setenv("CLAUDECODE", "1")
        monkeypatch.setenv("KEEP_ME", "yes")

        env = SessionRunner(settings).build_environment()

        assert "NODE_OPTIONS" not in env
        assert "CLAUDECODE" not in env
        assert env["KEEP_ME"] == "yes"
        assert env["CLAUDE_CODE_DISABLE_BACKGROUND_TASKS"] == "1"


def test_clean_environment_uses_deny_list():
    env = clean_environment({"ELECTRON_RUN_AS_NODE": "1", "PATH": "/bin", "NODE_DEBUG": "x"})
    assert env == {"PATH": "/bin"}


def test_find_upstream_error_prefers_latest_line():
    lines = [
        '{"error":{"type":"overloaded_error","message":"Overloaded"}}',
        '{"error":{"type":"authentication_error","message":"invalid x-api-key"}}',
    ]
    assert find_upstream_error(lines) == ("invalid x-api-key", "authentication_error")
    assert find_upstream_error(["plain failure"]) is None


class TestSessionRegistry:
    @pytest.mark.asyncio
    async def test_loads_persists_and_invalidates(self, store, idea):
        await store.set_session_id(idea.id, "sess-stored")
        registry = SessionRegistry(store)

        session = await registry.get(idea.id)
        assert session.session_id == "sess-stored"

        await registry.set_session_id(idea.id, "sess-new")
        assert await store.get_session_id(idea.id) == "sess-new"

        await registry.invalidate(idea.id)
        assert (await registry.get(idea.id)).session_id is None
        assert await store.get_session_id(idea.id) is None

    @pytest.mark.asyncio
    async def test_detach_clears_live_handle(self):
        registry = SessionRegistry()
        session = await registry.get("c1")
        session.live_handle = object()
        registry.detach("c1")
        assert not session.is_live
