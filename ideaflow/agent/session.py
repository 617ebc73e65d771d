"""Session runner -- drives the agent runtime subprocess for one round.

Spawns the runtime CLI in stream-JSON mode, feeds it the prompt (plain
text or the full rendered history), and yields normalized StreamEvents
while the round streams.

Crash handling:
- Exit status 1 is the known transient crash. Retried (bounded) with a
  fixed backoff and a fresh session, since resuming a session that just
  crashed tends to crash again.
- Upstream provider errors (credit, auth, rate limit, overload) are
  detected in the diagnostic channel (stderr tail + result message) and
  raised as UpstreamAPIError without retry.
- Abort is not an error: the process is stopped and iteration ends.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from ideaflow.agent.cancellation import AbortToken
from ideaflow.agent.errors import AgentProcessError, TransientProcessError, UpstreamAPIError
from ideaflow.agent.normalizer import EventNormalizer
from ideaflow.agent.stream import RoundRetry, StreamEvent
from ideaflow.config import Settings

logger = logging.getLogger(__name__)

# Inherited variables that crash the runtime (debugger/instrumentation
# hooks injected by editors and desktop shells), or make it refuse to
# start as a nested session.
ENV_VARS_TO_STRIP = (
    "NODE_OPTIONS",
    "VSCODE_INSPECTOR_OPTIONS",
    "ELECTRON_RUN_AS_NODE",
    "ELECTRON_NO_ASAR",
    "NODE_DEBUG",
    "CLAUDECODE",
)

# Markers of provider-side failures, mapped to the provider error type
UPSTREAM_ERROR_MARKERS: dict[str, str] = {
    "credit balance is too low": "billing_error",
    "invalid_request_error": "invalid_request_error",
    "authentication_error": "authentication_error",
    "rate_limit_error": "rate_limit_error",
    "overloaded_error": "overloaded_error",
}

_JSON_MESSAGE_RE = re.compile(r'"message"\s*:\s*"((?:[^"\\]|\\.)+)"')

# asyncio's default 64 KiB line limit is too small for large tool inputs
_STDOUT_LIMIT = 16 * 1024 * 1024

# Identifies the conversation on tool server requests
CONVERSATION_HEADER = "X-Ideaflow-Conversation"


def clean_environment(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy of the environment without the deny-listed variables."""
    source = os.environ if environ is None else environ
    return {k: v for k, v in source.items() if k not in ENV_VARS_TO_STRIP}


def find_upstream_error(lines: list[str]) -> tuple[str, str] | None:
    """Return (message, error_type) for the last recognizable provider error."""
    for line in reversed(lines):
        lowered = line.lower()
        for marker, error_type in UPSTREAM_ERROR_MARKERS.items():
            if marker in lowered:
                match = _JSON_MESSAGE_RE.search(line)
                message = match.group(1) if match else line.strip()
                return message, error_type
    return None


# ---------------------------------------------------------------------------
# Request / handles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolServerHandle:
    """How the runtime reaches the host's tool server over HTTP.

    Tool names reach the stream as mcp__<name>__<tool>; the normalizer
    strips that prefix back off. The conversation header tells the
    server which idea a tool call acts on.
    """

    name: str
    url: str
    tool_names: tuple[str, ...] = ()
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def prefix(self) -> str:
        return f"mcp__{self.name}__"

    def for_conversation(self, conversation_id: str) -> ToolServerHandle:
        return replace(self, headers={**self.headers, CONVERSATION_HEADER: conversation_id})

    def mcp_config(self) -> dict[str, Any]:
        server: dict[str, Any] = {"type": "http", "url": self.url}
        if self.headers:
            server["headers"] = dict(self.headers)
        return {"mcpServers": {self.name: server}}

    def allowed_tools(self) -> list[str]:
        return [f"{self.prefix}{name}" for name in self.tool_names]


@dataclass
class RunRequest:
    """One round for the runtime.

    prompt is either a plain user message or a rendered message list
    ([{"role": ..., "content": ...}, ...]).
    """

    prompt: str | list[dict[str, Any]]
    system_prompt_append: str = ""
    session_id: str | None = None
    tool_server: ToolServerHandle | None = None
    working_directory: str | None = None
    model: str | None = None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore(Protocol):
    """Persistence boundary for resumable session ids."""

    async def get_session_id(self, conversation_id: str) -> str | None: ...

    async def set_session_id(self, conversation_id: str, session_id: str | None) -> None: ...


@dataclass
class Session:
    """Resumable runtime session of one conversation."""

    conversation_id: str
    session_id: str | None = None
    live_handle: Any | None = None  # the attached subprocess, while one runs

    @property
    def is_live(self) -> bool:
        return self.live_handle is not None


class SessionRegistry:
    """Owns the Session of each conversation. Passed into the controller."""

    def __init__(self, store: SessionStore | None = None) -> None:
        self._store = store
        self._sessions: dict[str, Session] = {}

    async def get(self, conversation_id: str) -> Session:
        """Get the session, loading the persisted id on first use."""
        session = self._sessions.get(conversation_id)
        if session is None:
            session_id = None
            if self._store is not None:
                session_id = await self._store.get_session_id(conversation_id)
            session = Session(conversation_id=conversation_id, session_id=session_id)
            self._sessions[conversation_id] = session
        return session

    async def set_session_id(self, conversation_id: str, session_id: str) -> None:
        session = await self.get(conversation_id)
        if session.session_id == session_id:
            return
        session.session_id = session_id
        if self._store is not None:
            await self._store.set_session_id(conversation_id, session_id)
        logger.info("Session id saved for %s: %s", conversation_id, session_id)

    async def invalidate(self, conversation_id: str) -> None:
        """Forget the session so the next message starts fresh."""
        session = await self.get(conversation_id)
        session.session_id = None
        if self._store is not None:
            await self._store.set_session_id(conversation_id, None)
        logger.info("Session invalidated for %s", conversation_id)

    def detach(self, conversation_id: str) -> None:
        session = self._sessions.get(conversation_id)
        if session is not None:
            session.live_handle = None


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


ProcessSpawner = Callable[[list[str], dict[str, str], str | None], Awaitable[Any]]


async def spawn_process(command: list[str], env: dict[str, str], cwd: str | None) -> asyncio.subprocess.Process:
    """Start the runtime with piped stdio."""
    return await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
        cwd=cwd,
        limit=_STDOUT_LIMIT,
    )


class SessionRunner:
    """Runs rounds through the agent runtime subprocess."""

    def __init__(self, settings: Settings, spawner: ProcessSpawner | None = None) -> None:
        self._settings = settings
        self._spawn = spawner or spawn_process

    def build_command(self, request: RunRequest, session_id: str | None) -> list[str]:
        settings = self._settings
        command = [
            settings.agent_cli_path,
            "--print",
            "--verbose",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--include-partial-messages",
            "--permission-mode", "bypassPermissions",
            "--model", request.model or settings.model,
        ]
        if settings.runtime_max_turns:
            command += ["--max-turns", str(settings.runtime_max_turns)]
        if request.system_prompt_append:
            command += ["--append-system-prompt", request.system_prompt_append]
        if request.tool_server is not None:
            command += ["--mcp-config", json.dumps(request.tool_server.mcp_config())]
            allowed = request.tool_server.allowed_tools()
            if allowed:
                command += ["--allowedTools", ",".join(allowed)]
        if session_id:
            command += ["--resume", session_id]
        return command

    def build_environment(self) -> dict[str, str]:
        env = clean_environment()
        env["CLAUDE_CODE_DISABLE_BACKGROUND_TASKS"] = "1"
        if self._settings.anthropic_api_key and "ANTHROPIC_API_KEY" not in env:
            env["ANTHROPIC_API_KEY"] = self._settings.anthropic_api_key
        return env

    async def run(
        self,
        request: RunRequest,
        abort: AbortToken,
        on_session_id: Callable[[str], Awaitable[None] | None] | None = None,
        session: Session | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one round, retrying the transient crash.

        The session id of the attempt that did not crash is reported
        through on_session_id exactly once.
        """
        settings = self._settings
        session_id = request.session_id
        max_retries = settings.max_transient_retries

        for attempt in range(max_retries + 1):
            if abort.aborted:
                return

            observed: list[str] = []
            try:
                async with aclosing(self._attempt(request, session_id, abort, observed, session)) as stream:
                    async for item in stream:
                        yield item
            except TransientProcessError as e:
                if abort.aborted:
                    return
                if attempt >= max_retries:
                    logger.error(
                        "Runtime crashed (exit %s) %d times, giving up",
                        e.exit_code,
                        attempt + 1,
                    )
                    raise
                logger.warning(
                    "Runtime crashed (exit %s), retrying with a fresh session (%d/%d)",
                    e.exit_code,
                    attempt + 1,
                    max_retries,
                )
                yield StreamEvent(RoundRetry(attempt=attempt + 1, reason=str(e)))
                if await abort.sleep(settings.retry_backoff_seconds):
                    return
                session_id = None
                continue

            if observed and on_session_id is not None:
                outcome = on_session_id(observed[0])
                if asyncio.iscoroutine(outcome):
                    await outcome
            return

    async def _attempt(
        self,
        request: RunRequest,
        session_id: str | None,
        abort: AbortToken,
        observed: list[str],
        session: Session | None,
    ) -> AsyncIterator[StreamEvent]:
        settings = self._settings
        command = self.build_command(request, session_id)
        logger.info(
            "Starting runtime query (resume=%s, prompt=%s, cwd=%s)",
            session_id or "none",
            _describe_prompt(request.prompt),
            request.working_directory or "none",
        )

        proc = await self._spawn(command, self.build_environment(), request.working_directory)
        if session is not None:
            session.live_handle = proc

        stderr_tail: deque[str] = deque(maxlen=settings.stderr_tail_lines)
        stderr_task = asyncio.create_task(_drain_stderr(proc, stderr_tail))
        abort_task = asyncio.create_task(abort.wait())
        tool_prefix = request.tool_server.prefix if request.tool_server else ""
        normalizer = EventNormalizer(tool_prefix=tool_prefix)
        result_message: dict[str, Any] | None = None
        exit_code: int | None = None

        try:
            await _write_prompt(proc, request.prompt)

            while True:
                read_task = asyncio.ensure_future(proc.stdout.readline())
                done, _ = await asyncio.wait({read_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
                if abort_task in done:
                    read_task.cancel()
                    logger.info("Runtime query aborted")
                    return
                line = read_task.result()
                if not line:
                    break

                message = _decode_line(line)
                if message is None:
                    continue

                sid = message.get("session_id")
                if sid and not observed:
                    observed.append(sid)
                    logger.info("Session initialized: %s", sid)
                if message.get("type") == "result":
                    result_message = message

                for item in normalizer.feed(message):
                    yield item

            exit_code = await proc.wait()
            try:
                await asyncio.wait_for(asyncio.shield(stderr_task), timeout=1.0)
            except asyncio.TimeoutError:
                pass
        finally:
            abort_task.cancel()
            stderr_task.cancel()
            await self._stop(proc)
            if session is not None:
                session.live_handle = None

        self._raise_for_exit(exit_code, list(stderr_tail), result_message)

    def _raise_for_exit(
        self,
        exit_code: int | None,
        stderr_tail: list[str],
        result_message: dict[str, Any] | None,
    ) -> None:
        result_failed = bool(result_message and result_message.get("is_error"))
        if exit_code == 0 and not result_failed:
            return

        diagnostics = list(stderr_tail)
        if result_message and result_failed:
            diagnostics.append(str(result_message.get("result") or ""))
            diagnostics.extend(str(e) for e in result_message.get("errors") or [])

        upstream = find_upstream_error(diagnostics)
        if upstream is not None:
            message, error_type = upstream
            logger.error("Upstream API error from runtime: %s", message)
            raise UpstreamAPIError(message, error_type=error_type)

        if exit_code == 0:
            # is_error without a recognizable provider failure; the done
            # event already carries the result subtype
            logger.warning("Runtime reported an error result: %s", (result_message or {}).get("subtype"))
            return

        if exit_code == self._settings.transient_exit_code:
            raise TransientProcessError(
                f"Agent runtime process exited with code {exit_code}",
                exit_code=exit_code,
                stderr_tail=stderr_tail,
            )
        raise AgentProcessError(
            f"Agent runtime process exited with code {exit_code}",
            exit_code=exit_code,
            stderr_tail=stderr_tail,
        )

    async def _stop(self, proc: Any) -> None:
        """Terminate the process if it is still running."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._settings.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Runtime did not exit after terminate, killing it")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _write_prompt(proc: Any, prompt: str | list[dict[str, Any]]) -> None:
    """Write the prompt as stream-JSON input lines and close stdin."""
    if isinstance(prompt, str):
        messages = [{"role": "user", "content": prompt}]
    else:
        messages = prompt

    try:
        for msg in messages:
            line = json.dumps({"type": msg["role"], "message": msg})
            proc.stdin.write(line.encode() + b"\n")
        await proc.stdin.drain()
        proc.stdin.close()
    except (BrokenPipeError, ConnectionResetError) as e:
        # The exit status read later tells us what happened
        logger.warning("Runtime closed stdin early: %s", e)


def _decode_line(line: bytes) -> dict[str, Any] | None:
    text = line.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Skipping non-JSON runtime output: %s", text[:200])
        return None
    if not isinstance(message, dict):
        return None
    return message


async def _drain_stderr(proc: Any, tail: deque[str]) -> None:
    if proc.stderr is None:
        return
    while True:
        line = await proc.stderr.readline()
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            tail.append(text)
            logger.debug("runtime stderr: %s", text)


def _describe_prompt(prompt: str | list[dict[str, Any]]) -> str:
    if isinstance(prompt, str):
        return f"{len(prompt)} chars"
    return f"{len(prompt)} messages"
