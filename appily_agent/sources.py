"""Event sources -- one async generator of canonical payloads per turn.

ProcessSource spawns a CLI agent (Claude Code, Gemini CLI), frames its stdout
into NDJSON lines and runs them through the backend's translator. If the
first stdout chunk does not arrive before the silence watchdog fires, the
child is killed and AgentSilentError is raised. A resume that the backend rejects
surfaces as SessionNotFoundError once the child has exited.

SdkSource drives the Claude Agent SDK's ``query()`` and converts each typed
message as it arrives, with the same watchdog on the first message.
"""

from __future__ import annotations

import asyncio
import importlib
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

from appily_agent.config import AGENT_SILENCE_TIMEOUT_SECONDS
from appily_agent.errors import AgentSilentError, SessionNotFoundError
from appily_agent.protocol import (
    NdjsonLineBuffer,
    Payload,
    StreamTranslator,
    parse_ndjson_line,
    sdk_message_to_payload,
)
from appily_agent.session import is_session_not_found
from appily_agent.utils.helpers import tail_text, tprint

print = tprint

READ_CHUNK_BYTES = 64 * 1024
SDK_ALLOWED_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "Bash",
    "Glob",
    "Grep",
    "WebFetch",
    "Skill",
    "TodoWrite",
    "TodoRead",
]

type LineCallback = Callable[[str], None]


class EventSource(Protocol):
    exit_code: int | None

    def events(self) -> AsyncIterator[Payload]:
        ...


class ProcessSource:
    """A spawned CLI agent whose stdout is newline-delimited JSON."""

    def __init__(
        self,
        argv: list[str],
        *,
        translator: StreamTranslator,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        stdin_text: str | None = None,
        resume_session_id: str | None = None,
        silence_timeout: float = AGENT_SILENCE_TIMEOUT_SECONDS,
        on_stderr_line: LineCallback | None = None,
    ) -> None:
        self.argv = argv
        self.translator = translator
        self.cwd = cwd
        self.env = env
        self.stdin_text = stdin_text
        self.resume_session_id = resume_session_id
        self.silence_timeout = silence_timeout
        self.on_stderr_line = on_stderr_line
        self.exit_code: int | None = None
        self.pid: int | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_lines: list[str] = []
        self._diagnostics: list[str] = []

    @property
    def stderr_text(self) -> str:
        return "\n".join(self._stderr_lines)

    def _diagnostic(self, text: str) -> None:
        self._diagnostics.append(text)
        print(f"[agent] {text}")

    async def _read_stderr(self, reader: asyncio.StreamReader) -> None:
        while line := await reader.readline():
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            self._stderr_lines.append(text)
            print(f"[agent][stderr] {text}")
            if self.on_stderr_line is not None:
                self.on_stderr_line(text)

    def _translate_lines(self, lines: list[str]) -> list[Payload]:
        payloads: list[Payload] = []
        for line in lines:
            obj = parse_ndjson_line(line, on_diagnostic=self._diagnostic)
            if obj is not None:
                payloads.extend(self.translator.translate(obj))
        return payloads

    async def events(self) -> AsyncIterator[Payload]:
        print(f"[agent] spawning {self.argv[0]} (cwd={self.cwd})")
        process = await asyncio.create_subprocess_exec(
            *self.argv,
            cwd=self.cwd,
            env=self.env,
            stdin=(
                asyncio.subprocess.PIPE
                if self.stdin_text is not None
                else asyncio.subprocess.DEVNULL
            ),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._process = process
        self.pid = process.pid
        assert process.stdout is not None
        assert process.stderr is not None
        stderr_task = asyncio.create_task(self._read_stderr(process.stderr))
        try:
            if self.stdin_text is not None and process.stdin is not None:
                process.stdin.write(self.stdin_text.encode())
                await process.stdin.drain()
                process.stdin.close()

            buffer = NdjsonLineBuffer()
            first_chunk = True
            while True:
                if first_chunk:
                    try:
                        chunk = await asyncio.wait_for(
                            process.stdout.read(READ_CHUNK_BYTES),
                            timeout=self.silence_timeout,
                        )
                    except TimeoutError:
                        print(
                            f"[agent] no output after {self.silence_timeout:g}s, "
                            "killing agent"
                        )
                        process.kill()
                        raise AgentSilentError(self.silence_timeout) from None
                    first_chunk = False
                else:
                    chunk = await process.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                for payload in self._translate_lines(buffer.feed(chunk)):
                    yield payload

            for payload in self._translate_lines(buffer.flush()):
                yield payload
            for payload in self.translator.finish():
                yield payload

            self.exit_code = await process.wait()
            await stderr_task
            print(f"[agent] exited with code {self.exit_code}")
            if self.exit_code != 0 and self.resume_session_id:
                failure_text = "\n".join([*self._diagnostics, self.stderr_text])
                if is_session_not_found(failure_text):
                    raise SessionNotFoundError(
                        tail_text(failure_text, 500),
                        session_id=self.resume_session_id,
                    )
        finally:
            if process.returncode is None:
                await self.terminate()
            if not stderr_task.done():
                stderr_task.cancel()

    async def terminate(self, grace_seconds: float = 5.0) -> None:
        """Forward SIGTERM to the child, then SIGKILL if it lingers."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=grace_seconds)
        except ProcessLookupError:
            return
        except TimeoutError:
            process.kill()
            await process.wait()


def build_sdk_options(
    *,
    cwd: str,
    resume: str | None,
    system_prompt: str | None,
) -> Any:
    try:
        sdk = importlib.import_module("claude_agent_sdk")
    except ImportError as error:
        raise RuntimeError(
            "The claude-sdk backend requires optional dependency "
            "claude-agent-sdk. Install with: pip install appily-agent[sdk]"
        ) from error
    kwargs: dict[str, Any] = {
        "cwd": cwd,
        "permission_mode": "bypassPermissions",
        "allowed_tools": list(SDK_ALLOWED_TOOLS),
        "setting_sources": ["project"],
    }
    if resume:
        kwargs["resume"] = resume
    elif system_prompt:
        kwargs["system_prompt"] = system_prompt
    return sdk.ClaudeAgentOptions(**kwargs)


def default_query_fn() -> Callable[..., AsyncIterator[Any]]:
    return importlib.import_module("claude_agent_sdk").query


class SdkSource:
    """Claude Agent SDK ``query()`` as an event source."""

    def __init__(
        self,
        prompt: str,
        *,
        cwd: str,
        resume_session_id: str | None = None,
        system_prompt: str | None = None,
        query_fn: Callable[..., AsyncIterator[Any]] | None = None,
        options: Any = None,
        silence_timeout: float = AGENT_SILENCE_TIMEOUT_SECONDS,
    ) -> None:
        self.prompt = prompt
        self.cwd = cwd
        self.resume_session_id = resume_session_id
        self.system_prompt = system_prompt
        self._query_fn = query_fn
        self._options = options
        self.silence_timeout = silence_timeout
        self.exit_code: int | None = None

    async def events(self) -> AsyncIterator[Payload]:
        options = self._options or build_sdk_options(
            cwd=self.cwd,
            resume=self.resume_session_id,
            system_prompt=self.system_prompt,
        )
        query_fn = self._query_fn or default_query_fn()
        mode = "resume" if self.resume_session_id else "new session"
        print(f"[agent] starting SDK query ({mode})")
        messages = aiter(query_fn(prompt=self.prompt, options=options))
        first_message = True
        try:
            while True:
                try:
                    if first_message:
                        message = await asyncio.wait_for(
                            anext(messages), timeout=self.silence_timeout,
                        )
                        first_message = False
                    else:
                        message = await anext(messages)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    self.exit_code = 1
                    raise AgentSilentError(self.silence_timeout) from None
                payload = sdk_message_to_payload(message)
                if payload is not None:
                    yield payload
        except AgentSilentError:
            raise
        except Exception as error:
            self.exit_code = 1
            if self.resume_session_id and is_session_not_found(str(error)):
                raise SessionNotFoundError(
                    str(error), session_id=self.resume_session_id,
                ) from error
            raise
        self.exit_code = 0
