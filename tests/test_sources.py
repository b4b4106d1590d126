from __future__ import annotations

import asyncio
import dataclasses
import sys
import textwrap
from collections.abc import AsyncIterator
from typing import Any

import pytest

from appily_agent.errors import AgentSilentError, SessionNotFoundError
from appily_agent.protocol import ClaudeStreamTranslator, GeminiStreamTranslator
from appily_agent.sources import ProcessSource, SdkSource


def python_argv(script: str) -> list[str]:
    return [sys.executable, "-c", textwrap.dedent(script)]


async def collect(source: Any) -> list[dict[str, Any]]:
    return [payload async for payload in source.events()]


def test_process_source_streams_translated_payloads() -> None:
    stderr_lines: list[str] = []
    source = ProcessSource(
        python_argv(
            """
            import json, sys
            print(json.dumps({"type": "system", "subtype": "init", "session_id": "s-1"}))
            print("progress: 50%")
            sys.stdout.write(json.dumps({"type": "result", "subtype": "success"}))
            print("warming up", file=sys.stderr)
            """
        ),
        translator=ClaudeStreamTranslator(),
        silence_timeout=10,
        on_stderr_line=stderr_lines.append,
    )
    payloads = asyncio.run(collect(source))

    assert [payload["type"] for payload in payloads] == ["system", "result"]
    assert source.exit_code == 0
    assert stderr_lines == ["warming up"]


def test_process_source_writes_prompt_to_stdin() -> None:
    source = ProcessSource(
        python_argv(
            """
            import json, sys
            prompt = sys.stdin.read()
            for part in (prompt[:3], prompt[3:]):
                print(json.dumps({"type": "message", "role": "assistant", "content": part, "delta": True}))
            print(json.dumps({"type": "result", "status": "success"}))
            """
        ),
        translator=GeminiStreamTranslator(),
        stdin_text="Say hello",
        silence_timeout=10,
    )
    payloads = asyncio.run(collect(source))

    assert payloads[0]["message"]["content"][0]["text"] == "Say hello"
    assert payloads[1]["type"] == "result"


def test_rejected_resume_raises_session_not_found() -> None:
    source = ProcessSource(
        python_argv(
            """
            import sys
            print("Error: No conversation found with session ID: old", file=sys.stderr)
            sys.exit(1)
            """
        ),
        translator=ClaudeStreamTranslator(),
        resume_session_id="old",
        silence_timeout=10,
    )
    with pytest.raises(SessionNotFoundError) as excinfo:
        asyncio.run(collect(source))
    assert excinfo.value.session_id == "old"
    assert source.exit_code == 1


def test_failure_without_resume_only_sets_exit_code() -> None:
    source = ProcessSource(
        python_argv(
            """
            import sys
            print("No conversation found", file=sys.stderr)
            sys.exit(3)
            """
        ),
        translator=ClaudeStreamTranslator(),
        silence_timeout=10,
    )
    assert asyncio.run(collect(source)) == []
    assert source.exit_code == 3


def test_silent_process_is_killed_by_watchdog() -> None:
    source = ProcessSource(
        python_argv("import time; time.sleep(30)"),
        translator=ClaudeStreamTranslator(),
        silence_timeout=0.5,
    )
    with pytest.raises(AgentSilentError):
        asyncio.run(collect(source))
    assert source._process is not None
    assert source._process.returncode is not None


@dataclasses.dataclass
class SystemMessage:
    subtype: str
    data: dict[str, Any]


@dataclasses.dataclass
class ResultMessage:
    subtype: str
    is_error: bool
    session_id: str


def test_sdk_source_converts_query_messages() -> None:
    seen: dict[str, Any] = {}

    async def query(*, prompt: str, options: Any) -> AsyncIterator[Any]:
        seen["prompt"] = prompt
        seen["options"] = options
        yield SystemMessage(subtype="init", data={"session_id": "s-1"})
        yield ResultMessage(subtype="success", is_error=False, session_id="s-1")

    options = object()
    source = SdkSource("Say hello", cwd="/tmp", query_fn=query, options=options)
    payloads = asyncio.run(collect(source))

    assert [payload["type"] for payload in payloads] == ["system", "result"]
    assert seen == {"prompt": "Say hello", "options": options}
    assert source.exit_code == 0


def test_sdk_source_maps_rejected_resume() -> None:
    async def query(*, prompt: str, options: Any) -> AsyncIterator[Any]:
        raise RuntimeError("Command failed: No conversation found with session ID: old")
        yield

    source = SdkSource(
        "Say hello", cwd="/tmp", resume_session_id="old", query_fn=query, options=object(),
    )
    with pytest.raises(SessionNotFoundError):
        asyncio.run(collect(source))
    assert source.exit_code == 1


def test_sdk_source_watchdog() -> None:
    async def query(*, prompt: str, options: Any) -> AsyncIterator[Any]:
        await asyncio.sleep(30)
        yield SystemMessage(subtype="init", data={})

    source = SdkSource(
        "Say hello", cwd="/tmp", query_fn=query, options=object(), silence_timeout=0.2,
    )
    with pytest.raises(AgentSilentError):
        asyncio.run(collect(source))
