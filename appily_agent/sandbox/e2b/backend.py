"""E2B sandbox backend -- runs commands in an E2B cloud sandbox.

Implements Sandbox using E2B's Code Interpreter API. The web app creates one
sandbox per project (Expo template with Metro running under tmux); the
controller normally reconnects to it by id rather than creating a new one.
"""

from __future__ import annotations

import builtins
import importlib
import os
import time
from collections.abc import Awaitable, Callable
from typing import Any

from appily_agent.sandbox.base import CommandResult, SandboxConfig


def load_async_sandbox_class() -> Any:
    try:
        e2b_module = importlib.import_module(
            "e2b_code_interpreter",
        )
    except ImportError as error:
        raise RuntimeError(
            "E2B backend requires optional dependency "
            "e2b-code-interpreter. "
            "Install with: pip install appily-agent[e2b]"
        ) from error
    async_sandbox = getattr(
        e2b_module, "AsyncSandbox", None,
    )
    if async_sandbox is None:
        raise RuntimeError(
            "e2b_code_interpreter does not export "
            "AsyncSandbox"
        )
    return async_sandbox


def resolve_api_key(config: SandboxConfig) -> str | None:
    return config.api_key or os.environ.get("E2B_API_KEY") or None


class E2BSandbox:
    """Sandbox implementation backed by E2B.

    Requires ``e2b-code-interpreter`` (install via
    ``pip install appily-agent[e2b]``).
    """

    def __init__(self, inner: Any) -> None:
        self._inner = inner

    @property
    def sandbox_id(self) -> str:
        return self._inner.sandbox_id

    @staticmethod
    async def create(config: SandboxConfig) -> E2BSandbox:
        """Create a new E2B sandbox from a pre-built template.

        Reads ``config.template`` (falls back to ``E2B_TEMPLATE`` env var
        when set).
        """
        async_sandbox = load_async_sandbox_class()
        resolved_template = config.template or os.environ.get("E2B_TEMPLATE")
        kwargs: dict[str, Any] = {"timeout": config.timeout}
        if resolved_template:
            kwargs["template"] = resolved_template
        api_key = resolve_api_key(config)
        if api_key:
            kwargs["api_key"] = api_key
        inner = await async_sandbox.create(**kwargs)
        template_label = resolved_template or "<provider-default>"
        builtins.print(
            f"[e2b] sandbox created: "
            f"id={inner.sandbox_id} "
            f"template={template_label}"
        )
        return E2BSandbox(inner)

    @staticmethod
    async def connect(config: SandboxConfig) -> E2BSandbox:
        """Reconnect to the running sandbox named by ``config.sandbox_id``."""
        if not config.sandbox_id:
            raise ValueError("SandboxConfig.sandbox_id is required to connect")
        async_sandbox = load_async_sandbox_class()
        kwargs: dict[str, Any] = {}
        api_key = resolve_api_key(config)
        if api_key:
            kwargs["api_key"] = api_key
        inner = await async_sandbox.connect(config.sandbox_id, **kwargs)
        builtins.print(f"[e2b] sandbox connected: id={config.sandbox_id}")
        return E2BSandbox(inner)

    async def run(
        self,
        cmd: str,
        *,
        timeout: int = 60,
        quiet: bool = False,
        on_stdout_line: Callable[[str], Awaitable[None]] | None = None,
        on_stderr_line: Callable[[str], Awaitable[None]] | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Execute a shell command inside the E2B sandbox.

        Environment variables and the working directory are passed through
        E2B's native ``envs``/``cwd`` options so large values (prompts) never
        end up on a shell command line.
        """
        if not quiet:
            builtins.print(f"[run] {cmd[:200]}")

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        line_buffers = {"stdout": "", "stderr": ""}

        async def emit_chunk(
            chunk: str,
            *,
            stream: str,
            sink: list[str],
            line_callback: Callable[[str], Awaitable[None]] | None,
        ) -> None:
            if not chunk:
                return
            sink.append(chunk)
            if line_callback is None:
                return
            line_buffers[stream] += chunk
            while "\n" in line_buffers[stream]:
                line, line_buffers[stream] = line_buffers[stream].split("\n", 1)
                await line_callback(line.rstrip("\r"))

        async def handle_stdout_chunk(chunk: str) -> None:
            await emit_chunk(
                chunk,
                stream="stdout",
                sink=stdout_chunks,
                line_callback=on_stdout_line,
            )

        async def handle_stderr_chunk(chunk: str) -> None:
            await emit_chunk(
                chunk,
                stream="stderr",
                sink=stderr_chunks,
                line_callback=on_stderr_line,
            )

        kwargs: dict[str, Any] = {}
        if env:
            kwargs["envs"] = dict(env)
        if cwd:
            kwargs["cwd"] = cwd

        t0 = time.monotonic()
        result: Any
        try:
            result = await self._inner.commands.run(
                cmd,
                timeout=timeout,
                user="root",
                on_stdout=handle_stdout_chunk,
                on_stderr=handle_stderr_chunk,
                **kwargs,
            )
        except Exception as error:
            # e2b raises CommandExitException on non-zero command exits.
            if (
                hasattr(error, "exit_code")
                and hasattr(error, "stdout")
                and hasattr(error, "stderr")
            ):
                result = error
            else:
                raise

        if on_stdout_line is not None and line_buffers["stdout"]:
            await on_stdout_line(line_buffers["stdout"].rstrip("\r"))
        if on_stderr_line is not None and line_buffers["stderr"]:
            await on_stderr_line(line_buffers["stderr"].rstrip("\r"))

        stdout = getattr(result, "stdout", "") or "".join(stdout_chunks)
        stderr = getattr(result, "stderr", "") or "".join(stderr_chunks)
        exit_code_raw = getattr(result, "exit_code", None)
        exit_code = exit_code_raw if isinstance(exit_code_raw, int) else 0

        duration_ms = int((time.monotonic() - t0) * 1000)

        if exit_code != 0:
            builtins.print(f"[run] FAILED exit={exit_code} cmd={cmd[:100]}")
            if stderr:
                builtins.print(f"[run] stderr: {stderr[:500]}")
        return CommandResult(
            exit_code=exit_code, stdout=stdout, stderr=stderr, duration_ms=duration_ms,
        )

    async def write_file(
        self,
        path: str,
        content: str,
        *,
        ensure_dir: bool = True,
        log_upload: bool = False,
    ) -> None:
        """Write a text file inside the E2B sandbox.

        E2B creates parent directories automatically.
        """
        if log_upload:
            builtins.print(f"[setup][upload] {path}")
        await self._inner.files.write(path, content)

    async def read_file(self, path: str) -> str:
        """Read a text file from the E2B sandbox."""
        return await self._inner.files.read(path)
