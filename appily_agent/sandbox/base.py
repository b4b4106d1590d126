"""Sandbox Protocol, the interface the execution controller talks to.

A sandbox is a disposable remote Linux environment holding the user's
in-progress source tree and the agent process working on it. The controller
uses run() to execute commands and write_file()/read_file() to move files;
tearing a sandbox down is left to the web app. The production implementation
is E2B (sandbox/e2b/); tests use in-memory fakes that satisfy the same
Protocol.

Also defines CommandResult and SandboxConfig.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from pydantic import BaseModel


@dataclasses.dataclass(frozen=True, slots=True)
class CommandResult:
    """Result of running a command inside a sandbox."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int = 0


class SandboxConfig(BaseModel):
    """Everything a sandbox backend needs to create or reconnect."""

    timeout: int = 3600
    template: str | None = None
    api_key: str | None = None
    sandbox_id: str | None = None


@runtime_checkable
class Sandbox(Protocol):
    """Abstraction over a remote sandbox environment."""

    @property
    def sandbox_id(self) -> str:
        """Provider-assigned id, returned to callers in the AgentHandle."""
        ...

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
        """Execute a shell command inside the sandbox."""
        ...

    async def write_file(
        self,
        path: str,
        content: str,
        *,
        ensure_dir: bool = True,
        log_upload: bool = False,
    ) -> None:
        """Write a text file inside the sandbox."""
        ...

    async def read_file(self, path: str) -> str:
        """Read a text file from the sandbox."""
        ...
