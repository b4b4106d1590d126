"""Shared setup helpers for agent provisioning.

run_backend_install() makes sure the driver's Python dependencies and the
selected backend runtime exist in the sandbox. Every step checks for an
existing install first, and a failed install is only a warning: most sandbox
templates already ship what the agent needs.
"""

from __future__ import annotations

import builtins

from appily_agent.agents.base import BackendSpec
from appily_agent.config import AGENT_INSTALL_TIMEOUT_SECONDS, REMOTE_ROOT
from appily_agent.sandbox.base import CommandResult, Sandbox
from appily_agent.utils.logging import log_event

INSTALL_SCRIPT = """\
set -uo pipefail
status=0

if ! python3 -c "import httpx, pydantic, boto3, dotenv" 2>/dev/null; then
    echo "[setup] installing driver dependencies"
    pip3 install --break-system-packages httpx pydantic boto3 python-dotenv \
        2>&1 | tail -1 || status=1
fi

echo "[setup] checking __PROVIDER__ runtime"
{ __BACKEND_INSTALL__ ; } 2>&1 | tail -3 || status=1

exit $status
"""


def build_install_script(spec: BackendSpec) -> str:
    return (
        INSTALL_SCRIPT
        .replace("__PROVIDER__", spec.provider)
        .replace("__BACKEND_INSTALL__", spec.install_snippet)
    )


async def run_backend_install(
    sandbox: Sandbox,
    spec: BackendSpec,
) -> CommandResult:
    """Install the backend runtime; never raises on a failed install."""
    script_path = f"{REMOTE_ROOT}/install_{spec.provider}.sh"
    await sandbox.write_file(
        script_path,
        build_install_script(spec),
        ensure_dir=False,
    )

    async def handle_line(line: str) -> None:
        stripped = line.strip()
        if stripped and stripped.startswith("[setup]"):
            builtins.print(stripped, flush=True)

    result = await sandbox.run(
        f"bash {script_path}",
        timeout=AGENT_INSTALL_TIMEOUT_SECONDS,
        on_stdout_line=handle_line,
        on_stderr_line=handle_line,
    )
    if result.exit_code != 0:
        builtins.print(
            f"[setup] warning: {spec.provider} install exited "
            f"{result.exit_code}, continuing",
            flush=True,
        )
        log_event(
            component="setup",
            event="install.warning",
            level="warning",
            message="backend install failed, continuing",
            provider=spec.provider,
            exit_code=result.exit_code,
            stderr=result.stderr[-500:],
        )
    return result
