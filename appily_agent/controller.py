"""Agent execution controller -- launches and stops agent turns in a sandbox.

launch_turn() uploads the appily_agent package into the sandbox, makes sure
the backend runtime is installed, assembles the driver's environment and
starts the driver detached with nohup. It returns as soon as the background
pid has been echoed back; the turn itself runs for minutes and reports
through the event log, not through this call.

stop_turn() sends SIGTERM to a tracked pid. The driver turns that into a
cancelled outcome and forwards the signal to the agent process.

restore_project() writes a stored R2 snapshot back into a recreated sandbox.
"""

from __future__ import annotations

import asyncio
import os
import shlex
from collections.abc import Callable, Mapping
from pathlib import Path, PurePosixPath

from appily_agent.agents.base import BackendSpec, resolve_backend
from appily_agent.agents.setup import run_backend_install
from appily_agent.config import AGENT_LAUNCH_TIMEOUT_SECONDS, REMOTE_LOG_DIR, REMOTE_ROOT
from appily_agent.errors import SandboxSetupError
from appily_agent.models import (
    DEFAULT_WORKING_DIRECTORY,
    AgentHandle,
    RestoreResult,
    TurnRequest,
)
from appily_agent.sandbox.base import Sandbox
from appily_agent.store import ProjectStateStore
from appily_agent.utils import storage
from appily_agent.utils.helpers import tprint, upload_files_parallel
from appily_agent.utils.logging import log_event

print = tprint

PACKAGE_ROOT = Path(__file__).resolve().parent
SYSTEM_PROMPT_PATH = f"{REMOTE_ROOT}/system_prompt.md"
STORE_ENV = ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY")
OBJECT_STORE_ENV = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET_NAME",
    "R2_IMAGES_BUCKET_NAME",
    "R2_IMAGES_PUBLIC_URL",
)
PASSTHROUGH_ENV = ("AGENT_STOP_REASONS", "AGENT_SILENCE_TIMEOUT_SECONDS")


def driver_upload_items() -> list[tuple[str, str]]:
    """(sandbox path, content) for every module of the package."""
    items: list[tuple[str, str]] = []
    for path in sorted(PACKAGE_ROOT.rglob("*.py")):
        if "__pycache__" in path.parts:
            continue
        relative = path.relative_to(PACKAGE_ROOT).as_posix()
        items.append((f"{REMOTE_ROOT}/appily_agent/{relative}", path.read_text()))
    return items


def build_agent_env(
    request: TurnRequest,
    spec: BackendSpec,
    *,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment bundle for the driver process.

    The system instructions never travel in the environment: they are
    uploaded to SYSTEM_PROMPT_PATH and only referenced here. A new session
    gets SYSTEM_PROMPT_FILE; a resumed one gets RECOVERY_SYSTEM_PROMPT_FILE,
    which the driver reads only if the resume is rejected.
    """
    source = os.environ if environ is None else environ
    required = (*STORE_ENV, *spec.credential_env)
    missing = [name for name in required if not source.get(name)]
    if missing:
        raise SandboxSetupError(
            f"Missing credentials for {spec.provider}: {', '.join(missing)}"
        )
    env = {name: source[name] for name in required}
    for name in (*OBJECT_STORE_ENV, *spec.optional_env, *PASSTHROUGH_ENV):
        if source.get(name):
            env[name] = source[name]
    env.update({
        "PROJECT_ID": request.project_id,
        "USER_ID": request.user_id,
        "USER_PROMPT": request.user_prompt,
        "WORKING_DIRECTORY": request.working_directory,
        "PYTHONPATH": REMOTE_ROOT,
        "APPILY_LOG_PATH": f"{REMOTE_LOG_DIR}/appily-{spec.provider}.jsonl",
    })
    if request.session_id:
        env["SESSION_ID"] = request.session_id
        env["RECOVERY_SYSTEM_PROMPT_FILE"] = SYSTEM_PROMPT_PATH
    else:
        env["SYSTEM_PROMPT_FILE"] = SYSTEM_PROMPT_PATH
    return env


def build_launch_command(spec: BackendSpec, log_file: str) -> str:
    return (
        f"nohup python3 -u -m {spec.driver_module} "
        f"> {shlex.quote(log_file)} 2>&1 & echo $!"
    )


def parse_pid(stdout: str) -> int | None:
    for line in reversed(stdout.strip().splitlines()):
        candidate = line.strip()
        if candidate.isdigit():
            return int(candidate)
    return None


async def launch_turn(
    sandbox: Sandbox,
    request: TurnRequest,
    *,
    state: ProjectStateStore,
    environ: Mapping[str, str] | None = None,
) -> AgentHandle:
    """Start one agent turn in the background and return its handle.

    Raises SandboxSetupError when the sandbox cannot be prepared or the
    launch is not confirmed; in that case no process is considered started.
    """
    spec = resolve_backend(request.provider)
    log_file = f"{REMOTE_LOG_DIR}/{spec.log_name}"
    env = build_agent_env(request, spec, environ=environ)
    mode = "resume" if request.session_id else "new session"
    print(
        f"[setup] launching {spec.provider} for project={request.project_id} "
        f"({mode})"
    )

    uploads = driver_upload_items()
    uploads.append((SYSTEM_PROMPT_PATH, request.system_prompt))
    try:
        await upload_files_parallel(sandbox, uploads, log_upload=False)
    except Exception as error:
        raise SandboxSetupError(f"Failed to upload agent driver: {error}") from error

    try:
        await run_backend_install(sandbox, spec)
    except Exception as error:  # noqa: BLE001
        print(f"[setup] warning: install step failed, continuing: {error}")

    command = build_launch_command(spec, log_file)
    try:
        result = await sandbox.run(
            command,
            timeout=AGENT_LAUNCH_TIMEOUT_SECONDS,
            cwd=request.working_directory,
            env=env,
        )
    except Exception as error:
        raise SandboxSetupError(f"Failed to launch agent: {error}") from error
    pid = parse_pid(result.stdout)
    if result.exit_code != 0 or pid is None:
        raise SandboxSetupError(
            f"Agent launch not confirmed (exit {result.exit_code}): "
            f"{(result.stderr or result.stdout)[:300]}"
        )

    try:
        await state.set_running(request.project_id, pid)
    except Exception as error:  # noqa: BLE001
        print(f"[setup] failed to record agent pid {pid}: {error}")
        log_event(
            component="controller",
            event="running.persist_failed",
            level="error",
            message=str(error),
            project_id=request.project_id,
            pid=pid,
        )

    handle = AgentHandle(
        pid=pid,
        sandbox_id=sandbox.sandbox_id,
        script_path=f"{REMOTE_ROOT}/{spec.driver_path}",
        log_file=log_file,
    )
    print(f"[setup] agent started pid={pid} log={log_file}")
    log_event(
        component="controller",
        event="agent.launched",
        message="agent started",
        project_id=request.project_id,
        provider=spec.provider,
        **handle.model_dump(),
    )
    return handle


async def stop_turn(
    sandbox: Sandbox,
    project_id: str,
    pid: int,
    *,
    state: ProjectStateStore,
) -> bool:
    """Send SIGTERM to a running agent. Returns False if it was already gone."""
    result = await sandbox.run(
        f'kill -TERM {int(pid)} 2>/dev/null || echo "Process not found"',
        timeout=5,
        quiet=True,
    )
    signalled = "Process not found" not in result.stdout
    print(
        f"[agent] stop pid={pid} "
        f"{'signalled' if signalled else 'was not running'}"
    )
    try:
        await state.clear_running(project_id)
    except Exception as error:  # noqa: BLE001
        print(f"[agent] failed to clear running marker: {error}")
    return signalled


async def read_agent_log(sandbox: Sandbox, log_file: str, *, lines: int = 50) -> str:
    """Last lines of a driver log, for diagnosing a turn from outside."""
    content = await sandbox.read_file(log_file)
    return "\n".join(content.splitlines()[-lines:])


async def restore_project(
    sandbox: Sandbox,
    r2_path: str,
    *,
    target_dir: str = DEFAULT_WORKING_DIRECTORY,
    bucket: str | None = None,
    list_keys: Callable[[str, str], list[str]] = storage.list_keys,
    download: Callable[[str, str], bytes] = storage.download_bytes,
) -> RestoreResult:
    """Write a stored source snapshot back into a sandbox.

    Used when a sandbox has been recreated and the project tree is gone. Files
    that are not UTF-8 text, or whose key would land outside target_dir, are
    skipped and listed in the result.
    """
    prefix = r2_path if r2_path.endswith("/") else f"{r2_path}/"
    try:
        source_bucket = bucket or storage.get_bucket()
        keys = await asyncio.to_thread(list_keys, source_bucket, prefix)
    except Exception as error:  # noqa: BLE001
        return RestoreResult(success=False, r2_path=prefix, error=str(error))
    if not keys:
        return RestoreResult(
            success=False, r2_path=prefix, error="No files found in snapshot",
        )

    print(f"[r2] restoring {len(keys)} files from {prefix} to {target_dir}")
    uploads: list[tuple[str, str]] = []
    skipped: list[str] = []
    for key in keys:
        relative = PurePosixPath(key[len(prefix):])
        if not relative.parts or relative.is_absolute() or ".." in relative.parts:
            if relative.parts:
                skipped.append(key)
            continue
        try:
            data = await asyncio.to_thread(download, source_bucket, key)
            content = data.decode("utf-8")
        except UnicodeDecodeError:
            print(f"[r2] skipping binary file {relative}")
            skipped.append(relative.as_posix())
            continue
        except Exception as error:  # noqa: BLE001
            print(f"[r2] failed to download {key}: {error}")
            skipped.append(relative.as_posix())
            continue
        uploads.append((f"{target_dir}/{relative.as_posix()}", content))

    try:
        await upload_files_parallel(sandbox, uploads, log_upload=False)
    except Exception as error:  # noqa: BLE001
        return RestoreResult(
            success=False, r2_path=prefix, skipped=skipped,
            error=f"sandbox upload failed: {error}",
        )
    # Metro fails with EACCES on files it cannot rewrite.
    await sandbox.run(
        f"chmod -R u+rw {shlex.quote(target_dir)}", timeout=30, quiet=True,
    )
    print(f"[r2] restored {len(uploads)} files, skipped {len(skipped)}")
    return RestoreResult(
        success=True, file_count=len(uploads), skipped=skipped, r2_path=prefix,
    )
