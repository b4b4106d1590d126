"""Post-turn side effects: Metro reload, R2 snapshot, iOS bundle export.

These run inside the sandbox after a turn finishes successfully. Reload goes
first so the preview updates right away; the snapshot is slower and runs
afterwards, and a successful snapshot chains into a bundle export. Every
attempt is recorded as a SideEffectRun and mirrored into the event log as a
``system/operation`` event. Nothing in this module raises to the caller: a
failed reload or upload never changes the turn's outcome.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from appily_agent.config import BUNDLE_EXPORT_TIMEOUT_SECONDS, SNAPSHOT_MAX_FILE_BYTES
from appily_agent.models import (
    BundleResult,
    ReloadResult,
    SideEffectKind,
    SideEffectRun,
    SnapshotResult,
)
from appily_agent.store import ProjectStateStore
from appily_agent.utils import storage
from appily_agent.utils.helpers import tail_text, tprint
from appily_agent.utils.logging import log_event

print = tprint

EXCLUDED_DIRS = frozenset({
    "node_modules",
    ".git",
    ".expo",
    ".next",
    "dist",
    "build",
    "coverage",
    ".turbo",
    "out",
})
EXCLUDED_FILES = frozenset({".DS_Store", "core"})
EXCLUDED_EXTENSIONS = frozenset({
    ".log",
    ".lock",
    ".tgz",
    ".tar",
    ".gz",
    ".zip",
    ".dmg",
    ".exe",
    ".dll",
    ".so",
    ".dylib",
})
KEPT_LOCKFILES = frozenset({"package-lock.json"})
SNAPSHOT_DESCRIPTION = "Auto-save after task completion"
OPERATION_NAMES: dict[str, str] = {
    "reload": "metro_reload",
    "snapshot": "r2_save",
    "bundle_export": "bundle_export",
}

type Uploader = Callable[..., None]
type OperationEmitter = Callable[[dict[str, Any]], None]


# ---------------------------------------------------------------------------
# Metro reload
# ---------------------------------------------------------------------------


async def run_tmux(*args: str) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        "tmux",
        *args,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await process.communicate()
    return process.returncode or 0, stderr.decode(errors="replace").strip()


def with_stderr(message: str, stderr: str) -> str:
    return f"{message}: {stderr}" if stderr else message


class MetroReloader:
    """Sends ``r`` to the Metro bundler running in a tmux session."""

    def __init__(self, session_name: str = "metro") -> None:
        self.session_name = session_name

    async def reload(self) -> ReloadResult:
        try:
            code, stderr = await run_tmux("has-session", "-t", self.session_name)
            if code != 0:
                return ReloadResult(
                    success=False,
                    error=with_stderr("Metro tmux session not running", stderr),
                )
            code, stderr = await run_tmux(
                "send-keys", "-t", self.session_name, "r", "Enter",
            )
        except OSError as error:
            return ReloadResult(success=False, error=f"tmux unavailable: {error}")
        if code != 0:
            return ReloadResult(
                success=False,
                error=with_stderr("Failed to send keys to tmux session", stderr),
            )
        return ReloadResult(success=True)


# ---------------------------------------------------------------------------
# Source snapshot
# ---------------------------------------------------------------------------


class SnapshotFile(BaseModel):
    path: Path
    relative_path: str
    size: int


def is_excluded_file(name: str) -> bool:
    if name in EXCLUDED_FILES:
        return True
    if name in KEPT_LOCKFILES:
        return False
    return Path(name).suffix.lower() in EXCLUDED_EXTENSIONS


def collect_snapshot_files(
    source_dir: Path,
    *,
    max_file_bytes: int = SNAPSHOT_MAX_FILE_BYTES,
) -> list[SnapshotFile]:
    """Walk the source tree, skipping build output, VCS data and large files."""
    files: list[SnapshotFile] = []
    for root, dirnames, filenames in os.walk(source_dir):
        dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRS)
        for filename in sorted(filenames):
            if is_excluded_file(filename):
                continue
            path = Path(root) / filename
            if not path.is_file():
                continue
            size = path.stat().st_size
            if size > max_file_bytes:
                print(f"[r2] skipping large file {path} ({size} bytes)")
                continue
            files.append(
                SnapshotFile(
                    path=path,
                    relative_path=path.relative_to(source_dir).as_posix(),
                    size=size,
                )
            )
    return files


async def snapshot_source_tree(
    project_id: str,
    user_id: str,
    source_dir: str | Path,
    description: str = SNAPSHOT_DESCRIPTION,
    *,
    state: ProjectStateStore,
    upload: Uploader = storage.upload_file,
    bucket: str | None = None,
) -> SnapshotResult:
    """Upload a versioned copy of the source tree and record it."""
    root = Path(source_dir)
    if not root.is_dir():
        return SnapshotResult(
            success=False, error=f"Source directory not found: {root}",
        )
    try:
        target_bucket = bucket or storage.get_bucket()
        files = await asyncio.to_thread(collect_snapshot_files, root)
        version = await state.next_snapshot_version(project_id)
    except Exception as error:  # noqa: BLE001
        return SnapshotResult(success=False, error=str(error))

    r2_path = f"projects/{user_id}/{project_id}/v{int(time.time() * 1000)}/"
    print(f"[r2] uploading {len(files)} files to {r2_path} (v{version})")
    uploaded = 0
    total_size = 0
    for index, item in enumerate(files, start=1):
        try:
            await asyncio.to_thread(
                upload,
                item.path,
                target_bucket,
                f"{r2_path}{item.relative_path}",
                metadata={
                    "projectId": project_id,
                    "userId": user_id,
                    "version": str(version),
                    "originalPath": item.relative_path,
                },
            )
        except Exception as error:  # noqa: BLE001
            print(f"[r2] failed to upload {item.relative_path}: {error}")
            continue
        uploaded += 1
        total_size += item.size
        if index % 10 == 0 or index == len(files):
            print(f"[r2] uploaded {index}/{len(files)} files")

    try:
        await state.record_snapshot({
            "project_id": project_id,
            "user_id": user_id,
            "version": version,
            "description": description,
            "r2_path": r2_path,
            "file_count": uploaded,
            "total_size": total_size,
        })
    except Exception as error:  # noqa: BLE001
        return SnapshotResult(
            success=False,
            error=f"Failed to save snapshot metadata: {error}",
        )
    return SnapshotResult(
        success=True,
        version=version,
        file_count=uploaded,
        total_size=total_size,
        r2_path=r2_path,
    )


# ---------------------------------------------------------------------------
# Bundle export
# ---------------------------------------------------------------------------


async def run_expo_export(project_dir: Path) -> tuple[int, str]:
    """Run ``expo export`` for iOS and return (exit_code, stderr tail)."""
    process = await asyncio.create_subprocess_exec(
        "npx",
        "expo",
        "export",
        "--platform",
        "ios",
        "--dev",
        "--output-dir",
        "dist",
        cwd=str(project_dir),
        env={**os.environ, "CI": "1"},
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(
            process.communicate(), timeout=BUNDLE_EXPORT_TIMEOUT_SECONDS,
        )
    except TimeoutError:
        process.kill()
        await process.wait()
        return -1, f"Export timed out after {BUNDLE_EXPORT_TIMEOUT_SECONDS}s"
    return process.returncode or 0, tail_text(stderr.decode(errors="replace"))


async def export_bundle(
    project_id: str,
    project_dir: str | Path,
    *,
    state: ProjectStateStore,
    upload: Uploader = storage.upload_file,
    run_export: Callable[[Path], Awaitable[tuple[int, str]]] = run_expo_export,
    bucket: str | None = None,
    public_url: str | None = None,
) -> BundleResult:
    """Export the iOS dev bundle, publish it and record its URL."""
    root = Path(project_dir)
    try:
        target_bucket = bucket or storage.get_images_bucket()
        base_url = (public_url or storage.get_images_public_url()).rstrip("/")
        exit_code, stderr = await run_export(root)
    except Exception as error:  # noqa: BLE001
        return BundleResult(success=False, error=str(error))
    if exit_code != 0:
        return BundleResult(
            success=False,
            error=f"Export failed with code {exit_code}: {stderr}",
        )

    dist_dir = root / "dist"
    bundle_dir = dist_dir / "_expo" / "static" / "js" / "ios"
    if not bundle_dir.is_dir():
        return BundleResult(
            success=False,
            error="Bundle directory not found in dist/_expo/static/js/ios/",
        )
    bundles = sorted(bundle_dir.glob("*.js"))
    if not bundles:
        return BundleResult(success=False, error="No .js bundle file found")

    bundle_name = f"bundle-{project_id}.js"
    bundles[0].rename(bundle_dir / bundle_name)

    prefix = f"bundles/{project_id}/"
    try:
        for path in sorted(p for p in dist_dir.rglob("*") if p.is_file()):
            relative = path.relative_to(dist_dir).as_posix()
            await asyncio.to_thread(upload, path, target_bucket, f"{prefix}{relative}")
        bundle_url = f"{base_url}/{prefix}_expo/static/js/ios/{bundle_name}"
        await state.set_bundle_url(project_id, bundle_url)
    except Exception as error:  # noqa: BLE001
        return BundleResult(success=False, error=str(error))
    return BundleResult(success=True, bundle_url=bundle_url)


# ---------------------------------------------------------------------------
# Trigger sequence
# ---------------------------------------------------------------------------


class SideEffectTriggers:
    """Runs reload, then snapshot (then bundle export) once per successful turn."""

    def __init__(
        self,
        *,
        reload: Callable[[], Awaitable[ReloadResult]],
        snapshot: Callable[[], Awaitable[SnapshotResult]],
        export_bundle: Callable[[], Awaitable[BundleResult]] | None = None,
        emit: OperationEmitter | None = None,
    ) -> None:
        self._reload = reload
        self._snapshot = snapshot
        self._export_bundle = export_bundle
        self._emit = emit
        self.runs: list[SideEffectRun] = []

    @classmethod
    def for_project(
        cls,
        *,
        project_id: str,
        user_id: str,
        source_dir: str,
        state: ProjectStateStore,
        emit: OperationEmitter | None = None,
    ) -> SideEffectTriggers:
        """Production wiring: tmux reload, R2 snapshot, expo bundle export."""
        reloader = MetroReloader()

        async def snapshot() -> SnapshotResult:
            return await snapshot_source_tree(
                project_id, user_id, source_dir, state=state,
            )

        async def bundle() -> BundleResult:
            return await export_bundle(project_id, source_dir, state=state)

        return cls(
            reload=reloader.reload,
            snapshot=snapshot,
            export_bundle=bundle,
            emit=emit,
        )

    def _record(
        self,
        kind: SideEffectKind,
        status: str,
        detail: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        run = SideEffectRun(
            kind=kind, status=status, detail=detail, details=details or {},
        )
        self.runs.append(run)
        print(f"[{OPERATION_NAMES[kind]}] {status}: {detail}")
        log_event(
            component="side_effects",
            event=f"{kind}.{status}",
            level="error" if status == "failed" else "info",
            message=detail,
            details=details,
        )
        if self._emit is None:
            return
        try:
            self._emit({
                "type": "system",
                "subtype": "operation",
                "operation": OPERATION_NAMES[kind],
                "status": status,
                "message": detail,
                "details": details or {},
                "timestamp": run.created_at.isoformat(),
            })
        except Exception as error:  # noqa: BLE001
            print(f"[side_effects] failed to emit operation event: {error}")

    async def _attempt(
        self,
        kind: SideEffectKind,
        action: Callable[[], Awaitable[BaseModel]],
    ) -> Any:
        self._record(kind, "started", f"{OPERATION_NAMES[kind]} started")
        try:
            result = await action()
        except Exception as error:  # noqa: BLE001
            self._record(kind, "failed", str(error))
            return None
        details = result.model_dump(exclude_none=True)
        if getattr(result, "success", False):
            self._record(kind, "completed", f"{OPERATION_NAMES[kind]} completed", details)
        else:
            self._record(
                kind,
                "failed",
                str(getattr(result, "error", None) or "unknown error"),
                details,
            )
        return result

    async def run(self) -> list[SideEffectRun]:
        await self._attempt("reload", self._reload)
        snapshot = await self._attempt("snapshot", self._snapshot)
        if (
            self._export_bundle is not None
            and snapshot is not None
            and snapshot.success
        ):
            await self._attempt("bundle_export", self._export_bundle)
        return list(self.runs)

    def completed(self, kind: SideEffectKind) -> list[SideEffectRun]:
        return [
            run for run in self.runs
            if run.kind == kind and run.status == "completed"
        ]
