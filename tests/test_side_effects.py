from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from appily_agent.models import BundleResult, ReloadResult, SnapshotResult
from appily_agent.side_effects import (
    SideEffectTriggers,
    collect_snapshot_files,
    export_bundle,
    is_excluded_file,
    snapshot_source_tree,
)
from appily_agent.store import MemoryStore


def write(path: Path, content: str = "x") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)


def make_project(root: Path) -> None:
    write(root / "App.tsx", "export default function App() {}")
    write(root / "package.json", "{}")
    write(root / "package-lock.json", "{}")
    write(root / "yarn.lock", "")
    write(root / "metro.log", "")
    write(root / "src" / "screens" / "Home.tsx", "home")
    write(root / "node_modules" / "react" / "index.js", "react")
    write(root / ".git" / "HEAD", "ref")
    write(root / "dist" / "bundle.js", "built")
    write(root / ".DS_Store", "")


def test_is_excluded_file() -> None:
    assert is_excluded_file(".DS_Store")
    assert is_excluded_file("yarn.lock")
    assert is_excluded_file("expo.log")
    assert not is_excluded_file("package-lock.json")
    assert not is_excluded_file("App.tsx")


def test_collect_snapshot_files_skips_build_output_and_large_files(tmp_path: Path) -> None:
    make_project(tmp_path)
    write(tmp_path / "assets" / "video.mp4", "v" * 64)

    files = collect_snapshot_files(tmp_path, max_file_bytes=48)
    assert [item.relative_path for item in files] == [
        "App.tsx",
        "package-lock.json",
        "package.json",
        "src/screens/Home.tsx",
    ]


def test_snapshot_uploads_tree_and_records_version(tmp_path: Path) -> None:
    make_project(tmp_path)
    store = MemoryStore()
    uploads: list[tuple[str, str, dict[str, str]]] = []

    def upload(local_path: Path, bucket: str, key: str, *, metadata: dict[str, str] | None = None) -> None:
        if local_path.name == "package.json":
            raise OSError("upload refused")
        uploads.append((bucket, key, metadata or {}))

    async def run() -> tuple[SnapshotResult, SnapshotResult]:
        first = await snapshot_source_tree(
            "p1", "u1", tmp_path, state=store, upload=upload, bucket="snapshots",
        )
        second = await snapshot_source_tree(
            "p1", "u1", tmp_path, state=store, upload=upload, bucket="snapshots",
        )
        return first, second

    first, second = asyncio.run(run())
    assert first.success
    assert first.version == 1
    assert second.version == 2
    assert first.file_count == 3
    assert first.r2_path is not None
    assert first.r2_path.startswith("projects/u1/p1/v")

    bucket, key, metadata = uploads[0]
    assert bucket == "snapshots"
    assert key == f"{first.r2_path}App.tsx"
    assert metadata == {
        "projectId": "p1",
        "userId": "u1",
        "version": "1",
        "originalPath": "App.tsx",
    }
    assert store.snapshots[0]["description"] == "Auto-save after task completion"
    assert store.snapshots[0]["file_count"] == 3


def test_snapshot_of_missing_directory_fails_cleanly(tmp_path: Path) -> None:
    store = MemoryStore()
    result = asyncio.run(
        snapshot_source_tree(
            "p1", "u1", tmp_path / "missing", state=store, upload=lambda *a, **k: None,
            bucket="b",
        )
    )
    assert not result.success
    assert "not found" in (result.error or "")
    assert store.snapshots == []


def test_export_bundle_publishes_renamed_bundle(tmp_path: Path) -> None:
    store = MemoryStore()
    uploaded: list[str] = []

    async def fake_export(project_dir: Path) -> tuple[int, str]:
        write(project_dir / "dist" / "_expo" / "static" / "js" / "ios" / "index-3f2a.js", "js")
        write(project_dir / "dist" / "metadata.json", "{}")
        return 0, ""

    def upload(local_path: Path, bucket: str, key: str, **_: Any) -> None:
        uploaded.append(key)

    result = asyncio.run(
        export_bundle(
            "p1",
            tmp_path,
            state=store,
            upload=upload,
            run_export=fake_export,
            bucket="images",
            public_url="https://cdn.example.com/",
        )
    )
    assert result.success
    assert result.bundle_url == (
        "https://cdn.example.com/bundles/p1/_expo/static/js/ios/bundle-p1.js"
    )
    assert sorted(uploaded) == [
        "bundles/p1/_expo/static/js/ios/bundle-p1.js",
        "bundles/p1/metadata.json",
    ]
    assert store.projects["p1"].bundle_url == result.bundle_url


def test_export_bundle_reports_failed_export(tmp_path: Path) -> None:
    async def fake_export(project_dir: Path) -> tuple[int, str]:
        return 1, "Unable to resolve module"

    result = asyncio.run(
        export_bundle(
            "p1",
            tmp_path,
            state=MemoryStore(),
            upload=lambda *a, **k: None,
            run_export=fake_export,
            bucket="images",
            public_url="https://cdn.example.com",
        )
    )
    assert not result.success
    assert "Unable to resolve module" in (result.error or "")


def test_triggers_run_in_order_and_chain_bundle_export() -> None:
    calls: list[str] = []
    emitted: list[dict[str, Any]] = []

    async def reload() -> ReloadResult:
        calls.append("reload")
        return ReloadResult(success=False, error="Metro tmux session not running")

    async def snapshot() -> SnapshotResult:
        calls.append("snapshot")
        return SnapshotResult(success=True, version=4, file_count=2)

    async def bundle() -> BundleResult:
        calls.append("bundle")
        return BundleResult(success=True, bundle_url="https://cdn/b.js")

    triggers = SideEffectTriggers(
        reload=reload, snapshot=snapshot, export_bundle=bundle, emit=emitted.append,
    )
    runs = asyncio.run(triggers.run())

    assert calls == ["reload", "snapshot", "bundle"]
    assert [(run.kind, run.status) for run in runs] == [
        ("reload", "started"),
        ("reload", "failed"),
        ("snapshot", "started"),
        ("snapshot", "completed"),
        ("bundle_export", "started"),
        ("bundle_export", "completed"),
    ]
    assert len(triggers.completed("snapshot")) == 1
    assert emitted[1]["operation"] == "metro_reload"
    assert emitted[1]["status"] == "failed"
    assert emitted[3]["operation"] == "r2_save"
    assert emitted[3]["details"]["version"] == 4
    assert all(payload["subtype"] == "operation" for payload in emitted)


def test_failed_snapshot_skips_bundle_export_and_never_raises() -> None:
    calls: list[str] = []

    async def reload() -> ReloadResult:
        raise OSError("tmux missing")

    async def snapshot() -> SnapshotResult:
        raise RuntimeError("Missing required environment variable: R2_BUCKET_NAME")

    async def bundle() -> BundleResult:
        calls.append("bundle")
        return BundleResult(success=True)

    triggers = SideEffectTriggers(reload=reload, snapshot=snapshot, export_bundle=bundle)
    runs = asyncio.run(triggers.run())

    assert calls == []
    assert [run.status for run in runs] == ["started", "failed", "started", "failed"]
    assert "R2_BUCKET_NAME" in runs[3].detail
