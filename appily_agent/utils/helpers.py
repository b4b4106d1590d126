"""Shared utilities used across appily-agent.

Timestamped printing (tprint), text truncation, secret redaction, and
parallel file upload to sandboxes.
"""

from __future__ import annotations

import asyncio
import builtins
import os
import shlex
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from appily_agent.sandbox.base import Sandbox

SETUP_UPLOAD_CONCURRENCY = max(
    1, int(os.environ.get("SETUP_UPLOAD_CONCURRENCY", "8"))
)
TRUNCATION_MARKER = "\n...[truncated]"


# ---------------------------------------------------------------------------
# Timestamped print
# ---------------------------------------------------------------------------


def ts() -> str:
    return datetime.now(UTC).strftime("%H:%M:%S")


def tprint(*args: Any, **kwargs: Any) -> None:
    if "flush" not in kwargs:
        kwargs["flush"] = True
    builtins.print(f"[{ts()}]", *args, **kwargs)


print = tprint


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def truncate_text(
    text: str, limit: int = 4000, *, marker: str = TRUNCATION_MARKER,
) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def tail_text(text: str, limit: int = 2000) -> str:
    if len(text) <= limit:
        return text
    return "...[truncated]\n" + text[-limit:]


SECRET_KEY_TOKENS = ("key", "token", "secret", "password", "credentials")


def redact_secrets(value: Any) -> Any:
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, val in value.items():
            if isinstance(key, str) and any(
                token in key.lower() for token in SECRET_KEY_TOKENS
            ):
                redacted[key] = "***" if val else val
            else:
                redacted[key] = redact_secrets(val)
        return redacted
    if isinstance(value, list):
        return [redact_secrets(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Parallel upload
# ---------------------------------------------------------------------------


async def upload_files_parallel(
    sandbox: Sandbox,
    uploads: list[tuple[str, str]],
    *,
    concurrency: int = SETUP_UPLOAD_CONCURRENCY,
    log_upload: bool = True,
) -> None:
    if not uploads:
        return

    bounded = max(1, concurrency)
    dirs = sorted({str(Path(path).parent) for path, _ in uploads})
    if dirs:
        mkdir_cmd = "mkdir -p " + " ".join(shlex.quote(d) for d in dirs)
        await sandbox.run(mkdir_cmd, quiet=True)

    print(
        f"[setup] uploading {len(uploads)} files "
        f"with concurrency={bounded}"
    )

    semaphore = asyncio.Semaphore(bounded)

    async def _upload(path: str, content: str) -> None:
        if log_upload:
            print(f"[setup][upload] {path}")
        async with semaphore:
            await sandbox.write_file(
                path,
                content,
                ensure_dir=False,
                log_upload=False,
            )

    await asyncio.gather(
        *[_upload(path, content) for path, content in uploads],
    )
