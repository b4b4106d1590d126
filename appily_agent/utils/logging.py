"""Structured JSON-lines logging for the agent pipeline.

log_event() builds one record per call: timestamp, component, event name and
level, the fields bound for the current turn with bind_log_context(), and the
caller's own fields with secrets redacted. When APPILY_LOG_PATH is set the
record is appended to that file, so a finished turn can still be inspected
after its driver process has exited.
"""

from __future__ import annotations

import json
import os
import threading
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from pathlib import Path

from appily_agent.utils.helpers import redact_secrets, tprint

print = tprint

type LogRecord = dict[str, object]

LOG_PATH_ENV = "APPILY_LOG_PATH"

_turn_fields: ContextVar[LogRecord | None] = ContextVar("appily_turn_fields", default=None)
_sink_lock = threading.Lock()


def bind_log_context(**fields: object) -> Token[LogRecord | None]:
    """Attach fields to every record logged in this context; None unbinds."""
    merged = dict(_turn_fields.get() or {})
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return _turn_fields.set(merged)


def reset_log_context(token: Token[LogRecord | None]) -> None:
    _turn_fields.reset(token)


def _append_to_sink(record: LogRecord) -> None:
    path = os.environ.get(LOG_PATH_ENV, "").strip()
    if not path:
        return
    line = json.dumps(record, ensure_ascii=False, default=str)
    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with _sink_lock, target.open("a", encoding="utf-8") as sink:
            sink.write(line + "\n")
    except OSError as error:
        print(f"[log] cannot write {target}: {error}")


def log_event(
    *,
    component: str,
    event: str,
    message: str = "",
    level: str = "info",
    **fields: object,
) -> LogRecord:
    record: LogRecord = {
        "ts": datetime.now(UTC).isoformat(),
        "component": component,
        "event": event,
        "level": level,
        "message": message,
        **(_turn_fields.get() or {}),
    }
    record.update(
        (key, redact_secrets(value)) for key, value in fields.items() if value is not None
    )
    _append_to_sink(record)
    return record
