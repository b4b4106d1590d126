"""Protocol adapter -- raw backend output to canonical event payloads.

Three wire formats reach the pipeline:

1. Claude CLI ``--output-format stream-json``: newline-delimited JSON whose
   objects are already in canonical shape (system/assistant/user/result).
2. Gemini CLI ``--output-format stream-json``: newline-delimited JSON with its
   own vocabulary (init, message, tool_use, tool_result, result). Streamed
   assistant text arrives as many ``delta`` messages which are accumulated
   and stored as one assistant event.
3. Claude Agent SDK: typed message objects yielded by ``query()``. These are
   converted field by field; there is no parsing step.

This module is the only place that knows about backend-specific shapes.
Everything downstream sees payload dicts keyed by ``type``.
"""

from __future__ import annotations

import codecs
import dataclasses
import json
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from appily_agent.models import CanonicalEvent, EventType, utc_now
from appily_agent.utils.helpers import tprint, truncate_text
from appily_agent.utils.logging import log_event

print = tprint

CANONICAL_EVENT_TYPES: set[str] = {
    "system",
    "user",
    "assistant",
    "tool_result",
    "result",
}

type Payload = dict[str, Any]
type DiagnosticHandler = Callable[[str], None]


# ---------------------------------------------------------------------------
# Line framing
# ---------------------------------------------------------------------------


class NdjsonLineBuffer:
    """Reassembles complete lines from arbitrarily split stdout chunks.

    Bytes are decoded incrementally, so a multibyte UTF-8 character split
    across two reads is decoded once both halves have arrived.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        self._pending += text
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return the trailing unterminated line at end of stream."""
        remainder = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        remainder = remainder.rstrip("\r")
        return [remainder] if remainder.strip() else []


def parse_ndjson_line(
    line: str,
    *,
    on_diagnostic: DiagnosticHandler | None = None,
) -> Payload | None:
    """Parse one line of agent stdout. Never raises.

    Blank lines return None silently. Anything that is not a JSON object
    (progress output, warnings from npm, stack traces) is reported to
    on_diagnostic and skipped.
    """
    stripped = line.strip()
    if not stripped:
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    preview = truncate_text(stripped, 300)
    if on_diagnostic is not None:
        on_diagnostic(preview)
    else:
        print(f"[agent] non-JSON output: {preview}")
    log_event(
        component="protocol",
        event="line.unparsed",
        level="debug",
        message=preview,
    )
    return None


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


class StreamTranslator(Protocol):
    """Turns one backend object into zero or more canonical payloads."""

    provider: str

    def translate(self, obj: Payload) -> list[Payload]:
        ...

    def finish(self) -> list[Payload]:
        """Flush anything still buffered at end of stream."""
        ...


class ClaudeStreamTranslator:
    """Claude CLI stream-json is already canonical; objects pass through."""

    provider = "claude"

    def translate(self, obj: Payload) -> list[Payload]:
        return [obj]

    def finish(self) -> list[Payload]:
        return []


def assistant_text_payload(text: str, provider: str) -> Payload:
    return {
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": text}]},
        "provider": provider,
    }


class GeminiStreamTranslator:
    """Maps Gemini CLI stream-json onto the canonical payload shapes."""

    provider = "gemini"

    def __init__(self) -> None:
        self._delta_parts: list[str] = []
        self._delta_started_at: datetime | None = None

    @property
    def delta_started_at(self) -> datetime | None:
        """When the currently buffered assistant message began streaming."""
        return self._delta_started_at

    def _flush_delta(self) -> list[Payload]:
        if not self._delta_parts:
            return []
        payload = assistant_text_payload("".join(self._delta_parts), self.provider)
        if self._delta_started_at is not None:
            payload["timestamp"] = self._delta_started_at.isoformat()
        self._delta_parts = []
        self._delta_started_at = None
        return [payload]

    def translate(self, obj: Payload) -> list[Payload]:
        event_type = obj.get("type")
        role = obj.get("role")

        if event_type == "message" and role == "assistant" and obj.get("delta"):
            if not self._delta_parts:
                self._delta_started_at = utc_now()
            self._delta_parts.append(str(obj.get("content") or ""))
            return []

        out = self._flush_delta()

        if event_type == "init":
            if obj.get("session_id"):
                out.append({
                    "type": "system",
                    "subtype": "init",
                    "session_id": obj["session_id"],
                    "model": obj.get("model"),
                    "provider": self.provider,
                })
            return out

        if event_type == "message":
            # The CLI echoes the prompt back as a user message; the caller
            # already stored it.
            if role == "assistant":
                out.append(
                    assistant_text_payload(
                        str(obj.get("content") or ""), self.provider,
                    )
                )
            return out

        if event_type == "tool_use":
            out.append({
                "type": "assistant",
                "message": {
                    "content": [{
                        "type": "tool_use",
                        "id": obj.get("tool_id"),
                        "name": obj.get("tool_name"),
                        "input": obj.get("parameters") or {},
                    }],
                },
                "provider": self.provider,
            })
            return out

        if event_type == "tool_result":
            out.append({
                "type": "tool_result",
                "tool_use_id": obj.get("tool_id"),
                "status": obj.get("status"),
                "content": obj.get("content") or obj.get("output") or "",
                "provider": self.provider,
            })
            return out

        if event_type == "result":
            status = obj.get("status")
            out.append({
                "type": "result",
                "subtype": "success" if status == "success" else "error",
                "is_error": status != "success",
                "stats": obj.get("stats"),
                "error": obj.get("error"),
                "provider": self.provider,
            })
            return out

        out.append({**obj, "provider": self.provider})
        return out

    def finish(self) -> list[Payload]:
        return self._flush_delta()


# ---------------------------------------------------------------------------
# SDK messages
# ---------------------------------------------------------------------------


def sdk_block_to_dict(block: Any) -> Payload:
    kind = type(block).__name__
    if kind == "TextBlock":
        return {"type": "text", "text": block.text}
    if kind == "ThinkingBlock":
        return {"type": "thinking", "thinking": block.thinking}
    if kind == "ToolUseBlock":
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input,
        }
    if kind == "ToolResultBlock":
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": block.is_error,
        }
    if isinstance(block, dict):
        return dict(block)
    if dataclasses.is_dataclass(block) and not isinstance(block, type):
        return {"type": kind, **dataclasses.asdict(block)}
    return {"type": kind, "value": repr(block)}


def sdk_content_to_json(content: Any) -> Any:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return [sdk_block_to_dict(block) for block in content]
    return content


def sdk_message_to_payload(message: Any) -> Payload | None:
    """Convert a typed Claude Agent SDK message into a canonical payload.

    Returns None for partial stream events, which are not stored.
    """
    kind = type(message).__name__
    if kind == "SystemMessage":
        data = dict(getattr(message, "data", None) or {})
        data.pop("type", None)
        data["subtype"] = message.subtype
        return {"type": "system", **data}
    if kind == "AssistantMessage":
        inner: Payload = {
            "role": "assistant",
            "model": getattr(message, "model", None),
            "content": sdk_content_to_json(message.content),
        }
        stop_reason = getattr(message, "stop_reason", None)
        if stop_reason:
            inner["stop_reason"] = stop_reason
        return {
            "type": "assistant",
            "message": inner,
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }
    if kind == "UserMessage":
        return {
            "type": "user",
            "message": {
                "role": "user",
                "content": sdk_content_to_json(message.content),
            },
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }
    if kind == "ResultMessage":
        return {
            "type": "result",
            "subtype": message.subtype,
            "is_error": message.is_error,
            "session_id": message.session_id,
            "num_turns": getattr(message, "num_turns", None),
            "duration_ms": getattr(message, "duration_ms", None),
            "total_cost_usd": getattr(message, "total_cost_usd", None),
            "usage": getattr(message, "usage", None),
            "result": getattr(message, "result", None),
        }
    if kind == "StreamEvent":
        return None
    if isinstance(message, dict):
        return dict(message)
    return {"type": "system", "subtype": "debug", "message_class": kind}


# ---------------------------------------------------------------------------
# Canonical events
# ---------------------------------------------------------------------------


def payload_event_type(payload: Payload) -> EventType:
    event_type = payload.get("type")
    if event_type in CANONICAL_EVENT_TYPES:
        return event_type
    return "system"


def to_canonical(
    payload: Payload,
    *,
    project_id: str,
    session_id: str | None,
) -> CanonicalEvent:
    """Wrap a payload in a CanonicalEvent for the event log."""
    event = CanonicalEvent(
        session_id=session_id,
        project_id=project_id,
        event_type=payload_event_type(payload),
        event_data=payload,
    )
    timestamp = payload.get("timestamp")
    if isinstance(timestamp, str):
        try:
            parsed = datetime.fromisoformat(timestamp)
        except ValueError:
            parsed = None
        if parsed is not None and parsed.tzinfo is not None:
            event.created_at = parsed
    return event


def assistant_stop_reason(payload: Payload) -> str | None:
    if payload.get("type") != "assistant":
        return None
    message = payload.get("message")
    if isinstance(message, dict) and message.get("stop_reason"):
        return str(message["stop_reason"])
    if payload.get("stop_reason"):
        return str(payload["stop_reason"])
    return None


def session_id_from_payload(payload: Payload) -> str | None:
    """The backend session token carried by an init event, if any."""
    if payload.get("type") != "system" or payload.get("subtype") != "init":
        return None
    session_id = payload.get("session_id")
    if isinstance(session_id, str) and session_id:
        return session_id
    return None
