"""Pydantic data models for one agent turn.

TurnRequest is what the caller dispatches, CanonicalEvent is what lands in the
agent_events table, TurnOutcome is the single terminal verdict per turn, and
SideEffectRun records one reload/snapshot/bundle attempt. ProjectState mirrors
the projects row the controller and the session manager update.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

type Provider = Literal["claude", "claude-sdk", "gemini"]
type EventType = Literal["system", "user", "assistant", "tool_result", "result"]
type OutcomeStatus = Literal["success", "error", "cancelled"]
type OutcomeSource = Literal[
    "explicit",
    "inferred-from-stop-reason",
    "fallback",
    "fallback-timeout",
    "fallback-retry",
    "cancelled",
]
type SideEffectKind = Literal["reload", "snapshot", "bundle_export"]
type SideEffectStatus = Literal["started", "completed", "failed"]

DEFAULT_WORKING_DIRECTORY = "/home/user/project"


def utc_now() -> datetime:
    return datetime.now(UTC)


class TurnRequest(BaseModel):
    """One user message dispatched to an agent backend."""

    model_config = {"frozen": True}

    provider: Provider
    project_id: str
    user_id: str = ""
    working_directory: str = DEFAULT_WORKING_DIRECTORY
    session_id: str | None = None
    system_prompt: str = ""
    user_prompt: str
    sandbox_id: str | None = None


class CanonicalEvent(BaseModel):
    """Backend-agnostic record appended to the durable event log."""

    session_id: str | None = None
    project_id: str
    event_type: EventType
    event_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    def to_row(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project_id": self.project_id,
            "event_type": self.event_type,
            "event_data": self.event_data,
            "created_at": self.created_at.isoformat(),
        }


class TurnOutcome(BaseModel):
    model_config = {"frozen": True}

    status: OutcomeStatus
    source: OutcomeSource
    subtype: str = ""
    detail: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status == "success"


class SideEffectRun(BaseModel):
    kind: SideEffectKind
    status: SideEffectStatus
    detail: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class AgentHandle(BaseModel):
    """Returned by launch_turn as soon as the background pid is confirmed."""

    pid: int
    sandbox_id: str
    script_path: str
    log_file: str


class ProjectState(BaseModel):
    project_id: str
    session_id: str | None = None
    agent_pid: int | None = None
    bundle_url: str | None = None


class ReloadResult(BaseModel):
    success: bool
    error: str | None = None


class SnapshotResult(BaseModel):
    success: bool
    version: int | None = None
    file_count: int = 0
    total_size: int = 0
    r2_path: str | None = None
    error: str | None = None


class BundleResult(BaseModel):
    success: bool
    bundle_url: str | None = None
    error: str | None = None


class RestoreResult(BaseModel):
    success: bool
    file_count: int = 0
    skipped: list[str] = Field(default_factory=list)
    r2_path: str | None = None
    error: str | None = None
