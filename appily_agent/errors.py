"""Exception types raised across the pipeline.

All of them subclass RuntimeError. Only SandboxSetupError is meant to reach
the caller of launch_turn; the others are caught inside the driver and
resolved into a TurnOutcome.
"""

from __future__ import annotations


class SandboxSetupError(RuntimeError):
    """The sandbox could not be prepared; no agent process was started."""


class SessionNotFoundError(RuntimeError):
    """The backend rejected a resume because it no longer knows the session."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class AgentSilentError(RuntimeError):
    """The agent produced no output at all before the silence watchdog fired."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            f"agent produced no output within {timeout_seconds:g}s"
        )
        self.timeout_seconds = timeout_seconds
