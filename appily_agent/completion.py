"""Completion detection -- exactly one TurnOutcome per turn.

A turn can end four ways: the backend sends an explicit result, it sends an
assistant message whose stop reason means "done" and then goes quiet, the
process exits without either, or the process never prints anything and the
silence watchdog kills it. Several of these can fire for the same turn (a
stop-reason inference followed by the exit fallback a moment later), so every
path claims the outcome through one flag that is set before anything awaits.

Side effects run only for a success outcome and run in a background task so
the stream reader keeps draining stdout while the snapshot uploads; call
wait() before the process exits.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from appily_agent.agents.base import CLAUDE_STOP_REASONS
from appily_agent.models import OutcomeSource, OutcomeStatus, TurnOutcome, utc_now
from appily_agent.protocol import assistant_stop_reason
from appily_agent.side_effects import SideEffectTriggers
from appily_agent.utils.helpers import tprint
from appily_agent.utils.logging import log_event

print = tprint

type PayloadEmitter = Callable[[dict[str, Any]], None]


def explicit_status(payload: dict[str, Any]) -> OutcomeStatus:
    if payload.get("is_error"):
        return "error"
    subtype = str(payload.get("subtype") or "success")
    if subtype == "cancelled":
        return "cancelled"
    return "error" if subtype.startswith("error") else "success"


class CompletionDetector:
    def __init__(
        self,
        project_id: str,
        *,
        emit: PayloadEmitter,
        triggers: SideEffectTriggers | None = None,
        stop_reasons: frozenset[str] = CLAUDE_STOP_REASONS,
    ) -> None:
        self.project_id = project_id
        self._emit = emit
        self._triggers = triggers
        self.stop_reasons = stop_reasons
        self._recorded = False
        self.outcome: TurnOutcome | None = None
        self._side_effects: asyncio.Task[Any] | None = None

    @property
    def recorded(self) -> bool:
        return self._recorded

    def _record(
        self,
        status: OutcomeStatus,
        source: OutcomeSource,
        *,
        subtype: str,
        detail: str | None = None,
        synthesize: bool = True,
    ) -> TurnOutcome | None:
        if self._recorded:
            return None
        self._recorded = True
        outcome = TurnOutcome(
            status=status, source=source, subtype=subtype, detail=detail,
        )
        self.outcome = outcome
        print(
            f"[completion] outcome status={status} source={source}"
            f"{' detail=' + detail if detail else ''}"
        )
        log_event(
            component="completion",
            event="turn.outcome",
            level="info" if status != "error" else "error",
            message=detail or "",
            status=status,
            source=source,
        )
        if synthesize:
            self._emit({
                "type": "result",
                "subtype": subtype,
                "is_error": status == "error",
                "source": source,
                "error": detail if status == "error" else None,
                "timestamp": utc_now().isoformat(),
            })
        if outcome.is_success and self._triggers is not None:
            self._side_effects = asyncio.create_task(self._triggers.run())
        return outcome

    async def observe(self, payload: dict[str, Any]) -> TurnOutcome | None:
        """Inspect one payload that has already been written to the log."""
        if self._recorded:
            return None
        if payload.get("type") == "result":
            status = explicit_status(payload)
            return self._record(
                status,
                "explicit",
                subtype=str(payload.get("subtype") or status),
                detail=payload.get("error") if status == "error" else None,
                synthesize=False,
            )
        stop_reason = assistant_stop_reason(payload)
        if stop_reason is not None and stop_reason in self.stop_reasons:
            return self._record(
                "success",
                "inferred-from-stop-reason",
                subtype="success",
                detail=f"stop_reason={stop_reason}",
            )
        return None

    async def on_exit(
        self,
        exit_code: int,
        *,
        detail: str | None = None,
        retry: bool = False,
    ) -> TurnOutcome | None:
        """Process ended; synthesize a result if nothing was recorded."""
        status: OutcomeStatus = "success" if exit_code == 0 else "error"
        return self._record(
            status,
            "fallback-retry" if retry else "fallback",
            subtype="success" if status == "success" else "error_during_execution",
            detail=detail or (None if exit_code == 0 else f"exit code {exit_code}"),
        )

    async def on_silence(self, detail: str) -> TurnOutcome | None:
        return self._record(
            "error", "fallback-timeout", subtype="error_no_output", detail=detail,
        )

    async def on_retry_failure(self, detail: str) -> TurnOutcome | None:
        return self._record(
            "error", "fallback-retry", subtype="error_during_execution", detail=detail,
        )

    def cancel(self) -> TurnOutcome | None:
        """Pre-arm a cancelled outcome for a user-requested stop."""
        return self._record(
            "cancelled", "cancelled", subtype="cancelled", detail="stopped by user",
        )

    async def wait(self) -> None:
        """Wait for side effects started by a success outcome."""
        if self._side_effects is not None:
            await asyncio.wait([self._side_effects])
