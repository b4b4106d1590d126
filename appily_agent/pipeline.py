"""Turn pipeline -- the sandbox-side loop that runs one agent turn.

Every payload from the event source goes through the same three steps, in
order: session capture, ordered append to the event log, completion check.
When an optimistic resume is rejected the pipeline rebuilds the conversation
from the log and retries once as a fresh session, resending the system
instructions. Whatever happens, the turn ends with exactly one outcome, the
append queue drained and the project's running marker cleared.

run_driver() is the shared entry point used by the per-backend modules in
appily_agent.drivers.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from collections.abc import Callable
from typing import Any

from appily_agent.agents.base import BackendSpec
from appily_agent.completion import CompletionDetector
from appily_agent.config import DriverSettings
from appily_agent.errors import AgentSilentError, SessionNotFoundError
from appily_agent.models import TurnOutcome
from appily_agent.protocol import Payload, to_canonical
from appily_agent.session import SessionManager, is_session_not_found
from appily_agent.side_effects import SideEffectTriggers
from appily_agent.sources import EventSource, ProcessSource
from appily_agent.store import EventLog, EventWriter, ProjectStateStore, SupabaseStore
from appily_agent.utils.helpers import tprint
from appily_agent.utils.logging import bind_log_context, log_event, reset_log_context

print = tprint

# (prompt, resume_session_id, system_prompt) -> source
type SourceFactory = Callable[[str, str | None, str | None], EventSource]
type TriggersFactory = Callable[[Callable[[Payload], None]], SideEffectTriggers]


class TurnPipeline:
    def __init__(
        self,
        *,
        project_id: str,
        user_prompt: str,
        source_factory: SourceFactory,
        events: EventLog,
        state: ProjectStateStore,
        resume_session_id: str | None = None,
        system_prompt: str = "",
        recovery_system_prompt: Callable[[], str] | None = None,
        triggers_factory: TriggersFactory | None = None,
        stop_reasons: frozenset[str] | None = None,
    ) -> None:
        self.project_id = project_id
        self.user_prompt = user_prompt
        self.source_factory = source_factory
        self.system_prompt = system_prompt
        self.recovery_system_prompt = recovery_system_prompt or (lambda: system_prompt)
        self.writer = EventWriter(events)
        self.session = SessionManager(
            project_id,
            events=events,
            state=state,
            resume_session_id=resume_session_id,
        )
        self.triggers = triggers_factory(self.emit) if triggers_factory else None
        detector_kwargs: dict[str, Any] = {}
        if stop_reasons is not None:
            detector_kwargs["stop_reasons"] = stop_reasons
        self.detector = CompletionDetector(
            project_id,
            emit=self.emit,
            triggers=self.triggers,
            **detector_kwargs,
        )
        self.stop_requested = False
        self.sources: list[EventSource] = []
        self._consume_task: asyncio.Task[int | None] | None = None

    def emit(self, payload: Payload) -> None:
        """Queue a payload for the event log, tagged with the current session."""
        self.writer.enqueue(
            to_canonical(
                payload,
                project_id=self.project_id,
                session_id=self.session.event_session_id,
            )
        )

    def emit_stderr(self, line: str) -> None:
        self.emit({"type": "system", "subtype": "stderr", "line": line})

    async def handle(self, payload: Payload) -> None:
        if (
            self.session.awaiting_resume
            and payload.get("type") == "result"
            and payload.get("is_error")
            and is_session_not_found(json.dumps(payload, default=str))
        ):
            raise SessionNotFoundError(
                str(payload.get("result") or payload.get("error") or "no conversation found"),
                session_id=self.session.resume_session_id,
            )
        await self.session.observe(payload)
        self.emit(payload)
        await self.detector.observe(payload)

    async def _consume(self, source: EventSource) -> int | None:
        async with contextlib.aclosing(source.events()) as stream:
            async for payload in stream:
                await self.handle(payload)
        return source.exit_code

    async def consume(
        self,
        prompt: str,
        resume_session_id: str | None,
        system_prompt: str | None,
    ) -> int | None:
        """Build a source and run it to completion.

        Returns None when stopped by the user, including a stop that arrived
        before the source was built, in which case no agent is started.
        """
        if self.stop_requested:
            return None
        source = self.source_factory(prompt, resume_session_id, system_prompt)
        self.sources.append(source)
        if isinstance(source, ProcessSource) and source.on_stderr_line is None:
            source.on_stderr_line = self.emit_stderr
        self._consume_task = asyncio.create_task(self._consume(source))
        try:
            return await self._consume_task
        except asyncio.CancelledError:
            if self.stop_requested:
                return None
            raise

    def request_stop(self) -> None:
        """SIGTERM handler: record a cancelled outcome and stop the agent."""
        if self.stop_requested:
            return
        self.stop_requested = True
        print("[agent] stop requested")
        self.detector.cancel()
        if self._consume_task is not None and not self._consume_task.done():
            self._consume_task.cancel()

    async def _retry_fresh_session(self, error: SessionNotFoundError) -> None:
        self.session.mark_lost(str(error))
        if not self.session.begin_retry():
            await self.detector.on_retry_failure(str(error))
            return
        prompt = await self.session.recovery_prompt(self.user_prompt)
        if self.stop_requested:
            print("[agent] stopped while loading history, not retrying")
            return
        system_prompt = self.recovery_system_prompt()
        self.emit({
            "type": "system",
            "subtype": "debug",
            "message": "session not found, retrying with conversation history",
        })
        try:
            exit_code = await self.consume(prompt, None, system_prompt or None)
        except AgentSilentError as retry_error:
            await self.detector.on_silence(str(retry_error))
            return
        except Exception as retry_error:  # noqa: BLE001
            await self.detector.on_retry_failure(str(retry_error))
            return
        if exit_code is not None:
            await self.detector.on_exit(exit_code, retry=True)

    async def run(self) -> TurnOutcome:
        token = bind_log_context(project_id=self.project_id)
        resume = self.session.resume_session_id
        try:
            try:
                exit_code = await self.consume(
                    self.user_prompt,
                    resume,
                    None if resume else (self.system_prompt or None),
                )
            except SessionNotFoundError as error:
                await self._retry_fresh_session(error)
            except AgentSilentError as error:
                await self.detector.on_silence(str(error))
            except Exception as error:  # noqa: BLE001
                print(f"[agent] turn failed: {error}")
                await self.detector.on_exit(1, detail=str(error))
            else:
                if exit_code is not None:
                    await self.detector.on_exit(exit_code)
        finally:
            await self.detector.wait()
            await self.writer.drain()
            await self.session.clear()
            log_event(
                component="pipeline",
                event="turn.finished",
                message="turn finished",
                written=self.writer.written,
                failed=self.writer.failed,
            )
            reset_log_context(token)
        outcome = self.detector.outcome
        assert outcome is not None
        return outcome


async def run_driver(
    settings: DriverSettings,
    spec: BackendSpec,
    source_factory: SourceFactory,
) -> int:
    """Run one turn against Supabase with production side effects."""
    async with SupabaseStore(settings.supabase_url, settings.supabase_key) as store:

        def triggers_factory(emit: Callable[[Payload], None]) -> SideEffectTriggers:
            return SideEffectTriggers.for_project(
                project_id=settings.project_id,
                user_id=settings.user_id,
                source_dir=settings.working_directory,
                state=store,
                emit=emit,
            )

        pipeline = TurnPipeline(
            project_id=settings.project_id,
            user_prompt=settings.user_prompt,
            source_factory=source_factory,
            events=store,
            state=store,
            resume_session_id=settings.session_id,
            system_prompt=settings.system_prompt(),
            recovery_system_prompt=settings.recovery_system_prompt,
            triggers_factory=triggers_factory,
            stop_reasons=settings.stop_reasons or spec.stop_reasons,
        )
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, pipeline.request_stop)
        try:
            outcome = await pipeline.run()
        finally:
            loop.remove_signal_handler(signal.SIGTERM)
    print(f"[agent] turn finished: {outcome.status} ({outcome.source})")
    return 0 if outcome.status != "error" else 1
