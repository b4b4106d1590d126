"""Session capture and conversational continuity.

The backend owns its session store, and that store lives inside the sandbox.
When the sandbox is recreated the stored session token points at nothing and
the backend answers a resume with "No conversation found". The event log in
Supabase survives, so the manager rebuilds the conversation from it and the
pipeline retries the turn once as a fresh session with that history prepended
and the system instructions resent.

States: NoSession -> Active (token captured) -> Lost (resume rejected) ->
Cleared (turn over, running pid released).
"""

from __future__ import annotations

from typing import Any, Literal

from appily_agent.config import HISTORY_ASSISTANT_CHAR_LIMIT
from appily_agent.models import CanonicalEvent
from appily_agent.protocol import session_id_from_payload
from appily_agent.store import HISTORY_EVENT_TYPES, EventLog, ProjectStateStore
from appily_agent.utils.helpers import tprint, truncate_text
from appily_agent.utils.logging import log_event

print = tprint

type SessionState = Literal["NoSession", "Active", "Lost", "Cleared"]

SESSION_NOT_FOUND_MARKERS = (
    "no conversation found",
    "session not found",
    "no session found",
    "invalid session",
)
HISTORY_HEADER = "## Previous Conversation History:"
CURRENT_REQUEST_HEADER = "## Current Request:"


def is_session_not_found(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(marker in lowered for marker in SESSION_NOT_FOUND_MARKERS)


# ---------------------------------------------------------------------------
# History rendering
# ---------------------------------------------------------------------------


def user_text(event_data: dict[str, Any]) -> str | None:
    content = event_data.get("content")
    if isinstance(content, str):
        return content
    message = event_data.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return None


def assistant_text(event_data: dict[str, Any]) -> str | None:
    message = event_data.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    text = "\n".join(
        str(block.get("text") or "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    )
    return text or None


def render_history(
    events: list[CanonicalEvent],
    *,
    assistant_char_limit: int = HISTORY_ASSISTANT_CHAR_LIMIT,
) -> list[str]:
    """Render stored user/assistant events as "User: ..." / "Assistant: ..." lines.

    User events only count when their content is plain text, which skips
    tool results echoed back as user messages.
    """
    lines: list[str] = []
    for event in events:
        if event.event_type == "user":
            text = user_text(event.event_data)
            if text:
                lines.append(f"User: {text}")
        elif event.event_type == "assistant":
            text = assistant_text(event.event_data)
            if text:
                truncated = truncate_text(
                    text, assistant_char_limit, marker="...[truncated]",
                )
                lines.append(f"Assistant: {truncated}")
    return lines


def build_prompt_with_history(history_lines: list[str], user_prompt: str) -> str:
    lines = list(history_lines)
    # The caller stores the current message before launching the agent.
    if lines and lines[-1] == f"User: {user_prompt}":
        lines.pop()
    if not lines:
        return user_prompt
    return (
        f"{HISTORY_HEADER}\n\n"
        + "\n\n".join(lines)
        + f"\n\n{CURRENT_REQUEST_HEADER}\n{user_prompt}"
    )


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class SessionManager:
    """Tracks the session token for one turn and mirrors it into project state."""

    def __init__(
        self,
        project_id: str,
        *,
        events: EventLog,
        state: ProjectStateStore,
        resume_session_id: str | None = None,
    ) -> None:
        self.project_id = project_id
        self._events = events
        self._state = state
        self.resume_session_id = resume_session_id
        self.session_id: str | None = None
        self.state: SessionState = "Active" if resume_session_id else "NoSession"
        self.retried = False

    @property
    def awaiting_resume(self) -> bool:
        """A resume was attempted and the backend has not confirmed it yet."""
        return (
            self.state == "Active"
            and bool(self.resume_session_id)
            and self.session_id is None
        )

    @property
    def event_session_id(self) -> str | None:
        """Token to tag events with: the captured one, else the resumed one.

        Lost sessions tag nothing until the fresh session reports its token.
        """
        if self.session_id is not None:
            return self.session_id
        if self.state == "Active":
            return self.resume_session_id
        return None

    async def observe(self, payload: dict[str, Any]) -> str | None:
        """Capture the session token from an init payload.

        Returns the token when this payload changed it.
        """
        session_id = session_id_from_payload(payload)
        if session_id is None or session_id == self.session_id:
            return None
        self.session_id = session_id
        self.state = "Active"
        print(f"[session] captured session_id={session_id}")
        try:
            await self._state.set_session(self.project_id, session_id)
        except Exception as error:  # noqa: BLE001
            print(f"[session] failed to persist session_id: {error}")
            log_event(
                component="session",
                event="session.persist_failed",
                level="error",
                message=str(error),
                session_id=session_id,
            )
        return session_id

    def mark_lost(self, detail: str = "") -> None:
        print(
            f"[session] resume rejected for session_id={self.resume_session_id}"
            f"{': ' + detail if detail else ''}"
        )
        log_event(
            component="session",
            event="session.lost",
            level="warning",
            message=detail,
            session_id=self.resume_session_id,
        )
        self.state = "Lost"
        self.resume_session_id = None

    def begin_retry(self) -> bool:
        """Claim the single retry. Returns False when it is already spent."""
        if self.retried:
            return False
        self.retried = True
        return True

    async def load_history(self) -> list[CanonicalEvent]:
        try:
            return await self._events.list_events(
                self.project_id, HISTORY_EVENT_TYPES,
            )
        except Exception as error:  # noqa: BLE001
            print(f"[session] failed to load history: {error}")
            log_event(
                component="session",
                event="history.load_failed",
                level="error",
                message=str(error),
            )
            return []

    async def recovery_prompt(self, user_prompt: str) -> str:
        history = render_history(await self.load_history())
        print(f"[session] rebuilding context from {len(history)} history entries")
        return build_prompt_with_history(history, user_prompt)

    async def clear(self) -> None:
        self.state = "Cleared"
        try:
            await self._state.clear_running(self.project_id)
        except Exception as error:  # noqa: BLE001
            print(f"[session] failed to clear running marker: {error}")
            log_event(
                component="session",
                event="running.clear_failed",
                level="error",
                message=str(error),
            )
