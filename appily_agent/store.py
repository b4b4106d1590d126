"""Durable event log and project state.

EventLog and ProjectStateStore are the two narrow interfaces the pipeline
writes through. SupabaseStore implements both over Supabase's PostgREST API
(agent_events, projects, project_snapshots tables); MemoryStore implements
them in process for tests and offline runs.

EventWriter sits in front of an EventLog: append() never raises, and
enqueue() chains every write onto the previous one so a burst of events is
stored in exactly the order it was observed, even though each insert is its
own network call.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable

import httpx

from appily_agent.models import CanonicalEvent, ProjectState
from appily_agent.utils.helpers import tprint
from appily_agent.utils.logging import log_event

print = tprint

HISTORY_EVENT_TYPES = ("user", "assistant")


@runtime_checkable
class EventLog(Protocol):
    async def append(self, event: CanonicalEvent) -> None:
        ...

    async def list_events(
        self,
        project_id: str,
        event_types: Iterable[str] | None = None,
    ) -> list[CanonicalEvent]:
        """Events for a project ordered by created_at."""
        ...


@runtime_checkable
class ProjectStateStore(Protocol):
    async def get_project(self, project_id: str) -> ProjectState | None:
        ...

    async def set_session(self, project_id: str, session_id: str) -> None:
        ...

    async def set_running(self, project_id: str, pid: int) -> None:
        ...

    async def clear_running(self, project_id: str) -> None:
        ...

    async def set_bundle_url(self, project_id: str, bundle_url: str) -> None:
        ...

    async def next_snapshot_version(self, project_id: str) -> int:
        ...

    async def record_snapshot(self, row: dict[str, Any]) -> None:
        ...

    async def snapshot_path(
        self, project_id: str, version: int | None = None,
    ) -> str | None:
        """R2 prefix of the given snapshot version, or of the latest one."""
        ...


# ---------------------------------------------------------------------------
# Supabase (PostgREST)
# ---------------------------------------------------------------------------


class SupabaseStore:
    """EventLog + ProjectStateStore backed by Supabase's REST interface."""

    def __init__(
        self,
        url: str,
        service_role_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = url.rstrip("/") + "/rest/v1"
        self._headers = {
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Content-Type": "application/json",
        }

    async def __aenter__(self) -> SupabaseStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        response = await self._client.request(
            method,
            f"{self._base_url}/{table}",
            params=params,
            json=json_body,
            headers=headers,
        )
        response.raise_for_status()
        return response

    async def append(self, event: CanonicalEvent) -> None:
        await self._request(
            "POST",
            "agent_events",
            json_body=event.to_row(),
            prefer="return=minimal",
        )

    async def list_events(
        self,
        project_id: str,
        event_types: Iterable[str] | None = None,
    ) -> list[CanonicalEvent]:
        params = {
            "select": "session_id,project_id,event_type,event_data,created_at",
            "project_id": f"eq.{project_id}",
            "order": "created_at.asc",
        }
        if event_types is not None:
            params["event_type"] = f"in.({','.join(event_types)})"
        response = await self._request("GET", "agent_events", params=params)
        return [CanonicalEvent.model_validate(row) for row in response.json()]

    async def get_project(self, project_id: str) -> ProjectState | None:
        response = await self._request(
            "GET",
            "projects",
            params={
                "select": "id,session_id,agent_pid,bundle_url",
                "id": f"eq.{project_id}",
                "limit": "1",
            },
        )
        rows = response.json()
        if not rows:
            return None
        row = rows[0]
        return ProjectState(
            project_id=row["id"],
            session_id=row.get("session_id"),
            agent_pid=row.get("agent_pid"),
            bundle_url=row.get("bundle_url"),
        )

    async def _update_project(self, project_id: str, fields: dict[str, Any]) -> None:
        await self._request(
            "PATCH",
            "projects",
            params={"id": f"eq.{project_id}"},
            json_body=fields,
            prefer="return=minimal",
        )

    async def set_session(self, project_id: str, session_id: str) -> None:
        await self._update_project(project_id, {"session_id": session_id})

    async def set_running(self, project_id: str, pid: int) -> None:
        await self._update_project(project_id, {"agent_pid": pid})

    async def clear_running(self, project_id: str) -> None:
        await self._update_project(project_id, {"agent_pid": None})

    async def set_bundle_url(self, project_id: str, bundle_url: str) -> None:
        await self._update_project(project_id, {"bundle_url": bundle_url})

    async def next_snapshot_version(self, project_id: str) -> int:
        response = await self._request(
            "GET",
            "project_snapshots",
            params={
                "select": "version",
                "project_id": f"eq.{project_id}",
                "order": "version.desc",
                "limit": "1",
            },
        )
        rows = response.json()
        if not rows or rows[0].get("version") is None:
            return 1
        return int(rows[0]["version"]) + 1

    async def record_snapshot(self, row: dict[str, Any]) -> None:
        await self._request(
            "POST",
            "project_snapshots",
            json_body=row,
            prefer="return=minimal",
        )

    async def snapshot_path(
        self, project_id: str, version: int | None = None,
    ) -> str | None:
        params = {
            "select": "r2_path,version",
            "project_id": f"eq.{project_id}",
            "order": "version.desc",
            "limit": "1",
        }
        if version is not None:
            params["version"] = f"eq.{version}"
        response = await self._request("GET", "project_snapshots", params=params)
        rows = response.json()
        return rows[0].get("r2_path") if rows else None


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class MemoryStore:
    """EventLog + ProjectStateStore kept in process memory."""

    def __init__(self) -> None:
        self.events: list[CanonicalEvent] = []
        self.projects: dict[str, ProjectState] = {}
        self.snapshots: list[dict[str, Any]] = []

    def _project(self, project_id: str) -> ProjectState:
        state = self.projects.get(project_id)
        if state is None:
            state = ProjectState(project_id=project_id)
            self.projects[project_id] = state
        return state

    async def append(self, event: CanonicalEvent) -> None:
        self.events.append(event)

    async def list_events(
        self,
        project_id: str,
        event_types: Iterable[str] | None = None,
    ) -> list[CanonicalEvent]:
        wanted = set(event_types) if event_types is not None else None
        selected = [
            event
            for event in self.events
            if event.project_id == project_id
            and (wanted is None or event.event_type in wanted)
        ]
        return sorted(selected, key=lambda event: event.created_at)

    async def get_project(self, project_id: str) -> ProjectState | None:
        return self.projects.get(project_id)

    async def set_session(self, project_id: str, session_id: str) -> None:
        self._project(project_id).session_id = session_id

    async def set_running(self, project_id: str, pid: int) -> None:
        self._project(project_id).agent_pid = pid

    async def clear_running(self, project_id: str) -> None:
        self._project(project_id).agent_pid = None

    async def set_bundle_url(self, project_id: str, bundle_url: str) -> None:
        self._project(project_id).bundle_url = bundle_url

    async def next_snapshot_version(self, project_id: str) -> int:
        versions = [
            int(row["version"])
            for row in self.snapshots
            if row.get("project_id") == project_id
        ]
        return max(versions, default=0) + 1

    async def record_snapshot(self, row: dict[str, Any]) -> None:
        self.snapshots.append(dict(row))

    async def snapshot_path(
        self, project_id: str, version: int | None = None,
    ) -> str | None:
        rows = [
            row
            for row in self.snapshots
            if row.get("project_id") == project_id
            and (version is None or row.get("version") == version)
        ]
        if not rows:
            return None
        return max(rows, key=lambda row: int(row["version"])).get("r2_path")


# ---------------------------------------------------------------------------
# Ordered writer
# ---------------------------------------------------------------------------


class EventWriter:
    """Append-only writer with a single ordered queue per turn."""

    def __init__(self, log: EventLog) -> None:
        self._log = log
        self._tail: asyncio.Task[bool] | None = None
        self.written = 0
        self.failed = 0

    async def append(self, event: CanonicalEvent) -> bool:
        """Write one event now. Returns False instead of raising on failure."""
        try:
            await self._log.append(event)
        except Exception as error:  # noqa: BLE001
            self.failed += 1
            print(f"[store] append failed type={event.event_type}: {error}")
            log_event(
                component="store",
                event="append.failed",
                level="error",
                message=str(error),
                event_type=event.event_type,
                project_id=event.project_id,
            )
            return False
        self.written += 1
        return True

    def enqueue(self, event: CanonicalEvent) -> asyncio.Task[bool]:
        """Schedule a write after every previously enqueued write."""
        previous = self._tail

        async def chained() -> bool:
            if previous is not None:
                await asyncio.wait([previous])
            return await self.append(event)

        task = asyncio.create_task(chained())
        self._tail = task
        return task

    async def drain(self) -> None:
        """Wait until every enqueued write has finished."""
        while self._tail is not None:
            tail = self._tail
            await asyncio.wait([tail])
            if tail is self._tail:
                return
