from __future__ import annotations

import asyncio
import json
import random
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from appily_agent.models import CanonicalEvent
from appily_agent.store import EventWriter, MemoryStore, SupabaseStore


def make_event(index: int, event_type: str = "assistant") -> CanonicalEvent:
    return CanonicalEvent(
        session_id="s1",
        project_id="p1",
        event_type=event_type,
        event_data={"index": index},
    )


class SlowLog(MemoryStore):
    def __init__(self, seed: int = 7, fail_on: set[int] | None = None) -> None:
        super().__init__()
        self._random = random.Random(seed)
        self._fail_on = fail_on or set()

    async def append(self, event: CanonicalEvent) -> None:
        await asyncio.sleep(self._random.uniform(0, 0.005))
        if event.event_data["index"] in self._fail_on:
            raise httpx.ConnectError("connection reset")
        await super().append(event)


@pytest.mark.parametrize("seed", range(12))
def test_enqueued_events_are_stored_in_observation_order(seed: int) -> None:
    chooser = random.Random(seed)
    count = chooser.randint(1, 60)
    failing = set(chooser.sample(range(count), k=chooser.randint(0, min(5, count))))
    log = SlowLog(seed=seed, fail_on=failing)

    async def run() -> EventWriter:
        writer = EventWriter(log)
        for index in range(count):
            writer.enqueue(make_event(index))
            if chooser.random() < 0.3:
                await asyncio.sleep(0)
        await writer.drain()
        return writer

    writer = asyncio.run(run())
    expected = [index for index in range(count) if index not in failing]
    assert [event.event_data["index"] for event in log.events] == expected
    assert writer.written == len(expected)
    assert writer.failed == len(failing)


def test_failed_append_does_not_block_later_events() -> None:
    log = SlowLog(fail_on={3})

    async def run() -> tuple[EventWriter, list[bool]]:
        writer = EventWriter(log)
        tasks = [writer.enqueue(make_event(index)) for index in range(6)]
        results = await asyncio.gather(*tasks)
        await writer.drain()
        return writer, list(results)

    writer, results = asyncio.run(run())
    assert results == [True, True, True, False, True, True]
    assert [event.event_data["index"] for event in log.events] == [0, 1, 2, 4, 5]
    assert writer.failed == 1


def test_drain_waits_for_events_enqueued_while_draining() -> None:
    log = SlowLog()

    async def run() -> None:
        writer = EventWriter(log)
        writer.enqueue(make_event(0))

        async def late() -> None:
            await asyncio.sleep(0)
            writer.enqueue(make_event(1))

        late_task = asyncio.create_task(late())
        await writer.drain()
        await late_task
        await writer.drain()

    asyncio.run(run())
    assert [event.event_data["index"] for event in log.events] == [0, 1]


def test_memory_store_lists_history_by_created_at() -> None:
    store = MemoryStore()
    base = datetime(2026, 1, 1, tzinfo=UTC)

    async def run() -> list[CanonicalEvent]:
        await store.append(CanonicalEvent(
            project_id="p1", event_type="assistant", created_at=base + timedelta(seconds=2),
        ))
        await store.append(CanonicalEvent(
            project_id="p1", event_type="user", created_at=base,
        ))
        await store.append(CanonicalEvent(
            project_id="p1", event_type="system", created_at=base + timedelta(seconds=1),
        ))
        await store.append(CanonicalEvent(
            project_id="other", event_type="user", created_at=base,
        ))
        return await store.list_events("p1", ("user", "assistant"))

    events = asyncio.run(run())
    assert [event.event_type for event in events] == ["user", "assistant"]


def test_memory_store_snapshot_versions_increase() -> None:
    store = MemoryStore()

    async def run() -> tuple[int, int]:
        first = await store.next_snapshot_version("p1")
        await store.record_snapshot({"project_id": "p1", "version": first})
        return first, await store.next_snapshot_version("p1")

    assert asyncio.run(run()) == (1, 2)


def test_supabase_store_speaks_postgrest() -> None:
    requests: list[httpx.Request] = []
    row = {
        "session_id": "s1",
        "project_id": "p1",
        "event_type": "user",
        "event_data": {"content": "hi"},
        "created_at": "2026-01-01T00:00:00+00:00",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET" and request.url.path.endswith("/agent_events"):
            return httpx.Response(200, json=[row])
        if request.method == "GET" and request.url.path.endswith("/project_snapshots"):
            return httpx.Response(200, json=[{"version": 3}])
        if request.method == "GET" and request.url.path.endswith("/projects"):
            return httpx.Response(
                200, json=[{"id": "p1", "session_id": "s1", "agent_pid": 42}],
            )
        return httpx.Response(201)

    async def run() -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with SupabaseStore("https://db.example.com/", "service-key", client=client) as store:
            await store.append(make_event(1))
            events = await store.list_events("p1", ("user", "assistant"))
            assert events[0].event_data == {"content": "hi"}
            project = await store.get_project("p1")
            assert project is not None
            assert project.agent_pid == 42
            await store.clear_running("p1")
            assert await store.next_snapshot_version("p1") == 4
        await client.aclose()

    asyncio.run(run())

    insert = requests[0]
    assert insert.method == "POST"
    assert str(insert.url) == "https://db.example.com/rest/v1/agent_events"
    assert insert.headers["apikey"] == "service-key"
    assert insert.headers["authorization"] == "Bearer service-key"
    assert insert.headers["prefer"] == "return=minimal"
    assert json.loads(insert.content)["event_data"] == {"index": 1}

    listing = requests[1]
    assert listing.url.params["project_id"] == "eq.p1"
    assert listing.url.params["event_type"] == "in.(user,assistant)"
    assert listing.url.params["order"] == "created_at.asc"

    clear = requests[3]
    assert clear.method == "PATCH"
    assert clear.url.params["id"] == "eq.p1"
    assert json.loads(clear.content) == {"agent_pid": None}


def test_supabase_errors_are_counted_not_raised_by_writer() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "boom"})

    async def run() -> EventWriter:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = SupabaseStore("https://db.example.com", "key", client=client)
        writer = EventWriter(store)
        assert await writer.append(make_event(1)) is False
        await client.aclose()
        return writer

    writer = asyncio.run(run())
    assert writer.failed == 1
    assert writer.written == 0


def test_memory_store_snapshot_path_picks_latest_or_requested_version() -> None:
    store = MemoryStore()

    async def run() -> tuple[str | None, str | None, str | None]:
        await store.record_snapshot({"project_id": "p1", "version": 1, "r2_path": "v1/"})
        await store.record_snapshot({"project_id": "p1", "version": 2, "r2_path": "v2/"})
        return (
            await store.snapshot_path("p1"),
            await store.snapshot_path("p1", 1),
            await store.snapshot_path("p2"),
        )

    assert asyncio.run(run()) == ("v2/", "v1/", None)


def test_supabase_snapshot_path_filters_by_version() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=[{"r2_path": "projects/u1/p1/v9/", "version": 2}])

    async def run() -> str | None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with SupabaseStore("https://db.example.com", "key", client=client) as store:
            path = await store.snapshot_path("p1", 2)
        await client.aclose()
        return path

    assert asyncio.run(run()) == "projects/u1/p1/v9/"
    assert requests[0].url.params["version"] == "eq.2"
    assert requests[0].url.params["order"] == "version.desc"
