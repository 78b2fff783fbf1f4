"""EventBus bridging of engine callbacks to typed events."""

from __future__ import annotations

import asyncio

import pytest

from fakes import ScriptedProvider, make_registry, text_reply, tool_reply
from steward.adapters.event_bus import EventBus
from steward.adapters.events import (
    PermissionRequested,
    TaskStatusChanged,
    TextChunk,
    ToolResultReady,
    TurnEvent,
    TurnFailed,
    TurnFinished,
    TurnStarted,
)
from steward.engine.errors import ProviderError
from steward.engine.orchestrator import TurnOrchestrator
from steward.engine.tasks import TaskManager


def _drain(bus: EventBus) -> list[TurnEvent]:
    events = []
    while not bus._queue.empty():
        events.append(bus._queue.get_nowait())
    return events


@pytest.mark.asyncio
async def test_turn_callbacks_publish_events():
    bus = EventBus()
    provider = ScriptedProvider([
        tool_reply(("c1", "bash", {"command": "ls"}), text="Let me look. "),
        text_reply("Done."),
    ])
    orch = TurnOrchestrator(
        provider, make_registry(),
        callbacks=bus.turn_callbacks(permission_handler=lambda req: True),
    )

    await orch.run("list files")
    events = _drain(bus)

    kinds = [e.event_type for e in events]
    assert kinds[0] == "turn_started"
    assert kinds[-1] == "turn_finished"
    assert kinds.index("permission_requested") < kinds.index("tool_result_ready")
    [perm] = [e for e in events if isinstance(e, PermissionRequested)]
    assert perm.description == "Run command: ls"
    [result] = [e for e in events if isinstance(e, ToolResultReady)]
    assert result.result == "ran ls"
    assert result.status == "completed"
    finished = events[-1]
    assert isinstance(finished, TurnFinished)
    assert finished.response == "Done."
    assert isinstance(events[0], TurnStarted)


@pytest.mark.asyncio
async def test_turn_callbacks_publish_provider_failure():
    bus = EventBus()
    orch = TurnOrchestrator(
        ScriptedProvider([RuntimeError("503")]), make_registry(),
        callbacks=bus.turn_callbacks(),
    )
    with pytest.raises(ProviderError):
        await orch.run("hi")
    events = _drain(bus)
    assert isinstance(events[-1], TurnFailed)
    assert "503" in events[-1].error


@pytest.mark.asyncio
async def test_task_callbacks_publish_status_snapshots():
    bus = EventBus()
    manager = TaskManager(cleanup_interval_seconds=0, callbacks=bus.task_callbacks())

    async def work(token):
        return "ok"

    task = manager.create_task("job", work)
    await task.wait()
    for _ in range(5):
        await asyncio.sleep(0)

    statuses = [e.status for e in _drain(bus) if isinstance(e, TaskStatusChanged)]
    assert statuses == ["pending", "running", "complete"]


@pytest.mark.asyncio
async def test_consume_stops_after_close():
    bus = EventBus()
    await bus.emit(TextChunk(text="a"))
    await bus.emit(TextChunk(text="b"))
    bus.close()

    received = [e.text async for e in bus.consume()]
    assert received == ["a", "b"]

    await bus.emit(TextChunk(text="dropped"))
    assert bus.qsize() == 0


@pytest.mark.asyncio
async def test_reset_drains_and_reopens():
    bus = EventBus()
    await bus.emit(TextChunk(text="stale"))
    bus.close()
    bus.reset()
    assert bus.closed is False
    assert bus.qsize() == 0
