"""Async event bus bridging engine callbacks to frontend consumers.

The orchestrator and task manager fire typed callbacks; the EventBus
turns them into TurnEvent objects on a queue that a frontend drains
with ``async for event in bus.consume()``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from steward.adapters.events import (
    PermissionRequested,
    TaskStatusChanged,
    TextChunk,
    ToolResultReady,
    ToolUseStarted,
    TurnEvent,
    TurnFailed,
    TurnFinished,
    TurnStarted,
    UsageReported,
)
from steward.engine.callbacks import TurnCallbacks, resolve_answer
from steward.engine.models import PermissionRequest, ToolInvocation, TurnResult
from steward.engine.tasks import BackgroundTask, TaskManagerCallbacks

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging engine callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[TurnEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: TurnEvent) -> None:
        """Queue an event, waiting for space rather than dropping."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[TurnEvent]:
        """Yield events as they arrive. Stops on close() once drained."""
        while True:
            if self._closed and self._queue.empty():
                return
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop once queued events are delivered."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus for a new turn."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._closed = False

    # ── Engine wiring ──

    def turn_callbacks(
        self,
        permission_handler: Callable[[PermissionRequest], Any] | None = None,
    ) -> TurnCallbacks:
        """Build TurnCallbacks that publish every hook onto this bus.

        Permission prompts need an answer, which a queue cannot give:
        the request is published and then delegated to
        ``permission_handler``. Without one, confirmation requests are
        denied by the orchestrator.
        """

        async def on_turn_start(turn: int) -> None:
            await self.emit(TurnStarted(turn=turn))

        async def on_text(text: str) -> None:
            await self.emit(TextChunk(text=text))

        async def on_tool_use(invocation: ToolInvocation) -> None:
            await self.emit(ToolUseStarted(
                invocation_id=invocation.invocation_id,
                tool_name=invocation.name,
                arguments=dict(invocation.arguments),
            ))

        async def on_permission_request(request: PermissionRequest) -> Any:
            await self.emit(PermissionRequested(
                tool_name=request.tool,
                description=request.description,
                arguments=dict(request.args),
            ))
            return await resolve_answer(permission_handler(request))

        async def on_tool_result(invocation: ToolInvocation) -> None:
            await self.emit(ToolResultReady(
                invocation_id=invocation.invocation_id,
                tool_name=invocation.name,
                status=invocation.status.value,
                result=invocation.result or "",
                is_error=invocation.is_error,
                truncated=invocation.truncated,
            ))

        async def on_usage(input_tokens: int, output_tokens: int) -> None:
            await self.emit(UsageReported(
                input_tokens=input_tokens, output_tokens=output_tokens,
            ))

        async def on_turn_complete(result: TurnResult) -> None:
            await self.emit(TurnFinished(
                state=result.state.value,
                iterations=result.iterations,
                response=result.response,
                limit_reached=result.limit_reached,
                notice=result.notice,
                input_tokens=result.usage.input_tokens,
                output_tokens=result.usage.output_tokens,
            ))

        async def on_error(exc: BaseException) -> None:
            await self.emit(TurnFailed(error=str(exc)))

        return TurnCallbacks(
            on_turn_start=on_turn_start,
            on_text=on_text,
            on_tool_use=on_tool_use,
            on_permission_request=(
                on_permission_request if permission_handler is not None else None
            ),
            on_tool_result=on_tool_result,
            on_usage=on_usage,
            on_turn_complete=on_turn_complete,
            on_error=on_error,
        )

    def task_callbacks(self) -> TaskManagerCallbacks:
        """Build TaskManagerCallbacks that publish task status changes."""

        def publish(task: BackgroundTask) -> Any:
            # Snapshot now; the emit coroutine runs on a later tick.
            return self.emit(TaskStatusChanged(
                task_id=task.id,
                name=task.name,
                status=task.status.value,
                output=task.output,
            ))

        return TaskManagerCallbacks(
            on_task_created=publish,
            on_task_started=publish,
            on_task_finished=publish,
        )
