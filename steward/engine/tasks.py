"""Background task manager.

Lets a long-running operation be detached from the active turn so the
user can keep working while it completes. Tasks move through

    PENDING -> RUNNING -> COMPLETE | ERROR

and abort() short-circuits to ERROR through a cooperative
CancellationToken. The manager never force-kills an operation: code that
ignores its token simply runs to completion, and its late result is
discarded because finished tasks are immutable.
"""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from .callbacks import dispatch_callback
from .cancellation import CancellationToken
from .errors import TaskNotFoundError, TaskStateError, TurnCancelledError
from .lifecycle import can_transition_task
from .models import TaskOutput, TaskStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# An operation receives the task's cancellation token and returns a value
# that becomes the task output (via str()).
TaskOperation = Callable[[CancellationToken], Awaitable[Any]]

ABORTED_MESSAGE = "Task aborted by user"
DEFAULT_MAX_COMPLETED_TASKS = 50
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TaskCallbacks:
    """Per-task listeners. May be attached any time before the task starts."""
    on_start: Callable[[BackgroundTask], Any] | None = None
    on_progress: Callable[[str], Any] | None = None
    on_complete: Callable[[str], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None
    on_finish: Callable[[BackgroundTask], Any] | None = None


@dataclass
class TaskManagerCallbacks:
    """Manager-wide listeners, fired for every task."""
    on_task_created: Callable[[BackgroundTask], Any] | None = None
    on_task_backgrounded: Callable[[BackgroundTask], Any] | None = None
    on_task_started: Callable[[BackgroundTask], Any] | None = None
    on_task_finished: Callable[[BackgroundTask], Any] | None = None
    on_task_removed: Callable[[BackgroundTask], Any] | None = None


class BackgroundTask:
    """A single detached operation and its captured outcome."""

    def __init__(
        self,
        task_id: str,
        name: str,
        operation: TaskOperation,
        *,
        description: str = "",
        callbacks: TaskCallbacks | None = None,
        observer: Callable[[str, BackgroundTask], None] | None = None,
    ) -> None:
        self.id = task_id
        self.name = name
        self.description = description
        self.created_at = _utcnow()
        self.callbacks = callbacks or TaskCallbacks()
        self.token = CancellationToken()
        self._operation = operation
        self._observer = observer
        self._status = TaskStatus.PENDING
        self._output = ""
        self._error: BaseException | None = None
        self._started_at: float | None = None
        self._ended_at: float | None = None
        self._ended_wall: datetime | None = None
        self._progress: list[str] = []
        self._done: asyncio.Event | None = None

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def output(self) -> str:
        return self._output

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def is_running(self) -> bool:
        return self._status == TaskStatus.RUNNING

    @property
    def is_finished(self) -> bool:
        return self._status in (TaskStatus.COMPLETE, TaskStatus.ERROR)

    @property
    def duration(self) -> float:
        """Seconds since start (or total runtime once finished)."""
        if self._started_at is None:
            return 0.0
        end = self._ended_at if self._ended_at is not None else time.monotonic()
        return end - self._started_at

    @property
    def ended_at(self) -> datetime | None:
        return self._ended_wall

    def progress_messages(self) -> list[str]:
        return list(self._progress)

    async def start(self) -> None:
        """Run the operation to completion in the current coroutine."""
        self._begin()
        await self._execute()

    def progress(self, message: str) -> None:
        self._progress.append(message)
        dispatch_callback(
            self.callbacks.on_progress, message, label=f"task {self.id} on_progress",
        )

    def abort(self) -> bool:
        """Cooperatively cancel the task. Returns False if already finished."""
        if self.is_finished:
            return False
        self.token.cancel("Task aborted")
        logger.info("Background task %s (%s) aborted", self.id, self.name)
        return self._finish(
            TaskStatus.ERROR,
            output=ABORTED_MESSAGE,
            error=TurnCancelledError("Task aborted"),
        )

    async def wait(self) -> str:
        """Suspend until the task finishes; returns its output."""
        if not self.is_finished:
            if self._done is None:
                self._done = asyncio.Event()
            await self._done.wait()
        return self._output

    def _begin(self) -> None:
        if not can_transition_task(self._status, TaskStatus.RUNNING):
            raise TaskStateError(self.id, self._status.value, TaskStatus.RUNNING.value)
        self._status = TaskStatus.RUNNING
        self._started_at = time.monotonic()
        logger.info("Background task %s (%s) started", self.id, self.name)
        self._notify("started")
        dispatch_callback(self.callbacks.on_start, self, label=f"task {self.id} on_start")

    async def _execute(self) -> None:
        try:
            result = await self._operation(self.token)
        except asyncio.CancelledError:
            self._finish(
                TaskStatus.ERROR,
                output="Task cancelled",
                error=TurnCancelledError("Task cancelled"),
            )
            raise
        except Exception as exc:
            self._finish(TaskStatus.ERROR, output=str(exc), error=exc)
        else:
            self._finish(TaskStatus.COMPLETE, output="" if result is None else str(result))
        finally:
            if not self.is_finished:
                self._finish(
                    TaskStatus.ERROR,
                    output="Task ended without a result",
                    error=RuntimeError("Task ended without a result"),
                )

    def _finish(
        self,
        status: TaskStatus,
        *,
        output: str,
        error: BaseException | None = None,
    ) -> bool:
        if not can_transition_task(self._status, status):
            logger.debug(
                "Background task %s already %s; discarding late %s",
                self.id, self._status.value, status.value,
            )
            return False
        self._status = status
        self._output = output
        self._error = error
        self._ended_at = time.monotonic()
        if self._started_at is None:
            self._started_at = self._ended_at
        self._ended_wall = _utcnow()
        if self._done is not None:
            self._done.set()
        logger.info(
            "Background task %s (%s) finished status=%s duration=%.2fs",
            self.id, self.name, status.value, self.duration,
        )
        if status == TaskStatus.COMPLETE:
            dispatch_callback(
                self.callbacks.on_complete, output, label=f"task {self.id} on_complete",
            )
        elif error is not None:
            dispatch_callback(
                self.callbacks.on_error, error, label=f"task {self.id} on_error",
            )
        dispatch_callback(self.callbacks.on_finish, self, label=f"task {self.id} on_finish")
        self._notify("finished")
        return True

    def _notify(self, event: str) -> None:
        if self._observer is None:
            return
        try:
            self._observer(event, self)
        except Exception:
            logger.warning("Task observer failed for %s", self.id, exc_info=True)

    def __repr__(self) -> str:
        return f"BackgroundTask(id={self.id!r}, name={self.name!r}, status={self._status.value})"


class TaskManager:
    """Registry of background tasks with retention and cancellation."""

    def __init__(
        self,
        *,
        max_completed_tasks: int = DEFAULT_MAX_COMPLETED_TASKS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        callbacks: TaskManagerCallbacks | None = None,
    ) -> None:
        self._tasks: dict[str, BackgroundTask] = {}
        self._runners: dict[str, asyncio.Task] = {}
        self._counter = itertools.count(1)
        self._max_completed = max_completed_tasks
        self._cleanup_interval = cleanup_interval_seconds
        self._callbacks = callbacks or TaskManagerCallbacks()
        self._sweeper: asyncio.Task | None = None
        self._verbose = False

    # ── Creation ──

    def create_task(
        self,
        name: str,
        operation: TaskOperation,
        *,
        description: str = "",
        callbacks: TaskCallbacks | None = None,
    ) -> BackgroundTask:
        """Register a task and start it immediately without blocking.

        Must be called from a running event loop. The returned task is
        already RUNNING.
        """
        # Raises RuntimeError before anything is registered.
        asyncio.get_running_loop()
        task = self._register(name, operation, description, callbacks)
        self._launch(task)
        return task

    def background_operation(
        self,
        name: str,
        operation: TaskOperation,
        description: str = "",
    ) -> BackgroundTask:
        """Detach an operation into a task that starts on the next loop tick.

        The returned task is still PENDING, so the caller can attach
        callbacks before execution begins.
        """
        loop = asyncio.get_running_loop()
        task = self._register(name, operation, description, None)
        dispatch_callback(
            self._callbacks.on_task_backgrounded, task, label="on_task_backgrounded",
        )
        loop.call_soon(self._launch, task)
        return task

    def _register(
        self,
        name: str,
        operation: TaskOperation,
        description: str,
        callbacks: TaskCallbacks | None,
    ) -> BackgroundTask:
        task = BackgroundTask(
            self._generate_id(),
            name,
            operation,
            description=description,
            callbacks=callbacks,
            observer=self._on_task_event,
        )
        self._tasks[task.id] = task
        self._ensure_sweeper()
        logger.debug("Background task %s (%s) registered", task.id, name)
        dispatch_callback(self._callbacks.on_task_created, task, label="on_task_created")
        return task

    def _launch(self, task: BackgroundTask) -> None:
        if task.status != TaskStatus.PENDING:
            # Aborted or removed before its first tick.
            return
        task._begin()
        runner = asyncio.get_running_loop().create_task(task._execute())
        self._runners[task.id] = runner
        runner.add_done_callback(lambda _r, tid=task.id: self._runners.pop(tid, None))

    def _on_task_event(self, event: str, task: BackgroundTask) -> None:
        if event == "started":
            dispatch_callback(self._callbacks.on_task_started, task, label="on_task_started")
        elif event == "finished":
            dispatch_callback(self._callbacks.on_task_finished, task, label="on_task_finished")

    # ── Queries ──

    def get_task(self, task_id: str) -> BackgroundTask | None:
        return self._tasks.get(task_id)

    def require_task(self, task_id: str) -> BackgroundTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get_all_tasks(self) -> list[BackgroundTask]:
        return list(self._tasks.values())

    def get_tasks_by_status(self, status: TaskStatus) -> list[BackgroundTask]:
        return [t for t in self._tasks.values() if t.status == status]

    def get_running_tasks(self) -> list[BackgroundTask]:
        return self.get_tasks_by_status(TaskStatus.RUNNING)

    def get_pending_tasks(self) -> list[BackgroundTask]:
        return self.get_tasks_by_status(TaskStatus.PENDING)

    def get_completed_tasks(self) -> list[BackgroundTask]:
        return self.get_tasks_by_status(TaskStatus.COMPLETE)

    def get_failed_tasks(self) -> list[BackgroundTask]:
        return self.get_tasks_by_status(TaskStatus.ERROR)

    def get_task_output(self, task_id: str) -> TaskOutput | None:
        """Captured output of a finished task, or None."""
        task = self._tasks.get(task_id)
        if task is None or not task.is_finished:
            return None
        return TaskOutput(
            task_id=task.id,
            output=task.output,
            timestamp=task.ended_at or task.created_at,
            is_error=task.status == TaskStatus.ERROR,
        )

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        counts["total"] = len(self._tasks)
        return counts

    # ── Retention and control ──

    def remove_task(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        if not task.is_finished:
            task.abort()
        del self._tasks[task_id]
        dispatch_callback(self._callbacks.on_task_removed, task, label="on_task_removed")
        return True

    def cleanup_completed(self) -> int:
        """Evict the oldest finished tasks beyond the retention limit."""
        finished = [t for t in self._tasks.values() if t.is_finished]
        if len(finished) <= self._max_completed:
            return 0
        # dict order is creation order, so the head of the list is oldest.
        excess = finished[: len(finished) - self._max_completed]
        for task in excess:
            del self._tasks[task.id]
        logger.debug("Evicted %d finished background tasks", len(excess))
        return len(excess)

    def clear_finished(self) -> int:
        finished = [t for t in self._tasks.values() if t.is_finished]
        for task in finished:
            del self._tasks[task.id]
        return len(finished)

    def cancel_all(self) -> int:
        """Abort every pending or running task. Returns how many."""
        active = [t for t in self._tasks.values() if not t.is_finished]
        for task in active:
            task.abort()
        return len(active)

    def set_verbose(self, verbose: bool) -> None:
        self._verbose = verbose

    def is_verbose(self) -> bool:
        return self._verbose

    def toggle_verbose(self) -> bool:
        self._verbose = not self._verbose
        return self._verbose

    async def shutdown(self) -> None:
        """Stop the retention sweep and abort outstanding tasks."""
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        aborted = self.cancel_all()
        if aborted:
            logger.info("TaskManager shutdown aborted %d task(s)", aborted)

    def _ensure_sweeper(self) -> None:
        if self._sweeper is not None or self._cleanup_interval <= 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sweeper = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                self.cleanup_completed()
            except Exception:
                logger.warning("Background task sweep failed", exc_info=True)

    def _generate_id(self) -> str:
        counter = next(self._counter)
        return f"task_{int(time.time() * 1000):x}_{counter:04x}"


class BackgroundableOperation(Generic[T]):
    """An awaitable operation that can be moved into the task manager
    while it is running.

    run() awaits the operation in the foreground. If background() is
    called first or meanwhile, run() returns the BackgroundTask instead
    of the value and the operation keeps going inside the manager.
    """

    def __init__(
        self,
        name: str,
        factory: Callable[[], Awaitable[T]],
        manager: TaskManager,
        *,
        description: str = "",
        to_output: Callable[[T], str] = str,
        on_background: Callable[[BackgroundTask], Any] | None = None,
    ) -> None:
        self._name = name
        self._factory = factory
        self._manager = manager
        self._description = description
        self._to_output = to_output
        self._on_background = on_background
        self._future: asyncio.Future | None = None
        self._detached: asyncio.Event | None = None
        self._task: BackgroundTask | None = None

    @property
    def backgrounded(self) -> bool:
        return self._task is not None

    @property
    def running(self) -> bool:
        return self._future is not None and not self._future.done()

    async def run(self) -> T | BackgroundTask:
        if self._task is not None:
            return self._task
        self._future = asyncio.ensure_future(self._factory())
        self._detached = asyncio.Event()
        detach_wait = asyncio.ensure_future(self._detached.wait())
        try:
            await asyncio.wait(
                {self._future, detach_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            # The caller went away; a foreground call goes with it.
            if self._task is None:
                self._future.cancel()
            raise
        finally:
            detach_wait.cancel()
        if self._task is not None:
            return self._task
        return self._future.result()

    def background(self) -> BackgroundTask:
        if self._task is not None:
            return self._task

        future = self._future
        if future is None:
            factory = self._factory

            async def operation(token: CancellationToken) -> str:
                return self._to_output(await factory())
        else:
            async def operation(token: CancellationToken) -> str:
                return self._to_output(await future)

        self._task = self._manager.background_operation(
            self._name, operation, self._description,
        )
        if self._detached is not None:
            self._detached.set()
        dispatch_callback(self._on_background, self._task, label="on_background")
        return self._task
