"""Turn and background-task state machines.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

Turn State Diagram:

    IDLE ──> DISPATCHED ──> STREAMING ──┬──> COMPLETE
               ^                        │
               │                        └──> TOOLS_PENDING ──┐
               │                                             │
               │     ┌── AWAITING_PERMISSION <───────────────┤
               │     │          │ (denied)                   │
               │     │          v                            │
               │     └──> EXECUTING ──> TOOLS_PENDING        │
               │                                             │
               └─────────────────────────────────────────────┘

    DISPATCHED / STREAMING ──> ERROR      (provider failure)
    any non-terminal ──> CANCELLED        (stop requested)
    TOOLS_PENDING ──> COMPLETE            (iteration limit)
    COMPLETE / CANCELLED / ERROR ──> DISPATCHED  (next turn)

Task State Diagram:

    PENDING ──> RUNNING ──┬──> COMPLETE
       │                  └──> ERROR
       └──────────────────────> ERROR   (aborted before start)
"""
from __future__ import annotations

from .models import TaskStatus, TurnState

VALID_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.IDLE: {
        TurnState.DISPATCHED,
    },
    TurnState.DISPATCHED: {
        TurnState.STREAMING,
        TurnState.ERROR,
        TurnState.CANCELLED,
    },
    TurnState.STREAMING: {
        TurnState.TOOLS_PENDING,
        TurnState.COMPLETE,
        TurnState.ERROR,
        TurnState.CANCELLED,
    },
    TurnState.TOOLS_PENDING: {
        TurnState.AWAITING_PERMISSION,
        TurnState.EXECUTING,
        TurnState.DISPATCHED,
        TurnState.COMPLETE,  # iteration limit reached
        TurnState.CANCELLED,
    },
    TurnState.AWAITING_PERMISSION: {
        TurnState.EXECUTING,
        TurnState.TOOLS_PENDING,  # denied
        TurnState.CANCELLED,
    },
    TurnState.EXECUTING: {
        TurnState.TOOLS_PENDING,
        TurnState.CANCELLED,
    },
    TurnState.COMPLETE: {
        TurnState.DISPATCHED,
        TurnState.IDLE,
    },
    TurnState.CANCELLED: {
        TurnState.DISPATCHED,
        TurnState.IDLE,
    },
    TurnState.ERROR: {
        TurnState.DISPATCHED,
        TurnState.IDLE,
    },
}

TERMINAL_TURN_STATES: frozenset[TurnState] = frozenset({
    TurnState.COMPLETE,
    TurnState.CANCELLED,
    TurnState.ERROR,
})

TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.ERROR},
    TaskStatus.RUNNING: {TaskStatus.COMPLETE, TaskStatus.ERROR},
    TaskStatus.COMPLETE: set(),
    TaskStatus.ERROR: set(),
}


def validate_transition(current: TurnState, target: TurnState) -> None:
    """Validate a turn state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def can_transition_task(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS.get(current, set())
