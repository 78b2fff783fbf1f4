"""Event types emitted while a turn runs.

Each event mirrors one TurnCallbacks / TaskManagerCallbacks hook, parsed
into a typed dataclass for safe consumption by a frontend.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class TurnEvent:
    """Base event from the turn engine."""
    event_type: str = ""


@dataclass
class TurnStarted(TurnEvent):
    event_type: str = "turn_started"
    turn: int = 0


@dataclass
class TextChunk(TurnEvent):
    event_type: str = "text_chunk"
    text: str = ""


@dataclass
class ToolUseStarted(TurnEvent):
    event_type: str = "tool_use_started"
    invocation_id: str = ""
    tool_name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionRequested(TurnEvent):
    event_type: str = "permission_requested"
    tool_name: str = ""
    description: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultReady(TurnEvent):
    event_type: str = "tool_result_ready"
    invocation_id: str = ""
    tool_name: str = ""
    status: str = ""
    result: str = ""
    is_error: bool = False
    truncated: bool = False


@dataclass
class UsageReported(TurnEvent):
    event_type: str = "usage_reported"
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TurnFinished(TurnEvent):
    event_type: str = "turn_finished"
    state: str = ""
    iterations: int = 0
    response: str = ""
    limit_reached: bool = False
    notice: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TurnFailed(TurnEvent):
    event_type: str = "turn_failed"
    error: str = ""


@dataclass
class TaskStatusChanged(TurnEvent):
    event_type: str = "task_status_changed"
    task_id: str = ""
    name: str = ""
    status: str = ""
    output: str = ""

