"""Exception hierarchy for the turn engine.

Specific exceptions for each failure mode. Tool-level failures are
captured into tool results and never escape a turn; only provider
failures and misuse of the orchestrator propagate to callers.
"""
from __future__ import annotations


class StewardError(Exception):
    """Base exception for all engine errors."""


class ProviderError(StewardError):
    """The model provider failed (network, API, malformed stream)."""
    def __init__(self, provider_name: str, reason: str):
        self.provider_name = provider_name
        self.reason = reason
        super().__init__(f"Provider '{provider_name}' failed: {reason}")


class ToolExecutionError(StewardError):
    """A tool raised or reported failure while executing."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Tool '{tool_name}' failed: {reason}")


class UnknownToolError(ToolExecutionError):
    """The model named a tool that is not in the registry."""
    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Unknown tool: {tool_name}")


class TurnCancelledError(StewardError):
    """A cancellation token was triggered."""
    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)


class TurnInProgressError(StewardError):
    """A turn is already running on this orchestrator."""
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            f"Cannot {operation} while a turn is in progress"
        )


class TaskNotFoundError(StewardError):
    """Requested background task does not exist."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Background task not found: {task_id}")


class TaskStateError(StewardError):
    """A background task was driven through an invalid transition."""
    def __init__(self, task_id: str, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(
            f"Task {task_id} cannot move from {current} to {target}"
        )
