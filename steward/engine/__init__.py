"""Steward turn engine: orchestration, permission gating and background tasks."""
from .models import (
    DecisionSource,
    DefaultDecision,
    ImageBlock,
    InvocationStatus,
    Message,
    PermissionDecision,
    PermissionReply,
    PermissionRequest,
    PermissionRule,
    RuleDecision,
    TaskOutput,
    TaskStatus,
    TextBlock,
    ToolInvocation,
    ToolResultBlock,
    ToolUseBlock,
    ToolUseRecord,
    TurnResult,
    TurnState,
    Usage,
)
from .config import EngineConfig
from .callbacks import TurnCallbacks
from .cancellation import CancellationToken
from .errors import (
    ProviderError,
    StewardError,
    TaskNotFoundError,
    TaskStateError,
    ToolExecutionError,
    TurnCancelledError,
    TurnInProgressError,
    UnknownToolError,
)
from .permissions import PermissionConfig, PermissionEngine
from .tasks import (
    BackgroundableOperation,
    BackgroundTask,
    TaskCallbacks,
    TaskManager,
    TaskManagerCallbacks,
)
from .tool_history import ToolHistory
from .tool_registry import ToolRegistry, ToolResult, ToolSpec
from .orchestrator import TurnOrchestrator, describe_tool_call

__all__ = [
    # Orchestration
    "TurnOrchestrator",
    "TurnCallbacks",
    "describe_tool_call",
    "CancellationToken",
    # Config
    "EngineConfig",
    "PermissionConfig",
    # Permissions
    "PermissionEngine",
    # Tasks
    "BackgroundableOperation",
    "BackgroundTask",
    "TaskCallbacks",
    "TaskManager",
    "TaskManagerCallbacks",
    # Tools
    "ToolHistory",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    # Models
    "DecisionSource",
    "DefaultDecision",
    "ImageBlock",
    "InvocationStatus",
    "Message",
    "PermissionDecision",
    "PermissionReply",
    "PermissionRequest",
    "PermissionRule",
    "RuleDecision",
    "TaskOutput",
    "TaskStatus",
    "TextBlock",
    "ToolInvocation",
    "ToolResultBlock",
    "ToolUseBlock",
    "ToolUseRecord",
    "TurnResult",
    "TurnState",
    "Usage",
    # Errors
    "ProviderError",
    "StewardError",
    "TaskNotFoundError",
    "TaskStateError",
    "ToolExecutionError",
    "TurnCancelledError",
    "TurnInProgressError",
    "UnknownToolError",
]
