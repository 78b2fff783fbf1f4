"""Core data models for the turn engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class TurnState(str, Enum):
    """Orchestrator states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"
    AWAITING_PERMISSION = "awaiting_permission"
    EXECUTING = "executing"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


class InvocationStatus(str, Enum):
    """Per-call status of a tool invocation within a turn."""
    PROPOSED = "proposed"
    AWAITING_PERMISSION = "awaiting_permission"
    DENIED = "denied"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    BACKGROUNDED = "backgrounded"


class TaskStatus(str, Enum):
    """Background task lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class RuleDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class DefaultDecision(str, Enum):
    """Fallback when no evaluation step matched."""
    ASK = "ask"
    ALLOW = "allow"
    DENY = "deny"


class DecisionSource(str, Enum):
    """Which evaluation step produced a permission decision."""
    SESSION = "session"
    ALWAYS_ALLOWED = "always_allowed"
    READ_ONLY = "read_only"
    RULE = "rule"
    CONFIRM = "confirm"
    DEFAULT = "default"
    USER = "user"
    UNGATED = "ungated"


class PermissionReply(str, Enum):
    """Answers a presentation layer can give to a permission prompt."""
    ALLOW = "allow"
    DENY = "deny"
    ALLOW_SESSION = "allow_session"
    DENY_SESSION = "deny_session"
    ALLOW_ALWAYS = "allow_always"
    DENY_ALWAYS = "deny_always"

    @property
    def allowed(self) -> bool:
        return self in (
            PermissionReply.ALLOW,
            PermissionReply.ALLOW_SESSION,
            PermissionReply.ALLOW_ALWAYS,
        )

    @property
    def remember_for_session(self) -> bool:
        return self not in (PermissionReply.ALLOW, PermissionReply.DENY)

    @property
    def persistent(self) -> bool:
        return self in (PermissionReply.ALLOW_ALWAYS, PermissionReply.DENY_ALWAYS)


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Conversation content ──


@dataclass
class TextBlock:
    text: str
    type: str = "text"


@dataclass
class ImageBlock:
    """Base64 image payload attached to a user message."""
    data: str
    media_type: str = "image/png"
    type: str = "image"


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = "tool_use"


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = "tool_result"


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class Message:
    """One conversation message handed to the model provider."""
    role: str
    content: list[ContentBlock] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(
            block.text for block in self.content
            if isinstance(block, TextBlock)
        )

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def to_dict(self) -> dict[str, Any]:
        blocks: list[dict[str, Any]] = []
        for block in self.content:
            if isinstance(block, TextBlock):
                blocks.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                blocks.append({
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": block.media_type,
                        "data": block.data,
                    },
                })
            elif isinstance(block, ToolUseBlock):
                blocks.append({
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": dict(block.input),
                })
            elif isinstance(block, ToolResultBlock):
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": block.content,
                    "is_error": block.is_error,
                })
        return {"role": self.role, "content": blocks}


@dataclass
class Usage:
    """Token counts accumulated across provider responses."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += max(input_tokens, 0)
        self.output_tokens += max(output_tokens, 0)

    def copy(self) -> Usage:
        return Usage(self.input_tokens, self.output_tokens)


# ── Turn bookkeeping ──


@dataclass
class ToolInvocation:
    """A single tool call proposed by the model within a turn."""
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    invocation_id: str = field(default_factory=_make_id)
    status: InvocationStatus = InvocationStatus.PROPOSED
    started_at: datetime | None = None
    ended_at: datetime | None = None
    result: str | None = None
    is_error: bool = False
    truncated: bool = False
    decision: PermissionDecision | None = None
    history_id: str | None = None


@dataclass
class TurnResult:
    """Outcome of one call to TurnOrchestrator.run()."""
    state: TurnState
    usage: Usage
    iterations: int = 0
    response: str = ""
    limit_reached: bool = False
    notice: str | None = None
    invocations: list[ToolInvocation] = field(default_factory=list)
    error: str | None = None


# ── Permissions ──


@dataclass
class PermissionRequest:
    """A proposed tool call awaiting a permission decision."""
    tool: str
    args: dict[str, Any] = field(default_factory=dict)
    description: str = ""


@dataclass
class PermissionRule:
    """Allow/deny policy entry for a tool, optionally narrowed by
    an action pattern (command prefix) and/or a path glob."""
    tool: str
    decision: RuleDecision = RuleDecision.ALLOW
    action: str | None = None
    path_pattern: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    usage_count: int = 0
    persistent: bool = False
    # Rule file the rule was loaded from ("global" or "project"); None
    # for rules created in this process.
    scope: str | None = field(default=None, compare=False)

    @property
    def key(self) -> tuple[str, str | None, str | None]:
        return (self.tool, self.action, self.path_pattern)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"tool": self.tool}
        if self.action is not None:
            data["action"] = self.action
        if self.path_pattern is not None:
            data["pathPattern"] = self.path_pattern
        data["decision"] = self.decision.value
        data["createdAt"] = self.created_at.isoformat()
        data["usageCount"] = self.usage_count
        data["persistent"] = self.persistent
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionRule:
        """Build a rule from its stored form. Raises ValueError/KeyError
        on malformed input so loaders can skip the entry."""
        tool = data["tool"]
        if not isinstance(tool, str) or not tool:
            raise ValueError("rule tool must be a non-empty string")
        created_raw = data.get("createdAt")
        if isinstance(created_raw, str) and created_raw:
            if created_raw.endswith("Z"):
                created_raw = created_raw[:-1] + "+00:00"
            created_at = datetime.fromisoformat(created_raw)
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
        else:
            created_at = _utcnow()
        action = data.get("action")
        path_pattern = data.get("pathPattern")
        return cls(
            tool=tool,
            decision=RuleDecision(data["decision"]),
            action=str(action) if action else None,
            path_pattern=str(path_pattern) if path_pattern else None,
            created_at=created_at,
            usage_count=int(data.get("usageCount", 0) or 0),
            persistent=bool(data.get("persistent", True)),
        )


@dataclass
class PermissionDecision:
    """Pure output of PermissionEngine.check(); never stored."""
    allowed: bool
    reason: str = ""
    rule: PermissionRule | None = None
    source: DecisionSource = DecisionSource.DEFAULT

    @property
    def needs_confirmation(self) -> bool:
        """True when the caller must ask the human before proceeding."""
        return not self.allowed and self.source == DecisionSource.CONFIRM


# ── Tool history ──


@dataclass
class ToolUseRecord:
    id: str
    name: str
    args: dict[str, Any]
    start_time: float
    end_time: float | None = None
    result: str | None = None
    is_error: bool = False
    truncated: bool = False

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    @property
    def duration(self) -> float | None:
        """Elapsed seconds, or None while still running."""
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


@dataclass
class TaskOutput:
    """Captured output of a finished background task."""
    task_id: str
    output: str
    timestamp: datetime
    is_error: bool
