"""In-process tool registry.

Tools are async callables registered with a ToolSpec. The registry, not
the orchestrator, knows which tools have side effects: a spec with
``requires_permission=False`` is never routed through the permission
engine.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import ToolExecutionError, UnknownToolError

logger = logging.getLogger(__name__)


@dataclass
class ToolSpec:
    """Catalog entry sent to the model provider."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )
    requires_permission: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ToolResult:
    output: str
    is_error: bool = False


ToolHandler = Callable[[dict[str, Any]], Awaitable[Union[ToolResult, str]]]


class ToolRegistry:
    """Name -> (spec, handler) mapping with async execution."""

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolSpec, ToolHandler]] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        if spec.name in self._tools:
            logger.debug("Replacing registered tool %s", spec.name)
        self._tools[spec.name] = (spec, handler)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolSpec | None:
        entry = self._tools.get(name)
        return entry[0] if entry else None

    def has(self, name: str) -> bool:
        return name in self._tools

    def catalog(self) -> list[ToolSpec]:
        return [spec for spec, _ in self._tools.values()]

    def requires_permission(self, name: str) -> bool:
        entry = self._tools.get(name)
        # Unknown tools are treated as side-effecting.
        return entry[0].requires_permission if entry else True

    async def execute(self, name: str, args: dict[str, Any]) -> ToolResult:
        """Run a tool. Raises UnknownToolError / ToolExecutionError."""
        entry = self._tools.get(name)
        if entry is None:
            raise UnknownToolError(name)
        _, handler = entry
        try:
            result = await handler(args)
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(name, f"{type(exc).__name__}: {exc}") from exc
        if isinstance(result, ToolResult):
            return result
        return ToolResult(output="" if result is None else str(result))
