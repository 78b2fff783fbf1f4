"""Abstract base for model providers.

A provider takes the conversation so far plus a tool catalog and streams
back events: text deltas, tool-call proposals, usage updates, and a
final end marker. Usage updates may arrive zero, one, or many times per
response; each carries token deltas, not running totals.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

from ..models import Message
from ..tool_registry import ToolSpec

logger = logging.getLogger(__name__)


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallProposed:
    """The model wants a tool run. ``id`` is the provider's proposal id."""
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageUpdate:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class StreamEnd:
    stop_reason: str = "end_turn"


ProviderEvent = Union[TextDelta, ToolCallProposed, UsageUpdate, StreamEnd]


class Provider(abc.ABC):
    """Abstract provider interface.

    Implementations wrap a specific model API. Network and API failures
    should propagate as exceptions from stream(); the orchestrator wraps
    them in ProviderError.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'anthropic', 'ollama')."""

    @abc.abstractmethod
    def stream(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        *,
        system_prompt: str | None = None,
    ) -> AsyncIterator[ProviderEvent]:
        """Stream one model response for the given conversation."""

    async def shutdown(self) -> None:
        """Clean up resources (e.g. close HTTP sessions).

        Default no-op. Override in providers that hold connections.
        """
        return None
