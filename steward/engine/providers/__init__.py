"""Model provider abstractions."""
from .base import (
    Provider,
    ProviderEvent,
    StreamEnd,
    TextDelta,
    ToolCallProposed,
    UsageUpdate,
)

__all__ = [
    "Provider",
    "ProviderEvent",
    "StreamEnd",
    "TextDelta",
    "ToolCallProposed",
    "UsageUpdate",
]
