"""Typed callback surface between the engine and a presentation layer.

Every callback is optional and may be a plain function or a coroutine
function. Callback errors are logged and swallowed: a broken presenter
must never break a turn or a background task.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

from .models import (
    PermissionReply,
    PermissionRequest,
    ToolInvocation,
    TurnResult,
)

logger = logging.getLogger(__name__)

# Presenter answer to a permission prompt: a plain bool, or a reply that
# also asks the engine to remember the decision.
PermissionAnswer = Union[bool, PermissionReply, str]


@dataclass
class TurnCallbacks:
    """Callbacks fired by TurnOrchestrator, in this order per turn:

    on_turn_start -> on_text* -> (on_tool_use -> on_permission_request
    -> on_tool_result)* -> on_usage* -> on_turn_complete

    on_error fires instead of on_turn_complete on provider failure.
    on_permission_request only fires when the permission engine asks
    for human confirmation.
    """
    on_turn_start: Callable[[int], Any] | None = None
    on_text: Callable[[str], Any] | None = None
    on_tool_use: Callable[[ToolInvocation], Any] | None = None
    on_permission_request: (
        Callable[[PermissionRequest], PermissionAnswer | Awaitable[PermissionAnswer]]
        | None
    ) = None
    on_tool_result: Callable[[ToolInvocation], Any] | None = None
    on_usage: Callable[[int, int], Any] | None = None
    on_turn_complete: Callable[[TurnResult], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None


async def fire_callback(
    callback: Callable[..., Any] | None,
    *args: Any,
    label: str = "callback",
) -> None:
    """Invoke a sync or async callback, swallowing and logging errors."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.warning("%s raised; ignoring", label, exc_info=True)


def dispatch_callback(
    callback: Callable[..., Any] | None,
    *args: Any,
    label: str = "callback",
) -> None:
    """Invoke a callback from synchronous code.

    Coroutine results are scheduled on the running loop; their errors
    are logged when they finish.
    """
    if callback is None:
        return
    try:
        result = callback(*args)
    except Exception:
        logger.warning("%s raised; ignoring", label, exc_info=True)
        return
    if not inspect.isawaitable(result):
        return
    try:
        future = asyncio.ensure_future(result)
    except RuntimeError:
        logger.warning("%s returned an awaitable outside a running loop", label)
        if inspect.iscoroutine(result):
            result.close()
        return
    future.add_done_callback(lambda f: _log_future_error(f, label))


def _log_future_error(future: asyncio.Future, label: str) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("%s raised; ignoring", label, exc_info=exc)


async def resolve_answer(answer: Any) -> Any:
    if inspect.isawaitable(answer):
        return await answer
    return answer


def coerce_permission_answer(answer: Any) -> PermissionReply:
    """Normalize a presenter answer into a PermissionReply."""
    if isinstance(answer, PermissionReply):
        return answer
    if isinstance(answer, bool):
        return PermissionReply.ALLOW if answer else PermissionReply.DENY
    if isinstance(answer, str):
        try:
            return PermissionReply(answer.strip().lower())
        except ValueError:
            logger.warning("Unknown permission answer %r treated as deny", answer)
            return PermissionReply.DENY
    return PermissionReply.ALLOW if answer else PermissionReply.DENY
