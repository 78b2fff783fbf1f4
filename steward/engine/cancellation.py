"""Cooperative cancellation token.

Passed explicitly into long operations (turns, background tasks).
Cancelling never interrupts running code; holders check the token
at their own suspension points.
"""
from __future__ import annotations

import asyncio
import logging

from .errors import TurnCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation flag with an awaitable signal."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Trigger the token. Returns False if it was already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        logger.debug("Cancellation requested: %s", reason)
        return True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TurnCancelledError(self._reason)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        # Created lazily so tokens can be built outside a running loop.
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()
