"""Per-turn record of tool calls.

Single source of truth for which tools ran during the current turn and
how long they took. The collapsed view shows only the first few calls;
verbose mode changes what consumers should display, never the data.
"""
from __future__ import annotations

import copy
import logging
import time
import uuid
from typing import Any

from .models import ToolUseRecord

logger = logging.getLogger(__name__)

TRUNCATE_THRESHOLD = 500
DEFAULT_MAX_VISIBLE_COLLAPSED = 3


class ToolHistory:
    """Tool uses recorded for the current turn."""

    def __init__(
        self,
        max_visible_collapsed: int = DEFAULT_MAX_VISIBLE_COLLAPSED,
        truncate_threshold: int = TRUNCATE_THRESHOLD,
    ) -> None:
        self._records: list[ToolUseRecord] = []
        self._max_visible = max_visible_collapsed
        self._truncate_threshold = truncate_threshold
        self._verbose = False
        self._turn_id = ""
        self._seq = 0

    @property
    def turn_id(self) -> str:
        return self._turn_id

    @property
    def max_visible_collapsed(self) -> int:
        return self._max_visible

    def start_turn(self) -> str:
        """Reset the record set and assign a fresh turn id."""
        self._records = []
        self._turn_id = uuid.uuid4().hex[:8]
        self._seq = 0
        logger.debug("Tool history turn %s started", self._turn_id)
        return self._turn_id

    def start_tool_use(self, name: str, args: dict[str, Any]) -> str:
        self._seq += 1
        record_id = f"{self._turn_id}_{self._seq}"
        self._records.append(ToolUseRecord(
            id=record_id,
            name=name,
            args=copy.deepcopy(args) if isinstance(args, dict) else {},
            start_time=time.time(),
        ))
        return record_id

    def end_tool_use(self, record_id: str, result: str, is_error: bool = False) -> bool:
        """Finalize a record. Returns False for unknown ids."""
        record = self.get(record_id)
        if record is None:
            logger.debug("end_tool_use for unknown record %s", record_id)
            return False
        record.end_time = time.time()
        record.result = result
        record.is_error = is_error
        record.truncated = len(result) > self._truncate_threshold
        return True

    def get(self, record_id: str) -> ToolUseRecord | None:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def tool_uses(self) -> list[ToolUseRecord]:
        return list(self._records)

    def visible_tool_uses(self) -> list[ToolUseRecord]:
        if self._verbose:
            return list(self._records)
        return self._records[: self._max_visible]

    @property
    def count(self) -> int:
        return len(self._records)

    @property
    def has_hidden(self) -> bool:
        return not self._verbose and len(self._records) > self._max_visible

    @property
    def hidden_count(self) -> int:
        if self._verbose:
            return 0
        return max(0, len(self._records) - self._max_visible)

    def set_verbose(self, verbose: bool) -> None:
        self._verbose = verbose

    def is_verbose(self) -> bool:
        return self._verbose

    def toggle_verbose(self) -> bool:
        self._verbose = not self._verbose
        return self._verbose

    def clear(self) -> None:
        self._records = []
