"""Crash-safe writes for small state files under ``.steward/``."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _sync_parent(path: Path) -> None:
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(path.parent, flags)
    except OSError:
        logger.debug("Cannot open %s for fsync", path.parent)
        return
    try:
        os.fsync(fd)
    except OSError:
        # Directory fsync is unsupported on some filesystems.
        logger.debug("Directory fsync unsupported for %s", path.parent)
    finally:
        os.close(fd)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``content`` so readers see the old file or
    the new one, never a partial write.

    A stale temp file is removed when the write or rename fails; the
    OSError still propagates to the caller.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    _sync_parent(path)


def atomic_write_json(path: Path, data: Any, *, indent: int = 2) -> None:
    """Serialize ``data`` as JSON and write it with atomic_write_text."""
    atomic_write_text(path, json.dumps(data, indent=indent, ensure_ascii=False) + "\n")
