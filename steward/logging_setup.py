"""Root logger configuration for hosts embedding the engine."""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
DEFAULT_LOG_DIR = Path.home() / ".steward" / "logs"


def configure_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    *,
    stderr: bool = True,
) -> Path | None:
    """Install a rotating file handler (and optionally stderr) on the root logger.

    Existing root handlers are replaced. Returns the log file path, or
    None when file logging is disabled with ``log_file=""``.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    path: Path | None
    if log_file == "":
        path = None
    else:
        path = Path(log_file) if log_file else DEFAULT_LOG_DIR / "steward.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    logging.getLogger(__name__).info(
        "Logging configured level=%s log=%s", level.upper(), path or "<none>",
    )
    return path
