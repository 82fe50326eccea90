"""
sysaidmin.logging — structlog configuration.

Engine modules call ``get_logger(__name__)`` at import time; the loggers are
lazy proxies, so ``configure_logging()`` may run later (the CLI calls it once
settings are loaded).  With ``log_file`` set, records go to that file instead
of stderr so they do not interleave with rich output.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

_log_stream: TextIO | None = None


class _StderrProxy:
    """Writes to whatever ``sys.stderr`` is at call time."""

    def write(self, message: str) -> int:
        return sys.stderr.write(message)

    def flush(self) -> None:
        sys.stderr.flush()

    def isatty(self) -> bool:
        return sys.stderr.isatty()


def _processors(colors: bool) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.dev.ConsoleRenderer(colors=colors),
    ]


def configure_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Configure structlog for the process.

    Parameters
    ----------
    level : str
        Minimum level name (``"DEBUG"``, ``"INFO"``, ``"WARNING"``, ...).
    log_file : str | Path | None
        Append records to this file.  ``None`` writes to stderr.
    """
    global _log_stream

    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    if _log_stream is not None:
        _log_stream.close()
        _log_stream = None

    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        _log_stream = open(path, "a", encoding="utf-8")
        stream: TextIO = _log_stream
        colors = False
    else:
        stream = _StderrProxy()  # type: ignore[assignment]
        colors = stream.isatty()

    structlog.configure(
        processors=_processors(colors),
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.WriteLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None):
    return structlog.get_logger(name or "sysaidmin")
