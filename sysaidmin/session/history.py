"""
sysaidmin.session.history — Replayable shell history of executed commands.

Every command that actually ran is appended to ``sysaidmin.history.sh`` as a
bash script: a ``cd`` into the working directory, the command itself, then
its stdout / stderr as ``#>`` / ``#err:`` comments.  The file can be read as
an audit trail or re-run by hand.
"""

from __future__ import annotations

import os
import shlex
import threading
from datetime import datetime, timezone
from pathlib import Path

from sysaidmin.errors import PersistenceError

HISTORY_FILENAME = "sysaidmin.history.sh"
# Session logs may carry secrets from command output
LOG_FILE_MODE = 0o600


def open_log_for_append(path: Path):
    """Open *path* for appending text, creating it owner-only if missing."""
    fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, LOG_FILE_MODE)
    return os.fdopen(fd, "a", encoding="utf-8")


def _comment_lines(prefix: str, text: str) -> list[str]:
    if not text.strip():
        return []
    return [f"{prefix} {line.rstrip()}" for line in text.splitlines()]


class CommandHistory:
    """Append-only bash-format command log.  Safe to share between threads."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def append(
        self,
        command: str,
        *,
        cwd: str | None = None,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Append one executed command.

        Raises
        ------
        PersistenceError
            If the history file cannot be written.
        """
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        lines = [f"# [{timestamp}] exit={exit_code if exit_code is not None else '?'}"]
        if cwd:
            lines.append(f"cd {shlex.quote(cwd)}")
        lines.append(command)
        lines += _comment_lines("#>", stdout)
        lines += _comment_lines("#err:", stderr)
        entry = "\n".join(lines) + "\n\n"

        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open_log_for_append(self.path) as fh:
                    fh.write(entry)
            except OSError as exc:
                raise PersistenceError(f"failed writing command history {self.path}: {exc}") from exc

    def read(self) -> str:
        """Return the whole history, or ``""`` if nothing has run yet."""
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")
