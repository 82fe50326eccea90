"""
sysaidmin.safety.allowlist — Fail-closed allow/deny gate for plan tasks.

Every task passes through ``Allowlist.classify`` before anything runs:

1. ``CommandTask`` → allowed iff some command pattern matches the command.
2. ``FileEditTask`` → allowed iff some file pattern matches ``task.target``,
   the normalized absolute path the executor will write to, **and** the new
   content fits under ``max_edit_size_kb``.
3. Anything else → ``TypeError`` (a programming error, not a verdict).

Patterns use ``re.search`` semantics, as grep does: a rule only matches the
whole string when its author anchors it with ``^`` / ``$``.  An empty rule
set permits nothing.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from sysaidmin.config import AllowlistSettings
from sysaidmin.errors import PolicyConfigError
from sysaidmin.logging import get_logger
from sysaidmin.plan.models import (
    Classification,
    CommandTask,
    FileEditTask,
    Task,
    normalize_path,
)

log = get_logger(__name__)

COMMAND_NOT_PERMITTED = "command not permitted"
PATH_NOT_PERMITTED = "path not permitted"
EDIT_TOO_LARGE = "edit exceeds size limit"


def _compile(patterns: Iterable[str], kind: str) -> tuple[re.Pattern[str], ...]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise PolicyConfigError(f"invalid {kind} regex {pattern!r}: {exc}") from exc
    return tuple(compiled)


class Allowlist:
    """Compiled allowlist rules.

    Parameters
    ----------
    command_patterns : Iterable[str]
        Regexes tested against the full command string.
    file_patterns : Iterable[str]
        Regexes tested against the normalized absolute target path.
    max_edit_size_kb : int
        Largest permitted file edit, in KiB.

    Raises
    ------
    PolicyConfigError
        On an invalid regex or a negative size limit.  Bad rules are a
        startup failure; ``classify`` itself never raises.
    """

    def __init__(
        self,
        command_patterns: Iterable[str] = (),
        file_patterns: Iterable[str] = (),
        max_edit_size_kb: int = 64,
    ) -> None:
        if max_edit_size_kb < 0:
            raise PolicyConfigError(f"max_edit_size_kb must be >= 0, got {max_edit_size_kb}")
        self._command_regexes = _compile(command_patterns, "command")
        self._file_regexes = _compile(file_patterns, "file")
        self.max_edit_size_kb = max_edit_size_kb

    @classmethod
    def from_settings(cls, settings: AllowlistSettings) -> Allowlist:
        allowlist = cls(
            command_patterns=settings.command_patterns,
            file_patterns=settings.file_patterns,
            max_edit_size_kb=settings.max_edit_size_kb,
        )
        log.debug(
            "allowlist loaded",
            command_patterns=len(allowlist._command_regexes),
            file_patterns=len(allowlist._file_regexes),
            max_edit_size_kb=allowlist.max_edit_size_kb,
        )
        return allowlist

    @property
    def max_edit_bytes(self) -> int:
        return self.max_edit_size_kb * 1024

    @property
    def is_empty(self) -> bool:
        return not self._command_regexes and not self._file_regexes

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def is_command_allowed(self, command: str) -> bool:
        return any(regex.search(command) for regex in self._command_regexes)

    def is_path_allowed(self, path: str) -> bool:
        return self._is_target_allowed(normalize_path(path))

    def _is_target_allowed(self, target: str | None) -> bool:
        if target is None:
            return False
        return any(regex.search(target) for regex in self._file_regexes)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, task: Task) -> Classification:
        """Return ``Allowed`` or ``Blocked(reason)`` for *task*.

        Pure and deterministic: the same task and rules always give the same
        answer, and nothing is read from or written to disk.
        """
        if isinstance(task, CommandTask):
            if self.is_command_allowed(task.command):
                return Classification.allow()
            return Classification.block(COMMAND_NOT_PERMITTED, f"{COMMAND_NOT_PERMITTED}: {task.command}")

        if isinstance(task, FileEditTask):
            if not self._is_target_allowed(task.target):
                return Classification.block(PATH_NOT_PERMITTED, f"{PATH_NOT_PERMITTED}: {task.path}")
            size = len(task.new_content)
            if size > self.max_edit_bytes:
                return Classification.block(
                    EDIT_TOO_LARGE,
                    f"{EDIT_TOO_LARGE}: {task.path} is {size} bytes, limit {self.max_edit_size_kb} KiB",
                )
            return Classification.allow()

        raise TypeError(f"unsupported task type: {type(task).__name__}")
