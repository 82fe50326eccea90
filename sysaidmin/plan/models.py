"""
sysaidmin.plan.models — Plan, task and outcome data types.

A ``Task`` is a tagged union of two frozen variants, ``CommandTask`` and
``FileEditTask``.  Consumers dispatch on the concrete type and raise
``TypeError`` for anything else, so adding a variant fails loudly everywhere
it is not yet handled.

A ``Plan`` is immutable once parsed.  Per-task status lives outside the plan,
in the orchestrator's run state, and moves through ``TaskStatus`` transitions.
"""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from sysaidmin.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_path(path: str) -> str | None:
    """Return *path* as a normalized absolute path, or ``None`` if it is relative.

    ``~`` is expanded and ``.``/``..`` segments are collapsed lexically, so
    ``/etc/../root/.ssh/id_rsa`` becomes ``/root/.ssh/id_rsa``.  The
    filesystem is not consulted.  The allowlist judges this form and the
    executor writes to this form, so both always see the same target.
    """
    expanded = os.path.expanduser(path)
    if not os.path.isabs(expanded):
        return None
    return os.path.normpath(expanded)


# ---------------------------------------------------------------------------
# Task status state machine
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    """Lifecycle of a single task within one run."""

    PROPOSED = "proposed"
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]

    def can_transition_to(self, target: TaskStatus) -> bool:
        return target in _TRANSITIONS[self]

    def advance(self, target: TaskStatus) -> TaskStatus:
        """Return *target* if the move is legal, else raise ``InvalidTransitionError``."""
        if not self.can_transition_to(target):
            raise InvalidTransitionError(f"illegal task transition {self.value} -> {target.value}")
        return target


_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PROPOSED: frozenset({TaskStatus.ALLOWED, TaskStatus.BLOCKED}),
    TaskStatus.ALLOWED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED}),
    TaskStatus.BLOCKED: frozenset(),
    TaskStatus.SUCCEEDED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


# ---------------------------------------------------------------------------
# Task variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandTask:
    """A shell command proposed by the plan.

    Attributes
    ----------
    id : int
        Index of the task within its plan.
    command : str
        The full command string handed to the shell.
    rationale : str
        Why the model proposed it (shown to the operator).
    """

    id: int
    command: str
    rationale: str = ""
    kind: str = field(default="command", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind,
            "command": self.command,
            "rationale": self.rationale,
        }


@dataclass(frozen=True)
class FileEditTask:
    """A full-content replacement of one file.

    Attributes
    ----------
    id : int
        Index of the task within its plan.
    path : str
        Target path, as proposed.
    new_content : bytes
        The complete new content of the file.
    rationale : str
        Why the model proposed it.
    """

    id: int
    path: str
    new_content: bytes
    rationale: str = ""
    kind: str = field(default="file_edit", init=False)

    @property
    def target(self) -> str | None:
        """The canonical path this edit is judged against and written to."""
        return normalize_path(self.path)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.kind,
            "path": self.path,
            "rationale": self.rationale,
        }
        try:
            data["content"] = self.new_content.decode("utf-8")
        except UnicodeDecodeError:
            data["content"] = base64.b64encode(self.new_content).decode("ascii")
            data["content_encoding"] = "base64"
        return data


Task = Union[CommandTask, FileEditTask]


def task_from_dict(data: dict[str, Any]) -> Task:
    """Rebuild a task from its ``to_dict()`` form (used when loading snapshots)."""
    kind = data.get("type")
    if kind == "command":
        return CommandTask(id=int(data["id"]), command=data["command"], rationale=data.get("rationale", ""))
    if kind == "file_edit":
        raw = data["content"]
        if data.get("content_encoding") == "base64":
            content = base64.b64decode(raw)
        else:
            content = raw.encode("utf-8")
        return FileEditTask(
            id=int(data["id"]),
            path=data["path"],
            new_content=content,
            rationale=data.get("rationale", ""),
        )
    raise TypeError(f"unsupported task type: {kind!r}")


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Plan:
    """An ordered, immutable worklist for one user request."""

    tasks: tuple[Task, ...]
    request_id: str
    created_at: datetime = field(default_factory=utcnow)
    summary: str | None = None

    def __len__(self) -> int:
        return len(self.tasks)

    def task(self, task_id: int) -> Task:
        return self.tasks[task_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "created_at": self.created_at.isoformat(),
            "summary": self.summary,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        return cls(
            tasks=tuple(task_from_dict(t) for t in data["tasks"]),
            request_id=data["request_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            summary=data.get("summary"),
        )


# ---------------------------------------------------------------------------
# Classification, backups, outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Classification:
    """Result of checking one task against the allowlist.

    ``reason`` is a short fixed string shared by every task blocked for the
    same cause; ``detail`` names the offending command or path.
    """

    status: TaskStatus
    reason: str | None = None
    detail: str | None = None

    @property
    def allowed(self) -> bool:
        return self.status is TaskStatus.ALLOWED

    @classmethod
    def allow(cls) -> Classification:
        return cls(status=TaskStatus.ALLOWED)

    @classmethod
    def block(cls, reason: str, detail: str) -> Classification:
        return cls(status=TaskStatus.BLOCKED, reason=reason, detail=detail)


@dataclass(frozen=True)
class BackupRecord:
    """A pre-write copy of a file, kept for manual recovery.

    ``mode``, ``uid`` and ``gid`` are the original's metadata at backup time,
    so a restore recreates the file as it was even if it has since been
    deleted.
    """

    original_path: str
    backup_path: str
    created_at: datetime = field(default_factory=utcnow)
    mode: int | None = None
    uid: int | None = None
    gid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_path": self.original_path,
            "backup_path": self.backup_path,
            "created_at": self.created_at.isoformat(),
            "mode": self.mode,
            "uid": self.uid,
            "gid": self.gid,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupRecord:
        return cls(
            original_path=data["original_path"],
            backup_path=data["backup_path"],
            created_at=datetime.fromisoformat(data["created_at"]),
            mode=data.get("mode"),
            uid=data.get("uid"),
            gid=data.get("gid"),
        )


@dataclass(frozen=True)
class TaskOutcome:
    """An event reporting that a task was blocked or reached a terminal state.

    Attributes
    ----------
    task_id : int
        Index of the task in its plan.
    status : TaskStatus
        ``BLOCKED``, ``SUCCEEDED``, ``FAILED`` or ``CANCELLED``.
    detail : str
        Human-readable summary.
    timestamp : datetime
        When the status was reached (UTC).
    exit_code : int | None
        Shell exit status for executed commands.
    stdout, stderr : str
        Captured (and possibly truncated) command output.
    diff : str
        Unified diff preview for simulated file edits.
    backup : BackupRecord | None
        The backup taken before a live file edit.
    simulated : bool
        True for dry-run outcomes.
    """

    task_id: int
    status: TaskStatus
    detail: str
    timestamp: datetime = field(default_factory=utcnow)
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    diff: str = ""
    backup: BackupRecord | None = None
    simulated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "diff": self.diff,
            "backup": self.backup.to_dict() if self.backup else None,
            "simulated": self.simulated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskOutcome:
        backup = data.get("backup")
        return cls(
            task_id=int(data["task_id"]),
            status=TaskStatus(data["status"]),
            detail=data["detail"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            exit_code=data.get("exit_code"),
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            diff=data.get("diff", ""),
            backup=BackupRecord.from_dict(backup) if backup else None,
            simulated=bool(data.get("simulated", False)),
        )
