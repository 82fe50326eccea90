"""
sysaidmin.executor.runner — Execute a single allowed task.

``TaskExecutor.execute`` never raises for task-level problems: a spawn
failure, non-zero exit, timeout, or backup/write error becomes a ``Failed``
outcome carrying a readable detail.

Commands run as ``[shell, "-c", command]`` in a new session, with the working
directory and environment fixed when the executor is built, so one task can
never change what the next one sees.  Output is spooled to temp files and read
back capped, which keeps memory bounded no matter how chatty the command is.

File edits go to ``task.target``, the same normalized path the allowlist
judged.  They are backed up first, then written with temp+rename; a second
edit of the same file in one run reuses the first backup.
"""

from __future__ import annotations

import difflib
import os
import signal
import subprocess
import tempfile
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import IO

from sysaidmin.errors import BackupError
from sysaidmin.executor.backup import BackupManager, backup_path_for
from sysaidmin.executor.fsutil import atomic_write
from sysaidmin.logging import get_logger
from sysaidmin.plan.models import (
    BackupRecord,
    CommandTask,
    FileEditTask,
    Task,
    TaskOutcome,
    TaskStatus,
)

log = get_logger(__name__)

# Cap on captured stdout / stderr, per stream
DEFAULT_OUTPUT_CAP = 64 * 1024
# Grace period between SIGTERM and SIGKILL for timed-out commands
_KILL_GRACE_SECONDS = 5.0
# Cap on the dry-run diff preview
_MAX_DIFF_LINES = 200


def _read_capped(fh: IO[bytes], cap: int) -> str:
    fh.seek(0)
    data = fh.read(cap + 1)
    text = data[:cap].decode("utf-8", errors="replace")
    if len(data) > cap:
        text += f"\n... [output truncated at {cap} bytes]"
    return text


def _human_size(num_bytes: int) -> str:
    """Convert bytes to a human-readable string."""
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024:
            return f"{size:.0f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


class TaskExecutor:
    """Runs commands and file edits, live or simulated.

    Parameters
    ----------
    shell : str
        Shell binary invoked as ``shell -c command``.
    timeout : float
        Seconds before a command is terminated and marked failed.
    backups : BackupManager | None
        Backup manager used before every live file edit.
    cwd : str | None
        Working directory for every command (defaults to the current one).
    env : Mapping[str, str] | None
        Environment for every command (defaults to a snapshot of ``os.environ``).
    output_cap : int
        Bytes of stdout / stderr kept per command.
    create_missing_files : bool
        Allow edits that create a new file (no backup is possible then).
    """

    def __init__(
        self,
        shell: str = "/bin/bash",
        timeout: float = 120.0,
        backups: BackupManager | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        output_cap: int = DEFAULT_OUTPUT_CAP,
        create_missing_files: bool = False,
    ) -> None:
        self.shell = shell
        self.timeout = timeout
        self.backups = backups or BackupManager()
        self.cwd = cwd or os.getcwd()
        self.env = dict(env if env is not None else os.environ)
        self.output_cap = output_cap
        self.create_missing_files = create_missing_files

    def execute(
        self,
        task: Task,
        dry_run: bool = False,
        backups_taken: MutableMapping[str, BackupRecord] | None = None,
    ) -> TaskOutcome:
        """Run *task* and return its terminal outcome.

        Parameters
        ----------
        task : Task
            An allowed task.
        dry_run : bool
            Simulate instead of touching the host.
        backups_taken : MutableMapping[str, BackupRecord] | None
            Backups already taken in the current run, keyed by canonical
            target.  A later edit of the same file reuses that backup (it
            holds the content from before the run) instead of being refused.
            New backups are added to it.
        """
        if isinstance(task, CommandTask):
            if dry_run:
                return self._simulate_command(task)
            return self._run_command(task)
        if isinstance(task, FileEditTask):
            if task.target is None:
                return TaskOutcome(
                    task_id=task.id,
                    status=TaskStatus.FAILED,
                    detail=f"refusing to edit relative path {task.path}",
                )
            if dry_run:
                return self._simulate_edit(task)
            return self._apply_edit(task, backups_taken)
        raise TypeError(f"unsupported task type: {type(task).__name__}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _simulate_command(self, task: CommandTask) -> TaskOutcome:
        return TaskOutcome(
            task_id=task.id,
            status=TaskStatus.SUCCEEDED,
            detail=f"simulated: would run `{task.command}` with {self.shell} in {self.cwd}",
            simulated=True,
        )

    def _run_command(self, task: CommandTask) -> TaskOutcome:
        log.info("running command", task_id=task.id, command=task.command, shell=self.shell)
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            try:
                proc = subprocess.Popen(
                    [self.shell, "-c", task.command],
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    cwd=self.cwd,
                    env=self.env,
                    start_new_session=True,
                )
            except OSError as exc:
                log.warning("command spawn failed", task_id=task.id, error=str(exc))
                return TaskOutcome(
                    task_id=task.id,
                    status=TaskStatus.FAILED,
                    detail=f"failed to start {self.shell}: {exc}",
                )

            timed_out = False
            try:
                returncode = proc.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                returncode = self._terminate(proc)

            stdout = _read_capped(out, self.output_cap)
            stderr = _read_capped(err, self.output_cap)

        if timed_out:
            log.warning("command timed out", task_id=task.id, timeout=self.timeout)
            return TaskOutcome(
                task_id=task.id,
                status=TaskStatus.FAILED,
                detail=f"timed out after {self.timeout:g}s: {task.command}",
                exit_code=returncode,
                stdout=stdout,
                stderr=stderr,
            )

        if returncode == 0:
            status = TaskStatus.SUCCEEDED
            detail = f"exit 0: {task.command}"
        elif returncode < 0:
            status = TaskStatus.FAILED
            detail = f"terminated by signal {-returncode}: {task.command}"
        else:
            status = TaskStatus.FAILED
            detail = f"exit {returncode}: {task.command}"

        log.info("command finished", task_id=task.id, exit_code=returncode)
        return TaskOutcome(
            task_id=task.id,
            status=status,
            detail=detail,
            exit_code=returncode,
            stdout=stdout,
            stderr=stderr,
        )

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> int:
        """Stop the whole process group: SIGTERM, then SIGKILL after a grace period."""
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                break
            except PermissionError:
                proc.kill()
                break
            try:
                return proc.wait(timeout=_KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                continue
        return proc.wait()

    # ------------------------------------------------------------------
    # File edits
    # ------------------------------------------------------------------

    def _simulate_edit(self, task: FileEditTask) -> TaskOutcome:
        target = Path(task.target)
        new_size = len(task.new_content)
        try:
            old = target.read_bytes()
        except FileNotFoundError:
            old = None
        except OSError as exc:
            return TaskOutcome(
                task_id=task.id,
                status=TaskStatus.SUCCEEDED,
                detail=f"simulated: would write {_human_size(new_size)} to {target} (current content unreadable: {exc})",
                simulated=True,
            )

        if old is None:
            detail = f"simulated: would create {target} ({_human_size(new_size)})"
            if not self.create_missing_files:
                detail += "; a live run would fail because the file does not exist"
        else:
            detail = f"simulated: would write {target} ({_human_size(len(old))} -> {_human_size(new_size)})"
            if backup_path_for(target).exists():
                detail += f"; a live run would fail because {backup_path_for(target)} already exists"

        return TaskOutcome(
            task_id=task.id,
            status=TaskStatus.SUCCEEDED,
            detail=detail,
            diff=_text_diff(str(target), old or b"", task.new_content),
            simulated=True,
        )

    def _apply_edit(
        self,
        task: FileEditTask,
        backups_taken: MutableMapping[str, BackupRecord] | None = None,
    ) -> TaskOutcome:
        target = Path(task.target)
        record: BackupRecord | None = None
        reused = False

        if backups_taken is not None and str(target) in backups_taken:
            record = backups_taken[str(target)]
            reused = True
        elif target.exists() or not self.create_missing_files:
            try:
                record = self.backups.backup(target)
            except BackupError as exc:
                log.warning("backup refused, edit not applied", task_id=task.id, path=str(target), error=str(exc))
                return TaskOutcome(task_id=task.id, status=TaskStatus.FAILED, detail=f"backup failed: {exc}")
            if backups_taken is not None:
                backups_taken[str(target)] = record
        else:
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                return TaskOutcome(
                    task_id=task.id,
                    status=TaskStatus.FAILED,
                    detail=f"cannot create parent directory for {target}: {exc}",
                )

        try:
            atomic_write(target, task.new_content)
        except OSError as exc:
            log.error("file write failed", task_id=task.id, path=str(target), error=str(exc), backup=record and record.backup_path)
            detail = f"write failed for {target}: {exc}"
            if record is not None:
                detail += f" (backup retained at {record.backup_path})"
            return TaskOutcome(task_id=task.id, status=TaskStatus.FAILED, detail=detail, backup=record)

        log.info("file written", task_id=task.id, path=str(target), size=len(task.new_content))
        detail = f"wrote {_human_size(len(task.new_content))} to {target}"
        if reused:
            detail += f" (backup from earlier in this run: {record.backup_path})"
        elif record is not None:
            detail += f" (backup: {record.backup_path})"
        else:
            detail += " (new file, no backup)"
        return TaskOutcome(task_id=task.id, status=TaskStatus.SUCCEEDED, detail=detail, backup=record)


def _text_diff(label: str, old: bytes, new: bytes) -> str:
    """Unified diff of two UTF-8 payloads, or a size note for binary content."""
    try:
        old_text = old.decode("utf-8")
        new_text = new.decode("utf-8")
    except UnicodeDecodeError:
        return f"binary content: {len(old)} bytes -> {len(new)} bytes"

    lines = list(
        difflib.unified_diff(
            old_text.splitlines(keepends=True),
            new_text.splitlines(keepends=True),
            fromfile=f"{label} (current)",
            tofile=f"{label} (proposed)",
        )
    )
    if len(lines) > _MAX_DIFF_LINES:
        hidden = len(lines) - _MAX_DIFF_LINES
        lines = lines[:_MAX_DIFF_LINES] + [f"... ({hidden} more diff lines)\n"]
    return "".join(line if line.endswith("\n") else line + "\n" for line in lines)
