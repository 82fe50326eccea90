"""Tests for sysaidmin.executor.runner — running commands and applying edits."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from sysaidmin.errors import BackupError
from sysaidmin.executor import runner as runner_module
from sysaidmin.executor.backup import BackupManager, backup_path_for
from sysaidmin.executor.runner import TaskExecutor
from sysaidmin.plan.models import CommandTask, FileEditTask, TaskStatus


class TestCommandExecution:
    """Commands run through the shell; every failure mode is an outcome."""

    def setup_method(self) -> None:
        self.executor = TaskExecutor(shell="/bin/sh", timeout=10)

    def test_successful_command(self) -> None:
        outcome = self.executor.execute(CommandTask(id=0, command="echo hello"))
        assert outcome.status is TaskStatus.SUCCEEDED
        assert outcome.exit_code == 0
        assert outcome.stdout.strip() == "hello"
        assert not outcome.simulated

    def test_nonzero_exit_fails(self) -> None:
        outcome = self.executor.execute(CommandTask(id=1, command="echo oops >&2; exit 3"))
        assert outcome.status is TaskStatus.FAILED
        assert outcome.exit_code == 3
        assert "oops" in outcome.stderr
        assert outcome.detail.startswith("exit 3")

    def test_timeout_fails(self) -> None:
        executor = TaskExecutor(shell="/bin/sh", timeout=0.5)
        outcome = executor.execute(CommandTask(id=2, command="sleep 30"))
        assert outcome.status is TaskStatus.FAILED
        assert "timed out" in outcome.detail

    def test_output_is_truncated(self) -> None:
        executor = TaskExecutor(shell="/bin/sh", output_cap=100)
        outcome = executor.execute(CommandTask(id=3, command="head -c 5000 /dev/zero | tr '\\0' a"))
        assert outcome.status is TaskStatus.SUCCEEDED
        assert "output truncated at 100 bytes" in outcome.stdout
        assert outcome.stdout.startswith("a" * 100)

    def test_missing_shell_fails(self) -> None:
        executor = TaskExecutor(shell="/nonexistent/shell")
        outcome = executor.execute(CommandTask(id=4, command="true"))
        assert outcome.status is TaskStatus.FAILED
        assert "failed to start" in outcome.detail

    def test_working_directory_fixed(self, tmp_path: Path) -> None:
        executor = TaskExecutor(shell="/bin/sh", cwd=str(tmp_path))
        executor.execute(CommandTask(id=0, command="cd /"))
        outcome = executor.execute(CommandTask(id=1, command="pwd -P"))
        assert outcome.stdout.strip() == os.path.realpath(tmp_path)

    def test_dry_run_does_not_execute(self, tmp_path: Path) -> None:
        marker = tmp_path / "marker"
        outcome = self.executor.execute(CommandTask(id=0, command=f"touch {marker}"), dry_run=True)
        assert outcome.status is TaskStatus.SUCCEEDED
        assert outcome.simulated
        assert outcome.exit_code is None
        assert "would run" in outcome.detail
        assert not marker.exists()

    def test_unknown_task_type_raises(self) -> None:
        with pytest.raises(TypeError):
            self.executor.execute(object())  # type: ignore[arg-type]


class TestFileEdits:
    """Live edits back up first, then write atomically."""

    def setup_method(self) -> None:
        self.executor = TaskExecutor(shell="/bin/sh")

    def test_edit_writes_and_backs_up(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"old\n")
        outcome = self.executor.execute(FileEditTask(id=0, path=str(target), new_content=b"new\n"))
        assert outcome.status is TaskStatus.SUCCEEDED
        assert target.read_bytes() == b"new\n"
        assert outcome.backup is not None
        assert Path(outcome.backup.backup_path).read_bytes() == b"old\n"

    def test_backup_happens_before_write(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"old\n")
        seen: list[bool] = []

        def checking_write(path, data, mode=None):
            seen.append(backup_path_for(path).exists())
            Path(path).write_bytes(data)
            return Path(path)

        monkeypatch.setattr(runner_module, "atomic_write", checking_write)
        self.executor.execute(FileEditTask(id=0, path=str(target), new_content=b"new\n"))
        assert seen == [True]

    def test_backup_failure_leaves_file_untouched(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"old\n")
        backup_path_for(target).write_bytes(b"earlier backup")
        outcome = self.executor.execute(FileEditTask(id=0, path=str(target), new_content=b"new\n"))
        assert outcome.status is TaskStatus.FAILED
        assert "backup failed" in outcome.detail
        assert target.read_bytes() == b"old\n"

    def test_backup_error_from_manager(self, tmp_path: Path) -> None:
        class RefusingBackups(BackupManager):
            def backup(self, path):
                raise BackupError("disk full")

        target = tmp_path / "app.conf"
        target.write_bytes(b"old\n")
        executor = TaskExecutor(shell="/bin/sh", backups=RefusingBackups())
        outcome = executor.execute(FileEditTask(id=0, path=str(target), new_content=b"new\n"))
        assert outcome.status is TaskStatus.FAILED
        assert "disk full" in outcome.detail
        assert target.read_bytes() == b"old\n"

    def test_write_failure_keeps_backup(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"old\n")

        def failing_write(path, data, mode=None):
            raise OSError("read-only filesystem")

        monkeypatch.setattr(runner_module, "atomic_write", failing_write)
        outcome = self.executor.execute(FileEditTask(id=0, path=str(target), new_content=b"new\n"))
        assert outcome.status is TaskStatus.FAILED
        assert "backup retained" in outcome.detail
        assert outcome.backup is not None
        assert backup_path_for(target).read_bytes() == b"old\n"

    def test_missing_file_fails_by_default(self, tmp_path: Path) -> None:
        target = tmp_path / "new.conf"
        outcome = self.executor.execute(FileEditTask(id=0, path=str(target), new_content=b"x"))
        assert outcome.status is TaskStatus.FAILED
        assert not target.exists()

    def test_missing_file_created_when_enabled(self, tmp_path: Path) -> None:
        executor = TaskExecutor(shell="/bin/sh", create_missing_files=True)
        target = tmp_path / "sub" / "new.conf"
        outcome = executor.execute(FileEditTask(id=0, path=str(target), new_content=b"x"))
        assert outcome.status is TaskStatus.SUCCEEDED
        assert outcome.backup is None
        assert target.read_bytes() == b"x"

    def test_dry_run_edit_shows_diff(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"listen 80;\n")
        outcome = self.executor.execute(
            FileEditTask(id=0, path=str(target), new_content=b"listen 8080;\n"), dry_run=True
        )
        assert outcome.status is TaskStatus.SUCCEEDED
        assert outcome.simulated
        assert "-listen 80;" in outcome.diff
        assert "+listen 8080;" in outcome.diff
        assert target.read_bytes() == b"listen 80;\n"
        assert not backup_path_for(target).exists()

    def test_relative_path_fails(self) -> None:
        outcome = self.executor.execute(FileEditTask(id=0, path="etc/app.conf", new_content=b"x"))
        assert outcome.status is TaskStatus.FAILED
        assert "relative path" in outcome.detail

    def test_writes_normalized_target(self, tmp_path: Path) -> None:
        base = tmp_path.resolve()
        (base / "allowed").mkdir()
        (base / "secret" / "sub").mkdir(parents=True)
        (base / "allowed" / "link").symlink_to(base / "secret" / "sub")
        victim = base / "secret" / "victim.conf"
        victim.write_bytes(b"safe\n")
        local = base / "allowed" / "victim.conf"
        local.write_bytes(b"old\n")

        task = FileEditTask(id=0, path=f"{base}/allowed/link/../victim.conf", new_content=b"new\n")
        outcome = self.executor.execute(task)

        assert outcome.status is TaskStatus.SUCCEEDED
        assert victim.read_bytes() == b"safe\n"
        assert local.read_bytes() == b"new\n"
        assert outcome.backup.original_path == str(local)

    def test_second_edit_in_run_reuses_backup(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"v0\n")
        taken: dict = {}

        first = self.executor.execute(FileEditTask(id=0, path=str(target), new_content=b"v1\n"), backups_taken=taken)
        second = self.executor.execute(FileEditTask(id=1, path=str(target), new_content=b"v2\n"), backups_taken=taken)

        assert first.status is TaskStatus.SUCCEEDED
        assert second.status is TaskStatus.SUCCEEDED
        assert "earlier in this run" in second.detail
        assert second.backup == first.backup
        assert target.read_bytes() == b"v2\n"
        assert backup_path_for(target).read_bytes() == b"v0\n"
        assert list(taken) == [str(target)]
