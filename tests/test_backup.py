"""Tests for sysaidmin.executor.backup and fsutil — backups and atomic writes."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from sysaidmin.errors import BackupError
from sysaidmin.executor.backup import BACKUP_SUFFIX, BackupManager, backup_path_for
from sysaidmin.executor.fsutil import atomic_write


class TestBackupManager:
    """Backups are exclusive, owner-only copies next to the original."""

    def setup_method(self) -> None:
        self.manager = BackupManager()

    def test_backup_copies_content(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"original\n")
        record = self.manager.backup(target)
        assert record.backup_path == str(target) + BACKUP_SUFFIX
        assert Path(record.backup_path).read_bytes() == b"original\n"
        assert target.read_bytes() == b"original\n"

    def test_backup_is_owner_only(self, tmp_path: Path) -> None:
        target = tmp_path / "secret.conf"
        target.write_text("password=hunter2\n")
        os.chmod(target, 0o644)
        record = self.manager.backup(target)
        assert stat.S_IMODE(os.stat(record.backup_path).st_mode) == 0o600

    def test_existing_backup_refused(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"v1")
        self.manager.backup(target)
        target.write_bytes(b"v2")
        with pytest.raises(BackupError, match="already exists"):
            self.manager.backup(target)
        assert backup_path_for(target).read_bytes() == b"v1"

    def test_missing_file_refused(self, tmp_path: Path) -> None:
        with pytest.raises(BackupError, match="does not exist"):
            self.manager.backup(tmp_path / "missing.conf")
        assert not backup_path_for(tmp_path / "missing.conf").exists()

    def test_directory_refused(self, tmp_path: Path) -> None:
        with pytest.raises(BackupError, match="not a regular file"):
            self.manager.backup(tmp_path)

    def test_find_restore_discard(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"before")
        self.manager.backup(target)
        target.write_bytes(b"after")

        record = self.manager.find(target)
        assert record is not None
        self.manager.restore(record)
        assert target.read_bytes() == b"before"
        assert Path(record.backup_path).exists()

        self.manager.discard(record)
        assert self.manager.find(target) is None

    def test_backup_records_original_metadata(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"x")
        os.chmod(target, 0o640)
        record = self.manager.backup(target)
        st = os.stat(target)
        assert record.mode == 0o640
        assert (record.uid, record.gid) == (st.st_uid, st.st_gid)

    def test_restore_deleted_original_keeps_mode(self, tmp_path: Path) -> None:
        target = tmp_path / "secret.conf"
        target.write_bytes(b"token=abc\n")
        os.chmod(target, 0o640)
        record = self.manager.backup(target)
        target.unlink()

        self.manager.restore(record)
        assert target.read_bytes() == b"token=abc\n"
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o640

    def test_restore_without_metadata_is_owner_only(self, tmp_path: Path) -> None:
        target = tmp_path / "secret.conf"
        target.write_bytes(b"token=abc\n")
        self.manager.backup(target)
        target.unlink()

        record = self.manager.find(target)
        assert record is not None and record.mode is None
        self.manager.restore(record)
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600

    def test_find_without_backup(self, tmp_path: Path) -> None:
        assert self.manager.find(tmp_path / "nothing") is None

    def test_discard_missing_backup_raises(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"x")
        record = self.manager.backup(target)
        os.unlink(record.backup_path)
        with pytest.raises(BackupError):
            self.manager.discard(record)


class TestAtomicWrite:
    """atomic_write replaces content in one step and keeps permissions."""

    def test_replaces_content(self, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_bytes(b"old")
        atomic_write(target, b"new")
        assert target.read_bytes() == b"new"

    def test_preserves_mode(self, tmp_path: Path) -> None:
        target = tmp_path / "script.sh"
        target.write_bytes(b"#!/bin/sh\n")
        os.chmod(target, 0o750)
        atomic_write(target, b"#!/bin/sh\necho hi\n")
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o750

    def test_new_file_default_mode(self, tmp_path: Path) -> None:
        target = tmp_path / "fresh.txt"
        atomic_write(target, b"hello")
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o644

    def test_no_temp_files_left_on_failure(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        target = tmp_path / "file.txt"
        target.write_bytes(b"old")

        def broken_replace(src, dst):
            raise OSError("disk on fire")

        monkeypatch.setattr(os, "replace", broken_replace)
        with pytest.raises(OSError):
            atomic_write(target, b"new")
        assert target.read_bytes() == b"old"
        assert list(tmp_path.glob(".file.txt.*.tmp")) == []

    @pytest.mark.skipif(not hasattr(os, "geteuid") or os.geteuid() != 0, reason="changing group needs root")
    def test_preserves_owner_and_group(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"old")
        os.chown(target, 0, 42)
        atomic_write(target, b"new")
        st = os.stat(target)
        assert (st.st_uid, st.st_gid) == (0, 42)

    def test_chown_refusal_still_writes(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"old")
        os.chmod(target, 0o640)

        def refusing_chown(path, uid, gid):
            raise PermissionError("operation not permitted")

        monkeypatch.setattr(os, "chown", refusing_chown)
        atomic_write(target, b"new")
        assert target.read_bytes() == b"new"
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o640
