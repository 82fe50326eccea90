"""
sysaidmin.executor.backup — Point-in-time copies of files before mutation.

A backup lives next to its original as ``<original>.sysaidmin.bak`` with
owner-only permissions (the content may include secrets).  It is created with
``O_EXCL``: if a backup already exists, from an earlier edit the operator has
not yet reviewed, the new backup, and therefore the edit, is refused.  That
also gives mutual exclusion per path without a separate lock.

Backups are never pruned here.  ``restore`` and ``discard`` exist for
operator tooling only and are never called automatically.
"""

from __future__ import annotations

import os
import shutil
import stat
from datetime import datetime, timezone
from pathlib import Path

from sysaidmin.errors import BackupError
from sysaidmin.executor.fsutil import atomic_write
from sysaidmin.logging import get_logger
from sysaidmin.plan.models import BackupRecord

log = get_logger(__name__)

BACKUP_SUFFIX = ".sysaidmin.bak"
BACKUP_MODE = 0o600


def backup_path_for(path: str | Path) -> Path:
    """Return the backup location for *path*."""
    return Path(f"{os.fspath(path)}{BACKUP_SUFFIX}")


def _remove_quietly(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class BackupManager:
    """Create, find, restore and discard file backups."""

    def backup(self, path: str | Path) -> BackupRecord:
        """Copy *path* to its backup location and confirm it on disk.

        Raises
        ------
        BackupError
            If the source is missing or not a regular file, if a backup
            already exists, or if the copy fails.  A partial backup created
            by this call is removed; the source is never touched.
        """
        source = Path(path)
        dest = backup_path_for(source)

        try:
            st = os.lstat(source)
        except FileNotFoundError:
            raise BackupError(f"cannot back up {source}: file does not exist") from None
        except OSError as exc:
            raise BackupError(f"cannot back up {source}: {exc}") from exc
        if not stat.S_ISREG(st.st_mode):
            raise BackupError(f"cannot back up {source}: not a regular file")

        try:
            fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_EXCL, BACKUP_MODE)
        except FileExistsError:
            raise BackupError(
                f"backup {dest} already exists from an earlier edit; restore or discard it first"
            ) from None
        except OSError as exc:
            raise BackupError(f"cannot create backup {dest}: {exc}") from exc

        try:
            os.fchmod(fd, BACKUP_MODE)
            with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
                shutil.copyfileobj(src, out)
                out.flush()
                os.fsync(out.fileno())
            copied = os.stat(dest).st_size
            expected = os.stat(source).st_size
            if copied != expected:
                raise BackupError(f"backup {dest} is {copied} bytes, expected {expected}")
        except OSError as exc:
            _remove_quietly(dest)
            raise BackupError(f"failed writing backup {dest}: {exc}") from exc
        except BaseException:
            _remove_quietly(dest)
            raise

        record = BackupRecord(
            original_path=str(source),
            backup_path=str(dest),
            mode=stat.S_IMODE(st.st_mode),
            uid=st.st_uid,
            gid=st.st_gid,
        )
        log.info("backup created", path=str(source), backup=str(dest), size=copied)
        return record

    def find(self, path: str | Path) -> BackupRecord | None:
        """Return the record for an existing backup of *path*, if any."""
        dest = backup_path_for(path)
        if not dest.is_file():
            return None
        created = datetime.fromtimestamp(dest.stat().st_mtime, tz=timezone.utc)
        return BackupRecord(original_path=str(path), backup_path=str(dest), created_at=created)

    def restore(self, record: BackupRecord) -> Path:
        """Atomically put the backup content back at the original path.

        The original's mode, owner and group recorded at backup time are
        reapplied, so a deleted original comes back as it was.  Without that
        metadata a missing original is recreated owner-only.  The backup
        itself is kept; call ``discard`` once the operator is done.
        """
        backup = Path(record.backup_path)
        try:
            data = backup.read_bytes()
        except OSError as exc:
            raise BackupError(f"cannot read backup {backup}: {exc}") from exc
        try:
            restored = atomic_write(
                record.original_path,
                data,
                mode=self._restore_mode(record),
                uid=record.uid,
                gid=record.gid,
            )
        except OSError as exc:
            raise BackupError(f"cannot restore {record.original_path}: {exc}") from exc
        log.info("backup restored", path=record.original_path, backup=str(backup))
        return restored

    @staticmethod
    def _restore_mode(record: BackupRecord) -> int | None:
        if record.mode is not None:
            return record.mode
        if os.path.lexists(record.original_path):
            return None
        return BACKUP_MODE

    def discard(self, record: BackupRecord) -> None:
        """Delete a backup on explicit operator request."""
        try:
            os.unlink(record.backup_path)
        except FileNotFoundError:
            raise BackupError(f"backup {record.backup_path} does not exist") from None
        except OSError as exc:
            raise BackupError(f"cannot remove backup {record.backup_path}: {exc}") from exc
        log.info("backup discarded", path=record.original_path, backup=record.backup_path)
