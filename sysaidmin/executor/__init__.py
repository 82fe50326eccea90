"""
sysaidmin.executor — Task execution, backups and atomic file writes.
"""

from sysaidmin.executor.backup import BACKUP_SUFFIX, BackupManager, backup_path_for
from sysaidmin.executor.fsutil import atomic_write
from sysaidmin.executor.runner import DEFAULT_OUTPUT_CAP, TaskExecutor

__all__ = [
    "BACKUP_SUFFIX",
    "BackupManager",
    "DEFAULT_OUTPUT_CAP",
    "TaskExecutor",
    "atomic_write",
    "backup_path_for",
]
