"""
sysaidmin.plan — Plan data model and the plan JSON parser.
"""

from sysaidmin.plan.models import (
    BackupRecord,
    Classification,
    CommandTask,
    FileEditTask,
    Plan,
    Task,
    TaskOutcome,
    TaskStatus,
)
from sysaidmin.plan.parser import parse_plan

__all__ = [
    "BackupRecord",
    "Classification",
    "CommandTask",
    "FileEditTask",
    "Plan",
    "Task",
    "TaskOutcome",
    "TaskStatus",
    "parse_plan",
]
