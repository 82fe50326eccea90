"""
sysaidmin.session — Session snapshots, event log and command history.
"""

from sysaidmin.session.history import CommandHistory
from sysaidmin.session.recorder import SessionRecorder, SessionSnapshot

__all__ = ["CommandHistory", "SessionRecorder", "SessionSnapshot"]
