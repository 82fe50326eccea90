"""
sysaidmin.safety — Allowlist policy engine.
"""

from sysaidmin.safety.allowlist import (
    COMMAND_NOT_PERMITTED,
    EDIT_TOO_LARGE,
    PATH_NOT_PERMITTED,
    Allowlist,
)

__all__ = [
    "Allowlist",
    "COMMAND_NOT_PERMITTED",
    "EDIT_TOO_LARGE",
    "PATH_NOT_PERMITTED",
]
