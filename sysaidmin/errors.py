"""
sysaidmin.errors — Exception hierarchy for the engine.

Only plan-parse, policy-config and plan-rejection errors escape a run.
Everything that goes wrong inside a single task is folded into a ``Failed``
outcome by the executor or orchestrator.
"""

from __future__ import annotations


class SysaidminError(Exception):
    """Base class for all sysaidmin errors."""


class PlanParseError(SysaidminError):
    """The plan document is not valid JSON or does not match the plan schema.

    The whole plan is rejected: nothing is classified, executed or recorded.
    """


class ConfigError(SysaidminError):
    """The configuration file cannot be read or fails validation."""


class PolicyConfigError(ConfigError):
    """An allowlist rule is invalid (bad regex, negative size limit)."""


class PlanRejectedError(SysaidminError):
    """A plan was submitted while another plan is still running."""


class InvalidTransitionError(SysaidminError):
    """A task status change that the state machine does not permit."""


class BackupError(SysaidminError):
    """A backup could not be created, restored or discarded."""


class PersistenceError(SysaidminError):
    """The session recorder failed to write to durable storage."""
