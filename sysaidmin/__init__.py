"""
sysaidmin — plan execution and safety-gating engine for a terminal sysadmin agent.

An LLM proposes a plan (shell commands and file edits); sysaidmin classifies
every task against an allowlist, runs what is permitted, backs files up before
touching them, and records what happened.
"""

__version__ = "0.1.0"
