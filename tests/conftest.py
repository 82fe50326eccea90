"""Shared fixtures: every test runs against its own config file and session dir."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from sysaidmin.config import get_settings
from sysaidmin.plan.models import CommandTask, FileEditTask, Plan


def write_config(path: Path, **overrides) -> Path:
    data = {
        "version": 1,
        "dry_run": False,
        "default_shell": "/bin/sh",
        "command_timeout": 10,
        "log_level": "WARNING",
        "allowlist": {
            "command_patterns": [r"^echo\s", r"^true$", r"^false$", r"^sleep\s"],
            "file_patterns": [r"^/tmp/", r"^/private/"],
            "max_edit_size_kb": 1,
        },
    }
    data.update(overrides)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the config loader at a throwaway file and session directory."""
    config_file = write_config(tmp_path / "config.yaml")
    monkeypatch.setenv("SYSAIDMIN_CONFIG", str(config_file))
    monkeypatch.setenv("SYSAIDMIN_SESSION_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("SYSAIDMIN_LOG_LEVEL", "WARNING")
    for name in ("SYSAIDMIN_DRYRUN", "SYSAIDMIN_SHELL"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield config_file
    get_settings.cache_clear()


def make_plan(*tasks, request_id: str = "req-test") -> Plan:
    """Build a plan from ``("command", cmd)`` / ``("file_edit", path, content)`` tuples."""
    built = []
    for idx, entry in enumerate(tasks):
        if entry[0] == "command":
            built.append(CommandTask(id=idx, command=entry[1]))
        else:
            content = entry[2] if isinstance(entry[2], bytes) else entry[2].encode("utf-8")
            built.append(FileEditTask(id=idx, path=entry[1], new_content=content))
    return Plan(tasks=tuple(built), request_id=request_id)
