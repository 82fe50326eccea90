"""Tests for sysaidmin.config — settings loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import write_config
from sysaidmin.config import (
    AllowlistSettings,
    SysaidminSettings,
    config_path,
    get_settings,
    load_settings,
)
from sysaidmin.errors import ConfigError
from sysaidmin.safety.allowlist import Allowlist


class TestSysaidminSettings:
    """Unit tests for the config loader."""

    def test_get_settings_returns_settings(self) -> None:
        settings = get_settings()
        assert isinstance(settings, SysaidminSettings)
        assert isinstance(settings.allowlist, AllowlistSettings)

    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()

    def test_values_from_file(self) -> None:
        settings = get_settings()
        assert settings.default_shell == "/bin/sh"
        assert settings.allowlist.max_edit_size_kb == 1
        assert r"^echo\s" in settings.allowlist.command_patterns

    def test_config_path_honours_env(self, isolated_config: Path) -> None:
        assert config_path() == isolated_config

    def test_builtin_defaults_are_fail_closed(self) -> None:
        settings = SysaidminSettings()
        assert settings.dry_run is False
        assert settings.max_workers == 1
        assert settings.allowlist.command_patterns == []
        assert settings.allowlist.file_patterns == []
        assert settings.allowlist.max_edit_size_kb == 64

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = load_settings(tmp_path / "does-not-exist.yaml")
        assert settings.allowlist.command_patterns == []


class TestEnvironmentOverrides:
    """Environment variables win over the config file."""

    def test_dryrun_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SYSAIDMIN_DRYRUN", "1")
        assert load_settings().dry_run is True

    def test_dryrun_env_false(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = write_config(tmp_path / "dry.yaml", dry_run=True)
        monkeypatch.setenv("SYSAIDMIN_DRYRUN", "false")
        assert load_settings(config).dry_run is False

    def test_unrecognised_dryrun_value_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SYSAIDMIN_DRYRUN", "maybe")
        assert load_settings().dry_run is False

    def test_session_dir_env(self, tmp_path: Path) -> None:
        assert load_settings().session_dir == str(tmp_path / "sessions")

    def test_shell_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SYSAIDMIN_SHELL", "/bin/zsh")
        assert load_settings().default_shell == "/bin/zsh"


class TestInvalidConfig:
    """Bad configuration is reported as ConfigError."""

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.yaml"
        bad.write_text("allowlist: [unclosed\n")
        with pytest.raises(ConfigError):
            load_settings(bad)

    def test_non_mapping(self, tmp_path: Path) -> None:
        bad = tmp_path / "list.yaml"
        bad.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(bad)

    def test_schema_violation(self, tmp_path: Path) -> None:
        config = write_config(tmp_path / "workers.yaml", max_workers=0)
        with pytest.raises(ConfigError, match="invalid configuration"):
            load_settings(config)


class TestShippedConfig:
    """The project config compiles and carries a usable allowlist."""

    def test_project_config_compiles(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SYSAIDMIN_SESSION_DIR", raising=False)
        settings = load_settings(Path(__file__).resolve().parent.parent / "config" / "config.yaml")
        allowlist = Allowlist.from_settings(settings.allowlist)
        assert allowlist.is_command_allowed("systemctl restart nginx")
        assert not allowlist.is_command_allowed("rm -rf /")
        assert allowlist.is_path_allowed("/etc/nginx/nginx.conf")
        assert not allowlist.is_path_allowed("/root/.ssh/id_rsa")
