"""Shared fixtures for the vhostctl test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from vhostctl.audit import AuditLog
from vhostctl.backups import BackupStore
from vhostctl.locking import LockManager
from vhostctl.providers.hosts import HostsFileManager
from vhostctl.state.sites import SiteRegistry, open_registry
from vhostctl.templates import TemplateEngine

BASE_HOSTS = (
    "127.0.0.1 localhost\n"
    "::1 localhost ip6-localhost\n"
    "# local development\n"
    "127.0.0.1 dashboard.local\n"
)


@pytest.fixture()
def locks(tmp_path: Path) -> LockManager:
    """Lock manager rooted in the temporary directory."""
    return LockManager(tmp_path / "run" / "locks", default_timeout=2.0)


@pytest.fixture()
def hosts_file(tmp_path: Path) -> Path:
    """A small alias file with one existing local domain."""
    path = tmp_path / "etc" / "hosts"
    path.parent.mkdir(parents=True)
    path.write_text(BASE_HOSTS, encoding="utf-8")
    path.chmod(0o644)
    return path


@pytest.fixture()
def hosts_manager(tmp_path: Path, hosts_file: Path, locks: LockManager) -> HostsFileManager:
    """Alias-file manager writing backups under ``tmp_path/hosts-backups``."""
    return HostsFileManager(
        path=hosts_file,
        backups=BackupStore(tmp_path / "hosts-backups", "hosts.backup"),
        locks=locks,
    )


@pytest.fixture()
def audit_log(tmp_path: Path) -> AuditLog:
    """Audit log under the temporary directory."""
    return AuditLog(tmp_path / "logs" / "activity.log")


@pytest.fixture()
def registry(tmp_path: Path) -> SiteRegistry:
    """SQLite-backed site registry with its schema created."""
    return open_registry(
        f"sqlite:///{tmp_path / 'state' / 'sites.db'}",
        default_document_root=str(tmp_path / "www"),
    )


@pytest.fixture()
def templates() -> TemplateEngine:
    """Template engine using only the built-in templates."""
    return TemplateEngine.with_overrides(None)


@pytest.fixture()
def write_script(tmp_path: Path) -> Callable[..., Path]:
    """Return a helper that writes executable shell stubs into ``tmp_path/bin``."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _write(name: str, body: str = "exit 0\n", *, executable: bool = True) -> Path:
        path = bin_dir / name
        path.write_text(f"#!/bin/sh\n{body}", encoding="utf-8")
        path.chmod(0o755 if executable else 0o644)
        return path

    return _write


@pytest.fixture()
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Point every vhostctl path at the temporary directory via environment variables."""
    hosts = tmp_path / "etc" / "hosts"
    hosts.parent.mkdir(parents=True, exist_ok=True)
    if not hosts.exists():
        hosts.write_text(BASE_HOSTS, encoding="utf-8")
    nix = tmp_path / "etc" / "nixos" / "configuration.nix"
    nix.parent.mkdir(parents=True, exist_ok=True)
    nix.write_text(
        "{ config, pkgs, ... }:\n"
        "{\n"
        "  services.nginx = {\n"
        "    enable = true;\n"
        "    virtualHosts = {\n"
        "      \"placeholder.local\" = { root = \"/var/www/placeholder\"; };\n"
        "    };\n"
        "  };\n"
        "}\n",
        encoding="utf-8",
    )
    (tmp_path / "bin").mkdir(exist_ok=True)
    env = {
        "VHOSTCTL_CONFIG_FILE": str(tmp_path / "config.yml"),
        "VHOSTCTL_STATE_DIR": str(tmp_path / "state"),
        "VHOSTCTL_LOGS_DIR": str(tmp_path / "logs"),
        "VHOSTCTL_RUNTIME_DIR": str(tmp_path / "run"),
        "VHOSTCTL_TEMPLATES_DIR": str(tmp_path / "templates"),
        "VHOSTCTL_WEB_ROOT": str(tmp_path / "www"),
        "VHOSTCTL_HOSTS__FILE": str(hosts),
        "VHOSTCTL_HOSTS__BACKUP_DIR": str(tmp_path / "hosts-backups"),
        "VHOSTCTL_WEBSERVER__CONFIG_FILE": str(nix),
        "VHOSTCTL_WEBSERVER__BACKUP_DIR": str(tmp_path / "webserver-backups"),
        "VHOSTCTL_SCRIPTS__BIN_DIR": str(tmp_path / "bin"),
    }
    for key in list(os.environ):
        if key.startswith("VHOSTCTL_"):
            monkeypatch.delenv(key, raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
