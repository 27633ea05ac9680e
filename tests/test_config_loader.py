"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path("/var/lib/vhostctl")
    assert config.web_root == Path("/var/www")
    assert config.protected_domains == ("dashboard.local", "phpmyadmin.local")
    assert config.database.url == "sqlite:////var/lib/vhostctl/sites.db"
    assert config.hosts.file == Path("/etc/hosts")
    assert config.hosts.mode == "file"
    assert config.webserver.format == "nix"
    assert config.scripts.bin_dir == Path("/usr/local/bin")
    assert config.scripts.timeout == 300.0
    assert config.audit.log_file == Path("/var/log/vhostctl/activity.log")


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "vhostctl.yml"
    cfg.write_text(
        "web_root: /srv/www\n"
        "protected_domains:\n"
        "  - admin.local\n"
        "hosts:\n"
        "  mode: script\n"
        "webserver:\n"
        "  format: nginx\n"
        "  config_file: /etc/nginx/conf.d/vhosts.conf\n"
        "database:\n"
        "  url: sqlite:///{state}\n".format(state=tmp_path / "sites.db"),
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.web_root == Path("/srv/www")
    assert config.protected_domains == ("admin.local",)
    assert config.hosts.mode == "script"
    assert config.webserver.format == "nginx"
    assert config.webserver.config_file == Path("/etc/nginx/conf.d/vhosts.conf")
    assert config.database.url == f"sqlite:///{tmp_path / 'sites.db'}"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "vhostctl.yml"
    cfg.write_text("scripts:\n  timeout: 60\n", encoding="utf-8")
    state_dir = tmp_path / "state"
    env = {
        "VHOSTCTL_CONFIG_FILE": str(cfg),
        "VHOSTCTL_STATE_DIR": str(state_dir),
        "VHOSTCTL_LOCK_TIMEOUT": "45",
        "VHOSTCTL_SCRIPTS__TIMEOUT": "12.5",
        "VHOSTCTL_HOSTS__FILE": str(tmp_path / "hosts"),
        "VHOSTCTL_AUDIT__ACTOR": "admin",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.state_dir == state_dir
    assert config.database.url == f"sqlite:///{state_dir / 'sites.db'}"
    assert config.lock_timeout == 45.0
    assert config.scripts.timeout == 12.5
    assert config.hosts.file == tmp_path / "hosts"
    assert config.audit.actor == "admin"


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides have the highest precedence."""
    config = load_config(
        tmp_path / "missing.yml",
        env={"VHOSTCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 5},
    )

    assert config.lock_timeout == 5.0


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("unknown_key: 1\n", "Unknown configuration keys"),
        ("hosts:\n  colour: blue\n", "Unknown hosts configuration keys"),
        ("hosts:\n  mode: ftp\n", "Unsupported hosts mode"),
        ("hosts:\n  local_suffix: local\n", "must start with a dot"),
        ("webserver:\n  format: apache\n", "Unsupported webserver format"),
        ("protected_domains:\n  - ''\n", "protected_domains[0]"),
        ("lock_timeout: -1\n", "lock_timeout"),
    ],
)
def test_invalid_config_is_rejected(tmp_path: Path, content: str, message: str) -> None:
    """Invalid settings raise ConfigError with a helpful message."""
    cfg = tmp_path / "vhostctl.yml"
    cfg.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError) as excinfo:
        load_config(config_file=cfg, env={})

    assert message in str(excinfo.value)


def test_to_dict_is_json_friendly(tmp_path: Path) -> None:
    """The effective configuration serialises to plain types."""
    config = load_config(tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["hosts"] == {
        "file": "/etc/hosts",
        "backup_dir": "/etc/hosts-backups",
        "address": "127.0.0.1",
        "local_suffix": ".local",
        "mode": "file",
    }
    assert data["protected_domains"] == ["dashboard.local", "phpmyadmin.local"]
