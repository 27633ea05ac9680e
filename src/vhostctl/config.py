"""Layered settings for vhostctl.

Later layers win:

1. ``DEFAULTS`` below.
2. The YAML file, ``/etc/vhostctl/config.yml`` unless ``--config-file`` or
   ``VHOSTCTL_CONFIG_FILE`` names another one.
3. ``VHOSTCTL_*`` environment variables. A double underscore descends into a
   section, so ``VHOSTCTL_HOSTS__FILE=/tmp/hosts`` sets ``hosts.file``.
4. Overrides passed to :func:`load_config` by the caller.

Environment values go through ``yaml.safe_load``, so ``true``, ``12.5`` and
``[a, b]`` arrive typed. The merged result is frozen into dataclasses.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

ENV_PREFIX = "VHOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"


class ConfigError(RuntimeError):
    """Settings could not be read or failed validation."""


@dataclass(frozen=True)
class DatabaseConfig:
    """Relational store connection settings."""

    url: str
    echo: bool = False

    def to_dict(self) -> dict[str, object]:
        """Plain-type view for JSON output."""
        return {"url": self.url, "echo": self.echo}


@dataclass(frozen=True)
class HostsConfig:
    """Alias file location and conventions."""

    file: Path = Path("/etc/hosts")
    backup_dir: Path = Path("/etc/hosts-backups")
    address: str = "127.0.0.1"
    local_suffix: str = ".local"
    mode: str = "file"

    def to_dict(self) -> dict[str, object]:
        """Plain-type view for JSON output."""
        return {
            "file": str(self.file),
            "backup_dir": str(self.backup_dir),
            "address": self.address,
            "local_suffix": self.local_suffix,
            "mode": self.mode,
        }


@dataclass(frozen=True)
class WebserverConfig:
    """Generated web-server configuration settings."""

    config_file: Path = Path("/etc/nixos/configuration.nix")
    backup_dir: Path = Path("/etc/nixos/webserver-backups")
    format: str = "nix"
    php_fastcgi: str = "unix:/run/phpfpm/www.sock"

    def to_dict(self) -> dict[str, object]:
        """Plain-type view for JSON output."""
        return {
            "config_file": str(self.config_file),
            "backup_dir": str(self.backup_dir),
            "format": self.format,
            "php_fastcgi": self.php_fastcgi,
        }


@dataclass(frozen=True)
class ScriptsConfig:
    """Location and limits for privileged maintenance scripts."""

    bin_dir: Path = Path("/usr/local/bin")
    timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Plain-type view for JSON output."""
        return {"bin_dir": str(self.bin_dir), "timeout": self.timeout}


@dataclass(frozen=True)
class AuditConfig:
    """Audit trail sink settings."""

    log_file: Path
    actor: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Plain-type view for JSON output."""
        return {"log_file": str(self.log_file), "actor": self.actor}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vhostctl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    web_root: Path
    lock_timeout: float
    protected_domains: tuple[str, ...]
    database: DatabaseConfig
    hosts: HostsConfig
    webserver: WebserverConfig
    scripts: ScriptsConfig
    audit: AuditConfig

    def to_dict(self) -> dict[str, object]:
        """Nested plain-type view, as printed by ``config show``."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "web_root": str(self.web_root),
            "lock_timeout": self.lock_timeout,
            "protected_domains": list(self.protected_domains),
            "database": self.database.to_dict(),
            "hosts": self.hosts.to_dict(),
            "webserver": self.webserver.to_dict(),
            "scripts": self.scripts.to_dict(),
            "audit": self.audit.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vhostctl/config.yml",
    "state_dir": "/var/lib/vhostctl",
    "logs_dir": "/var/log/vhostctl",
    "runtime_dir": "/run/vhostctl",
    "templates_dir": "/etc/vhostctl/templates",
    "web_root": "/var/www",
    "lock_timeout": 30.0,
    "protected_domains": ["dashboard.local", "phpmyadmin.local"],
    "database": {
        "url": None,  # derived from state_dir when absent
        "echo": False,
    },
    "hosts": {
        "file": "/etc/hosts",
        "backup_dir": "/etc/hosts-backups",
        "address": "127.0.0.1",
        "local_suffix": ".local",
        "mode": "file",
    },
    "webserver": {
        "config_file": "/etc/nixos/configuration.nix",
        "backup_dir": "/etc/nixos/webserver-backups",
        "format": "nix",
        "php_fastcgi": "unix:/run/phpfpm/www.sock",
    },
    "scripts": {
        "bin_dir": "/usr/local/bin",
        "timeout": 300.0,
    },
    "audit": {
        "log_file": None,  # derived from logs_dir when absent
        "actor": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "database": {"url", "echo"},
    "hosts": {"file", "backup_dir", "address", "local_suffix", "mode"},
    "webserver": {"config_file", "backup_dir", "format", "php_fastcgi"},
    "scripts": {"bin_dir", "timeout"},
    "audit": {"log_file", "actor"},
}
ALLOWED_HOSTS_MODES = {"file", "script"}
ALLOWED_WEBSERVER_FORMATS = {"nix", "nginx"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Return the effective :class:`AppConfig`.

    ``config_file`` takes precedence over ``VHOSTCTL_CONFIG_FILE``; ``env``
    defaults to ``os.environ``.
    """
    environ: Mapping[str, str] = os.environ if env is None else env
    settings = copy.deepcopy(DEFAULTS)

    if config_file:
        source = Path(config_file)
    else:
        source = Path(environ.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"]))

    for layer in (_read_config_file(source), _env_layer(environ), dict(overrides or {})):
        _merge_into(settings, layer)
    settings["config_file"] = str(source)

    _check_settings(settings)
    return _build_app_config(settings)


def _read_config_file(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        with path.open(encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except yaml.YAMLError as exc:  # pragma: no cover - message comes from PyYAML
        raise ConfigError(f"{path} is not valid YAML: {exc}") from exc
    if document is None:
        return {}
    return _mapping(document, str(path))


def _check_settings(settings: Mapping[str, object]) -> None:
    stray = sorted(set(settings) - ALLOWED_TOP_LEVEL_KEYS)
    if stray:
        raise ConfigError(f"Unknown configuration keys: {', '.join(stray)}.")

    _positive_float(settings.get("lock_timeout"), "lock_timeout", default=30.0)

    for section, known in ALLOWED_SECTION_KEYS.items():
        stray = sorted(set(_mapping(settings.get(section), section)) - known)
        if stray:
            raise ConfigError(f"Unknown {section} configuration keys: {', '.join(stray)}.")

    hosts = _mapping(settings.get("hosts"), "hosts")
    if "mode" in hosts and str(hosts["mode"]) not in ALLOWED_HOSTS_MODES:
        raise ConfigError(
            f"Unsupported hosts mode {hosts['mode']!r}; "
            f"use one of {', '.join(sorted(ALLOWED_HOSTS_MODES))}."
        )
    if "local_suffix" in hosts and not str(hosts["local_suffix"]).startswith("."):
        raise ConfigError(f"hosts.local_suffix must start with a dot, got {hosts['local_suffix']!r}.")

    webserver = _mapping(settings.get("webserver"), "webserver")
    if "format" in webserver and str(webserver["format"]) not in ALLOWED_WEBSERVER_FORMATS:
        raise ConfigError(
            f"Unsupported webserver format {webserver['format']!r}; "
            f"use one of {', '.join(sorted(ALLOWED_WEBSERVER_FORMATS))}."
        )

    domains = settings.get("protected_domains")
    for position, domain in enumerate(_sequence(domains or [], "protected_domains")):
        if not (isinstance(domain, str) and domain.strip()):
            raise ConfigError(f"protected_domains[{position}] is empty or not a string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    web_root = _to_path(raw.get("web_root"))
    lock_timeout = _positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    protected_raw = raw.get("protected_domains")
    protected_domains: tuple[str, ...] = ()
    if protected_raw is not None:
        protected_domains = tuple(
            str(item).strip() for item in _sequence(protected_raw, "protected_domains")
        )

    database_mapping = _mapping(raw.get("database"), "database")
    database_url = database_mapping.get("url")
    if database_url in (None, ""):
        database_url = f"sqlite:///{state_dir / 'sites.db'}"
    database = DatabaseConfig(
        url=str(database_url),
        echo=bool(database_mapping.get("echo", False)),
    )

    hosts_mapping = _mapping(raw.get("hosts"), "hosts")
    address = str(hosts_mapping.get("address", "127.0.0.1")).strip()
    if not address:
        raise ConfigError("hosts.address must be a non-empty string.")
    hosts = HostsConfig(
        file=_to_path(hosts_mapping.get("file", "/etc/hosts")),
        backup_dir=_to_path(hosts_mapping.get("backup_dir", "/etc/hosts-backups")),
        address=address,
        local_suffix=str(hosts_mapping.get("local_suffix", ".local")),
        mode=str(hosts_mapping.get("mode", "file")),
    )

    webserver_mapping = _mapping(raw.get("webserver"), "webserver")
    webserver = WebserverConfig(
        config_file=_to_path(
            webserver_mapping.get("config_file", "/etc/nixos/configuration.nix")
        ),
        backup_dir=_to_path(
            webserver_mapping.get("backup_dir", "/etc/nixos/webserver-backups")
        ),
        format=str(webserver_mapping.get("format", "nix")),
        php_fastcgi=str(webserver_mapping.get("php_fastcgi", "unix:/run/phpfpm/www.sock")),
    )

    scripts_mapping = _mapping(raw.get("scripts"), "scripts")
    scripts = ScriptsConfig(
        bin_dir=_to_path(scripts_mapping.get("bin_dir", "/usr/local/bin")),
        timeout=_positive_float(
            scripts_mapping.get("timeout"), "scripts.timeout", default=300.0
        ),
    )

    audit_mapping = _mapping(raw.get("audit"), "audit")
    audit_log_value = audit_mapping.get("log_file")
    audit_log = _to_path(audit_log_value) if audit_log_value else logs_dir / "activity.log"
    actor_value = audit_mapping.get("actor")
    audit = AuditConfig(
        log_file=audit_log,
        actor=str(actor_value).strip() if actor_value else None,
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        web_root=web_root,
        lock_timeout=lock_timeout,
        protected_domains=protected_domains,
        database=database,
        hosts=hosts,
        webserver=webserver,
        scripts=scripts,
        audit=audit,
    )


def _env_layer(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``VHOSTCTL_A__B=value`` variables into ``{"a": {"b": value}}``."""
    layer: dict[str, object] = {}
    for name in sorted(env):
        if name == CONFIG_ENV_VAR or not name.startswith(ENV_PREFIX):
            continue
        keys = [part.lower() for part in name.removeprefix(ENV_PREFIX).split("__") if part]
        if not keys:
            continue
        node = layer
        for depth, key in enumerate(keys[:-1]):
            child = node.setdefault(key, {})
            if not isinstance(child, dict):
                dotted = ".".join(keys[: depth + 1])
                raise ConfigError(f"{name} nests below {dotted}, which is already a value.")
            node = child
        node[keys[-1]] = _parse_env_value(env[name])
    return layer


def _parse_env_value(text: str) -> object:
    try:
        return yaml.safe_load(text.strip())
    except yaml.YAMLError:  # pragma: no cover - fall back to the raw text
        return text.strip()


def _merge_into(base: dict[str, object], layer: Mapping[str, object]) -> None:
    for key, incoming in layer.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(incoming, Mapping):
            _merge_into(current, _mapping(incoming, key))
        else:
            base[key] = incoming


def _mapping(value: object, where: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where} should be a mapping, not {type(value).__name__}.")
    bad = [key for key in value if not isinstance(key, str)]
    if bad:
        raise ConfigError(f"{where} has non-string key {bad[0]!r}.")
    return dict(value)


def _sequence(value: object, where: str) -> Sequence[object]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return value
    raise ConfigError(f"{where} should be a list, not {type(value).__name__}.")


def _to_path(value: object) -> Path:
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"Expected a path, got {value!r}.")


def _positive_float(value: object | None, where: str, *, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"{where} must be a number, got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"{where} must be a number, got {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{where} must be positive, got {number:g}.")
    return number


__all__ = [
    "AppConfig",
    "AuditConfig",
    "ConfigError",
    "DatabaseConfig",
    "HostsConfig",
    "ScriptsConfig",
    "WebserverConfig",
    "load_config",
]
