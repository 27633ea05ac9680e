"""Regenerate the web-server virtual-host section from site records.

The provider owns one configuration file. Only the virtual-host section is
ever rewritten; everything outside it is preserved byte-for-byte. Two layouts
are supported:

``nix``
    the ``virtualHosts = { ... };`` attribute set of a NixOS module, located by
    brace matching that understands Nix strings and comments;
``nginx``
    the lines between ``# BEGIN vhostctl virtual-hosts`` and
    ``# END vhostctl virtual-hosts``.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Protocol

from ..backups import BackupRecord, BackupStore
from ..errors import (
    ConfigFileNotFoundError,
    ConfigSectionNotFoundError,
    ResourceError,
)
from ..locking import LockManager
from ..templates import TemplateEngine, TemplateRenderError

LOGGER = logging.getLogger(__name__)

NGINX_BEGIN_MARKER = "# BEGIN vhostctl virtual-hosts"
NGINX_END_MARKER = "# END vhostctl virtual-hosts"

_TEMPLATES = {
    "nix": "nixos/virtual-hosts.nix.j2",
    "nginx": "nginx/virtual-hosts.conf.j2",
}

_NIX_HEAD = re.compile(r"virtualHosts\s*=\s*\{")
_NIX_IDENT = re.compile(r"[A-Za-z0-9_'-]")


class SiteLike(Protocol):
    """Attributes the renderer reads from a site record."""

    id: int
    domain: str
    document_root: str
    ssl_enabled: bool

    @property
    def is_active(self) -> bool:  # pragma: no cover - protocol
        """Return True when the site should be served."""
        ...


@dataclass(slots=True)
class RegenerateResult:
    """Outcome of a configuration regeneration."""

    path: Path
    backup: BackupRecord | None
    changed: bool
    site_count: int
    lock_wait_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "path": str(self.path),
            "backup": self.backup.to_dict() if self.backup else None,
            "changed": self.changed,
            "site_count": self.site_count,
            "lock_wait_ms": self.lock_wait_ms,
        }


@dataclass(slots=True)
class WebserverConfigProvider:
    """Render and splice the virtual-host section of the web-server config."""

    config_file: Path
    backups: BackupStore
    locks: LockManager
    templates: TemplateEngine
    format: str = "nix"
    php_fastcgi: str = "unix:/run/phpfpm/www.sock"

    lock_name: ClassVar[str] = "webserver-config"

    def __post_init__(self) -> None:
        """Validate the configured layout."""
        if self.format not in _TEMPLATES:
            raise ValueError(f"Unsupported webserver format: {self.format!r}.")

    def render_section(self, sites: Iterable[SiteLike]) -> str:
        """Return the rendered virtual-host section for the active *sites*."""
        active = sorted((site for site in sites if site.is_active), key=lambda site: site.id)
        context = {
            "sites": [
                {
                    "domain": site.domain,
                    "root": f"{site.document_root.rstrip('/')}/{site.domain}",
                    "ssl_enabled": bool(site.ssl_enabled),
                }
                for site in active
            ],
            "php_fastcgi": self.php_fastcgi,
        }
        try:
            rendered = self.templates.render_to_string(_TEMPLATES[self.format], context)
        except TemplateRenderError as exc:
            raise ResourceError(str(exc)) from exc
        if self.format == "nix":
            return rendered.rstrip("\n")
        return rendered

    def locate_section(self, text: str) -> tuple[int, int]:
        """Return the ``[start, end)`` offsets of the virtual-host section."""
        if self.format == "nix":
            return find_nix_virtual_hosts(text)
        return find_marker_section(text)

    def regenerate(self, sites: Sequence[SiteLike]) -> RegenerateResult:
        """Rewrite the virtual-host section from *sites*.

        The section is located before anything is touched; a verified backup
        is taken under the ``webserver-config`` lock, then the new content is
        written atomically. An unchanged rendering is neither backed up nor
        written, and reports ``backup=None``.
        """
        section = self.render_section(sites)
        site_count = sum(1 for site in sites if site.is_active)
        with self.locks.resource_lock(self.lock_name) as handle:
            current = self._read_text()
            start, end = self.locate_section(current)
            updated = current[:start] + section + current[end:]
            changed = updated != current
            backup: BackupRecord | None = None
            if changed:
                backup = self.backups.snapshot(self.config_file)
                self._replace_contents(updated)
        LOGGER.debug(
            "Regenerated %s (%d active sites, changed=%s, backup %s)",
            self.config_file,
            site_count,
            changed,
            backup.name if backup else "skipped",
        )
        return RegenerateResult(
            path=self.config_file,
            backup=backup,
            changed=changed,
            site_count=site_count,
            lock_wait_ms=handle.wait_ms,
        )

    # Internal helpers --------------------------------------------------------
    def _read_text(self) -> str:
        try:
            return self.config_file.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigFileNotFoundError(
                f"Web server configuration not found: {self.config_file}"
            ) from exc
        except OSError as exc:
            raise ResourceError(f"Cannot read {self.config_file}: {exc}") from exc

    def _replace_contents(self, content: str) -> None:
        target = self.config_file
        try:
            mode = target.stat().st_mode & 0o777
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        except OSError as exc:
            raise ResourceError(f"Cannot prepare rewrite of {target}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, target)
        except OSError as exc:
            raise ResourceError(f"Failed to write {target}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def find_marker_section(text: str) -> tuple[int, int]:
    """Locate the nginx marker block from the BEGIN marker through the END line."""
    begin = _find_line(text, NGINX_BEGIN_MARKER, 0)
    if begin is None:
        raise ConfigSectionNotFoundError(f"Marker '{NGINX_BEGIN_MARKER}' not found.")
    end_line = _find_line(text, NGINX_END_MARKER, begin)
    if end_line is None:
        raise ConfigSectionNotFoundError(f"Marker '{NGINX_END_MARKER}' not found.")
    newline = text.find("\n", end_line)
    end = len(text) if newline == -1 else newline + 1
    return begin, end


def _find_line(text: str, marker: str, start: int) -> int | None:
    offset = 0
    for line in text.splitlines(keepends=True):
        if offset >= start and line.strip() == marker:
            return offset + len(line) - len(line.lstrip())
        offset += len(line)
    return None


def find_nix_virtual_hosts(text: str) -> tuple[int, int]:
    """Locate ``virtualHosts = { ... };`` outside strings and comments.

    Returns offsets spanning from the ``virtualHosts`` keyword through the
    terminating semicolon.
    """
    index = 0
    length = len(text)
    while index < length:
        skipped = _skip_nix_literal(text, index)
        if skipped is not None:
            index = skipped
            continue
        match = _NIX_HEAD.match(text, index)
        if match and (index == 0 or not _NIX_IDENT.match(text[index - 1])):
            close = _matching_brace(text, match.end() - 1)
            cursor = close + 1
            while cursor < length and text[cursor] in " \t\r\n":
                cursor += 1
            if cursor >= length or text[cursor] != ";":
                raise ConfigSectionNotFoundError("virtualHosts block is not terminated by ';'.")
            return match.start(), cursor + 1
        index += 1
    raise ConfigSectionNotFoundError("virtualHosts block not found in configuration.")


def _matching_brace(text: str, open_index: int) -> int:
    depth = 0
    index = open_index
    length = len(text)
    while index < length:
        skipped = _skip_nix_literal(text, index)
        if skipped is not None:
            index = skipped
            continue
        char = text[index]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
        index += 1
    raise ConfigSectionNotFoundError("virtualHosts block has unbalanced braces.")


def _skip_nix_literal(text: str, index: int) -> int | None:
    """Return the index just past a string or comment starting at *index*."""
    char = text[index]
    if char == "#":
        newline = text.find("\n", index)
        return len(text) if newline == -1 else newline + 1
    if text.startswith("/*", index):
        closing = text.find("*/", index + 2)
        if closing == -1:
            raise ConfigSectionNotFoundError("Unterminated comment in configuration.")
        return closing + 2
    if char == '"':
        return _skip_double_quoted(text, index + 1)
    if text.startswith("''", index):
        return _skip_indented(text, index + 2)
    return None


def _skip_double_quoted(text: str, index: int) -> int:
    length = len(text)
    while index < length:
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == '"':
            return index + 1
        if text.startswith("${", index):
            index = _skip_interpolation(text, index + 2)
            continue
        index += 1
    raise ConfigSectionNotFoundError("Unterminated string in configuration.")


def _skip_indented(text: str, index: int) -> int:
    length = len(text)
    while index < length:
        if text.startswith("'''", index) or text.startswith("''$", index):
            index += 3
            continue
        if text.startswith("''\\", index):
            index += 4
            continue
        if text.startswith("''", index):
            return index + 2
        if text.startswith("${", index):
            index = _skip_interpolation(text, index + 2)
            continue
        index += 1
    raise ConfigSectionNotFoundError("Unterminated indented string in configuration.")


def _skip_interpolation(text: str, index: int) -> int:
    depth = 1
    length = len(text)
    while index < length:
        skipped = _skip_nix_literal(text, index)
        if skipped is not None:
            index = skipped
            continue
        char = text[index]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index + 1
        index += 1
    raise ConfigSectionNotFoundError("Unterminated interpolation in configuration.")


__all__ = [
    "NGINX_BEGIN_MARKER",
    "NGINX_END_MARKER",
    "RegenerateResult",
    "WebserverConfigProvider",
    "find_marker_section",
    "find_nix_virtual_hosts",
]
