"""Alias-file (``/etc/hosts``) transaction manager.

All reads and writes of the alias file go through :class:`HostsFileManager`.
Every mutation holds the ``hosts`` resource lock and takes a verified backup
before the live file is touched; if the backup cannot be taken the mutation
is abandoned.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, Protocol

from ..backups import BackupRecord, BackupStore
from ..errors import AliasFileError, InvalidInputError
from ..locking import LockManager

if TYPE_CHECKING:
    from .scripts import ScriptGateway

LOGGER = logging.getLogger(__name__)

_DOMAIN_TOKEN = re.compile(r"[A-Za-z0-9][A-Za-z0-9.-]*")


@dataclass(slots=True)
class AliasChange:
    """Outcome of an alias mutation."""

    domain: str
    changed: bool
    message: str
    backup: BackupRecord | None = None
    lock_wait_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "domain": self.domain,
            "changed": self.changed,
            "message": self.message,
            "backup": self.backup.name if self.backup else None,
        }


@dataclass(slots=True)
class HostsEntry:
    """A parsed, non-comment line of the alias file."""

    address: str
    names: list[str] = field(default_factory=list)
    comment: str | None = None


class AliasBackend(Protocol):
    """Mutations the orchestrator needs from an alias backend."""

    def is_local_domain(self, domain: str) -> bool:
        """Return True when *domain* follows the local-domain convention."""
        ...

    def add_alias(self, domain: str) -> AliasChange:
        """Map *domain* to the loopback address."""
        ...

    def remove_alias(self, domain: str) -> AliasChange:
        """Remove the loopback mapping for *domain*."""
        ...


def validate_alias_domain(domain: str) -> str:
    """Return *domain* stripped, rejecting tokens unsafe for the alias file."""
    normalized = domain.strip()
    if not normalized or not _DOMAIN_TOKEN.fullmatch(normalized):
        raise InvalidInputError(f"Invalid domain for alias file: {domain!r}.")
    return normalized


def parse_line(line: str) -> HostsEntry | None:
    """Parse one alias-file line; return None for blanks and comments."""
    content, sep, comment = line.rstrip("\r\n").partition("#")
    tokens = content.split()
    if len(tokens) < 2:
        return None
    return HostsEntry(
        address=tokens[0],
        names=tokens[1:],
        comment=comment.strip() if sep else None,
    )


@dataclass(slots=True)
class HostsFileManager:
    """Own every read and write of the alias file."""

    path: Path
    backups: BackupStore
    locks: LockManager
    address: str = "127.0.0.1"
    local_suffix: str = ".local"

    lock_name: ClassVar[str] = "hosts"

    def is_local_domain(self, domain: str) -> bool:
        """Return True when *domain* ends with the local development suffix."""
        return domain.endswith(self.local_suffix) and len(domain) > len(self.local_suffix)

    # Reads -----------------------------------------------------------------
    def entries(self) -> list[HostsEntry]:
        """Return every address mapping in file order."""
        parsed: list[HostsEntry] = []
        for line in self._read_text().splitlines():
            entry = parse_line(line)
            if entry is not None:
                parsed.append(entry)
        return parsed

    def has_alias(self, domain: str) -> bool:
        """Return True when the exact loopback/domain pair is present."""
        return _contains_pair(self._read_text(), self.address, domain)

    def list_aliases(self) -> list[str]:
        """Return local domains mapped to the loopback address, in file order."""
        aliases: list[str] = []
        for entry in self.entries():
            if entry.address != self.address:
                continue
            for name in entry.names:
                if self.is_local_domain(name) and name not in aliases:
                    aliases.append(name)
        return aliases

    def list_backups(self) -> list[BackupRecord]:
        """Return the available alias-file backups, oldest first."""
        return self.backups.list_entries()

    def check_access(self) -> dict[str, object]:
        """Report whether the alias file exists and is readable and writable."""
        exists = self.path.exists()
        readable = exists and os.access(self.path, os.R_OK)
        writable = exists and os.access(self.path, os.W_OK)
        if not exists:
            message = "Hosts file does not exist"
        elif not readable:
            message = "Cannot read hosts file"
        elif not writable:
            message = "Cannot write to hosts file. Check permissions."
        else:
            message = "Hosts file is accessible"
        return {
            "path": str(self.path),
            "exists": exists,
            "readable": readable,
            "writable": writable,
            "ok": bool(exists and readable and writable),
            "message": message,
        }

    # Mutations -------------------------------------------------------------
    def add_alias(self, domain: str) -> AliasChange:
        """Append ``<address> <domain>`` unless the pair already exists."""
        normalized = validate_alias_domain(domain)
        with self.locks.resource_lock(self.lock_name) as handle:
            text = self._read_text()
            if _contains_pair(text, self.address, normalized):
                return AliasChange(
                    domain=normalized,
                    changed=False,
                    message=f"Domain '{normalized}' already exists in hosts file",
                    lock_wait_ms=handle.wait_ms,
                )
            backup = self.backups.snapshot(self.path)
            line = f"{self.address} {normalized}\n"
            prefix = "" if not text or text.endswith("\n") else "\n"
            self._replace_contents(text + prefix + line)
        LOGGER.debug("Added alias %s -> %s (backup %s)", normalized, self.address, backup.name)
        return AliasChange(
            domain=normalized,
            changed=True,
            message=f"Added {normalized} to hosts file",
            backup=backup,
            lock_wait_ms=handle.wait_ms,
        )

    def remove_alias(self, domain: str) -> AliasChange:
        """Remove the loopback mapping for exactly *domain*."""
        normalized = validate_alias_domain(domain)
        with self.locks.resource_lock(self.lock_name) as handle:
            text = self._read_text()
            updated, removed = _without_pair(text, self.address, normalized)
            if not removed:
                return AliasChange(
                    domain=normalized,
                    changed=False,
                    message=f"Domain '{normalized}' not found in hosts file",
                    lock_wait_ms=handle.wait_ms,
                )
            backup = self.backups.snapshot(self.path)
            self._replace_contents(updated)
        LOGGER.debug("Removed alias %s (backup %s)", normalized, backup.name)
        return AliasChange(
            domain=normalized,
            changed=True,
            message=f"Removed {normalized} from hosts file",
            backup=backup,
            lock_wait_ms=handle.wait_ms,
        )

    def backup(self, *, label: str | None = "manual") -> BackupRecord:
        """Take an on-demand backup of the alias file."""
        with self.locks.resource_lock(self.lock_name):
            return self.backups.snapshot(self.path, label=label)

    def restore(self, name: str) -> BackupRecord:
        """Replace the alias file with backup *name*; return the safety backup."""
        source = self.backups.resolve(name)
        with self.locks.resource_lock(self.lock_name):
            try:
                payload = source.read_text(encoding="utf-8")
            except OSError as exc:
                raise AliasFileError(f"Cannot read backup {source}: {exc}") from exc
            safety = self.backups.snapshot(self.path, label="pre-restore")
            self._replace_contents(payload)
        LOGGER.info("Restored %s from %s", self.path, source)
        return safety

    # Internal helpers --------------------------------------------------------
    def _read_text(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise AliasFileError(f"Hosts file does not exist: {self.path}") from exc
        except OSError as exc:
            raise AliasFileError(f"Cannot read hosts file {self.path}: {exc}") from exc

    def _replace_contents(self, content: str) -> None:
        try:
            mode = self.path.stat().st_mode & 0o777
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
            )
        except OSError as exc:
            raise AliasFileError(f"Cannot prepare rewrite of {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise AliasFileError(f"Failed to write updated {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


@dataclass(slots=True)
class ScriptAliasBackend:
    """Delegate alias edits to the ``manage-hosts`` maintenance script."""

    gateway: ScriptGateway
    local_suffix: str = ".local"
    actor: str | None = None
    script_name: ClassVar[str] = "manage-hosts"

    def is_local_domain(self, domain: str) -> bool:
        """Return True when *domain* ends with the local development suffix."""
        return domain.endswith(self.local_suffix) and len(domain) > len(self.local_suffix)

    def add_alias(self, domain: str) -> AliasChange:
        """Run ``manage-hosts add <domain>``."""
        normalized = validate_alias_domain(domain)
        result = self.gateway.execute(self.script_name, "add", [normalized], actor=self.actor)
        changed = "already exists" not in result.output
        return AliasChange(domain=normalized, changed=changed, message=result.output.strip())

    def remove_alias(self, domain: str) -> AliasChange:
        """Run ``manage-hosts remove <domain>``.

        Only a "Removed" confirmation in the output counts as a change.
        """
        normalized = validate_alias_domain(domain)
        result = self.gateway.execute(self.script_name, "remove", [normalized], actor=self.actor)
        changed = "Removed" in result.output
        return AliasChange(domain=normalized, changed=changed, message=result.output.strip())


def _contains_pair(text: str, address: str, domain: str) -> bool:
    for line in text.splitlines():
        entry = parse_line(line)
        if entry is not None and entry.address == address and domain in entry.names:
            return True
    return False


def _without_pair(text: str, address: str, domain: str) -> tuple[str, int]:
    """Return *text* minus the *address*/*domain* mapping and the removal count."""
    kept: list[str] = []
    removed = 0
    for line in text.splitlines(keepends=True):
        entry = parse_line(line)
        if entry is None or entry.address != address or domain not in entry.names:
            kept.append(line)
            continue
        removed += 1
        remaining: Sequence[str] = [name for name in entry.names if name != domain]
        if not remaining:
            continue
        rebuilt = f"{entry.address} {' '.join(remaining)}"
        if entry.comment:
            rebuilt += f" # {entry.comment}"
        kept.append(rebuilt + ("\n" if line.endswith("\n") else ""))
    return "".join(kept), removed


__all__ = [
    "AliasBackend",
    "AliasChange",
    "HostsEntry",
    "HostsFileManager",
    "ScriptAliasBackend",
    "parse_line",
    "validate_alias_domain",
]
