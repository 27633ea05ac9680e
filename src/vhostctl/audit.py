"""Append-only audit trail for privileged actions.

Each line reads ``<timestamp> - <actor> - <description>``. Appends take an
exclusive ``flock`` on the log so concurrent writers never interleave
partial lines.
"""
from __future__ import annotations

import fcntl
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .errors import ResourceError

LOGGER = logging.getLogger(__name__)

DEFAULT_ACTOR = "system"


@dataclass(slots=True)
class AuditLog:
    """Text audit sink, one line per action."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the log path."""
        self.path = Path(self.path).expanduser()

    def record(self, actor: str | None, description: str) -> str:
        """Append a line for *description* performed by *actor* and return it."""
        who = _single_line(actor or DEFAULT_ACTOR)
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        line = f"{timestamp} - {who} - {_single_line(description)}"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    handle.write(line + "\n")
                    handle.flush()
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as exc:
            raise ResourceError(f"Failed to append to audit log {self.path}: {exc}") from exc
        LOGGER.info("audit: %s", line)
        return line

    def tail(self, lines: int = 50) -> list[str]:
        """Return the last *lines* entries (oldest first)."""
        if lines <= 0:
            return []
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                return [entry.rstrip("\n") for entry in deque(handle, maxlen=lines)]
        except OSError as exc:
            raise ResourceError(f"Cannot read audit log {self.path}: {exc}") from exc


def _single_line(text: str) -> str:
    return str(text).replace("\r", " ").replace("\n", " ").strip()


__all__ = ["AuditLog", "DEFAULT_ACTOR"]
