"""Exclusive resource locks backed by ``fcntl.flock``.

Each shared resource (the alias file, the web-server configuration) owns a
lock file under ``<runtime_dir>/locks``. Holding the lock serialises the
backup+mutate sequence across processes and threads: ``flock`` locks belong
to an open file description, so two handles opened by the same process
still exclude each other.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import LockTimeoutError

_POLL_INTERVAL = 0.05
_NAME_PATTERN = re.compile(r"[A-Za-z0-9._-]+")


@dataclass(slots=True)
class LockHandle:
    """Metadata for an acquired lock."""

    name: str
    path: Path
    wait_ms: int


class LockManager:
    """Acquire named exclusive locks with a bounded wait."""

    def __init__(self, root: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.root = Path(root).expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for resource *name*."""
        return self.root / f"{_validate_name(name)}.lock"

    @contextmanager
    def resource_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock for *name* for the duration of the block."""
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout

        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock '{name}' ({path})."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, name, path)
            try:
                yield LockHandle(name=name, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _validate_name(name: str) -> str:
    normalized = name.strip()
    if not _NAME_PATTERN.fullmatch(normalized):
        raise ValueError(f"Invalid lock name {name!r}.")
    return normalized


def _write_metadata(fd: int, name: str, path: Path) -> None:
    payload = {
        "resource": name,
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))
    os.fsync(fd)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
