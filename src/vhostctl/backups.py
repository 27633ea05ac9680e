"""Verified file backups taken before mutating shared resources."""
from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import BackupError, BackupNotFoundError


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sha256(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


@dataclass(slots=True, frozen=True)
class BackupRecord:
    """A backup copy of a resource file."""

    name: str
    path: Path
    created_at: str
    checksum: str
    size_bytes: int

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "created_at": self.created_at,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "size_bytes": self.size_bytes,
        }


@dataclass(slots=True)
class BackupStore:
    """Directory of timestamped backups for a single resource file."""

    root: Path
    prefix: str

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = Path(self.root).expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:
            raise BackupError(f"Failed to prepare backup directory {self.root}: {exc}") from exc

    def generate_identifier(self, label: str | None = None) -> str:
        """Return a unique backup file name, sortable by creation time."""
        stamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S-%f")
        token = secrets.token_hex(3)
        if label:
            safe_label = "".join(
                char if char.isalnum() or char in {"-", "_"} else "-" for char in label
            )
            return f"{self.prefix}.{safe_label}.{stamp}-{token}"
        return f"{self.prefix}.{stamp}-{token}"

    def snapshot(self, source: Path, *, label: str | None = None) -> BackupRecord:
        """Copy *source* into the store and verify the copy byte-for-byte.

        The backup is written to a temporary file, flushed to disk and renamed
        into place; it is then read back and compared against the source
        checksum. Any failure raises :class:`BackupError` and leaves no
        partial backup behind.
        """
        try:
            payload = source.read_bytes()
        except OSError as exc:
            raise BackupError(f"Cannot read {source} for backup: {exc}") from exc
        expected = _sha256(payload)

        self.ensure_root()
        name = self.generate_identifier(label)
        destination = self.root / name
        tmp_path: Path | None = None
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{name}.")
            tmp_path = Path(tmp_name)
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, destination)
            tmp_path = None
            written = destination.read_bytes()
        except OSError as exc:
            raise BackupError(f"Failed to write backup {destination}: {exc}") from exc
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)

        if _sha256(written) != expected or len(written) != len(payload):
            destination.unlink(missing_ok=True)
            raise BackupError(f"Backup verification failed for {destination}.")

        return BackupRecord(
            name=name,
            path=destination,
            created_at=_now_iso(),
            checksum=expected,
            size_bytes=len(payload),
        )

    def list_entries(self) -> list[BackupRecord]:
        """Return existing backups ordered oldest first."""
        if not self.root.is_dir():
            return []
        records: list[BackupRecord] = []
        for path in sorted(self.root.iterdir()):
            if not path.is_file() or not path.name.startswith(f"{self.prefix}."):
                continue
            stat = path.stat()
            created = datetime.fromtimestamp(stat.st_mtime, tz=UTC)
            records.append(
                BackupRecord(
                    name=path.name,
                    path=path,
                    created_at=created.isoformat(timespec="seconds").replace("+00:00", "Z"),
                    checksum=_sha256(path.read_bytes()),
                    size_bytes=stat.st_size,
                )
            )
        records.sort(key=lambda record: record.name.rsplit(".", 1)[-1])
        return records

    def resolve(self, name: str) -> Path:
        """Return the path for backup *name* or raise :class:`BackupNotFoundError`."""
        normalized = name.strip()
        if (
            not normalized
            or "/" in normalized
            or normalized in {".", ".."}
            or not normalized.startswith(f"{self.prefix}.")
        ):
            raise BackupNotFoundError(f"Backup not found: {name!r}.")
        path = self.root / normalized
        if not path.is_file():
            raise BackupNotFoundError(f"Backup not found: {path}.")
        return path


__all__ = ["BackupError", "BackupNotFoundError", "BackupRecord", "BackupStore"]
