"""Whitelist-driven gateway for privileged maintenance scripts.

Requests name a script from a closed catalog, an action and positional
parameters. The gateway validates the request against the script's
:class:`ScriptDescriptor`, runs the executable with an argument vector (never
through a shell) and writes exactly one audit line per attempt.
"""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from ..audit import AuditLog
from ..errors import (
    MissingParameterError,
    ScriptFailedError,
    ScriptSpawnError,
    ScriptTimeoutError,
    UnknownActionError,
    UnknownScriptError,
    ValidationError,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScriptDescriptor:
    """Static description of an allowed script."""

    name: str
    executable: Path
    allowed_actions: frozenset[str] = frozenset()
    actions_requiring_param: frozenset[str] = frozenset()
    required_params: int = 0
    description: str = ""

    def __post_init__(self) -> None:
        """Reject inconsistent descriptors at construction time."""
        if not self.name.strip():
            raise ValueError("Script descriptors require a name.")
        if not self.executable.is_absolute():
            raise ValueError(f"Script '{self.name}' executable must be an absolute path.")
        stray = self.actions_requiring_param - self.allowed_actions
        if stray:
            joined = ", ".join(sorted(stray))
            raise ValueError(f"Script '{self.name}' requires params for unknown actions: {joined}.")
        if self.required_params < 0:
            raise ValueError(f"Script '{self.name}' required_params must be non-negative.")
        if self.allowed_actions and self.required_params:
            raise ValueError(
                f"Script '{self.name}' mixes an action set with positional requirements."
            )

    @property
    def has_actions(self) -> bool:
        """Return True when the script defines a closed action vocabulary."""
        return bool(self.allowed_actions)

    def params_required(self, action: str | None) -> int:
        """Return how many parameters *action* needs."""
        if self.has_actions:
            return 1 if action in self.actions_requiring_param else 0
        return self.required_params

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.executable),
            "actions": sorted(self.allowed_actions),
            "requires_param": sorted(self.actions_requiring_param),
            "required_params": self.required_params,
            "description": self.description,
        }


def default_catalog(bin_dir: Path) -> Mapping[str, ScriptDescriptor]:
    """Return the built-in script catalog rooted at *bin_dir*."""
    descriptors = [
        ScriptDescriptor(
            name="manage-hosts",
            executable=bin_dir / "manage-hosts",
            allowed_actions=frozenset({"add", "remove", "list", "backup", "restore"}),
            actions_requiring_param=frozenset({"add", "remove", "restore"}),
            description="Edit local domain aliases in the hosts file.",
        ),
        ScriptDescriptor(
            name="monitor-hosts",
            executable=bin_dir / "monitor-hosts",
            description="Report hosts file and local domain health.",
        ),
        ScriptDescriptor(
            name="create-site-db",
            executable=bin_dir / "create-site-db",
            required_params=1,
            description="Create a site database: <database_name>.",
        ),
        ScriptDescriptor(
            name="create-site-dir",
            executable=bin_dir / "create-site-dir",
            required_params=2,
            description="Create a site content directory: <domain> <site_name>.",
        ),
        ScriptDescriptor(
            name="backup-databases",
            executable=bin_dir / "backup-databases",
            description="Dump all site databases to the backup directory.",
        ),
        ScriptDescriptor(
            name="rebuild-webserver",
            executable=bin_dir / "rebuild-webserver",
            description="Rebuild the system configuration and restart web services.",
        ),
    ]
    return build_catalog(descriptors)


def build_catalog(descriptors: Iterable[ScriptDescriptor]) -> Mapping[str, ScriptDescriptor]:
    """Return a read-only name -> descriptor mapping, rejecting duplicates."""
    catalog: dict[str, ScriptDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.name in catalog:
            raise ValueError(f"Duplicate script descriptor '{descriptor.name}'.")
        catalog[descriptor.name] = descriptor
    return MappingProxyType(catalog)


@dataclass(slots=True)
class ScriptResult:
    """Captured outcome of a successful script run."""

    script: str
    argv: list[str]
    output: str
    returncode: int
    duration_ms: int

    @property
    def command(self) -> str:
        """Return the shell-quoted command line, for display only."""
        return shlex.join(self.argv)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "script": self.script,
            "command": self.command,
            "output": self.output,
            "returncode": self.returncode,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class ScriptGateway:
    """Validate, execute and audit maintenance script requests."""

    catalog: Mapping[str, ScriptDescriptor]
    audit: AuditLog
    timeout: float = 300.0

    def list_scripts(self) -> list[ScriptDescriptor]:
        """Return catalog descriptors sorted by name."""
        return [self.catalog[name] for name in sorted(self.catalog)]

    def status(self, script_name: str) -> dict[str, object]:
        """Report whether *script_name* is installed and executable."""
        descriptor = self._descriptor(script_name)
        path = descriptor.executable
        exists = path.exists()
        executable = exists and os.access(path, os.X_OK)
        return {
            "script": descriptor.name,
            "path": str(path),
            "exists": exists,
            "executable": executable,
            "status": "ready" if exists and executable else "not_available",
        }

    def build_argv(
        self,
        script_name: str,
        action: str | None,
        params: Sequence[str],
    ) -> list[str]:
        """Validate a request and return the argument vector it maps to."""
        descriptor = self._descriptor(script_name)
        normalized_action = (action or "").strip()
        if descriptor.has_actions:
            if normalized_action not in descriptor.allowed_actions:
                allowed = ", ".join(sorted(descriptor.allowed_actions))
                raise UnknownActionError(
                    f"Action '{normalized_action}' is not allowed for '{descriptor.name}'. "
                    f"Allowed: {allowed}."
                )
        elif normalized_action:
            raise UnknownActionError(f"Script '{descriptor.name}' does not accept an action.")

        values = [str(param) for param in params]
        needed = descriptor.params_required(normalized_action or None)
        provided = [value for value in values[:needed] if value.strip()]
        if len(provided) < needed:
            label = " ".join(filter(None, [descriptor.name, normalized_action]))
            raise MissingParameterError(
                f"'{label}' requires {needed} parameter(s); got {len(provided)}."
            )

        argv = [str(descriptor.executable)]
        if normalized_action:
            argv.append(normalized_action)
        argv.extend(values)
        return argv

    def execute(
        self,
        script_name: str,
        action: str | None,
        params: Sequence[str] = (),
        *,
        actor: str | None = None,
        timeout: float | None = None,
    ) -> ScriptResult:
        """Run a validated script request and return its captured output.

        Raises :class:`UnknownScriptError`, :class:`UnknownActionError` or
        :class:`MissingParameterError` before anything is spawned;
        :class:`ScriptSpawnError` when the executable could not be started;
        :class:`ScriptTimeoutError` when it overran; and
        :class:`ScriptFailedError` (carrying the output) on a nonzero exit.
        Exactly one audit line is written for every call.
        """
        try:
            argv = self.build_argv(script_name, action, params)
        except ValidationError as exc:
            request = " ".join(filter(None, [script_name, action]))
            self._audit(actor, f"Rejected: {request} ({exc})")
            raise

        limit = self.timeout if timeout is None else timeout
        command = shlex.join(argv)
        started = time.perf_counter()
        try:
            completed = subprocess.run(  # noqa: S603 - argv list, no shell
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
                timeout=limit,
            )
        except subprocess.TimeoutExpired as exc:
            self._audit(actor, f"Timed out after {limit:g}s: {command}")
            partial = _decode(exc.output)
            raise ScriptTimeoutError(
                f"{script_name} timed out after {limit:g}s. {partial}".strip()
            ) from exc
        except OSError as exc:
            self._audit(actor, f"Failed to execute: {command} ({exc.strerror or exc})")
            raise ScriptSpawnError(f"Could not run {argv[0]}: {exc}") from exc

        duration_ms = int((time.perf_counter() - started) * 1000)
        output = completed.stdout or ""
        if completed.returncode != 0:
            self._audit(actor, f"Executed: {command} (exit {completed.returncode})")
            LOGGER.warning("%s exited with %s", command, completed.returncode)
            raise ScriptFailedError(
                f"{script_name} failed (exit {completed.returncode}): "
                f"{output.strip() or 'no output'}",
                output=output,
                returncode=completed.returncode,
            )

        self._audit(actor, f"Executed: {command}")
        return ScriptResult(
            script=script_name,
            argv=argv,
            output=output,
            returncode=completed.returncode,
            duration_ms=duration_ms,
        )

    # ------------------------------------------------------------------
    def _descriptor(self, script_name: str) -> ScriptDescriptor:
        descriptor = self.catalog.get(script_name.strip())
        if descriptor is None:
            raise UnknownScriptError(f"Script not allowed: {script_name!r}.")
        return descriptor

    def _audit(self, actor: str | None, description: str) -> None:
        self.audit.record(actor, description)


def _decode(payload: str | bytes | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    return payload


__all__ = [
    "ScriptDescriptor",
    "ScriptGateway",
    "ScriptResult",
    "build_catalog",
    "default_catalog",
]
