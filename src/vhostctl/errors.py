"""Error taxonomy shared by vhostctl components.

Errors fall into four categories that callers react to differently:

* validation - bad input shape, unknown script/action, missing parameter;
* conflict - the request clashes with current state (duplicate domain,
  protected site, missing record);
* resource - I/O, locking, backup or process-spawn failures that abort the
  current operation before any live resource is mutated;
* external - an external script ran and reported failure.
"""
from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Broad classes of failure surfaced to callers."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    RESOURCE = "resource"
    EXTERNAL = "external"


class VhostctlError(RuntimeError):
    """Base class for all vhostctl errors."""

    category: ErrorCategory = ErrorCategory.RESOURCE


# Validation -----------------------------------------------------------
class ValidationError(VhostctlError):
    """Raised when caller input is malformed."""

    category = ErrorCategory.VALIDATION


class InvalidInputError(ValidationError):
    """Raised when a provisioning request fails input validation."""


class UnknownScriptError(ValidationError):
    """Raised when a script name is not part of the catalog."""


class UnknownActionError(ValidationError):
    """Raised when an action is not allowed for a script."""


class MissingParameterError(ValidationError):
    """Raised when a script action is missing required parameters."""


# Conflict -------------------------------------------------------------
class ConflictError(VhostctlError):
    """Raised when a request conflicts with the current state."""

    category = ErrorCategory.CONFLICT


class DuplicateDomainError(ConflictError):
    """Raised when a site with the same domain already exists."""


class ProtectedSiteError(ConflictError):
    """Raised when attempting to remove a protected site."""


class SiteNotFoundError(ConflictError):
    """Raised when a site identifier does not exist."""


# Resource -------------------------------------------------------------
class ResourceError(VhostctlError):
    """Raised when a filesystem, lock, store or spawn operation fails."""

    category = ErrorCategory.RESOURCE


class BackupError(ResourceError):
    """Raised when a backup cannot be written or verified."""


class BackupNotFoundError(ResourceError):
    """Raised when a named backup does not exist."""


class AliasFileError(ResourceError):
    """Raised when the alias file cannot be read or written."""


class ConfigFileNotFoundError(ResourceError):
    """Raised when the web-server configuration file is missing."""


class ConfigSectionNotFoundError(ResourceError):
    """Raised when the virtual-host section cannot be located."""


class LockTimeoutError(ResourceError):
    """Raised when a resource lock cannot be acquired in time."""


class StoreError(ResourceError):
    """Raised when the relational store rejects an operation."""


class ScriptSpawnError(ResourceError):
    """Raised when an external script could not be started."""


class ScriptTimeoutError(ResourceError):
    """Raised when an external script exceeds its time budget."""


# External -------------------------------------------------------------
class ExternalProcessError(VhostctlError):
    """Raised when an external process ran and reported failure."""

    category = ErrorCategory.EXTERNAL


class ScriptFailedError(ExternalProcessError):
    """Raised when a script exits with a nonzero status."""

    def __init__(self, message: str, *, output: str, returncode: int) -> None:
        """Store the captured output and exit status alongside *message*."""
        super().__init__(message)
        self.output = output
        self.returncode = returncode


__all__ = [
    "AliasFileError",
    "BackupError",
    "BackupNotFoundError",
    "ConfigFileNotFoundError",
    "ConfigSectionNotFoundError",
    "ConflictError",
    "DuplicateDomainError",
    "ErrorCategory",
    "ExternalProcessError",
    "InvalidInputError",
    "LockTimeoutError",
    "MissingParameterError",
    "ProtectedSiteError",
    "ResourceError",
    "ScriptFailedError",
    "ScriptSpawnError",
    "ScriptTimeoutError",
    "SiteNotFoundError",
    "StoreError",
    "UnknownActionError",
    "UnknownScriptError",
    "ValidationError",
    "VhostctlError",
]
