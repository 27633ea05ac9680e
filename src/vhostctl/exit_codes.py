"""Process exit statuses returned by ``vhostctl``."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit status per failure category; see ``errors.ErrorCategory``."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    CONFLICT = 5
