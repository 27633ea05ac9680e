"""vhostctl: keep local virtual hosts, their aliases and web config in step."""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# Keep in sync with ``project.version`` in pyproject.toml.
__version__ = "0.3.0"


def get_version() -> str:
    """Version string shown by ``vhostctl --version``."""
    return __version__
