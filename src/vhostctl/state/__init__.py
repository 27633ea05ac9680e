"""Persistent site state for vhostctl."""
from __future__ import annotations

from .sites import (
    LogEntry,
    Site,
    SiteEvent,
    SiteRegistry,
    SiteSpec,
    create_store_engine,
    open_registry,
)

__all__ = [
    "LogEntry",
    "Site",
    "SiteEvent",
    "SiteRegistry",
    "SiteSpec",
    "create_store_engine",
    "open_registry",
]
