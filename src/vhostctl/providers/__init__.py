"""Resource providers for vhostctl."""
from __future__ import annotations

from .hosts import AliasBackend, AliasChange, HostsFileManager, ScriptAliasBackend
from .scripts import ScriptDescriptor, ScriptGateway, ScriptResult, default_catalog
from .webserver import RegenerateResult, WebserverConfigProvider

__all__ = [
    "AliasBackend",
    "AliasChange",
    "HostsFileManager",
    "RegenerateResult",
    "ScriptAliasBackend",
    "ScriptDescriptor",
    "ScriptGateway",
    "ScriptResult",
    "WebserverConfigProvider",
    "default_catalog",
]
