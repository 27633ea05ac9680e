"""Provisioning orchestrator for virtual hosts.

Adding a host touches three independent resources: the site record, the
alias file and the content directory. There is no shared transaction across
them, so :class:`Provisioner` runs each request as an ordered sequence of
steps and undoes completed steps when a later mandatory one fails.

``add_virtual_host``
    validate -> create record -> add alias (local domains only) -> create the
    content directory. An alias failure deletes the new record again. A
    directory failure is reported as a warning and keeps the record.
``remove_virtual_host``
    refuse protected domains -> remove alias (local domains only) -> delete
    the record. The content directory is never deleted.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .audit import AuditLog
from .errors import (
    InvalidInputError,
    ProtectedSiteError,
    VhostctlError,
)
from .providers.hosts import AliasBackend, AliasChange
from .providers.scripts import ScriptGateway
from .providers.webserver import RegenerateResult, WebserverConfigProvider
from .state.sites import Site, SiteRegistry, SiteSpec
from .templates import TemplateEngine, TemplateRenderError

LOGGER = logging.getLogger(__name__)

MAX_DOMAIN_LENGTH = 255
MAX_NAME_LENGTH = 255

_DOMAIN_PATTERN = re.compile(r"[a-z0-9.-]+")
_DATABASE_PATTERN = re.compile(r"[A-Za-z0-9_]+")
_UNSAFE_NAME = re.compile(r"[\x00-\x1f\x7f<>]")

INDEX_TEMPLATE = "site/index.php.j2"


class ProvisionState(str, Enum):
    """Steps of a provisioning request."""

    VALIDATING = "validating"
    RECORD_CREATED = "record_created"
    ALIAS_UPDATED = "alias_updated"
    DIRECTORY_READY = "directory_ready"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ProvisionRequest:
    """Input for :meth:`Provisioner.add_virtual_host`."""

    name: str
    domain: str
    database_name: str | None = None
    ssl_enabled: bool = False


@dataclass(slots=True)
class ProvisionResult:
    """Outcome of a composite provisioning action."""

    site: Site
    state: ProvisionState
    alias: AliasChange | None = None
    directory: Path | None = None
    warnings: list[str] = field(default_factory=list)
    transitions: list[ProvisionState] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "site": self.site.to_dict(),
            "state": self.state.value,
            "alias": self.alias.to_dict() if self.alias else None,
            "directory": str(self.directory) if self.directory else None,
            "warnings": list(self.warnings),
            "transitions": [state.value for state in self.transitions],
        }


def validate_request(request: ProvisionRequest) -> ProvisionRequest:
    """Return a normalised copy of *request* or raise :class:`InvalidInputError`."""
    name = request.name.strip()
    domain = request.domain.strip().lower()
    database_name = (request.database_name or "").strip() or None

    if not name:
        raise InvalidInputError("Site name is required.")
    if len(name) > MAX_NAME_LENGTH or _UNSAFE_NAME.search(name):
        raise InvalidInputError(f"Invalid site name: {request.name!r}.")
    if not domain:
        raise InvalidInputError("Domain is required.")
    if len(domain) > MAX_DOMAIN_LENGTH or not _DOMAIN_PATTERN.fullmatch(domain):
        raise InvalidInputError(
            f"Invalid domain format: {request.domain!r}. Use letters, numbers, dots and hyphens."
        )
    for label in domain.split("."):
        if not label or label.startswith("-") or label.endswith("-"):
            raise InvalidInputError(f"Invalid domain format: {request.domain!r}.")
    if database_name is not None and not _DATABASE_PATTERN.fullmatch(database_name):
        raise InvalidInputError(
            f"Invalid database name: {request.database_name!r}. Use letters, numbers and underscores."
        )
    return ProvisionRequest(
        name=name,
        domain=domain,
        database_name=database_name,
        ssl_enabled=request.ssl_enabled,
    )


@dataclass(slots=True)
class Provisioner:
    """Sequence site, alias and directory changes with compensation."""

    registry: SiteRegistry
    aliases: AliasBackend
    audit: AuditLog
    templates: TemplateEngine
    webserver: WebserverConfigProvider | None = None
    gateway: ScriptGateway | None = None

    # Add ---------------------------------------------------------------------
    def add_virtual_host(
        self, request: ProvisionRequest, *, actor: str | None = None
    ) -> ProvisionResult:
        """Create a site with its alias and content directory."""
        transitions = [ProvisionState.VALIDATING]
        try:
            checked = validate_request(request)
            site = self.registry.add_site(
                SiteSpec(
                    name=checked.name,
                    domain=checked.domain,
                    database_name=checked.database_name,
                    ssl_enabled=checked.ssl_enabled,
                )
            )
        except VhostctlError as exc:
            transitions.append(ProvisionState.FAILED)
            self.audit.record(actor, f"Add site {request.domain.strip()!r} rejected: {exc}")
            raise
        transitions.append(ProvisionState.RECORD_CREATED)

        alias: AliasChange | None = None
        if self.aliases.is_local_domain(site.domain):
            try:
                alias = self.aliases.add_alias(site.domain)
            except VhostctlError as exc:
                transitions.append(ProvisionState.ROLLING_BACK)
                self._rollback_record(site, exc)
                transitions.append(ProvisionState.FAILED)
                self.audit.record(
                    actor,
                    f"Add site {site.domain} failed at alias update, record rolled back: {exc}",
                )
                raise
        transitions.append(ProvisionState.ALIAS_UPDATED)

        warnings: list[str] = []
        directory = self._prepare_directory(site, warnings)
        transitions.append(ProvisionState.DIRECTORY_READY)

        if site.database_name and self.gateway is not None:
            self._create_database(self.gateway, site, warnings, actor)

        transitions.append(ProvisionState.COMMITTED)
        description = f"Added site {site.domain} (id {site.id})"
        if alias is not None:
            description += f" | {alias.message}"
            if alias.backup is not None:
                description += f" | Backup: {alias.backup.name}"
        if warnings:
            description += f" | warnings: {'; '.join(warnings)}"
        self.audit.record(actor, description)
        return ProvisionResult(
            site=site,
            state=ProvisionState.COMMITTED,
            alias=alias,
            directory=directory,
            warnings=warnings,
            transitions=transitions,
        )

    def _rollback_record(self, site: Site, cause: Exception) -> None:
        try:
            self.registry.discard(site.id, reason=f"Alias update failed for {site.domain}: {cause}")
        except VhostctlError as exc:
            LOGGER.error("Rollback of site %s (id %s) failed: %s", site.domain, site.id, exc)
            return
        LOGGER.warning("Rolled back site %s after alias failure: %s", site.domain, cause)

    def _prepare_directory(self, site: Site, warnings: list[str]) -> Path | None:
        directory = Path(site.document_root) / site.domain
        try:
            directory.mkdir(mode=0o755, parents=True, exist_ok=True)
            index = directory / "index.php"
            if not index.exists():
                self.templates.render_to_path(
                    INDEX_TEMPLATE,
                    index,
                    {"name": site.name, "domain": site.domain},
                    mode=0o644,
                )
        except (OSError, TemplateRenderError) as exc:
            message = f"Could not prepare content directory {directory}: {exc}"
            LOGGER.warning("%s", message)
            warnings.append(message)
            return None
        return directory

    def _create_database(
        self, gateway: ScriptGateway, site: Site, warnings: list[str], actor: str | None
    ) -> None:
        try:
            gateway.execute("create-site-db", None, [site.database_name or ""], actor=actor)
        except VhostctlError as exc:
            message = f"Database {site.database_name} was not created: {exc}"
            LOGGER.warning("%s", message)
            warnings.append(message)

    # Remove ------------------------------------------------------------------
    def remove_virtual_host(self, site_id: int, *, actor: str | None = None) -> ProvisionResult:
        """Remove a site's alias and record; its content directory is kept."""
        try:
            site = self.registry.get_site(site_id)
            if self.registry.is_protected(site.domain):
                raise ProtectedSiteError(f"Cannot remove protected site: {site.domain}")
        except VhostctlError as exc:
            self.audit.record(actor, f"Remove site {site_id} rejected: {exc}")
            raise

        alias: AliasChange | None = None
        if self.aliases.is_local_domain(site.domain):
            try:
                alias = self.aliases.remove_alias(site.domain)
            except VhostctlError as exc:
                self.audit.record(actor, f"Remove site {site.domain} failed at alias update: {exc}")
                raise

        details = f"Virtual host removed: {site.domain}"
        if alias is not None:
            details += f" | {alias.message}"
            if alias.backup is not None:
                details += f" | Backup: {alias.backup.name}"
        try:
            removed = self.registry.remove_site(site.id, details=details)
        except VhostctlError as exc:
            if alias is not None and alias.changed:
                self._restore_alias(site)
            self.audit.record(actor, f"Remove site {site.domain} failed: {exc}")
            raise

        self.audit.record(actor, f"Removed site {site.domain} (id {site.id})")
        return ProvisionResult(
            site=removed,
            state=ProvisionState.COMMITTED,
            alias=alias,
            transitions=[ProvisionState.VALIDATING, ProvisionState.COMMITTED],
        )

    def _restore_alias(self, site: Site) -> None:
        try:
            self.aliases.add_alias(site.domain)
        except VhostctlError as exc:
            LOGGER.error("Could not restore alias for %s: %s", site.domain, exc)

    # Toggle / regenerate -----------------------------------------------------
    def toggle_status(self, site_id: int, *, actor: str | None = None) -> Site:
        """Flip a site between active and inactive."""
        try:
            site = self.registry.toggle_status(site_id)
        except VhostctlError as exc:
            self.audit.record(actor, f"Toggle site {site_id} rejected: {exc}")
            raise
        self.audit.record(actor, f"Toggled site {site.domain} (id {site.id}) to {site.status}")
        return site

    def regenerate_config(self, *, actor: str | None = None) -> RegenerateResult:
        """Rebuild the web-server virtual-host section from the current sites."""
        if self.webserver is None:
            raise InvalidInputError("No web server configuration provider is configured.")
        try:
            result = self.webserver.regenerate(self.registry.list_sites())
        except VhostctlError as exc:
            self.audit.record(actor, f"Config rebuild failed: {exc}")
            raise
        backup_name = result.backup.name if result.backup else "none"
        self.registry.record(
            None,
            "Config rebuilt",
            f"Virtual host configuration updated ({result.site_count} active sites)"
            f" | Backup: {backup_name}",
        )
        state = "updated" if result.changed else "unchanged"
        self.audit.record(
            actor,
            f"Rebuilt {result.path} ({state}, {result.site_count} active sites, "
            f"backup {backup_name})",
        )
        return result


__all__ = [
    "ProvisionRequest",
    "ProvisionResult",
    "ProvisionState",
    "Provisioner",
    "validate_request",
]
