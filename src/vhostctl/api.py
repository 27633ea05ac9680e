"""Caller-facing facade over the provisioning core.

:class:`VhostService` wires the resource managers from an :class:`AppConfig`
and exposes every operation as a method returning :class:`ServiceResult`.
Errors never escape as exceptions: they are classified into a status the
caller can branch on, and each call is written to the structured operation
log.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .audit import AuditLog
from .backups import BackupStore
from .config import AppConfig
from .errors import ErrorCategory, ScriptFailedError, VhostctlError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .providers.hosts import AliasBackend, HostsFileManager, ScriptAliasBackend
from .providers.scripts import ScriptGateway, default_catalog
from .providers.webserver import WebserverConfigProvider
from .provisioning import ProvisionRequest, Provisioner
from .state.sites import SiteRegistry, open_registry
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_VALIDATION = "validation_error"
STATUS_CONFLICT = "conflict"
STATUS_OPERATIONAL = "operational_error"

_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: STATUS_VALIDATION,
    ErrorCategory.CONFLICT: STATUS_CONFLICT,
    ErrorCategory.RESOURCE: STATUS_OPERATIONAL,
    ErrorCategory.EXTERNAL: STATUS_OPERATIONAL,
}

_EXIT_BY_CATEGORY = {
    ErrorCategory.VALIDATION: ExitCode.VALIDATION,
    ErrorCategory.CONFLICT: ExitCode.CONFLICT,
    ErrorCategory.RESOURCE: ExitCode.ENVIRONMENT,
    ErrorCategory.EXTERNAL: ExitCode.PROVIDER,
}


@dataclass(slots=True)
class ServiceResult:
    """Structured outcome returned by every :class:`VhostService` call."""

    status: str
    message: str
    data: Any = None
    errors: list[str] = field(default_factory=list)
    category: ErrorCategory | None = None

    @property
    def ok(self) -> bool:
        """Return True when the call succeeded."""
        return self.status == STATUS_OK

    @property
    def exit_code(self) -> ExitCode:
        """Return the CLI exit code for this outcome."""
        if self.category is None:
            return ExitCode.OK
        return _EXIT_BY_CATEGORY[self.category]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "status": self.status,
            "message": self.message,
            "data": self.data,
            "errors": list(self.errors),
        }


def failure(exc: VhostctlError) -> ServiceResult:
    """Classify *exc* into a :class:`ServiceResult`."""
    category = exc.category
    data: dict[str, object] | None = None
    if isinstance(exc, ScriptFailedError):
        data = {"output": exc.output, "returncode": exc.returncode}
    return ServiceResult(
        status=_STATUS_BY_CATEGORY[category],
        message=str(exc),
        data=data,
        errors=[str(exc)],
        category=category,
    )


class VhostService:
    """Entry point for callers that need the provisioning operations."""

    def __init__(
        self,
        *,
        registry: SiteRegistry,
        hosts: HostsFileManager,
        aliases: AliasBackend,
        gateway: ScriptGateway,
        webserver: WebserverConfigProvider,
        provisioner: Provisioner,
        audit: AuditLog,
        logger: StructuredLogger,
        default_actor: str | None = None,
    ) -> None:
        """Store the wired components."""
        self.registry = registry
        self.hosts = hosts
        self.aliases = aliases
        self.gateway = gateway
        self.webserver = webserver
        self.provisioner = provisioner
        self.audit = audit
        self.logger = logger
        self.default_actor = default_actor

    @classmethod
    def from_config(cls, config: AppConfig) -> VhostService:
        """Build a service with every component configured from *config*."""
        locks = LockManager(config.runtime_dir / "locks", config.lock_timeout)
        logger = StructuredLogger(config.logs_dir)
        templates = TemplateEngine.with_overrides(config.templates_dir)
        audit = AuditLog(config.audit.log_file)
        registry = open_registry(
            config.database.url,
            echo=config.database.echo,
            protected_domains=config.protected_domains,
            default_document_root=str(config.web_root),
        )
        gateway = ScriptGateway(
            catalog=default_catalog(config.scripts.bin_dir),
            audit=audit,
            timeout=config.scripts.timeout,
        )
        hosts = HostsFileManager(
            path=config.hosts.file,
            backups=BackupStore(config.hosts.backup_dir, "hosts.backup"),
            locks=locks,
            address=config.hosts.address,
            local_suffix=config.hosts.local_suffix,
        )
        aliases: AliasBackend
        if config.hosts.mode == "script":
            aliases = ScriptAliasBackend(
                gateway=gateway,
                local_suffix=config.hosts.local_suffix,
                actor=config.audit.actor,
            )
        else:
            aliases = hosts
        webserver = WebserverConfigProvider(
            config_file=config.webserver.config_file,
            backups=BackupStore(
                config.webserver.backup_dir, f"{config.webserver.config_file.name}.backup"
            ),
            locks=locks,
            templates=templates,
            format=config.webserver.format,
            php_fastcgi=config.webserver.php_fastcgi,
        )
        provisioner = Provisioner(
            registry=registry,
            aliases=aliases,
            audit=audit,
            templates=templates,
            webserver=webserver,
            gateway=gateway,
        )
        return cls(
            registry=registry,
            hosts=hosts,
            aliases=aliases,
            gateway=gateway,
            webserver=webserver,
            provisioner=provisioner,
            audit=audit,
            logger=logger,
            default_actor=config.audit.actor,
        )

    # ------------------------------------------------------------------
    def _run(
        self,
        command: str,
        action: Callable[[OperationScope], ServiceResult],
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> ServiceResult:
        with self.logger.operation(command, args=args, target=target) as op:
            try:
                result = action(op)
            except VhostctlError as exc:
                result = failure(exc)
                if exc.category in (ErrorCategory.RESOURCE, ErrorCategory.EXTERNAL):
                    LOGGER.error("%s failed: %s", command, exc)
                op.error(result.message, errors=result.errors, rc=int(result.exit_code))
                return result
            if not op.finished:
                op.success(result.message)
            return result

    def _actor(self, actor: str | None) -> str | None:
        return actor or self.default_actor

    # Sites -------------------------------------------------------------
    def list_sites(self) -> ServiceResult:
        """Return every site ordered by id."""

        def _list(op: OperationScope) -> ServiceResult:
            sites = self.registry.list_sites()
            op.success(f"Listed {len(sites)} site(s).", changed=0)
            return ServiceResult(STATUS_OK, f"{len(sites)} site(s).", [s.to_dict() for s in sites])

        return self._run("sites list", _list)

    def add_site(
        self,
        name: str,
        domain: str,
        *,
        database_name: str | None = None,
        ssl_enabled: bool = False,
        actor: str | None = None,
    ) -> ServiceResult:
        """Provision a new virtual host."""
        request = ProvisionRequest(
            name=name, domain=domain, database_name=database_name, ssl_enabled=ssl_enabled
        )

        def _add(op: OperationScope) -> ServiceResult:
            outcome = self.provisioner.add_virtual_host(request, actor=self._actor(actor))
            if outcome.alias is not None:
                op.set_lock_wait_ms(outcome.alias.lock_wait_ms)
            for state in outcome.transitions:
                op.add_step(f"provision.{state.value}", status="ok")
            message = "Site added successfully!"
            if outcome.alias is not None and outcome.alias.changed:
                message += " Domain added to hosts file."
            backups = [outcome.alias.backup.name] if outcome.alias and outcome.alias.backup else []
            if outcome.warnings:
                op.warning(message, warnings=outcome.warnings, changed=1, backups=backups)
            else:
                op.success(message, changed=1, backups=backups)
            return ServiceResult(
                STATUS_OK, message, outcome.to_dict(), errors=list(outcome.warnings)
            )

        return self._run(
            "sites add",
            _add,
            args={"name": name, "database_name": database_name, "ssl": ssl_enabled},
            target={"kind": "site", "domain": domain},
        )

    def toggle_status(self, site_id: int, *, actor: str | None = None) -> ServiceResult:
        """Flip a site between active and inactive."""

        def _toggle(op: OperationScope) -> ServiceResult:
            site = self.provisioner.toggle_status(site_id, actor=self._actor(actor))
            op.success(f"{site.domain} is now {site.status}.", changed=1)
            return ServiceResult(STATUS_OK, f"{site.domain} is now {site.status}.", site.to_dict())

        return self._run("sites toggle", _toggle, target={"kind": "site", "id": site_id})

    def remove_site(self, site_id: int, *, actor: str | None = None) -> ServiceResult:
        """Remove a non-protected site and its alias."""

        def _remove(op: OperationScope) -> ServiceResult:
            outcome = self.provisioner.remove_virtual_host(site_id, actor=self._actor(actor))
            if outcome.alias is not None:
                op.set_lock_wait_ms(outcome.alias.lock_wait_ms)
            message = "Site removed successfully!"
            if outcome.alias is not None and outcome.alias.changed:
                message += " Domain removed from hosts file."
            backups = [outcome.alias.backup.name] if outcome.alias and outcome.alias.backup else []
            op.success(message, changed=1, backups=backups)
            return ServiceResult(STATUS_OK, message, outcome.to_dict())

        return self._run("sites remove", _remove, target={"kind": "site", "id": site_id})

    def seed_defaults(self) -> ServiceResult:
        """Insert the initial site set into an empty store."""

        def _seed(op: OperationScope) -> ServiceResult:
            added = self.registry.seed_defaults()
            message = f"Seeded {added} site(s)." if added else "Site store already populated."
            op.success(message, changed=added)
            return ServiceResult(STATUS_OK, message, {"added": added})

        return self._run("sites seed", _seed)

    def recent_logs(self, limit: int = 15) -> ServiceResult:
        """Return the newest activity-log entries."""

        def _logs(op: OperationScope) -> ServiceResult:
            entries = self.registry.recent_logs(limit)
            op.success(f"Read {len(entries)} log entries.", changed=0)
            return ServiceResult(
                STATUS_OK, f"{len(entries)} entries.", [entry.to_dict() for entry in entries]
            )

        return self._run("sites logs", _logs, args={"limit": limit})

    # Web server --------------------------------------------------------
    def regenerate(self, *, actor: str | None = None) -> ServiceResult:
        """Rebuild the web-server virtual-host section."""

        def _regenerate(op: OperationScope) -> ServiceResult:
            result = self.provisioner.regenerate_config(actor=self._actor(actor))
            op.set_lock_wait_ms(result.lock_wait_ms)
            message = "Configuration rebuilt." if result.changed else "Configuration unchanged."
            backups = [result.backup.name] if result.backup else []
            op.success(message, changed=int(result.changed), backups=backups)
            return ServiceResult(STATUS_OK, message, result.to_dict())

        return self._run(
            "webserver regenerate",
            _regenerate,
            target={"kind": "webserver", "path": self.webserver.config_file},
        )

    def render_config(self) -> ServiceResult:
        """Return the rendered virtual-host section without writing it."""

        def _render(op: OperationScope) -> ServiceResult:
            section = self.webserver.render_section(self.registry.list_sites())
            op.success("Rendered virtual-host section.", changed=0)
            return ServiceResult(STATUS_OK, "Rendered virtual-host section.", section)

        return self._run("webserver render", _render)

    # Hosts -------------------------------------------------------------
    def list_aliases(self) -> ServiceResult:
        """Return the local domains mapped to the loopback address."""

        def _list(op: OperationScope) -> ServiceResult:
            aliases = self.hosts.list_aliases()
            op.success(f"Listed {len(aliases)} alias(es).", changed=0)
            return ServiceResult(STATUS_OK, f"{len(aliases)} alias(es).", aliases)

        return self._run("hosts list", _list)

    def add_alias(self, domain: str, *, actor: str | None = None) -> ServiceResult:
        """Map *domain* to the loopback address."""

        def _add(op: OperationScope) -> ServiceResult:
            change = self.aliases.add_alias(domain)
            op.set_lock_wait_ms(change.lock_wait_ms)
            self.audit.record(self._actor(actor), f"Hosts: {change.message}")
            op.success(change.message, changed=int(change.changed))
            return ServiceResult(STATUS_OK, change.message, change.to_dict())

        return self._run("hosts add", _add, target={"kind": "alias", "domain": domain})

    def remove_alias(self, domain: str, *, actor: str | None = None) -> ServiceResult:
        """Remove the loopback mapping for *domain*."""

        def _remove(op: OperationScope) -> ServiceResult:
            change = self.aliases.remove_alias(domain)
            op.set_lock_wait_ms(change.lock_wait_ms)
            self.audit.record(self._actor(actor), f"Hosts: {change.message}")
            op.success(change.message, changed=int(change.changed))
            return ServiceResult(STATUS_OK, change.message, change.to_dict())

        return self._run("hosts remove", _remove, target={"kind": "alias", "domain": domain})

    def backup_hosts(self, *, actor: str | None = None) -> ServiceResult:
        """Take an on-demand backup of the alias file."""

        def _backup(op: OperationScope) -> ServiceResult:
            record = self.hosts.backup()
            self.audit.record(self._actor(actor), f"Hosts: backup created {record.name}")
            op.success(f"Backup created: {record.name}", changed=0, backups=[record.name])
            return ServiceResult(STATUS_OK, f"Backup created: {record.name}", record.to_dict())

        return self._run("hosts backup", _backup)

    def list_hosts_backups(self) -> ServiceResult:
        """Return the alias-file backups, oldest first."""

        def _list(op: OperationScope) -> ServiceResult:
            records = self.hosts.list_backups()
            op.success(f"Listed {len(records)} backup(s).", changed=0)
            return ServiceResult(
                STATUS_OK, f"{len(records)} backup(s).", [record.to_dict() for record in records]
            )

        return self._run("hosts backups", _list)

    def restore_hosts(self, backup_name: str, *, actor: str | None = None) -> ServiceResult:
        """Replace the alias file with a named backup."""

        def _restore(op: OperationScope) -> ServiceResult:
            safety = self.hosts.restore(backup_name)
            self.audit.record(
                self._actor(actor),
                f"Hosts: restored from {backup_name} (previous contents saved as {safety.name})",
            )
            message = f"Hosts file restored from {backup_name}."
            op.success(message, changed=1, backups=[safety.name])
            return ServiceResult(
                STATUS_OK, message, {"restored": backup_name, "safety_backup": safety.to_dict()}
            )

        return self._run("hosts restore", _restore, args={"backup": backup_name})

    def check_hosts(self) -> ServiceResult:
        """Report alias-file accessibility."""

        def _check(op: OperationScope) -> ServiceResult:
            report = self.hosts.check_access()
            message = str(report["message"])
            if report["ok"]:
                op.success(message, changed=0)
                return ServiceResult(STATUS_OK, message, report)
            op.warning(message, changed=0)
            return ServiceResult(
                STATUS_OPERATIONAL,
                message,
                report,
                errors=[message],
                category=ErrorCategory.RESOURCE,
            )

        return self._run("hosts check", _check)

    # Scripts -----------------------------------------------------------
    def execute(
        self,
        script_name: str,
        action: str | None = None,
        params: Sequence[str] = (),
        *,
        actor: str | None = None,
        timeout: float | None = None,
    ) -> ServiceResult:
        """Run a whitelisted maintenance script."""

        def _execute(op: OperationScope) -> ServiceResult:
            result = self.gateway.execute(
                script_name, action, list(params), actor=self._actor(actor), timeout=timeout
            )
            op.add_step("script.exec", status="ok", detail=result.command)
            op.success("Script executed.", context={"duration_ms": result.duration_ms})
            return ServiceResult(STATUS_OK, "Script executed.", result.to_dict())

        return self._run(
            "scripts run",
            _execute,
            args={"action": action, "params": list(params)},
            target={"kind": "script", "name": script_name},
        )

    def list_scripts(self) -> ServiceResult:
        """Return the script catalog."""

        def _list(op: OperationScope) -> ServiceResult:
            scripts = [descriptor.to_dict() for descriptor in self.gateway.list_scripts()]
            op.success(f"Listed {len(scripts)} script(s).", changed=0)
            return ServiceResult(STATUS_OK, f"{len(scripts)} script(s).", scripts)

        return self._run("scripts list", _list)

    def script_status(self, script_name: str) -> ServiceResult:
        """Report whether a catalog script is installed and executable."""

        def _status(op: OperationScope) -> ServiceResult:
            report = self.gateway.status(script_name)
            op.success(f"{script_name}: {report['status']}", changed=0)
            return ServiceResult(STATUS_OK, f"{script_name}: {report['status']}", report)

        return self._run("scripts status", _status, target={"kind": "script", "name": script_name})

    # Audit -------------------------------------------------------------
    def audit_tail(self, lines: int = 50) -> ServiceResult:
        """Return the last audit-log lines."""

        def _tail(op: OperationScope) -> ServiceResult:
            entries = self.audit.tail(lines)
            op.success(f"Read {len(entries)} audit line(s).", changed=0)
            return ServiceResult(STATUS_OK, f"{len(entries)} line(s).", entries)

        return self._run("audit tail", _tail, args={"lines": lines})


__all__ = [
    "STATUS_CONFLICT",
    "STATUS_OK",
    "STATUS_OPERATIONAL",
    "STATUS_VALIDATION",
    "ServiceResult",
    "VhostService",
    "failure",
]
