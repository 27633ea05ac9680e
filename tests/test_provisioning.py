"""Tests for the provisioning orchestrator."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from vhostctl.audit import AuditLog
from vhostctl.backups import BackupStore
from vhostctl.errors import (
    AliasFileError,
    DuplicateDomainError,
    InvalidInputError,
    ProtectedSiteError,
    StoreError,
)
from vhostctl.locking import LockManager
from vhostctl.providers.hosts import HostsFileManager, ScriptAliasBackend
from vhostctl.providers.scripts import ScriptGateway, default_catalog
from vhostctl.providers.webserver import WebserverConfigProvider
from vhostctl.provisioning import (
    ProvisionRequest,
    ProvisionState,
    Provisioner,
    validate_request,
)
from vhostctl.state.sites import SiteRegistry
from vhostctl.templates import TemplateEngine


@pytest.fixture()
def provisioner(
    registry: SiteRegistry,
    hosts_manager: HostsFileManager,
    audit_log: AuditLog,
    templates: TemplateEngine,
) -> Provisioner:
    """Provisioner over the temporary registry and alias file."""
    return Provisioner(
        registry=registry,
        aliases=hosts_manager,
        audit=audit_log,
        templates=templates,
    )


def _audit_lines(audit_log: AuditLog) -> list[str]:
    if not audit_log.path.exists():
        return []
    return audit_log.path.read_text(encoding="utf-8").splitlines()


def test_validate_request_normalises() -> None:
    """Names and domains are trimmed; domains are lowercased."""
    request = validate_request(
        ProvisionRequest(name="  Demo  ", domain=" Demo.Local ", database_name=" demo_db ")
    )

    assert request.name == "Demo"
    assert request.domain == "demo.local"
    assert request.database_name == "demo_db"


@pytest.mark.parametrize(
    ("name", "domain", "database_name"),
    [
        ("", "demo.local", None),
        ("Demo", "", None),
        ("Demo", "bad_domain!", None),
        ("Demo", "demo..local", None),
        ("Demo", "-demo.local", None),
        ("Demo", "a" * 256, None),
        ("<script>", "demo.local", None),
        ("Demo", "demo.local", "demo-db"),
    ],
)
def test_validate_request_rejects(name: str, domain: str, database_name: str | None) -> None:
    """Malformed input raises InvalidInputError."""
    with pytest.raises(InvalidInputError):
        validate_request(ProvisionRequest(name=name, domain=domain, database_name=database_name))


def test_add_virtual_host_creates_all_resources(
    provisioner: Provisioner,
    hosts_manager: HostsFileManager,
    audit_log: AuditLog,
    tmp_path: Path,
) -> None:
    """A local site gets a record, an alias and a content directory."""
    result = provisioner.add_virtual_host(
        ProvisionRequest(name="Demo", domain="demo.local"), actor="alice"
    )

    assert result.state is ProvisionState.COMMITTED
    assert result.transitions == [
        ProvisionState.VALIDATING,
        ProvisionState.RECORD_CREATED,
        ProvisionState.ALIAS_UPDATED,
        ProvisionState.DIRECTORY_READY,
        ProvisionState.COMMITTED,
    ]
    assert result.site.domain == "demo.local"
    assert result.alias is not None and result.alias.changed
    assert hosts_manager.has_alias("demo.local")
    assert result.directory == tmp_path / "www" / "demo.local"
    index = tmp_path / "www" / "demo.local" / "index.php"
    assert "$name = 'Demo';" in index.read_text(encoding="utf-8")
    assert result.warnings == []

    lines = _audit_lines(audit_log)
    assert len(lines) == 1
    assert " - alice - Added site demo.local" in lines[0]
    assert "Backup: hosts.backup." in lines[0]
    assert result.to_dict()["state"] == "committed"


def test_index_page_quotes_name_as_php_literal(
    provisioner: Provisioner,
    tmp_path: Path,
) -> None:
    """A name with a backslash and quote cannot close the PHP string."""
    provisioner.add_virtual_host(
        ProvisionRequest(name="x\\'.phpinfo();//", domain="evil.local")
    )

    content = (tmp_path / "www" / "evil.local" / "index.php").read_text(encoding="utf-8")
    assert "$name = 'x\\\\\\'.phpinfo();//';\n" in content
    assert "echo '<h1>Welcome to ' . htmlspecialchars($name) . '</h1>';" in content
    assert "Welcome to x" not in content


def test_add_keeps_existing_index(
    provisioner: Provisioner,
    tmp_path: Path,
) -> None:
    """An existing index page is not overwritten."""
    directory = tmp_path / "www" / "demo.local"
    directory.mkdir(parents=True)
    (directory / "index.php").write_text("<?php echo 'mine';\n", encoding="utf-8")

    provisioner.add_virtual_host(ProvisionRequest(name="Demo", domain="demo.local"))

    assert (directory / "index.php").read_text(encoding="utf-8") == "<?php echo 'mine';\n"


def test_non_local_domain_skips_alias(
    provisioner: Provisioner,
    hosts_manager: HostsFileManager,
) -> None:
    """Domains outside the local suffix never touch the alias file."""
    before = hosts_manager.path.read_text(encoding="utf-8")

    result = provisioner.add_virtual_host(ProvisionRequest(name="Shop", domain="shop.example.com"))

    assert result.alias is None
    assert result.state is ProvisionState.COMMITTED
    assert hosts_manager.path.read_text(encoding="utf-8") == before
    assert hosts_manager.list_backups() == []


def test_alias_failure_rolls_back_record(
    registry: SiteRegistry,
    audit_log: AuditLog,
    templates: TemplateEngine,
    locks: LockManager,
    tmp_path: Path,
) -> None:
    """If the alias cannot be written the new record is removed again."""
    broken_hosts = HostsFileManager(
        path=tmp_path / "missing" / "hosts",
        backups=BackupStore(tmp_path / "hosts-backups", "hosts.backup"),
        locks=locks,
    )
    provisioner = Provisioner(
        registry=registry, aliases=broken_hosts, audit=audit_log, templates=templates
    )

    with pytest.raises(AliasFileError):
        provisioner.add_virtual_host(ProvisionRequest(name="Demo", domain="demo.local"))

    assert registry.find_by_domain("demo.local") is None
    assert registry.recent_logs(limit=1)[0].action == "Site rollback"
    assert not (tmp_path / "www" / "demo.local").exists()
    lines = _audit_lines(audit_log)
    assert len(lines) == 1
    assert "failed at alias update, record rolled back" in lines[0]


def test_directory_failure_is_a_warning(
    provisioner: Provisioner,
    registry: SiteRegistry,
    hosts_manager: HostsFileManager,
    tmp_path: Path,
) -> None:
    """A content directory that cannot be created leaves the record and alias."""
    (tmp_path / "www").write_text("not a directory", encoding="utf-8")

    result = provisioner.add_virtual_host(ProvisionRequest(name="Demo", domain="demo.local"))

    assert result.state is ProvisionState.COMMITTED
    assert result.directory is None
    assert len(result.warnings) == 1
    assert "Could not prepare content directory" in result.warnings[0]
    assert registry.find_by_domain("demo.local") is not None
    assert hosts_manager.has_alias("demo.local")


def test_invalid_request_touches_nothing(
    provisioner: Provisioner,
    registry: SiteRegistry,
    hosts_manager: HostsFileManager,
    audit_log: AuditLog,
) -> None:
    """Validation failures leave every resource as it was."""
    before = hosts_manager.path.read_text(encoding="utf-8")

    with pytest.raises(InvalidInputError):
        provisioner.add_virtual_host(ProvisionRequest(name="Demo", domain="bad domain"))

    assert registry.list_sites() == []
    assert hosts_manager.path.read_text(encoding="utf-8") == before
    assert "rejected" in _audit_lines(audit_log)[0]


def test_duplicate_domain_touches_nothing(
    provisioner: Provisioner,
    hosts_manager: HostsFileManager,
) -> None:
    """A duplicate domain is refused before the alias step."""
    provisioner.add_virtual_host(ProvisionRequest(name="Demo", domain="demo.local"))
    backups = len(hosts_manager.list_backups())

    with pytest.raises(DuplicateDomainError):
        provisioner.add_virtual_host(ProvisionRequest(name="Again", domain="DEMO.local"))

    assert len(hosts_manager.list_backups()) == backups


def test_remove_virtual_host(
    provisioner: Provisioner,
    registry: SiteRegistry,
    hosts_manager: HostsFileManager,
    tmp_path: Path,
) -> None:
    """Removal drops alias and record but keeps the content directory."""
    added = provisioner.add_virtual_host(ProvisionRequest(name="Demo", domain="demo.local"))

    result = provisioner.remove_virtual_host(added.site.id, actor="alice")

    assert result.site.domain == "demo.local"
    assert not hosts_manager.has_alias("demo.local")
    assert registry.find_by_domain("demo.local") is None
    assert (tmp_path / "www" / "demo.local").is_dir()
    latest = registry.recent_logs(limit=1)[0]
    assert latest.action == "Site removed"
    assert latest.details is not None
    assert latest.details.startswith("Virtual host removed: demo.local | Removed demo.local")


@pytest.mark.parametrize(
    ("remove_output", "expected_calls"),
    [
        ("Removed '$2' from hosts file", ["add demo.local", "remove demo.local", "add demo.local"]),
        ("Domain '$2' not present", ["add demo.local", "remove demo.local"]),
    ],
)
def test_failed_record_delete_restores_only_removed_alias(
    registry: SiteRegistry,
    audit_log: AuditLog,
    templates: TemplateEngine,
    write_script: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    remove_output: str,
    expected_calls: list[str],
) -> None:
    """The alias is re-added only when manage-hosts reports it removed one."""
    write_script(
        "manage-hosts",
        'echo "$1 $2" >> "$0.log"\n'
        f'if [ "$1" = remove ]; then echo "{remove_output}"; else echo "Added $2"; fi\n',
    )
    gateway = ScriptGateway(catalog=default_catalog(tmp_path / "bin"), audit=audit_log)
    provisioner = Provisioner(
        registry=registry,
        aliases=ScriptAliasBackend(gateway=gateway),
        audit=audit_log,
        templates=templates,
    )
    added = provisioner.add_virtual_host(ProvisionRequest(name="Demo", domain="demo.local"))

    def _fail(self: SiteRegistry, site_id: int, *, details: str | None = None) -> None:
        raise StoreError("database is locked")

    monkeypatch.setattr(SiteRegistry, "remove_site", _fail)

    with pytest.raises(StoreError):
        provisioner.remove_virtual_host(added.site.id)

    log = tmp_path / "bin" / "manage-hosts.log"
    assert log.read_text(encoding="utf-8").splitlines() == expected_calls


def test_remove_protected_site_is_refused(
    provisioner: Provisioner,
    registry: SiteRegistry,
    hosts_manager: HostsFileManager,
    audit_log: AuditLog,
) -> None:
    """Protected sites keep both their record and alias."""
    registry.seed_defaults()
    dashboard = registry.find_by_domain("dashboard.local")
    assert dashboard is not None

    with pytest.raises(ProtectedSiteError):
        provisioner.remove_virtual_host(dashboard.id)

    assert registry.find_by_domain("dashboard.local") is not None
    assert hosts_manager.has_alias("dashboard.local")
    assert hosts_manager.list_backups() == []
    assert "rejected" in _audit_lines(audit_log)[-1]


def test_toggle_status_is_audited(
    provisioner: Provisioner,
    audit_log: AuditLog,
) -> None:
    """Toggling records one audit line per call."""
    added = provisioner.add_virtual_host(ProvisionRequest(name="Demo", domain="demo.local"))

    site = provisioner.toggle_status(added.site.id, actor="bob")

    assert site.status == "inactive"
    assert _audit_lines(audit_log)[-1].endswith("Toggled site demo.local (id 1) to inactive")


def test_database_created_through_gateway(
    registry: SiteRegistry,
    hosts_manager: HostsFileManager,
    audit_log: AuditLog,
    templates: TemplateEngine,
    write_script: Callable[..., Path],
    tmp_path: Path,
) -> None:
    """Sites with a database name run create-site-db; a failure is a warning."""
    write_script("create-site-db", 'echo "$1" >> "$0.log"\n')
    gateway = ScriptGateway(catalog=default_catalog(tmp_path / "bin"), audit=audit_log)
    provisioner = Provisioner(
        registry=registry,
        aliases=hosts_manager,
        audit=audit_log,
        templates=templates,
        gateway=gateway,
    )

    ok = provisioner.add_virtual_host(
        ProvisionRequest(name="Demo", domain="demo.local", database_name="demo_db")
    )
    assert ok.warnings == []
    log = tmp_path / "bin" / "create-site-db.log"
    assert log.read_text(encoding="utf-8") == "demo_db\n"

    write_script("create-site-db", "echo boom\nexit 1\n")
    failed = provisioner.add_virtual_host(
        ProvisionRequest(name="Other", domain="other.local", database_name="other_db")
    )
    assert failed.state is ProvisionState.COMMITTED
    assert len(failed.warnings) == 1
    assert "other_db was not created" in failed.warnings[0]


def test_regenerate_config_records_rebuild(
    registry: SiteRegistry,
    hosts_manager: HostsFileManager,
    audit_log: AuditLog,
    templates: TemplateEngine,
    locks: LockManager,
    tmp_path: Path,
) -> None:
    """Regeneration writes the config and logs a Config rebuilt entry."""
    config_file = tmp_path / "configuration.nix"
    config_file.write_text("{\n  services.nginx.virtualHosts = {\n  };\n}\n", encoding="utf-8")
    webserver = WebserverConfigProvider(
        config_file=config_file,
        backups=BackupStore(tmp_path / "webserver-backups", "configuration.nix.backup"),
        locks=locks,
        templates=templates,
    )
    provisioner = Provisioner(
        registry=registry,
        aliases=hosts_manager,
        audit=audit_log,
        templates=templates,
        webserver=webserver,
    )
    provisioner.add_virtual_host(ProvisionRequest(name="Demo", domain="demo.local"))

    result = provisioner.regenerate_config(actor="alice")

    assert result.changed is True
    assert result.site_count == 1
    assert '"demo.local" = {' in config_file.read_text(encoding="utf-8")
    latest = registry.recent_logs(limit=1)[0]
    assert latest.action == "Config rebuilt"
    assert latest.details is not None
    assert result.backup is not None
    assert f"Backup: {result.backup.name}" in latest.details
    assert "Rebuilt" in _audit_lines(audit_log)[-1]


def test_regenerate_config_requires_provider(provisioner: Provisioner) -> None:
    """Without a web-server provider regeneration is refused."""
    with pytest.raises(InvalidInputError):
        provisioner.regenerate_config()
