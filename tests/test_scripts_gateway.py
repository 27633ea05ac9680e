"""Tests for the privileged script gateway."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from vhostctl.audit import AuditLog
from vhostctl.errors import (
    MissingParameterError,
    ScriptFailedError,
    ScriptSpawnError,
    ScriptTimeoutError,
    UnknownActionError,
    UnknownScriptError,
)
from vhostctl.providers.scripts import (
    ScriptDescriptor,
    ScriptGateway,
    build_catalog,
    default_catalog,
)

ECHO_ARGS = 'for arg in "$@"; do printf "[%s]\\n" "$arg"; done\n'


@pytest.fixture()
def gateway(tmp_path: Path, audit_log: AuditLog) -> ScriptGateway:
    """Gateway over the default catalog rooted at ``tmp_path/bin``."""
    (tmp_path / "bin").mkdir(exist_ok=True)
    return ScriptGateway(catalog=default_catalog(tmp_path / "bin"), audit=audit_log, timeout=10.0)


def _audit_lines(audit_log: AuditLog) -> list[str]:
    if not audit_log.path.exists():
        return []
    return audit_log.path.read_text(encoding="utf-8").splitlines()


def test_default_catalog_contents(tmp_path: Path) -> None:
    """The built-in catalog lists every maintenance script."""
    catalog = default_catalog(tmp_path)

    assert sorted(catalog) == [
        "backup-databases",
        "create-site-db",
        "create-site-dir",
        "manage-hosts",
        "monitor-hosts",
        "rebuild-webserver",
    ]
    manage = catalog["manage-hosts"]
    assert manage.params_required("add") == 1
    assert manage.params_required("list") == 0
    assert catalog["create-site-dir"].params_required(None) == 2
    with pytest.raises(TypeError):
        catalog["extra"] = manage  # type: ignore[index]


def test_duplicate_descriptors_rejected(tmp_path: Path) -> None:
    """Catalog names must be unique."""
    descriptor = ScriptDescriptor(name="one", executable=tmp_path / "one")

    with pytest.raises(ValueError):
        build_catalog([descriptor, descriptor])


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": " ", "executable": Path("/bin/true")},
        {"name": "rel", "executable": Path("bin/true")},
        {
            "name": "stray",
            "executable": Path("/bin/true"),
            "allowed_actions": frozenset({"list"}),
            "actions_requiring_param": frozenset({"add"}),
        },
        {"name": "neg", "executable": Path("/bin/true"), "required_params": -1},
        {
            "name": "mixed",
            "executable": Path("/bin/true"),
            "allowed_actions": frozenset({"list"}),
            "required_params": 1,
        },
    ],
)
def test_descriptor_validation(kwargs: dict[str, object]) -> None:
    """Inconsistent descriptors fail at construction."""
    with pytest.raises(ValueError):
        ScriptDescriptor(**kwargs)  # type: ignore[arg-type]


def test_unknown_script_is_rejected_and_audited(
    gateway: ScriptGateway, audit_log: AuditLog
) -> None:
    """Names outside the catalog never spawn anything."""
    with pytest.raises(UnknownScriptError):
        gateway.execute("rm", None, ["-rf", "/"], actor="mallory")

    lines = _audit_lines(audit_log)
    assert len(lines) == 1
    assert " - mallory - Rejected: rm" in lines[0]


def test_unknown_action_is_rejected(
    gateway: ScriptGateway,
    write_script: Callable[..., Path],
    audit_log: AuditLog,
) -> None:
    """Actions outside the allowed set are refused before spawning."""
    script = write_script("manage-hosts", "touch \"$0.ran\"\n")

    with pytest.raises(UnknownActionError):
        gateway.execute("manage-hosts", "purge", [])

    assert not Path(f"{script}.ran").exists()
    assert len(_audit_lines(audit_log)) == 1


def test_action_on_action_less_script_is_rejected(gateway: ScriptGateway) -> None:
    """Scripts without an action vocabulary accept no action."""
    with pytest.raises(UnknownActionError):
        gateway.build_argv("monitor-hosts", "status", [])


def test_missing_and_blank_parameters_are_rejected(gateway: ScriptGateway) -> None:
    """Required parameters must be present and non-blank."""
    with pytest.raises(MissingParameterError):
        gateway.build_argv("manage-hosts", "add", [])
    with pytest.raises(MissingParameterError):
        gateway.build_argv("manage-hosts", "add", ["   "])
    with pytest.raises(MissingParameterError):
        gateway.build_argv("create-site-dir", None, ["demo.local"])


def test_build_argv_layout(gateway: ScriptGateway, tmp_path: Path) -> None:
    """Argument vectors are executable, optional action, then parameters."""
    assert gateway.build_argv("manage-hosts", "list", []) == [
        str(tmp_path / "bin" / "manage-hosts"),
        "list",
    ]
    assert gateway.build_argv("create-site-dir", None, ["demo.local", "Demo"]) == [
        str(tmp_path / "bin" / "create-site-dir"),
        "demo.local",
        "Demo",
    ]


def test_execute_passes_metacharacters_verbatim(
    gateway: ScriptGateway,
    write_script: Callable[..., Path],
    audit_log: AuditLog,
) -> None:
    """Parameters reach the script as single argv entries, never shell-expanded."""
    write_script("manage-hosts", ECHO_ARGS)

    result = gateway.execute("manage-hosts", "add", ["demo.local; rm -rf $HOME"], actor="alice")

    assert result.returncode == 0
    assert result.output.splitlines() == ["[add]", "[demo.local; rm -rf $HOME]"]
    lines = _audit_lines(audit_log)
    assert len(lines) == 1
    assert " - alice - Executed: " in lines[0]
    assert "(exit" not in lines[0]


def test_execute_merges_stderr_into_output(
    gateway: ScriptGateway, write_script: Callable[..., Path]
) -> None:
    """Standard error is captured alongside standard output."""
    write_script("monitor-hosts", "echo out\necho err >&2\n")

    result = gateway.execute("monitor-hosts", None)

    assert "out" in result.output
    assert "err" in result.output
    assert result.to_dict()["returncode"] == 0


def test_nonzero_exit_raises_with_output(
    gateway: ScriptGateway,
    write_script: Callable[..., Path],
    audit_log: AuditLog,
) -> None:
    """Script failures carry the captured output and exit status."""
    write_script("create-site-db", 'echo "database $1 exists"\nexit 3\n')

    with pytest.raises(ScriptFailedError) as excinfo:
        gateway.execute("create-site-db", None, ["demo_db"])

    assert excinfo.value.returncode == 3
    assert "database demo_db exists" in excinfo.value.output
    lines = _audit_lines(audit_log)
    assert len(lines) == 1
    assert lines[0].endswith("(exit 3)")


def test_missing_executable_raises_spawn_error(
    gateway: ScriptGateway, audit_log: AuditLog
) -> None:
    """An absent script is a spawn failure, audited once."""
    with pytest.raises(ScriptSpawnError):
        gateway.execute("backup-databases", None)

    lines = _audit_lines(audit_log)
    assert len(lines) == 1
    assert "Failed to execute" in lines[0]


def test_non_executable_script_raises_spawn_error(
    gateway: ScriptGateway, write_script: Callable[..., Path]
) -> None:
    """A script without the execute bit cannot be spawned."""
    write_script("backup-databases", executable=False)

    with pytest.raises(ScriptSpawnError):
        gateway.execute("backup-databases", None)


def test_timeout_raises(
    gateway: ScriptGateway,
    write_script: Callable[..., Path],
    audit_log: AuditLog,
) -> None:
    """Overrunning scripts are killed and reported."""
    write_script("rebuild-webserver", "exec sleep 5\n")

    with pytest.raises(ScriptTimeoutError):
        gateway.execute("rebuild-webserver", None, timeout=0.2)

    lines = _audit_lines(audit_log)
    assert len(lines) == 1
    assert "Timed out" in lines[0]


def test_status_reports_availability(
    gateway: ScriptGateway, write_script: Callable[..., Path]
) -> None:
    """Status distinguishes installed scripts from missing ones."""
    write_script("monitor-hosts")

    assert gateway.status("monitor-hosts")["status"] == "ready"
    missing = gateway.status("backup-databases")
    assert missing["status"] == "not_available"
    assert missing["exists"] is False
    with pytest.raises(UnknownScriptError):
        gateway.status("nope")


def test_list_scripts_sorted(gateway: ScriptGateway) -> None:
    """Descriptors are listed by name."""
    names = [descriptor.name for descriptor in gateway.list_scripts()]

    assert names == sorted(names)
    assert len(names) == 6
