"""Command-line interface for vhostctl."""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import get_version
from .api import ServiceResult, VhostService
from .config import AppConfig, ConfigError, load_config
from .errors import VhostctlError
from .exit_codes import ExitCode
from .logging import StructuredLogger

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to vhostctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

ACTOR_OPTION = typer.Option(
    None,
    "--actor",
    help="Identity recorded in the audit log for this action.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Virtual host provisioning CLI.

        Keeps site records, /etc/hosts aliases, site content directories and
        the generated web-server configuration consistent, and runs the
        whitelisted maintenance scripts.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Config, logger, locks and service built once per invocation."""

    config: AppConfig
    logger: StructuredLogger
    service: VhostService | None = None


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _get_service(ctx: typer.Context) -> VhostService:
    runtime = _get_runtime(ctx)
    if runtime.service is None:
        try:
            runtime.service = VhostService.from_config(runtime.config)
        except VhostctlError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    return runtime.service


@app.callback(invoke_without_command=True)
def _root(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the vhostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Seconds to wait for resource locks.",
    ),
) -> None:
    """Resolve config and logging before any subcommand runs."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"vhostctl {get_version()}")
            op.success("Printed version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _fail(result: ServiceResult) -> NoReturn:
    console.print(f"[red]{escape(result.message)}[/red]")
    raise typer.Exit(code=int(result.exit_code))


def _report(
    result: ServiceResult,
    *,
    json_output: bool = False,
    render: Callable[[Any], None] | None = None,
) -> None:
    """Print *result* and exit with its code when it failed."""
    if json_output:
        console.print_json(data=result.to_dict())
        if not result.ok:
            raise typer.Exit(code=int(result.exit_code))
        return
    if not result.ok:
        _fail(result)
    if render is not None:
        render(result.data)
    else:
        console.print(f"[green]{escape(result.message)}[/green]")
    for warning in result.errors:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


sites_app = typer.Typer(help="Provision and manage virtual hosts.")
hosts_app = typer.Typer(help="Inspect and edit /etc/hosts aliases.")
webserver_app = typer.Typer(help="Regenerate the web-server virtual-host section.")
scripts_app = typer.Typer(help="Run whitelisted maintenance scripts.")
audit_app = typer.Typer(help="Inspect the privileged-action audit log.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(sites_app, name="sites")
app.add_typer(hosts_app, name="hosts")
app.add_typer(webserver_app, name="webserver")
app.add_typer(scripts_app, name="scripts")
app.add_typer(audit_app, name="audit")
app.add_typer(config_app, name="config")


# Sites -----------------------------------------------------------------------
def _render_sites(sites: list[dict[str, object]]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Domain")
    table.add_column("Status")
    table.add_column("Database")
    table.add_column("SSL")

    if not sites:
        table.add_row("(none)", "", "", "", "", "")
    for site in sites:
        status = str(site["status"])
        colour = "green" if status == "active" else "yellow"
        table.add_row(
            str(site["id"]),
            str(site["name"]),
            str(site["domain"]),
            f"[{colour}]{status}[/{colour}]",
            str(site["database_name"] or "-"),
            "yes" if site["ssl_enabled"] else "no",
        )
    console.print(table)


@sites_app.command("list")
def sites_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List every site ordered by id."""
    _report(_get_service(ctx).list_sites(), json_output=json_output, render=_render_sites)


@sites_app.command("add")
def sites_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Human-readable site name."),
    domain: str = typer.Argument(..., help="Domain served by the site (e.g. demo.local)."),
    database: str | None = typer.Option(
        None,
        "--database",
        help="Database name to create for the site.",
    ),
    ssl: bool = typer.Option(False, "--ssl", help="Serve the site over HTTPS."),
    actor: str | None = ACTOR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a site record, its hosts alias and its content directory."""
    result = _get_service(ctx).add_site(
        name, domain, database_name=database, ssl_enabled=ssl, actor=actor
    )
    _report(result, json_output=json_output)


@sites_app.command("toggle")
def sites_toggle(
    ctx: typer.Context,
    site_id: int = typer.Argument(..., help="Identifier of the site."),
    actor: str | None = ACTOR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Flip a site between active and inactive."""
    _report(_get_service(ctx).toggle_status(site_id, actor=actor), json_output=json_output)


@sites_app.command("remove")
def sites_remove(
    ctx: typer.Context,
    site_id: int = typer.Argument(..., help="Identifier of the site."),
    actor: str | None = ACTOR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove a site and its hosts alias (its content directory is kept)."""
    _report(_get_service(ctx).remove_site(site_id, actor=actor), json_output=json_output)


@sites_app.command("seed")
def sites_seed(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Insert the default sites into an empty store."""
    _report(_get_service(ctx).seed_defaults(), json_output=json_output)


@sites_app.command("logs")
def sites_logs(
    ctx: typer.Context,
    limit: int = typer.Option(15, "--limit", min=1, help="Number of entries to show."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the most recent activity-log entries."""

    def _render(entries: list[dict[str, object]]) -> None:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Time")
        table.add_column("Site")
        table.add_column("Action", style="bold")
        table.add_column("Details")
        if not entries:
            table.add_row("(none)", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry["timestamp"]),
                str(entry["site_name"] or "-"),
                str(entry["action"]),
                str(entry["details"] or ""),
            )
        console.print(table)

    _report(_get_service(ctx).recent_logs(limit), json_output=json_output, render=_render)


# Hosts -----------------------------------------------------------------------
@hosts_app.command("list")
def hosts_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List local domains mapped to the loopback address."""

    def _render(aliases: list[str]) -> None:
        if not aliases:
            console.print("No local domains found in hosts file.")
            return
        for alias in aliases:
            console.print(alias)

    _report(_get_service(ctx).list_aliases(), json_output=json_output, render=_render)


@hosts_app.command("add")
def hosts_add(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to map to the loopback address."),
    actor: str | None = ACTOR_OPTION,
) -> None:
    """Add a hosts alias."""
    _report(_get_service(ctx).add_alias(domain, actor=actor))


@hosts_app.command("remove")
def hosts_remove(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to unmap."),
    actor: str | None = ACTOR_OPTION,
) -> None:
    """Remove a hosts alias."""
    _report(_get_service(ctx).remove_alias(domain, actor=actor))


@hosts_app.command("backup")
def hosts_backup(ctx: typer.Context, actor: str | None = ACTOR_OPTION) -> None:
    """Take an on-demand backup of the hosts file."""
    _report(_get_service(ctx).backup_hosts(actor=actor))


@hosts_app.command("backups")
def hosts_backups(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List hosts file backups, oldest first."""

    def _render(records: list[dict[str, object]]) -> None:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Backup", style="bold")
        table.add_column("Created")
        table.add_column("Size", justify="right")
        if not records:
            table.add_row("(none)", "", "")
        for record in records:
            table.add_row(str(record["name"]), str(record["created_at"]), str(record["size_bytes"]))
        console.print(table)

    _report(_get_service(ctx).list_hosts_backups(), json_output=json_output, render=_render)


@hosts_app.command("restore")
def hosts_restore(
    ctx: typer.Context,
    backup_name: str = typer.Argument(..., help="Backup file name from `hosts backups`."),
    actor: str | None = ACTOR_OPTION,
) -> None:
    """Restore the hosts file from a backup."""
    _report(_get_service(ctx).restore_hosts(backup_name, actor=actor))


@hosts_app.command("check")
def hosts_check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Check that the hosts file is readable and writable."""

    def _render(report: dict[str, object]) -> None:
        console.print(f"[green]{report['message']}[/green] ({report['path']})")

    _report(_get_service(ctx).check_hosts(), json_output=json_output, render=_render)


# Web server ------------------------------------------------------------------
@webserver_app.command("regenerate")
def webserver_regenerate(
    ctx: typer.Context,
    actor: str | None = ACTOR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Rewrite the virtual-host section from the active sites."""

    def _render(data: dict[str, Any]) -> None:
        state = "updated" if data["changed"] else "unchanged"
        console.print(
            f"[green]{data['path']} {state}[/green] "
            f"({data['site_count']} active sites, backup {data['backup']['name']})"
        )

    _report(_get_service(ctx).regenerate(actor=actor), json_output=json_output, render=_render)


@webserver_app.command("render")
def webserver_render(ctx: typer.Context) -> None:
    """Print the virtual-host section without writing it."""
    _report(_get_service(ctx).render_config(), render=lambda text: console.out(text))


# Scripts ---------------------------------------------------------------------
@scripts_app.command("list")
def scripts_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List whitelisted maintenance scripts."""

    def _render(scripts: list[dict[str, Any]]) -> None:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Script", style="bold")
        table.add_column("Actions")
        table.add_column("Path")
        table.add_column("Description")
        for script in scripts:
            actions = ", ".join(script["actions"]) or f"{script['required_params']} param(s)"
            table.add_row(script["name"], actions, script["path"], script["description"])
        console.print(table)

    _report(_get_service(ctx).list_scripts(), json_output=json_output, render=_render)


@scripts_app.command("status")
def scripts_status(
    ctx: typer.Context,
    script: str = typer.Argument(..., help="Script name from `scripts list`."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether a script is installed and executable."""

    def _render(report: dict[str, object]) -> None:
        colour = "green" if report["status"] == "ready" else "yellow"
        console.print(f"{report['script']}: [{colour}]{report['status']}[/{colour}] ({report['path']})")

    _report(_get_service(ctx).script_status(script), json_output=json_output, render=_render)


@scripts_app.command("run")
def scripts_run(
    ctx: typer.Context,
    script: str = typer.Argument(..., help="Script name from `scripts list`."),
    params: list[str] | None = typer.Argument(None, help="Action (if any) followed by parameters."),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        min=0.1,
        help="Override the script timeout in seconds.",
    ),
    actor: str | None = ACTOR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run a whitelisted script with an optional action and parameters."""
    service = _get_service(ctx)
    values = list(params or [])
    action: str | None = None
    descriptor = service.gateway.catalog.get(script)
    if descriptor is not None and descriptor.has_actions and values:
        action = values.pop(0)
    result = service.execute(script, action, values, actor=actor, timeout=timeout)

    def _render(data: dict[str, Any]) -> None:
        output = str(data["output"])
        if output:
            console.out(output, end="" if output.endswith("\n") else "\n")
        console.print(f"[green]{data['command']}[/green] finished in {data['duration_ms']} ms")

    if not json_output and not result.ok and isinstance(result.data, dict):
        output = str(result.data.get("output") or "")
        if output:
            console.out(output, end="" if output.endswith("\n") else "\n")
    _report(result, json_output=json_output, render=_render)


# Audit -----------------------------------------------------------------------
@audit_app.command("tail")
def audit_tail(
    ctx: typer.Context,
    lines: int = typer.Option(50, "--lines", "-n", min=1, help="Number of lines to show."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the last lines of the audit log."""

    def _render(entries: list[str]) -> None:
        if not entries:
            console.print("Audit log is empty.")
            return
        for entry in entries:
            console.out(entry)

    _report(_get_service(ctx).audit_tail(lines), json_output=json_output, render=_render)


# Config ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print the configuration as JSON.",
    ),
) -> None:
    """Print the merged settings vhostctl is running with."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Printed configuration (json).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Printed configuration (table).", changed=0)


def main() -> None:
    """Run the Typer app as the ``vhostctl`` console script."""
    app()
