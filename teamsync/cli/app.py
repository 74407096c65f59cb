"""Main CLI application."""

import asyncio
import fnmatch
import logging
import signal
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import structlog
import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from teamsync.cli.factory import ComponentFactory, Components, open_components
from teamsync.cli.formatters import (
    AdminFormatter,
    ConfigFormatter,
    ExecutionFormatter,
    PlanFormatter,
    StatusFormatter,
)
from teamsync.clients.exceptions import (
    APIError,
    ConfigurationError,
    PlanExecutionError,
    StoreError,
    SyncError,
)
from teamsync.config.loader import ConfigLoader, find_config_file
from teamsync.config.models import SyncConfig
from teamsync.core.actions import normalize_org_role, normalize_team_role
from teamsync.core.executor import ExecutionResult
from teamsync.security.validation import sanitize_log_input, validate_cli_string_input
from teamsync.version import __version__

console = Console()
logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="teamsync",
    help="Reconcile Grafana teams and org roles with Entra ID group membership.",
    rich_markup_mode="rich",
)
orgs_app = typer.Typer(help="Manage Grafana organizations under sync")
mappings_app = typer.Typer(help="Manage group to team mappings")
app.add_typer(orgs_app, name="orgs")
app.add_typer(mappings_app, name="mappings")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to configuration file")


def setup_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    """Configure structlog once per process.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper(), logging.INFO))

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_configuration(config_file: Optional[Path] = None, quiet: bool = False) -> SyncConfig:
    """Load and validate configuration, then set up logging from it.

    Raises:
        typer.Exit: If configuration loading fails
    """
    if config_file is None:
        config_file = find_config_file()
        if config_file is None:
            console.print("[red]Error: No configuration file found[/red]")
            console.print("Please create a sync-config.yaml file or specify --config")
            raise typer.Exit(1)

    try:
        config = ConfigLoader().load_config(config_file)
    except ConfigurationError as e:
        console.print(f"[red]Error loading configuration: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)

    setup_logging(config.logging.log_level.value, config.logging.log_format.value)
    if not quiet:
        console.print(f"[green]✓[/green] Loaded configuration from {config_file}")
    return config


def run_async(operation: Callable[[], Awaitable[None]], failure: str) -> None:
    """Run an async command body, mapping known errors to exit code 1."""
    try:
        asyncio.run(operation())
    except typer.Exit:
        raise
    except (SyncError, StoreError, APIError, ConfigurationError) as e:
        console.print(f"[red]{failure}: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)


async def _execute_reporting(operation: Callable[[], Awaitable[ExecutionResult]]) -> ExecutionResult:
    try:
        return await operation()
    except PlanExecutionError as e:
        console.print(f"[red]Stopped after {e.applied_count} applied action(s)[/red]")
        raise


def _require_text(value: str, label: str, max_length: int = 255) -> str:
    if not validate_cli_string_input(value, max_length=max_length):
        console.print(f"[red]Invalid {label}: {sanitize_log_input(value)}[/red]")
        raise typer.Exit(1)
    return value.strip()


def _org_names(components: Components) -> dict:
    return {org.id: org.name for org in components.store.list_orgs()}


@app.command()
def version() -> None:
    """Show the installed version."""
    console.print(f"teamsync {__version__}")


@app.command()
def validate(config_file: Optional[Path] = ConfigOption) -> None:
    """Validate configuration file."""
    console.print("[blue]Validating configuration...[/blue]")
    if config_file is not None:
        missing = ConfigLoader().get_missing_env_vars(config_file)
        if missing:
            ConfigFormatter(console).format_validation_errors(
                [f"Environment variable {name} is not set" for name in missing]
            )
            raise typer.Exit(1)

    config = load_configuration(config_file)
    ConfigFormatter(console).format_config_summary(config)
    console.print("[green]✓ Configuration is valid[/green]")


# Organizations


@orgs_app.command("list")
def orgs_list(config_file: Optional[Path] = ConfigOption) -> None:
    """List registered organizations."""
    config = load_configuration(config_file, quiet=True)
    store = ComponentFactory.create_store(config)
    try:
        AdminFormatter(console).format_orgs(store.list_orgs())
    except StoreError as e:
        console.print(f"[red]Failed to list orgs: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()


@orgs_app.command("add")
def orgs_add(
    grafana_org_id: int = typer.Argument(..., help="Grafana organization id"),
    name: str = typer.Argument(..., help="Display name"),
    default_role: str = typer.Option("Viewer", "--default-role", help="Org role for mapped users (Viewer|Editor|Admin)"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Register a Grafana organization."""
    config = load_configuration(config_file, quiet=True)
    name = _require_text(name, "name")
    role = normalize_org_role(default_role)
    if not role:
        console.print(f"[red]Invalid role: {sanitize_log_input(default_role)}[/red]")
        raise typer.Exit(1)

    store = ComponentFactory.create_store(config)
    try:
        org = store.create_org(grafana_org_id, name, role)
    except StoreError as e:
        console.print(f"[red]Failed to add org: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()
    console.print(f"[green]✓ Added org {org.id} ({sanitize_log_input(org.name)})[/green]")


@orgs_app.command("remove")
def orgs_remove(
    org_id: int = typer.Argument(..., help="Org id (as shown by 'orgs list')"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Remove an organization and all of its mappings."""
    config = load_configuration(config_file, quiet=True)
    if not yes and not typer.confirm(f"Remove org {org_id} and its mappings?"):
        console.print("Operation cancelled")
        return

    store = ComponentFactory.create_store(config)
    try:
        removed = store.delete_org(org_id)
    except StoreError as e:
        console.print(f"[red]Failed to remove org: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()
    if not removed:
        console.print(f"[yellow]Org {org_id} not found[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Removed org {org_id}[/green]")


# Mappings


@mappings_app.command("list")
def mappings_list(
    org_id: Optional[int] = typer.Option(None, "--org", help="Only show mappings of this org"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """List mappings."""
    config = load_configuration(config_file, quiet=True)
    store = ComponentFactory.create_store(config)
    try:
        org_names = {org.id: org.name for org in store.list_orgs()}
        AdminFormatter(console).format_mappings(store.list_mappings(org_id), org_names)
    except StoreError as e:
        console.print(f"[red]Failed to list mappings: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()


@mappings_app.command("add")
def mappings_add(
    org_id: int = typer.Option(..., "--org", help="Org id (as shown by 'orgs list')"),
    team: str = typer.Option(..., "--team", help="Grafana team name"),
    group_id: Optional[str] = typer.Option(None, "--group-id", help="Directory group object id"),
    group_name: Optional[str] = typer.Option(None, "--group-name", help="Directory group display name"),
    team_role: str = typer.Option("member", "--team-role", help="Team role (member|admin)"),
    role_override: Optional[str] = typer.Option(None, "--role", help="Org role override (Viewer|Editor|Admin)"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Map a directory group to a Grafana team.

    When only --group-name is given the group id is looked up in the directory.
    """
    config = load_configuration(config_file, quiet=True)
    team = _require_text(team, "team name")
    if not group_id and not group_name:
        console.print("[red]Either --group-id or --group-name is required[/red]")
        raise typer.Exit(1)

    override = ""
    if role_override:
        override = normalize_org_role(role_override)
        if not override:
            console.print(f"[red]Invalid role: {sanitize_log_input(role_override)}[/red]")
            raise typer.Exit(1)

    async def add_mapping():
        async with open_components(config) as components:
            resolved_id = group_id.strip() if group_id else ""
            resolved_name = group_name.strip() if group_name else ""
            if not resolved_id:
                group = await components.entra_client.find_group_by_name(_require_text(resolved_name, "group name"))
                if group is None:
                    console.print(f"[red]Group not found: {sanitize_log_input(resolved_name)}[/red]")
                    raise typer.Exit(1)
                resolved_id = group.id
                resolved_name = group.display_name or resolved_name

            mapping = components.store.create_mapping(
                org_id=org_id,
                grafana_team_name=team,
                external_group_id=resolved_id,
                external_group_name=resolved_name,
                team_role=normalize_team_role(team_role),
                role_override=override,
            )
            console.print(
                f"[green]✓ Added mapping {mapping.id}: "
                f"{sanitize_log_input(resolved_name or resolved_id)} -> {sanitize_log_input(team)}[/green]"
            )

    run_async(add_mapping, "Failed to add mapping")


@mappings_app.command("remove")
def mappings_remove(
    mapping_id: int = typer.Argument(..., help="Mapping id"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Remove a mapping."""
    config = load_configuration(config_file, quiet=True)
    store = ComponentFactory.create_store(config)
    try:
        removed = store.delete_mapping(mapping_id)
    except StoreError as e:
        console.print(f"[red]Failed to remove mapping: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()
    if not removed:
        console.print(f"[yellow]Mapping {mapping_id} not found[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Removed mapping {mapping_id}[/green]")


@mappings_app.command("purge")
def mappings_purge(
    pattern: Optional[str] = typer.Option(None, "--pattern", help="Glob on group names (defaults to entra.managed_group_pattern)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Delete mappings whose group is no longer among the managed directory groups."""
    config = load_configuration(config_file, quiet=True)
    glob = (pattern or config.entra.managed_group_pattern).lower()

    async def purge():
        async with open_components(config) as components:
            groups = await components.entra_client.list_groups()
            keep = [g.id for g in groups if fnmatch.fnmatchcase((g.display_name or "").lower(), glob)]
            if not keep:
                console.print(f"[red]No directory groups match {sanitize_log_input(glob)}; nothing purged[/red]")
                raise typer.Exit(1)

            keep_ids = set(keep)
            stale = [m for m in components.store.list_mappings() if m.external_group_id not in keep_ids]
            if not stale:
                console.print("[green]No stale mappings[/green]")
                return

            AdminFormatter(console).format_mappings(stale, _org_names(components))
            if not yes and not typer.confirm(f"Delete {len(stale)} mapping(s)?"):
                console.print("Operation cancelled")
                return

            deleted = components.store.delete_mappings_not_in_group_ids(keep)
            console.print(f"[green]✓ Deleted {deleted} mapping(s)[/green]")

    run_async(purge, "Purge failed")


# Directory discovery


@app.command()
def groups(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Case-insensitive substring filter"),
    managed: bool = typer.Option(False, "--managed", help="Only groups matching entra.managed_group_pattern"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """List directory groups."""
    config = load_configuration(config_file, quiet=True)

    async def list_groups():
        async with open_components(config) as components:
            result = await components.entra_client.list_groups()
            if search:
                needle = search.lower()
                result = [g for g in result if needle in (g.display_name or "").lower()]
            if managed:
                glob = config.entra.managed_group_pattern.lower()
                result = [g for g in result if fnmatch.fnmatchcase((g.display_name or "").lower(), glob)]
            mapped_ids = {m.external_group_id for m in components.store.list_mappings()}
            AdminFormatter(console).format_groups(result, mapped_ids)

    run_async(list_groups, "Failed to list groups")


@app.command()
def members(
    group_id: str = typer.Argument(..., help="Directory group object id"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """List members of a directory group."""
    config = load_configuration(config_file, quiet=True)
    group_id = _require_text(group_id, "group id")

    async def list_members():
        async with open_components(config) as components:
            result = await components.entra_client.list_group_members(group_id)
            AdminFormatter(console).format_members(group_id, result)

    run_async(list_members, "Failed to list members")


# Plan operations


@app.command()
def preview(config_file: Optional[Path] = ConfigOption) -> None:
    """Build a plan from live state and store it without applying."""
    config = load_configuration(config_file)

    async def build():
        async with open_components(config) as components:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                progress.add_task("Building sync plan...", total=None)
                plan = await components.engine.preview()
            PlanFormatter(console).format_plan(plan, _org_names(components))

    run_async(build, "Plan generation failed")


@app.command()
def show(config_file: Optional[Path] = ConfigOption) -> None:
    """Show the current plan grouped by team."""
    config = load_configuration(config_file, quiet=True)
    store = ComponentFactory.create_store(config)
    try:
        org_names = {org.id: org.name for org in store.list_orgs()}
        PlanFormatter(console).format_plan(store.latest_plan(), org_names)
    except StoreError as e:
        console.print(f"[red]Failed to read plan: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()


@app.command()
def apply(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip interactive approval"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Apply every executable action of the current plan."""
    config = load_configuration(config_file)

    async def apply_plan():
        async with open_components(config) as components:
            plan = components.engine.latest_plan()
            PlanFormatter(console).format_plan(plan, _org_names(components))
            if plan is None:
                raise typer.Exit(1)
            if not plan.executable_actions:
                console.print("[green]Nothing to apply[/green]")
                return
            if not yes and not typer.confirm("Do you want to apply these changes?"):
                console.print("Operation cancelled")
                return

            console.print("\n[blue]Applying plan...[/blue]")
            result = await _execute_reporting(components.engine.apply_latest)
            ExecutionFormatter(console).format_result(result)
            console.print("[green]✓ Plan applied[/green]")

    run_async(apply_plan, "Apply failed")


@app.command("apply-selected")
def apply_selected(
    action_ids: List[int] = typer.Argument(..., help="Plan action ids to apply"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Apply only the chosen actions of the current plan."""
    config = load_configuration(config_file)

    async def apply_some():
        async with open_components(config) as components:
            result = await _execute_reporting(lambda: components.engine.apply_selected(action_ids))
            ExecutionFormatter(console).format_result(result)
            console.print(f"[green]✓ Applied {result.applied} selected action(s)[/green]")

    run_async(apply_some, "Apply failed")


@app.command()
def run(config_file: Optional[Path] = ConfigOption) -> None:
    """Build, store and apply a fresh plan in one step."""
    config = load_configuration(config_file)

    async def run_once():
        async with open_components(config) as components:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                progress.add_task("Running sync...", total=None)
                result = await _execute_reporting(lambda: components.engine.run(wait=False))
            ExecutionFormatter(console).format_result(result)
            console.print("[green]✓ Sync completed[/green]")

    run_async(run_once, "Sync failed")


@app.command()
def clear(config_file: Optional[Path] = ConfigOption) -> None:
    """Discard the current plan."""
    config = load_configuration(config_file, quiet=True)

    async def clear_plan():
        async with open_components(config) as components:
            await components.engine.clear_plan()
            console.print("[green]✓ Plan cleared[/green]")

    run_async(clear_plan, "Failed to clear plan")


# Service


@app.command()
def daemon(config_file: Optional[Path] = ConfigOption) -> None:
    """Run sync cycles on the configured interval until interrupted."""
    config = load_configuration(config_file)

    async def serve():
        async with open_components(config) as components:
            scheduler = ComponentFactory.create_scheduler(config, components.engine)
            cache = ComponentFactory.create_cache(
                config, components.store, components.grafana_client, components.entra_client
            )
            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop_event.set)

            if not scheduler.enabled:
                console.print("[yellow]Sync interval is 0; timer disabled[/yellow]")
                return

            console.print(f"[blue]Syncing every {config.schedule.interval_seconds}s (Ctrl+C to stop)[/blue]")
            await asyncio.gather(scheduler.run(stop_event), cache.run_periodically(stop_event))
            console.print("[green]Stopped[/green]")

    run_async(serve, "Daemon failed")


@app.command()
def status(config_file: Optional[Path] = ConfigOption) -> None:
    """Show reachability, recent changes per org, and the current plan."""
    config = load_configuration(config_file, quiet=True)

    async def report():
        async with open_components(config) as components:
            StatusFormatter(console).format_status(await components.engine.status())

    run_async(report, "Failed to get status")


@app.command("auto-sync")
def auto_sync(
    state: Optional[str] = typer.Argument(None, help="'on' or 'off'; omit to show the current setting"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Show or toggle scheduled syncing."""
    config = load_configuration(config_file, quiet=True)
    if state is not None and state.lower() not in ("on", "off"):
        console.print("[red]State must be 'on' or 'off'[/red]")
        raise typer.Exit(1)

    store = ComponentFactory.create_store(config)
    try:
        if state is not None:
            store.set_auto_sync_enabled(state.lower() == "on")
        enabled = store.auto_sync_enabled()
    except StoreError as e:
        console.print(f"[red]Failed to update auto-sync: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()
    console.print(f"Auto-sync is {'[green]enabled[/green]' if enabled else '[yellow]disabled[/yellow]'}")


@app.command()
def audit(
    limit: int = typer.Option(50, "--limit", "-n", min=1, max=1000, help="Number of entries"),
    org_id: Optional[int] = typer.Option(None, "--org", help="Only entries of this org"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """List recently applied actions from the ledger."""
    config = load_configuration(config_file, quiet=True)
    store = ComponentFactory.create_store(config)
    try:
        org_names = {org.id: org.name for org in store.list_orgs()}
        AdminFormatter(console).format_ledger(store.list_sync_actions(limit=limit, org_id=org_id), org_names)
    except StoreError as e:
        console.print(f"[red]Failed to read ledger: {sanitize_log_input(str(e))}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()


@app.command()
def inspect(config_file: Optional[Path] = ConfigOption) -> None:
    """Show Grafana teams and directory state with mapping coverage."""
    config = load_configuration(config_file, quiet=True)

    async def show_state():
        async with open_components(config) as components:
            cache = ComponentFactory.create_cache(
                config, components.store, components.grafana_client, components.entra_client
            )
            AdminFormatter(console).format_snapshot(await cache.get(force=True))

    run_async(show_state, "Failed to inspect state")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
