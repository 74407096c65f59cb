"""Output formatters for CLI commands."""

from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from teamsync.clients.entra import DirectoryGroup, DirectoryMember
from teamsync.config.models import SyncConfig
from teamsync.core.actions import ActionKind, BaseAction, Plan, PlanStatus
from teamsync.core.cache import ExternalSnapshot
from teamsync.core.engine import SyncStatus
from teamsync.core.executor import ExecutionResult
from teamsync.security.validation import sanitize_log_input
from teamsync.store.models import Mapping, Org, SyncAction

ACTION_STYLES = {
    ActionKind.BLOCKED_CREATE_USER.value: ("!", "red"),
    ActionKind.CREATE_TEAM.value: ("+", "green"),
    ActionKind.CREATE_USER.value: ("+", "green"),
    ActionKind.ADD_USER_TO_ORG.value: ("+", "green"),
    ActionKind.UPDATE_USER_ROLE.value: ("~", "yellow"),
    ActionKind.ADD_USER_TO_TEAM.value: ("+", "green"),
    ActionKind.UPDATE_TEAM_ROLE.value: ("~", "yellow"),
    ActionKind.REMOVE_USER_FROM_TEAM.value: ("-", "red"),
}

STATUS_COLORS = {
    PlanStatus.PLANNED: "blue",
    PlanStatus.APPLYING: "yellow",
    PlanStatus.APPLYING_SELECTED: "yellow",
    PlanStatus.APPLIED: "green",
    PlanStatus.APPLIED_SELECTED: "green",
    PlanStatus.FAILED: "red",
}

ORG_ROLES_GROUP = "(org roles)"


def _yes_no(value: bool) -> str:
    return "[green]✓[/green]" if value else "[red]✗[/red]"


def _when(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "-"


def group_actions_by_team(actions: Iterable[BaseAction]) -> Dict[Tuple[int, str], List[BaseAction]]:
    """Group actions under ``(org_id, team name)``; org-level actions share one bucket per org."""
    groups: Dict[Tuple[int, str], List[BaseAction]] = {}
    for action in actions:
        team_name = getattr(action, "team_name", "") or ORG_ROLES_GROUP
        groups.setdefault((action.org_id, team_name), []).append(action)
    return groups


class PlanFormatter:
    """Formats plans for display."""

    def __init__(self, console: Console):
        self.console = console

    def format_plan(self, plan: Optional[Plan], org_names: Optional[Dict[int, str]] = None) -> None:
        """Display the plan grouped by team, one line per action."""
        if plan is None:
            self.console.print("[yellow]No plan available[/yellow]")
            return

        color = STATUS_COLORS.get(plan.status, "white")
        self.console.print()
        self.console.print(
            f"[bold blue]Plan #{plan.id}[/bold blue]  "
            f"[{color}]{plan.status.value}[/{color}]  "
            f"[dim]{_when(plan.created_at)}[/dim]"
        )
        self.console.print()

        if not plan.actions:
            self.console.print("[green]No changes needed[/green]")
            return

        org_names = org_names or {}
        for (org_id, team_name), actions in group_actions_by_team(plan.actions).items():
            org_label = sanitize_log_input(org_names.get(org_id, f"org {org_id}"))
            self.console.print(f"[bold cyan]{org_label} / {sanitize_log_input(team_name)}[/bold cyan]")
            for action in actions:
                symbol, style = ACTION_STYLES.get(action.kind, ("?", "white"))
                self.console.print(
                    f"  [{style}]{symbol} #{action.id} {action.kind}[/{style}] {self._describe(action)}"
                )
                if action.note:
                    self.console.print(f"    [dim]{sanitize_log_input(action.note)}[/dim]")
            self.console.print()

        self.format_summary(plan)

    def format_summary(self, plan: Plan) -> None:
        counts = Counter(action.kind for action in plan.actions)
        table = Table(title="Plan Summary")
        table.add_column("Action", style="cyan")
        table.add_column("Count", style="bold")
        for kind in ActionKind:
            if counts.get(kind.value):
                table.add_row(kind.value, str(counts[kind.value]))
        table.add_row("total", str(len(plan.actions)))
        self.console.print(table)

        blocked = counts.get(ActionKind.BLOCKED_CREATE_USER.value, 0)
        if blocked:
            self.console.print(
                f"[yellow]{blocked} user(s) not created because user creation is disabled[/yellow]"
            )

    @staticmethod
    def _describe(action: BaseAction) -> str:
        parts = []
        email = getattr(action, "email", "")
        if email:
            parts.append(sanitize_log_input(email))
        role = getattr(action, "role", "")
        if role:
            parts.append(f"role={role}")
        team_role = getattr(action, "team_role", "")
        if team_role and action.kind != ActionKind.CREATE_TEAM.value:
            parts.append(f"team_role={team_role}")
        return " ".join(parts)


class ExecutionFormatter:
    """Formats execution results for display."""

    def __init__(self, console: Console):
        self.console = console

    def format_result(self, result: ExecutionResult) -> None:
        duration = (
            (result.completed_at - result.started_at).total_seconds() if result.completed_at else 0
        )
        table = Table(title="Execution Result")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Execution", result.execution_id)
        table.add_row("Actions", str(result.total_actions))
        table.add_row("Applied", str(result.applied))
        table.add_row("Skipped", str(result.skipped))
        table.add_row("Failed", str(result.failed))
        table.add_row("Duration", f"{duration:.1f}s")
        self.console.print(table)

        if result.error:
            self.console.print(f"[red]Error: {sanitize_log_input(result.error)}[/red]")


class StatusFormatter:
    """Formats the status report."""

    def __init__(self, console: Console):
        self.console = console

    def format_status(self, status: SyncStatus) -> None:
        overview = Table(title="Sync Status")
        overview.add_column("Setting", style="cyan")
        overview.add_column("Value")
        overview.add_row("Grafana reachable", _yes_no(status.grafana_ok))
        overview.add_row("Grafana last OK", _when(status.grafana_last_ok))
        overview.add_row("Entra reachable", _yes_no(status.entra_ok))
        overview.add_row("Entra last OK", _when(status.entra_last_ok))
        overview.add_row("Auto-sync", "enabled" if status.auto_sync_enabled else "disabled")
        overview.add_row("Last run", _when(status.last_run_at))
        if status.last_run_message:
            overview.add_row("Last run result", sanitize_log_input(status.last_run_message))
        if status.plan_id is not None:
            overview.add_row(
                "Current plan",
                f"#{status.plan_id} {status.plan_status.value} ({status.plan_action_count} actions)",
            )
        else:
            overview.add_row("Current plan", "-")
        self.console.print(overview)

        if not status.orgs:
            self.console.print("[yellow]No organizations registered[/yellow]")
            return

        table = Table(title="Organizations")
        table.add_column("Org", style="cyan")
        table.add_column("Grafana")
        table.add_column("Entra")
        table.add_column("Users", justify="right")
        table.add_column("Last change")
        table.add_column("Users changed (1d/3d/7d)", justify="right")
        table.add_column("Teams changed (1d/3d/7d)", justify="right")
        for org in status.orgs:
            table.add_row(
                f"{sanitize_log_input(org.name)} ({org.grafana_org_id})",
                _yes_no(org.grafana_access_ok),
                _yes_no(org.entra_access_ok),
                str(org.grafana_users_total),
                _when(org.last_grafana_sync),
                f"{org.changes_today.users}/{org.changes_last_3_days.users}/{org.changes_last_7_days.users}",
                f"{org.changes_today.teams}/{org.changes_last_3_days.teams}/{org.changes_last_7_days.teams}",
            )
        self.console.print(table)


class AdminFormatter:
    """Formats orgs, mappings, directory listings and the ledger."""

    def __init__(self, console: Console):
        self.console = console

    def format_orgs(self, orgs: List[Org]) -> None:
        if not orgs:
            self.console.print("[yellow]No organizations registered[/yellow]")
            return
        table = Table(title="Organizations")
        table.add_column("ID", style="magenta", justify="right")
        table.add_column("Grafana Org", justify="right")
        table.add_column("Name", style="cyan")
        table.add_column("Default Role")
        for org in orgs:
            table.add_row(str(org.id), str(org.grafana_org_id), sanitize_log_input(org.name), org.default_role)
        self.console.print(table)

    def format_mappings(self, mappings: List[Mapping], org_names: Dict[int, str]) -> None:
        if not mappings:
            self.console.print("[yellow]No mappings configured[/yellow]")
            return
        table = Table(title="Mappings")
        table.add_column("ID", style="magenta", justify="right")
        table.add_column("Org", style="cyan")
        table.add_column("Team")
        table.add_column("Team ID", justify="right")
        table.add_column("Group")
        table.add_column("Group ID", style="dim")
        table.add_column("Team Role")
        table.add_column("Role Override")
        for mapping in mappings:
            table.add_row(
                str(mapping.id),
                sanitize_log_input(org_names.get(mapping.org_id, str(mapping.org_id))),
                sanitize_log_input(mapping.grafana_team_name),
                str(mapping.grafana_team_id or "-"),
                sanitize_log_input(mapping.external_group_name or "-"),
                mapping.external_group_id,
                mapping.team_role,
                mapping.role_override or "-",
            )
        self.console.print(table)

    def format_groups(self, groups: List[DirectoryGroup], mapped_ids: Optional[set] = None) -> None:
        if not groups:
            self.console.print("[yellow]No groups found[/yellow]")
            return
        mapped_ids = mapped_ids or set()
        table = Table(title=f"Directory Groups ({len(groups)})")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Mail")
        table.add_column("Mapped")
        for group in groups:
            table.add_row(
                group.id,
                sanitize_log_input(group.display_name or ""),
                sanitize_log_input(group.mail or ""),
                _yes_no(group.id in mapped_ids),
            )
        self.console.print(table)

    def format_members(self, group_id: str, members: List[DirectoryMember]) -> None:
        if not members:
            self.console.print(f"[yellow]Group {sanitize_log_input(group_id)} has no members[/yellow]")
            return
        table = Table(title=f"Members of {sanitize_log_input(group_id)} ({len(members)})")
        table.add_column("Name", style="cyan")
        table.add_column("Email")
        table.add_column("UPN", style="dim")
        for member in members:
            table.add_row(
                sanitize_log_input(member.display_name or ""),
                sanitize_log_input(member.email or "[red]no mail, ignored[/red]"),
                sanitize_log_input(member.user_principal_name or ""),
            )
        self.console.print(table)

    def format_ledger(self, entries: List[SyncAction], org_names: Dict[int, str]) -> None:
        if not entries:
            self.console.print("[yellow]No sync actions recorded[/yellow]")
            return
        table = Table(title="Recent Sync Actions")
        table.add_column("When")
        table.add_column("Org", style="cyan")
        table.add_column("Action")
        table.add_column("Team")
        table.add_column("Email")
        for entry in entries:
            table.add_row(
                _when(entry.created_at),
                sanitize_log_input(org_names.get(entry.org_id, str(entry.org_id))),
                entry.action_type,
                sanitize_log_input(entry.team_name or "-"),
                sanitize_log_input(entry.email or "-"),
            )
        self.console.print(table)

    def format_snapshot(self, snapshot: ExternalSnapshot) -> None:
        """Display the cached external state with per-source errors."""
        age = snapshot.age_seconds()
        self.console.print(
            f"[dim]Refreshed {_when(snapshot.refreshed_at)}"
            + (f" ({age:.0f}s ago)" if age is not None else "")
            + "[/dim]"
        )

        teams = Table(title="Grafana Teams")
        teams.add_column("Org", style="cyan")
        teams.add_column("Team")
        teams.add_column("Members", justify="right")
        teams.add_column("Mapped Groups", style="dim")
        for team in snapshot.grafana_teams:
            teams.add_row(
                sanitize_log_input(team.org_name),
                sanitize_log_input(team.team_name),
                str(team.member_count) if team.member_count is not None else "-",
                ", ".join(team.mapped_group_ids) or "[yellow]unmapped[/yellow]",
            )
        self.console.print(teams)

        summary = Table(title="External State")
        summary.add_column("Source", style="cyan")
        summary.add_column("Items", justify="right")
        summary.add_column("Error", style="red")
        for label, count, error in (
            ("Grafana teams", len(snapshot.grafana_teams), snapshot.grafana_teams_error),
            ("Grafana users", len(snapshot.grafana_users), snapshot.grafana_users_error),
            ("Entra groups", len(snapshot.entra_groups), snapshot.entra_groups_error),
            ("Entra users", len(snapshot.entra_users), snapshot.entra_users_error),
        ):
            summary.add_row(label, str(count), sanitize_log_input(error) if error else "")
        self.console.print(summary)


class ConfigFormatter:
    """Formats configuration information for display."""

    def __init__(self, console: Console):
        self.console = console

    def format_config_summary(self, config: SyncConfig) -> None:
        table = Table(title="Configuration Summary")
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Grafana URL", sanitize_log_input(config.grafana.url))
        token = config.grafana.admin_token.get_secret_value() if config.grafana.admin_token else ""
        table.add_row("Grafana Auth", "token" if token else f"basic ({config.grafana.admin_user})")
        table.add_row("Entra Tenant", sanitize_log_input(config.entra.tenant_id))
        table.add_row("Managed Groups", sanitize_log_input(config.entra.managed_group_pattern))
        table.add_row("Default Role", config.sync.default_user_role.value)
        table.add_row("Create Users", _yes_no(config.sync.allow_create_users))
        table.add_row("Remove Team Members", _yes_no(config.sync.allow_remove_team_members))
        interval = config.schedule.interval_seconds
        table.add_row("Sync Interval", f"{interval}s" if interval else "disabled")
        table.add_row("Database", str(config.store.database_path))

        self.console.print(table)

    def format_validation_errors(self, errors: List[str]) -> None:
        if not errors:
            self.console.print("[green]Configuration is valid[/green]")
            return
        self.console.print(
            Panel(
                "\n".join(f"{i}. {sanitize_log_input(error)}" for i, error in enumerate(errors, 1)),
                title="Configuration Validation Errors",
                border_style="red",
            )
        )
