"""Plan builder: diffs directory membership against Grafana state.

Mappings are processed in store order. For each one the builder works out
whether the target team exists, which directory members need accounts, team
membership or a stronger team role, and which org role each member should
hold. Org roles are reconciled in a second pass once every mapping has
contributed, so the strongest role reachable through any mapping wins.
Team removals are likewise deferred until every mapping into a team has been
seen, and are suppressed for a team when any mapping into it could not be
collected.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Set, Tuple

import structlog

from teamsync.clients.entra import EntraClient
from teamsync.clients.grafana import GrafanaClient, TeamMember
from teamsync.core.actions import (
    AddUserToOrg,
    AddUserToTeam,
    BaseAction,
    BlockedCreateUser,
    CreateTeam,
    CreateUser,
    Plan,
    RemoveUserFromTeam,
    TEAM_ROLE_ADMIN,
    UpdateTeamRole,
    UpdateUserRole,
    append_note,
    mapping_note,
    max_role,
    max_team_role,
    normalize_org_role,
    normalize_team_role,
    sort_actions,
    team_key,
)
from teamsync.core.collector import StateCollector
from teamsync.store.models import Mapping, Org
from teamsync.store.sqlite import MappingStore

logger = structlog.get_logger(__name__)

TeamKey = Tuple[int, str]


@dataclass
class _TeamState:
    """Everything known about one target team across all its mappings."""

    org: Org
    team_name: str
    team_id: int
    note: str
    external_group_id: str
    have: Dict[str, TeamMember] = field(default_factory=dict)
    wanted: Set[str] = field(default_factory=set)
    roles: Dict[str, str] = field(default_factory=dict)
    complete: bool = True


@dataclass
class _BuildState:
    actions: List[BaseAction] = field(default_factory=list)
    teams: Dict[TeamKey, _TeamState] = field(default_factory=dict)
    created_teams: Set[TeamKey] = field(default_factory=set)
    created_users: Set[str] = field(default_factory=set)
    team_adds: Dict[Tuple[TeamKey, str], AddUserToTeam] = field(default_factory=dict)
    team_role_updates: Set[Tuple[TeamKey, str]] = field(default_factory=set)
    org_roles: Dict[int, Dict[str, str]] = field(default_factory=lambda: defaultdict(dict))
    role_sources: Dict[int, Dict[str, str]] = field(default_factory=lambda: defaultdict(dict))


class PlanBuilder:
    """Builds an ordered reconciliation plan from live state."""

    def __init__(
        self,
        store: MappingStore,
        grafana_client: GrafanaClient,
        entra_client: EntraClient,
        default_user_role: str = "Viewer",
        allow_create_users: bool = True,
        allow_remove_team_members: bool = True,
    ) -> None:
        """Initialize plan builder.

        Args:
            store: Mapping store (orgs, mappings)
            grafana_client: Grafana API client
            entra_client: Entra API client
            default_user_role: Org role used when neither mapping nor org sets one
            allow_create_users: Plan account creation for unknown directory members
            allow_remove_team_members: Plan removal of members no longer in any mapped group
        """
        self.store = store
        self.grafana_client = grafana_client
        self.entra_client = entra_client
        self.default_user_role = normalize_org_role(default_user_role) or "Viewer"
        self.allow_create_users = allow_create_users
        self.allow_remove_team_members = allow_remove_team_members

        self._logger = logger.bind(component="PlanBuilder")

    async def build_plan(self) -> Plan:
        """Collect live state and return a new, unsaved plan.

        Raises:
            StoreError: If orgs or mappings cannot be read, or a resolved
                team id cannot be cached
        """
        orgs = self.store.list_orgs()
        org_by_id = {org.id: org for org in orgs}
        mappings = self.store.list_mappings()

        collector = StateCollector(self.store, self.grafana_client, self.entra_client)
        state = _BuildState()

        for mapping in mappings:
            org = org_by_id.get(mapping.org_id)
            if org is None:
                self._logger.warning(
                    "Mapping references missing org",
                    mapping_id=mapping.id,
                    org_id=mapping.org_id,
                )
                continue
            await self._plan_mapping(collector, state, org, mapping)

        if self.allow_remove_team_members:
            self._plan_removals(state)

        for org in orgs:
            if state.org_roles.get(org.id):
                await self._plan_org_roles(collector, state, org)

        plan = Plan(actions=sort_actions(state.actions))
        self._logger.info(
            "Built plan",
            mapping_count=len(mappings),
            action_count=len(plan.actions),
        )
        return plan

    def _resolve_org_role(self, org: Org, mapping: Mapping) -> Tuple[str, str]:
        """Return ``(role, source)`` for a mapping: override, then org default, then service default."""
        override = normalize_org_role(mapping.role_override)
        if override:
            return override, f"mapping role override: {override}"
        if mapping.role_override:
            self._logger.warning(
                "Ignoring unknown role override",
                mapping_id=mapping.id,
                role_override=mapping.role_override,
            )
        org_default = normalize_org_role(org.default_role)
        if org_default:
            return org_default, f"org default role: {org_default}"
        return self.default_user_role, f"service default role: {self.default_user_role}"

    async def _plan_mapping(
        self,
        collector: StateCollector,
        state: _BuildState,
        org: Org,
        mapping: Mapping,
    ) -> None:
        note = mapping_note(
            org.name,
            org.id,
            mapping.grafana_team_name,
            mapping.grafana_team_id,
            mapping.external_group_name,
            mapping.external_group_id,
        )
        key = team_key(org.id, mapping.grafana_team_name)

        team_id = await collector.resolve_team(org, mapping)
        if not team_id and key not in state.created_teams:
            state.actions.append(
                CreateTeam(
                    org_id=org.id,
                    grafana_org_id=org.grafana_org_id,
                    team_name=mapping.grafana_team_name,
                    team_role=normalize_team_role(mapping.team_role),
                    external_group_id=mapping.external_group_id,
                    note=note,
                )
            )
            state.created_teams.add(key)

        snapshot = await collector.collect_mapping(org, mapping, team_id)

        team = state.teams.get(key)
        if team is None:
            team = _TeamState(
                org=org,
                team_name=mapping.grafana_team_name,
                team_id=team_id,
                note=note,
                external_group_id=mapping.external_group_id,
                have=dict(snapshot.have),
            )
            state.teams[key] = team
        if not snapshot.complete:
            team.complete = False
            return

        mapping_team_role = normalize_team_role(mapping.team_role)
        for email in snapshot.want:
            team.roles[email] = max_team_role(team.roles.get(email, ""), mapping_team_role)
        team.wanted.update(snapshot.want)

        role, role_source = self._resolve_org_role(org, mapping)

        for email, member in snapshot.want.items():
            user, ok = await collector.lookup_user(email)
            if not ok:
                continue

            if user is None:
                if not self.allow_create_users:
                    state.actions.append(
                        BlockedCreateUser(
                            org_id=org.id,
                            grafana_org_id=org.grafana_org_id,
                            team_id=team_id,
                            team_name=mapping.grafana_team_name,
                            email=email,
                            display_name=member.display_name or "",
                            role=role,
                            external_group_id=mapping.external_group_id,
                            note=append_note("user not found and creation disabled", note),
                        )
                    )
                    continue
                if email not in state.created_users:
                    state.actions.append(
                        CreateUser(
                            org_id=org.id,
                            grafana_org_id=org.grafana_org_id,
                            team_id=team_id,
                            team_name=mapping.grafana_team_name,
                            email=email,
                            display_name=member.display_name or email,
                            role=role,
                            external_group_id=mapping.external_group_id,
                            note=note,
                        )
                    )
                    state.created_users.add(email)

            current = state.org_roles[org.id].get(email, "")
            strongest = max_role(current, role)
            state.org_roles[org.id][email] = strongest
            if strongest != current:
                state.role_sources[org.id][email] = f"{role_source}; {note}"

            user_id = user.id if user else 0
            aggregated = team.roles[email]
            existing = snapshot.have.get(email)
            if existing is None:
                pending = state.team_adds.get((key, email))
                if pending is not None:
                    pending.team_role = max_team_role(pending.team_role, aggregated)
                else:
                    action = AddUserToTeam(
                        org_id=org.id,
                        grafana_org_id=org.grafana_org_id,
                        team_id=team_id,
                        team_name=mapping.grafana_team_name,
                        team_role=aggregated,
                        user_id=user_id,
                        email=email,
                        role=role,
                        external_group_id=mapping.external_group_id,
                        note=note,
                    )
                    state.actions.append(action)
                    state.team_adds[(key, email)] = action
            elif (
                aggregated == TEAM_ROLE_ADMIN
                and not existing.is_admin
                and (key, email) not in state.team_role_updates
            ):
                state.actions.append(
                    UpdateTeamRole(
                        org_id=org.id,
                        grafana_org_id=org.grafana_org_id,
                        team_id=team_id,
                        team_name=mapping.grafana_team_name,
                        team_role=aggregated,
                        user_id=user_id or existing.user_id,
                        email=email,
                        external_group_id=mapping.external_group_id,
                        note=note,
                    )
                )
                state.team_role_updates.add((key, email))

    def _plan_removals(self, state: _BuildState) -> None:
        for key, team in state.teams.items():
            if not team.complete:
                if team.have:
                    self._logger.warning(
                        "Skipping member removal for partially collected team",
                        org_id=team.org.id,
                        team=team.team_name,
                    )
                continue
            for email, member in team.have.items():
                if email in team.wanted:
                    continue
                state.actions.append(
                    RemoveUserFromTeam(
                        org_id=team.org.id,
                        grafana_org_id=team.org.grafana_org_id,
                        team_id=team.team_id,
                        team_name=team.team_name,
                        user_id=member.user_id,
                        email=email,
                        external_group_id=team.external_group_id,
                        note=team.note,
                    )
                )

    async def _plan_org_roles(self, collector: StateCollector, state: _BuildState, org: Org) -> None:
        org_users = await collector.list_org_members(org)
        sources = state.role_sources[org.id]

        for email, role in state.org_roles[org.id].items():
            user = collector.cached_user(email)
            existing = org_users.get(email) if org_users is not None else None

            if existing is None:
                note = sources.get(email, "")
                if org_users is None:
                    note = append_note(note, "org user lookup failed")
                state.actions.append(
                    AddUserToOrg(
                        org_id=org.id,
                        grafana_org_id=org.grafana_org_id,
                        user_id=user.id if user else 0,
                        email=email,
                        role=role,
                        note=note,
                    )
                )
                continue

            if existing.role.lower() != role.lower():
                state.actions.append(
                    UpdateUserRole(
                        org_id=org.id,
                        grafana_org_id=org.grafana_org_id,
                        user_id=(user.id if user else 0) or existing.user_id,
                        email=email,
                        role=role,
                        note=append_note(sources.get(email, ""), f"current role: {existing.role}"),
                    )
                )
