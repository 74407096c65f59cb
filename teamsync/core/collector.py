"""Collects desired (directory) and actual (Grafana) membership state per mapping."""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import structlog

from teamsync.clients.entra import DirectoryMember, EntraClient
from teamsync.clients.exceptions import APIError
from teamsync.clients.grafana import GrafanaClient, GrafanaUser, OrgUser, TeamMember
from teamsync.security.validation import normalize_email
from teamsync.store.models import Mapping, Org
from teamsync.store.sqlite import MappingStore

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class MappingSnapshot:
    """Desired and actual team membership for one mapping."""

    mapping: Mapping
    org: Org
    team_id: int
    want: Dict[str, DirectoryMember] = field(default_factory=dict)
    have: Dict[str, TeamMember] = field(default_factory=dict)
    complete: bool = True
    error: Optional[str] = None


class StateCollector:
    """Reads live state from Entra and Grafana for the plan builder.

    Collection errors are logged and reduce scope; they never abort the
    build. Store writes (caching a resolved team id) do propagate.
    """

    def __init__(
        self,
        store: MappingStore,
        grafana_client: GrafanaClient,
        entra_client: EntraClient,
    ) -> None:
        self.store = store
        self.grafana_client = grafana_client
        self.entra_client = entra_client

        self._user_cache: Dict[str, Optional[GrafanaUser]] = {}
        self._logger = logger.bind(component="StateCollector")

    async def resolve_team(self, org: Org, mapping: Mapping) -> int:
        """Return the mapping's Grafana team id, or 0 if the team does not exist yet."""
        team_id = mapping.grafana_team_id or 0
        if team_id:
            return team_id

        try:
            found = await self.grafana_client.search_team(org.grafana_org_id, mapping.grafana_team_name)
        except APIError as e:
            self._logger.warning(
                "Team search failed",
                org_id=org.id,
                team=mapping.grafana_team_name,
                error=str(e),
            )
            return 0

        if not found:
            return 0

        self.store.update_mapping_team_id_for_name(org.id, mapping.grafana_team_name, found)
        mapping.grafana_team_id = found
        return found

    async def collect_mapping(self, org: Org, mapping: Mapping, team_id: int) -> MappingSnapshot:
        """Gather ``want`` (directory) and ``have`` (team) keyed by normalized email."""
        snapshot = MappingSnapshot(mapping=mapping, org=org, team_id=team_id)

        try:
            members = await self.entra_client.list_group_members(mapping.external_group_id)
        except APIError as e:
            self._logger.warning(
                "Listing group members failed, skipping mapping",
                mapping_id=mapping.id,
                group_id=mapping.external_group_id,
                error=str(e),
            )
            snapshot.complete = False
            snapshot.error = str(e)
            return snapshot

        for member in members:
            email = normalize_email(member.email)
            if not email:
                continue
            snapshot.want[email] = member

        if team_id:
            try:
                team_members = await self.grafana_client.list_team_members(team_id, org.grafana_org_id)
            except APIError as e:
                self._logger.warning(
                    "Listing team members failed, skipping mapping",
                    mapping_id=mapping.id,
                    team_id=team_id,
                    error=str(e),
                )
                snapshot.complete = False
                snapshot.error = str(e)
                snapshot.want = {}
                return snapshot

            for team_member in team_members:
                email = normalize_email(team_member.email)
                if email:
                    snapshot.have[email] = team_member

        self._logger.debug(
            "Collected mapping state",
            mapping_id=mapping.id,
            want=len(snapshot.want),
            have=len(snapshot.have),
        )
        return snapshot

    async def lookup_user(self, email: str) -> Tuple[Optional[GrafanaUser], bool]:
        """Look up a Grafana user once per build.

        Returns:
            ``(user, ok)``; ``user`` is None when the account does not exist,
            ``ok`` is False when the lookup itself failed.
        """
        if email in self._user_cache:
            return self._user_cache[email], True
        try:
            user = await self.grafana_client.lookup_user(email)
        except APIError as e:
            self._logger.warning("User lookup failed", email=email, error=str(e))
            return None, False
        self._user_cache[email] = user
        return user, True

    def cached_user(self, email: str) -> Optional[GrafanaUser]:
        return self._user_cache.get(email)

    async def list_org_members(self, org: Org) -> Optional[Dict[str, OrgUser]]:
        """Return org members keyed by normalized email, or None if listing failed."""
        try:
            users = await self.grafana_client.list_org_users(org.grafana_org_id)
        except APIError as e:
            self._logger.warning(
                "Listing org users failed",
                org_id=org.id,
                grafana_org_id=org.grafana_org_id,
                error=str(e),
            )
            return None
        members: Dict[str, OrgUser] = {}
        for user in users:
            email = normalize_email(user.email)
            if email:
                members[email] = user
        return members
