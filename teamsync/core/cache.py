"""Advisory read cache of Grafana and Entra state for operator views.

Nothing in the plan builder reads from here; it always fetches live state.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from teamsync.clients.entra import DirectoryGroup, DirectoryUser, EntraClient
from teamsync.clients.exceptions import APIError
from teamsync.clients.grafana import GrafanaClient, GrafanaUser
from teamsync.store.sqlite import MappingStore

logger = structlog.get_logger(__name__)


class TeamView(BaseModel):
    """A Grafana team annotated with the mappings that target it."""

    org_id: int
    org_name: str
    team_id: int
    team_name: str
    member_count: Optional[int] = None
    mapped_group_ids: List[str] = Field(default_factory=list)

    @property
    def mapped(self) -> bool:
        return bool(self.mapped_group_ids)


class GroupView(BaseModel):
    """A directory group annotated with whether any mapping uses it."""

    group: DirectoryGroup
    mapped: bool = False


class ExternalSnapshot(BaseModel):
    """One refresh worth of external state. Errors are kept per source."""

    refreshed_at: Optional[datetime] = None

    grafana_teams: List[TeamView] = Field(default_factory=list)
    grafana_teams_error: Optional[str] = None
    grafana_users: List[GrafanaUser] = Field(default_factory=list)
    grafana_users_error: Optional[str] = None
    entra_groups: List[GroupView] = Field(default_factory=list)
    entra_groups_error: Optional[str] = None
    entra_users: List[DirectoryUser] = Field(default_factory=list)
    entra_users_error: Optional[str] = None

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.refreshed_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (now - self.refreshed_at).total_seconds()


class ExternalStateCache:
    """Single-flight, time-bounded cache.

    Overlapping refreshes collapse into one in-flight fetch. A first read
    waits for data; later reads of stale data return immediately and start a
    background refresh.
    """

    def __init__(
        self,
        store: MappingStore,
        grafana_client: GrafanaClient,
        entra_client: EntraClient,
        ttl_seconds: float = 30,
    ) -> None:
        self.store = store
        self.grafana_client = grafana_client
        self.entra_client = entra_client
        self.ttl_seconds = ttl_seconds

        self._snapshot = ExternalSnapshot()
        self._inflight: Optional[asyncio.Task] = None
        self._logger = logger.bind(component="ExternalStateCache")

    @property
    def snapshot(self) -> ExternalSnapshot:
        return self._snapshot

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def get(self, force: bool = False) -> ExternalSnapshot:
        """Return cached state, refreshing it as needed."""
        if force or self._snapshot.refreshed_at is None:
            return await self.refresh()
        age = self._snapshot.age_seconds()
        if age is not None and age > self.ttl_seconds:
            self._start_refresh()
        return self._snapshot

    async def refresh(self) -> ExternalSnapshot:
        """Refresh now, joining an in-flight refresh if one is running."""
        task = self._start_refresh()
        return await asyncio.shield(task)

    async def run_periodically(self, stop_event: asyncio.Event) -> None:
        """Refresh every ``ttl_seconds`` until ``stop_event`` is set."""
        interval = max(self.ttl_seconds, 1)
        while not stop_event.is_set():
            try:
                await self.refresh()
            except Exception as e:
                self._logger.error("Cache refresh failed", error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def _start_refresh(self) -> asyncio.Task:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._load())
        return self._inflight

    async def _load(self) -> ExternalSnapshot:
        orgs = self.store.list_orgs()
        mappings = self.store.list_mappings()

        groups_by_team: Dict[tuple, List[str]] = {}
        mapped_group_ids = set()
        for mapping in mappings:
            groups_by_team.setdefault((mapping.org_id, mapping.grafana_team_name.lower()), []).append(
                mapping.external_group_id
            )
            mapped_group_ids.add(mapping.external_group_id)

        snapshot = ExternalSnapshot(refreshed_at=datetime.now(timezone.utc))

        try:
            for org in orgs:
                for team in await self.grafana_client.list_teams(org.grafana_org_id):
                    snapshot.grafana_teams.append(
                        TeamView(
                            org_id=org.id,
                            org_name=org.name,
                            team_id=team.id,
                            team_name=team.name,
                            member_count=team.member_count,
                            mapped_group_ids=groups_by_team.get((org.id, team.name.lower()), []),
                        )
                    )
        except APIError as e:
            snapshot.grafana_teams_error = str(e)

        try:
            snapshot.grafana_users = await self.grafana_client.list_users()
        except APIError as e:
            snapshot.grafana_users_error = str(e)

        try:
            snapshot.entra_groups = [
                GroupView(group=group, mapped=group.id in mapped_group_ids)
                for group in await self.entra_client.list_groups()
            ]
        except APIError as e:
            snapshot.entra_groups_error = str(e)

        try:
            snapshot.entra_users = await self.entra_client.list_users()
        except APIError as e:
            snapshot.entra_users_error = str(e)

        self._snapshot = snapshot
        self._logger.debug(
            "Refreshed external state",
            teams=len(snapshot.grafana_teams),
            groups=len(snapshot.entra_groups),
        )
        return snapshot
