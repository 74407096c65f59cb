"""Shared pytest fixtures for the sync service tests."""

import asyncio
from typing import Dict, List, Optional, Tuple

import pytest

from teamsync.clients.entra import DirectoryGroup, DirectoryMember, DirectoryUser
from teamsync.clients.exceptions import (
    ConflictError,
    EntraError,
    PolicyRestrictedError,
    ResourceNotFoundError,
)
from teamsync.clients.grafana import GrafanaTeam, GrafanaUser, OrgUser, TeamMember
from teamsync.store.sqlite import MappingStore


class FakeGrafana:
    """In-memory Grafana exposing the client methods the engine uses."""

    def __init__(self) -> None:
        self.users: Dict[int, GrafanaUser] = {}
        self.teams: Dict[int, Tuple[int, str]] = {}
        self.team_members: Dict[int, Dict[int, str]] = {}
        self.org_users: Dict[int, Dict[int, str]] = {}
        self.externally_synced: set = set()
        self.failures: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}
        self.calls: List[tuple] = []
        self.last_ok = None
        self._next_user_id = 100
        self._next_team_id = 10

    # Seeding helpers

    def add_user(self, email: str, login: Optional[str] = None, name: str = "") -> GrafanaUser:
        user = GrafanaUser(id=self._next_user_id, email=email, login=login or email, name=name)
        self.users[user.id] = user
        self._next_user_id += 1
        return user

    def add_team(self, org_id: int, name: str) -> int:
        team_id = self._next_team_id
        self._next_team_id += 1
        self.teams[team_id] = (org_id, name)
        self.team_members[team_id] = {}
        return team_id

    def add_org_user(self, org_id: int, user: GrafanaUser, role: str) -> None:
        self.org_users.setdefault(org_id, {})[user.id] = role

    def add_team_member(self, team_id: int, user: GrafanaUser, role: str = "member") -> None:
        self.team_members[team_id][user.id] = role

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    async def _enter(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if method in self.delays:
            await asyncio.sleep(self.delays[method])
        if method in self.failures:
            raise self.failures[method]

    def _find_user(self, login_or_email: str) -> Optional[GrafanaUser]:
        wanted = login_or_email.strip().lower()
        for user in self.users.values():
            if user.email.lower() == wanted or user.login.lower() == wanted:
                return user
        return None

    # Client surface

    async def health_check(self) -> bool:
        return "health_check" not in self.failures

    async def lookup_user(self, login_or_email: str) -> Optional[GrafanaUser]:
        await self._enter("lookup_user", login_or_email)
        return self._find_user(login_or_email)

    async def create_user(self, email: str, login: str, name: str, password: str) -> GrafanaUser:
        await self._enter("create_user", email, login, name)
        return self.add_user(email, login=login, name=name)

    async def list_users(self) -> List[GrafanaUser]:
        await self._enter("list_users")
        return list(self.users.values())

    async def add_user_to_org(self, org_id: int, login_or_email: str, role: str) -> None:
        await self._enter("add_user_to_org", org_id, login_or_email, role)
        user = self._find_user(login_or_email)
        if user is None:
            raise ResourceNotFoundError("User not found", status_code=404)
        members = self.org_users.setdefault(org_id, {})
        if user.id in members:
            raise ConflictError("User is already member of this organization", status_code=409)
        members[user.id] = role

    async def update_user_role(self, org_id: int, user_id: int, role: str) -> None:
        await self._enter("update_user_role", org_id, user_id, role)
        if (org_id, user_id) in self.externally_synced:
            raise PolicyRestrictedError(
                "Membership is managed by an external auth provider",
                status_code=400,
                message_id="org.externallySynced",
            )
        self.org_users.setdefault(org_id, {})[user_id] = role

    async def list_org_users(self, org_id: int) -> List[OrgUser]:
        await self._enter("list_org_users", org_id)
        return [
            OrgUser(user_id=user_id, email=self.users[user_id].email, login=self.users[user_id].login, role=role)
            for user_id, role in self.org_users.get(org_id, {}).items()
        ]

    async def search_team(self, org_id: int, name: str) -> Optional[int]:
        await self._enter("search_team", org_id, name)
        for team_id, (team_org, team_name) in self.teams.items():
            if team_org == org_id and team_name.lower() == name.lower():
                return team_id
        return None

    async def ensure_team(self, org_id: int, name: str) -> int:
        await self._enter("ensure_team", org_id, name)
        for team_id, (team_org, team_name) in self.teams.items():
            if team_org == org_id and team_name.lower() == name.lower():
                return team_id
        return self.add_team(org_id, name)

    async def list_teams(self, org_id: int) -> List[GrafanaTeam]:
        await self._enter("list_teams", org_id)
        return [
            GrafanaTeam(id=team_id, name=name, org_id=team_org, member_count=len(self.team_members[team_id]))
            for team_id, (team_org, name) in self.teams.items()
            if team_org == org_id
        ]

    async def list_team_members(self, team_id: int, org_id: Optional[int] = None) -> List[TeamMember]:
        await self._enter("list_team_members", team_id)
        return [
            TeamMember(
                user_id=user_id,
                email=self.users[user_id].email,
                login=self.users[user_id].login,
                permission=4 if role == "admin" else 0,
            )
            for user_id, role in self.team_members.get(team_id, {}).items()
        ]

    async def add_user_to_team(
        self, team_id: int, user_id: int, role: str = "member", org_id: Optional[int] = None
    ) -> None:
        await self._enter("add_user_to_team", team_id, user_id, role)
        members = self.team_members.setdefault(team_id, {})
        if user_id in members:
            raise ConflictError("User is already added to this team", status_code=409)
        members[user_id] = role

    async def update_team_member_role(
        self, team_id: int, user_id: int, role: str, org_id: Optional[int] = None
    ) -> None:
        await self._enter("update_team_member_role", team_id, user_id, role)
        self.team_members[team_id][user_id] = role

    async def remove_user_from_team(self, team_id: int, user_id: int, org_id: Optional[int] = None) -> None:
        await self._enter("remove_user_from_team", team_id, user_id)
        members = self.team_members.get(team_id, {})
        if user_id not in members:
            raise ResourceNotFoundError("Team member not found", status_code=404)
        del members[user_id]


class FakeEntra:
    """In-memory directory exposing the client methods the engine uses."""

    def __init__(self) -> None:
        self.groups: Dict[str, Tuple[str, List[DirectoryMember]]] = {}
        self.failing_groups: set = set()
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.last_ok = None

    def add_group(self, group_id: str, name: str, *emails: str) -> None:
        members = [
            DirectoryMember(id=f"{group_id}-{i}", display_name=email.split("@")[0].strip().title(), mail=email)
            for i, email in enumerate(emails)
        ]
        self.groups[group_id] = (name, members)

    def add_member(self, group_id: str, email: Optional[str], display_name: str = "") -> None:
        _, members = self.groups[group_id]
        members.append(DirectoryMember(id=f"{group_id}-{len(members)}", display_name=display_name, mail=email))

    async def health_check(self) -> bool:
        return "health_check" not in self.failures

    async def list_group_members(self, group_id: str) -> List[DirectoryMember]:
        self.calls.append(("list_group_members", group_id))
        if group_id in self.failing_groups:
            raise EntraError("Entra API error: Server error: 503", status_code=503)
        if group_id not in self.groups:
            raise ResourceNotFoundError("Resource not found", status_code=404)
        return list(self.groups[group_id][1])

    async def list_groups(self) -> List[DirectoryGroup]:
        self.calls.append(("list_groups",))
        if "list_groups" in self.failures:
            raise self.failures["list_groups"]
        return [DirectoryGroup(id=group_id, display_name=name) for group_id, (name, _) in self.groups.items()]

    async def list_users(self) -> List[DirectoryUser]:
        self.calls.append(("list_users",))
        if "list_users" in self.failures:
            raise self.failures["list_users"]
        seen = {}
        for _, members in self.groups.values():
            for member in members:
                seen[member.id] = DirectoryUser(id=member.id, display_name=member.display_name, mail=member.mail)
        return list(seen.values())

    async def find_group_by_name(self, display_name: str) -> Optional[DirectoryGroup]:
        for group in await self.list_groups():
            if (group.display_name or "").lower() == display_name.strip().lower():
                return group
        return None


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite mapping store."""
    mapping_store = MappingStore(tmp_path / "data" / "sync.db")
    yield mapping_store
    mapping_store.close()


@pytest.fixture
def grafana():
    return FakeGrafana()


@pytest.fixture
def entra():
    return FakeEntra()


@pytest.fixture
def config_data(tmp_path):
    """Minimal valid configuration mapping."""
    return {
        "grafana": {
            "url": "http://grafana.test:3000",
            "admin_token": "glsa_test_token",
        },
        "entra": {
            "tenant_id": "tenant-1",
            "client_id": "client-1",
            "client_secret": "secret-1",
        },
        "store": {"data_dir": str(tmp_path / "data")},
    }
