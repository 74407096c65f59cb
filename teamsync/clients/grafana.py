"""Grafana HTTP API client for org, team and user management."""

import base64
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from teamsync.clients.base import BaseAPIClient
from teamsync.clients.exceptions import (
    APIError,
    GrafanaError,
    PolicyRestrictedError,
    ResourceNotFoundError,
)

logger = structlog.get_logger(__name__)

EXTERNALLY_SYNCED_MESSAGE_ID = "org.externallySynced"

# Grafana team permission value for team admins
TEAM_ADMIN_PERMISSION = 4

ORG_HEADER = "X-Grafana-Org-Id"


def _org_headers(org_id: Optional[int]) -> Optional[Dict[str, str]]:
    return {ORG_HEADER: str(org_id)} if org_id else None


class GrafanaUser(BaseModel):
    """A Grafana user account."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    name: str = ""
    login: str = ""
    email: str = ""


class GrafanaTeam(BaseModel):
    """A Grafana team."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    name: str = ""
    org_id: Optional[int] = Field(None, alias="orgId")
    member_count: Optional[int] = Field(None, alias="memberCount")


class TeamMember(BaseModel):
    """A member of a Grafana team."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: int = Field(alias="userId")
    name: str = ""
    login: str = ""
    email: str = ""
    role: str = ""
    permission: int = 0

    @property
    def is_admin(self) -> bool:
        """Whether the member holds the team admin role."""
        return self.permission == TEAM_ADMIN_PERMISSION or self.role.lower() == "admin"


class OrgUser(BaseModel):
    """A user's membership in a Grafana organization."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: int = Field(alias="userId")
    login: str = ""
    email: str = ""
    name: str = ""
    role: str = ""


class GrafanaClient(BaseAPIClient):
    """Grafana admin API client.

    Authenticates with a service account token when one is configured,
    otherwise with the admin user's basic credentials.
    """

    def __init__(
        self,
        url: str,
        admin_user: str = "admin",
        admin_password: Optional[SecretStr] = None,
        admin_token: Optional[SecretStr] = None,
        insecure_tls: bool = False,
        timeout_seconds: float = 30,
        rate_limit_per_minute: int = 1200,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize Grafana client.

        Args:
            url: Grafana base URL
            admin_user: Admin login used for basic auth
            admin_password: Admin password used for basic auth
            admin_token: Service account token (preferred over basic auth)
            insecure_tls: Skip TLS certificate verification
            timeout_seconds: Request timeout in seconds
            rate_limit_per_minute: Maximum requests per minute
            max_retries: Maximum retry attempts for idempotent requests
            retry_delay_seconds: Initial retry delay
            transport: Optional httpx transport (used by tests)
        """
        self.admin_user = admin_user
        self._admin_password = admin_password
        self._admin_token = admin_token

        super().__init__(
            base_url=url,
            timeout_seconds=timeout_seconds,
            rate_limit_per_minute=rate_limit_per_minute,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
            verify_tls=not insecure_tls,
            transport=transport,
        )

    async def _get_auth_headers(self) -> Dict[str, str]:
        token = self._admin_token.get_secret_value() if self._admin_token else ""
        if token:
            return {"Authorization": f"Bearer {token}"}
        password = self._admin_password.get_secret_value() if self._admin_password else ""
        if self.admin_user or password:
            raw = f"{self.admin_user}:{password}".encode("utf-8")
            return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}
        return {}

    def _classify_error(self, response: httpx.Response) -> APIError:
        """Recognise Grafana's structured ``messageId`` before generic mapping."""
        message_id = None
        try:
            body = response.json()
            if isinstance(body, dict):
                message_id = body.get("messageId")
        except ValueError:
            message_id = None

        if message_id == EXTERNALLY_SYNCED_MESSAGE_ID:
            return PolicyRestrictedError(
                "Membership is managed by an external auth provider",
                status_code=response.status_code,
                response_text=response.text,
                message_id=message_id,
            )
        return super()._classify_error(response)

    async def health_check(self) -> bool:
        """Check if Grafana is reachable with the configured credentials.

        Returns:
            True if API is healthy, False otherwise
        """
        try:
            await self.get_json("/api/org")
            return True
        except Exception as e:
            self._logger.error("Grafana health check failed", error=str(e))
            return False

    # User Management Methods

    async def lookup_user(self, login_or_email: str) -> Optional[GrafanaUser]:
        """Look up a user by login or email.

        Args:
            login_or_email: Login name or email address

        Returns:
            The user, or None if no such user exists

        Raises:
            APIError: If the lookup fails for any reason other than not found
        """
        try:
            data = await self.get_json(
                "/api/users/lookup", params={"loginOrEmail": login_or_email}
            )
        except ResourceNotFoundError:
            return None
        return GrafanaUser.model_validate(data)

    async def create_user(
        self,
        email: str,
        login: str,
        name: str,
        password: str,
    ) -> GrafanaUser:
        """Create a new user with the given credentials.

        Args:
            email: Email address
            login: Login name
            name: Display name
            password: Initial password

        Returns:
            The created user
        """
        payload = {"name": name, "email": email, "login": login, "password": password}
        data = await self.send_json("POST", "/api/admin/users", json_data=payload)
        user_id = (data or {}).get("id")
        if not user_id:
            raise GrafanaError("User creation returned an empty id")
        self._logger.info("Created Grafana user", user_id=user_id, login=login)
        return GrafanaUser(id=user_id, name=name, login=login, email=email)

    async def list_users(self, per_page: int = 1000) -> List[GrafanaUser]:
        """List every user on the server (admin discovery only)."""
        users: List[GrafanaUser] = []
        page = 1
        while True:
            data = await self.get_json(
                "/api/admin/users", params={"page": page, "perpage": per_page}
            )
            if not data:
                break
            users.extend(GrafanaUser.model_validate(item) for item in data)
            if len(data) < per_page:
                break
            page += 1
        return users

    # Org Membership Methods

    async def add_user_to_org(self, org_id: int, login_or_email: str, role: str) -> None:
        """Add a user to an organization with the given role.

        Raises:
            ConflictError: If the user is already a member
        """
        await self.send_json(
            "POST",
            f"/api/orgs/{org_id}/users",
            json_data={"loginOrEmail": login_or_email, "role": role},
        )

    async def update_user_role(self, org_id: int, user_id: int, role: str) -> None:
        """Change a user's role in an organization.

        Raises:
            PolicyRestrictedError: If the membership is externally synced
        """
        await self.send_json(
            "PATCH",
            f"/api/orgs/{org_id}/users/{user_id}",
            json_data={"role": role},
        )

    async def list_org_users(self, org_id: int) -> List[OrgUser]:
        """List the members of an organization with their roles."""
        data = await self.get_json(f"/api/orgs/{org_id}/users")
        return [OrgUser.model_validate(item) for item in data or []]

    # Team Management Methods

    async def search_team(self, org_id: int, name: str) -> Optional[int]:
        """Find a team by exact name (case-insensitive).

        Returns:
            The team id, or None if no team has that name
        """
        data = await self.get_json(
            "/api/teams/search",
            params={"name": name, "orgId": org_id},
            headers={ORG_HEADER: str(org_id)},
        )
        for team in (data or {}).get("teams", []):
            if str(team.get("name", "")).lower() == name.lower():
                return int(team["id"])
        return None

    async def ensure_team(self, org_id: int, name: str) -> int:
        """Return the id of the named team, creating it if it does not exist."""
        try:
            team_id = await self.search_team(org_id, name)
        except APIError as e:
            self._logger.warning("Team search failed, attempting create", org_id=org_id, team=name, error=str(e))
            team_id = None
        if team_id:
            return team_id

        data = await self.send_json(
            "POST",
            "/api/teams",
            json_data={"name": name, "orgId": org_id},
            headers={ORG_HEADER: str(org_id)},
        )
        team_id = (data or {}).get("teamId")
        if not team_id:
            raise GrafanaError("Team creation returned an empty id")
        self._logger.info("Created Grafana team", org_id=org_id, team=name, team_id=team_id)
        return int(team_id)

    async def list_teams(self, org_id: int, per_page: int = 500) -> List[GrafanaTeam]:
        """List all teams in an organization."""
        teams: List[GrafanaTeam] = []
        page = 1
        while True:
            data = await self.get_json(
                "/api/teams/search",
                params={"orgId": org_id, "page": page, "perpage": per_page},
                headers={ORG_HEADER: str(org_id)},
            )
            batch = (data or {}).get("teams", [])
            if not batch:
                break
            teams.extend(GrafanaTeam.model_validate(item) for item in batch)
            if len(batch) < per_page:
                break
            page += 1
        return teams

    async def list_team_members(self, team_id: int, org_id: Optional[int] = None) -> List[TeamMember]:
        """List the members of a team."""
        data = await self.get_json(f"/api/teams/{team_id}/members", headers=_org_headers(org_id))
        return [TeamMember.model_validate(item) for item in data or []]

    async def add_user_to_team(
        self, team_id: int, user_id: int, role: str = "member", org_id: Optional[int] = None
    ) -> None:
        """Add a user to a team.

        Raises:
            ConflictError: If the user is already a member
        """
        payload: Dict[str, Any] = {"userId": user_id}
        if role.lower() == "admin":
            payload["role"] = "Admin"
        await self.send_json(
            "POST", f"/api/teams/{team_id}/members", json_data=payload, headers=_org_headers(org_id)
        )

    async def update_team_member_role(
        self, team_id: int, user_id: int, role: str, org_id: Optional[int] = None
    ) -> None:
        """Set a team member's role to Member or Admin."""
        api_role = "Admin" if role.lower() == "admin" else "Member"
        await self.send_json(
            "PUT",
            f"/api/teams/{team_id}/members/{user_id}",
            json_data={"role": api_role},
            headers=_org_headers(org_id),
        )

    async def remove_user_from_team(self, team_id: int, user_id: int, org_id: Optional[int] = None) -> None:
        """Remove a user from a team.

        Raises:
            ResourceNotFoundError: If the user is not a member
        """
        await self.send_json(
            "DELETE", f"/api/teams/{team_id}/members/{user_id}", headers=_org_headers(org_id)
        )
