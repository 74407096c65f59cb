"""Microsoft Entra ID (Graph API) client for group membership lookups."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from teamsync.clients.base import BaseAPIClient
from teamsync.clients.exceptions import (
    APIError,
    AuthenticationError,
    EntraError,
    ResourceNotFoundError,
)

logger = structlog.get_logger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Refresh the cached token this long before it actually expires
TOKEN_REFRESH_MARGIN = timedelta(minutes=2)


class DirectoryMember(BaseModel):
    """A member of a directory group."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    display_name: Optional[str] = Field(None, alias="displayName")
    mail: Optional[str] = None
    user_principal_name: Optional[str] = Field(None, alias="userPrincipalName")

    @property
    def email(self) -> Optional[str]:
        """Address used as the cross-system identity key."""
        return self.mail


class DirectoryGroup(BaseModel):
    """A directory group."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    display_name: Optional[str] = Field(None, alias="displayName")
    mail: Optional[str] = None
    security_enabled: bool = Field(False, alias="securityEnabled")
    mail_enabled: bool = Field(False, alias="mailEnabled")


class DirectoryUser(BaseModel):
    """A directory user account."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    display_name: Optional[str] = Field(None, alias="displayName")
    mail: Optional[str] = None
    user_principal_name: Optional[str] = Field(None, alias="userPrincipalName")
    account_enabled: bool = Field(False, alias="accountEnabled")


class EntraClient(BaseAPIClient):
    """Graph API client using the OAuth2 client-credentials flow."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: SecretStr,
        authority_base_url: str = "https://login.microsoftonline.com",
        graph_api_base_url: str = "https://graph.microsoft.com/v1.0",
        timeout_seconds: float = 30,
        rate_limit_per_minute: int = 600,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize Entra client.

        Args:
            tenant_id: Directory (tenant) ID
            client_id: Application (client) ID
            client_secret: Application client secret
            authority_base_url: OAuth2 authority base URL
            graph_api_base_url: Microsoft Graph base URL
            timeout_seconds: Request timeout in seconds
            rate_limit_per_minute: Maximum requests per minute
            max_retries: Maximum retry attempts
            retry_delay_seconds: Initial retry delay
            transport: Optional httpx transport (used by tests)
        """
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.authority_base_url = authority_base_url.rstrip("/")

        super().__init__(
            base_url=graph_api_base_url,
            timeout_seconds=timeout_seconds,
            rate_limit_per_minute=rate_limit_per_minute,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
            transport=transport,
        )

        self._token_lock = asyncio.Lock()
        self._access_token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._logger = logger.bind(tenant_id=tenant_id)

    async def _get_auth_headers(self) -> Dict[str, str]:
        token = await self._get_token()
        return {"Authorization": f"Bearer {token}"}

    async def _get_token(self) -> str:
        """Return a cached access token, requesting a new one when close to expiry."""
        async with self._token_lock:
            now = datetime.now(timezone.utc)
            if (
                self._access_token
                and self._expires_at is not None
                and self._expires_at - now > TOKEN_REFRESH_MARGIN
            ):
                return self._access_token

            endpoint = f"{self.authority_base_url}/{self.tenant_id}/oauth2/v2.0/token"
            form = {
                "client_id": self.client_id,
                "client_secret": self._client_secret.get_secret_value(),
                "scope": GRAPH_SCOPE,
                "grant_type": "client_credentials",
            }
            try:
                response = await self.request(
                    "POST", endpoint, retry=True, data=form, authenticate=False
                )
                payload = response.json()
            except APIError as e:
                raise AuthenticationError(
                    f"Entra token request failed: {e.message}",
                    status_code=e.status_code,
                    response_text=e.response_text,
                ) from e
            except ValueError as e:
                raise AuthenticationError(f"Entra token response was not JSON: {e}") from e

            token = payload.get("access_token")
            if not token:
                raise AuthenticationError("Entra returned an empty access token")

            self._access_token = token
            self._expires_at = now + timedelta(seconds=int(payload.get("expires_in", 0)))
            self._logger.debug("Acquired Entra access token", expires_at=self._expires_at.isoformat())
            return token

    async def health_check(self) -> bool:
        """Check if the Graph API is accessible.

        Returns:
            True if API is healthy, False otherwise
        """
        try:
            await self.get_json("/groups", params={"$top": 1, "$select": "id"})
            return True
        except Exception as e:
            self._logger.error("Entra health check failed", error=str(e))
            return False

    async def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Follow ``@odata.nextLink`` until the collection is exhausted."""
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = path
        next_params = params
        while next_url:
            page = await self.get_json(next_url, params=next_params)
            items.extend(page.get("value", []))
            next_url = page.get("@odata.nextLink")
            # nextLink already carries the query string
            next_params = None
        return items

    async def list_group_members(self, group_id: str) -> List[DirectoryMember]:
        """List every member of a group, fully materialised across pages.

        Args:
            group_id: Directory group object ID

        Returns:
            List of group members

        Raises:
            ResourceNotFoundError: If the group does not exist
            EntraError: If the API call fails
        """
        try:
            raw = await self._paginate(
                f"/groups/{group_id}/members",
                params={"$select": "id,displayName,mail,userPrincipalName"},
            )
        except ResourceNotFoundError:
            raise
        except APIError as e:
            raise self._convert_to_entra_error(e) from e

        members = [DirectoryMember.model_validate(item) for item in raw]
        self._logger.debug("Listed group members", group_id=group_id, count=len(members))
        return members

    async def list_groups(self) -> List[DirectoryGroup]:
        """List all directory groups (admin discovery only)."""
        try:
            raw = await self._paginate(
                "/groups",
                params={"$select": "id,displayName,mail,securityEnabled,mailEnabled"},
            )
        except APIError as e:
            raise self._convert_to_entra_error(e) from e
        return [DirectoryGroup.model_validate(item) for item in raw]

    async def list_users(self) -> List[DirectoryUser]:
        """List all directory users (admin discovery only)."""
        try:
            raw = await self._paginate(
                "/users",
                params={"$select": "id,displayName,mail,userPrincipalName,accountEnabled"},
            )
        except APIError as e:
            raise self._convert_to_entra_error(e) from e
        return [DirectoryUser.model_validate(item) for item in raw]

    async def find_group_by_name(self, display_name: str) -> Optional[DirectoryGroup]:
        """Find a group by display name (case-insensitive)."""
        wanted = display_name.strip().lower()
        for group in await self.list_groups():
            if (group.display_name or "").strip().lower() == wanted:
                return group
        return None

    def _convert_to_entra_error(self, error: APIError) -> APIError:
        """Wrap a generic API error with the Graph error code when present."""
        if isinstance(error, (EntraError, AuthenticationError)):
            return error
        error_code = None
        if error.response_text:
            try:
                body = json.loads(error.response_text)
                error_code = body.get("error", {}).get("code")
            except (ValueError, AttributeError):
                error_code = None
        return EntraError(
            f"Entra API error: {error.message}",
            error_code=error_code,
            status_code=error.status_code,
            response_text=error.response_text,
        )
