"""Tests for the Grafana HTTP client."""

import base64
import json

import httpx
import pytest
from pydantic import SecretStr

from teamsync.clients.exceptions import (
    AuthenticationError,
    ConflictError,
    PolicyRestrictedError,
    ResourceNotFoundError,
    ServerError,
)
from teamsync.clients.grafana import GrafanaClient


def _client(handler, **kwargs):
    kwargs.setdefault("admin_token", SecretStr("glsa_token"))
    return GrafanaClient(
        url="http://grafana.test",
        retry_delay_seconds=0.01,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestAuth:
    """Authentication headers."""

    @pytest.mark.asyncio
    async def test_token_preferred(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"id": 1, "name": "Main Org."})

        client = _client(handler, admin_password=SecretStr("pw"))
        assert await client.health_check() is True
        await client.close()

        assert seen["auth"] == "Bearer glsa_token"

    @pytest.mark.asyncio
    async def test_basic_auth_fallback(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={})

        client = _client(handler, admin_token=None, admin_user="root", admin_password=SecretStr("pw"))
        await client.health_check()
        await client.close()

        assert seen["auth"] == "Basic " + base64.b64encode(b"root:pw").decode("ascii")

    @pytest.mark.asyncio
    async def test_health_check_false_on_401(self):
        client = _client(lambda request: httpx.Response(401, json={"message": "Unauthorized"}))

        assert await client.health_check() is False
        assert client.last_ok is None
        await client.close()


class TestUsers:
    """User lookup and creation."""

    @pytest.mark.asyncio
    async def test_lookup_user(self):
        def handler(request):
            assert request.url.path == "/api/users/lookup"
            assert request.url.params["loginOrEmail"] == "alice@example.com"
            return httpx.Response(200, json={"id": 7, "email": "alice@example.com", "login": "alice"})

        client = _client(handler)
        user = await client.lookup_user("alice@example.com")
        await client.close()

        assert user.id == 7
        assert user.login == "alice"

    @pytest.mark.asyncio
    async def test_lookup_missing_user_returns_none(self):
        client = _client(lambda request: httpx.Response(404, json={"message": "user not found"}))

        assert await client.lookup_user("ghost@example.com") is None
        await client.close()

    @pytest.mark.asyncio
    async def test_create_user(self):
        def handler(request):
            assert request.method == "POST"
            assert request.url.path == "/api/admin/users"
            body = json.loads(request.content)
            assert body["password"].startswith("temp-")
            return httpx.Response(200, json={"id": 12, "message": "User created"})

        client = _client(handler)
        user = await client.create_user("a@x.io", "a@x.io", "A", "temp-abc")
        await client.close()

        assert user.id == 12
        assert user.email == "a@x.io"

    @pytest.mark.asyncio
    async def test_list_users_pages(self):
        pages = {1: [{"id": 1}, {"id": 2}], 2: [{"id": 3}]}

        def handler(request):
            return httpx.Response(200, json=pages.get(int(request.url.params["page"]), []))

        client = _client(handler)
        users = await client.list_users(per_page=2)
        await client.close()

        assert [u.id for u in users] == [1, 2, 3]


class TestOrgMembership:
    """Org membership and roles."""

    @pytest.mark.asyncio
    async def test_add_user_conflict(self):
        client = _client(lambda request: httpx.Response(409, json={"message": "User is already member"}))

        with pytest.raises(ConflictError):
            await client.add_user_to_org(1, "a@x.io", "Viewer")
        await client.close()

    @pytest.mark.asyncio
    async def test_externally_synced_role_update(self):
        def handler(request):
            assert request.method == "PATCH"
            assert request.url.path == "/api/orgs/3/users/7"
            return httpx.Response(
                400,
                json={"message": "cannot change role", "messageId": "org.externallySynced"},
            )

        client = _client(handler)
        with pytest.raises(PolicyRestrictedError) as exc_info:
            await client.update_user_role(3, 7, "Admin")
        await client.close()

        assert exc_info.value.message_id == "org.externallySynced"

    @pytest.mark.asyncio
    async def test_list_org_users(self):
        def handler(request):
            return httpx.Response(200, json=[{"userId": 4, "email": "a@x.io", "role": "Editor"}])

        client = _client(handler)
        users = await client.list_org_users(1)
        await client.close()

        assert users[0].user_id == 4
        assert users[0].role == "Editor"


class TestTeams:
    """Team lookup, creation and membership."""

    @pytest.mark.asyncio
    async def test_search_team_matches_case_insensitively(self):
        def handler(request):
            assert request.headers["X-Grafana-Org-Id"] == "2"
            return httpx.Response(
                200,
                json={"teams": [{"id": 5, "name": "platform-x"}, {"id": 6, "name": "Platform"}]},
            )

        client = _client(handler)
        assert await client.search_team(2, "platform") == 6
        await client.close()

    @pytest.mark.asyncio
    async def test_ensure_team_creates_when_missing(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"teams": []})
            assert json.loads(request.content) == {"name": "ops", "orgId": 2}
            return httpx.Response(200, json={"teamId": 44})

        client = _client(handler)
        assert await client.ensure_team(2, "ops") == 44
        await client.close()

    @pytest.mark.asyncio
    async def test_team_member_admin_flag(self):
        def handler(request):
            return httpx.Response(
                200,
                json=[
                    {"userId": 1, "email": "a@x.io", "permission": 4},
                    {"userId": 2, "email": "b@x.io", "permission": 0},
                ],
            )

        client = _client(handler)
        members = await client.list_team_members(3, org_id=2)
        await client.close()

        assert [m.is_admin for m in members] == [True, False]

    @pytest.mark.asyncio
    async def test_add_admin_member_payload(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"message": "Member added to Team"})

        client = _client(handler)
        await client.add_user_to_team(3, 9, "admin")
        await client.close()

        assert seen["body"] == {"userId": 9, "role": "Admin"}

    @pytest.mark.asyncio
    async def test_member_writes_scoped_to_org(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.headers.get("X-Grafana-Org-Id")))
            return httpx.Response(200, json={"message": "ok"})

        client = _client(handler)
        await client.add_user_to_team(3, 9, "member", org_id=2)
        await client.update_team_member_role(3, 9, "admin", org_id=2)
        await client.remove_user_from_team(3, 9, org_id=2)
        await client.add_user_to_team(3, 9)
        await client.close()

        assert seen == [("POST", "2"), ("PUT", "2"), ("DELETE", "2"), ("POST", None)]

    @pytest.mark.asyncio
    async def test_remove_absent_member(self):
        client = _client(lambda request: httpx.Response(404, json={"message": "Team member not found"}))

        with pytest.raises(ResourceNotFoundError):
            await client.remove_user_from_team(3, 9)
        await client.close()


class TestRetries:
    """Retry policy."""

    @pytest.mark.asyncio
    async def test_get_retried_on_server_error(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(502, text="bad gateway")
            return httpx.Response(200, json=[])

        client = _client(handler)
        assert await client.list_org_users(1) == []
        await client.close()

        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_writes_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(500, text="boom")

        client = _client(handler)
        with pytest.raises(ServerError):
            await client.add_user_to_org(1, "a@x.io", "Viewer")
        await client.close()

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_auth_errors_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(401, json={"message": "invalid API key"})

        client = _client(handler)
        with pytest.raises(AuthenticationError):
            await client.list_org_users(1)
        await client.close()

        assert len(attempts) == 1
