"""Tests for plan building."""

import pytest

from teamsync.clients.exceptions import ServerError
from teamsync.core.executor import PlanExecutor
from teamsync.core.planner import PlanBuilder


def _kinds(plan):
    return [action.kind for action in plan.actions]


def _builder(store, grafana, entra, **kwargs):
    return PlanBuilder(store=store, grafana_client=grafana, entra_client=entra, **kwargs)


@pytest.fixture
def org(store):
    return store.create_org(1, "Main")


class TestScenarios:
    """End-to-end diffs for the common cases."""

    @pytest.mark.asyncio
    async def test_new_team_and_new_user(self, store, grafana, entra, org):
        entra.add_group("g-1", "gapp_ops_grf_platform", "alice@example.com")
        store.create_mapping(org.id, "platform", "g-1", "gapp_ops_grf_platform")

        plan = await _builder(store, grafana, entra).build_plan()

        assert _kinds(plan) == ["create_team", "create_user", "add_user_to_org", "add_user_to_team"]
        create_user = plan.actions[1]
        assert create_user.email == "alice@example.com"
        assert create_user.display_name == "Alice"
        assert plan.actions[2].role == "Viewer"
        assert plan.actions[3].team_id == 0
        assert plan.actions[0].note == "mapping: Main/platform <- gapp_ops_grf_platform (g-1)"

    @pytest.mark.asyncio
    async def test_existing_member_gets_role_update(self, store, grafana, entra, org):
        alice = grafana.add_user("alice@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, alice)
        grafana.add_org_user(1, alice, "Viewer")
        entra.add_group("g-1", "ops", "alice@example.com")
        store.create_mapping(org.id, "platform", "g-1", "ops", role_override="Editor")

        plan = await _builder(store, grafana, entra).build_plan()

        assert _kinds(plan) == ["update_user_role"]
        action = plan.actions[0]
        assert action.role == "Editor"
        assert action.user_id == alice.id
        assert "mapping role override: Editor" in action.note
        assert "current role: Viewer" in action.note

    @pytest.mark.asyncio
    async def test_stale_member_removed(self, store, grafana, entra, org):
        alice = grafana.add_user("alice@example.com")
        bob = grafana.add_user("bob@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, alice)
        grafana.add_team_member(team_id, bob)
        grafana.add_org_user(1, alice, "Viewer")
        entra.add_group("g-1", "ops", "alice@example.com")
        store.create_mapping(org.id, "platform", "g-1")

        plan = await _builder(store, grafana, entra).build_plan()

        assert _kinds(plan) == ["remove_user_from_team"]
        assert plan.actions[0].email == "bob@example.com"
        assert plan.actions[0].user_id == bob.id
        assert plan.actions[0].team_id == team_id

    @pytest.mark.asyncio
    async def test_removals_disabled(self, store, grafana, entra, org):
        bob = grafana.add_user("bob@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, bob)
        entra.add_group("g-1", "ops")
        store.create_mapping(org.id, "platform", "g-1")

        plan = await _builder(store, grafana, entra, allow_remove_team_members=False).build_plan()

        assert plan.actions == []

    @pytest.mark.asyncio
    async def test_creation_disabled_blocks_user(self, store, grafana, entra, org):
        grafana.add_team(1, "platform")
        entra.add_group("g-1", "ops", "carol@example.com")
        store.create_mapping(org.id, "platform", "g-1")

        plan = await _builder(store, grafana, entra, allow_create_users=False).build_plan()

        assert _kinds(plan) == ["blocked_create_user"]
        blocked = plan.actions[0]
        assert blocked.note.startswith("user not found and creation disabled; mapping:")
        assert not blocked.selectable


class TestPrecedence:
    """Role aggregation across mappings."""

    @pytest.mark.asyncio
    async def test_strongest_org_role_wins_across_mappings(self, store, grafana, entra, org):
        grafana.add_user("alice@example.com")
        grafana.add_team(1, "viewers")
        grafana.add_team(1, "editors")
        entra.add_group("g-1", "viewers", "alice@example.com")
        entra.add_group("g-2", "editors", "alice@example.com")
        store.create_mapping(org.id, "viewers", "g-1")
        store.create_mapping(org.id, "editors", "g-2", role_override="Editor")

        plan = await _builder(store, grafana, entra).build_plan()

        org_actions = [a for a in plan.actions if a.kind == "add_user_to_org"]
        assert len(org_actions) == 1
        assert org_actions[0].role == "Editor"

    @pytest.mark.asyncio
    async def test_org_default_role_beats_service_default(self, store, grafana, entra):
        admin_org = store.create_org(2, "Admins", default_role="Admin")
        grafana.add_user("alice@example.com")
        grafana.add_team(2, "ops")
        entra.add_group("g-1", "ops", "alice@example.com")
        store.create_mapping(admin_org.id, "ops", "g-1")

        plan = await _builder(store, grafana, entra, default_user_role="Editor").build_plan()

        org_actions = [a for a in plan.actions if a.kind == "add_user_to_org"]
        assert org_actions[0].role == "Admin"
        assert "org default role: Admin" in org_actions[0].note

    @pytest.mark.asyncio
    async def test_admin_team_role_wins_on_add(self, store, grafana, entra, org):
        grafana.add_user("alice@example.com")
        grafana.add_team(1, "platform")
        entra.add_group("g-1", "members", "alice@example.com")
        entra.add_group("g-2", "leads", "alice@example.com")
        store.create_mapping(org.id, "platform", "g-1", team_role="member")
        store.create_mapping(org.id, "platform", "g-2", team_role="admin")

        plan = await _builder(store, grafana, entra).build_plan()

        adds = [a for a in plan.actions if a.kind == "add_user_to_team"]
        assert len(adds) == 1
        assert adds[0].team_role == "admin"

    @pytest.mark.asyncio
    async def test_existing_member_promoted_to_admin(self, store, grafana, entra, org):
        alice = grafana.add_user("alice@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, alice, "member")
        grafana.add_org_user(1, alice, "Viewer")
        entra.add_group("g-1", "leads", "alice@example.com")
        store.create_mapping(org.id, "platform", "g-1", team_role="admin")

        plan = await _builder(store, grafana, entra).build_plan()

        assert _kinds(plan) == ["update_team_role"]
        assert plan.actions[0].team_role == "admin"
        assert plan.actions[0].user_id == alice.id

    @pytest.mark.asyncio
    async def test_existing_admin_never_demoted(self, store, grafana, entra, org):
        alice = grafana.add_user("alice@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, alice, "admin")
        grafana.add_org_user(1, alice, "Viewer")
        entra.add_group("g-1", "members", "alice@example.com")
        store.create_mapping(org.id, "platform", "g-1", team_role="member")

        plan = await _builder(store, grafana, entra).build_plan()

        assert plan.actions == []


class TestIdentityAndStability:
    """Email identity, determinism and convergence."""

    @pytest.mark.asyncio
    async def test_email_matching_ignores_case_and_whitespace(self, store, grafana, entra, org):
        alice = grafana.add_user("alice@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, alice)
        grafana.add_org_user(1, alice, "Viewer")
        entra.add_group("g-1", "ops")
        entra.add_member("g-1", "  Alice@Example.COM ", "Alice")

        store.create_mapping(org.id, "platform", "g-1")

        plan = await _builder(store, grafana, entra).build_plan()

        assert plan.actions == []

    @pytest.mark.asyncio
    async def test_members_without_email_ignored(self, store, grafana, entra, org):
        grafana.add_team(1, "platform")
        entra.add_group("g-1", "ops")
        entra.add_member("g-1", None, "Service Principal")
        store.create_mapping(org.id, "platform", "g-1")

        plan = await _builder(store, grafana, entra).build_plan()

        assert plan.actions == []

    @pytest.mark.asyncio
    async def test_new_user_created_once_across_mappings(self, store, grafana, entra, org):
        entra.add_group("g-1", "a", "dave@example.com")
        entra.add_group("g-2", "b", "dave@example.com")
        store.create_mapping(org.id, "alpha", "g-1")
        store.create_mapping(org.id, "beta", "g-2")

        plan = await _builder(store, grafana, entra).build_plan()

        assert _kinds(plan).count("create_user") == 1
        assert _kinds(plan).count("create_team") == 2
        assert _kinds(plan).count("add_user_to_team") == 2

    @pytest.mark.asyncio
    async def test_build_is_deterministic(self, store, grafana, entra, org):
        bob = grafana.add_user("bob@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, bob)
        entra.add_group("g-1", "ops", "alice@example.com", "erin@example.com")
        entra.add_group("g-2", "ops2", "frank@example.com")
        store.create_mapping(org.id, "platform", "g-1")
        store.create_mapping(org.id, "other", "g-2", role_override="Editor")

        first = await _builder(store, grafana, entra).build_plan()
        second = await _builder(store, grafana, entra).build_plan()

        def signature(plan):
            return [(a.kind, a.to_row()["email"], a.to_row()["team_name"], a.to_row()["role"]) for a in plan.actions]

        assert signature(first) == signature(second)

    @pytest.mark.asyncio
    async def test_applying_plan_converges(self, store, grafana, entra, org):
        bob = grafana.add_user("bob@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, bob)
        entra.add_group("g-1", "ops", "alice@example.com", "bob@example.com")
        entra.add_group("g-2", "leads", "alice@example.com")
        entra.add_group("g-3", "new", "carol@example.com")
        store.create_mapping(org.id, "platform", "g-1")
        store.create_mapping(org.id, "platform", "g-2", team_role="admin", role_override="Editor")
        store.create_mapping(org.id, "fresh", "g-3")

        builder = _builder(store, grafana, entra)
        plan = await builder.build_plan()
        assert plan.actions

        await PlanExecutor(grafana, store).execute(plan.actions)
        again = await builder.build_plan()

        assert again.actions == []
        alice = grafana._find_user("alice@example.com")
        assert grafana.team_members[team_id][alice.id] == "admin"
        assert grafana.org_users[1][alice.id] == "Editor"
        assert grafana.org_users[1][bob.id] == "Viewer"


class TestPartialFailures:
    """Collection errors reduce scope instead of aborting."""

    @pytest.mark.asyncio
    async def test_failed_group_skips_mapping_and_suppresses_removals(self, store, grafana, entra, org):
        bob = grafana.add_user("bob@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, bob)
        entra.add_group("g-1", "ok", "alice@example.com")
        entra.add_group("g-2", "broken", "bob@example.com")
        entra.failing_groups.add("g-2")
        store.create_mapping(org.id, "platform", "g-1")
        store.create_mapping(org.id, "platform", "g-2")

        plan = await _builder(store, grafana, entra).build_plan()

        assert "remove_user_from_team" not in _kinds(plan)
        assert [a.email for a in plan.actions if a.kind == "add_user_to_team"] == ["alice@example.com"]

    @pytest.mark.asyncio
    async def test_failed_team_listing_skips_mapping(self, store, grafana, entra, org):
        bob = grafana.add_user("bob@example.com")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, bob)
        grafana.failures["list_team_members"] = ServerError("Server error: 500", status_code=500)
        entra.add_group("g-1", "ops", "alice@example.com")
        store.create_mapping(org.id, "platform", "g-1")

        plan = await _builder(store, grafana, entra).build_plan()

        assert plan.actions == []

    @pytest.mark.asyncio
    async def test_failed_user_lookup_skips_member(self, store, grafana, entra, org):
        grafana.add_team(1, "platform")
        grafana.failures["lookup_user"] = ServerError("Server error: 502", status_code=502)
        entra.add_group("g-1", "ops", "alice@example.com")
        store.create_mapping(org.id, "platform", "g-1")

        plan = await _builder(store, grafana, entra).build_plan()

        assert plan.actions == []

    @pytest.mark.asyncio
    async def test_org_lookup_failure_noted(self, store, grafana, entra, org):
        grafana.add_user("alice@example.com")
        grafana.add_team(1, "platform")
        grafana.failures["list_org_users"] = ServerError("Server error: 500", status_code=500)
        entra.add_group("g-1", "ops", "alice@example.com")
        store.create_mapping(org.id, "platform", "g-1")

        plan = await _builder(store, grafana, entra).build_plan()

        org_actions = [a for a in plan.actions if a.kind == "add_user_to_org"]
        assert len(org_actions) == 1
        assert "org user lookup failed" in org_actions[0].note

    @pytest.mark.asyncio
    async def test_resolved_team_id_cached_on_mapping(self, store, grafana, entra, org):
        team_id = grafana.add_team(1, "Platform")
        entra.add_group("g-1", "ops")
        store.create_mapping(org.id, "platform", "g-1")

        await _builder(store, grafana, entra).build_plan()

        assert store.list_mappings()[0].grafana_team_id == team_id
