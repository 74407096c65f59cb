"""Tests for plan execution."""

import asyncio
from unittest.mock import MagicMock

import pytest

from teamsync.clients.exceptions import PlanExecutionError, ServerError
from teamsync.core.actions import (
    AddUserToOrg,
    AddUserToTeam,
    BlockedCreateUser,
    CreateTeam,
    CreateUser,
    RemoveUserFromTeam,
    UpdateTeamRole,
    UpdateUserRole,
)
from teamsync.core.executor import PlanExecutor, generate_password


@pytest.fixture
def org(store):
    return store.create_org(1, "Main")


@pytest.fixture
def executor(grafana, store):
    return PlanExecutor(grafana_client=grafana, store=store)


def _ids(**kwargs):
    return {"org_id": 1, "grafana_org_id": 1, **kwargs}


class TestOrdering:
    """Batch ordering and id resolution."""

    @pytest.mark.asyncio
    async def test_actions_run_in_phase_order(self, executor, grafana, org):
        actions = [
            AddUserToTeam(**_ids(team_name="platform", email="a@x.io")),
            AddUserToOrg(**_ids(email="a@x.io", role="Viewer")),
            CreateUser(**_ids(email="a@x.io", display_name="A")),
            CreateTeam(**_ids(team_name="platform")),
        ]

        result = await executor.execute(actions)

        assert result.applied == 4
        assert [call[0] for call in grafana.calls] == [
            "ensure_team",
            "create_user",
            "add_user_to_org",
            "add_user_to_team",
        ]

    @pytest.mark.asyncio
    async def test_created_team_id_resolved_for_later_actions(self, executor, grafana, store, org):
        store.create_mapping(org.id, "Platform", "g-1")
        alice = grafana.add_user("a@x.io")

        await executor.execute(
            [
                CreateTeam(**_ids(team_name="Platform")),
                AddUserToTeam(**_ids(team_name="platform", email="a@x.io", team_role="admin")),
            ]
        )

        (team_id,) = grafana.teams.keys()
        assert grafana.team_members[team_id] == {alice.id: "admin"}
        assert store.list_mappings()[0].grafana_team_id == team_id

    @pytest.mark.asyncio
    async def test_missing_team_id_aborts(self, executor, grafana, org):
        grafana.add_user("a@x.io")

        with pytest.raises(PlanExecutionError, match="Missing team id"):
            await executor.execute([AddUserToTeam(**_ids(team_name="ghost", email="a@x.io"))])

    @pytest.mark.asyncio
    async def test_blocked_actions_never_run(self, executor, grafana, org):
        result = await executor.execute([BlockedCreateUser(**_ids(email="a@x.io"))])

        assert result.total_actions == 0
        assert grafana.calls == []


class TestOutcomes:
    """Conflicts, policy refusals and missing resources."""

    @pytest.mark.asyncio
    async def test_already_member_counts_as_applied(self, executor, grafana, store, org):
        alice = grafana.add_user("a@x.io")
        grafana.add_org_user(1, alice, "Viewer")
        team_id = grafana.add_team(1, "platform")
        grafana.add_team_member(team_id, alice)

        result = await executor.execute(
            [
                AddUserToOrg(**_ids(email="a@x.io", role="Viewer")),
                AddUserToTeam(**_ids(team_id=team_id, team_name="platform", email="a@x.io", user_id=alice.id)),
            ]
        )

        assert result.applied == 2
        assert len(store.list_sync_actions()) == 2

    @pytest.mark.asyncio
    async def test_externally_managed_role_is_skipped(self, executor, grafana, store, org):
        alice = grafana.add_user("a@x.io")
        grafana.add_org_user(1, alice, "Viewer")
        grafana.externally_synced.add((1, alice.id))

        result = await executor.execute([UpdateUserRole(**_ids(email="a@x.io", role="Admin"))])

        assert result.applied == 0
        assert result.skipped == 1
        assert result.success
        assert grafana.org_users[1][alice.id] == "Viewer"
        assert store.list_sync_actions() == []

    @pytest.mark.asyncio
    async def test_removing_absent_member_succeeds(self, executor, grafana, org):
        alice = grafana.add_user("a@x.io")
        team_id = grafana.add_team(1, "platform")

        result = await executor.execute(
            [RemoveUserFromTeam(**_ids(team_id=team_id, team_name="platform", email="a@x.io", user_id=alice.id))]
        )

        assert result.applied == 1

    @pytest.mark.asyncio
    async def test_unresolved_user_skipped_without_ledger_entry(self, executor, grafana, store, org):
        team_id = grafana.add_team(1, "platform")

        result = await executor.execute(
            [UpdateTeamRole(**_ids(team_id=team_id, team_name="platform", email="gone@x.io"))]
        )

        assert result.skipped == 1
        assert result.applied == 0
        assert store.list_sync_actions() == []

    @pytest.mark.asyncio
    async def test_ledger_records_applied_actions(self, executor, grafana, store, org):
        await executor.execute([CreateTeam(**_ids(team_name="platform"))])

        (entry,) = store.list_sync_actions()
        assert entry.action_type == "create_team"
        assert entry.team_name == "platform"
        assert entry.org_id == 1


class TestFailures:
    """First unrecoverable error aborts the batch."""

    @pytest.mark.asyncio
    async def test_failure_aborts_remaining_actions(self, executor, grafana, store, org):
        grafana.add_user("a@x.io")
        grafana.failures["add_user_to_org"] = ServerError("Server error: 500", status_code=500)
        actions = [
            CreateTeam(**_ids(team_name="platform")),
            AddUserToOrg(**_ids(email="a@x.io", role="Viewer")),
            AddUserToTeam(**_ids(team_name="platform", email="a@x.io")),
        ]

        with pytest.raises(PlanExecutionError) as exc_info:
            await executor.execute(actions)

        assert exc_info.value.applied_count == 1
        assert exc_info.value.action.kind == "add_user_to_org"
        assert isinstance(exc_info.value.__cause__, ServerError)
        assert grafana.calls_to("add_user_to_team") == []
        assert [e.action_type for e in store.list_sync_actions()] == ["create_team"]

    @pytest.mark.asyncio
    async def test_progress_callback_errors_are_ignored(self, grafana, store, org):
        callback = MagicMock(side_effect=RuntimeError("boom"))
        executor = PlanExecutor(grafana_client=grafana, store=store, progress_callback=callback)

        result = await executor.execute([CreateTeam(**_ids(team_name="platform"))])

        assert result.applied == 1
        assert callback.called

    @pytest.mark.asyncio
    async def test_cancellation_closes_audit_summary(self, executor, grafana, org):
        grafana.delays["ensure_team"] = 5

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(executor.execute([CreateTeam(**_ids(team_name="platform"))]), timeout=0.1)

        assert executor.audit_logger.current_summary is None


def test_generated_password_format():
    password = generate_password()
    assert password.startswith("temp-")
    assert len(password) == len("temp-") + 32
    assert password != generate_password()
