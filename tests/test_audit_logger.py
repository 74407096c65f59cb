"""Tests for audit logging."""

from unittest.mock import MagicMock

import pytest

from teamsync.audit.logger import AuditEvent, AuditLogger, AuditSummary
from teamsync.clients.exceptions import PolicyRestrictedError, ServerError
from teamsync.core.actions import AddUserToTeam, CreateTeam, UpdateUserRole


@pytest.fixture
def audit_logger(store):
    return AuditLogger(store)


@pytest.fixture
def team_action():
    return AddUserToTeam(
        id=4,
        org_id=1,
        grafana_org_id=2,
        team_id=9,
        team_name="platform",
        email="Alice@Example.com",
    )


class TestAuditEvent:
    """AuditEvent construction."""

    def test_for_action_copies_identity(self, team_action):
        event = AuditEvent.for_action(team_action, "exec_1", "action_applied", True, source="cli")

        assert event.event_id == "exec_1_4_action_applied"
        assert event.action_kind == "add_user_to_team"
        assert event.team_name == "platform"
        assert event.email == "Alice@Example.com"
        assert event.metadata == {"source": "cli"}

    def test_for_action_records_error(self):
        action = UpdateUserRole(org_id=1, grafana_org_id=1, email="a@x.io", role="Admin")
        error = PolicyRestrictedError("managed elsewhere", status_code=400, message_id="org.externallySynced")

        event = AuditEvent.for_action(action, "exec_1", "action_skipped", True, error=error)

        assert event.event_id == "exec_1_new_action_skipped"
        assert event.team_name is None
        assert event.error_type == "PolicyRestrictedError"
        assert "managed elsewhere" in event.error_message

    def test_to_log_record(self, team_action):
        record = AuditEvent.for_action(team_action, "exec_1", "action_applied", True).to_log_record()

        assert record["target_system"] == "grafana"
        assert record["source_system"] == "entra"
        assert isinstance(record["timestamp"], str)


class TestAuditSummary:
    """Summary counters."""

    def test_add_event_counts_outcomes(self, team_action):
        summary = AuditSummary(execution_id="exec_1", started_at="2026-01-01T00:00:00Z")
        summary.add_event(AuditEvent.for_action(team_action, "exec_1", "action_applied", True))
        summary.add_event(AuditEvent.for_action(team_action, "exec_1", "action_skipped", True))
        summary.add_event(
            AuditEvent.for_action(team_action, "exec_1", "action_failed", False, error=ServerError("x"))
        )

        assert summary.applied == 1
        assert summary.skipped == 1
        assert summary.failed == 1
        assert summary.kinds == {"add_user_to_team": 1}
        assert summary.organizations == {1: 1}
        assert summary.error_types == {"ServerError": 1}
        assert summary.get_success_rate() == pytest.approx(100 / 3)


class TestAuditLogger:
    """Ledger writes and execution bracketing."""

    def test_applied_actions_reach_ledger(self, audit_logger, store, team_action):
        audit_logger.start_execution_audit("exec_1")
        audit_logger.record_applied(team_action, "exec_1")
        audit_logger.record_applied(CreateTeam(org_id=1, grafana_org_id=2, team_name="ops"), "exec_1")

        entries = store.list_sync_actions()

        assert {e.action_type for e in entries} == {"add_user_to_team", "create_team"}
        assert {e.email for e in entries} == {"alice@example.com", ""}

    def test_skips_and_failures_not_in_ledger(self, audit_logger, store, team_action):
        audit_logger.start_execution_audit("exec_1")
        audit_logger.record_skipped(team_action, "exec_1", reason="user not found")
        audit_logger.record_failed(team_action, "exec_1", ServerError("boom"))

        summary = audit_logger.complete_execution_audit(success=False, error_message="boom")

        assert store.list_sync_actions() == []
        assert summary.skipped == 1
        assert summary.failed == 1
        assert summary.success is False
        assert summary.completed_at is not None
        assert audit_logger.current_summary is None

    def test_complete_without_start(self, audit_logger):
        assert audit_logger.complete_execution_audit() is None

    def test_events_logged_through_structlog(self, audit_logger, team_action):
        audit_logger._logger = MagicMock()

        audit_logger.record_failed(team_action, "exec_1", ServerError("boom"))

        audit_logger._logger.error.assert_called_once()
        args, kwargs = audit_logger._logger.error.call_args
        assert args == ("Audit event",)
        assert kwargs["event_type"] == "action_failed"
