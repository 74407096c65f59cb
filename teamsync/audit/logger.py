"""Audit logging for plan execution.

Every applied action is appended to the store's ledger (``sync_actions``)
and mirrored as a structured ``Audit event`` log record. Skips and failures
are logged but never written to the ledger.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from pydantic import BaseModel, Field

from teamsync.core.actions import BaseAction
from teamsync.store.sqlite import MappingStore


class AuditEvent(BaseModel):
    """Individual audit event."""

    event_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: str  # execution_start, action_applied, action_skipped, action_failed, execution_complete
    execution_id: str

    action_id: Optional[int] = None
    action_kind: Optional[str] = None
    org_id: Optional[int] = None
    grafana_org_id: Optional[int] = None
    team_name: Optional[str] = None
    email: Optional[str] = None

    success: bool
    error_message: Optional[str] = None
    error_type: Optional[str] = None

    source_system: str = "entra"
    target_system: str = "grafana"

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_action(
        cls,
        action: BaseAction,
        execution_id: str,
        event_type: str,
        success: bool,
        error: Optional[BaseException] = None,
        **metadata: Any,
    ) -> "AuditEvent":
        row = action.to_row()
        return cls(
            event_id=f"{execution_id}_{action.id if action.id is not None else 'new'}_{event_type}",
            event_type=event_type,
            execution_id=execution_id,
            action_id=action.id,
            action_kind=action.kind,
            org_id=action.org_id,
            grafana_org_id=action.grafana_org_id,
            team_name=row["team_name"] or None,
            email=row["email"] or None,
            success=success,
            error_message=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
            metadata=metadata,
        )

    def to_log_record(self) -> Dict[str, Any]:
        """Convert to structured log record format."""
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "execution_id": self.execution_id,
            "action_id": self.action_id,
            "action_kind": self.action_kind,
            "org_id": self.org_id,
            "grafana_org_id": self.grafana_org_id,
            "team_name": self.team_name,
            "email": self.email,
            "success": self.success,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "source_system": self.source_system,
            "target_system": self.target_system,
            "metadata": self.metadata,
        }


class AuditSummary(BaseModel):
    """Summary of audit events for one plan execution."""

    execution_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    success: Optional[bool] = None
    error_message: Optional[str] = None

    applied: int = 0
    skipped: int = 0
    failed: int = 0

    # Breakdown of applied actions by kind
    kinds: Dict[str, int] = Field(default_factory=dict)

    # Breakdown of applied actions by internal org id
    organizations: Dict[int, int] = Field(default_factory=dict)

    error_types: Dict[str, int] = Field(default_factory=dict)

    def add_event(self, event: AuditEvent) -> None:
        """Add an action event to the summary statistics."""
        if event.event_type == "action_applied":
            self.applied += 1
            if event.action_kind:
                self.kinds[event.action_kind] = self.kinds.get(event.action_kind, 0) + 1
            if event.org_id is not None:
                self.organizations[event.org_id] = self.organizations.get(event.org_id, 0) + 1
        elif event.event_type == "action_skipped":
            self.skipped += 1
        elif event.event_type == "action_failed":
            self.failed += 1
            error_type = event.error_type or "other_error"
            self.error_types[error_type] = self.error_types.get(error_type, 0) + 1

    @property
    def total_actions(self) -> int:
        return self.applied + self.skipped + self.failed

    def get_success_rate(self) -> float:
        """Get success rate as percentage."""
        if self.total_actions == 0:
            return 0.0
        return (self.applied / self.total_actions) * 100.0


class AuditLogger:
    """Audit logger backed by the mapping store's action ledger."""

    def __init__(self, store: MappingStore) -> None:
        """Initialize audit logger.

        Args:
            store: Mapping store holding the ledger
        """
        self.store = store
        self.current_summary: Optional[AuditSummary] = None
        self._logger = structlog.get_logger(__name__)

    def start_execution_audit(self, execution_id: str) -> AuditSummary:
        """Start audit logging for a plan execution.

        Args:
            execution_id: Unique execution identifier

        Returns:
            AuditSummary for tracking events
        """
        self.current_summary = AuditSummary(
            execution_id=execution_id,
            started_at=datetime.now(timezone.utc),
        )
        self._emit(
            AuditEvent(
                event_id=f"{execution_id}_start",
                event_type="execution_start",
                execution_id=execution_id,
                success=True,
            )
        )
        return self.current_summary

    def record_applied(self, action: BaseAction, execution_id: str, **metadata: Any) -> None:
        """Append an executed action to the ledger.

        Raises:
            StoreError: If the ledger write fails
        """
        self.store.record_sync_action(action, datetime.now(timezone.utc))
        self._emit(AuditEvent.for_action(action, execution_id, "action_applied", True, **metadata))

    def record_skipped(self, action: BaseAction, execution_id: str, reason: str, error: Optional[BaseException] = None) -> None:
        """Log an action that was deliberately not applied."""
        self._emit(
            AuditEvent.for_action(action, execution_id, "action_skipped", True, error=error, reason=reason)
        )

    def record_failed(self, action: BaseAction, execution_id: str, error: BaseException) -> None:
        """Log the action that aborted the batch."""
        self._emit(AuditEvent.for_action(action, execution_id, "action_failed", False, error=error))

    def complete_execution_audit(
        self,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> Optional[AuditSummary]:
        """Complete audit logging for a plan execution.

        Args:
            success: Whether the execution was successful
            error_message: Error message if execution failed

        Returns:
            Final AuditSummary if available
        """
        if not self.current_summary:
            return None

        summary = self.current_summary
        summary.completed_at = datetime.now(timezone.utc)
        summary.success = success
        summary.error_message = error_message

        self._emit(
            AuditEvent(
                event_id=f"{summary.execution_id}_complete",
                event_type="execution_complete",
                execution_id=summary.execution_id,
                success=success,
                error_message=error_message,
                metadata={
                    "applied": summary.applied,
                    "skipped": summary.skipped,
                    "failed": summary.failed,
                    "duration_seconds": (summary.completed_at - summary.started_at).total_seconds(),
                },
            )
        )

        self.current_summary = None
        return summary

    def _emit(self, event: AuditEvent) -> None:
        if self.current_summary:
            self.current_summary.add_event(event)
        log = self._logger.info if event.success else self._logger.error
        log("Audit event", **event.to_log_record())
