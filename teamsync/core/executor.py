"""Plan execution against Grafana with audit recording."""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel

from teamsync.audit.logger import AuditLogger, AuditSummary
from teamsync.clients.exceptions import (
    APIError,
    ConflictError,
    PlanExecutionError,
    PolicyRestrictedError,
    ResourceNotFoundError,
)
from teamsync.clients.grafana import GrafanaClient
from teamsync.core.actions import (
    ActionKind,
    AddUserToOrg,
    AddUserToTeam,
    BaseAction,
    CreateTeam,
    CreateUser,
    RemoveUserFromTeam,
    UpdateTeamRole,
    UpdateUserRole,
    sort_actions,
    team_key,
)
from teamsync.store.sqlite import MappingStore

logger = structlog.get_logger(__name__)


def generate_password() -> str:
    """Random one-off credential for newly created accounts."""
    return "temp-" + secrets.token_hex(16)


@dataclass(slots=True)
class ResolverState:
    """Ids created earlier in the same batch, consulted before live lookups."""

    teams: Dict[Tuple[int, str], int] = field(default_factory=dict)
    users: Dict[str, int] = field(default_factory=dict)

    def team_id(self, org_id: int, team_name: str) -> int:
        return self.teams.get(team_key(org_id, team_name), 0)

    def remember_team(self, org_id: int, team_name: str, team_id: int) -> None:
        self.teams[team_key(org_id, team_name)] = team_id


class ExecutionResult(BaseModel):
    """Outcome of executing a batch of actions."""

    execution_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None

    total_actions: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0

    current_action: Optional[str] = None
    error: Optional[str] = None
    audit_summary: Optional[AuditSummary] = None

    @property
    def success(self) -> bool:
        return self.failed == 0 and self.error is None


class PlanExecutor:
    """Applies plan actions in phase order.

    The first unrecoverable error aborts the rest of the batch; actions that
    already ran stay applied.
    """

    def __init__(
        self,
        grafana_client: GrafanaClient,
        store: MappingStore,
        audit_logger: Optional[AuditLogger] = None,
        progress_callback: Optional[Callable[[ExecutionResult], None]] = None,
    ) -> None:
        """Initialize plan executor.

        Args:
            grafana_client: Grafana API client
            store: Mapping store (team id cache, ledger)
            audit_logger: Audit logger; defaults to one writing to ``store``
            progress_callback: Optional callback invoked after each action
        """
        self.grafana_client = grafana_client
        self.store = store
        self.audit_logger = audit_logger or AuditLogger(store)
        self.progress_callback = progress_callback

        self._handlers: Dict[str, Callable[[BaseAction, ResolverState, str], Awaitable[bool]]] = {
            ActionKind.CREATE_TEAM.value: self._create_team,
            ActionKind.CREATE_USER.value: self._create_user,
            ActionKind.ADD_USER_TO_ORG.value: self._add_user_to_org,
            ActionKind.UPDATE_USER_ROLE.value: self._update_user_role,
            ActionKind.ADD_USER_TO_TEAM.value: self._add_user_to_team,
            ActionKind.UPDATE_TEAM_ROLE.value: self._update_team_role,
            ActionKind.REMOVE_USER_FROM_TEAM.value: self._remove_user_from_team,
        }
        self._logger = logger.bind(component="PlanExecutor")

    async def execute(
        self,
        actions: Sequence[BaseAction],
        execution_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Execute actions, recording each applied one in the ledger.

        Args:
            actions: Actions to run; re-sorted into phase order
            execution_id: Identifier for audit events

        Returns:
            Execution result with per-outcome counts

        Raises:
            PlanExecutionError: If an action fails unrecoverably
            StoreError: If the team id cache or the ledger cannot be written
        """
        execution_id = execution_id or f"exec_{uuid.uuid4().hex[:12]}"
        ordered = [action for action in sort_actions(list(actions)) if action.selectable]
        result = ExecutionResult(
            execution_id=execution_id,
            started_at=datetime.now(timezone.utc),
            total_actions=len(ordered),
        )
        resolver = ResolverState()

        self._logger.info("Starting plan execution", execution_id=execution_id, action_count=len(ordered))
        self.audit_logger.start_execution_audit(execution_id)

        try:
            for action in ordered:
                result.current_action = f"{action.kind} {action.id if action.id is not None else ''}".strip()
                handler = self._handlers[action.kind]
                try:
                    applied = await handler(action, resolver, execution_id)
                except PlanExecutionError as e:
                    result.failed += 1
                    self.audit_logger.record_failed(action, execution_id, e)
                    e.applied_count = result.applied
                    raise
                except APIError as e:
                    result.failed += 1
                    self.audit_logger.record_failed(action, execution_id, e)
                    raise PlanExecutionError(
                        f"{action.kind} failed: {e}",
                        action=action,
                        applied_count=result.applied,
                    ) from e

                if applied:
                    self.audit_logger.record_applied(action, execution_id)
                    result.applied += 1
                else:
                    result.skipped += 1
                self._notify_progress(result)

        except BaseException as e:
            result.error = str(e)
            result.completed_at = datetime.now(timezone.utc)
            result.audit_summary = self.audit_logger.complete_execution_audit(success=False, error_message=str(e))
            self._logger.error(
                "Plan execution aborted",
                execution_id=execution_id,
                applied=result.applied,
                error=str(e),
            )
            raise

        result.current_action = None
        result.completed_at = datetime.now(timezone.utc)
        result.audit_summary = self.audit_logger.complete_execution_audit(success=True)
        self._notify_progress(result)
        self._logger.info(
            "Plan execution completed",
            execution_id=execution_id,
            applied=result.applied,
            skipped=result.skipped,
        )
        return result

    def _notify_progress(self, result: ExecutionResult) -> None:
        if self.progress_callback:
            try:
                self.progress_callback(result)
            except Exception as e:
                self._logger.warning("Progress callback failed", error=str(e))

    # Id resolution

    def _resolve_team_id(self, action: BaseAction, resolver: ResolverState) -> int:
        team_id = action.team_id or resolver.team_id(action.org_id, action.team_name)
        if not team_id:
            raise PlanExecutionError(
                f"Missing team id for {action.team_name}",
                action=action,
            )
        return team_id

    async def _resolve_user_id(self, action: BaseAction, resolver: ResolverState) -> int:
        user_id = action.user_id or resolver.users.get(action.email, 0)
        if user_id:
            return user_id
        user = await self.grafana_client.lookup_user(action.email)
        if user is None:
            return 0
        resolver.users[action.email] = user.id
        return user.id

    def _skip_unresolved_user(self, action: BaseAction, execution_id: str) -> bool:
        self._logger.warning("User not found, skipping action", action_kind=action.kind, email=action.email)
        self.audit_logger.record_skipped(action, execution_id, reason="user not found")
        return False

    # Handlers. Each returns True when the action counts as applied.

    async def _create_team(self, action: CreateTeam, resolver: ResolverState, execution_id: str) -> bool:
        team_id = await self.grafana_client.ensure_team(action.grafana_org_id, action.team_name)
        resolver.remember_team(action.org_id, action.team_name, team_id)
        self.store.update_mapping_team_id_for_name(action.org_id, action.team_name, team_id)
        return True

    async def _create_user(self, action: CreateUser, resolver: ResolverState, execution_id: str) -> bool:
        name = action.display_name or action.email
        created = await self.grafana_client.create_user(
            email=action.email,
            login=action.email,
            name=name,
            password=generate_password(),
        )
        resolver.users[action.email] = created.id
        return True

    async def _add_user_to_org(self, action: AddUserToOrg, resolver: ResolverState, execution_id: str) -> bool:
        try:
            await self.grafana_client.add_user_to_org(action.grafana_org_id, action.email, action.role)
        except ConflictError:
            self._logger.debug("User already in org", email=action.email, grafana_org_id=action.grafana_org_id)
        return True

    async def _update_user_role(self, action: UpdateUserRole, resolver: ResolverState, execution_id: str) -> bool:
        user_id = await self._resolve_user_id(action, resolver)
        if not user_id:
            return self._skip_unresolved_user(action, execution_id)
        try:
            await self.grafana_client.update_user_role(action.grafana_org_id, user_id, action.role)
        except PolicyRestrictedError as e:
            self._logger.warning(
                "Skipping role update for externally managed user",
                email=action.email,
                grafana_org_id=action.grafana_org_id,
                error=str(e),
            )
            self.audit_logger.record_skipped(action, execution_id, reason="externally managed", error=e)
            return False
        return True

    async def _add_user_to_team(self, action: AddUserToTeam, resolver: ResolverState, execution_id: str) -> bool:
        team_id = self._resolve_team_id(action, resolver)
        user_id = await self._resolve_user_id(action, resolver)
        if not user_id:
            return self._skip_unresolved_user(action, execution_id)
        try:
            await self.grafana_client.add_user_to_team(
                team_id, user_id, action.team_role, org_id=action.grafana_org_id
            )
        except ConflictError:
            self._logger.debug("User already in team", email=action.email, team_id=team_id)
        return True

    async def _update_team_role(self, action: UpdateTeamRole, resolver: ResolverState, execution_id: str) -> bool:
        team_id = self._resolve_team_id(action, resolver)
        user_id = await self._resolve_user_id(action, resolver)
        if not user_id:
            return self._skip_unresolved_user(action, execution_id)
        await self.grafana_client.update_team_member_role(
            team_id, user_id, action.team_role, org_id=action.grafana_org_id
        )
        return True

    async def _remove_user_from_team(
        self, action: RemoveUserFromTeam, resolver: ResolverState, execution_id: str
    ) -> bool:
        team_id = self._resolve_team_id(action, resolver)
        user_id = await self._resolve_user_id(action, resolver)
        if not user_id:
            return self._skip_unresolved_user(action, execution_id)
        try:
            await self.grafana_client.remove_user_from_team(team_id, user_id, org_id=action.grafana_org_id)
        except ResourceNotFoundError:
            self._logger.debug("User already absent from team", email=action.email, team_id=team_id)
        return True
