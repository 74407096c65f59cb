"""Sync engine: serialises plan building and execution.

Every build or apply runs inside one execution slot: an in-process
``asyncio.Lock`` plus a lease row in the store, so a daemon and an ad-hoc
CLI invocation sharing a database cannot interleave.
"""

import asyncio
import os
import socket
import threading
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Tuple, TypeVar

import structlog
from pydantic import BaseModel, Field

from teamsync.audit.logger import AuditLogger
from teamsync.clients.entra import EntraClient
from teamsync.clients.exceptions import APIError, NoActionsSelectedError, NoPlanError, SyncInProgressError
from teamsync.clients.grafana import GrafanaClient
from teamsync.core.actions import Plan, PlanStatus
from teamsync.core.executor import ExecutionResult, PlanExecutor
from teamsync.core.planner import PlanBuilder
from teamsync.store.sqlite import MappingStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ChangeCounts(BaseModel):
    users: int = 0
    teams: int = 0


class OrgStatus(BaseModel):
    """Per-org health and recent ledger activity."""

    org_id: int
    grafana_org_id: int
    name: str
    grafana_access_ok: bool = False
    entra_access_ok: bool = False
    grafana_users_total: int = 0
    last_grafana_sync: Optional[datetime] = None
    last_entra_sync: Optional[datetime] = None
    changes_today: ChangeCounts = Field(default_factory=ChangeCounts)
    changes_last_3_days: ChangeCounts = Field(default_factory=ChangeCounts)
    changes_last_7_days: ChangeCounts = Field(default_factory=ChangeCounts)


class SyncStatus(BaseModel):
    """Service-wide status report."""

    generated_at: datetime
    grafana_ok: bool
    entra_ok: bool
    grafana_last_ok: Optional[datetime] = None
    entra_last_ok: Optional[datetime] = None
    auto_sync_enabled: bool = True
    last_run_at: Optional[datetime] = None
    last_run_message: str = ""
    plan_id: Optional[int] = None
    plan_status: Optional[PlanStatus] = None
    plan_action_count: int = 0
    orgs: List[OrgStatus] = Field(default_factory=list)


class SyncEngine:
    """Owns the build/apply lifecycle of the single current plan."""

    def __init__(
        self,
        store: MappingStore,
        grafana_client: GrafanaClient,
        entra_client: EntraClient,
        default_user_role: str = "Viewer",
        allow_create_users: bool = True,
        allow_remove_team_members: bool = True,
        cycle_timeout_seconds: float = 600,
        lock_ttl_seconds: int = 900,
        audit_logger: Optional[AuditLogger] = None,
        progress_callback: Optional[Callable[[ExecutionResult], None]] = None,
        holder: Optional[str] = None,
    ) -> None:
        """Initialize sync engine.

        Args:
            store: Mapping store
            grafana_client: Grafana API client
            entra_client: Entra API client
            default_user_role: Service-wide default org role
            allow_create_users: Plan account creation for unknown members
            allow_remove_team_members: Plan removal of stale team members
            cycle_timeout_seconds: Upper bound on one preview, apply or full run
            lock_ttl_seconds: Expiry of the cross-process run lease
            audit_logger: Audit logger; defaults to one writing to ``store``
            progress_callback: Optional per-action progress callback
            holder: Lease holder identity; defaults to host:pid:random
        """
        self.store = store
        self.grafana_client = grafana_client
        self.entra_client = entra_client
        self.cycle_timeout_seconds = cycle_timeout_seconds
        self.lock_ttl_seconds = lock_ttl_seconds

        self.builder = PlanBuilder(
            store=store,
            grafana_client=grafana_client,
            entra_client=entra_client,
            default_user_role=default_user_role,
            allow_create_users=allow_create_users,
            allow_remove_team_members=allow_remove_team_members,
        )
        self.executor = PlanExecutor(
            grafana_client=grafana_client,
            store=store,
            audit_logger=audit_logger or AuditLogger(store),
            progress_callback=progress_callback,
        )

        self.holder = holder or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._run_lock = asyncio.Lock()

        self._status_lock = threading.Lock()
        self._last_run: Optional[datetime] = None
        self._last_message = ""

        self._logger = logger.bind(component="SyncEngine", holder=self.holder)

    # Execution slot

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    @asynccontextmanager
    async def _slot(self, wait: bool) -> AsyncIterator[None]:
        """Hold the execution slot for the duration of the block.

        Raises:
            SyncInProgressError: If ``wait`` is False and the slot is taken,
                or another process holds the store lease
        """
        if not wait and self._run_lock.locked():
            raise SyncInProgressError("A sync operation is already running")
        async with self._run_lock:
            if not self.store.acquire_run_lease(self.holder, self.lock_ttl_seconds):
                holder = self.store.run_lease_holder()
                raise SyncInProgressError(
                    f"A sync operation is already running in another process ({holder})",
                    holder=holder,
                )
            try:
                yield
            finally:
                self.store.release_run_lease(self.holder)

    async def _bounded(self, operation: Awaitable[T]) -> T:
        return await asyncio.wait_for(operation, timeout=self.cycle_timeout_seconds)

    def _renew_lease(self) -> None:
        """Extend our store lease, failing if another process has taken it over.

        Raises:
            SyncInProgressError: If the lease now belongs to another holder
        """
        if not self.store.acquire_run_lease(self.holder, self.lock_ttl_seconds):
            holder = self.store.run_lease_holder()
            raise SyncInProgressError(
                f"Run lease was taken over by another process ({holder})",
                holder=holder,
            )

    # Plan operations

    async def preview(self, wait: bool = False) -> Plan:
        """Build a plan from live state and store it as the current plan."""
        async with self._slot(wait):
            return await self._bounded(self._build_and_store())

    def latest_plan(self) -> Optional[Plan]:
        return self.store.latest_plan()

    async def clear_plan(self, wait: bool = False) -> None:
        async with self._slot(wait):
            self.store.clear_plan()
            self._logger.info("Cleared plan")

    async def apply_latest(self, wait: bool = False) -> ExecutionResult:
        """Execute every executable action of the current plan.

        Raises:
            NoPlanError: If no plan is stored
        """
        async with self._slot(wait):
            plan = self.store.latest_plan()
            if plan is None:
                raise NoPlanError("No plan available; run a preview first")
            return await self._bounded(
                self._execute(plan, plan.executable_actions, PlanStatus.APPLYING, PlanStatus.APPLIED)
            )

    async def apply_selected(self, action_ids: Iterable[int], wait: bool = False) -> ExecutionResult:
        """Execute the chosen actions of the current plan.

        Raises:
            NoPlanError: If no plan is stored
            NoActionsSelectedError: If none of the ids name an executable action
        """
        ids = list(action_ids)
        async with self._slot(wait):
            plan = self.store.latest_plan()
            if plan is None:
                raise NoPlanError("No plan available; run a preview first")
            selected = plan.select(ids)
            if not selected:
                raise NoActionsSelectedError("No executable actions selected")
            return await self._bounded(
                self._execute(plan, selected, PlanStatus.APPLYING_SELECTED, PlanStatus.APPLIED_SELECTED)
            )

    async def run(self, wait: bool = True) -> ExecutionResult:
        """Build, store and apply a fresh plan in one slot."""
        start = datetime.now(timezone.utc)
        self._logger.info("Sync run starting")
        try:
            async with self._slot(wait):
                result = await self._bounded(self._cycle())
        except SyncInProgressError:
            raise
        except Exception as e:
            self._finish(start, e)
            raise
        self._finish(start, None)
        return result

    async def _build_and_store(self) -> Plan:
        plan = await self.builder.build_plan()
        return self.store.replace_plan(plan)

    async def _cycle(self) -> ExecutionResult:
        plan = await self._build_and_store()
        self._renew_lease()
        return await self._execute(plan, plan.executable_actions, PlanStatus.APPLYING, PlanStatus.APPLIED)

    async def _execute(
        self,
        plan: Plan,
        actions: List,
        running: PlanStatus,
        done: PlanStatus,
    ) -> ExecutionResult:
        # Recorded before execution so a crash leaves a visible in-progress status
        self.store.update_plan_status(plan.id, running)
        try:
            result = await self.executor.execute(actions, execution_id=f"plan{plan.id}_{uuid.uuid4().hex[:8]}")
        except BaseException:
            self.store.update_plan_status(plan.id, PlanStatus.FAILED)
            raise
        self.store.update_plan_status(plan.id, done)
        return result

    # Last-run status

    def _finish(self, start: datetime, error: Optional[BaseException]) -> None:
        elapsed = datetime.now(timezone.utc) - start
        if error is not None:
            self._logger.error("Sync run failed", elapsed_seconds=elapsed.total_seconds(), error=str(error))
        else:
            self._logger.info("Sync run completed", elapsed_seconds=elapsed.total_seconds())
        self.record_run(error)

    def record_run(self, error: Optional[BaseException]) -> None:
        with self._status_lock:
            self._last_run = datetime.now(timezone.utc)
            self._last_message = str(error) if error is not None else "ok"

    def last_run(self) -> Tuple[Optional[datetime], str]:
        with self._status_lock:
            return self._last_run, self._last_message

    # Status report

    async def status(self, now: Optional[datetime] = None) -> SyncStatus:
        """Report reachability and recent ledger activity per org."""
        now = now or datetime.now(timezone.utc)
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        since_3d = now - timedelta(days=3)
        since_7d = now - timedelta(days=7)

        entra_ok = await self.entra_client.health_check()
        grafana_ok = True

        orgs: List[OrgStatus] = []
        for org in self.store.list_orgs():
            status = OrgStatus(
                org_id=org.id,
                grafana_org_id=org.grafana_org_id,
                name=org.name,
                entra_access_ok=entra_ok,
                last_entra_sync=self.entra_client.last_ok,
                last_grafana_sync=self.store.latest_sync_action_time(org.id),
            )
            try:
                users = await self.grafana_client.list_org_users(org.grafana_org_id)
                status.grafana_access_ok = True
                status.grafana_users_total = len(users)
            except APIError as e:
                self._logger.warning("Grafana org check failed", org_id=org.id, error=str(e))
                grafana_ok = False

            for field_name, since in (
                ("changes_today", start_of_day),
                ("changes_last_3_days", since_3d),
                ("changes_last_7_days", since_7d),
            ):
                setattr(
                    status,
                    field_name,
                    ChangeCounts(
                        users=self.store.count_distinct_user_changes_since(org.id, since),
                        teams=self.store.count_distinct_team_changes_since(org.id, since),
                    ),
                )
            orgs.append(status)

        if not orgs:
            grafana_ok = await self.grafana_client.health_check()

        plan = self.store.latest_plan()
        last_run, last_message = self.last_run()
        return SyncStatus(
            generated_at=now,
            grafana_ok=grafana_ok,
            entra_ok=entra_ok,
            grafana_last_ok=self.grafana_client.last_ok,
            entra_last_ok=self.entra_client.last_ok,
            auto_sync_enabled=self.store.auto_sync_enabled(),
            last_run_at=last_run,
            last_run_message=last_message,
            plan_id=plan.id if plan else None,
            plan_status=plan.status if plan else None,
            plan_action_count=len(plan.actions) if plan else 0,
            orgs=orgs,
        )
