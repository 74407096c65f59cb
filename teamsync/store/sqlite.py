"""SQLite-backed mapping store: orgs, mappings, the current plan and the action ledger."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Union

import structlog
from sqlalchemy import create_engine, delete, event, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from teamsync.clients.exceptions import StoreError
from teamsync.core.actions import BaseAction, Plan, PlanStatus, action_from_row
from teamsync.store.models import (
    Base,
    Mapping,
    Org,
    PlanActionRecord,
    PlanRecord,
    RunLease,
    Setting,
    SyncAction,
)

logger = structlog.get_logger(__name__)

AUTO_SYNC_SETTING_KEY = "auto_sync_enabled"

RUN_LEASE_NAME = "sync"

# Ledger kinds counted as user-level changes in status reports
USER_CHANGE_KINDS = (
    "create_user",
    "add_user_to_org",
    "update_user_role",
    "add_user_to_team",
    "update_team_role",
    "remove_user_from_team",
)

TEAM_CHANGE_KINDS = ("create_team",)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MappingStore:
    """Durable store for the sync service.

    Every public method runs in its own transaction and raises
    :class:`StoreError` on any persistence failure.
    """

    def __init__(self, database: Union[str, Path], echo: bool = False) -> None:
        """Open (and create if needed) the store.

        Args:
            database: Path to the SQLite file, or a full SQLAlchemy URL
            echo: Log emitted SQL
        """
        if isinstance(database, Path) or "://" not in str(database):
            path = Path(database)
            path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{path}"
        else:
            url = str(database)

        self.url = url
        self._engine = create_engine(url, echo=echo, future=True)
        event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
        self._sessionmaker = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._logger = logger.bind(database=url)

        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to initialise schema: {e}") from e

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            self._logger.error("Store operation failed", error=str(e))
            raise StoreError(str(e)) from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # Settings

    def get_setting(self, key: str) -> Optional[str]:
        with self._session() as db:
            setting = db.get(Setting, key)
            return setting.value if setting else None

    def set_setting(self, key: str, value: str) -> None:
        with self._session() as db:
            setting = db.get(Setting, key)
            if setting is None:
                db.add(Setting(key=key, value=value, updated_at=_utcnow()))
            else:
                setting.value = value
                setting.updated_at = _utcnow()

    def auto_sync_enabled(self) -> bool:
        """Auto-sync is on unless it has been explicitly switched off."""
        value = self.get_setting(AUTO_SYNC_SETTING_KEY)
        if value is None:
            return True
        return value.strip().lower() in ("1", "true", "yes", "on")

    def set_auto_sync_enabled(self, enabled: bool) -> None:
        self.set_setting(AUTO_SYNC_SETTING_KEY, "true" if enabled else "false")

    # Orgs

    def list_orgs(self) -> List[Org]:
        with self._session() as db:
            return list(db.scalars(select(Org).order_by(Org.name.asc(), Org.id.asc())).all())

    def get_org(self, org_id: int) -> Optional[Org]:
        with self._session() as db:
            return db.get(Org, org_id)

    def create_org(self, grafana_org_id: int, name: str, default_role: str = "Viewer") -> Org:
        """Register a Grafana org.

        Raises:
            StoreError: If the Grafana org id is already registered
        """
        org = Org(grafana_org_id=grafana_org_id, name=name, default_role=default_role or "Viewer")
        try:
            with self._session() as db:
                db.add(org)
                db.flush()
        except StoreError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise StoreError(f"Grafana org {grafana_org_id} is already registered") from e.__cause__
            raise
        self._logger.info("Created org", org_id=org.id, grafana_org_id=grafana_org_id)
        return org

    def delete_org(self, org_id: int) -> bool:
        """Delete an org and its mappings. Returns False if it did not exist."""
        with self._session() as db:
            org = db.get(Org, org_id)
            if org is None:
                return False
            db.execute(delete(Mapping).where(Mapping.org_id == org_id))
            db.delete(org)
        self._logger.info("Deleted org", org_id=org_id)
        return True

    # Mappings

    def list_mappings(self, org_id: Optional[int] = None) -> List[Mapping]:
        with self._session() as db:
            stmt = select(Mapping).order_by(Mapping.id.asc())
            if org_id is not None:
                stmt = stmt.where(Mapping.org_id == org_id)
            return list(db.scalars(stmt).all())

    def get_mapping(self, mapping_id: int) -> Optional[Mapping]:
        with self._session() as db:
            return db.get(Mapping, mapping_id)

    def create_mapping(
        self,
        org_id: int,
        grafana_team_name: str,
        external_group_id: str,
        external_group_name: str = "",
        team_role: str = "member",
        role_override: str = "",
    ) -> Mapping:
        """Create a mapping.

        Raises:
            StoreError: If the org does not exist
        """
        mapping = Mapping(
            org_id=org_id,
            grafana_team_name=grafana_team_name,
            grafana_team_id=0,
            external_group_id=external_group_id,
            external_group_name=external_group_name,
            team_role=team_role,
            role_override=role_override,
            updated_at=_utcnow(),
        )
        with self._session() as db:
            if db.get(Org, org_id) is None:
                raise StoreError(f"Org {org_id} does not exist")
            db.add(mapping)
            db.flush()
        self._logger.info("Created mapping", mapping_id=mapping.id, org_id=org_id, team=grafana_team_name)
        return mapping

    def delete_mapping(self, mapping_id: int) -> bool:
        with self._session() as db:
            result = db.execute(delete(Mapping).where(Mapping.id == mapping_id))
            return result.rowcount > 0

    def delete_mappings_not_in_group_ids(self, group_ids: Iterable[str]) -> int:
        """Delete mappings whose directory group is not listed.

        An empty ``group_ids`` deletes nothing.
        """
        ids = list(group_ids)
        if not ids:
            return 0
        with self._session() as db:
            result = db.execute(delete(Mapping).where(Mapping.external_group_id.not_in(ids)))
            return result.rowcount

    def update_mapping_team_id_for_name(self, org_id: int, team_name: str, team_id: int) -> int:
        """Cache a resolved team id on every mapping of ``org_id`` targeting ``team_name``."""
        with self._session() as db:
            result = db.execute(
                update(Mapping)
                .where(Mapping.org_id == org_id)
                .where(func.lower(Mapping.grafana_team_name) == team_name.lower())
                .values(grafana_team_id=team_id, updated_at=_utcnow())
            )
            return result.rowcount

    # Plan

    def replace_plan(self, plan: Plan) -> Plan:
        """Atomically replace the current plan and return it with assigned ids."""
        with self._session() as db:
            db.execute(delete(PlanActionRecord))
            db.execute(delete(PlanRecord))
            record = PlanRecord(
                created_at=plan.created_at,
                status=PlanStatus(plan.status).value,
            )
            record.actions = [PlanActionRecord(**action.to_row()) for action in plan.actions]
            db.add(record)
            db.flush()
            stored = self._to_plan(record)
        self._logger.info("Stored plan", plan_id=stored.id, action_count=len(stored.actions))
        return stored

    def clear_plan(self) -> None:
        with self._session() as db:
            db.execute(delete(PlanActionRecord))
            db.execute(delete(PlanRecord))

    def latest_plan(self) -> Optional[Plan]:
        with self._session() as db:
            record = db.scalars(
                select(PlanRecord).order_by(PlanRecord.id.desc()).limit(1)
            ).first()
            if record is None:
                return None
            return self._to_plan(record)

    def update_plan_status(self, plan_id: int, status: Union[PlanStatus, str]) -> None:
        with self._session() as db:
            db.execute(
                update(PlanRecord)
                .where(PlanRecord.id == plan_id)
                .values(status=PlanStatus(status).value)
            )

    @staticmethod
    def _to_plan(record: PlanRecord) -> Plan:
        return Plan(
            id=record.id,
            created_at=_as_utc(record.created_at),
            status=PlanStatus(record.status),
            actions=[action_from_row(row.as_row()) for row in record.actions],
        )

    # Ledger

    def record_sync_action(self, action: BaseAction, at: Optional[datetime] = None) -> None:
        row = action.to_row()
        with self._session() as db:
            db.add(
                SyncAction(
                    created_at=_as_utc(at) if at else _utcnow(),
                    org_id=action.org_id,
                    grafana_org_id=action.grafana_org_id,
                    action_type=action.kind,
                    team_name=row["team_name"],
                    email=row["email"].strip().lower(),
                )
            )

    def list_sync_actions(self, limit: int = 50, org_id: Optional[int] = None) -> List[SyncAction]:
        with self._session() as db:
            stmt = select(SyncAction).order_by(SyncAction.created_at.desc(), SyncAction.id.desc()).limit(limit)
            if org_id is not None:
                stmt = stmt.where(SyncAction.org_id == org_id)
            actions = list(db.scalars(stmt).all())
        for action in actions:
            action.created_at = _as_utc(action.created_at)
        return actions

    def latest_sync_action_time(self, org_id: int) -> Optional[datetime]:
        with self._session() as db:
            value = db.scalar(select(func.max(SyncAction.created_at)).where(SyncAction.org_id == org_id))
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return _as_utc(value)

    def count_distinct_user_changes_since(self, org_id: int, since: datetime) -> int:
        with self._session() as db:
            return db.scalar(
                select(func.count(func.distinct(SyncAction.email)))
                .where(SyncAction.org_id == org_id)
                .where(SyncAction.created_at >= _as_utc(since))
                .where(SyncAction.email != "")
                .where(SyncAction.action_type.in_(USER_CHANGE_KINDS))
            ) or 0

    def count_distinct_team_changes_since(self, org_id: int, since: datetime) -> int:
        with self._session() as db:
            return db.scalar(
                select(func.count(func.distinct(SyncAction.team_name)))
                .where(SyncAction.org_id == org_id)
                .where(SyncAction.created_at >= _as_utc(since))
                .where(SyncAction.team_name != "")
                .where(SyncAction.action_type.in_(TEAM_CHANGE_KINDS))
            ) or 0

    # Run lease

    def acquire_run_lease(self, holder: str, ttl_seconds: int, name: str = RUN_LEASE_NAME) -> bool:
        """Take the cross-process run slot if it is free, expired, or already ours."""
        now = _utcnow()
        expires = now + timedelta(seconds=ttl_seconds)
        with self._session() as db:
            lease = db.get(RunLease, name, with_for_update=True)
            if lease is None:
                db.add(RunLease(name=name, holder=holder, acquired_at=now, expires_at=expires))
                try:
                    db.flush()
                except IntegrityError:
                    db.rollback()
                    return False
                return True
            if lease.holder != holder and _as_utc(lease.expires_at) > now:
                return False
            lease.holder = holder
            lease.acquired_at = now
            lease.expires_at = expires
            return True

    def release_run_lease(self, holder: str, name: str = RUN_LEASE_NAME) -> None:
        with self._session() as db:
            db.execute(delete(RunLease).where(RunLease.name == name).where(RunLease.holder == holder))

    def run_lease_holder(self, name: str = RUN_LEASE_NAME) -> Optional[str]:
        """Return the holder of an unexpired lease, if any."""
        with self._session() as db:
            lease = db.get(RunLease, name)
            if lease is None or _as_utc(lease.expires_at) <= _utcnow():
                return None
            return lease.holder


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()
