"""ORM tables for the mapping store."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Setting(Base):
    """Key/value operator settings (e.g. auto-sync toggle)."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Org(Base):
    """A Grafana organization under management."""

    __tablename__ = "orgs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    grafana_org_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    default_role: Mapped[str] = mapped_column(String(32), nullable=False, default="Viewer")

    mappings: Mapped[list["Mapping"]] = relationship(
        back_populates="org",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Mapping(Base):
    """Directory group to Grafana team rule."""

    __tablename__ = "mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("orgs.id", ondelete="CASCADE"), index=True, nullable=False
    )
    grafana_team_name: Mapped[str] = mapped_column(String(255), nullable=False)
    grafana_team_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    external_group_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_group_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    team_role: Mapped[str] = mapped_column(String(16), nullable=False, default="member")
    role_override: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    org: Mapped[Optional[Org]] = relationship(back_populates="mappings")


class PlanRecord(Base):
    """Header row of the single current plan."""

    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)

    actions: Mapped[list["PlanActionRecord"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="PlanActionRecord.id",
    )


class PlanActionRecord(Base):
    """One persisted plan action. Column set is shared by every action kind."""

    __tablename__ = "plan_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("plans.id", ondelete="CASCADE"), index=True, nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False)
    grafana_org_id: Mapped[int] = mapped_column(Integer, nullable=False)
    team_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    team_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    team_role: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    email: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    external_group_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")

    plan: Mapped[PlanRecord] = relationship(back_populates="actions")

    def as_row(self) -> dict:
        return {
            "id": self.id,
            "action_type": self.action_type,
            "org_id": self.org_id,
            "grafana_org_id": self.grafana_org_id,
            "team_id": self.team_id,
            "team_name": self.team_name,
            "team_role": self.team_role,
            "user_id": self.user_id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
            "external_group_id": self.external_group_id,
            "note": self.note,
        }


class SyncAction(Base):
    """Append-only ledger of executed actions."""

    __tablename__ = "sync_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    org_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    grafana_org_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    team_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    email: Mapped[str] = mapped_column(String(320), nullable=False, default="")


class RunLease(Base):
    """Cross-process run slot. At most one row, keyed by name."""

    __tablename__ = "run_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
