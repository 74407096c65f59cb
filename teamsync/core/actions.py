"""Plan action types, phase ordering and role precedence helpers."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ActionKind(str, Enum):
    """Kinds of change a plan can contain."""
    CREATE_TEAM = "create_team"
    CREATE_USER = "create_user"
    BLOCKED_CREATE_USER = "blocked_create_user"
    ADD_USER_TO_ORG = "add_user_to_org"
    UPDATE_USER_ROLE = "update_user_role"
    ADD_USER_TO_TEAM = "add_user_to_team"
    UPDATE_TEAM_ROLE = "update_team_role"
    REMOVE_USER_FROM_TEAM = "remove_user_from_team"


class PlanStatus(str, Enum):
    """Lifecycle states of the current plan."""
    PLANNED = "planned"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    APPLYING_SELECTED = "applying-selected"
    APPLIED_SELECTED = "applied-selected"


# Execution phases. Blocked entries are informational and lead the list.
PHASE_ORDER = {
    ActionKind.BLOCKED_CREATE_USER.value: 0,
    ActionKind.CREATE_TEAM.value: 1,
    ActionKind.CREATE_USER.value: 2,
    ActionKind.ADD_USER_TO_ORG.value: 3,
    ActionKind.UPDATE_USER_ROLE.value: 4,
    ActionKind.ADD_USER_TO_TEAM.value: 5,
    ActionKind.UPDATE_TEAM_ROLE.value: 6,
    ActionKind.REMOVE_USER_FROM_TEAM.value: 7,
}

ROLE_RANK = {"Viewer": 1, "Editor": 2, "Admin": 3}

TEAM_ROLE_MEMBER = "member"
TEAM_ROLE_ADMIN = "admin"


class BaseAction(BaseModel):
    """Fields shared by every plan action."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    org_id: int
    grafana_org_id: int
    external_group_id: str = ""
    note: str = ""

    @property
    def action_kind(self) -> ActionKind:
        return ActionKind(self.kind)

    @property
    def phase(self) -> int:
        return PHASE_ORDER[self.kind]

    @property
    def selectable(self) -> bool:
        """Whether an operator may execute this action."""
        return self.kind != ActionKind.BLOCKED_CREATE_USER.value

    def to_row(self) -> dict:
        """Flatten to the persisted column set, filling absent fields with zero values."""
        row = {
            "action_type": self.kind,
            "org_id": self.org_id,
            "grafana_org_id": self.grafana_org_id,
            "team_id": 0,
            "team_name": "",
            "team_role": "",
            "user_id": 0,
            "email": "",
            "display_name": "",
            "role": "",
            "external_group_id": self.external_group_id,
            "note": self.note,
        }
        for key in row:
            if key in type(self).model_fields and key not in ("org_id", "grafana_org_id"):
                row[key] = getattr(self, key)
        return row


class CreateTeam(BaseAction):
    kind: Literal["create_team"] = "create_team"
    team_id: int = 0
    team_name: str
    team_role: str = TEAM_ROLE_MEMBER


class CreateUser(BaseAction):
    kind: Literal["create_user"] = "create_user"
    email: str
    display_name: str = ""
    role: str = ""
    team_id: int = 0
    team_name: str = ""


class BlockedCreateUser(BaseAction):
    kind: Literal["blocked_create_user"] = "blocked_create_user"
    email: str
    display_name: str = ""
    role: str = ""
    team_id: int = 0
    team_name: str = ""


class AddUserToOrg(BaseAction):
    kind: Literal["add_user_to_org"] = "add_user_to_org"
    email: str
    user_id: int = 0
    role: str


class UpdateUserRole(BaseAction):
    kind: Literal["update_user_role"] = "update_user_role"
    email: str
    user_id: int = 0
    role: str


class AddUserToTeam(BaseAction):
    kind: Literal["add_user_to_team"] = "add_user_to_team"
    team_id: int = 0
    team_name: str
    team_role: str = TEAM_ROLE_MEMBER
    email: str
    user_id: int = 0
    role: str = ""


class UpdateTeamRole(BaseAction):
    kind: Literal["update_team_role"] = "update_team_role"
    team_id: int = 0
    team_name: str
    team_role: str = TEAM_ROLE_ADMIN
    email: str
    user_id: int = 0


class RemoveUserFromTeam(BaseAction):
    kind: Literal["remove_user_from_team"] = "remove_user_from_team"
    team_id: int = 0
    team_name: str
    email: str
    user_id: int = 0


PlanAction = Annotated[
    Union[
        CreateTeam,
        CreateUser,
        BlockedCreateUser,
        AddUserToOrg,
        UpdateUserRole,
        AddUserToTeam,
        UpdateTeamRole,
        RemoveUserFromTeam,
    ],
    Field(discriminator="kind"),
]

PlanActionAdapter: TypeAdapter = TypeAdapter(PlanAction)


def action_from_row(row: dict) -> BaseAction:
    """Rebuild a typed action from a persisted row."""
    data = dict(row)
    data["kind"] = data.pop("action_type", data.get("kind"))
    return PlanActionAdapter.validate_python(data)


class Plan(BaseModel):
    """The single current reconciliation proposal."""

    id: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: PlanStatus = PlanStatus.PLANNED
    actions: List[PlanAction] = Field(default_factory=list)

    @property
    def executable_actions(self) -> List[BaseAction]:
        return [action for action in self.actions if action.selectable]

    def select(self, action_ids: Iterable[int]) -> List[BaseAction]:
        """Return the selectable actions whose ids are in ``action_ids``, in plan order."""
        wanted = set(action_ids)
        return [
            action for action in self.actions
            if action.id in wanted and action.selectable
        ]


def sort_actions(actions: List[BaseAction]) -> List[BaseAction]:
    """Stable-sort actions into execution phase order."""
    return sorted(actions, key=lambda action: action.phase)


def normalize_org_role(role: Optional[str]) -> str:
    """Canonicalise an org role name; unknown or empty values normalise to ''."""
    if not role:
        return ""
    cleaned = role.strip().lower()
    for name in ROLE_RANK:
        if name.lower() == cleaned:
            return name
    return ""


def max_role(current: str, candidate: str) -> str:
    """Return the stronger of two org roles. An empty current always yields candidate."""
    if ROLE_RANK.get(candidate, 0) > ROLE_RANK.get(current, 0):
        return candidate
    if not current:
        return candidate
    return current


def normalize_team_role(role: Optional[str]) -> str:
    if (role or "").strip().lower() == TEAM_ROLE_ADMIN:
        return TEAM_ROLE_ADMIN
    return TEAM_ROLE_MEMBER


def max_team_role(current: str, candidate: str) -> str:
    """Admin dominates member unconditionally."""
    if candidate.lower() == TEAM_ROLE_ADMIN:
        return TEAM_ROLE_ADMIN
    if not current:
        return TEAM_ROLE_MEMBER
    return current


def team_key(org_id: int, team_name: str) -> tuple[int, str]:
    return (org_id, team_name.lower())


def append_note(base: str, addition: str) -> str:
    base = (base or "").strip()
    addition = (addition or "").strip()
    if not addition:
        return base
    if not base:
        return addition
    return f"{base}; {addition}"


def mapping_note(
    org_name: Optional[str],
    org_id: int,
    team_name: Optional[str],
    team_id: Optional[int],
    group_name: Optional[str],
    group_id: Optional[str],
) -> str:
    """Describe the mapping responsible for an action.

    Example: ``mapping: Ops/platform <- gapp_ops_grf_platform (1f2e...)``
    """
    org_label = (org_name or "").strip() or f"org {org_id}"
    group_label = (group_name or "").strip()
    if not group_label:
        group_label = group_id or ""
    elif group_id:
        group_label = f"{group_label} ({group_id})"
    team_label = team_name or ""
    if not team_label.strip():
        team_label = f"team {team_id or 0}"
    return f"mapping: {org_label}/{team_label} <- {group_label}"
