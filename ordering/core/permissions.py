"""
Role Capability Table

One lookup answers every access question on the server and is served
verbatim to the admin UI from ``GET /api/admin/capabilities``:

    role -> diet partition -> allowed actions

Diet-partitioned actions (catalog CRUD, order status updates) are keyed by
``DietPartition``. Account-wide actions (user management, reports) do not
depend on any partition and live in a separate table.
"""

import enum
from dataclasses import dataclass
from typing import Iterable, Optional

from ordering.core.errors import ForbiddenError


class Role(str, enum.Enum):
    """User roles. Stored on the user row."""
    SUPER_ADMIN = "super-admin"
    VEG_ADMIN = "veg-admin"
    NON_VEG_ADMIN = "non-veg-admin"
    CUSTOMER = "customer"
    GUEST = "guest"

    @property
    def is_admin(self) -> bool:
        return self in ADMIN_ROLES

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


class DietPartition(str, enum.Enum):
    """Vegetarian / non-vegetarian split that scopes admin permissions."""
    VEG = "veg"
    NON_VEG = "non-veg"
    MIXED = "mixed"

    @classmethod
    def of_flag(cls, is_vegetarian: bool) -> "DietPartition":
        return cls.VEG if is_vegetarian else cls.NON_VEG

    @classmethod
    def of_items(cls, flags: Iterable[bool]) -> "DietPartition":
        """Partition of a set of items: all veg, all non-veg, or mixed."""
        seen = set(flags)
        if seen == {True}:
            return cls.VEG
        if seen == {False}:
            return cls.NON_VEG
        return cls.MIXED


class Action(str, enum.Enum):
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UPDATE_ORDER_STATUS = "update_order_status"


class GlobalAction(str, enum.Enum):
    VIEW_USERS = "view_users"
    UPDATE_USER_ROLES = "update_user_roles"
    VIEW_ANALYTICS = "view_analytics"
    EXPORT_REPORTS = "export_reports"
    MANAGE_GUESTS = "manage_guests"


ADMIN_ROLES = frozenset({Role.SUPER_ADMIN, Role.VEG_ADMIN, Role.NON_VEG_ADMIN})


@dataclass(frozen=True)
class Principal:
    """Who is making a request: an authenticated user or a guest session."""
    user_id: int
    role: Role
    session_id: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST

    @property
    def is_admin(self) -> bool:
        return self.role.is_admin


_ALL = frozenset(Action)
_VIEW_ONLY = frozenset({Action.VIEW})
_NOTHING: frozenset = frozenset()

CAPABILITIES: dict[Role, dict[DietPartition, frozenset]] = {
    Role.SUPER_ADMIN: {
        DietPartition.VEG: _ALL,
        DietPartition.NON_VEG: _ALL,
        DietPartition.MIXED: _ALL,
    },
    Role.VEG_ADMIN: {
        DietPartition.VEG: _ALL,
        DietPartition.NON_VEG: _VIEW_ONLY,
        DietPartition.MIXED: _VIEW_ONLY,
    },
    Role.NON_VEG_ADMIN: {
        DietPartition.VEG: _VIEW_ONLY,
        DietPartition.NON_VEG: _ALL,
        DietPartition.MIXED: _VIEW_ONLY,
    },
    Role.CUSTOMER: {p: _NOTHING for p in DietPartition},
    Role.GUEST: {p: _NOTHING for p in DietPartition},
}

GLOBAL_CAPABILITIES: dict[Role, frozenset] = {
    Role.SUPER_ADMIN: frozenset(GlobalAction),
    Role.VEG_ADMIN: frozenset({GlobalAction.VIEW_ANALYTICS}),
    Role.NON_VEG_ADMIN: frozenset({GlobalAction.VIEW_ANALYTICS}),
    Role.CUSTOMER: frozenset(),
    Role.GUEST: frozenset(),
}

_DISPLAY_NAMES = {
    Role.SUPER_ADMIN: "Super Administrator",
    Role.VEG_ADMIN: "Vegetarian Admin",
    Role.NON_VEG_ADMIN: "Non-Vegetarian Admin",
    Role.CUSTOMER: "Customer",
    Role.GUEST: "Guest",
}


def can(role: Role, action: Action, partition: DietPartition) -> bool:
    """Check a diet-partitioned action."""
    return action in CAPABILITIES.get(role, {}).get(partition, _NOTHING)


def can_global(role: Role, action: GlobalAction) -> bool:
    """Check an account-wide action."""
    return action in GLOBAL_CAPABILITIES.get(role, _NOTHING)


def require(role: Role, action: Action, partition: DietPartition) -> None:
    """Raise ForbiddenError unless ``role`` may perform ``action`` on ``partition``."""
    if not can(role, action, partition):
        raise ForbiddenError(
            f"Role '{role.value}' may not {action.value} {partition.value} resources"
        )


def require_global(role: Role, action: GlobalAction) -> None:
    """Raise ForbiddenError unless ``role`` holds the account-wide ``action``."""
    if not can_global(role, action):
        raise ForbiddenError(f"Role '{role.value}' may not {action.value}")


def visible_partitions(role: Role, action: Action = Action.VIEW) -> list[DietPartition]:
    """Partitions in which ``role`` may perform ``action``."""
    return [p for p in DietPartition if can(role, action, p)]


def vegetarian_filter(role: Role, action: Action) -> Optional[bool]:
    """
    Narrow a catalog query to what ``role`` may act on.

    Returns True (veg only), False (non-veg only), or None (no filter).
    """
    allowed_veg = can(role, action, DietPartition.VEG)
    allowed_non_veg = can(role, action, DietPartition.NON_VEG)
    if allowed_veg and not allowed_non_veg:
        return True
    if allowed_non_veg and not allowed_veg:
        return False
    return None


def capabilities_for(role: Role) -> dict:
    """Serializable form of one role's row."""
    return {
        "role": role.value,
        "display_name": role.display_name,
        "partitions": {
            partition.value: sorted(a.value for a in actions)
            for partition, actions in CAPABILITIES[role].items()
        },
        "global": sorted(a.value for a in GLOBAL_CAPABILITIES[role]),
    }


def capability_table() -> dict:
    """Serializable form of the whole table."""
    return {"roles": {role.value: capabilities_for(role) for role in Role}}
