"""
Capability table for engine operations.

Role checks are data: a mapping of (role, action) -> allowed, handed to the
engine instead of conditionals scattered through handlers.
"""
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from .errors import PermissionDenied

SUPER_ADMIN = "SUPER_ADMIN"
ADMIN = "ADMIN"
AGENT = "AGENT"
CUSTOMER = "CUSTOMER"

ROLES = (SUPER_ADMIN, ADMIN, AGENT, CUSTOMER)


@dataclass(frozen=True)
class Actor:
    """The acting user as handed over by the identity layer."""
    id: Optional[uuid.UUID]
    role: str


def _grant(roles: Iterable[str], *actions: str) -> Dict[Tuple[str, str], bool]:
    return {(role, action): True for role in roles for action in actions}


STAFF = (SUPER_ADMIN, ADMIN, AGENT)
MANAGERS = (SUPER_ADMIN, ADMIN)

DEFAULT_CAPABILITIES: Dict[Tuple[str, str], bool] = {
    **_grant(ROLES, "reservation:create"),
    **_grant(STAFF, "reservation:confirm", "reservation:cancel", "reservation:complete",
             "reservation:no_show", "reservation:payment", "reservation:convert"),
    **_grant(STAFF, "rental:create", "rental:sign", "rental:update", "rental:complete", "rental:cancel"),
    **_grant(MANAGERS, "rental:mark_overdue"),
    **_grant(STAFF, "reservation:view_all", "rental:view_assigned", "commission:view"),
    **_grant(MANAGERS, "rental:view_all", "commission:view_all"),
    **_grant(STAFF, "vehicle:maintenance"),
    **_grant(MANAGERS, "vehicle:manage", "customer:blacklist"),
    **_grant(STAFF, "customer:manage", "expense:create"),
    **_grant(MANAGERS, "commission:approve", "commission:pay", "commission:adjust"),
    **_grant(MANAGERS, "commission:alter_paid"),
    **_grant(MANAGERS, "report:profitability"),
    **_grant((SUPER_ADMIN,), "user:manage_admin"),
}


@dataclass
class PermissionTable:
    capabilities: Dict[Tuple[str, str], bool] = field(default_factory=lambda: dict(DEFAULT_CAPABILITIES))

    def allows(self, role: Optional[str], action: str) -> bool:
        if not role:
            return False
        return bool(self.capabilities.get((role.upper(), action), False))

    def require(self, actor: Optional[Actor], action: str) -> None:
        """
        Raise PermissionDenied unless the actor may perform the action.
        A missing actor means an internal/system call and is not checked.
        """
        if actor is None:
            return
        if not self.allows(actor.role, action):
            raise PermissionDenied(
                f"Role {actor.role} may not perform {action}",
                role=actor.role,
                action=action,
            )

    def with_overrides(self, overrides: Dict[Tuple[str, str], bool]) -> "PermissionTable":
        merged = dict(self.capabilities)
        merged.update(overrides)
        return PermissionTable(merged)


default_permissions = PermissionTable()
