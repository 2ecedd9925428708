from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    SUPPORT = "support"
    WAREHOUSE = "warehouse"
    FINANCE = "finance"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation. Passed explicitly to every call."""
    id: str
    role: ActorRole
    name: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role != ActorRole.CUSTOMER


# Permission codes
RETURNS_REVIEW = "returns:review"          # Ask for more information
RETURNS_RESUBMIT = "returns:resubmit"      # Customer answers a more-info request
RETURNS_APPROVE = "returns:approve"
RETURNS_REJECT = "returns:reject"
RETURNS_LOGISTICS = "returns:logistics"    # Pickup and transit updates
RETURNS_INSPECT = "returns:inspect"
RETURNS_NOTE = "returns:note"
REFUNDS_CREATE = "refunds:create"
REPLACEMENTS_CREATE = "replacements:create"
RETURNS_COMPLETE = "returns:complete"

ALL_PERMISSIONS: Set[str] = {
    RETURNS_REVIEW, RETURNS_RESUBMIT, RETURNS_APPROVE, RETURNS_REJECT,
    RETURNS_LOGISTICS, RETURNS_INSPECT, RETURNS_NOTE, REFUNDS_CREATE,
    REPLACEMENTS_CREATE, RETURNS_COMPLETE,
}

ROLE_PERMISSIONS: Dict[ActorRole, Set[str]] = {
    ActorRole.CUSTOMER: {RETURNS_RESUBMIT},
    ActorRole.SUPPORT: {
        RETURNS_REVIEW, RETURNS_APPROVE, RETURNS_REJECT,
        RETURNS_LOGISTICS, RETURNS_NOTE,
    },
    ActorRole.WAREHOUSE: {RETURNS_LOGISTICS, RETURNS_INSPECT, RETURNS_NOTE},
    ActorRole.FINANCE: {REFUNDS_CREATE, REPLACEMENTS_CREATE, RETURNS_COMPLETE, RETURNS_NOTE},
    ActorRole.ADMIN: set(ALL_PERMISSIONS),
    ActorRole.SUPER_ADMIN: set(ALL_PERMISSIONS),
}

# Permission needed to move INTO a status
_TARGET_PERMISSIONS: Dict[str, str] = {
    "more_info_needed": RETURNS_REVIEW,
    "approved": RETURNS_APPROVE,
    "rejected": RETURNS_REJECT,
    "pickup_scheduled": RETURNS_LOGISTICS,
    "pickup_failed": RETURNS_LOGISTICS,
    "awaiting_return": RETURNS_LOGISTICS,
    "picked_up": RETURNS_LOGISTICS,
    "in_transit": RETURNS_LOGISTICS,
    "received": RETURNS_LOGISTICS,
    "inspecting": RETURNS_INSPECT,
    "inspection_passed": RETURNS_INSPECT,
    "inspection_failed": RETURNS_INSPECT,
    "refund_initiated": REFUNDS_CREATE,
    "refund_partial": REFUNDS_CREATE,
    "replacement_initiated": REPLACEMENTS_CREATE,
    "completed": RETURNS_COMPLETE,
}


def permission_for_transition(from_status: str, to_status: str) -> Optional[str]:
    """Permission code required for an edge, or None if no role may take it."""
    if from_status == "more_info_needed" and to_status == "pending":
        return RETURNS_RESUBMIT
    if from_status == "inspection_failed" and to_status == "rejected":
        return RETURNS_INSPECT
    return _TARGET_PERMISSIONS.get(to_status)


class PermissionChecker:
    """
    Permission checker for an actor role.
    SUPER_ADMIN automatically has all permissions.
    """

    def __init__(self, role: ActorRole, permissions: Optional[Set[str]] = None):
        self.role = role
        self.permissions = permissions if permissions is not None else ROLE_PERMISSIONS.get(role, set())

    def is_super_admin(self) -> bool:
        return self.role == ActorRole.SUPER_ADMIN

    def has_permission(self, permission_code: str) -> bool:
        if self.is_super_admin():
            return True
        return permission_code in self.permissions

    def can_transition(self, from_status: str, to_status: str) -> bool:
        code = permission_for_transition(from_status, to_status)
        if code is None:
            return False
        return self.has_permission(code)
