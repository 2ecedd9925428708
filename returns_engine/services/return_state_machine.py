"""
Return Request State Machine

This module is the SINGLE SOURCE OF TRUTH for return status transitions.
Every status change is checked here before anything is written:

1. the edge must exist in RETURN_TRANSITIONS
2. refund / replacement links can only be set once
3. the actor role must be allowed to take the edge (RBAC collaborator)
4. the payload must carry what the target status needs

The result is a TransitionPlan naming the side effect (if any) and the
fields to write when the transition is committed.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, List, Dict, Any

from returns_engine.core.errors import (
    InvalidAmountError,
    InvalidTransitionError,
    ForbiddenError,
    ReturnValidationError,
)
from returns_engine.core.permissions import Actor, ActorRole


# =============================================================================
# STATUS DEFINITIONS
# =============================================================================

class ReturnStatus:
    """Return status constants - use these instead of strings."""
    PENDING = "pending"
    MORE_INFO_NEEDED = "more_info_needed"
    APPROVED = "approved"
    REJECTED = "rejected"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKUP_FAILED = "pickup_failed"
    AWAITING_RETURN = "awaiting_return"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    INSPECTING = "inspecting"
    INSPECTION_PASSED = "inspection_passed"
    INSPECTION_FAILED = "inspection_failed"
    REFUND_INITIATED = "refund_initiated"
    REFUND_PARTIAL = "refund_partial"
    REPLACEMENT_INITIATED = "replacement_initiated"
    COMPLETED = "completed"

    @classmethod
    def all(cls) -> List[str]:
        return list(RETURN_TRANSITIONS.keys())


S = ReturnStatus

STATUS_LABELS: Dict[str, str] = {
    S.PENDING: "Pending Review",
    S.MORE_INFO_NEEDED: "More Info Needed",
    S.APPROVED: "Approved",
    S.REJECTED: "Rejected",
    S.PICKUP_SCHEDULED: "Pickup Scheduled",
    S.PICKUP_FAILED: "Pickup Failed",
    S.AWAITING_RETURN: "Awaiting Return",
    S.PICKED_UP: "Picked Up",
    S.IN_TRANSIT: "In Transit",
    S.RECEIVED: "Received",
    S.INSPECTING: "Quality Inspection",
    S.INSPECTION_PASSED: "Inspection Passed",
    S.INSPECTION_FAILED: "Inspection Failed",
    S.REFUND_INITIATED: "Refund Initiated",
    S.REFUND_PARTIAL: "Partial Refund Initiated",
    S.REPLACEMENT_INITIATED: "Replacement Initiated",
    S.COMPLETED: "Completed",
}


# =============================================================================
# TRANSITION RULES
# =============================================================================

RETURN_TRANSITIONS: Dict[str, List[str]] = {
    S.PENDING: [S.MORE_INFO_NEEDED, S.APPROVED, S.REJECTED],
    S.MORE_INFO_NEEDED: [
        S.PENDING,                  # Customer supplied the missing details
        S.APPROVED,
        S.REJECTED,
    ],
    S.APPROVED: [
        S.PICKUP_SCHEDULED,         # Reverse pickup
        S.AWAITING_RETURN,          # Customer ships it back
    ],
    S.PICKUP_SCHEDULED: [S.PICKED_UP, S.PICKUP_FAILED],
    S.PICKUP_FAILED: [
        S.APPROVED,                 # Re-drive: schedule again
        S.AWAITING_RETURN,
    ],
    S.AWAITING_RETURN: [S.RECEIVED],
    S.PICKED_UP: [S.IN_TRANSIT],
    S.IN_TRANSIT: [S.RECEIVED],
    S.RECEIVED: [S.INSPECTING],
    S.INSPECTING: [S.INSPECTION_PASSED, S.INSPECTION_FAILED],
    S.INSPECTION_PASSED: [
        S.REFUND_INITIATED,
        S.REFUND_PARTIAL,
        S.REPLACEMENT_INITIATED,
        S.COMPLETED,                # Repair handled offline
    ],
    S.INSPECTION_FAILED: [
        S.REJECTED,
        S.COMPLETED,                # Item sent back to the customer
    ],
    S.REFUND_INITIATED: [S.COMPLETED],
    S.REFUND_PARTIAL: [S.COMPLETED],
    S.REPLACEMENT_INITIATED: [S.COMPLETED],
    S.COMPLETED: [],                # Terminal state
    S.REJECTED: [],                 # Terminal state
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.REJECTED})

TRANSITION_ACTIONS: Dict[tuple, str] = {
    (S.PENDING, S.MORE_INFO_NEEDED): "Request More Info",
    (S.PENDING, S.APPROVED): "Approve",
    (S.PENDING, S.REJECTED): "Reject",
    (S.MORE_INFO_NEEDED, S.PENDING): "Resubmit",
    (S.MORE_INFO_NEEDED, S.APPROVED): "Approve",
    (S.MORE_INFO_NEEDED, S.REJECTED): "Reject",
    (S.APPROVED, S.PICKUP_SCHEDULED): "Schedule Pickup",
    (S.APPROVED, S.AWAITING_RETURN): "Await Customer Shipment",
    (S.PICKUP_SCHEDULED, S.PICKED_UP): "Mark Picked Up",
    (S.PICKUP_SCHEDULED, S.PICKUP_FAILED): "Mark Pickup Failed",
    (S.PICKUP_FAILED, S.APPROVED): "Reschedule",
    (S.PICKUP_FAILED, S.AWAITING_RETURN): "Await Customer Shipment",
    (S.AWAITING_RETURN, S.RECEIVED): "Mark Received",
    (S.PICKED_UP, S.IN_TRANSIT): "Mark In Transit",
    (S.IN_TRANSIT, S.RECEIVED): "Mark Received",
    (S.RECEIVED, S.INSPECTING): "Start Inspection",
    (S.INSPECTING, S.INSPECTION_PASSED): "Pass Inspection",
    (S.INSPECTING, S.INSPECTION_FAILED): "Fail Inspection",
    (S.INSPECTION_PASSED, S.REFUND_INITIATED): "Initiate Refund",
    (S.INSPECTION_PASSED, S.REFUND_PARTIAL): "Initiate Partial Refund",
    (S.INSPECTION_PASSED, S.REPLACEMENT_INITIATED): "Create Replacement",
    (S.INSPECTION_PASSED, S.COMPLETED): "Complete",
    (S.INSPECTION_FAILED, S.REJECTED): "Reject",
    (S.INSPECTION_FAILED, S.COMPLETED): "Complete",
    (S.REFUND_INITIATED, S.COMPLETED): "Complete",
    (S.REFUND_PARTIAL, S.COMPLETED): "Complete",
    (S.REPLACEMENT_INITIATED, S.COMPLETED): "Complete",
}

REFUND_STATUSES = frozenset({S.REFUND_INITIATED, S.REFUND_PARTIAL})
LINK_STATUSES = REFUND_STATUSES | {S.REPLACEMENT_INITIATED}

# Outcome statuses and the requested action they fulfil
OUTCOME_ACTIONS: Dict[str, str] = {
    S.REFUND_INITIATED: "refund",
    S.REFUND_PARTIAL: "refund",
    S.REPLACEMENT_INITIATED: "replacement",
}

REFUND_METHODS = ["original", "wallet", "bank_transfer", "upi", "cheque"]


class SideEffect(str, Enum):
    NONE = "none"
    PICKUP = "pickup"
    REFUND = "refund"
    REPLACEMENT = "replacement"


# Timeline event type written when entering a status
EVENT_TYPES: Dict[str, str] = {
    S.APPROVED: "approved",
    S.REJECTED: "rejected",
    S.PICKUP_SCHEDULED: "pickup_scheduled",
    S.REFUND_INITIATED: "refund_initiated",
    S.REFUND_PARTIAL: "refund_initiated",
    S.REPLACEMENT_INITIATED: "replacement_initiated",
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return _value(new_status) in RETURN_TRANSITIONS.get(_value(current_status), [])


def get_allowed_transitions(current_status: str) -> List[str]:
    """Get list of statuses that can be transitioned to from current status."""
    return list(RETURN_TRANSITIONS.get(_value(current_status), []))


def get_transition_action(current_status: str, new_status: str) -> str:
    """Get human-readable action name for a transition."""
    return TRANSITION_ACTIONS.get(
        (_value(current_status), _value(new_status)),
        f"{_value(current_status)} -> {_value(new_status)}",
    )


def get_status_label(status: str) -> str:
    return STATUS_LABELS.get(_value(status), _value(status))


def is_terminal(status: str) -> bool:
    """Is this a terminal (final) state?"""
    return _value(status) in TERMINAL_STATUSES


def is_active(status: str) -> bool:
    return not is_terminal(status)


def validate_transition(current_status: str, new_status: str) -> None:
    """Raise InvalidTransitionError unless the edge exists."""
    current, target = _value(current_status), _value(new_status)
    if can_transition(current, target):
        return

    allowed = get_allowed_transitions(current)
    if current not in RETURN_TRANSITIONS:
        message = f"Unknown return status '{current}'"
    elif target not in STATUS_LABELS:
        message = f"Unknown return status '{target}'"
    elif not allowed:
        message = f"Return in '{current}' status cannot be modified. This is a terminal state."
    else:
        message = (
            f"Cannot change return from '{current}' to '{target}'. "
            f"Allowed transitions: {', '.join(allowed)}"
        )
    raise InvalidTransitionError(message, {"from": current, "to": target, "allowed": allowed})


def has_linked_outcome(request) -> bool:
    return bool(request.refund_id or request.replacement_order_id)


def matches_requested_action(request, target: str) -> bool:
    action = OUTCOME_ACTIONS.get(_value(target))
    return action is None or request.requested_action == action


def lifecycle_changes(new_status: str, actor: Actor, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Audit fields set when a status is entered."""
    now = now or datetime.now(timezone.utc)
    target = _value(new_status)
    changes: Dict[str, Any] = {}
    if target == S.APPROVED:
        changes["approved_by"] = actor.id
        changes["approved_at"] = now
    elif target == S.COMPLETED:
        changes["completed_at"] = now
    elif target == S.PICKUP_FAILED:
        # The carrier ticket is dead; a re-drive books a new one
        changes["pickup_ticket_id"] = None
    return changes


# =============================================================================
# VALIDATOR
# =============================================================================

@dataclass
class TransitionPayload:
    """Optional data supplied with a transition request."""
    notes: Optional[str] = None
    pickup_scheduled: Optional[datetime] = None
    pickup_carrier: Optional[str] = None
    customer_ships: Optional[bool] = None
    amount: Optional[Decimal] = None
    refund_method: Optional[str] = None
    replacement_items: Optional[List[Dict[str, Any]]] = None
    expected_status: Optional[str] = None


@dataclass
class TransitionPlan:
    from_status: str
    to_status: str
    event_type: str
    side_effect: SideEffect = SideEffect.NONE
    changes: Dict[str, Any] = field(default_factory=dict)
    notes: Optional[str] = None
    amount: Optional[Decimal] = None
    refund_method: Optional[str] = None
    pickup_date: Optional[datetime] = None
    pickup_carrier: Optional[str] = None
    replacement_items: Optional[List[Dict[str, Any]]] = None


def _clean_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    notes = notes.strip()
    return notes or None


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise ReturnValidationError(f"Invalid refund amount '{value}'", {"amount": str(value)})
    return amount


class TransitionValidator:
    """
    Maps (current status, requested status, actor role, payload) to a plan.

    Nothing is written here. Checks run in a fixed order so the error a
    caller sees is deterministic.
    """

    def __init__(self, rbac):
        self.rbac = rbac

    async def check(
        self,
        request,
        new_status: str,
        actor: Actor,
        payload: Optional[TransitionPayload] = None,
    ) -> TransitionPlan:
        payload = payload or TransitionPayload()
        current = request.status
        target = _value(new_status)

        validate_transition(current, target)

        if target in LINK_STATUSES and has_linked_outcome(request):
            raise InvalidTransitionError(
                "A refund or replacement has already been created for this return",
                {
                    "from": current,
                    "to": target,
                    "refund_id": request.refund_id,
                    "replacement_order_id": request.replacement_order_id,
                },
            )

        if not await self.rbac.can_transition(actor.role, current, target):
            raise ForbiddenError(
                f"Role '{_value(actor.role)}' cannot move a return from '{current}' to '{target}'",
                {"role": _value(actor.role), "from": current, "to": target},
            )

        notes = _clean_notes(payload.notes)
        plan = TransitionPlan(
            from_status=current,
            to_status=target,
            event_type=EVENT_TYPES.get(target, "status_change"),
            notes=notes,
            changes=lifecycle_changes(target, actor),
        )
        if notes:
            plan.changes["admin_notes"] = notes

        builder = getattr(self, f"_plan_{target}", None)
        if builder is not None:
            builder(request, payload, plan)
        return plan

    # ------------------------------------------------------------------
    # Per-target payload rules
    # ------------------------------------------------------------------

    def _require_requested_action(self, request, plan: TransitionPlan) -> None:
        if not matches_requested_action(request, plan.to_status):
            raise ReturnValidationError(
                f"Return requested a {request.requested_action}, cannot move it to '{plan.to_status}'",
                {
                    "requested_action": request.requested_action,
                    "to": plan.to_status,
                    "expected_action": OUTCOME_ACTIONS[plan.to_status],
                },
            )

    def _plan_rejected(self, request, payload: TransitionPayload, plan: TransitionPlan) -> None:
        if not plan.notes:
            raise ReturnValidationError("Rejection reason is required", {"field": "notes"})
        plan.changes["rejection_reason"] = plan.notes

    def _plan_approved(self, request, payload: TransitionPayload, plan: TransitionPlan) -> None:
        pickup_date = _to_utc(payload.pickup_scheduled)
        if pickup_date is None and not payload.customer_ships:
            raise ReturnValidationError(
                "Approval requires a pickup date or confirmation that the customer ships the item",
                {"fields": ["pickup_scheduled", "customer_ships"]},
            )
        plan.changes["customer_ships"] = bool(payload.customer_ships) and pickup_date is None
        if pickup_date is not None:
            plan.side_effect = SideEffect.PICKUP
            plan.pickup_date = pickup_date
            plan.pickup_carrier = payload.pickup_carrier
        else:
            plan.changes["pickup_ticket_id"] = None
            plan.changes["pickup_scheduled_at"] = None
            plan.changes["pickup_carrier"] = None

    def _plan_pickup_scheduled(self, request, payload: TransitionPayload, plan: TransitionPlan) -> None:
        pickup_date = _to_utc(payload.pickup_scheduled) or request.pickup_scheduled_at
        if pickup_date is None:
            raise ReturnValidationError("Pickup date is required", {"field": "pickup_scheduled"})
        if payload.pickup_scheduled is not None or not request.pickup_ticket_id:
            plan.side_effect = SideEffect.PICKUP
            plan.pickup_date = _to_utc(pickup_date)
            plan.pickup_carrier = payload.pickup_carrier or request.pickup_carrier
        plan.changes["customer_ships"] = False

    def _plan_awaiting_return(self, request, payload: TransitionPayload, plan: TransitionPlan) -> None:
        ships = payload.customer_ships if payload.customer_ships is not None else request.customer_ships
        if not ships:
            raise ReturnValidationError(
                "Customer must ship the item back for this status",
                {"field": "customer_ships"},
            )
        plan.changes["customer_ships"] = True

    def _plan_refund(self, request, payload: TransitionPayload, plan: TransitionPlan, partial: bool) -> None:
        self._require_requested_action(request, plan)
        if payload.amount is None:
            if partial:
                raise ReturnValidationError("Partial refunds require an amount", {"field": "amount"})
            amount = Decimal(request.refundable_amount).quantize(Decimal("0.01"))
        else:
            amount = _parse_amount(payload.amount)

        if amount <= 0:
            raise ReturnValidationError("Refund amount must be greater than zero", {"amount": str(amount)})
        order_total = Decimal(request.order_total)
        if amount > order_total:
            raise InvalidAmountError(
                f"Refund amount {amount} exceeds order total {order_total}",
                {"amount": str(amount), "order_total": str(order_total)},
            )

        method = payload.refund_method or "original"
        if method not in REFUND_METHODS:
            raise ReturnValidationError(
                f"Unknown refund method '{method}'",
                {"refund_method": method, "allowed": REFUND_METHODS},
            )
        plan.side_effect = SideEffect.REFUND
        plan.amount = amount
        plan.refund_method = method

    def _plan_refund_initiated(self, request, payload: TransitionPayload, plan: TransitionPlan) -> None:
        self._plan_refund(request, payload, plan, partial=False)

    def _plan_refund_partial(self, request, payload: TransitionPayload, plan: TransitionPlan) -> None:
        self._plan_refund(request, payload, plan, partial=True)

    def _plan_replacement_initiated(self, request, payload: TransitionPayload, plan: TransitionPlan) -> None:
        self._require_requested_action(request, plan)
        items = payload.replacement_items
        if items is None:
            items = [
                {
                    "order_item_id": str(item.order_item_id),
                    "product_id": str(item.product_id) if item.product_id else None,
                    "product_name": item.product_name,
                    "sku": item.sku,
                    "quantity": item.quantity,
                }
                for item in request.items
            ]
        if not items:
            raise ReturnValidationError("Replacement requires at least one item", {"field": "items"})
        for item in items:
            if int(item.get("quantity") or 0) <= 0:
                raise ReturnValidationError("Replacement quantities must be positive", {"item": item})
        plan.side_effect = SideEffect.REPLACEMENT
        plan.replacement_items = items

    async def available_transitions(self, request, role: ActorRole) -> List[Dict[str, str]]:
        """Out-edges the given role could take right now, with labels."""
        result = []
        for target in get_allowed_transitions(request.status):
            if target in LINK_STATUSES and has_linked_outcome(request):
                continue
            if not matches_requested_action(request, target):
                continue
            if not await self.rbac.can_transition(role, request.status, target):
                continue
            result.append({
                "status": target,
                "label": get_status_label(target),
                "action": get_transition_action(request.status, target),
            })
        return result


# =============================================================================
# VISUALIZATION (for debugging/documentation)
# =============================================================================

def print_state_diagram():
    """Print a text representation of the state machine."""
    print("\n=== Return State Machine ===\n")
    for status in ReturnStatus.all():
        transitions = get_allowed_transitions(status)
        if transitions:
            print(f"{status} ({get_status_label(status)}):")
            for t in transitions:
                print(f"  -> {t} ({get_transition_action(status, t)})")
        else:
            print(f"{status}: [TERMINAL STATE]")
        print()


if __name__ == "__main__":
    print_state_diagram()
