from decimal import Decimal
from types import SimpleNamespace

import pytest

from returns_engine.core.errors import (
    ForbiddenError,
    InvalidAmountError,
    InvalidTransitionError,
    ReturnValidationError,
)
from returns_engine.core.permissions import Actor, ActorRole, PermissionChecker
from returns_engine.services.collaborators import LocalRBACService
from returns_engine.services.return_state_machine import (
    RETURN_TRANSITIONS,
    ReturnStatus,
    SideEffect,
    TRANSITION_ACTIONS,
    TransitionPayload,
    TransitionValidator,
    can_transition,
    get_allowed_transitions,
    is_terminal,
    validate_transition,
)

from tests.conftest import ADMIN, FINANCE, SUPPORT, WAREHOUSE, pickup_date


def make_request(status, **overrides):
    item = SimpleNamespace(
        order_item_id="0b8f3e0e-5a4f-4c1e-9d57-0c5cf3d1a001",
        product_id=None,
        product_name="Water Purifier Filter",
        sku="WPF-001",
        quantity=1,
        unit_price=Decimal("60.00"),
    )
    data = {
        "status": status,
        "order_total": Decimal("100.00"),
        "refundable_amount": Decimal("60.00"),
        "refund_id": None,
        "replacement_order_id": None,
        "pickup_scheduled_at": None,
        "pickup_ticket_id": None,
        "pickup_carrier": None,
        "customer_ships": False,
        "requested_action": "refund",
        "items": [item],
    }
    data.update(overrides)
    return SimpleNamespace(**data)


@pytest.fixture
def validator():
    return TransitionValidator(LocalRBACService())


# ==================== Graph ====================

def test_every_status_has_an_entry():
    statuses = {value for name, value in vars(ReturnStatus).items() if name.isupper()}
    assert statuses == set(RETURN_TRANSITIONS)
    for targets in RETURN_TRANSITIONS.values():
        assert set(targets) <= statuses


def test_terminal_statuses_have_no_out_edges():
    assert get_allowed_transitions(ReturnStatus.COMPLETED) == []
    assert get_allowed_transitions(ReturnStatus.REJECTED) == []
    assert is_terminal(ReturnStatus.COMPLETED)
    assert not is_terminal(ReturnStatus.INSPECTION_PASSED)


def test_every_edge_has_an_action_label():
    for source, targets in RETURN_TRANSITIONS.items():
        for target in targets:
            assert (source, target) in TRANSITION_ACTIONS


def test_validate_transition_rejects_every_missing_edge():
    statuses = list(RETURN_TRANSITIONS)
    for source in statuses:
        for target in statuses:
            if can_transition(source, target):
                validate_transition(source, target)
                continue
            with pytest.raises(InvalidTransitionError) as exc:
                validate_transition(source, target)
            assert exc.value.details["from"] == source
            assert exc.value.details["allowed"] == get_allowed_transitions(source)


def test_unknown_status_is_invalid_transition():
    with pytest.raises(InvalidTransitionError):
        validate_transition(ReturnStatus.PENDING, "teleported")


def test_refund_cannot_skip_inspection():
    assert not can_transition(ReturnStatus.RECEIVED, ReturnStatus.REFUND_INITIATED)
    assert not can_transition(ReturnStatus.INSPECTION_FAILED, ReturnStatus.REFUND_INITIATED)
    assert can_transition(ReturnStatus.INSPECTION_PASSED, ReturnStatus.REFUND_INITIATED)


# ==================== Permissions ====================

def test_role_permissions():
    assert PermissionChecker(ActorRole.SUPPORT).can_transition("pending", "approved")
    assert not PermissionChecker(ActorRole.WAREHOUSE).can_transition("pending", "approved")
    assert PermissionChecker(ActorRole.WAREHOUSE).can_transition("inspecting", "inspection_passed")
    assert PermissionChecker(ActorRole.FINANCE).can_transition("inspection_passed", "refund_initiated")
    assert not PermissionChecker(ActorRole.SUPPORT).can_transition("inspection_passed", "refund_initiated")
    assert PermissionChecker(ActorRole.CUSTOMER).can_transition("more_info_needed", "pending")
    assert not PermissionChecker(ActorRole.CUSTOMER).can_transition("pending", "approved")


def test_super_admin_has_every_permission():
    checker = PermissionChecker(ActorRole.SUPER_ADMIN, permissions=set())
    assert checker.has_permission("refunds:create")
    assert checker.can_transition("inspection_passed", "replacement_initiated")


# ==================== Validator ====================

async def test_invalid_edge_reported_before_permission(validator):
    request = make_request(ReturnStatus.PENDING)
    customer = Actor(id="c-1", role=ActorRole.CUSTOMER)
    with pytest.raises(InvalidTransitionError):
        await validator.check(request, ReturnStatus.COMPLETED, customer)


async def test_forbidden_role(validator):
    request = make_request(ReturnStatus.PENDING)
    with pytest.raises(ForbiddenError) as exc:
        await validator.check(request, ReturnStatus.APPROVED, WAREHOUSE, TransitionPayload(customer_ships=True))
    assert exc.value.details["role"] == "warehouse"


async def test_reject_requires_notes(validator):
    request = make_request(ReturnStatus.PENDING)
    with pytest.raises(ReturnValidationError):
        await validator.check(request, ReturnStatus.REJECTED, SUPPORT, TransitionPayload(notes="   "))

    plan = await validator.check(request, ReturnStatus.REJECTED, SUPPORT, TransitionPayload(notes="Outside window"))
    assert plan.changes["rejection_reason"] == "Outside window"
    assert plan.event_type == "rejected"
    assert plan.side_effect == SideEffect.NONE


async def test_approve_requires_pickup_or_customer_shipping(validator):
    request = make_request(ReturnStatus.PENDING)
    with pytest.raises(ReturnValidationError):
        await validator.check(request, ReturnStatus.APPROVED, SUPPORT)

    plan = await validator.check(request, ReturnStatus.APPROVED, SUPPORT, TransitionPayload(customer_ships=True))
    assert plan.side_effect == SideEffect.NONE
    assert plan.changes["customer_ships"] is True
    assert plan.changes["approved_by"] == SUPPORT.id

    plan = await validator.check(
        request, ReturnStatus.APPROVED, SUPPORT, TransitionPayload(pickup_scheduled=pickup_date())
    )
    assert plan.side_effect == SideEffect.PICKUP
    assert plan.changes["customer_ships"] is False


async def test_full_refund_defaults_to_refundable_amount(validator):
    request = make_request(ReturnStatus.INSPECTION_PASSED)
    plan = await validator.check(request, ReturnStatus.REFUND_INITIATED, FINANCE)
    assert plan.side_effect == SideEffect.REFUND
    assert plan.amount == Decimal("60.00")
    assert plan.refund_method == "original"
    assert plan.event_type == "refund_initiated"


async def test_refund_amount_rules(validator):
    request = make_request(ReturnStatus.INSPECTION_PASSED)

    with pytest.raises(InvalidAmountError):
        await validator.check(request, ReturnStatus.REFUND_INITIATED, FINANCE, TransitionPayload(amount=Decimal("100.01")))
    with pytest.raises(ReturnValidationError):
        await validator.check(request, ReturnStatus.REFUND_INITIATED, FINANCE, TransitionPayload(amount=Decimal("0")))
    with pytest.raises(ReturnValidationError):
        await validator.check(request, ReturnStatus.REFUND_PARTIAL, FINANCE)
    with pytest.raises(ReturnValidationError):
        await validator.check(
            request,
            ReturnStatus.REFUND_INITIATED,
            FINANCE,
            TransitionPayload(amount=Decimal("10"), refund_method="crypto"),
        )

    plan = await validator.check(request, ReturnStatus.REFUND_PARTIAL, FINANCE, TransitionPayload(amount="25.5"))
    assert plan.amount == Decimal("25.50")


async def test_outcome_links_are_set_once(validator):
    request = make_request(ReturnStatus.INSPECTION_PASSED, refund_id="RFD-0001")
    with pytest.raises(InvalidTransitionError):
        await validator.check(request, ReturnStatus.REPLACEMENT_INITIATED, ADMIN)
    with pytest.raises(InvalidTransitionError):
        await validator.check(request, ReturnStatus.REFUND_PARTIAL, ADMIN, TransitionPayload(amount=Decimal("5")))

    options = await validator.available_transitions(request, ActorRole.ADMIN)
    assert [o["status"] for o in options] == [ReturnStatus.COMPLETED]


async def test_replacement_items_default_to_returned_items(validator):
    request = make_request(ReturnStatus.INSPECTION_PASSED, requested_action="replacement")
    plan = await validator.check(request, ReturnStatus.REPLACEMENT_INITIATED, FINANCE)
    assert plan.side_effect == SideEffect.REPLACEMENT
    assert plan.replacement_items[0]["sku"] == "WPF-001"

    with pytest.raises(ReturnValidationError):
        await validator.check(
            request,
            ReturnStatus.REPLACEMENT_INITIATED,
            FINANCE,
            TransitionPayload(replacement_items=[{"order_item_id": "x", "quantity": 0}]),
        )


async def test_available_transitions_depend_on_role(validator):
    request = make_request(ReturnStatus.INSPECTION_PASSED)
    finance = {o["status"] for o in await validator.available_transitions(request, ActorRole.FINANCE)}
    warehouse = await validator.available_transitions(request, ActorRole.WAREHOUSE)

    assert finance == {
        ReturnStatus.REFUND_INITIATED,
        ReturnStatus.REFUND_PARTIAL,
        ReturnStatus.COMPLETED,
    }
    assert warehouse == []

    replacement = make_request(ReturnStatus.INSPECTION_PASSED, requested_action="replacement")
    finance = {o["status"] for o in await validator.available_transitions(replacement, ActorRole.FINANCE)}
    assert finance == {ReturnStatus.REPLACEMENT_INITIATED, ReturnStatus.COMPLETED}


async def test_outcome_follows_requested_action(validator):
    refund = make_request(ReturnStatus.INSPECTION_PASSED)
    with pytest.raises(ReturnValidationError) as exc:
        await validator.check(refund, ReturnStatus.REPLACEMENT_INITIATED, FINANCE)
    assert exc.value.details["expected_action"] == "replacement"

    replacement = make_request(ReturnStatus.INSPECTION_PASSED, requested_action="replacement")
    for target in (ReturnStatus.REFUND_INITIATED, ReturnStatus.REFUND_PARTIAL):
        with pytest.raises(ReturnValidationError):
            await validator.check(replacement, target, FINANCE, TransitionPayload(amount=Decimal("5")))

    repair = make_request(ReturnStatus.INSPECTION_PASSED, requested_action="repair")
    plan = await validator.check(repair, ReturnStatus.COMPLETED, FINANCE)
    assert plan.side_effect == SideEffect.NONE


async def test_pickup_failure_clears_the_ticket(validator):
    request = make_request(
        ReturnStatus.PICKUP_SCHEDULED,
        pickup_ticket_id="PCK-0001",
        pickup_scheduled_at=pickup_date(),
        pickup_carrier="Delhivery",
    )
    plan = await validator.check(request, ReturnStatus.PICKUP_FAILED, ADMIN)
    assert plan.changes["pickup_ticket_id"] is None

    failed = make_request(ReturnStatus.PICKUP_FAILED, pickup_scheduled_at=pickup_date(), pickup_carrier="Delhivery")
    plan = await validator.check(failed, ReturnStatus.APPROVED, ADMIN, TransitionPayload(customer_ships=True))
    assert plan.changes["pickup_scheduled_at"] is None
    assert plan.changes["pickup_carrier"] is None
    assert plan.changes["pickup_ticket_id"] is None


async def test_pickup_scheduled_without_ticket_books_again(validator):
    request = make_request(ReturnStatus.APPROVED, pickup_scheduled_at=pickup_date())
    plan = await validator.check(request, ReturnStatus.PICKUP_SCHEDULED, ADMIN)
    assert plan.side_effect == SideEffect.PICKUP

    with pytest.raises(ReturnValidationError):
        await validator.check(make_request(ReturnStatus.APPROVED), ReturnStatus.PICKUP_SCHEDULED, ADMIN)
