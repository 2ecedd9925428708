"""
Side-Effect Orchestrator

Runs the collaborator call attached to a transition (pickup, refund,
replacement) and then commits the transition through the store.

The call is made with the read transaction closed and without the commit
lock. If it fails, the return keeps its status and a single
`side_effect_failed` event is committed instead.
"""

import logging
from typing import Optional, Dict, Any, Tuple

from returns_engine.core.errors import SideEffectFailedError, StaleStateError
from returns_engine.core.permissions import Actor
from returns_engine.models.return_request import ReturnRequest, ReturnEvent
from returns_engine.services.collaborators import (
    CollaboratorError,
    OrderService,
    PaymentService,
    ReplacementLine,
    ShippingService,
)
from returns_engine.services.return_state_machine import SideEffect, TransitionPlan
from returns_engine.services.return_store import ReturnRequestStore

logger = logging.getLogger(__name__)


class SideEffectOrchestrator:

    def __init__(
        self,
        store: ReturnRequestStore,
        payment: PaymentService,
        orders: OrderService,
        shipping: Optional[ShippingService] = None,
    ):
        self.store = store
        self.payment = payment
        self.orders = orders
        self.shipping = shipping

    async def execute(
        self,
        request: ReturnRequest,
        plan: TransitionPlan,
        actor: Actor,
        expected_status: Optional[str] = None,
    ) -> ReturnEvent:
        """
        Perform the plan's side effect, then commit the transition.

        Raises:
            SideEffectFailedError: collaborator failed; status unchanged
            InvalidAmountError: payment service refused the amount
            StaleStateError: another writer committed while the call ran
        """
        await self.store.end_read()

        return_id = request.id
        try:
            changes, details = await self._perform(request, plan)
        except CollaboratorError as e:
            await self._record_failure(request, plan, actor, e)
            raise SideEffectFailedError(
                f"{plan.side_effect.value} failed: {e.message}",
                {
                    "side_effect": plan.side_effect.value,
                    "current_status": plan.from_status,
                    "target_status": plan.to_status,
                    "collaborator_status": e.status_code,
                },
            )

        changes = {**plan.changes, **changes}
        try:
            return await self.store.apply_transition(
                request,
                plan.to_status,
                actor,
                event_type=plan.event_type,
                changes=changes,
                notes=plan.notes,
                details=details,
                expected_status=expected_status or plan.from_status,
            )
        except StaleStateError:
            if plan.side_effect in (SideEffect.REFUND, SideEffect.REPLACEMENT):
                # The downstream entity exists but is not linked; needs reconciliation
                logger.error(
                    f"Return {return_id}: {plan.side_effect.value} created but transition lost a race, "
                    f"details={details}"
                )
            raise

    async def _perform(self, request: ReturnRequest, plan: TransitionPlan) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        if plan.side_effect == SideEffect.PICKUP:
            return await self._schedule_pickup(request, plan)
        if plan.side_effect == SideEffect.REFUND:
            return await self._create_refund(request, plan)
        if plan.side_effect == SideEffect.REPLACEMENT:
            return await self._create_replacement(request, plan)
        return {}, {}

    async def _schedule_pickup(self, request: ReturnRequest, plan: TransitionPlan):
        changes = {
            "pickup_scheduled_at": plan.pickup_date,
            "pickup_carrier": plan.pickup_carrier,
            "customer_ships": False,
        }
        if self.shipping is None:
            logger.info(f"Return {request.return_number}: no shipping service, pickup stored without ticket")
            return changes, {"pickup_scheduled_at": plan.pickup_date.isoformat()}

        ticket = await self.shipping.schedule_pickup(request.pickup_address, plan.pickup_date, plan.pickup_carrier)
        changes["pickup_ticket_id"] = ticket.ticket_id
        if ticket.carrier:
            changes["pickup_carrier"] = ticket.carrier
        logger.info(f"Return {request.return_number}: pickup ticket {ticket.ticket_id}")
        return changes, {
            "pickup_ticket_id": ticket.ticket_id,
            "pickup_scheduled_at": plan.pickup_date.isoformat(),
            "pickup_carrier": changes["pickup_carrier"],
        }

    async def _create_refund(self, request: ReturnRequest, plan: TransitionPlan):
        receipt = await self.payment.create_refund(
            str(request.order_id),
            str(request.id),
            plan.amount,
            plan.refund_method,
            plan.notes,
        )
        logger.info(f"Return {request.return_number}: refund {receipt.refund_id} for {plan.amount}")
        return {
            "refund_id": receipt.refund_id,
            "refund_amount": plan.amount,
            "refund_method": plan.refund_method,
            "refund_status": receipt.status,
        }, {
            "refund_id": receipt.refund_id,
            "amount": str(plan.amount),
            "refund_method": plan.refund_method,
        }

    async def _create_replacement(self, request: ReturnRequest, plan: TransitionPlan):
        lines = [
            ReplacementLine(
                order_item_id=str(item["order_item_id"]),
                product_name=item.get("product_name") or "",
                quantity=int(item["quantity"]),
                sku=item.get("sku"),
                product_id=str(item["product_id"]) if item.get("product_id") else None,
            )
            for item in plan.replacement_items
        ]
        receipt = await self.orders.create_replacement_order(str(request.order_id), str(request.id), lines)
        logger.info(f"Return {request.return_number}: replacement order {receipt.order_id}")
        return {
            "replacement_order_id": receipt.order_id,
            "replacement_status": receipt.status,
        }, {
            "replacement_order_id": receipt.order_id,
            "replacement_order_number": receipt.order_number,
        }

    async def _record_failure(self, request: ReturnRequest, plan: TransitionPlan, actor: Actor, error: CollaboratorError):
        logger.warning(
            f"Return {request.return_number}: {plan.side_effect.value} failed "
            f"({plan.from_status} -> {plan.to_status}): {error.message}"
        )
        await self.store.record_event(
            request,
            "side_effect_failed",
            actor,
            notes=f"{plan.side_effect.value} failed: {error.message}",
            details={
                "side_effect": plan.side_effect.value,
                "target_status": plan.to_status,
                "collaborator_status": error.status_code,
                "errors": error.errors,
            },
        )
