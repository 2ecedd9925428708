"""
Return Service

Entry point for every return lifecycle operation. Each call takes the acting
user explicitly; there is no ambient "current admin".

Flow for a status change:
    store.get -> validator.check -> (orchestrator.execute | store.apply_transition)
    -> event publisher -> fresh detail with available transitions
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from returns_engine.config import settings
from returns_engine.core.errors import ForbiddenError, ReturnValidationError, StaleStateError
from returns_engine.core.permissions import Actor, PermissionChecker, RETURNS_NOTE
from returns_engine.jobs.stats_jobs import clear_cached_stats, get_cached_stats
from returns_engine.models.return_request import ReturnRequest, ReturnEvent
from returns_engine.schemas.return_request import (
    ActionOption,
    PaginationInfo,
    ReasonOption,
    RefundInfo,
    ReplacementInfo,
    ReturnCreate,
    ReturnDetailResponse,
    ReturnEventResponse,
    ReturnListResponse,
    ReturnStatsResponse,
    ReturnSummary,
    TransitionOption,
)
from returns_engine.services.collaborators import Collaborators
from returns_engine.services.event_publisher import EventPublisher
from returns_engine.services.return_state_machine import (
    ReturnStatus,
    SideEffect,
    TransitionPayload,
    TransitionValidator,
    get_status_label,
)
from returns_engine.services.return_store import (
    ReturnDraft,
    ReturnFilters,
    ReturnItemDraft,
    ReturnRequestStore,
)
from returns_engine.services.side_effect_orchestrator import SideEffectOrchestrator

logger = logging.getLogger(__name__)


# ==================== Reference data ====================

RETURN_REASONS: Dict[str, Dict[str, str]] = {
    "defective": {"label": "Product is defective/damaged", "category": "quality"},
    "not_as_described": {"label": "Product not as described", "category": "quality"},
    "wrong_item": {"label": "Wrong item received", "category": "fulfillment"},
    "missing_parts": {"label": "Missing parts/accessories", "category": "fulfillment"},
    "quality_issue": {"label": "Quality not as expected", "category": "quality"},
    "size_issue": {"label": "Size/fit issue", "category": "preference"},
    "changed_mind": {"label": "Changed my mind", "category": "preference"},
    "found_better_price": {"label": "Found better price elsewhere", "category": "preference"},
    "late_delivery": {"label": "Delivery was too late", "category": "fulfillment"},
    "other": {"label": "Other reason", "category": "other"},
}

RETURN_ACTIONS: Dict[str, str] = {
    "refund": "Refund",
    "replacement": "Replacement",
    "repair": "Repair",
}


def get_reason_label(code: str) -> str:
    return RETURN_REASONS.get(code, {}).get("label", code)


def _summary(request: ReturnRequest) -> ReturnSummary:
    return ReturnSummary.model_validate(request).model_copy(update={
        "status_label": get_status_label(request.status),
        "reason_label": get_reason_label(request.reason_code),
    })


class ReturnService:
    """Façade over the store, validator, orchestrator and timeline."""

    def __init__(
        self,
        db: AsyncSession,
        collaborators: Collaborators,
        publisher: Optional[EventPublisher] = None,
    ):
        self.db = db
        self.store = ReturnRequestStore(db)
        self.validator = TransitionValidator(collaborators.rbac)
        self.orchestrator = SideEffectOrchestrator(
            self.store,
            collaborators.payment,
            collaborators.orders,
            collaborators.shipping,
        )
        self.publisher = publisher or EventPublisher()

    # ==================== Reference data ====================

    @staticmethod
    def reasons() -> List[ReasonOption]:
        return [ReasonOption(code=code, **info) for code, info in RETURN_REASONS.items()]

    @staticmethod
    def actions() -> List[ActionOption]:
        return [ActionOption(code=code, label=label) for code, label in RETURN_ACTIONS.items()]

    # ==================== Create ====================

    async def create_return(self, data: ReturnCreate, actor: Actor) -> ReturnDetailResponse:
        """Open a new return request in 'pending'."""
        if data.reason_code not in RETURN_REASONS:
            raise ReturnValidationError(
                f"Unknown return reason '{data.reason_code}'",
                {"reason_code": data.reason_code, "allowed": list(RETURN_REASONS)},
            )

        if actor.is_staff:
            if data.user_id is None:
                raise ReturnValidationError("user_id is required when staff create a return", {"field": "user_id"})
            user_id = data.user_id
        else:
            user_id = self._customer_id(actor)

        draft = ReturnDraft(
            order_id=data.order_id,
            user_id=user_id,
            order_number=data.order_number,
            order_total=data.order_total,
            reason_code=data.reason_code,
            reason_text=data.reason_text,
            requested_action=data.requested_action.value,
            customer_name=data.customer_name,
            customer_email=data.customer_email,
            images=list(data.images),
            pickup_address=data.pickup_address,
            items=[
                ReturnItemDraft(
                    order_item_id=item.order_item_id,
                    product_id=item.product_id,
                    product_name=item.product_name,
                    sku=item.sku,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    condition=item.condition.value,
                    condition_notes=item.condition_notes,
                )
                for item in data.items
            ],
        )
        request = await self.store.create(draft, actor)
        clear_cached_stats()
        events = await self.store.list_events(request.id)
        if events:
            await self.publisher.publish_return_event(request, events[0])
        return await self.get_detail(request.id, actor)

    # ==================== Transitions ====================

    async def approve(
        self,
        return_id: uuid.UUID,
        actor: Actor,
        notes: Optional[str] = None,
        pickup_scheduled=None,
        pickup_carrier: Optional[str] = None,
        customer_ships: bool = False,
        expected_status: Optional[str] = None,
    ) -> ReturnDetailResponse:
        return await self._transition(return_id, ReturnStatus.APPROVED, actor, TransitionPayload(
            notes=notes,
            pickup_scheduled=pickup_scheduled,
            pickup_carrier=pickup_carrier,
            customer_ships=customer_ships,
            expected_status=expected_status,
        ))

    async def reject(
        self,
        return_id: uuid.UUID,
        actor: Actor,
        notes: Optional[str] = None,
        expected_status: Optional[str] = None,
    ) -> ReturnDetailResponse:
        return await self._transition(return_id, ReturnStatus.REJECTED, actor, TransitionPayload(
            notes=notes,
            expected_status=expected_status,
        ))

    async def update_status(
        self,
        return_id: uuid.UUID,
        new_status: str,
        actor: Actor,
        payload: Optional[TransitionPayload] = None,
    ) -> ReturnDetailResponse:
        """Generic transition; side-effect edges go through the orchestrator."""
        return await self._transition(return_id, new_status, actor, payload or TransitionPayload())

    async def initiate_refund(
        self,
        return_id: uuid.UUID,
        actor: Actor,
        amount: Optional[Decimal] = None,
        refund_method: str = "original",
        notes: Optional[str] = None,
        partial: bool = False,
        expected_status: Optional[str] = None,
    ) -> ReturnDetailResponse:
        """Refund an inspected return. Amount defaults to the refundable amount."""
        target = ReturnStatus.REFUND_PARTIAL if partial else ReturnStatus.REFUND_INITIATED
        return await self._transition(return_id, target, actor, TransitionPayload(
            notes=notes,
            amount=amount,
            refund_method=refund_method,
            expected_status=expected_status,
        ))

    async def create_replacement(
        self,
        return_id: uuid.UUID,
        actor: Actor,
        items: Optional[List[Dict[str, Any]]] = None,
        notes: Optional[str] = None,
        expected_status: Optional[str] = None,
    ) -> ReturnDetailResponse:
        """Create a replacement order. Items default to the returned items."""
        return await self._transition(return_id, ReturnStatus.REPLACEMENT_INITIATED, actor, TransitionPayload(
            notes=notes,
            replacement_items=items,
            expected_status=expected_status,
        ))

    async def _transition(
        self,
        return_id: uuid.UUID,
        new_status: str,
        actor: Actor,
        payload: TransitionPayload,
    ) -> ReturnDetailResponse:
        request = await self.store.get(return_id, user_id=self._scope(actor))
        if payload.expected_status and request.status != payload.expected_status:
            raise StaleStateError(
                f"Return is '{request.status}', expected '{payload.expected_status}'",
                {"current_status": request.status, "expected_status": payload.expected_status},
            )

        plan = await self.validator.check(request, new_status, actor, payload)

        if plan.side_effect == SideEffect.NONE:
            event = await self.store.apply_transition(
                request,
                plan.to_status,
                actor,
                event_type=plan.event_type,
                changes=plan.changes,
                notes=plan.notes,
                expected_status=payload.expected_status,
            )
        else:
            event = await self.orchestrator.execute(request, plan, actor, expected_status=payload.expected_status)

        # Counters moved; the next read recomputes them
        clear_cached_stats()
        await self._publish(request, event)
        return await self.get_detail(return_id, actor)

    async def add_note(self, return_id: uuid.UUID, notes: str, actor: Actor) -> ReturnDetailResponse:
        """Staff note on the timeline; does not change status."""
        if not PermissionChecker(actor.role).has_permission(RETURNS_NOTE):
            raise ForbiddenError(
                f"Role '{actor.role.value}' cannot add notes",
                {"role": actor.role.value},
            )
        notes = (notes or "").strip()
        if not notes:
            raise ReturnValidationError("Note text is required", {"field": "notes"})

        request = await self.store.get(return_id)
        event = await self.store.record_event(
            request,
            "note_added",
            actor,
            notes=notes,
            changes={"admin_notes": notes},
        )
        await self._publish(request, event)
        return await self.get_detail(return_id, actor)

    async def _publish(self, request: ReturnRequest, event: ReturnEvent) -> None:
        # Transition is already committed; publishing is best effort
        await self.publisher.publish_return_event(request, event)

    # ==================== Reads ====================

    def _customer_id(self, actor: Actor) -> uuid.UUID:
        try:
            return uuid.UUID(str(actor.id))
        except ValueError:
            raise ReturnValidationError("Customer id must be a UUID", {"actor_id": actor.id})

    def _scope(self, actor: Actor) -> Optional[uuid.UUID]:
        """Customers only see their own returns."""
        return None if actor.is_staff else self._customer_id(actor)

    async def get_detail(self, return_id: uuid.UUID, actor: Actor) -> ReturnDetailResponse:
        request = await self.store.get(return_id, user_id=self._scope(actor))
        events = await self.store.list_events(request.id)
        transitions = await self.validator.available_transitions(request, actor.role)

        refund = None
        if request.refund_id:
            refund = RefundInfo(
                refund_id=request.refund_id,
                amount=request.refund_amount,
                refund_method=request.refund_method,
                status=request.refund_status,
            )
        replacement = None
        if request.replacement_order_id:
            replacement = ReplacementInfo(
                order_id=request.replacement_order_id,
                status=request.replacement_status,
            )

        return ReturnDetailResponse.model_validate(request).model_copy(update={
            "status_label": get_status_label(request.status),
            "reason_label": get_reason_label(request.reason_code),
            "timeline": [ReturnEventResponse.model_validate(e) for e in events],
            "refund": refund,
            "replacement": replacement,
            "available_transitions": [TransitionOption(**t) for t in transitions],
        })

    async def list_returns(
        self,
        filters: Optional[ReturnFilters] = None,
        page: int = 1,
        size: Optional[int] = None,
        include_stats: bool = True,
    ) -> ReturnListResponse:
        size = min(size or settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)
        page = max(page, 1)
        requests, total = await self.store.list(filters, page, size)
        return ReturnListResponse(
            returns=[_summary(r) for r in requests],
            pagination=PaginationInfo(
                page=page,
                size=size,
                total=total,
                pages=(total + size - 1) // size if total else 0,
            ),
            stats=await self.get_stats() if include_stats else None,
        )

    async def list_for_user(self, actor: Actor, page: int = 1, size: Optional[int] = None) -> ReturnListResponse:
        filters = ReturnFilters(user_id=self._customer_id(actor))
        return await self.list_returns(filters, page, size, include_stats=False)

    async def get_stats(self, fresh: bool = False) -> ReturnStatsResponse:
        """Dashboard counters; served from the scheduler snapshot when fresh enough."""
        cached = None if fresh else get_cached_stats()
        if cached is not None:
            return ReturnStatsResponse(**cached)
        return ReturnStatsResponse(**await self.store.aggregate_stats())
