"""
Return Request Store

Durable record of return requests. apply_transition() is the only way a
request's status changes: the status, the transition fields and the timeline
event are committed together or not at all.
"""

import asyncio
import logging
import random
import string
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime, date, timezone, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, func, or_, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from returns_engine.config import settings
from returns_engine.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    ReturnValidationError,
    StaleStateError,
)
from returns_engine.core.permissions import Actor
from returns_engine.models.return_request import ReturnRequest, ReturnItem, ReturnEvent
from returns_engine.services.return_state_machine import ReturnStatus, TERMINAL_STATUSES, validate_transition
from returns_engine.services.timeline_service import TimelineRecorder

logger = logging.getLogger(__name__)

# Fields apply_transition() may write besides status
TRANSITION_FIELDS = frozenset({
    "admin_notes",
    "rejection_reason",
    "customer_ships",
    "pickup_scheduled_at",
    "pickup_carrier",
    "pickup_ticket_id",
    "approved_by",
    "approved_at",
    "completed_at",
    "refund_id",
    "refund_amount",
    "refund_method",
    "refund_status",
    "replacement_order_id",
    "replacement_status",
})
LINK_FIELDS = frozenset({"refund_id", "replacement_order_id"})

IN_PROCESS_STATUSES = [
    ReturnStatus.PICKED_UP,
    ReturnStatus.IN_TRANSIT,
    ReturnStatus.RECEIVED,
    ReturnStatus.INSPECTING,
]

# One lock per return id, held only while committing
_commit_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


def _commit_lock(return_id: uuid.UUID) -> asyncio.Lock:
    lock = _commit_locks.get(return_id)
    if lock is None:
        lock = asyncio.Lock()
        _commit_locks[return_id] = lock
    return lock


def generate_return_number(prefix: Optional[str] = None) -> str:
    """Generate a human readable return number, e.g. RET-261018-4K2Q9Z."""
    prefix = prefix or settings.RETURN_NUMBER_PREFIX
    timestamp = datetime.now(timezone.utc).strftime("%y%m%d")
    random_part = ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"{prefix}-{timestamp}-{random_part}"


@dataclass
class ReturnItemDraft:
    order_item_id: uuid.UUID
    product_name: str
    unit_price: Decimal
    quantity: int = 1
    sku: Optional[str] = None
    product_id: Optional[uuid.UUID] = None
    condition: str = "unopened"
    condition_notes: Optional[str] = None


@dataclass
class ReturnDraft:
    order_id: uuid.UUID
    user_id: uuid.UUID
    order_number: str
    order_total: Decimal
    reason_code: str
    items: List[ReturnItemDraft]
    requested_action: str = "refund"
    reason_text: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    images: List[str] = field(default_factory=list)
    pickup_address: Optional[Dict[str, Any]] = None


@dataclass
class ReturnFilters:
    status: Optional[str] = None
    reason: Optional[str] = None
    action: Optional[str] = None
    search: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    user_id: Optional[uuid.UUID] = None


def _start_of_day(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


class ReturnRequestStore:
    """Persistence for return requests, scoped to one session."""

    def __init__(self, db: AsyncSession, recorder: Optional[TimelineRecorder] = None):
        self.db = db
        self.recorder = recorder or TimelineRecorder(db)

    # ==================== READS ====================

    async def get(self, return_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> ReturnRequest:
        query = (
            select(ReturnRequest)
            .where(ReturnRequest.id == return_id)
            .execution_options(populate_existing=True)
        )
        if user_id is not None:
            query = query.where(ReturnRequest.user_id == user_id)
        result = await self.db.execute(query)
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError("Return request not found", {"return_id": str(return_id)})
        return request

    async def get_by_number(self, return_number: str) -> ReturnRequest:
        result = await self.db.execute(
            select(ReturnRequest).where(ReturnRequest.return_number == return_number)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError("Return request not found", {"return_number": return_number})
        return request

    async def find_active_for_order(self, order_id: uuid.UUID) -> Optional[ReturnRequest]:
        result = await self.db.execute(
            select(ReturnRequest)
            .where(
                ReturnRequest.order_id == order_id,
                ReturnRequest.status.notin_(list(TERMINAL_STATUSES)),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _apply_filters(self, query, filters: ReturnFilters):
        if filters.status and filters.status != "all":
            query = query.where(ReturnRequest.status == filters.status)
        if filters.reason:
            query = query.where(ReturnRequest.reason_code == filters.reason)
        if filters.action:
            query = query.where(ReturnRequest.requested_action == filters.action)
        if filters.user_id:
            query = query.where(ReturnRequest.user_id == filters.user_id)
        if filters.search:
            term = f"%{filters.search.strip()}%"
            query = query.where(or_(
                ReturnRequest.return_number.ilike(term),
                ReturnRequest.order_number.ilike(term),
                ReturnRequest.customer_name.ilike(term),
                ReturnRequest.customer_email.ilike(term),
            ))
        if filters.date_from:
            query = query.where(ReturnRequest.created_at >= _start_of_day(filters.date_from))
        if filters.date_to:
            # Inclusive of the whole end day
            query = query.where(ReturnRequest.created_at < _start_of_day(filters.date_to) + timedelta(days=1))
        return query

    async def list(
        self,
        filters: Optional[ReturnFilters] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[ReturnRequest], int]:
        """Filtered page of requests: pending first, then newest first."""
        query = self._apply_filters(select(ReturnRequest), filters or ReturnFilters())

        count_query = select(func.count()).select_from(query.subquery())
        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        pending_first = case((ReturnRequest.status == ReturnStatus.PENDING, 0), else_=1)
        query = query.order_by(
            pending_first,
            ReturnRequest.created_at.desc(),
        ).offset((page - 1) * size).limit(size)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_events(self, return_id: uuid.UUID) -> List[ReturnEvent]:
        return await self.recorder.list_events(return_id)

    async def aggregate_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts used by the admin dashboard."""
        now = now or datetime.now(timezone.utc)
        today = _start_of_day(now.date())

        status_rows = await self.db.execute(
            select(ReturnRequest.status, func.count(ReturnRequest.id)).group_by(ReturnRequest.status)
        )
        by_status = {status: count for status, count in status_rows.all()}

        action_rows = await self.db.execute(
            select(ReturnRequest.requested_action, func.count(ReturnRequest.id))
            .group_by(ReturnRequest.requested_action)
        )
        by_action = {action: count for action, count in action_rows.all()}

        reason_rows = await self.db.execute(
            select(ReturnRequest.reason_code, func.count(ReturnRequest.id))
            .group_by(ReturnRequest.reason_code)
            .order_by(func.count(ReturnRequest.id).desc())
        )
        by_reason = {reason: count for reason, count in reason_rows.all()}

        today_row = await self.db.execute(
            select(
                func.count(case((ReturnRequest.created_at >= today, 1))),
                func.count(case((ReturnRequest.approved_at >= today, 1))),
                func.count(case((ReturnRequest.completed_at >= today, 1))),
            )
        )
        created_today, approved_today, completed_today = today_row.one()

        return {
            "total_returns": sum(by_status.values()),
            "pending": by_status.get(ReturnStatus.PENDING, 0),
            "approved": by_status.get(ReturnStatus.APPROVED, 0),
            "rejected": by_status.get(ReturnStatus.REJECTED, 0),
            "in_process": sum(by_status.get(s, 0) for s in IN_PROCESS_STATUSES),
            "completed": by_status.get(ReturnStatus.COMPLETED, 0),
            "refund_requests": by_action.get("refund", 0),
            "replacement_requests": by_action.get("replacement", 0),
            "by_status": by_status,
            "by_reason": by_reason,
            "today": {
                "created": created_today or 0,
                "approved": approved_today or 0,
                "completed": completed_today or 0,
            },
        }

    async def end_read(self) -> None:
        """Close the read transaction before a slow collaborator call."""
        await self.db.commit()

    # ==================== WRITES ====================

    async def create(self, draft: ReturnDraft, actor: Actor) -> ReturnRequest:
        """Persist a new pending request with its items and 'created' event."""
        existing = await self.find_active_for_order(draft.order_id)
        if existing is not None:
            raise ReturnValidationError(
                "An active return already exists for this order",
                {"order_id": str(draft.order_id), "return_number": existing.return_number},
            )

        request = ReturnRequest(
            return_number=generate_return_number(),
            order_id=draft.order_id,
            user_id=draft.user_id,
            order_number=draft.order_number,
            order_total=draft.order_total,
            customer_name=draft.customer_name,
            customer_email=draft.customer_email,
            reason_code=draft.reason_code,
            reason_text=draft.reason_text,
            requested_action=draft.requested_action,
            status=ReturnStatus.PENDING,
            images=list(draft.images or []),
            pickup_address=draft.pickup_address,
            customer_ships=False,
        )
        request.items = [
            ReturnItem(
                order_item_id=item.order_item_id,
                product_id=item.product_id,
                product_name=item.product_name,
                sku=item.sku,
                quantity=item.quantity,
                unit_price=item.unit_price,
                condition=item.condition,
                condition_notes=item.condition_notes,
            )
            for item in draft.items
        ]
        self.db.add(request)

        try:
            await self.db.flush()
            await self.recorder.record(
                return_id=request.id,
                event_type="created",
                previous_status=None,
                new_status=ReturnStatus.PENDING,
                actor=actor,
                notes=draft.reason_text,
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.warning(f"Return creation conflict for order {draft.order_id}: {e}")
            raise StaleStateError(
                "Return could not be created due to a conflicting write, retry",
                {"order_id": str(draft.order_id)},
            )
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Return {request.return_number} created for order {draft.order_number}")
        return request

    async def apply_transition(
        self,
        request: ReturnRequest,
        new_status: str,
        actor: Actor,
        event_type: str = "status_change",
        changes: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        expected_status: Optional[str] = None,
    ) -> ReturnEvent:
        """
        Commit a status change, its field updates and its timeline event.

        Raises:
            StaleStateError: expected_status does not match, or another writer
                committed first (version check)
            InvalidTransitionError: the edge is not in the transition table, or a
                refund/replacement link is set outside inspection_passed or twice
        """
        changes = dict(changes or {})
        unknown = set(changes) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable by a transition: {sorted(unknown)}")

        return_id = request.id
        async with _commit_lock(return_id):
            previous_status = request.status
            if expected_status is not None and previous_status != expected_status:
                raise StaleStateError(
                    f"Return is '{previous_status}', expected '{expected_status}'",
                    {"current_status": previous_status, "expected_status": expected_status},
                )
            validate_transition(previous_status, new_status)
            for link in LINK_FIELDS & set(changes):
                if changes[link] is None:
                    continue
                if previous_status != ReturnStatus.INSPECTION_PASSED:
                    raise InvalidTransitionError(
                        "Refunds and replacements can only be linked to an inspected return",
                        {"field": link, "from": previous_status, "to": new_status},
                    )
                if request.refund_id or request.replacement_order_id:
                    raise InvalidTransitionError(
                        "A refund or replacement has already been linked to this return",
                        {"field": link},
                    )

            for name, value in changes.items():
                setattr(request, name, value)
            request.status = new_status

            try:
                entry = await self.recorder.record(
                    return_id=return_id,
                    event_type=event_type,
                    previous_status=previous_status,
                    new_status=new_status,
                    actor=actor,
                    notes=notes,
                    details=details,
                )
                await self.db.commit()
            except StaleDataError:
                await self.db.rollback()
                logger.warning(f"Stale write on return {return_id} ({previous_status} -> {new_status})")
                raise StaleStateError(
                    "Return was modified by another request, re-fetch and retry",
                    {"return_id": str(return_id)},
                )
            except Exception:
                await self.db.rollback()
                raise

        logger.info(f"Return {request.return_number}: {previous_status} -> {new_status} by {actor.role.value}")
        return entry

    async def record_event(
        self,
        request: ReturnRequest,
        event_type: str,
        actor: Actor,
        notes: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        changes: Optional[Dict[str, Any]] = None,
    ) -> ReturnEvent:
        """
        Commit an event that does not change status (notes, side-effect failures).
        previous_status == new_status == the current status.
        """
        changes = dict(changes or {})
        unknown = set(changes) - {"admin_notes"}
        if unknown:
            raise ValueError(f"Fields not writable by an event: {sorted(unknown)}")

        return_id = request.id
        async with _commit_lock(return_id):
            for name, value in changes.items():
                setattr(request, name, value)
            try:
                entry = await self.recorder.record(
                    return_id=return_id,
                    event_type=event_type,
                    previous_status=request.status,
                    new_status=request.status,
                    actor=actor,
                    notes=notes,
                    details=details,
                )
                await self.db.commit()
            except StaleDataError:
                await self.db.rollback()
                raise StaleStateError(
                    "Return was modified by another request, re-fetch and retry",
                    {"return_id": str(return_id)},
                )
            except Exception:
                await self.db.rollback()
                raise
        return entry
