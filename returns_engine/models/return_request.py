"""
Return Request Models

A return request moves through the lifecycle defined in
services/return_state_machine.py. Items are a snapshot of the order lines
being sent back; events are the append-only timeline.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import String, Boolean, DateTime, Integer, Text, Numeric, ForeignKey, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from returns_engine.database import Base
from returns_engine.db_types import JSONType, UUIDType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReturnRequest(Base):
    """
    Customer return request (RMA).

    Status changes only happen through ReturnRequestStore.apply_transition.
    Rows are never deleted.
    """
    __tablename__ = "return_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    return_number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="Human readable return number, e.g. RET-261018-4K2Q9Z"
    )

    # Order owned by the order service
    order_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False, index=True)

    # Snapshots taken at creation, used for search and refund limits
    order_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    order_total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    reason_code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="defective, not_as_described, wrong_item, missing_parts, quality_issue, size_issue, changed_mind, found_better_price, late_delivery, other"
    )
    reason_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_action: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="refund",
        comment="refund, replacement, repair"
    )
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending", index=True)
    images: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Reverse logistics
    pickup_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    pickup_scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pickup_carrier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    pickup_ticket_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    customer_ships: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Linked downstream entities (set once)
    refund_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    refund_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    refund_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    replacement_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    replacement_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    items: Mapped[List["ReturnItem"]] = relationship(
        "ReturnItem",
        back_populates="return_request",
        cascade="save-update, merge",
        order_by="ReturnItem.created_at",
        lazy="selectin",
    )
    events: Mapped[List["ReturnEvent"]] = relationship(
        "ReturnEvent",
        back_populates="return_request",
        order_by="ReturnEvent.created_at",
        lazy="raise",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def items_total(self) -> Decimal:
        return sum(
            (Decimal(item.unit_price) * item.quantity for item in self.items),
            Decimal("0.00"),
        )

    @property
    def refundable_amount(self) -> Decimal:
        """Item value being returned, capped at what the customer paid."""
        total = self.items_total
        if not self.items or total > self.order_total:
            return Decimal(self.order_total)
        return total

    def __repr__(self) -> str:
        return f"<ReturnRequest(return_number='{self.return_number}', status='{self.status}')>"


class ReturnItem(Base):
    """Order line included in a return request."""
    __tablename__ = "return_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    return_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("return_requests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    order_item_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    condition: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default="unopened",
        comment="unopened, opened_unused, used, damaged, defective"
    )
    condition_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    return_request: Mapped["ReturnRequest"] = relationship("ReturnRequest", back_populates="items")

    def __repr__(self) -> str:
        return f"<ReturnItem(product='{self.product_name}', qty={self.quantity})>"


class ReturnEvent(Base):
    """
    Timeline entry for a return request.

    Write-once: the ORM refuses updates and deletes (see listeners below).
    """
    __tablename__ = "return_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    return_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("return_requests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    previous_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_type: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    actor_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True
    )

    return_request: Mapped["ReturnRequest"] = relationship("ReturnRequest", back_populates="events")

    def __repr__(self) -> str:
        return f"<ReturnEvent(type='{self.event_type}', {self.previous_status} -> {self.new_status})>"


class TimelineImmutableError(Exception):
    """Raised when code tries to modify or delete a timeline entry."""
    pass


@event.listens_for(ReturnEvent, "before_update")
def _block_event_update(mapper, connection, target):
    raise TimelineImmutableError(f"Timeline event {target.id} cannot be modified")


@event.listens_for(ReturnEvent, "before_delete")
def _block_event_delete(mapper, connection, target):
    raise TimelineImmutableError(f"Timeline event {target.id} cannot be deleted")
