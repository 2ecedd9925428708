"""
Pydantic schemas for return requests, refunds and replacements.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any
from uuid import UUID

from pydantic import BaseModel, Field

from returns_engine.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== Enums ====================

class RequestedAction(str, Enum):
    REFUND = "refund"
    REPLACEMENT = "replacement"
    REPAIR = "repair"


class ItemCondition(str, Enum):
    UNOPENED = "unopened"
    OPENED_UNUSED = "opened_unused"
    USED = "used"
    DAMAGED = "damaged"
    DEFECTIVE = "defective"


class RefundMethod(str, Enum):
    ORIGINAL = "original"
    WALLET = "wallet"
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    CHEQUE = "cheque"


# ==================== Return Item Schemas ====================

class ReturnItemCreate(BaseCreateSchema):
    order_item_id: UUID
    product_id: Optional[UUID] = None
    product_name: str = Field(..., min_length=1, max_length=255)
    sku: Optional[str] = None
    quantity: int = Field(1, ge=1)
    unit_price: Decimal = Field(..., ge=0)
    condition: ItemCondition = ItemCondition.UNOPENED
    condition_notes: Optional[str] = None


class ReturnItemResponse(BaseResponseSchema):
    id: UUID
    order_item_id: UUID
    product_id: Optional[UUID] = None
    product_name: str
    sku: Optional[str] = None
    quantity: int
    unit_price: Decimal
    condition: str
    condition_notes: Optional[str] = None


# ==================== Return Request Schemas ====================

class ReturnCreate(BaseCreateSchema):
    """Return request submitted by a customer (or by support on their behalf)."""
    order_id: UUID
    order_number: str = Field(..., min_length=1, max_length=50)
    order_total: Decimal = Field(..., gt=0)
    user_id: Optional[UUID] = None  # Required when staff create a return
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    reason_code: str
    reason_text: Optional[str] = None
    requested_action: RequestedAction = RequestedAction.REFUND
    items: List[ReturnItemCreate] = Field(..., min_length=1)
    images: List[str] = []
    pickup_address: Optional[Dict[str, Any]] = None


class ApproveRequest(BaseCreateSchema):
    notes: Optional[str] = None
    pickup_scheduled: Optional[datetime] = None
    pickup_carrier: Optional[str] = None
    customer_ships: bool = False
    expected_status: Optional[str] = None


class RejectRequest(BaseCreateSchema):
    notes: Optional[str] = None  # Required; checked by the transition rules
    expected_status: Optional[str] = None


class ResubmitRequest(BaseCreateSchema):
    """Customer reply to a more-info request."""
    notes: Optional[str] = Field(None, max_length=2000)
    expected_status: Optional[str] = None


class ReplacementItem(BaseCreateSchema):
    order_item_id: UUID
    product_name: str
    quantity: int = Field(1, ge=1)
    sku: Optional[str] = None
    product_id: Optional[UUID] = None


class StatusUpdateRequest(BaseCreateSchema):
    """Generic transition. Side-effect edges use the refund/replacement fields."""
    new_status: str
    notes: Optional[str] = None
    expected_status: Optional[str] = None
    pickup_scheduled: Optional[datetime] = None
    pickup_carrier: Optional[str] = None
    customer_ships: Optional[bool] = None
    amount: Optional[Decimal] = None
    refund_method: Optional[RefundMethod] = None
    items: Optional[List[ReplacementItem]] = None


class NoteCreate(BaseCreateSchema):
    notes: str = Field(..., min_length=1)


class RefundCreate(BaseCreateSchema):
    return_id: UUID
    amount: Optional[Decimal] = None  # Defaults to the refundable amount
    refund_method: RefundMethod = RefundMethod.ORIGINAL
    notes: Optional[str] = None
    partial: bool = False
    expected_status: Optional[str] = None


class ReplacementCreate(BaseCreateSchema):
    return_id: UUID
    items: Optional[List[ReplacementItem]] = None  # Defaults to the returned items
    notes: Optional[str] = None
    expected_status: Optional[str] = None


# ==================== Response Schemas ====================

class ReturnEventResponse(BaseResponseSchema):
    id: UUID
    event_type: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    notes: Optional[str] = None
    actor_type: str
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime


class TransitionOption(BaseModel):
    status: str
    label: str
    action: str


class RefundInfo(BaseModel):
    refund_id: str
    amount: Optional[Decimal] = None
    refund_method: Optional[str] = None
    status: Optional[str] = None


class ReplacementInfo(BaseModel):
    order_id: str
    status: Optional[str] = None


class ReturnSummary(BaseResponseSchema):
    """Row in return lists."""
    id: UUID
    return_number: str
    order_id: UUID
    user_id: UUID
    order_number: str
    order_total: Decimal
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    reason_code: str
    reason_label: Optional[str] = None
    requested_action: str
    status: str
    status_label: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    created_at: datetime
    updated_at: datetime


class ReturnDetailResponse(ReturnSummary):
    reason_text: Optional[str] = None
    images: Optional[List[str]] = None
    pickup_address: Optional[Dict[str, Any]] = None
    pickup_scheduled_at: Optional[datetime] = None
    pickup_carrier: Optional[str] = None
    pickup_ticket_id: Optional[str] = None
    customer_ships: bool = False
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    refundable_amount: Decimal
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int
    items: List[ReturnItemResponse] = []
    timeline: List[ReturnEventResponse] = []
    refund: Optional[RefundInfo] = None
    replacement: Optional[ReplacementInfo] = None
    available_transitions: List[TransitionOption] = []


class TodayStats(BaseModel):
    created: int = 0
    approved: int = 0
    completed: int = 0


class ReturnStatsResponse(BaseModel):
    total_returns: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    in_process: int = 0
    completed: int = 0
    refund_requests: int = 0
    replacement_requests: int = 0
    by_status: Dict[str, int] = {}
    by_reason: Dict[str, int] = {}
    today: TodayStats = TodayStats()
    generated_at: Optional[datetime] = None


class PaginationInfo(BaseModel):
    page: int
    size: int
    total: int
    pages: int


class ReturnListResponse(BaseModel):
    returns: List[ReturnSummary]
    pagination: PaginationInfo
    stats: Optional[ReturnStatsResponse] = None


class ReasonOption(BaseModel):
    code: str
    label: str
    category: str


class ActionOption(BaseModel):
    code: str
    label: str
