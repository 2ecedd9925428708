"""
Return request API endpoints.

Customer-facing:
- GET  /returns/reasons
- GET  /returns/actions
- POST /returns/request
- GET  /returns/my-returns
- GET  /returns/my-returns/{return_id}
- PUT  /returns/my-returns/{return_id}/resubmit

Admin:
- GET  /returns/admin
- GET  /returns/admin/stats
- GET  /returns/admin/{return_id}
- PUT  /returns/admin/{return_id}/approve
- PUT  /returns/admin/{return_id}/reject
- PUT  /returns/admin/{return_id}/status
- POST /returns/admin/{return_id}/notes
"""

import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Query, status

from returns_engine.api.deps import CurrentActor, StaffActor, ReturnSvc
from returns_engine.schemas.return_request import (
    ActionOption,
    ApproveRequest,
    NoteCreate,
    ReasonOption,
    RejectRequest,
    ResubmitRequest,
    ReturnCreate,
    ReturnDetailResponse,
    ReturnListResponse,
    ReturnStatsResponse,
    StatusUpdateRequest,
)
from returns_engine.services.return_service import ReturnService
from returns_engine.services.return_state_machine import ReturnStatus, TransitionPayload
from returns_engine.services.return_store import ReturnFilters


router = APIRouter(prefix="/returns", tags=["Returns"])


# ==================== Reference data ====================

@router.get("/reasons", response_model=List[ReasonOption])
async def list_return_reasons():
    """Return reasons with labels and categories."""
    return ReturnService.reasons()


@router.get("/actions", response_model=List[ActionOption])
async def list_return_actions():
    """Outcomes a customer can ask for."""
    return ReturnService.actions()


# ==================== Customer endpoints ====================

@router.post("/request", response_model=ReturnDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_return_request(data: ReturnCreate, actor: CurrentActor, service: ReturnSvc):
    """Open a return request for an order."""
    return await service.create_return(data, actor)


@router.get("/my-returns", response_model=ReturnListResponse)
async def list_my_returns(
    actor: CurrentActor,
    service: ReturnSvc,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
):
    return await service.list_for_user(actor, page, size)


@router.get("/my-returns/{return_id}", response_model=ReturnDetailResponse)
async def get_my_return(return_id: uuid.UUID, actor: CurrentActor, service: ReturnSvc):
    return await service.get_detail(return_id, actor)


@router.put("/my-returns/{return_id}/resubmit", response_model=ReturnDetailResponse)
async def resubmit_my_return(return_id: uuid.UUID, data: ResubmitRequest, actor: CurrentActor, service: ReturnSvc):
    """Send a return back for review after answering a more-info request."""
    payload = TransitionPayload(notes=data.notes, expected_status=data.expected_status)
    return await service.update_status(return_id, ReturnStatus.PENDING, actor, payload)


# ==================== Admin endpoints ====================

@router.get("/admin", response_model=ReturnListResponse)
async def list_returns_admin(
    actor: StaffActor,
    service: ReturnSvc,
    status_filter: Optional[str] = Query(None, alias="status", description="Status filter, 'all' for every status"),
    reason: Optional[str] = None,
    action: Optional[str] = None,
    search: Optional[str] = Query(None, description="Return number, order number, customer name or email"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
):
    """List returns, pending first, with summary stats."""
    filters = ReturnFilters(
        status=status_filter,
        reason=reason,
        action=action,
        search=search,
        date_from=date_from,
        date_to=date_to,
    )
    return await service.list_returns(filters, page, size)


@router.get("/admin/stats", response_model=ReturnStatsResponse)
async def get_return_stats(actor: StaffActor, service: ReturnSvc, fresh: bool = False):
    return await service.get_stats(fresh=fresh)


@router.get("/admin/{return_id}", response_model=ReturnDetailResponse)
async def get_return_admin(return_id: uuid.UUID, actor: StaffActor, service: ReturnSvc):
    """Return detail with timeline, refund/replacement and available transitions."""
    return await service.get_detail(return_id, actor)


@router.put("/admin/{return_id}/approve", response_model=ReturnDetailResponse)
async def approve_return(return_id: uuid.UUID, data: ApproveRequest, actor: StaffActor, service: ReturnSvc):
    return await service.approve(
        return_id,
        actor,
        notes=data.notes,
        pickup_scheduled=data.pickup_scheduled,
        pickup_carrier=data.pickup_carrier,
        customer_ships=data.customer_ships,
        expected_status=data.expected_status,
    )


@router.put("/admin/{return_id}/reject", response_model=ReturnDetailResponse)
async def reject_return(return_id: uuid.UUID, data: RejectRequest, actor: StaffActor, service: ReturnSvc):
    return await service.reject(return_id, actor, notes=data.notes, expected_status=data.expected_status)


@router.put("/admin/{return_id}/status", response_model=ReturnDetailResponse)
async def update_return_status(
    return_id: uuid.UUID,
    data: StatusUpdateRequest,
    actor: StaffActor,
    service: ReturnSvc,
):
    """Move a return along the lifecycle. Refund and replacement edges call the collaborators."""
    payload = TransitionPayload(
        notes=data.notes,
        pickup_scheduled=data.pickup_scheduled,
        pickup_carrier=data.pickup_carrier,
        customer_ships=data.customer_ships,
        amount=data.amount,
        refund_method=data.refund_method.value if data.refund_method else None,
        replacement_items=[item.model_dump(mode="json") for item in data.items] if data.items else None,
        expected_status=data.expected_status,
    )
    return await service.update_status(return_id, data.new_status, actor, payload)


@router.post("/admin/{return_id}/notes", response_model=ReturnDetailResponse)
async def add_return_note(return_id: uuid.UUID, data: NoteCreate, actor: StaffActor, service: ReturnSvc):
    return await service.add_note(return_id, data.notes, actor)
