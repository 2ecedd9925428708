from fastapi import APIRouter, status

from returns_engine.api.deps import StaffActor, ReturnSvc
from returns_engine.schemas.return_request import RefundCreate, ReturnDetailResponse


router = APIRouter(prefix="/refunds", tags=["Refunds"])


@router.post("/admin", response_model=ReturnDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_refund(data: RefundCreate, actor: StaffActor, service: ReturnSvc):
    """
    Refund an inspected return through the payment service.

    Omit `amount` to refund the full refundable amount; set `partial` for a
    partial refund (amount required).
    """
    return await service.initiate_refund(
        data.return_id,
        actor,
        amount=data.amount,
        refund_method=data.refund_method.value,
        notes=data.notes,
        partial=data.partial,
        expected_status=data.expected_status,
    )
