from fastapi import APIRouter, status

from returns_engine.api.deps import StaffActor, ReturnSvc
from returns_engine.schemas.return_request import ReplacementCreate, ReturnDetailResponse


router = APIRouter(prefix="/replacements", tags=["Replacements"])


@router.post("/admin", response_model=ReturnDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_replacement(data: ReplacementCreate, actor: StaffActor, service: ReturnSvc):
    """Create a replacement order for an inspected return."""
    items = [item.model_dump(mode="json") for item in data.items] if data.items else None
    return await service.create_replacement(
        data.return_id,
        actor,
        items=items,
        notes=data.notes,
        expected_status=data.expected_status,
    )
