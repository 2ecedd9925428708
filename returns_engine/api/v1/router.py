from fastapi import APIRouter

from returns_engine.api.v1.endpoints import (
    returns,
    refunds,
    replacements,
)

api_router = APIRouter()

# Return lifecycle
api_router.include_router(returns.router)
api_router.include_router(refunds.router)
api_router.include_router(replacements.router)
