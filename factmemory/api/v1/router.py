from fastapi import APIRouter

from factmemory.api.v1.endpoints import facts

# Create API router
api_router = APIRouter()

# Include routers
api_router.include_router(facts.router, prefix="/users/{user_id}/facts", tags=["Facts"])
api_router.include_router(facts.batch_router, prefix="/facts", tags=["Facts"])

__all__ = ["api_router"]
