from fastapi import APIRouter

from caseflow.api.v1.endpoints import pipeline

# Create API router
api_router = APIRouter()

# Include routers
api_router.include_router(pipeline.router, prefix="/pipeline", tags=["Pipeline"])

__all__ = ["api_router"]
