"""API endpoints for Streamline"""

from fastapi import APIRouter

from .streams import router as streams_router

# Create main router
router = APIRouter()

router.include_router(streams_router, tags=["streams"])
