from fastapi import APIRouter
from .annotation import router as annotation_router
from .jobs import router as jobs_router

router = APIRouter()

# Include all API routes
router.include_router(annotation_router, prefix="/annotation", tags=["annotation"])
router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
