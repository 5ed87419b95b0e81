from fastapi import APIRouter
from kitchen_sync.calendarsync.auth_storage import is_age_available
from kitchen_sync.scheduler import sync_job_scheduler
from kitchen_sync.schemas.accounts import HealthResponse

router = APIRouter()

@router.get("", response_model=HealthResponse)
async def health():
    return HealthResponse(
        status="ok",
        scheduler_running=sync_job_scheduler.running,
        age_available=await is_age_available(),
    )
