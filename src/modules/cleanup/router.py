from fastapi import APIRouter, Request

from src.modules.cleanup.job import CleanupJob
from src.modules.cleanup.schemas import CleanupResult, CleanupStatusResponse
from src.shared.schemas.base import ApiResponse

router = APIRouter(prefix="/cleanup", tags=["Cleanup"])


def _job(request: Request) -> CleanupJob:
    return request.app.state.cleanup_job


@router.post("/run", response_model=ApiResponse[CleanupResult])
async def run_cleanup(request: Request):
    """Run the expired-attachment sweep now."""
    result = await _job(request).run_once()
    message = "Cleanup already in progress" if result.skipped else f"{result.files_removed} file(s) removed"
    return ApiResponse(success=True, message=message, data=result)


@router.get("/status", response_model=ApiResponse[CleanupStatusResponse])
async def cleanup_status(request: Request):
    job = _job(request)
    return ApiResponse(
        success=True,
        data=CleanupStatusResponse(config=job.config(), stats=job.stats, last_result=job.last_result),
    )
