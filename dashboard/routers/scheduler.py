from fastapi import APIRouter, Depends

from dashboard.dependencies import get_scheduler
from dashboard.schemas import DataResponse, ListResponse
from scheduler import JobRegistry, RunStatus

router = APIRouter(prefix="/scheduler", tags=["Scheduler"])


@router.get("/jobs", response_model=ListResponse)
async def list_jobs(registry: JobRegistry = Depends(get_scheduler)):
    """Every registered job with its run statistics."""
    stats = await registry.all_stats()
    return ListResponse(success=True, data=stats, count=len(stats))


@router.get("/jobs/{name}", response_model=DataResponse)
async def get_job(name: str, registry: JobRegistry = Depends(get_scheduler)):
    return DataResponse(success=True, data=await registry.stats(name))


@router.post("/jobs/{name}/pause", response_model=DataResponse)
async def pause_job(name: str, registry: JobRegistry = Depends(get_scheduler)):
    registry.pause(name)
    return DataResponse(success=True, message=f"Job {name} paused", data=await registry.stats(name))


@router.post("/jobs/{name}/resume", response_model=DataResponse)
async def resume_job(name: str, registry: JobRegistry = Depends(get_scheduler)):
    registry.resume(name)
    return DataResponse(success=True, message=f"Job {name} resumed", data=await registry.stats(name))


@router.post("/jobs/{name}/execute", response_model=DataResponse)
async def execute_job(name: str, registry: JobRegistry = Depends(get_scheduler)):
    """Run a job now, even when paused."""
    result = await registry.execute_now(name)
    return DataResponse(
        success=result.status is RunStatus.SUCCESS,
        message=result.error,
        data=result.to_dict(),
    )
