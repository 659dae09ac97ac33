"""Build job endpoints."""

from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from launchpad_engine.core.jobs import JobManager
from launchpad_engine.services.build_log import read_log

router = APIRouter()


class CreateIOSJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_path: str = Field(alias="projectPath", min_length=1)
    version: str = Field(min_length=1)
    build_number: str = Field(alias="buildNumber", min_length=1)
    profile: str = "production"
    message: Optional[str] = None


@router.post("/ios", status_code=201)
async def create_ios_job(request: CreateIOSJobRequest) -> dict:
    """Queue an iOS build and App Store Connect upload."""
    job_manager = JobManager.get_instance()

    try:
        job_id = await job_manager.submit(
            project_path=request.project_path,
            version=request.version,
            build_number=request.build_number,
            profile=request.profile,
            message=request.message,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "data": {"jobId": job_id}}


@router.get("/stats")
async def get_queue_stats() -> dict:
    """Count queue entries per state."""
    job_manager = JobManager.get_instance()
    stats = await job_manager.get_queue_stats()
    return {"success": True, "data": stats}


@router.get("/{job_id}")
async def get_job_status(job_id: str) -> dict:
    """Get job status."""
    job_manager = JobManager.get_instance()
    status = await job_manager.get_status(job_id)

    if not status:
        raise HTTPException(status_code=404, detail="Job not found")

    return {"success": True, "data": status.to_dict()}


@router.get("/{job_id}/logs", response_class=PlainTextResponse)
async def get_job_logs(job_id: str) -> PlainTextResponse:
    """Get the raw build log. It may be partial while the build runs."""
    job_manager = JobManager.get_instance()
    content = read_log(job_id, job_manager.config.LOGS_DIR)

    if content is None:
        raise HTTPException(status_code=404, detail="Logs not found")

    return PlainTextResponse(content)
