import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, Body
from sqlalchemy.orm import Session
from kitchen_sync.calendarsync.cli_config import CliConfigError
from kitchen_sync.calendarsync.run_logs import RunLogPathError
from kitchen_sync.calendarsync.transformers import ConfigValidationError, state_from_config, validate_config_payload
from kitchen_sync.services.job_service import (
    job_service,
    RunAlreadyFinishedError,
    RunLogUnavailableError,
    RunNotFoundError,
)
from kitchen_sync.schemas.jobs import JobConfigPreviewResponse, JobRunListResponse, JobRunLogResponse, JobRunResponse
from kitchen_sync.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_job_or_404(db: Session, job_id: str):
    job = job_service.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found.")
    return job

@router.get("/{job_id}/runs", response_model=JobRunListResponse)
async def list_runs(
    job_id: str,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Retrieves the run history of a sync job, newest first."""
    _get_job_or_404(db, job_id)
    skip = (page - 1) * size
    items, total = job_service.get_runs(db, job_id, skip=skip, limit=size)

    return JobRunListResponse(
        items=[JobRunResponse.from_run(item) for item in items],
        total=total,
        page=page,
        size=size
    )

@router.get("/{job_id}/runs/{run_id}/log", response_model=JobRunLogResponse)
async def get_run_log(job_id: str, run_id: str, db: Session = Depends(get_db)):
    """Retrieves the full text log of a job run."""
    try:
        content = job_service.get_run_log(db, job_id, run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Job run not found.")
    except RunLogUnavailableError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (OSError, RunLogPathError) as e:
        logger.error(f"Failed to load logs for job run {run_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load run logs.")
    return JobRunLogResponse(log=content)

@router.post("/{job_id}/runs/{run_id}/cancel", response_model=JobRunResponse)
async def cancel_run(job_id: str, run_id: str, db: Session = Depends(get_db)):
    """Cancels a queued run, or asks a running one to stop."""
    try:
        run = job_service.cancel_run(db, job_id, run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Job run not found.")
    except RunAlreadyFinishedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return JobRunResponse.from_run(run)


def _config_preview(job, option_states=None) -> JobConfigPreviewResponse:
    try:
        preview, summary = job_service.get_config_preview(job, option_states)
    except CliConfigError as e:
        raise HTTPException(status_code=500, detail={"code": e.code, "message": str(e)})
    return JobConfigPreviewResponse(yaml=preview, summary=summary)

@router.get("/{job_id}/config-preview", response_model=JobConfigPreviewResponse)
async def get_config_preview(job_id: str, db: Session = Depends(get_db)):
    """Shows the CalendarSync config generated from the job's stored options."""
    job = _get_job_or_404(db, job_id)
    return _config_preview(job)

@router.post("/{job_id}/config-preview", response_model=JobConfigPreviewResponse)
async def preview_config_options(
    job_id: str,
    options: Optional[Dict[str, Any]] = Body(None),
    db: Session = Depends(get_db)
):
    """Validates draft options and shows the config they would produce for this job."""
    job = _get_job_or_404(db, job_id)
    try:
        sanitized = validate_config_payload(options)
    except ConfigValidationError as e:
        raise HTTPException(status_code=422, detail={"code": "INVALID_CONFIG", "errors": e.errors})
    return _config_preview(job, state_from_config(sanitized))
