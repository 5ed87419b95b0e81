from pydantic import BaseModel
from typing import Dict, List, Optional
from datetime import datetime
from kitchen_sync.models.jobs import JobRunStatus

class JobRunResponse(BaseModel):
    run_id: str
    job_id: str
    status: JobRunStatus
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    message: Optional[str] = None
    log_available: bool = False

    @classmethod
    def from_run(cls, run) -> "JobRunResponse":
        return cls(
            run_id=run.id,
            job_id=run.job_id,
            status=run.status,
            created_at=run.created_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
            message=run.message,
            log_available=bool(run.log_location),
        )

class JobRunListResponse(BaseModel):
    items: list[JobRunResponse]
    total: int
    page: int
    size: int

class JobRunLogResponse(BaseModel):
    log: str

class JobConfigPreviewResponse(BaseModel):
    yaml: str
    summary: Dict[str, List[str]]
