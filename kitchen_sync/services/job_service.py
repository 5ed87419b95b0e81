import logging
from typing import Dict, List, Optional, Tuple
from sqlalchemy import update
from sqlalchemy.orm import Session
from kitchen_sync.calendarsync.cli_config import OAuthClient, generate_yaml_preview
from kitchen_sync.calendarsync.run_logs import RunLogStore
from kitchen_sync.calendarsync.transformers import OptionState, create_summary, state_from_config
from kitchen_sync.database import utcnow
from kitchen_sync.models.jobs import JobRun, JobRunStatus, SyncJob, TERMINAL_RUN_STATUSES
from kitchen_sync.services.job_runner import JobRunner, calendar_endpoint, job_runner

logger = logging.getLogger(__name__)

MASKED_SECRET = "********"


class RunNotFoundError(Exception):
    pass


class RunLogUnavailableError(Exception):
    pass


class RunAlreadyFinishedError(Exception):
    pass


class JobService:
    def __init__(self, log_store: Optional[RunLogStore] = None, runner: Optional[JobRunner] = None):
        self.log_store = log_store or RunLogStore()
        self.runner = runner or job_runner

    def get_job(self, db: Session, job_id: str, owner_id: Optional[str] = None):
        query = db.query(SyncJob).filter(SyncJob.id == job_id)
        if owner_id is not None:
            query = query.filter(SyncJob.owner_id == owner_id)
        return query.first()

    def get_runs(self, db: Session, job_id: str, skip: int = 0, limit: int = 100):
        """Run history for a job, newest first."""
        query = db.query(JobRun).filter(JobRun.job_id == job_id)
        total = query.count()
        items = query.order_by(JobRun.created_at.desc(), JobRun.id.desc()).offset(skip).limit(limit).all()
        return items, total

    def get_run(self, db: Session, job_id: str, run_id: str):
        return db.query(JobRun).filter(JobRun.id == run_id, JobRun.job_id == job_id).first()

    def get_run_log(self, db: Session, job_id: str, run_id: str) -> str:
        run = self.get_run(db, job_id, run_id)
        if not run:
            raise RunNotFoundError(f"Job run {run_id} not found")
        if not run.log_location:
            raise RunLogUnavailableError("Logs are not available for this run.")
        return self.log_store.read(run.log_location)

    def get_config_preview(
        self,
        job: SyncJob,
        option_states: Optional[Dict[str, OptionState]] = None,
    ) -> Tuple[str, Dict[str, List[str]]]:
        """
        YAML the CLI would receive for this job, with the OAuth client secret
        masked, and a human summary of the enabled options. Without explicit
        option states the job's stored config is used.
        """
        states = option_states if option_states is not None else state_from_config(job.config)
        oauth_client = self.runner.oauth_client
        masked_client = OAuthClient(
            client_id=oauth_client.client_id,
            client_secret=MASKED_SECRET if oauth_client.client_secret else None,
        )
        preview = generate_yaml_preview(
            calendar_endpoint(job.source_calendar),
            calendar_endpoint(job.destination_calendar),
            states,
            masked_client,
        )
        return preview, create_summary(states)

    def _cancel_if(self, db: Session, run: JobRun, expected: JobRunStatus, message: str) -> bool:
        cancelled = db.execute(
            update(JobRun)
            .where(JobRun.id == run.id, JobRun.status == expected)
            .values(status=JobRunStatus.CANCELLED, finished_at=utcnow(), message=message)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        db.refresh(run)
        return cancelled == 1

    def cancel_run(self, db: Session, job_id: str, run_id: str) -> JobRun:
        """
        Cancels a queued run outright. A running one is signalled if it executes
        in this process and finishes as CANCELLED once the CLI exits; otherwise
        it is marked CANCELLED directly.
        """
        run = self.get_run(db, job_id, run_id)
        if not run:
            raise RunNotFoundError(f"Job run {run_id} not found")

        if run.status == JobRunStatus.PENDING:
            if self._cancel_if(db, run, JobRunStatus.PENDING, "Cancelled before it started."):
                logger.info(f"Cancelled pending job run {run_id}")
                return run

        if run.status == JobRunStatus.RUNNING:
            if self.runner.request_cancellation(run_id):
                return run
            # Owned by another worker or by none; that worker's own update will find it no longer RUNNING
            if self._cancel_if(db, run, JobRunStatus.RUNNING, "Cancelled while running in another worker."):
                logger.info(f"Cancelled job run {run_id} owned by another worker")
                return run

        if run.status in TERMINAL_RUN_STATUSES:
            raise RunAlreadyFinishedError(f"Job run {run_id} already finished with status {run.status.value}")
        return run

job_service = JobService()
