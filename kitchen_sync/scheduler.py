import asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from kitchen_sync.database import SessionLocal, utcnow
from kitchen_sync.models.jobs import JobRun, JobRunStatus, OUTSTANDING_RUN_STATUSES, SyncJob, SyncJobCadence, SyncJobStatus
from kitchen_sync.config import config
from kitchen_sync.services.job_runner import job_runner
import logging

logger = logging.getLogger(__name__)

CADENCE_INTERVALS = {
    SyncJobCadence.FIFTEEN_MINUTES: timedelta(minutes=15),
    SyncJobCadence.HOURLY: timedelta(hours=1),
    SyncJobCadence.DAILY: timedelta(days=1),
}


def add_cadence_interval(base: datetime, cadence: SyncJobCadence) -> datetime:
    try:
        return base + CADENCE_INTERVALS[SyncJobCadence(cadence)]
    except (KeyError, ValueError):
        raise ValueError(f"Unsupported sync job cadence: {cadence}") from None


def calculate_next_run_at(cadence: SyncJobCadence, previous_next_run_at: Optional[datetime], now: datetime) -> datetime:
    """
    Next due slot strictly after `now`.

    Missed slots are skipped, not replayed: a job that was due many intervals
    ago gets a single run and jumps to the first future slot on its grid.
    """
    candidate = add_cadence_interval(previous_next_run_at or now, cadence)
    while candidate <= now:
        candidate = add_cadence_interval(candidate, cadence)
    return candidate


def _enqueue_job(db: Session, job_id: str, now: datetime) -> bool:
    # Strictest isolation so two schedulers cannot both see the job as due.
    # pysqlite only opens the transaction at the first write, so on SQLite the
    # re-read below is not atomic and uq_job_runs_outstanding_per_job is what
    # rejects the second insert.
    db.connection(execution_options={"isolation_level": "SERIALIZABLE"})

    job = db.get(SyncJob, job_id)
    if not job or job.status != SyncJobStatus.ACTIVE:
        return False
    if job.next_run_at and job.next_run_at > now:
        return False

    job.next_run_at = calculate_next_run_at(job.cadence, job.next_run_at, now)

    outstanding = db.execute(
        select(JobRun.id).where(JobRun.job_id == job.id, JobRun.status.in_(OUTSTANDING_RUN_STATUSES)).limit(1)
    ).first()
    if outstanding:
        # The slot is consumed by the run that is still queued or running
        logger.info(f"Sync job {job.id} still has run {outstanding.id} outstanding, not enqueueing another.")
        db.commit()
        return False

    db.add(JobRun(job_id=job.id, status=JobRunStatus.PENDING, created_at=now))
    db.commit()
    return True


def enqueue_due_sync_jobs(now: Optional[datetime] = None, session_factory: Callable[[], Session] = SessionLocal) -> int:
    """
    Enqueues one PENDING run for every ACTIVE job that is due and advances its
    next_run_at. Each job is handled in its own transaction; a failure is
    logged and retried on the next tick.
    """
    now = now or utcnow()

    db = session_factory()
    try:
        due_job_ids = db.execute(
            select(SyncJob.id).where(
                SyncJob.status == SyncJobStatus.ACTIVE,
                (SyncJob.next_run_at.is_(None)) | (SyncJob.next_run_at <= now),
            )
        ).scalars().all()
    finally:
        db.close()

    enqueued = 0
    for job_id in due_job_ids:
        db = session_factory()
        try:
            if _enqueue_job(db, job_id, now):
                enqueued += 1
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to enqueue sync job {job_id}: {e}")
        finally:
            db.close()

    return enqueued


class SyncJobScheduler:
    """
    Owns the process-wide APScheduler instance.

    Two tick jobs run on the configured cron expression: one enqueues due sync
    jobs, the other drains the PENDING run queue. Each tick has an in-flight
    flag; a tick that fires while the previous one is still running is dropped.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, job_runner=None):
        self.session_factory = session_factory
        self.job_runner = job_runner
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._enqueue_in_flight = False
        self._worker_in_flight = False

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    async def enqueue_tick(self) -> Optional[int]:
        if self._enqueue_in_flight:
            logger.warning("Previous scheduler tick still running, skipping this cycle.")
            return None

        self._enqueue_in_flight = True
        try:
            enqueued = await asyncio.to_thread(enqueue_due_sync_jobs, session_factory=self.session_factory)
            if enqueued > 0:
                logger.info(f"Enqueued {enqueued} sync job{'' if enqueued == 1 else 's'} for execution.")
            else:
                logger.debug("No due sync jobs found during scheduled run.")
            return enqueued
        except Exception as e:
            logger.error(f"Failed to enqueue due sync jobs: {e}")
            return None
        finally:
            self._enqueue_in_flight = False

    async def worker_tick(self):
        if self.job_runner is None:
            return None
        if self._worker_in_flight:
            logger.debug("Previous worker tick still draining the run queue, skipping this cycle.")
            return None

        self._worker_in_flight = True
        try:
            return await self.job_runner.process_pending_job_runs()
        except Exception as e:
            logger.error(f"Error while processing pending job runs: {e}")
            return None
        finally:
            self._worker_in_flight = False

    def start(
        self,
        cron_expression: Optional[str] = None,
        timezone: Optional[str] = None,
        run_on_startup: bool = True,
        run_worker: Optional[bool] = None,
    ) -> AsyncIOScheduler:
        """Starts the scheduler once per process; later calls return the running instance."""
        if self.running:
            return self.scheduler

        cron_expression = cron_expression or config.SYNC_JOB_SCHEDULER_CRON
        timezone = timezone or config.SYNC_JOB_SCHEDULER_TZ
        if run_worker is None:
            run_worker = not config.SYNC_JOB_WORKER_DISABLED

        try:
            trigger = CronTrigger.from_crontab(cron_expression, timezone=timezone)
        except ValueError as e:
            raise ValueError(
                f'Invalid cron expression provided: "{cron_expression}". '
                "Update SYNC_JOB_SCHEDULER_CRON or scheduler options."
            ) from e

        scheduler = AsyncIOScheduler(timezone=timezone) if timezone else AsyncIOScheduler()
        first_run = {"next_run_time": datetime.now(scheduler.timezone)} if run_on_startup else {}

        # max_instances > 1 lets overlapping ticks reach the in-flight flags
        scheduler.add_job(
            self.enqueue_tick,
            trigger,
            id="sync_job_enqueue",
            replace_existing=True,
            max_instances=2,
            coalesce=True,
            misfire_grace_time=60,
            **first_run,
        )
        if run_worker and self.job_runner is not None:
            scheduler.add_job(
                self.worker_tick,
                trigger,
                id="sync_job_worker",
                replace_existing=True,
                max_instances=2,
                coalesce=True,
                misfire_grace_time=60,
                **first_run,
            )

        scheduler.start()
        self.scheduler = scheduler
        logger.info(f"APScheduler started: sync jobs checked with: {cron_expression}")
        return scheduler

    def stop(self):
        if self.running:
            self.scheduler.shutdown(wait=False)
            logger.info("APScheduler stopped.")
        self.scheduler = None


sync_job_scheduler = SyncJobScheduler(job_runner=job_runner)


def start_scheduler():
    """
    Starts the process-wide sync job scheduler unless disabled.
    Several processes may run it: enqueueing and claiming are transactional.
    """
    if config.SYNC_JOB_SCHEDULER_DISABLED:
        logger.info("Sync job scheduler disabled via SYNC_JOB_SCHEDULER_DISABLED.")
        return None
    try:
        return sync_job_scheduler.start()
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")
        return None


def stop_scheduler():
    sync_job_scheduler.stop()
