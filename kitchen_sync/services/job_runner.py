"""
Claims PENDING job runs and executes them with the calendarsync CLI.

Any number of runners (in this process or others) may drain the same queue.
A run is claimed with a conditional ``PENDING -> RUNNING`` update; a runner
that sees zero affected rows lost the race and simply selects again.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy import exists, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from kitchen_sync.calendarsync.auth_storage import write_auth_storage_file
from kitchen_sync.calendarsync.cli_config import (
    CalendarEndpoint,
    OAuthClient,
    build_cli_config,
    extract_config_items,
)
from kitchen_sync.calendarsync.executor import (
    CalendarSyncBinaryNotFoundError,
    CalendarSyncCancelledError,
    CalendarSyncExecutionError,
    ExecutionResult,
    run_calendar_sync,
)
from kitchen_sync.calendarsync.run_logs import RunLogStore
from kitchen_sync.config import config
from kitchen_sync.database import SessionLocal, utcnow
from kitchen_sync.errors import ConfigurationError
from kitchen_sync.models.jobs import JobRun, JobRunStatus, SyncJob
from kitchen_sync.services.slack_service import slack_service

logger = logging.getLogger(__name__)

AUTH_STORAGE_FILENAME = "auth-storage.yaml"
STDERR_TAIL_LINES = 3
INTERRUPTED_MESSAGE = "CalendarSync run was interrupted before it finished (the worker stopped or lost track of it)."


class AuthStorageMissingError(ConfigurationError):
    code = "AUTH_STORAGE_MISSING"


@dataclass
class ClaimedRun:
    run_id: str
    job_id: str
    started_at: datetime


@dataclass
class ProcessPendingJobRunsResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0


@dataclass
class RunOutcome:
    status: JobRunStatus
    message: str
    job_name: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    duration_ms: int = 0
    binary_path: Optional[str] = None

    def with_result(self, result: ExecutionResult) -> "RunOutcome":
        self.stdout = result.stdout
        self.stderr = result.stderr
        self.exit_code = result.exit_code
        self.signal = result.signal
        self.duration_ms = result.duration_ms
        self.binary_path = result.binary_path
        return self


@dataclass
class RunContext:
    job_name: str
    source: CalendarEndpoint
    destination: CalendarEndpoint
    auth_storage: str
    job_config: dict = field(default_factory=dict)


def select_next_pending_run(db: Session, exclude: Iterable[str] = ()) -> Optional[Tuple[str, str]]:
    """Oldest PENDING run whose job has nothing RUNNING, as (run_id, job_id)."""
    running = aliased(JobRun)
    query = (
        select(JobRun.id, JobRun.job_id)
        .where(
            JobRun.status == JobRunStatus.PENDING,
            ~exists().where(running.job_id == JobRun.job_id, running.status == JobRunStatus.RUNNING),
        )
        .order_by(JobRun.created_at.asc(), JobRun.id.asc())
        .limit(1)
    )
    exclude = list(exclude)
    if exclude:
        query = query.where(JobRun.id.notin_(exclude))

    row = db.execute(query).first()
    return (row.id, row.job_id) if row else None


def try_claim_run(db: Session, run_id: str, started_at: datetime) -> bool:
    """Conditional PENDING -> RUNNING transition; False when another worker got there first."""
    result = db.execute(
        update(JobRun)
        .where(JobRun.id == run_id, JobRun.status == JobRunStatus.PENDING)
        .values(status=JobRunStatus.RUNNING, started_at=started_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def fail_stale_runs(db: Session, started_before: datetime, now: datetime, exclude: Iterable[str] = ()) -> int:
    """Marks RUNNING runs started before the cutoff as FAILED and returns how many were reclaimed."""
    query = (
        update(JobRun)
        .where(JobRun.status == JobRunStatus.RUNNING, JobRun.started_at < started_before)
        .values(status=JobRunStatus.FAILED, finished_at=now, message=INTERRUPTED_MESSAGE)
        .execution_options(synchronize_session=False)
    )
    exclude = list(exclude)
    if exclude:
        query = query.where(JobRun.id.notin_(exclude))

    reclaimed = db.execute(query).rowcount
    db.commit()
    return reclaimed


def claim_next_pending_run(session_factory: Callable[[], Session] = SessionLocal) -> Optional[ClaimedRun]:
    skipped = set()
    while True:
        candidate = None
        db = session_factory()
        try:
            # pysqlite defers BEGIN until the UPDATE, so on SQLite only the
            # conditional update below decides the race
            db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
            candidate = select_next_pending_run(db, skipped)
            if candidate is None:
                return None

            run_id, job_id = candidate
            started_at = utcnow()
            if try_claim_run(db, run_id, started_at):
                return ClaimedRun(run_id=run_id, job_id=job_id, started_at=started_at)

            logger.debug(f"Job run {run_id} was claimed by another worker, selecting again.")
        except SQLAlchemyError as e:
            db.rollback()
            if candidate is None:
                logger.error(f"Failed to look up pending job runs: {e}")
                return None
            logger.warning(f"Failed to claim job run {candidate[0]}, skipping it for this pass: {e}")
            skipped.add(candidate[0])
        finally:
            db.close()


def calendar_endpoint(calendar) -> CalendarEndpoint:
    return CalendarEndpoint(
        calendar_id=calendar.external_id,
        account_id=calendar.account.provider_account_id,
        time_zone=calendar.time_zone,
    )


def select_auth_storage(job: SyncJob) -> str:
    source_account = job.source_calendar.account
    destination_account = job.destination_calendar.account
    source_storage = source_account.auth_storage
    destination_storage = destination_account.auth_storage

    if not source_storage and not destination_storage:
        raise AuthStorageMissingError(
            "Neither source nor destination account has CalendarSync auth storage configured. "
            "Please set up auth storage for at least one account."
        )

    if source_account.id != destination_account.id and source_storage and destination_storage:
        logger.warning("Both source and destination accounts have auth storage. Using source account's storage.")
        return source_storage

    return source_storage or destination_storage


def format_failure_message(error: CalendarSyncExecutionError) -> str:
    result = error.result
    message = f"CalendarSync exited with code {result.exit_code if result.exit_code is not None else 'unknown'}."
    if result.signal:
        message = f"CalendarSync was terminated by {result.signal}."
    if result.stderr and result.stderr.strip():
        tail = "\n".join(result.stderr.strip().splitlines()[-STDERR_TAIL_LINES:])
        message += f"\n\nError output:\n{tail}"
    return message


def format_log_content(
    job_id: str,
    run_id: str,
    started_at: datetime,
    finished_at: datetime,
    outcome: RunOutcome,
) -> str:
    lines = [
        f"[sync-job-runner] Job {job_id} ({outcome.job_name}) run {run_id}",
        f"Started at: {started_at.isoformat()}Z",
        f"Finished at: {finished_at.isoformat()}Z",
        f"Status: {outcome.status.value}",
        f"Message: {outcome.message}",
        f"Duration: {outcome.duration_ms}ms",
        f"Exit code: {outcome.exit_code if outcome.exit_code is not None else 'n/a'}",
        f"Signal: {outcome.signal or 'n/a'}",
        f"Binary: {outcome.binary_path or 'unknown'}",
        "",
        "---- STDOUT ----",
        outcome.stdout.rstrip() if outcome.stdout else "<empty>",
        "",
        "---- STDERR ----",
        outcome.stderr.rstrip() if outcome.stderr else "<empty>",
        "",
    ]
    return "\n".join(lines)


class JobRunner:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        log_store: Optional[RunLogStore] = None,
        binary_path: Optional[str] = None,
        oauth_client: Optional[OAuthClient] = None,
        run_timeout: Optional[float] = None,
        notifier=slack_service,
        stale_after: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.log_store = log_store or RunLogStore()
        self.binary_path = binary_path
        self.oauth_client = oauth_client or OAuthClient(config.GOOGLE_CLIENT_ID, config.GOOGLE_CLIENT_SECRET)
        self.run_timeout = run_timeout if run_timeout is not None else config.SYNC_JOB_RUN_TIMEOUT_SECONDS
        self.notifier = notifier
        self.stale_after = timedelta(
            seconds=stale_after if stale_after is not None else config.SYNC_JOB_STALE_RUN_SECONDS
        )
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def is_running_here(self, run_id: str) -> bool:
        return run_id in self._cancel_events

    def request_cancellation(self, run_id: str) -> bool:
        """Signals a run executing in this process; False if it is not ours."""
        event = self._cancel_events.get(run_id)
        if event is None:
            return False
        logger.info(f"Cancellation requested for job run {run_id}")
        event.set()
        return True

    def reclaim_stale_runs(self, now: Optional[datetime] = None) -> int:
        """
        Fails RUNNING runs whose worker is gone, so their jobs can be enqueued again.
        Runs owned by this process are never touched.
        """
        now = now or utcnow()
        db = self.session_factory()
        try:
            reclaimed = fail_stale_runs(db, now - self.stale_after, now, exclude=list(self._cancel_events))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to reclaim stale job runs: {e}")
            return 0
        finally:
            db.close()

        if reclaimed:
            logger.warning(f"Marked {reclaimed} stale RUNNING job run{'' if reclaimed == 1 else 's'} as FAILED.")
        return reclaimed

    async def process_pending_job_runs(self) -> ProcessPendingJobRunsResult:
        result = ProcessPendingJobRunsResult()
        self.reclaim_stale_runs()

        while True:
            claimed = claim_next_pending_run(self.session_factory)
            if claimed is None:
                break

            result.processed += 1
            try:
                status = await self.execute_run(claimed)
            except Exception as e:
                status = JobRunStatus.FAILED
                logger.error(f"Unexpected error while executing job run {claimed.run_id}: {e}")

            if status == JobRunStatus.SUCCESS:
                result.succeeded += 1
            elif status == JobRunStatus.CANCELLED:
                result.cancelled += 1
            else:
                result.failed += 1

        if result.processed == 0:
            logger.debug("No pending job runs found.")

        return result

    async def execute_run(self, claimed: ClaimedRun) -> JobRunStatus:
        cancel_event = asyncio.Event()
        self._cancel_events[claimed.run_id] = cancel_event
        timer = None
        if self.run_timeout:
            timer = asyncio.get_running_loop().call_later(self.run_timeout, cancel_event.set)

        try:
            outcome = await self._run(claimed, cancel_event)
        except asyncio.CancelledError:
            # The worker task itself is going away; _run already stopped the child
            self._record_interrupted(claimed)
            raise
        finally:
            if timer is not None:
                timer.cancel()
            self._cancel_events.pop(claimed.run_id, None)

        finished_at = utcnow()
        log_location = self._persist_log(claimed, outcome, finished_at)
        try:
            stored = self._finalize(claimed, outcome, log_location, finished_at)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record the result of job run {claimed.run_id}: {e}")
            outcome.status = JobRunStatus.FAILED
            outcome.message = f"CalendarSync finished but its result could not be recorded: {e}"
            stored = self._finalize(claimed, outcome, log_location, finished_at)

        if stored != outcome.status:
            logger.warning(
                f"Job run {claimed.run_id} ended {outcome.status.value} but was already "
                f"{stored.value if stored else 'gone'}, discarding the result."
            )
            return stored

        if outcome.status == JobRunStatus.SUCCESS:
            logger.info(f"Completed job run {claimed.run_id} for job {claimed.job_id}.")
        else:
            logger.warning(f"Job run {claimed.run_id} for job {claimed.job_id} ended {outcome.status.value}: {outcome.message}")

        self._notify(claimed, outcome)
        return outcome.status

    def _record_interrupted(self, claimed: ClaimedRun):
        finished_at = utcnow()
        outcome = RunOutcome(status=JobRunStatus.CANCELLED, message=INTERRUPTED_MESSAGE)
        try:
            self._finalize(claimed, outcome, self._persist_log(claimed, outcome, finished_at), finished_at)
        except SQLAlchemyError as e:
            # Left RUNNING; reclaim_stale_runs picks it up later
            logger.error(f"Failed to record interruption of job run {claimed.run_id}: {e}")

    def _load_context(self, job_id: str) -> RunContext:
        db = self.session_factory()
        try:
            job = db.get(SyncJob, job_id)
            if job is None:
                raise ConfigurationError(f"Sync job {job_id} no longer exists.")

            return RunContext(
                job_name=job.name,
                source=calendar_endpoint(job.source_calendar),
                destination=calendar_endpoint(job.destination_calendar),
                auth_storage=select_auth_storage(job),
                job_config=job.config or {},
            )
        finally:
            db.close()

    async def _run(self, claimed: ClaimedRun, cancel_event: asyncio.Event) -> RunOutcome:
        outcome = RunOutcome(status=JobRunStatus.FAILED, message="")
        run_dir = None
        try:
            context = self._load_context(claimed.job_id)
            outcome.job_name = context.job_name

            if cancel_event.is_set():
                outcome.status = JobRunStatus.CANCELLED
                outcome.message = "CalendarSync run was cancelled before it started."
                return outcome

            run_dir = tempfile.mkdtemp(prefix=f"calendarsync-run-{claimed.run_id}-")
            auth_storage_path = os.path.join(run_dir, AUTH_STORAGE_FILENAME)
            write_auth_storage_file(auth_storage_path, context.auth_storage)

            cli_config = build_cli_config(
                context.source,
                context.destination,
                extract_config_items(context.job_config, "transformers"),
                extract_config_items(context.job_config, "filters"),
                self.oauth_client,
                auth_storage_path=auth_storage_path,
            )

            result = await run_calendar_sync(
                cli_config,
                binary_path=self.binary_path,
                cancel_event=cancel_event,
                working_directory=run_dir,
            )
            outcome.status = JobRunStatus.SUCCESS
            outcome.message = f"CalendarSync completed successfully in {result.duration_ms}ms."
            outcome.with_result(result)
        except CalendarSyncCancelledError as e:
            outcome.status = JobRunStatus.CANCELLED
            outcome.message = f"CalendarSync run was cancelled after {e.result.duration_ms}ms."
            outcome.with_result(e.result)
        except CalendarSyncExecutionError as e:
            outcome.message = format_failure_message(e)
            outcome.with_result(e.result)
        except CalendarSyncBinaryNotFoundError as e:
            outcome.message = str(e)
            outcome.binary_path = e.binary_path
        except ConfigurationError as e:
            outcome.message = str(e)
        except Exception as e:
            outcome.message = f"CalendarSync execution failed: {e}"
        finally:
            if run_dir is not None:
                shutil.rmtree(run_dir, ignore_errors=True)

        return outcome

    def _persist_log(self, claimed: ClaimedRun, outcome: RunOutcome, finished_at: datetime) -> Optional[str]:
        try:
            content = format_log_content(claimed.job_id, claimed.run_id, claimed.started_at, finished_at, outcome)
            return self.log_store.write(claimed.job_id, claimed.run_id, content)
        except Exception as e:
            logger.error(f"Failed to persist logs for job run {claimed.run_id}: {e}")
            return None

    def _finalize(
        self,
        claimed: ClaimedRun,
        outcome: RunOutcome,
        log_location: Optional[str],
        finished_at: datetime,
    ) -> Optional[JobRunStatus]:
        """Conditional RUNNING -> terminal update; returns the status the run ends up with."""
        db = self.session_factory()
        try:
            updated = db.execute(
                update(JobRun)
                .where(JobRun.id == claimed.run_id, JobRun.status == JobRunStatus.RUNNING)
                .values(
                    status=outcome.status,
                    finished_at=finished_at,
                    message=outcome.message,
                    log_location=log_location,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            stored = outcome.status
            if updated == 0:
                stored = db.execute(select(JobRun.status).where(JobRun.id == claimed.run_id)).scalar()
                logger.warning(f"Job run {claimed.run_id} is no longer RUNNING, leaving its state untouched.")

            db.execute(
                update(SyncJob)
                .where(SyncJob.id == claimed.job_id)
                .values(last_run_at=finished_at)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return stored
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def _notify(self, claimed: ClaimedRun, outcome: RunOutcome):
        if self.notifier is None:
            return
        titles = {
            JobRunStatus.SUCCESS: "✅ Sync Job Completed",
            JobRunStatus.FAILED: "❌ Sync Job Failed",
            JobRunStatus.CANCELLED: "⏹️ Sync Job Cancelled",
        }
        try:
            self.notifier.send_job_status(
                title=titles.get(outcome.status, "Sync Job Finished"),
                status=outcome.status.value.capitalize(),
                message=f"Job: {outcome.job_name or claimed.job_id}\nRun ID: {claimed.run_id}\n{outcome.message}",
            )
        except Exception as e:
            logger.error(f"Failed to send job status notification for run {claimed.run_id}: {e}")


job_runner = JobRunner()
