import asyncio
import os
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

import kitchen_sync.services.job_runner as job_runner_module
from kitchen_sync.calendarsync.cli_config import OAuthClient
from kitchen_sync.calendarsync.executor import CalendarSyncExecutionError, ExecutionResult
from kitchen_sync.calendarsync.run_logs import RunLogStore
from kitchen_sync.models.jobs import JobRun, JobRunStatus, SyncJob
from kitchen_sync.scheduler import enqueue_due_sync_jobs
from kitchen_sync.services.job_runner import (
    JobRunner,
    claim_next_pending_run,
    format_failure_message,
    select_auth_storage,
    try_claim_run,
)
from kitchen_sync.services.job_service import JobService

from conftest import T0


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def send_job_status(self, title, status, message):
        self.calls.append((title, status, message))


class BrokenLogStore:
    def write(self, job_id, run_id, content):
        raise OSError("No space left on device")


@pytest.fixture
def log_store(tmp_path):
    return RunLogStore(tmp_path / "logs")


@pytest.fixture
def make_runner(seed, log_store):
    def _make(binary_path, **kwargs):
        options = {
            "log_store": log_store,
            "oauth_client": OAuthClient("client-id", "client-secret"),
            "run_timeout": None,
            "notifier": None,
        }
        options.update(kwargs)
        return JobRunner(session_factory=seed.session_factory, binary_path=binary_path, **options)

    return _make


def _run(db, run_id):
    db.expire_all()
    return db.get(JobRun, run_id)


def test_claim_takes_the_oldest_pending_run(seed):
    newer_job = seed.job()
    older_job = seed.job()
    seed.run(newer_job, created_at=T0)
    older_run = seed.run(older_job, created_at=T0 - timedelta(minutes=5))

    claimed = claim_next_pending_run(seed.session_factory)

    assert claimed.run_id == older_run
    assert claimed.job_id == older_job


def test_a_run_is_claimed_only_once(seed, db):
    job_id = seed.job()
    run_id = seed.run(job_id)

    first = claim_next_pending_run(seed.session_factory)
    second = claim_next_pending_run(seed.session_factory)

    assert first.run_id == run_id
    assert second is None
    run = _run(db, run_id)
    assert run.status == JobRunStatus.RUNNING
    assert run.started_at == first.started_at


def test_claim_race_has_a_single_winner(seed, db, monkeypatch):
    job_id = seed.job()
    run_id = seed.run(job_id)
    original_select = job_runner_module.select_next_pending_run
    calls = []

    def racing_select(session, exclude=()):
        candidate = original_select(session, exclude)
        if not calls and candidate:
            # Another worker claims the same run between our select and update
            other = seed.session_factory()
            try:
                assert try_claim_run(other, candidate[0], T0)
            finally:
                other.close()
        calls.append(candidate)
        return candidate

    monkeypatch.setattr(job_runner_module, "select_next_pending_run", racing_select)

    assert claim_next_pending_run(seed.session_factory) is None
    assert calls == [(run_id, job_id), None]
    assert _run(db, run_id).started_at == T0


def test_missing_binary_fails_the_run_without_leaving_files(seed, db, make_runner, log_store, scratch_dir, tmp_path):
    job_id = seed.job()
    run_id = seed.run(job_id)
    runner = make_runner(str(tmp_path / "bin" / "calendarsync"))

    result = asyncio.run(runner.process_pending_job_runs())

    assert (result.processed, result.failed) == (1, 1)
    run = _run(db, run_id)
    assert run.status == JobRunStatus.FAILED
    assert "not executable or missing" in run.message
    assert run.finished_at is not None
    assert "Status: FAILED" in log_store.read(run.log_location)
    assert db.get(SyncJob, job_id).last_run_at == run.finished_at
    assert os.listdir(scratch_dir) == []


def test_failed_cli_keeps_the_stderr_tail(seed, db, make_runner, make_executable, log_store, scratch_dir):
    binary = make_executable(
        "calendarsync",
        'echo "fetching events"\n'
        'echo "warming up" >&2\n'
        'echo "token refresh" >&2\n'
        'echo "retrying" >&2\n'
        'echo "auth expired" >&2\n'
        "exit 1\n",
    )
    job_id = seed.job()
    run_id = seed.run(job_id)

    result = asyncio.run(make_runner(binary).process_pending_job_runs())

    assert result.failed == 1
    run = _run(db, run_id)
    assert run.status == JobRunStatus.FAILED
    assert run.message.startswith("CalendarSync exited with code 1.")
    assert run.message.endswith("Error output:\ntoken refresh\nretrying\nauth expired")
    assert "warming up" not in run.message

    log = log_store.read(run.log_location)
    assert "---- STDOUT ----\nfetching events" in log
    assert "auth expired" in log
    assert "Exit code: 1" in log
    assert os.listdir(scratch_dir) == []


def test_successful_run_hands_config_and_credentials_to_the_cli(seed, db, make_runner, make_executable, log_store, scratch_dir):
    binary = make_executable(
        "calendarsync",
        '[ "$1" = "--config" ] || exit 3\n'
        'auth_path=$(sed -n "s/^    path: //p" "$2")\n'
        'grep -q "BEGIN AGE ENCRYPTED FILE" "$auth_path" || exit 4\n'
        'cat "$2"\n',
    )
    job_id = seed.job(config={
        "transformers": [{"type": "titleTemplateTransformer", "template": "[Synced] {{title}}"}],
        "filters": [{"type": "allDayEventFilter", "exclude": True}],
    })
    run_id = seed.run(job_id)
    notifier = RecordingNotifier()

    result = asyncio.run(make_runner(binary, notifier=notifier).process_pending_job_runs())

    assert (result.processed, result.succeeded) == (1, 1)
    run = _run(db, run_id)
    assert run.status == JobRunStatus.SUCCESS
    assert run.message.startswith("CalendarSync completed successfully")

    log = log_store.read(run.log_location)
    assert "calendar: source@group.calendar.google.com" in log
    assert "NewTitle: '[Synced] {{title}}'" in log
    assert "name: AllDayEvents" in log
    assert os.listdir(scratch_dir) == []

    assert len(notifier.calls) == 1
    assert notifier.calls[0][1] == "Success"


def test_missing_auth_storage_fails_before_spawning(seed, db, make_runner, make_executable):
    binary = make_executable("calendarsync", "touch \"$0.ran\"\n")
    job_id = seed.job(source_auth_storage=None, destination_auth_storage=None)
    run_id = seed.run(job_id)

    asyncio.run(make_runner(binary).process_pending_job_runs())

    run = _run(db, run_id)
    assert run.status == JobRunStatus.FAILED
    assert "Neither source nor destination account" in run.message
    assert not os.path.exists(binary + ".ran")


def test_missing_oauth_client_fails_the_run(seed, db, make_runner, make_executable):
    binary = make_executable("calendarsync", "exit 0\n")
    run_id = seed.run(seed.job())

    asyncio.run(make_runner(binary, oauth_client=OAuthClient(None, None)).process_pending_job_runs())

    run = _run(db, run_id)
    assert run.status == JobRunStatus.FAILED
    assert "GOOGLE_CLIENT_ID" in run.message


def test_log_write_failure_still_finalizes_the_run(seed, db, make_runner, make_executable):
    binary = make_executable("calendarsync", "echo ok\n")
    run_id = seed.run(seed.job())

    asyncio.run(make_runner(binary, log_store=BrokenLogStore()).process_pending_job_runs())

    run = _run(db, run_id)
    assert run.status == JobRunStatus.SUCCESS
    assert run.log_location is None


def test_running_run_can_be_cancelled(seed, db, make_runner, make_executable, log_store, scratch_dir):
    binary = make_executable("calendarsync", "echo started\nexec sleep 30\n")
    job_id = seed.job()
    run_id = seed.run(job_id)
    runner = make_runner(binary)
    service = JobService(log_store=log_store, runner=runner)

    async def run():
        processing = asyncio.ensure_future(runner.process_pending_job_runs())
        while not runner.is_running_here(run_id):
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.2)
        session = seed.session_factory()
        try:
            still_running = service.cancel_run(session, job_id, run_id)
            assert still_running.status == JobRunStatus.RUNNING
        finally:
            session.close()
        return await asyncio.wait_for(processing, 10)

    result = asyncio.run(run())

    assert result.cancelled == 1
    run = _run(db, run_id)
    assert run.status == JobRunStatus.CANCELLED
    assert "cancelled" in run.message
    assert "Signal: SIGTERM" in log_store.read(run.log_location)
    assert not runner.is_running_here(run_id)
    assert os.listdir(scratch_dir) == []


def test_run_timeout_cancels_the_cli(seed, db, make_runner, make_executable):
    binary = make_executable("calendarsync", "exec sleep 30\n")
    run_id = seed.run(seed.job())

    result = asyncio.run(asyncio.wait_for(make_runner(binary, run_timeout=0.3).process_pending_job_runs(), 10))

    assert result.cancelled == 1
    assert _run(db, run_id).status == JobRunStatus.CANCELLED


def test_finalize_does_not_overwrite_a_run_cancelled_elsewhere(seed, db, make_runner, make_executable):
    job_id = seed.job()
    run_id = seed.run(job_id)
    claimed = claim_next_pending_run(seed.session_factory)
    notifier = RecordingNotifier()
    runner = make_runner(make_executable("calendarsync", "exit 0\n"), notifier=notifier)

    session = seed.session_factory()
    try:
        run = session.get(JobRun, run_id)
        run.status = JobRunStatus.CANCELLED
        session.commit()
    finally:
        session.close()

    assert asyncio.run(runner.execute_run(claimed)) == JobRunStatus.CANCELLED
    assert _run(db, run_id).status == JobRunStatus.CANCELLED
    assert notifier.calls == []


def test_interrupted_worker_records_the_run_as_cancelled(seed, db, make_runner, make_executable, log_store, scratch_dir):
    binary = make_executable("calendarsync", "exec sleep 30\n")
    job_id = seed.job(next_run_at=T0)
    assert enqueue_due_sync_jobs(now=T0, session_factory=seed.session_factory) == 1
    run_id = db.query(JobRun).filter(JobRun.job_id == job_id).one().id
    runner = make_runner(binary)

    async def run():
        processing = asyncio.ensure_future(runner.process_pending_job_runs())
        while not runner.is_running_here(run_id):
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.2)
        processing.cancel()
        with pytest.raises(asyncio.CancelledError):
            await processing

    asyncio.run(run())

    run = _run(db, run_id)
    assert run.status == JobRunStatus.CANCELLED
    assert run.finished_at is not None
    assert "interrupted" in run.message
    assert "interrupted" in log_store.read(run.log_location)
    assert not runner.is_running_here(run_id)
    assert os.listdir(scratch_dir) == []
    # The job is free to run again on its next slot
    assert enqueue_due_sync_jobs(now=T0 + timedelta(hours=1), session_factory=seed.session_factory) == 1


def test_result_that_cannot_be_recorded_fails_the_run(seed, db, make_runner, make_executable, monkeypatch):
    run_id = seed.run(seed.job())
    notifier = RecordingNotifier()
    runner = make_runner(make_executable("calendarsync", "echo ok\n"), notifier=notifier)
    finalize = runner._finalize
    attempts = []

    def flaky_finalize(claimed, outcome, log_location, finished_at):
        attempts.append(outcome.status)
        if len(attempts) == 1:
            raise OperationalError("UPDATE job_runs", {}, Exception("database is locked"))
        return finalize(claimed, outcome, log_location, finished_at)

    monkeypatch.setattr(runner, "_finalize", flaky_finalize)

    result = asyncio.run(runner.process_pending_job_runs())

    assert result.failed == 1
    assert attempts == [JobRunStatus.SUCCESS, JobRunStatus.FAILED]
    run = _run(db, run_id)
    assert run.status == JobRunStatus.FAILED
    assert "could not be recorded" in run.message
    assert "database is locked" in run.message
    assert [status for _, status, _ in notifier.calls] == ["Failed"]


def test_stale_running_runs_are_reclaimed(seed, db, make_runner, make_executable):
    stale = seed.run(seed.job(), status=JobRunStatus.RUNNING, started_at=T0 - timedelta(hours=3))
    recent = seed.run(seed.job(), status=JobRunStatus.RUNNING, started_at=T0 - timedelta(minutes=10))
    runner = make_runner(make_executable("calendarsync", "exit 0\n"), stale_after=2 * 60 * 60)

    assert runner.reclaim_stale_runs(now=T0) == 1

    reclaimed = _run(db, stale)
    assert reclaimed.status == JobRunStatus.FAILED
    assert reclaimed.finished_at == T0
    assert "interrupted" in reclaimed.message
    assert _run(db, recent).status == JobRunStatus.RUNNING
    assert runner.reclaim_stale_runs(now=T0) == 0


def test_runs_owned_by_this_worker_are_never_reclaimed(seed, db, make_runner, make_executable):
    run_id = seed.run(seed.job(), status=JobRunStatus.RUNNING, started_at=T0 - timedelta(hours=3))
    runner = make_runner(make_executable("calendarsync", "exit 0\n"), stale_after=60)
    runner._cancel_events[run_id] = asyncio.Event()

    assert runner.reclaim_stale_runs(now=T0) == 0
    assert _run(db, run_id).status == JobRunStatus.RUNNING


def test_source_auth_storage_wins_when_both_accounts_have_one(seed, db):
    job_id = seed.job(source_auth_storage="source-envelope", destination_auth_storage="destination-envelope")
    assert select_auth_storage(db.get(SyncJob, job_id)) == "source-envelope"

    job_id = seed.job(source_auth_storage=None, destination_auth_storage="destination-envelope")
    assert select_auth_storage(db.get(SyncJob, job_id)) == "destination-envelope"


def test_failure_message_names_the_signal():
    result = ExecutionResult(
        exit_code=None,
        signal="SIGKILL",
        stdout="",
        stderr="",
        duration_ms=12,
        config_path="/tmp/config.yaml",
        binary_path="/usr/local/bin/calendarsync",
    )

    assert format_failure_message(CalendarSyncExecutionError(result)) == "CalendarSync was terminated by SIGKILL."
