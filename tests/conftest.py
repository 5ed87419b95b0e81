import os
import stat
import tempfile
import uuid
from datetime import datetime

import pytest

# Settings are read once at import time
os.environ["SYNC_JOB_SCHEDULER_DISABLED"] = "true"
os.environ["SLACK_BOT_TOKEN"] = ""
os.environ.setdefault("DATABASE_URL", "sqlite://")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from kitchen_sync.database import Base, make_engine  # noqa: E402
from kitchen_sync.models.accounts import Account, Calendar  # noqa: E402
from kitchen_sync.models.jobs import (  # noqa: E402
    JobRun,
    JobRunStatus,
    SyncJob,
    SyncJobCadence,
    SyncJobStatus,
)

T0 = datetime(2024, 5, 1, 12, 0, 0)

AGE_ENVELOPE = "-----BEGIN AGE ENCRYPTED FILE-----\nYWdlLWVuY3J5cHRpb24=\n-----END AGE ENCRYPTED FILE-----\n"


class Seeder:
    """Inserts rows through short-lived sessions and hands back their ids."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def account(self, auth_storage=AGE_ENVELOPE, refresh_token="refresh-token", calendars=("primary",), email=None):
        db = self.session_factory()
        try:
            account_key = email or f"{uuid.uuid4().hex[:8]}@example.com"
            account = Account(
                user_id="user-1",
                provider_account_id=account_key,
                email=account_key,
                access_token="access-token",
                refresh_token=refresh_token,
                expires_at=1700000000,
                token_type="Bearer",
                auth_storage=auth_storage,
            )
            for external_id in calendars:
                account.calendars.append(Calendar(external_id=external_id, summary=external_id))
            db.add(account)
            db.commit()
            return account.id
        finally:
            db.close()

    def calendar_of(self, account_id):
        db = self.session_factory()
        try:
            return db.query(Calendar).filter(Calendar.account_id == account_id).first().id
        finally:
            db.close()

    def job(
        self,
        cadence=SyncJobCadence.HOURLY,
        status=SyncJobStatus.ACTIVE,
        next_run_at=None,
        config=None,
        source_auth_storage=AGE_ENVELOPE,
        destination_auth_storage=None,
    ):
        source_calendar = self.calendar_of(self.account(auth_storage=source_auth_storage, calendars=("source@group.calendar.google.com",)))
        destination_calendar = self.calendar_of(self.account(auth_storage=destination_auth_storage))

        db = self.session_factory()
        try:
            job = SyncJob(
                owner_id="user-1",
                name="Work to personal",
                source_calendar_id=source_calendar,
                destination_calendar_id=destination_calendar,
                status=status,
                cadence=cadence,
                config=config if config is not None else {"transformers": [], "filters": []},
                next_run_at=next_run_at,
            )
            db.add(job)
            db.commit()
            return job.id
        finally:
            db.close()

    def run(self, job_id, status=JobRunStatus.PENDING, created_at=T0, started_at=None, log_location=None):
        db = self.session_factory()
        try:
            run = JobRun(
                job_id=job_id,
                status=status,
                created_at=created_at,
                started_at=started_at,
                log_location=log_location,
            )
            db.add(run)
            db.commit()
            return run.id
        finally:
            db.close()


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'kitchen-sync.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def make_executable(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(name, body):
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def scratch_dir(tmp_path, monkeypatch):
    """Redirects tempfile so leftovers from a run are visible."""
    path = tmp_path / "scratch"
    path.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(path))
    return path
