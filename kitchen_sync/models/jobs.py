import enum
import uuid
from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, Index, JSON, Text, text
from sqlalchemy.orm import relationship
from kitchen_sync.database import Base, utcnow


class SyncJobStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"


class SyncJobCadence(str, enum.Enum):
    FIFTEEN_MINUTES = "FIFTEEN_MINUTES"
    HOURLY = "HOURLY"
    DAILY = "DAILY"


class JobRunStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


OUTSTANDING_RUN_STATUSES = (JobRunStatus.PENDING, JobRunStatus.RUNNING)
TERMINAL_RUN_STATUSES = (JobRunStatus.SUCCESS, JobRunStatus.FAILED, JobRunStatus.CANCELLED)


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    source_calendar_id = Column(String, ForeignKey("calendars.id", ondelete="RESTRICT"), nullable=False)
    destination_calendar_id = Column(String, ForeignKey("calendars.id", ondelete="RESTRICT"), nullable=False)
    status = Column(Enum(SyncJobStatus, native_enum=False), index=True, default=SyncJobStatus.ACTIVE, nullable=False)
    cadence = Column(Enum(SyncJobCadence, native_enum=False), index=True, nullable=False)
    config = Column(JSON, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, index=True, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    source_calendar = relationship("Calendar", foreign_keys=[source_calendar_id])
    destination_calendar = relationship("Calendar", foreign_keys=[destination_calendar_id])
    runs = relationship(
        "JobRun",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="JobRun.created_at.desc()",
    )


class JobRun(Base):
    __tablename__ = "job_runs"
    __table_args__ = (
        Index("ix_job_runs_job_id_started_at", "job_id", "started_at"),
        # At most one PENDING or RUNNING run per job
        Index(
            "uq_job_runs_outstanding_per_job",
            "job_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'RUNNING')"),
            postgresql_where=text("status IN ('PENDING', 'RUNNING')"),
        ),
    )

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String, ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False)
    status = Column(Enum(JobRunStatus, native_enum=False), index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    message = Column(Text, nullable=True)
    log_location = Column(String, nullable=True)

    job = relationship("SyncJob", back_populates="runs")


# Calendar/Account are referenced by name above
import kitchen_sync.models.accounts  # noqa: E402,F401
