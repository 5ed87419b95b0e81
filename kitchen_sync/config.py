import os
from dotenv import load_dotenv

load_dotenv()


def _as_bool(value):
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _as_float(value):
    if value is None or not value.strip():
        return None
    return float(value)


class Config:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./kitchen-sync.db")

    # AES-256-GCM key for OAuth tokens at rest (base64 or hex, 32 bytes)
    TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY")
    # age passphrase used for the calendarsync auth storage envelope
    CALENDARSYNC_ENCRYPTION_KEY = os.getenv("CALENDARSYNC_ENCRYPTION_KEY")

    CALENDARSYNC_BINARY = os.getenv("CALENDARSYNC_BINARY", "/usr/local/bin/calendarsync")
    AGE_BINARY = os.getenv("AGE_BINARY", "age")
    CALENDARSYNC_LOG_DIR = (os.getenv("CALENDARSYNC_LOG_DIR") or "").strip() or os.path.join(
        os.getcwd(), "calendarsync-data", "logs"
    )

    GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
    GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

    SYNC_JOB_SCHEDULER_CRON = os.getenv("SYNC_JOB_SCHEDULER_CRON", "*/1 * * * *")
    SYNC_JOB_SCHEDULER_TZ = os.getenv("SYNC_JOB_SCHEDULER_TZ") or None
    SYNC_JOB_SCHEDULER_DISABLED = _as_bool(os.getenv("SYNC_JOB_SCHEDULER_DISABLED"))
    SYNC_JOB_WORKER_DISABLED = _as_bool(os.getenv("SYNC_JOB_WORKER_DISABLED"))
    SYNC_JOB_RUN_TIMEOUT_SECONDS = _as_float(os.getenv("SYNC_JOB_RUN_TIMEOUT_SECONDS"))
    # RUNNING runs older than this that no local task owns are marked FAILED
    SYNC_JOB_STALE_RUN_SECONDS = _as_float(os.getenv("SYNC_JOB_STALE_RUN_SECONDS")) or 6 * 60 * 60

    SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN")
    SLACK_CHANNEL_JOB_STATUS = os.getenv("SLACK_CHANNEL_JOB_STATUS")
    SLACK_MENTIONS = os.getenv("SLACK_MENTIONS")

config = Config()
