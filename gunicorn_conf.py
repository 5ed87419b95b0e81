import os
import time

if os.name != 'nt':
    time.tzset()

# Every worker runs its own scheduler; run claiming is coordinated through the database
bind = os.getenv("KITCHEN_SYNC_BIND", "0.0.0.0:8000")
workers = int(os.getenv("KITCHEN_SYNC_WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
# Runs finish their CLI process on shutdown instead of being killed mid-sync
graceful_timeout = int(os.getenv("KITCHEN_SYNC_GRACEFUL_TIMEOUT", "60"))

accesslog = "-"
errorlog = "-"

log_format = "[%(asctime)s] [%(process)d] [%(levelname)s] %(name)s: %(message)s"

logconfig_dict = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "generic": {
            "format": log_format,
            "datefmt": "%Y-%m-%d %H:%M:%S %z",
            "class": "logging.Formatter",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "generic",
            "stream": "ext://sys.stdout",
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "formatter": "generic",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "gunicorn.error": {
            "level": "WARNING",
            "handlers": ["error_console"],
            "propagate": False,
            "qualname": "gunicorn.error",
        },
        "gunicorn.access": {
            "level": "INFO",
            "handlers": ["console"],
            "propagate": False,
            "qualname": "gunicorn.access",
        },
        "apscheduler": {
            "level": "WARNING",
            "handlers": ["console"],
            "propagate": False,
        },
        "kitchen_sync": {
            "level": os.getenv("KITCHEN_SYNC_LOG_LEVEL", "INFO"),
            "handlers": ["console"],
            "propagate": False,
        },
    },
    "root": {
        "level": "INFO",
        "handlers": ["console"],
    }
}
