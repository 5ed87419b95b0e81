from fastapi import FastAPI
import os
from kitchen_sync.api.routers import accounts, health, jobs
from kitchen_sync.database import engine, Base
from kitchen_sync.scheduler import start_scheduler, stop_scheduler
import kitchen_sync.models.jobs  # noqa: F401
import logging

import time

# Ensure the system timezone (set in the container) is applied to the Python process
if os.name != 'nt':  # tzset is not available on Windows
    time.tzset()

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(process)d] [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S %z",
)

api_prefix = '/api/v1'

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Kitchen Sync API")

@app.on_event("startup")
async def startup_event():
    start_scheduler()

@app.on_event("shutdown")
async def shutdown_event():
    stop_scheduler()

app.include_router(health.router, prefix=f'{api_prefix}/health', tags=["health"])
app.include_router(jobs.router, prefix=f'{api_prefix}/sync-jobs', tags=["sync-jobs"])
app.include_router(accounts.router, prefix=f'{api_prefix}/accounts', tags=["accounts"])
