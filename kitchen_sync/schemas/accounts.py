from pydantic import BaseModel
from typing import Optional
from datetime import datetime

class AuthStorageSetupResponse(BaseModel):
    success: bool
    message: str
    calendar_count: int

class AuthStorageStatusResponse(BaseModel):
    has_auth_storage: bool
    age_available: bool
    calendar_count: int
    email: Optional[str] = None
    updated_at: Optional[datetime] = None

class HealthResponse(BaseModel):
    status: str
    scheduler_running: bool
    age_available: bool
