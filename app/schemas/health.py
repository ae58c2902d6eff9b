from datetime import datetime

from pydantic import BaseModel


class HealthChecks(BaseModel):
    token_encryption_key_configured: bool
    google_calendar_oauth_configured: bool
    user_data_store: str


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    timestamp: datetime
    checks: HealthChecks
