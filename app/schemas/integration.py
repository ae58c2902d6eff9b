from pydantic import BaseModel


class CalendarConnectionStatus(BaseModel):
    provider: str
    connected: bool
    calendar_id: str | None = None
    calendar_timezone: str | None = None
