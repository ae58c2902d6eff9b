from datetime import datetime
from typing import Literal

from pydantic import AwareDatetime, BaseModel, Field


class AvailableSlot(BaseModel):
    start: datetime
    end: datetime
    label: str


class AvailabilityResponse(BaseModel):
    seller_id: str
    timezone: str
    items: list[AvailableSlot]
    count: int


class BookingRequest(BaseModel):
    seller_id: str = Field(min_length=1)
    start: AwareDatetime
    end: AwareDatetime


class BookingConfirmation(BaseModel):
    appointment_id: str
    seller_id: str
    buyer_id: str
    start: datetime
    end: datetime
    event_id: str
    join_url: str | None = None
    buyer_event_id: str | None = None


class AppointmentParticipant(BaseModel):
    id: str
    full_name: str
    email: str


class AppointmentItem(BaseModel):
    id: str
    start: datetime
    end: datetime
    summary: str
    google_event_id: str | None = None
    join_url: str | None = None
    user_role: Literal["seller", "buyer"]
    counterpart: AppointmentParticipant | None = None


class AppointmentsResponse(BaseModel):
    upcoming: list[AppointmentItem]
    past: list[AppointmentItem]
    total: int


class SellerSummary(BaseModel):
    id: str
    full_name: str
    email: str
    calendar_connected: bool
    next_available_slots: list[AvailableSlot] | None = None
