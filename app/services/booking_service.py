"""Availability listing and booking creation for sellers and buyers.

The write path re-fetches the seller's busy intervals immediately before the
calendar event is created, and rejects the request when the chosen slot is no
longer free. Between that check and the event insert another request may
still book the same slot; the calendar service itself decides which insert
lands first, and the loser's conflict shows up on the next availability
check. There is no lock beyond that.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Literal
from zoneinfo import ZoneInfo

from app.core.config import Settings, get_settings
from app.schemas.scheduling import (
    AppointmentItem,
    AppointmentParticipant,
    AppointmentsResponse,
    AvailabilityResponse,
    AvailableSlot,
    BookingConfirmation,
    SellerSummary,
)
from app.services.appointment_store import (
    AppointmentStore,
    build_appointment_record,
    create_appointment_store,
)
from app.services.availability_oracle import (
    AvailabilityOracle,
    CalendarNotConnectedError,
    CalendarUnavailableError,
)
from app.services.booking_validator import is_slot_available
from app.services.intervals import BookingError, Interval
from app.services.slot_generator import GenerationPolicy, Slot, WorkingHours, generate_slots
from app.services.user_store import UserStore, create_user_store

logger = logging.getLogger(__name__)

SELLER_PREVIEW_SLOT_COUNT = 5


class SlotConflictError(BookingError):
    pass


class BookingParticipantError(BookingError):
    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def build_generation_policy(
    settings: Settings,
    *,
    horizon_days: int | None = None,
    slot_duration_minutes: int | None = None,
    start_hour: int | None = None,
    end_hour: int | None = None,
) -> GenerationPolicy:
    return GenerationPolicy(
        horizon_days=settings.availability_horizon_days if horizon_days is None else horizon_days,
        slot_duration_minutes=(
            settings.slot_duration_minutes if slot_duration_minutes is None else slot_duration_minutes
        ),
        working_hours=WorkingHours(
            start_hour=settings.working_hours_start if start_hour is None else start_hour,
            end_hour=settings.working_hours_end if end_hour is None else end_hour,
        ),
    )


class BookingService:
    def __init__(
        self,
        settings: Settings | None = None,
        user_store: UserStore | None = None,
        appointment_store: AppointmentStore | None = None,
        oracle: AvailabilityOracle | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.user_store = user_store or create_user_store(self.settings)
        self.appointment_store = appointment_store or create_appointment_store(self.settings)
        self._oracle = oracle

    @property
    def oracle(self) -> AvailabilityOracle:
        # Built lazily so read paths that never touch a calendar do not need
        # the token encryption key.
        if self._oracle is None:
            self._oracle = AvailabilityOracle(settings=self.settings, user_store=self.user_store)
        return self._oracle

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.settings.scheduling_timezone)

    def list_availability(
        self,
        seller_id: str,
        policy: GenerationPolicy,
        now: datetime | None = None,
    ) -> AvailabilityResponse:
        self._require_seller(seller_id)
        current_time = self._resolve_now(now)
        slots = self._generate_for_seller(seller_id, policy, current_time)
        items = [_to_available_slot(slot) for slot in slots]
        return AvailabilityResponse(
            seller_id=seller_id,
            timezone=self.settings.scheduling_timezone,
            items=items,
            count=len(items),
        )

    def create_booking(
        self,
        *,
        seller_id: str,
        buyer_id: str,
        start: datetime,
        end: datetime,
        now: datetime | None = None,
    ) -> BookingConfirmation:
        candidate = Interval(start=start, end=end)
        current_time = self._resolve_now(now)

        seller = self._require_seller(seller_id)
        buyer = self.user_store.get_user_by_id(buyer_id)
        if not buyer:
            raise BookingParticipantError("Buyer not found.", status_code=404)
        if buyer_id == seller_id:
            raise BookingParticipantError("Sellers cannot book their own calendar.")

        horizon_days = max(1, math.ceil((candidate.end - current_time) / timedelta(days=1)))
        busy = self.oracle.fetch_busy(seller_id, horizon_days, now=current_time)
        if not is_slot_available(candidate, busy, current_time):
            raise SlotConflictError("The selected slot is no longer available.")

        seller_name = _display_name(seller)
        buyer_name = _display_name(buyer)
        attendee_emails = [str(seller.get("email", "")), str(buyer.get("email", ""))]
        summary = f"Appointment: {buyer_name} <> {seller_name}"

        seller_event = self.oracle.create_event(
            seller_id,
            summary=summary,
            interval=candidate,
            description=f"Meeting between {seller_name} and {buyer_name}",
            attendee_emails=attendee_emails,
            create_conference=True,
        )
        event_id = str(seller_event["event_id"])
        join_url = seller_event.get("join_url")
        buyer_event_id = self._mirror_to_buyer_calendar(
            buyer_id=buyer_id,
            seller_name=seller_name,
            candidate=candidate,
            join_url=join_url,
            attendee_emails=attendee_emails,
        )

        stored = self.appointment_store.save(
            build_appointment_record(
                seller_id=seller_id,
                buyer_id=buyer_id,
                start=candidate.start,
                end=candidate.end,
                summary=summary,
                google_event_id=event_id,
                buyer_google_event_id=buyer_event_id,
                join_url=join_url,
            ),
        )
        logger.info(
            "Booking created appointment_id=%s seller_id=%s buyer_id=%s start=%s",
            stored["_id"],
            seller_id,
            buyer_id,
            candidate.start.isoformat(),
        )
        return BookingConfirmation(
            appointment_id=str(stored["_id"]),
            seller_id=seller_id,
            buyer_id=buyer_id,
            start=candidate.start,
            end=candidate.end,
            event_id=event_id,
            join_url=join_url,
            buyer_event_id=buyer_event_id,
        )

    def list_appointments(
        self,
        user_id: str,
        role: Literal["seller", "buyer", "both"] = "both",
        now: datetime | None = None,
    ) -> AppointmentsResponse:
        current_time = self._resolve_now(now)
        items: list[AppointmentItem] = []
        if role in {"seller", "both"}:
            for record in self.appointment_store.list_for_seller(user_id):
                items.append(self._to_appointment_item(record, "seller", record.get("buyer_id")))
        if role in {"buyer", "both"}:
            for record in self.appointment_store.list_for_buyer(user_id):
                items.append(self._to_appointment_item(record, "buyer", record.get("seller_id")))
        items.sort(key=lambda item: item.start)

        upcoming = [item for item in items if item.start > current_time]
        past = [item for item in items if item.start <= current_time]
        return AppointmentsResponse(upcoming=upcoming, past=past, total=len(items))

    def list_sellers(
        self,
        *,
        include_availability: bool = False,
        days: int = 7,
        now: datetime | None = None,
    ) -> list[SellerSummary]:
        sellers = self.user_store.list_users_by_role("seller")
        summaries: list[SellerSummary] = []
        for seller in sellers:
            seller_id = str(seller.get("_id", ""))
            credentials = self.user_store.get_calendar_credentials(seller_id)
            calendar_connected = bool(credentials and credentials.get("encrypted_refresh_token"))
            next_slots: list[AvailableSlot] | None = None
            if include_availability:
                next_slots = []
                if calendar_connected:
                    next_slots = self._preview_slots(seller_id, days, now)
            summaries.append(
                SellerSummary(
                    id=seller_id,
                    full_name=str(seller.get("full_name", "")),
                    email=str(seller.get("email", "")),
                    calendar_connected=calendar_connected,
                    next_available_slots=next_slots,
                ),
            )
        return summaries

    def become_seller(self, user_id: str) -> dict[str, Any]:
        updated = self.user_store.update_user_role(user_id, "seller")
        if not updated:
            raise BookingParticipantError("User not found.", status_code=404)
        return updated

    def _preview_slots(
        self,
        seller_id: str,
        days: int,
        now: datetime | None,
    ) -> list[AvailableSlot]:
        policy = build_generation_policy(self.settings, horizon_days=days)
        try:
            slots = self._generate_for_seller(seller_id, policy, self._resolve_now(now))
        except (CalendarNotConnectedError, CalendarUnavailableError) as exc:
            logger.warning(
                "Seller availability preview failed seller_id=%s error=%s",
                seller_id,
                exc,
            )
            return []
        return [_to_available_slot(slot) for slot in slots[:SELLER_PREVIEW_SLOT_COUNT]]

    def _generate_for_seller(
        self,
        seller_id: str,
        policy: GenerationPolicy,
        now: datetime,
    ) -> list[Slot]:
        if policy.horizon_days == 0:
            return []
        busy = self.oracle.fetch_busy(seller_id, policy.horizon_days, now=now)
        return generate_slots(busy, policy, now)

    def _require_seller(self, seller_id: str) -> dict[str, Any]:
        seller = self.user_store.get_user_by_id(seller_id)
        if not seller:
            raise BookingParticipantError("Seller not found.", status_code=404)
        if seller.get("role") != "seller":
            raise BookingParticipantError("User is not a seller.")
        return seller

    def _mirror_to_buyer_calendar(
        self,
        *,
        buyer_id: str,
        seller_name: str,
        candidate: Interval,
        join_url: str | None,
        attendee_emails: list[str],
    ) -> str | None:
        if not self.oracle.is_connected(buyer_id):
            return None
        try:
            buyer_event = self.oracle.create_event(
                buyer_id,
                summary=f"Appointment with {seller_name}",
                interval=candidate,
                description=f"Join: {join_url}" if join_url else None,
                attendee_emails=attendee_emails,
            )
        except (CalendarNotConnectedError, CalendarUnavailableError) as exc:
            logger.warning(
                "Buyer calendar mirror failed buyer_id=%s error=%s",
                buyer_id,
                exc,
            )
            return None
        return buyer_event.get("event_id")

    def _to_appointment_item(
        self,
        record: dict[str, Any],
        user_role: Literal["seller", "buyer"],
        counterpart_id: Any,
    ) -> AppointmentItem:
        counterpart: AppointmentParticipant | None = None
        if isinstance(counterpart_id, str) and counterpart_id:
            counterpart_record = self.user_store.get_user_by_id(counterpart_id)
            if counterpart_record:
                counterpart = AppointmentParticipant(
                    id=counterpart_id,
                    full_name=str(counterpart_record.get("full_name", "")),
                    email=str(counterpart_record.get("email", "")),
                )
        return AppointmentItem(
            id=str(record.get("_id", "")),
            start=record["start"],
            end=record["end"],
            summary=str(record.get("summary", "")),
            google_event_id=record.get("google_event_id"),
            join_url=record.get("join_url"),
            user_role=user_role,
            counterpart=counterpart,
        )

    def _resolve_now(self, now: datetime | None) -> datetime:
        if now is None:
            return datetime.now(self.timezone)
        return now.astimezone(self.timezone)


def _to_available_slot(slot: Slot) -> AvailableSlot:
    return AvailableSlot(start=slot.start, end=slot.end, label=slot.label)


def _display_name(user: dict[str, Any]) -> str:
    full_name = str(user.get("full_name", "")).strip()
    return full_name or str(user.get("email", ""))
