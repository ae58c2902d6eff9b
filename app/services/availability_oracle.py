"""Busy-interval lookup against a user's connected Google Calendar.

Free/busy data returned here is only as fresh as the moment of the call.
Listings may use it for a while; the booking write path must fetch it again
right before committing.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from app.core.config import Settings, get_settings
from app.services.google_calendar_client import GoogleCalendarClient, GoogleCalendarError
from app.services.intervals import BookingError, Interval, InvalidIntervalError
from app.services.token_cipher import TokenCipher, get_token_cipher
from app.services.user_store import UserStore, create_user_store

CalendarClientFactory = Callable[..., GoogleCalendarClient]


class CalendarNotConnectedError(BookingError):
    pass


class CalendarUnavailableError(BookingError):
    pass


class AvailabilityOracle:
    def __init__(
        self,
        settings: Settings | None = None,
        user_store: UserStore | None = None,
        token_cipher: TokenCipher | None = None,
        client_factory: CalendarClientFactory = GoogleCalendarClient,
    ) -> None:
        self.settings = settings or get_settings()
        self.user_store = user_store or create_user_store(self.settings)
        self.token_cipher = token_cipher or get_token_cipher(self.settings)
        self.client_factory = client_factory

    def is_connected(self, user_id: str) -> bool:
        credentials = self.user_store.get_calendar_credentials(user_id)
        return bool(credentials and credentials.get("encrypted_refresh_token"))

    def fetch_busy(
        self,
        user_id: str,
        horizon_days: int,
        now: datetime | None = None,
    ) -> list[Interval]:
        if horizon_days <= 0:
            raise InvalidIntervalError(f"horizon_days must be positive, got {horizon_days}.")
        time_min = (now or datetime.now(UTC)).astimezone(UTC)
        time_max = time_min + timedelta(days=horizon_days)

        client = self._build_client(user_id)
        try:
            busy = client.query_free_busy(time_min=time_min, time_max=time_max)
        except GoogleCalendarError as exc:
            raise CalendarUnavailableError(
                f"Calendar availability could not be fetched for user {user_id}.",
            ) from exc
        finally:
            self._persist_refreshed_access_token(user_id, client)
        return busy

    def create_event(
        self,
        user_id: str,
        *,
        summary: str,
        interval: Interval,
        description: str | None = None,
        attendee_emails: list[str] | None = None,
        create_conference: bool = False,
    ) -> dict[str, str | None]:
        client = self._build_client(user_id)
        try:
            return client.create_event_with_details(
                summary=summary,
                start=interval.start,
                end=interval.end,
                description=description,
                attendee_emails=attendee_emails,
                create_conference=create_conference,
            )
        except GoogleCalendarError as exc:
            raise CalendarUnavailableError(
                f"Calendar event could not be created for user {user_id}.",
            ) from exc
        finally:
            self._persist_refreshed_access_token(user_id, client)

    def _build_client(self, user_id: str) -> GoogleCalendarClient:
        credentials = self.user_store.get_calendar_credentials(user_id)
        encrypted_refresh_token = (credentials or {}).get("encrypted_refresh_token")
        if not credentials or not encrypted_refresh_token:
            raise CalendarNotConnectedError(f"User {user_id} has not connected a calendar.")

        refresh_token = self.token_cipher.decode(encrypted_refresh_token)
        access_token = ""
        if _access_token_is_usable(credentials):
            access_token = self.token_cipher.decode(credentials["encrypted_access_token"])

        return self.client_factory(
            access_token=access_token,
            refresh_token=refresh_token,
            client_id=self.settings.google_calendar_client_id,
            client_secret=self.settings.google_calendar_client_secret,
            calendar_id=str(credentials.get("calendar_id") or "primary"),
            timeout_seconds=self.settings.google_calendar_api_timeout_seconds,
        )

    def _persist_refreshed_access_token(self, user_id: str, client: GoogleCalendarClient) -> None:
        if not client.access_token_refreshed or not client.access_token:
            return
        updates: dict[str, Any] = {
            "encrypted_access_token": self.token_cipher.encode(client.access_token),
            "access_token_expires_at": client.access_token_expires_at,
        }
        if client.refresh_token:
            updates["encrypted_refresh_token"] = self.token_cipher.encode(client.refresh_token)
        self.user_store.upsert_calendar_credentials(user_id, updates)


def _access_token_is_usable(credentials: dict[str, Any]) -> bool:
    if not credentials.get("encrypted_access_token"):
        return False
    expires_at = credentials.get("access_token_expires_at")
    if not isinstance(expires_at, datetime):
        return True
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return expires_at > datetime.now(UTC)
