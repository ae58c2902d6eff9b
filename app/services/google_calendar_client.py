import http.client
import json
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib import error, parse, request
from uuid import uuid4

from app.services.intervals import Interval


class GoogleCalendarError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GoogleCalendarClient:
    def __init__(
        self,
        *,
        access_token: str,
        refresh_token: str = "",
        client_id: str = "",
        client_secret: str = "",
        calendar_id: str = "primary",
        timeout_seconds: float = 10.0,
        api_base_url: str = "https://www.googleapis.com/calendar/v3",
        oauth_token_url: str = "https://oauth2.googleapis.com/token",
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.calendar_id = calendar_id
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_token_url = oauth_token_url
        self.access_token_refreshed = False
        self.access_token_expires_at: datetime | None = None

    def query_free_busy(self, *, time_min: datetime, time_max: datetime) -> list[Interval]:
        payload = {
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "items": [{"id": self.calendar_id}],
        }
        response_payload = self._request_json("POST", "/freeBusy", payload=payload)

        calendars = response_payload.get("calendars")
        if not isinstance(calendars, dict):
            raise GoogleCalendarError("Google Calendar freeBusy response missing calendars.")
        calendar_payload = calendars.get(self.calendar_id)
        if not isinstance(calendar_payload, dict):
            raise GoogleCalendarError(
                f"Google Calendar freeBusy response missing calendar {self.calendar_id}.",
            )
        errors = calendar_payload.get("errors")
        if isinstance(errors, list) and errors:
            reasons = ", ".join(
                str(entry.get("reason", "unknown")) for entry in errors if isinstance(entry, dict)
            )
            raise GoogleCalendarError(f"Google Calendar freeBusy failed: {reasons or 'unknown'}")

        raw_busy = calendar_payload.get("busy", [])
        if not isinstance(raw_busy, list):
            raise GoogleCalendarError("Google Calendar freeBusy busy list is malformed.")

        busy: list[Interval] = []
        for raw_period in raw_busy:
            if not isinstance(raw_period, dict):
                raise GoogleCalendarError("Google Calendar freeBusy period is malformed.")
            start = self._parse_datetime(raw_period.get("start"))
            end = self._parse_datetime(raw_period.get("end"))
            if end <= start:
                continue
            busy.append(Interval(start=start, end=end))
        return busy

    def create_event_with_details(
        self,
        *,
        summary: str,
        start: datetime,
        end: datetime,
        description: str | None = None,
        attendee_emails: list[str] | None = None,
        create_conference: bool = False,
    ) -> dict[str, str | None]:
        payload: dict[str, Any] = {
            "summary": self._truncate(summary, 500),
            "start": {"dateTime": start.isoformat()},
            "end": {"dateTime": end.isoformat()},
        }
        if description:
            payload["description"] = self._truncate(description, 8000)

        normalized_attendees = self._normalize_attendee_emails(attendee_emails)
        if normalized_attendees:
            payload["attendees"] = [{"email": email} for email in normalized_attendees]

        endpoint_path = f"/calendars/{parse.quote(self.calendar_id, safe='')}/events"
        query_params: list[tuple[str, str]] = []
        if create_conference:
            payload["conferenceData"] = {
                "createRequest": {
                    "requestId": f"booking-{uuid4().hex}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                },
            }
            query_params.append(("conferenceDataVersion", "1"))
        if normalized_attendees:
            query_params.append(("sendUpdates", "all"))
        if query_params:
            endpoint_path = f"{endpoint_path}?{parse.urlencode(query_params)}"

        response_payload = self._request_json("POST", endpoint_path, payload=payload)
        event_id = response_payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise GoogleCalendarError("Google Calendar create event response missing id.")
        return {
            "event_id": event_id,
            "join_url": self._extract_join_url(response_payload),
        }

    def get_calendar_timezone(self) -> str | None:
        response_payload = self._request_json("GET", "/users/me/settings/timezone")
        value = response_payload.get("value")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def _parse_datetime(self, raw_value: Any) -> datetime:
        if not isinstance(raw_value, str) or not raw_value.strip():
            raise GoogleCalendarError("Google Calendar datetime value is missing.")
        normalized = raw_value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise GoogleCalendarError("Google Calendar datetime is not valid ISO format.") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    def _normalize_attendee_emails(self, attendee_emails: list[str] | None) -> list[str]:
        if not attendee_emails:
            return []
        normalized: list[str] = []
        seen: set[str] = set()
        for raw_email in attendee_emails:
            cleaned = raw_email.strip().lower()
            if not cleaned or "@" not in cleaned:
                continue
            if cleaned in seen:
                continue
            seen.add(cleaned)
            normalized.append(cleaned)
        return normalized

    def _extract_join_url(self, payload: dict[str, Any]) -> str | None:
        hangout_link = payload.get("hangoutLink")
        if isinstance(hangout_link, str) and hangout_link.strip():
            return hangout_link.strip()
        conference_data = payload.get("conferenceData")
        if not isinstance(conference_data, dict):
            return None
        entry_points = conference_data.get("entryPoints")
        if not isinstance(entry_points, list):
            return None
        for raw_entry in entry_points:
            if not isinstance(raw_entry, dict):
                continue
            if raw_entry.get("entryPointType", "video") != "video":
                continue
            uri = raw_entry.get("uri")
            if isinstance(uri, str) and uri.strip():
                return uri.strip()
        return None

    def _request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        allow_refresh: bool = True,
    ) -> dict[str, Any]:
        if not self.access_token and self._can_refresh_access_token():
            self._refresh_access_token()

        raw_payload = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = request.Request(
            f"{self.api_base_url}{path}",
            data=raw_payload,
            method=method,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
        )
        try:
            return self._send(req, "Google Calendar API")
        except GoogleCalendarError as exc:
            if exc.status_code != 401 or not allow_refresh or not self._can_refresh_access_token():
                raise
        self._refresh_access_token()
        return self._request_json(method, path, payload, allow_refresh=False)

    def _send(self, req: request.Request, label: str) -> dict[str, Any]:
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GoogleCalendarError(f"{label} request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise GoogleCalendarError(
                f"{label} HTTP {exc.code}: {body or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise GoogleCalendarError(f"{label} connection error: {exc.reason}") from exc
        except (OSError, http.client.HTTPException) as exc:
            # Failures after the request was sent (reset, truncated body) are not wrapped by urllib.
            raise GoogleCalendarError(f"{label} connection error: {exc!r}") from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise GoogleCalendarError(f"{label} returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise GoogleCalendarError(f"{label} response is not a JSON object.")
        return parsed_body

    def _can_refresh_access_token(self) -> bool:
        return all(value.strip() for value in (self.refresh_token, self.client_id, self.client_secret))

    def _refresh_access_token(self) -> None:
        if not self._can_refresh_access_token():
            raise GoogleCalendarError("Google Calendar refresh token flow is not configured.")
        body = parse.urlencode(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
        ).encode("utf-8")
        req = request.Request(
            self.oauth_token_url,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        payload = self._send(req, "Google OAuth refresh")

        new_access_token = payload.get("access_token")
        if not isinstance(new_access_token, str) or not new_access_token.strip():
            raise GoogleCalendarError("Google OAuth refresh did not include access_token.")
        self.access_token = new_access_token.strip()
        self.access_token_refreshed = True
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, int) and expires_in > 0:
            self.access_token_expires_at = datetime.now(UTC) + timedelta(seconds=expires_in)
        # Google only rotates the refresh token occasionally.
        rotated_refresh_token = payload.get("refresh_token")
        if isinstance(rotated_refresh_token, str) and rotated_refresh_token.strip():
            self.refresh_token = rotated_refresh_token.strip()

    def _truncate(self, value: str, limit: int) -> str:
        if len(value) <= limit:
            return value
        return value[: limit - 3] + "..."
