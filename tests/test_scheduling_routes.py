import io
import json
from datetime import UTC, datetime, timedelta
from urllib import error

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.services.appointment_store import clear_appointment_store_cache
from app.services.token_cipher import get_token_cipher
from app.services.user_store import clear_user_store_cache, create_user_store


class _MockResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._payload = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return self._payload


class _FakeGoogle:
    def __init__(self) -> None:
        self.busy: list[dict[str, str]] = []
        self.free_busy_status = 200
        self.calls: list[str] = []
        self.event_payloads: list[dict[str, object]] = []

    def urlopen(self, req, timeout=10):  # type: ignore[no-untyped-def]
        target = req.full_url
        if "oauth2.googleapis.com/token" in target:
            self.calls.append("token")
            return _MockResponse({"access_token": "google-access-token", "expires_in": 3600})
        if target.endswith("/freeBusy"):
            self.calls.append("freeBusy")
            if self.free_busy_status != 200:
                raise error.HTTPError(
                    url=target,
                    code=self.free_busy_status,
                    msg="error",
                    hdrs=None,
                    fp=io.BytesIO(b'{"error": {"message": "backendError"}}'),
                )
            return _MockResponse({"calendars": {"primary": {"busy": self.busy}}})
        if "/calendars/primary/events" in target:
            self.calls.append("events")
            self.event_payloads.append(json.loads(req.data.decode("utf-8")))
            return _MockResponse(
                {"id": f"google-event-{len(self.event_payloads)}", "hangoutLink": "https://meet.google.com/abc"},
            )
        raise AssertionError(f"Unexpected Google request: {target}")


@pytest.fixture(autouse=True)
def reset_state(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("USER_DATA_STORE", "memory")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "route-test-encryption-key")
    monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_ID", "google-client-id")
    monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_SECRET", "google-client-secret")
    monkeypatch.setenv("SCHEDULING_TIMEZONE", "UTC")

    clear_user_store_cache()
    clear_appointment_store_cache()
    get_settings.cache_clear()
    yield
    clear_user_store_cache()
    clear_appointment_store_cache()
    get_settings.cache_clear()


@pytest.fixture
def google(monkeypatch: pytest.MonkeyPatch) -> _FakeGoogle:
    fake = _FakeGoogle()
    monkeypatch.setattr("app.services.google_calendar_client.request.urlopen", fake.urlopen)
    return fake


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def _register(client: TestClient, email: str, role: str = "buyer") -> tuple[str, str]:
    response = client.post(
        "/api/auth/register",
        json={
            "full_name": email.split("@")[0].title(),
            "email": email,
            "password": "password123",
            "role": role,
        },
    )
    assert response.status_code == 200
    payload = response.json()
    return payload["user"]["id"], payload["access_token"]


def _connect_calendar(user_id: str) -> None:
    settings = get_settings()
    cipher = get_token_cipher(settings)
    create_user_store(settings).upsert_calendar_credentials(
        user_id,
        {"encrypted_refresh_token": cipher.encode("google-refresh-token"), "calendar_id": "primary"},
    )


def _future_slot(days_ahead: int = 2) -> tuple[datetime, datetime]:
    start = (datetime.now(UTC) + timedelta(days=days_ahead)).replace(minute=0, second=0, microsecond=0)
    return start, start + timedelta(minutes=30)


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_booking_flow_creates_appointment(client: TestClient, google: _FakeGoogle) -> None:
    seller_id, _ = _register(client, "seller@example.com", role="seller")
    buyer_id, buyer_token = _register(client, "buyer@example.com")
    _connect_calendar(seller_id)
    start, end = _future_slot()

    response = client.post(
        "/api/bookings",
        json={"seller_id": seller_id, "start": start.isoformat(), "end": end.isoformat()},
        headers=_auth(buyer_token),
    )

    assert response.status_code == 201
    payload = response.json()
    assert payload["seller_id"] == seller_id
    assert payload["buyer_id"] == buyer_id
    assert payload["event_id"] == "google-event-1"
    assert payload["join_url"] == "https://meet.google.com/abc"
    assert datetime.fromisoformat(payload["start"]) == start
    assert google.calls == ["token", "freeBusy", "events"]
    attendees = google.event_payloads[0]["attendees"]
    assert {"email": "buyer@example.com"} in attendees  # type: ignore[operator]

    appointments = client.get("/api/appointments", headers=_auth(buyer_token))
    assert appointments.status_code == 200
    listing = appointments.json()
    assert listing["total"] == 1
    assert listing["upcoming"][0]["user_role"] == "buyer"
    assert listing["upcoming"][0]["counterpart"]["email"] == "seller@example.com"


def test_booking_busy_slot_returns_conflict(client: TestClient, google: _FakeGoogle) -> None:
    seller_id, _ = _register(client, "seller@example.com", role="seller")
    _, buyer_token = _register(client, "buyer@example.com")
    _connect_calendar(seller_id)
    start, end = _future_slot()
    google.busy = [{"start": start.isoformat(), "end": (start + timedelta(hours=1)).isoformat()}]

    response = client.post(
        "/api/bookings",
        json={"seller_id": seller_id, "start": start.isoformat(), "end": end.isoformat()},
        headers=_auth(buyer_token),
    )

    assert response.status_code == 409
    assert "events" not in google.calls


def test_booking_requires_authentication(client: TestClient) -> None:
    start, end = _future_slot()

    response = client.post(
        "/api/bookings",
        json={"seller_id": "1", "start": start.isoformat(), "end": end.isoformat()},
    )

    assert response.status_code == 401


def test_booking_rejects_inverted_interval(client: TestClient, google: _FakeGoogle) -> None:
    seller_id, _ = _register(client, "seller@example.com", role="seller")
    _, buyer_token = _register(client, "buyer@example.com")
    _connect_calendar(seller_id)
    start, end = _future_slot()

    response = client.post(
        "/api/bookings",
        json={"seller_id": seller_id, "start": end.isoformat(), "end": start.isoformat()},
        headers=_auth(buyer_token),
    )

    assert response.status_code == 422
    assert google.calls == []


def test_booking_rejects_naive_datetimes(client: TestClient) -> None:
    seller_id, _ = _register(client, "seller@example.com", role="seller")
    _, buyer_token = _register(client, "buyer@example.com")

    response = client.post(
        "/api/bookings",
        json={"seller_id": seller_id, "start": "2030-01-15T10:00:00", "end": "2030-01-15T10:30:00"},
        headers=_auth(buyer_token),
    )

    assert response.status_code == 422


def test_booking_unconnected_seller_returns_conflict(client: TestClient, google: _FakeGoogle) -> None:
    seller_id, _ = _register(client, "seller@example.com", role="seller")
    _, buyer_token = _register(client, "buyer@example.com")
    start, end = _future_slot()

    response = client.post(
        "/api/bookings",
        json={"seller_id": seller_id, "start": start.isoformat(), "end": end.isoformat()},
        headers=_auth(buyer_token),
    )

    assert response.status_code == 409
    assert response.json()["detail"] == "Seller has not connected a calendar."


def test_calendar_outage_returns_retryable_error(client: TestClient, google: _FakeGoogle) -> None:
    seller_id, _ = _register(client, "seller@example.com", role="seller")
    _, buyer_token = _register(client, "buyer@example.com")
    _connect_calendar(seller_id)
    google.free_busy_status = 500
    start, end = _future_slot()

    response = client.post(
        "/api/bookings",
        json={"seller_id": seller_id, "start": start.isoformat(), "end": end.isoformat()},
        headers=_auth(buyer_token),
    )

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"


def test_availability_lists_free_slots(client: TestClient, google: _FakeGoogle) -> None:
    seller_id, _ = _register(client, "seller@example.com", role="seller")
    _connect_calendar(seller_id)

    response = client.get("/api/availability", params={"seller_id": seller_id, "days": 7})

    assert response.status_code == 200
    payload = response.json()
    assert payload["seller_id"] == seller_id
    assert payload["timezone"] == "UTC"
    assert payload["count"] == len(payload["items"])
    assert payload["count"] > 0
    starts = [datetime.fromisoformat(item["start"]) for item in payload["items"]]
    assert starts == sorted(starts)
    assert all(start.weekday() < 5 for start in starts)


def test_availability_for_unknown_seller_is_not_found(client: TestClient) -> None:
    response = client.get("/api/availability", params={"seller_id": "404"})

    assert response.status_code == 404


def test_availability_rejects_inverted_working_hours(client: TestClient, google: _FakeGoogle) -> None:
    seller_id, _ = _register(client, "seller@example.com", role="seller")
    _connect_calendar(seller_id)

    response = client.get(
        "/api/availability",
        params={"seller_id": seller_id, "start_hour": 17, "end_hour": 9},
    )

    assert response.status_code == 422


def test_sellers_listing_and_become_seller(client: TestClient) -> None:
    _register(client, "seller@example.com", role="seller")
    buyer_id, buyer_token = _register(client, "buyer@example.com")

    before = client.get("/api/sellers")
    assert [seller["email"] for seller in before.json()] == ["seller@example.com"]

    promoted = client.post("/api/role/seller", headers=_auth(buyer_token))
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "seller"

    after = client.get("/api/v1/sellers")
    assert buyer_id in [seller["id"] for seller in after.json()]
    assert all(seller["calendar_connected"] is False for seller in after.json())
