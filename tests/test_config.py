import pytest
from pydantic import ValidationError

from app.core.config import Settings


def test_scheduling_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCHEDULING_TIMEZONE", " America/Bogota ")
    monkeypatch.setenv("SLOT_DURATION_MINUTES", "45")
    monkeypatch.setenv("USER_DATA_STORE", " MEMORY ")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example.com, https://b.example.com")

    settings = Settings()

    assert settings.scheduling_timezone == "America/Bogota"
    assert settings.slot_duration_minutes == 45
    assert settings.user_data_store == "memory"
    assert settings.allowed_origins == ["https://a.example.com", "https://b.example.com"]


def test_unknown_timezone_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(scheduling_timezone="Mars/Olympus_Mons")


@pytest.mark.parametrize(
    "overrides",
    [
        {"availability_horizon_days": -1},
        {"slot_duration_minutes": 0},
        {"working_hours_start": 18, "working_hours_end": 9},
        {"working_hours_end": 24},
    ],
)
def test_invalid_scheduling_window_is_rejected(overrides: dict[str, int]) -> None:
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_non_positive_timeouts_fall_back_to_defaults() -> None:
    settings = Settings(google_calendar_api_timeout_seconds=0, auth_token_ttl_minutes=-5)

    assert settings.google_calendar_api_timeout_seconds == 10.0
    assert settings.auth_token_ttl_minutes == 60 * 12
