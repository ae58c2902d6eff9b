from functools import lru_cache
from typing import Annotated
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "allowed_origins",
        "frontend_base_url",
        "user_data_store",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_users_collection",
        "mongodb_calendar_credentials_collection",
        "mongodb_appointments_collection",
        "mongodb_connect_timeout_ms",
        "auth_secret_key",
        "auth_token_ttl_minutes",
        "token_encryption_key",
        "google_calendar_client_id",
        "google_calendar_client_secret",
        "google_calendar_redirect_uri",
        "google_calendar_api_timeout_seconds",
        "scheduling_timezone",
        "availability_horizon_days",
        "slot_duration_minutes",
        "working_hours_start",
        "working_hours_end",
    },
)


class Settings(BaseSettings):
    app_name: str = "Slot Booking API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    frontend_base_url: str = "http://localhost:3000"
    user_data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "slot_booking"
    mongodb_users_collection: str = "users"
    mongodb_calendar_credentials_collection: str = "calendar_credentials"
    mongodb_appointments_collection: str = "appointments"
    mongodb_connect_timeout_ms: int = 2000
    auth_secret_key: str = "change-me-in-production"
    auth_token_ttl_minutes: int = 60 * 12
    token_encryption_key: str = ""
    google_calendar_client_id: str = ""
    google_calendar_client_secret: str = ""
    google_calendar_redirect_uri: str = (
        "http://localhost:8000/api/integrations/google-calendar/callback"
    )
    google_calendar_api_timeout_seconds: float = 10.0
    scheduling_timezone: str = "UTC"
    availability_horizon_days: int = 14
    slot_duration_minutes: int = 30
    working_hours_start: int = 9
    working_hours_end: int = 17

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("user_data_store", mode="before")
    @classmethod
    def normalize_user_data_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("scheduling_timezone", mode="before")
    @classmethod
    def normalize_scheduling_timezone(cls, value: str) -> str:
        cleaned = value.strip() or "UTC"
        try:
            ZoneInfo(cleaned)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown scheduling timezone: {cleaned}") from exc
        return cleaned

    @model_validator(mode="after")
    def validate_scheduling_window(self) -> "Settings":
        if self.availability_horizon_days < 0:
            raise ValueError("availability_horizon_days must not be negative.")
        if self.slot_duration_minutes <= 0:
            raise ValueError("slot_duration_minutes must be positive.")
        if not 0 <= self.working_hours_start <= self.working_hours_end <= 23:
            raise ValueError("working hours must satisfy 0 <= start <= end <= 23.")
        return self

    @field_validator("google_calendar_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_google_calendar_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("auth_token_ttl_minutes", mode="before")
    @classmethod
    def normalize_auth_token_ttl(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 60 * 12
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
