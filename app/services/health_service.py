from datetime import UTC, datetime

from app.core.config import Settings
from app.schemas.health import HealthChecks, HealthResponse


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        return HealthResponse(
            status="ok",
            service=self.settings.app_name,
            timestamp=datetime.now(UTC),
            checks=HealthChecks(
                token_encryption_key_configured=bool(self.settings.token_encryption_key),
                google_calendar_oauth_configured=bool(
                    self.settings.google_calendar_client_id.strip()
                    and self.settings.google_calendar_client_secret.strip()
                ),
                user_data_store=self.settings.user_data_store,
            ),
        )
