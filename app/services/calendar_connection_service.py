from __future__ import annotations

import json
import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from fastapi import HTTPException, status

from app.core.config import Settings, get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.integration import CalendarConnectionStatus
from app.services.google_calendar_client import GoogleCalendarClient, GoogleCalendarError
from app.services.security_utils import create_access_token, decode_access_token
from app.services.token_cipher import TokenCipher, get_token_cipher
from app.services.user_store import UserStore, create_user_store

logger = logging.getLogger(__name__)

_GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.readonly",
)
_OAUTH_STATE_TYPE = "google_calendar_oauth_state"


class CalendarConnectionService:
    def __init__(
        self,
        settings: Settings | None = None,
        user_store: UserStore | None = None,
        token_cipher: TokenCipher | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.user_store = user_store or create_user_store(self.settings)
        self._token_cipher = token_cipher

    @property
    def token_cipher(self) -> TokenCipher:
        if self._token_cipher is None:
            self._token_cipher = get_token_cipher(self.settings)
        return self._token_cipher

    def build_authorization_url(self, current_user: CurrentUserResponse) -> str:
        self._assert_oauth_is_configured()
        state_token, _ = create_access_token(
            claims={
                "type": _OAUTH_STATE_TYPE,
                "sub": current_user.id,
                "nonce": secrets.token_urlsafe(16),
            },
            secret_key=self.settings.auth_secret_key,
            ttl_minutes=10,
        )
        query = urlencode(
            {
                "client_id": self.settings.google_calendar_client_id,
                "redirect_uri": self.settings.google_calendar_redirect_uri,
                "response_type": "code",
                "scope": " ".join(_GOOGLE_CALENDAR_SCOPES),
                "state": state_token,
                "prompt": "consent",
                "access_type": "offline",
                "include_granted_scopes": "true",
            },
        )
        return f"{_GOOGLE_OAUTH_AUTHORIZE_URL}?{query}"

    def complete_authorization(self, *, code: str, state: str) -> str:
        self._assert_oauth_is_configured()
        decoded_state = decode_access_token(state, self.settings.auth_secret_key)
        if not decoded_state or decoded_state.get("type") != _OAUTH_STATE_TYPE:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid OAuth state.",
            )
        user_id = str(decoded_state.get("sub", "")).strip()
        if not user_id or not self.user_store.get_user_by_id(user_id):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="OAuth state does not include a valid user.",
            )

        token_payload = self._exchange_code_for_token(code)
        access_token = str(token_payload.get("access_token", "")).strip()
        if not access_token:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Google token response did not include access_token.",
            )
        refresh_token = str(token_payload.get("refresh_token", "")).strip()
        existing_credentials = self.user_store.get_calendar_credentials(user_id) or {}
        if not refresh_token and not existing_credentials.get("encrypted_refresh_token"):
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Google token response did not include refresh_token.",
            )

        updates: dict[str, Any] = {
            "encrypted_access_token": self.token_cipher.encode(access_token),
            "access_token_expires_at": _resolve_expiry(token_payload.get("expires_in")),
            "calendar_id": existing_credentials.get("calendar_id") or "primary",
        }
        if refresh_token:
            updates["encrypted_refresh_token"] = self.token_cipher.encode(refresh_token)
        calendar_timezone = self._fetch_calendar_timezone(access_token)
        if calendar_timezone:
            updates["calendar_timezone"] = calendar_timezone

        self.user_store.upsert_calendar_credentials(user_id, updates)
        logger.info("Google Calendar connected user_id=%s", user_id)
        return user_id

    def get_status(self, current_user: CurrentUserResponse) -> CalendarConnectionStatus:
        credentials = self.user_store.get_calendar_credentials(current_user.id) or {}
        connected = bool(credentials.get("encrypted_refresh_token"))
        return CalendarConnectionStatus(
            provider="google_calendar",
            connected=connected,
            calendar_id=str(credentials.get("calendar_id") or "primary") if connected else None,
            calendar_timezone=credentials.get("calendar_timezone") if connected else None,
        )

    def disconnect(self, current_user: CurrentUserResponse) -> None:
        self.user_store.delete_calendar_credentials(current_user.id)

    def build_frontend_redirect(self, result: str, reason: str) -> str:
        query = urlencode({"provider": "google_calendar", "status": result, "reason": reason})
        return f"{self.settings.frontend_base_url.rstrip('/')}/dashboard?{query}"

    def _assert_oauth_is_configured(self) -> None:
        if (
            not self.settings.google_calendar_client_id.strip()
            or not self.settings.google_calendar_client_secret.strip()
            or not self.settings.google_calendar_redirect_uri.strip()
        ):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=(
                    "Google Calendar OAuth is not configured. "
                    "Define GOOGLE_CALENDAR_CLIENT_ID, GOOGLE_CALENDAR_CLIENT_SECRET and "
                    "GOOGLE_CALENDAR_REDIRECT_URI."
                ),
            )

    def _exchange_code_for_token(self, code: str) -> dict[str, Any]:
        body = urlencode(
            {
                "code": code,
                "client_id": self.settings.google_calendar_client_id,
                "client_secret": self.settings.google_calendar_client_secret,
                "redirect_uri": self.settings.google_calendar_redirect_uri,
                "grant_type": "authorization_code",
            },
        ).encode("utf-8")
        request = Request(
            _GOOGLE_OAUTH_TOKEN_URL,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=15) as response:
                raw_payload = response.read().decode("utf-8")
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Failed to exchange Google Calendar authorization code.",
            ) from exc

        try:
            payload = json.loads(raw_payload)
        except json.JSONDecodeError as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Invalid Google token response.",
            ) from exc
        if not isinstance(payload, dict):
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Invalid Google token response payload.",
            )
        return payload

    def _fetch_calendar_timezone(self, access_token: str) -> str | None:
        client = GoogleCalendarClient(
            access_token=access_token,
            timeout_seconds=self.settings.google_calendar_api_timeout_seconds,
        )
        try:
            return client.get_calendar_timezone()
        except GoogleCalendarError as exc:
            logger.warning("Google Calendar timezone lookup failed error=%s", exc)
            return None


def _resolve_expiry(raw_expires_in: Any) -> datetime | None:
    if isinstance(raw_expires_in, int) and raw_expires_in > 0:
        return datetime.now(UTC) + timedelta(seconds=raw_expires_in)
    return None
