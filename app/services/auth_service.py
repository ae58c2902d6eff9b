from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import Settings, get_settings
from app.schemas.auth import AuthTokenResponse, CurrentUserResponse, LoginRequest, RegisterRequest
from app.services.security_utils import (
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from app.services.user_store import UserStore, create_user_store

ACCESS_TOKEN_TYPE = "access"

_HTTP_BEARER = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class AuthService:
    def __init__(
        self,
        settings: Settings | None = None,
        user_store: UserStore | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.user_store = user_store or create_user_store(self.settings)

    def register(self, payload: RegisterRequest) -> AuthTokenResponse:
        if self.user_store.get_user_by_email(payload.email):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="An account with this email already exists.",
            )
        try:
            user_record = self.user_store.create_user(
                email=payload.email,
                full_name=payload.full_name,
                password_hash=hash_password(payload.password),
                role=payload.role,
            )
        except ValueError as exc:
            # Lost a race with a concurrent registration for the same email.
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="An account with this email already exists.",
            ) from exc
        return self.build_auth_token_response(user_record)

    def login(self, payload: LoginRequest) -> AuthTokenResponse:
        user_record = self.user_store.get_user_by_email(payload.email)
        stored_hash = str((user_record or {}).get("password_hash", ""))
        if not user_record or not verify_password(payload.password, stored_hash):
            raise _unauthorized("Invalid email or password.")
        return self.build_auth_token_response(user_record)

    def get_current_user_from_token(self, access_token: str) -> CurrentUserResponse:
        claims = decode_access_token(access_token, self.settings.auth_secret_key)
        if not claims or claims.get("type") != ACCESS_TOKEN_TYPE:
            raise _unauthorized("Invalid or expired access token.")

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise _unauthorized("Invalid access token payload.")

        user_record = self.user_store.get_user_by_id(subject)
        if not user_record:
            raise _unauthorized("User not found for this access token.")
        return to_current_user_response(user_record)

    def build_auth_token_response(self, user_record: Mapping[str, Any]) -> AuthTokenResponse:
        current_user = to_current_user_response(user_record)
        access_token, expires_in_seconds = create_access_token(
            claims={"type": ACCESS_TOKEN_TYPE, "sub": current_user.id, "role": current_user.role},
            secret_key=self.settings.auth_secret_key,
            ttl_minutes=self.settings.auth_token_ttl_minutes,
        )
        return AuthTokenResponse(
            access_token=access_token,
            expires_in_seconds=expires_in_seconds,
            user=current_user,
        )


def to_current_user_response(user_record: Mapping[str, Any]) -> CurrentUserResponse:
    return CurrentUserResponse(
        id=str(user_record.get("_id", "")),
        email=str(user_record.get("email", "")),
        full_name=str(user_record.get("full_name", "")),
        role=user_record.get("role", "buyer"),
    )


def resolve_current_user(
    credentials: HTTPAuthorizationCredentials | None,
    access_token: str | None = None,
) -> CurrentUserResponse:
    """Authenticates from a bearer header, falling back to a query token.

    The query fallback exists for browser redirects such as the calendar
    connect link, which cannot attach headers.
    """
    token = ""
    if credentials and credentials.scheme.lower() == "bearer":
        token = credentials.credentials
    elif access_token:
        token = access_token.strip()
    if not token:
        raise _unauthorized("Authentication required.")
    return AuthService().get_current_user_from_token(token)


def require_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_HTTP_BEARER),
) -> CurrentUserResponse:
    return resolve_current_user(credentials)
