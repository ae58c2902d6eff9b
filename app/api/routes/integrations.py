from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.schemas.auth import CurrentUserResponse
from app.schemas.integration import CalendarConnectionStatus
from app.services.auth_service import require_current_user, resolve_current_user
from app.services.calendar_connection_service import CalendarConnectionService
from app.services.token_cipher import TokenCipherError

_HTTP_BEARER = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/integrations", tags=["integrations"])


@router.get("/google-calendar/connect")
def start_google_calendar_oauth(
    access_token: str | None = Query(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(_HTTP_BEARER),
) -> RedirectResponse:
    current_user = resolve_current_user(credentials, access_token)
    service = CalendarConnectionService()
    return RedirectResponse(url=service.build_authorization_url(current_user), status_code=302)


@router.get("/google-calendar/callback")
def finish_google_calendar_oauth(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> RedirectResponse:
    service = CalendarConnectionService()
    if error:
        return RedirectResponse(url=service.build_frontend_redirect("error", error), status_code=302)
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Missing code or state.",
        )
    try:
        service.complete_authorization(code=code, state=state)
    except TokenCipherError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Calendar credentials could not be encrypted.",
        ) from exc
    return RedirectResponse(url=service.build_frontend_redirect("success", "connected"), status_code=302)


@router.get("/google-calendar/status", response_model=CalendarConnectionStatus)
def get_google_calendar_status(
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> CalendarConnectionStatus:
    service = CalendarConnectionService()
    return service.get_status(current_user)


@router.delete("/google-calendar", status_code=status.HTTP_204_NO_CONTENT)
def disconnect_google_calendar(
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> Response:
    service = CalendarConnectionService()
    service.disconnect(current_user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
