import logging
from typing import Literal, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.config import get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.scheduling import (
    AppointmentsResponse,
    AvailabilityResponse,
    BookingConfirmation,
    BookingRequest,
    SellerSummary,
)
from app.services.auth_service import require_current_user, to_current_user_response
from app.services.availability_oracle import CalendarNotConnectedError, CalendarUnavailableError
from app.services.booking_service import (
    BookingParticipantError,
    BookingService,
    SlotConflictError,
    build_generation_policy,
)
from app.services.intervals import BookingError, InvalidIntervalError
from app.services.token_cipher import TokenCipherError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["scheduling"])


@router.get("/availability", response_model=AvailabilityResponse)
def get_availability(
    seller_id: str = Query(..., min_length=1),
    days: int | None = Query(default=None, ge=0, le=60),
    slot_minutes: int | None = Query(default=None, ge=5, le=480),
    start_hour: int | None = Query(default=None, ge=0, le=23),
    end_hour: int | None = Query(default=None, ge=0, le=23),
) -> AvailabilityResponse:
    service = BookingService()
    try:
        policy = build_generation_policy(
            get_settings(),
            horizon_days=days,
            slot_duration_minutes=slot_minutes,
            start_hour=start_hour,
            end_hour=end_hour,
        )
        return service.list_availability(seller_id, policy)
    except (BookingError, TokenCipherError) as exc:
        _raise_http_error(exc)


@router.post(
    "/bookings",
    response_model=BookingConfirmation,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    payload: BookingRequest,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> BookingConfirmation:
    service = BookingService()
    try:
        return service.create_booking(
            seller_id=payload.seller_id,
            buyer_id=current_user.id,
            start=payload.start,
            end=payload.end,
        )
    except (BookingError, TokenCipherError) as exc:
        _raise_http_error(exc)


@router.get("/appointments", response_model=AppointmentsResponse)
def list_appointments(
    role: Literal["seller", "buyer", "both"] = Query(default="both"),
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> AppointmentsResponse:
    service = BookingService()
    return service.list_appointments(current_user.id, role=role)


@router.get("/sellers", response_model=list[SellerSummary])
def list_sellers(
    include_availability: bool = Query(default=False),
    days: int = Query(default=7, ge=1, le=60),
) -> list[SellerSummary]:
    service = BookingService()
    try:
        return service.list_sellers(include_availability=include_availability, days=days)
    except TokenCipherError as exc:
        _raise_http_error(exc)


@router.post("/role/seller", response_model=CurrentUserResponse)
def become_seller(
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> CurrentUserResponse:
    service = BookingService()
    try:
        updated = service.become_seller(current_user.id)
    except BookingError as exc:
        _raise_http_error(exc)
    return to_current_user_response(updated)


def _raise_http_error(exc: Exception) -> NoReturn:
    if isinstance(exc, InvalidIntervalError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if isinstance(exc, BookingParticipantError):
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    if isinstance(exc, CalendarNotConnectedError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Seller has not connected a calendar.",
        ) from exc
    if isinstance(exc, SlotConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, CalendarUnavailableError):
        logger.warning("Calendar unavailable error=%s cause=%s", exc, exc.__cause__)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Calendar service is temporarily unavailable. Please retry.",
            headers={"Retry-After": "5"},
        ) from exc
    logger.error("Stored calendar credentials are unusable error=%s", exc)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Stored calendar credentials could not be read.",
    ) from exc
