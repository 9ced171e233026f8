from typing import NoReturn, Optional

from fastapi import APIRouter, Header, HTTPException, Query

from chairbook.auth import assert_actor_authorized, assert_system_caller
from chairbook.models import (
    AvailableSlot,
    Booking,
    BookingAcceptRequest,
    BookingApproveRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingFulfillmentRequest,
    BookingPage,
    BookingRateRequest,
    BookingReassignRequest,
    BookingRejectRequest,
    BookingUpdateRequest,
    PaymentSignalRequest,
    ServiceType,
)
from chairbook.services.errors import (
    BookingConflictError,
    BookingDependencyError,
    BookingError,
    BookingNotFoundError,
    BookingPermissionError,
)
from chairbook.services.lifecycle import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, booking_lifecycle

router = APIRouter(tags=["bookings"])


def raise_booking_http_error(exc: BookingError) -> NoReturn:
    if isinstance(exc, BookingNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, BookingPermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, BookingConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, BookingDependencyError):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


@router.post("/bookings", response_model=Booking, status_code=201)
def create_booking(request: BookingCreateRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.customer_id, authorization=authorization)
    try:
        return booking_lifecycle.create_booking(request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.get("/bookings", response_model=BookingPage)
def list_bookings(
    customer_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    shop_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None, description="Comma-separated statuses"),
    date_from: Optional[str] = Query(default=None),
    date_to: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
):
    try:
        return booking_lifecycle.list_bookings(
            customer_id=customer_id,
            provider_id=provider_id,
            shop_id=shop_id,
            status=status,
            date_from=date_from,
            date_to=date_to,
            page=page,
            limit=limit,
        )
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.get("/bookings/{ref}", response_model=Booking)
def get_booking(ref: str):
    try:
        return booking_lifecycle.get_booking(ref)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.patch("/bookings/{ref}", response_model=Booking)
def update_booking(ref: str, request: BookingUpdateRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.update_booking(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.get("/providers/{provider_id}/available-slots", response_model=list[AvailableSlot])
def get_available_slots(
    provider_id: str,
    service_id: str = Query(...),
    date: str = Query(...),
    service_type: Optional[ServiceType] = Query(default=None),
):
    try:
        return booking_lifecycle.available_slots(
            provider_id=provider_id,
            service_id=service_id,
            booking_date=date,
            service_type=service_type,
        )
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{ref}/accept", response_model=Booking)
def accept_booking(ref: str, request: BookingAcceptRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.accept_booking(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{ref}/reject", response_model=Booking)
def reject_booking(ref: str, request: BookingRejectRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.reject_booking(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{ref}/approve", response_model=Booking)
def approve_booking(ref: str, request: BookingApproveRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.approve_booking(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{ref}/reassign", response_model=Booking)
def reassign_booking(ref: str, request: BookingReassignRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.reassign_booking(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{ref}/cancel", response_model=Booking)
def cancel_booking(ref: str, request: BookingCancelRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.cancel_booking(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{ref}/complete", response_model=Booking)
def complete_booking(ref: str, request: BookingFulfillmentRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.complete_booking(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{ref}/no-show", response_model=Booking)
def mark_no_show(ref: str, request: BookingFulfillmentRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.mark_no_show(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{ref}/rate", response_model=Booking)
def rate_booking(ref: str, request: BookingRateRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.rate_booking(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{ref}/payment", response_model=Booking)
def record_payment(ref: str, request: PaymentSignalRequest, authorization: Optional[str] = Header(default=None)):
    assert_system_caller(authorization=authorization)
    try:
        return booking_lifecycle.record_payment(ref, request)
    except BookingError as exc:
        raise_booking_http_error(exc)
