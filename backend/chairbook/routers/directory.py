from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from chairbook.auth import assert_system_caller
from chairbook.models import Customer, ProviderKind, ProviderProfile, Service, Shop
from chairbook.routers.bookings import raise_booking_http_error
from chairbook.services.directory import directory
from chairbook.services.errors import BookingError

router = APIRouter(prefix="/directory", tags=["directory"])


def _assert_path_id(path_id: str, body_id: str) -> None:
    if path_id != body_id:
        raise HTTPException(status_code=400, detail="Path id does not match body id")


@router.put("/customers/{customer_id}", response_model=Customer)
def sync_customer(customer_id: str, payload: Customer, authorization: Optional[str] = Header(default=None)):
    assert_system_caller(authorization=authorization)
    _assert_path_id(customer_id, payload.id)
    try:
        return directory.upsert_customer(payload)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.put("/shops/{shop_id}", response_model=Shop)
def sync_shop(shop_id: str, payload: Shop, authorization: Optional[str] = Header(default=None)):
    assert_system_caller(authorization=authorization)
    _assert_path_id(shop_id, payload.id)
    try:
        return directory.upsert_shop(payload)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.get("/shops/{shop_id}", response_model=Shop)
def get_shop(shop_id: str):
    try:
        return directory.get_shop(shop_id)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.put("/providers/{kind}/{provider_id}", response_model=ProviderProfile)
def sync_provider(
    kind: ProviderKind,
    provider_id: str,
    payload: ProviderProfile,
    authorization: Optional[str] = Header(default=None),
):
    assert_system_caller(authorization=authorization)
    _assert_path_id(provider_id, payload.id)
    if payload.kind != kind:
        raise HTTPException(status_code=400, detail="Path kind does not match body kind")
    try:
        return directory.upsert_provider(payload)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.get("/providers/{kind}/{provider_id}", response_model=ProviderProfile)
def get_provider(kind: ProviderKind, provider_id: str):
    try:
        return directory.get_provider_profile(provider_id, kind)
    except BookingError as exc:
        raise_booking_http_error(exc)


@router.put("/services/{service_id}", response_model=Service)
def sync_service(service_id: str, payload: Service, authorization: Optional[str] = Header(default=None)):
    assert_system_caller(authorization=authorization)
    _assert_path_id(service_id, payload.id)
    try:
        return directory.upsert_service(payload)
    except BookingError as exc:
        raise_booking_http_error(exc)
