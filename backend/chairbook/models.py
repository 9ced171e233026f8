from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field

ProviderKind = Literal["staff", "freelancer", "shopOwner"]
ServiceType = Literal["shopBased", "homeBased"]
PaymentStatus = Literal["pending", "paid", "refunded", "failed"]
BookingStatus = Literal[
    "pending",
    "assigned",
    "reassigned",
    "rescheduled",
    "confirmed",
    "completed",
    "cancelled",
    "noShow",
    "rejected",
    "freelancer_rejected",
    "rejected_barber",
    "shop_owner_rejected",
]


class OpeningHoursDay(BaseModel):
    is_open: bool = False
    open_time: str = "09:00"
    close_time: str = "18:00"


class AvailabilityDay(BaseModel):
    available: bool = False
    start: str = "09:00"
    end: str = "18:00"


class Customer(BaseModel):
    id: str
    name: str


class Shop(BaseModel):
    id: str
    name: str
    owner_id: Optional[str] = None
    opening_hours: Dict[str, OpeningHoursDay] = Field(default_factory=dict)
    rating: float = 0.0
    review_count: int = 0


class ProviderProfile(BaseModel):
    id: str
    kind: ProviderKind
    name: str
    shop_id: Optional[str] = None
    schedule: Dict[str, AvailabilityDay] = Field(default_factory=dict)
    is_active: bool = True
    rating: float = 0.0
    review_count: int = 0


class Service(BaseModel):
    id: str
    name: str
    price: float = Field(ge=0)
    duration: int = Field(default=30, ge=5)
    service_types: list[ServiceType] = Field(default_factory=lambda: ["shopBased"])


class BookingTime(BaseModel):
    """Wall-clock start of a booking, in UTC like every stored timestamp and the lead-time clock."""

    hour: int = Field(ge=0, le=23)
    minute: int = Field(ge=0, le=59)


class BookingAddress(BaseModel):
    latitude: float
    longitude: float
    formatted_address: str = ""


class Booking(BaseModel):
    id: int
    uid: str
    customer_id: str
    customer_name: str
    provider_id: str
    provider_name: str
    provider_kind: ProviderKind
    shop_id: Optional[str] = None
    service_id: str
    service_name: str
    service_type: ServiceType
    price: float
    duration: int
    booking_date: str
    booking_time: BookingTime
    status: BookingStatus
    address: Optional[BookingAddress] = None
    notes: str = ""
    cancellation_reason: Optional[str] = None
    reject_reason: Optional[str] = None
    rating: Optional[int] = None
    review: Optional[str] = None
    payment_status: PaymentStatus = "pending"
    payment_id: Optional[str] = None
    created_at: str
    updated_at: str


class BookingCreateRequest(BaseModel):
    customer_id: str
    provider_id: str
    service_id: str
    service_type: ServiceType = "shopBased"
    booking_date: str
    booking_time: BookingTime
    address: Optional[BookingAddress] = None
    notes: str = Field(default="", max_length=1000)


class BookingUpdateRequest(BaseModel):
    actor_user_id: str
    booking_date: Optional[str] = None
    booking_time: Optional[BookingTime] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class BookingAcceptRequest(BaseModel):
    actor_user_id: str
    note: Optional[str] = Field(default=None, max_length=500)


class BookingRejectRequest(BaseModel):
    actor_user_id: str
    reason: str = Field(min_length=1, max_length=500)


class BookingApproveRequest(BaseModel):
    actor_user_id: str


class BookingReassignRequest(BaseModel):
    actor_user_id: str
    provider_id: str
    booking_date: Optional[str] = None
    booking_time: Optional[BookingTime] = None
    duration: Optional[int] = Field(default=None, ge=5)


class BookingCancelRequest(BaseModel):
    actor_user_id: str
    reason: str = Field(default="", max_length=500)


class BookingFulfillmentRequest(BaseModel):
    actor_user_id: str


class BookingRateRequest(BaseModel):
    actor_user_id: str
    rating: int = Field(ge=1, le=5)
    review: str = Field(default="", max_length=1000)


class PaymentSignalRequest(BaseModel):
    status: Literal["paid", "failed", "refunded"]
    payment_id: Optional[str] = None


class BookingPage(BaseModel):
    items: list[Booking]
    total: int
    page: int
    limit: int
    pages: int
    has_next_page: bool
    has_prev_page: bool


class AvailableSlot(BaseModel):
    booking_date: str
    start_time: str
    end_time: str
    booking_time: BookingTime


class RemediationReport(BaseModel):
    ran_at: str
    assigned: list[str] = Field(default_factory=list)
    rescheduled: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["booking", "payment", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
