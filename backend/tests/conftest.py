import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Tuple

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
os.environ.setdefault("BOOKING_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="chairbook-tests-"), "bookings.sqlite3"))
os.environ.setdefault("REMEDIATION_ENABLED", "false")

from chairbook.models import (  # noqa: E402
    AvailabilityDay,
    Booking,
    BookingCreateRequest,
    BookingTime,
    Customer,
    OpeningHoursDay,
    ProviderProfile,
    Service,
    Shop,
)
from chairbook.services.database import Database  # noqa: E402
from chairbook.services.directory import Directory  # noqa: E402
from chairbook.services.lifecycle import BookingLifecycle  # noqa: E402
from chairbook.services.notification_store import NotificationStore  # noqa: E402
from chairbook.services.payments import PaymentGateway  # noqa: E402
from chairbook.services.push_sender import PushSender  # noqa: E402
from chairbook.services.remediation import RemediationScheduler  # noqa: E402

# Monday 08:00 UTC; DAY is the Tuesday after.
NOW = datetime(2026, 3, 2, 8, 0)
DAY = "2026-03-03"
SUNDAY = "2026-03-08"

WORK_WEEK = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingPaymentGateway(PaymentGateway):
    def __init__(self, refund_result: bool = True):
        self.registered: List[str] = []
        self.refunds: List[Tuple[str, str]] = []
        self.refund_result = refund_result

    def register_booking(self, booking: Booking) -> None:
        self.registered.append(booking.uid)

    def refund(self, booking: Booking, reason: str) -> bool:
        self.refunds.append((booking.uid, reason))
        return self.refund_result


def week(start: str = "09:00", end: str = "18:00", days=WORK_WEEK) -> dict:
    return {day: AvailabilityDay(available=True, start=start, end=end) for day in days}


def seed_directory(directory: Directory) -> None:
    for customer_id, name in (("cust_1", "Ana"), ("cust_2", "Ben"), ("cust_3", "Cy")):
        directory.upsert_customer(Customer(id=customer_id, name=name))
    directory.upsert_shop(
        Shop(
            id="shop_1",
            name="Fade Factory",
            owner_id="owner_1",
            opening_hours={day: OpeningHoursDay(is_open=True, open_time="09:00", close_time="18:00") for day in WORK_WEEK},
        )
    )
    directory.upsert_provider(ProviderProfile(id="owner_1", kind="shopOwner", name="Olga", schedule=week("10:00", "16:00")))
    directory.upsert_provider(ProviderProfile(id="staff_1", kind="staff", name="Sam", shop_id="shop_1", schedule=week()))
    directory.upsert_provider(ProviderProfile(id="staff_2", kind="staff", name="Tia", shop_id="shop_1", schedule=week()))
    directory.upsert_provider(ProviderProfile(id="free_1", kind="freelancer", name="Finn", schedule=week("08:00", "20:00")))
    directory.upsert_provider(ProviderProfile(id="solo_1", kind="staff", name="Sol", schedule=week()))
    directory.upsert_service(Service(id="svc_cut", name="Haircut", price=25.0, duration=30, service_types=["shopBased", "homeBased"]))
    directory.upsert_service(Service(id="svc_beard", name="Beard trim", price=15.0, duration=45, service_types=["shopBased"]))
    directory.upsert_service(Service(id="svc_home", name="Home cut", price=50.0, duration=60, service_types=["homeBased"]))


@dataclass
class Engine:
    db: Database
    directory: Directory
    lifecycle: BookingLifecycle
    notifications: NotificationStore
    payments: RecordingPaymentGateway
    clock: FakeClock
    scheduler: RemediationScheduler

    def book(
        self,
        provider_id: str,
        hour: int,
        minute: int = 0,
        customer_id: str = "cust_1",
        service_id: str = "svc_cut",
        service_type: str = "shopBased",
        booking_date: str = DAY,
    ) -> Booking:
        return self.lifecycle.create_booking(
            BookingCreateRequest(
                customer_id=customer_id,
                provider_id=provider_id,
                service_id=service_id,
                service_type=service_type,
                booking_date=booking_date,
                booking_time=BookingTime(hour=hour, minute=minute),
            )
        )

    def set_status(self, booking: Booking, status: str) -> None:
        with self.db.transaction() as conn:
            conn.execute("UPDATE bookings SET status = ? WHERE id = ?", (status, booking.id))

    def titles_for(self, user_id: str) -> List[str]:
        return [record.title for record in self.notifications.list_for_user(user_id)]


@pytest.fixture
def engine(tmp_path) -> Engine:
    db = Database(str(tmp_path / "bookings.sqlite3"))
    directory = Directory(db)
    seed_directory(directory)
    clock = FakeClock(NOW)
    notifications = NotificationStore(sender=PushSender(credentials_path=""))
    payments = RecordingPaymentGateway()
    lifecycle = BookingLifecycle(db, directory, notifications=notifications, payments=payments, clock=clock)
    scheduler = RemediationScheduler(lifecycle, interval_seconds=0.01)
    return Engine(
        db=db,
        directory=directory,
        lifecycle=lifecycle,
        notifications=notifications,
        payments=payments,
        clock=clock,
        scheduler=scheduler,
    )
