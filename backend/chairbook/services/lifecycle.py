import logging
import math
import os
import sqlite3
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional, TypeVar

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
    BookingTime,
    BookingUpdateRequest,
    PaymentSignalRequest,
    Shop,
)
from chairbook.services import state_machine as sm
from chairbook.services.availability import iter_free_slots
from chairbook.services.booking_store import BookingStore, booking_store
from chairbook.services.conflicts import ConflictDetector, conflict_detector, first_overlap, resource_key
from chairbook.services.database import Database, database, utcnow
from chairbook.services.directory import Directory, directory
from chairbook.services.errors import (
    BookingConflictError,
    BookingDependencyError,
    BookingPermissionError,
    BookingValidationError,
    DuplicateBookingError,
    InvalidTransitionError,
    OutsideWorkingHoursError,
    ScheduleLookupError,
)
from chairbook.services.notification_store import NotificationIntent, NotificationStore, booking_intent, notification_store
from chairbook.services.payments import PaymentGateway, payment_gateway
from chairbook.services.providers import FREELANCER, SHOP_OWNER, STAFF, Provider, ProviderResolver, provider_resolver
from chairbook.services.schedule import ScheduleSource, format_minutes, schedule_source

logger = logging.getLogger(__name__)

LEAD_TIME = timedelta(hours=1)
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
STORAGE_RETRY_ATTEMPTS = int(os.getenv("STORAGE_RETRY_ATTEMPTS", "3"))

T = TypeVar("T")
Outbox = List[NotificationIntent]


def parse_booking_date(value: str, field: str = "booking_date") -> date:
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise BookingValidationError(f"Invalid {field}; expected YYYY-MM-DD") from exc


def start_minute(booking_time: BookingTime) -> int:
    return booking_time.hour * 60 + booking_time.minute


def _starts_at(day: date, minute: int) -> datetime:
    return datetime.combine(day, datetime.min.time()) + timedelta(minutes=minute)


def _when(booking: Booking) -> str:
    return f"{booking.booking_date} {format_minutes(start_minute(booking.booking_time))}"


def _unique(user_ids: Iterable[Optional[str]]) -> List[str]:
    seen: List[str] = []
    for user_id in user_ids:
        if user_id and user_id not in seen:
            seen.append(user_id)
    return seen


class BookingLifecycle:
    """Transactional booking use-cases.

    Each public operation is one ``BEGIN IMMEDIATE`` unit of work: read,
    validate, write, and collect notification intents. Intents are only
    dispatched after the commit, so a delivery failure cannot undo a booking
    change. Lock contention is retried up to ``retry_attempts`` times.
    """

    def __init__(
        self,
        db: Database,
        directory: Directory,
        resolver: ProviderResolver = provider_resolver,
        schedule: ScheduleSource = schedule_source,
        conflicts: ConflictDetector = conflict_detector,
        store: BookingStore = booking_store,
        notifications: NotificationStore = notification_store,
        payments: PaymentGateway = payment_gateway,
        clock: Callable[[], datetime] = utcnow,
        retry_attempts: int = STORAGE_RETRY_ATTEMPTS,
    ) -> None:
        self.db = db
        self.directory = directory
        self.resolver = resolver
        self.schedule = schedule
        self.conflicts = conflicts
        self.store = store
        self.notifications = notifications
        self.payments = payments
        self.clock = clock
        self.retry_attempts = max(1, retry_attempts)

    # unit of work

    def _run(self, operation: str, work: Callable[[sqlite3.Connection, Outbox], T]) -> T:
        attempt = 1
        while True:
            outbox: Outbox = []
            try:
                with self.db.transaction() as conn:
                    result = work(conn, outbox)
            except sqlite3.OperationalError as exc:
                if attempt >= self.retry_attempts:
                    logger.error("Booking %s failed after %s attempts: %s", operation, attempt, exc)
                    raise BookingDependencyError(f"Booking storage unavailable during {operation}") from exc
                logger.warning("Booking %s hit storage contention (attempt %s): %s", operation, attempt, exc)
                attempt += 1
                continue
            self.notifications.dispatch(outbox)
            return result

    def _read(self, operation: str, work: Callable[[sqlite3.Connection], T]) -> T:
        try:
            with self.db.reader() as conn:
                return work(conn)
        except sqlite3.OperationalError as exc:
            raise BookingDependencyError(f"Booking storage unavailable during {operation}") from exc

    # shared checks

    def _assert_within_hours(
        self,
        provider: Provider,
        service_type: str,
        day: date,
        start: int,
        duration: int,
        shop: Optional[Shop],
    ) -> None:
        window = self.schedule.window_for(provider, service_type, day, shop=shop)
        if not window.is_available:
            raise OutsideWorkingHoursError(f"{'Shop' if service_type == 'shopBased' else 'Provider'} is closed on {day.isoformat()}")
        if not window.contains(start, duration):
            raise OutsideWorkingHoursError(
                f"Requested {format_minutes(start)}-{format_minutes(start + duration)} is outside "
                f"{format_minutes(window.window_start)}-{format_minutes(window.window_end)}"
            )

    def _assert_lead_time(self, day: date, start: int, now: datetime) -> None:
        if _starts_at(day, start) - now < LEAD_TIME:
            raise BookingValidationError("Bookings must start at least 1 hour from now")

    def _assert_slot_free(self, conn: sqlite3.Connection, booking: Booking) -> None:
        self.conflicts.assert_free(
            conn,
            resource_key(booking.service_type, booking.shop_id, booking.provider_id),
            booking.booking_date,
            start_minute(booking.booking_time),
            booking.duration,
            exclude_booking_id=booking.id,
        )

    def _booking_shop_id(self, booking: Booking, provider: Provider) -> Optional[str]:
        return booking.shop_id or provider.shop_id

    def _booking_shop(self, conn: sqlite3.Connection, booking: Booking) -> Optional[Shop]:
        if booking.service_type != "shopBased":
            return None
        return self.directory.fetch_shop(conn, booking.shop_id)

    def _assert_shop_owner(self, conn: sqlite3.Connection, shop_id: Optional[str], actor_user_id: str) -> None:
        owner_id = self.directory.shop_owner_id(conn, shop_id)
        if not owner_id or owner_id != actor_user_id:
            raise BookingPermissionError("Only the owner of the booking's shop can do this")

    def _provider_side(self, conn: sqlite3.Connection, booking: Booking) -> List[str]:
        return _unique([booking.provider_id, self.directory.shop_owner_id(conn, booking.shop_id)])

    def _transition(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        actor: str,
        actor_user_id: str,
        target: str,
        changes: Optional[dict] = None,
        note: Optional[str] = None,
    ) -> Booking:
        sm.assert_transition(actor, booking.status, target)
        now = self.clock()
        updated = self.store.update(conn, booking.id, {**(changes or {}), "status": target}, now)
        self.store.record_transition(conn, booking.id, actor_user_id, booking.status, target, note, now)
        logger.info("Booking %s %s -> %s by %s %s", booking.uid, booking.status, target, actor, actor_user_id)
        return updated

    # create

    def create_booking(self, request: BookingCreateRequest) -> Booking:
        day = parse_booking_date(request.booking_date)
        start = start_minute(request.booking_time)
        booking = self._run("create", lambda conn, outbox: self._create(conn, outbox, request, day, start))
        try:
            self.payments.register_booking(booking)
        except Exception:
            logger.exception("Payment registration failed for booking %s", booking.uid)
        return booking

    def _create(self, conn: sqlite3.Connection, outbox: Outbox, request: BookingCreateRequest, day: date, start: int) -> Booking:
        now = self.clock()
        service = self.directory.fetch_service(conn, request.service_id)
        if request.service_type not in service.service_types:
            raise BookingValidationError(f"Service {service.name} is not offered as {request.service_type}")
        customer = self.directory.fetch_customer(conn, request.customer_id)
        provider = self.resolver.resolve(conn, request.provider_id)
        if provider.id == customer.id:
            raise BookingValidationError("Providers cannot book themselves")

        shop: Optional[Shop] = None
        if request.service_type == "shopBased":
            if not provider.is_shop_bound:
                raise BookingValidationError("Shop-based services need a provider bound to a shop")
            shop = self.directory.fetch_shop(conn, provider.shop_id)

        self._assert_lead_time(day, start, now)
        booking_date = day.isoformat()
        if self.store.customer_has_active_booking_at(conn, customer.id, booking_date, start):
            raise DuplicateBookingError("Customer already has an active booking at this date and time")
        self._assert_within_hours(provider, request.service_type, day, start, service.duration, shop)
        key = resource_key(request.service_type, shop.id if shop else None, provider.id)
        self.conflicts.assert_free(conn, key, booking_date, start, service.duration)

        booking = self.store.insert(
            conn,
            {
                "customer_id": customer.id,
                "customer_name": customer.name,
                "provider_id": provider.id,
                "provider_name": provider.display_name(),
                "provider_kind": provider.kind,
                "shop_id": shop.id if shop else None,
                "service_id": service.id,
                "service_name": service.name,
                "service_type": request.service_type,
                "price": service.price,
                "duration": service.duration,
                "booking_date": booking_date,
                "start_minute": start,
                "resource_key": key,
                "status": sm.INITIAL_STATUS,
                "address": request.address.model_dump() if request.address else None,
                "notes": request.notes.strip(),
                "payment_status": "pending",
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            },
        )
        self.store.record_transition(conn, booking.id, customer.id, "none", booking.status, "booking requested", now)
        logger.info("Booking %s created for %s at %s (%s)", booking.uid, provider.id, _when(booking), key)

        outbox += booking_intent(
            customer.id,
            "Booking received",
            f"Your {service.name} booking for {_when(booking)} is waiting for confirmation.",
            booking.uid,
        )
        for user_id in self._provider_side(conn, booking):
            outbox += booking_intent(
                user_id,
                "New booking request",
                f"{customer.name} requested {service.name} on {_when(booking)}.",
                booking.uid,
            )
        return booking

    # provider responses

    def _responding_provider(self, conn: sqlite3.Connection, booking: Booking, actor_user_id: str) -> Provider:
        """Return the provider acting on ``booking``: its own provider, or the shop owner standing in for staff."""
        provider = self.resolver.resolve_kind(conn, booking.provider_id, booking.provider_kind)
        if actor_user_id == provider.id:
            return provider
        if provider.kind == STAFF and provider.is_shop_bound:
            if self.directory.shop_owner_id(conn, provider.shop_id) == actor_user_id:
                return self.resolver.resolve_shop_owner(conn, actor_user_id, provider.shop_id)
        raise BookingPermissionError("Only the booking's provider can respond to it")

    def accept_booking(self, ref: str, request: BookingAcceptRequest) -> Booking:
        return self._run("accept", lambda conn, outbox: self._accept(conn, outbox, ref, request))

    def _accept(self, conn: sqlite3.Connection, outbox: Outbox, ref: str, request: BookingAcceptRequest) -> Booking:
        booking = self.store.get(conn, ref)
        self._responding_provider(conn, booking, request.actor_user_id)
        if booking.status == sm.REJECTED_BARBER and request.actor_user_id != booking.provider_id:
            # The owner takes over a staff rejection through reassign, not accept.
            raise InvalidTransitionError(current=booking.status, target=sm.CONFIRMED, actor=sm.OWNER)
        sm.assert_transition(sm.PROVIDER, booking.status, sm.CONFIRMED)
        if booking.status not in sm.ACTIVE_STATUSES:
            # A rejected booking released its slot; someone may hold it now.
            self._assert_slot_free(conn, booking)
        changes = {}
        if request.note and request.note.strip():
            changes["notes"] = "\n".join(part for part in (booking.notes, request.note.strip()) if part)
        updated = self._transition(conn, booking, sm.PROVIDER, request.actor_user_id, sm.CONFIRMED, changes, request.note)

        outbox += booking_intent(
            updated.customer_id,
            "Booking confirmed",
            f"{updated.provider_name} confirmed your {updated.service_name} on {_when(updated)}.",
            updated.uid,
        )
        owner_id = self.directory.shop_owner_id(conn, updated.shop_id)
        if owner_id not in (request.actor_user_id, updated.provider_id):
            outbox += booking_intent(owner_id, "Booking accepted", f"{updated.provider_name} accepted booking {updated.uid}.", updated.uid)
        return updated

    def reject_booking(self, ref: str, request: BookingRejectRequest) -> Booking:
        reason = request.reason.strip()
        if not reason:
            raise BookingValidationError("A rejection reason is required")
        return self._run("reject", lambda conn, outbox: self._reject(conn, outbox, ref, request.actor_user_id, reason))

    def _reject(self, conn: sqlite3.Connection, outbox: Outbox, ref: str, actor_user_id: str, reason: str) -> Booking:
        booking = self.store.get(conn, ref)
        responder = self._responding_provider(conn, booking, actor_user_id)
        target = sm.rejection_status_for(responder)
        updated = self._transition(conn, booking, sm.PROVIDER, actor_user_id, target, {"reject_reason": reason}, reason)

        owner_id = self.directory.shop_owner_id(conn, self._booking_shop_id(updated, responder))
        if target == sm.REJECTED_BARBER:
            # The owner reassigns; the customer hears about the replacement.
            outbox += booking_intent(
                owner_id,
                "Booking needs reassignment",
                f"{updated.provider_name} declined booking {updated.uid}: {reason}",
                updated.uid,
            )
            return updated
        outbox += booking_intent(
            updated.customer_id,
            "Booking declined",
            f"Your {updated.service_name} on {_when(updated)} was declined: {reason}",
            updated.uid,
        )
        if owner_id and owner_id != actor_user_id:
            outbox += booking_intent(owner_id, "Booking declined", f"Booking {updated.uid} was declined: {reason}", updated.uid)
        return updated

    # shop owner

    def approve_booking(self, ref: str, request: BookingApproveRequest) -> Booking:
        return self._run("approve", lambda conn, outbox: self._approve(conn, outbox, ref, request.actor_user_id))

    def _approve(self, conn: sqlite3.Connection, outbox: Outbox, ref: str, actor_user_id: str) -> Booking:
        booking = self.store.get(conn, ref)
        provider = self.resolver.resolve_kind(conn, booking.provider_id, booking.provider_kind)
        self._assert_shop_owner(conn, self._booking_shop_id(booking, provider), actor_user_id)
        if booking.status == sm.CONFIRMED:
            return booking
        target = sm.approval_status_for(booking.service_type, provider)
        sm.assert_source(sm.OWNER, booking.status, sm.APPROVAL_SOURCES, target)
        updated = self._transition(conn, booking, sm.OWNER, actor_user_id, target, note="approved by shop owner")

        if target == sm.CONFIRMED:
            outbox += booking_intent(
                updated.customer_id,
                "Booking confirmed",
                f"Your {updated.service_name} on {_when(updated)} is confirmed.",
                updated.uid,
            )
        if updated.provider_id != actor_user_id:
            outbox += booking_intent(
                updated.provider_id,
                "Booking approved" if target == sm.CONFIRMED else "Booking awaiting your response",
                f"The shop approved booking {updated.uid} for {_when(updated)}.",
                updated.uid,
            )
        return updated

    def reassign_booking(self, ref: str, request: BookingReassignRequest) -> Booking:
        day = parse_booking_date(request.booking_date) if request.booking_date else None
        return self._run("reassign", lambda conn, outbox: self._reassign(conn, outbox, ref, request, day))

    def _reassign(
        self,
        conn: sqlite3.Connection,
        outbox: Outbox,
        ref: str,
        request: BookingReassignRequest,
        new_day: Optional[date],
    ) -> Booking:
        now = self.clock()
        booking = self.store.get(conn, ref)
        current = self.resolver.resolve_kind(conn, booking.provider_id, booking.provider_kind)
        shop_id = self._booking_shop_id(booking, current)
        actor_user_id = request.actor_user_id
        self._assert_shop_owner(conn, shop_id, actor_user_id)

        if request.provider_id == actor_user_id:
            new_provider = self.resolver.resolve_shop_owner(conn, actor_user_id, shop_id)
            target = sm.CONFIRMED
        else:
            new_provider = self.resolver.resolve(conn, request.provider_id)
            if new_provider.kind not in (STAFF, FREELANCER) or new_provider.shop_id != shop_id:
                raise BookingValidationError("The new provider must be staff or a freelancer of the booking's shop")
            target = sm.REASSIGNED
        sm.assert_source(sm.OWNER, booking.status, sm.REASSIGN_SOURCES, target)

        old_day = parse_booking_date(booking.booking_date)
        old_start = start_minute(booking.booking_time)
        day = new_day or old_day
        start = start_minute(request.booking_time) if request.booking_time else old_start
        duration = request.duration or booking.duration
        time_changed = (day, start, duration) != (old_day, old_start, booking.duration)
        provider_changed = new_provider.id != booking.provider_id
        if time_changed:
            self._assert_lead_time(day, start, now)
        if time_changed or (booking.service_type == "homeBased" and provider_changed):
            self._assert_within_hours(new_provider, booking.service_type, day, start, duration, self._booking_shop(conn, booking))
        key = resource_key(booking.service_type, booking.shop_id, new_provider.id)
        self.conflicts.assert_free(conn, key, day.isoformat(), start, duration, exclude_booking_id=booking.id)

        updated = self._transition(
            conn,
            booking,
            sm.OWNER,
            actor_user_id,
            target,
            {
                "provider_id": new_provider.id,
                "provider_name": new_provider.display_name(),
                "provider_kind": new_provider.kind,
                "booking_date": day.isoformat(),
                "start_minute": start,
                "duration": duration,
                "resource_key": key,
            },
            note=f"reassigned from {booking.provider_id} to {new_provider.id}",
        )

        if target == sm.CONFIRMED:
            outbox += booking_intent(
                updated.customer_id,
                "Booking confirmed",
                f"The shop will take care of your {updated.service_name} on {_when(updated)}.",
                updated.uid,
            )
        else:
            outbox += booking_intent(
                updated.customer_id,
                "Booking reassigned",
                f"{updated.provider_name} will handle your {updated.service_name} on {_when(updated)}.",
                updated.uid,
            )
            outbox += booking_intent(
                updated.provider_id,
                "Booking assigned to you",
                f"{updated.customer_name} booked {updated.service_name} on {_when(updated)}. Please accept or decline.",
                updated.uid,
            )
        return updated

    # customer

    def cancel_booking(self, ref: str, request: BookingCancelRequest) -> Booking:
        return self._run("cancel", lambda conn, outbox: self._cancel(conn, outbox, ref, request))

    def _cancel(self, conn: sqlite3.Connection, outbox: Outbox, ref: str, request: BookingCancelRequest) -> Booking:
        booking = self.store.get(conn, ref)
        if booking.customer_id != request.actor_user_id:
            raise BookingPermissionError("Only the booking's customer can cancel it")
        sm.assert_transition(sm.CUSTOMER, booking.status, sm.CANCELLED)
        reason = request.reason.strip()
        changes = {"cancellation_reason": reason or None}
        if booking.payment_status == "paid":
            try:
                refunded = self.payments.refund(booking, reason)
            except Exception as exc:
                raise BookingDependencyError(f"Refund request failed for booking {booking.uid}") from exc
            if refunded:
                changes["payment_status"] = "refunded"
        updated = self._transition(conn, booking, sm.CUSTOMER, request.actor_user_id, sm.CANCELLED, changes, reason or None)

        outbox += booking_intent(
            updated.customer_id,
            "Booking cancelled",
            f"Your {updated.service_name} on {_when(updated)} was cancelled.",
            updated.uid,
        )
        for user_id in self._provider_side(conn, updated):
            outbox += booking_intent(
                user_id,
                "Booking cancelled",
                f"{updated.customer_name} cancelled booking {updated.uid}" + (f": {reason}" if reason else "."),
                updated.uid,
            )
        return updated

    def update_booking(self, ref: str, request: BookingUpdateRequest) -> Booking:
        """Edit date, time or notes of a pending booking, by its customer or the shop owner."""
        new_day = parse_booking_date(request.booking_date) if request.booking_date else None
        return self._run("update", lambda conn, outbox: self._update(conn, outbox, ref, request, new_day))

    def _update(
        self,
        conn: sqlite3.Connection,
        outbox: Outbox,
        ref: str,
        request: BookingUpdateRequest,
        new_day: Optional[date],
    ) -> Booking:
        booking = self.store.get(conn, ref)
        provider = self.resolver.resolve_kind(conn, booking.provider_id, booking.provider_kind)
        actor_user_id = request.actor_user_id
        if actor_user_id == booking.customer_id:
            actor = sm.CUSTOMER
        else:
            self._assert_shop_owner(conn, self._booking_shop_id(booking, provider), actor_user_id)
            actor = sm.OWNER
        sm.assert_source(actor, booking.status, {sm.PENDING}, booking.status)

        old_day = parse_booking_date(booking.booking_date)
        old_start = start_minute(booking.booking_time)
        day = new_day or old_day
        start = start_minute(request.booking_time) if request.booking_time else old_start
        changes = {}
        if (day, start) != (old_day, old_start):
            self._assert_lead_time(day, start, self.clock())
            if self.store.customer_has_active_booking_at(
                conn, booking.customer_id, day.isoformat(), start, exclude_booking_id=booking.id
            ):
                raise DuplicateBookingError("Customer already has an active booking at this date and time")
            self._assert_within_hours(provider, booking.service_type, day, start, booking.duration, self._booking_shop(conn, booking))
            key = resource_key(booking.service_type, booking.shop_id, booking.provider_id)
            self.conflicts.assert_free(conn, key, day.isoformat(), start, booking.duration, exclude_booking_id=booking.id)
            changes.update({"booking_date": day.isoformat(), "start_minute": start})
        if request.notes is not None:
            changes["notes"] = request.notes.strip()
        if not changes:
            return booking

        updated = self.store.update(conn, booking.id, changes, self.clock())
        self.store.record_transition(
            conn, booking.id, actor_user_id, booking.status, updated.status, f"details updated by {actor}", self.clock()
        )
        logger.info("Booking %s updated by %s %s: %s", updated.uid, actor, actor_user_id, sorted(changes))

        body = f"Booking {updated.uid} for {updated.service_name} is now on {_when(updated)}."
        if actor == sm.CUSTOMER:
            recipients = self._provider_side(conn, updated)
        else:
            recipients = _unique([updated.customer_id, updated.provider_id if updated.provider_id != actor_user_id else None])
        for user_id in recipients:
            outbox += booking_intent(user_id, "Booking updated", body, updated.uid)
        return updated

    def rate_booking(self, ref: str, request: BookingRateRequest) -> Booking:
        return self._run("rate", lambda conn, outbox: self._rate(conn, outbox, ref, request))

    def _rate(self, conn: sqlite3.Connection, outbox: Outbox, ref: str, request: BookingRateRequest) -> Booking:
        booking = self.store.get(conn, ref)
        if booking.customer_id != request.actor_user_id:
            raise BookingPermissionError("Only the booking's customer can rate it")
        if booking.status != sm.COMPLETED:
            raise BookingConflictError("Only completed bookings can be rated")
        if booking.rating is not None:
            raise BookingConflictError("Booking has already been rated")
        updated = self.store.update(
            conn,
            booking.id,
            {"rating": request.rating, "review": request.review.strip() or None},
            self.clock(),
        )
        average, count = self.store.refresh_provider_rating(conn, updated.provider_id, updated.provider_kind)
        logger.info("Provider %s rating now %s over %s reviews", updated.provider_id, average, count)
        if updated.shop_id:
            self.store.refresh_shop_rating(conn, updated.shop_id)
        outbox += booking_intent(
            updated.provider_id,
            "New rating",
            f"{updated.customer_name} rated {updated.service_name} {request.rating}/5.",
            updated.uid,
        )
        return updated

    # external signals

    def complete_booking(self, ref: str, request: BookingFulfillmentRequest) -> Booking:
        return self._run("complete", lambda conn, outbox: self._fulfil(conn, outbox, ref, request.actor_user_id, sm.COMPLETED))

    def mark_no_show(self, ref: str, request: BookingFulfillmentRequest) -> Booking:
        return self._run("no-show", lambda conn, outbox: self._fulfil(conn, outbox, ref, request.actor_user_id, sm.NO_SHOW))

    def _fulfil(self, conn: sqlite3.Connection, outbox: Outbox, ref: str, actor_user_id: str, target: str) -> Booking:
        booking = self.store.get(conn, ref)
        if actor_user_id not in self._provider_side(conn, booking):
            raise BookingPermissionError("Only the booking's provider or shop owner can report fulfillment")
        updated = self._transition(conn, booking, sm.SYSTEM, actor_user_id, target, note=f"reported by {actor_user_id}")
        if target == sm.COMPLETED:
            body = f"Thanks for visiting! Rate your {updated.service_name} with {updated.provider_name}."
        else:
            body = f"You were marked as a no-show for {updated.service_name} on {_when(updated)}."
        outbox += booking_intent(updated.customer_id, "Booking " + ("completed" if target == sm.COMPLETED else "missed"), body, updated.uid)
        return updated

    def record_payment(self, ref: str, request: PaymentSignalRequest) -> Booking:
        return self._run("payment", lambda conn, outbox: self._record_payment(conn, outbox, ref, request))

    def _record_payment(self, conn: sqlite3.Connection, outbox: Outbox, ref: str, request: PaymentSignalRequest) -> Booking:
        booking = self.store.get(conn, ref)
        changes = {"payment_status": request.status}
        if request.payment_id:
            changes["payment_id"] = request.payment_id
        if request.status == "paid" and booking.status == sm.PENDING:
            updated = self._transition(conn, booking, sm.SYSTEM, "system", sm.CONFIRMED, changes, "payment received")
            outbox += booking_intent(
                updated.customer_id,
                "Payment received",
                f"Your {updated.service_name} on {_when(updated)} is paid and confirmed.",
                updated.uid,
            )
            for user_id in self._provider_side(conn, updated):
                outbox += booking_intent(user_id, "Booking paid", f"Booking {updated.uid} was paid and confirmed.", updated.uid)
            return updated
        updated = self.store.update(conn, booking.id, changes, self.clock())
        logger.info("Booking %s payment status %s", updated.uid, updated.payment_status)
        if request.status == "failed":
            outbox += [
                NotificationIntent(
                    user_id=updated.customer_id,
                    title="Payment failed",
                    body=f"We could not process payment for booking {updated.uid}.",
                    category="payment",
                    deep_link=f"booking:{updated.uid}",
                )
            ]
        return updated

    # reads

    def get_booking(self, ref: str) -> Booking:
        return self._read("get", lambda conn: self.store.get(conn, ref))

    def list_bookings(
        self,
        *,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        shop_id: Optional[str] = None,
        status: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> BookingPage:
        statuses = [value.strip() for value in (status or "").split(",") if value.strip()]
        unknown = sorted(set(statuses) - sm.ALL_STATUSES)
        if unknown:
            raise BookingValidationError(f"Unknown status filter: {', '.join(unknown)}")
        if date_from:
            date_from = parse_booking_date(date_from, "date_from").isoformat()
        if date_to:
            date_to = parse_booking_date(date_to, "date_to").isoformat()
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        items, total = self._read(
            "list",
            lambda conn: self.store.list(
                conn,
                customer_id=customer_id,
                provider_id=provider_id,
                shop_id=shop_id,
                statuses=statuses,
                date_from=date_from,
                date_to=date_to,
                offset=(page - 1) * limit,
                limit=limit,
            ),
        )
        pages = math.ceil(total / limit) if total else 0
        return BookingPage(
            items=items,
            total=total,
            page=page,
            limit=limit,
            pages=pages,
            has_next_page=page < pages,
            has_prev_page=page > 1,
        )

    def available_slots(
        self,
        provider_id: str,
        service_id: str,
        booking_date: str,
        service_type: Optional[str] = None,
    ) -> List[AvailableSlot]:
        day = parse_booking_date(booking_date)
        return self._read("available-slots", lambda conn: self._available_slots(conn, provider_id, service_id, day, service_type))

    def _available_slots(
        self,
        conn: sqlite3.Connection,
        provider_id: str,
        service_id: str,
        day: date,
        service_type: Optional[str],
    ) -> List[AvailableSlot]:
        service = self.directory.fetch_service(conn, service_id)
        provider = self.resolver.resolve(conn, provider_id)
        if service_type is None:
            prefers_shop = provider.is_shop_bound and "shopBased" in service.service_types
            service_type = "shopBased" if prefers_shop else "homeBased"
        if service_type not in service.service_types:
            raise BookingValidationError(f"Service {service.name} is not offered as {service_type}")
        shop: Optional[Shop] = None
        if service_type == "shopBased":
            if not provider.is_shop_bound:
                raise BookingValidationError("Shop-based services need a provider bound to a shop")
            shop = self.directory.fetch_shop(conn, provider.shop_id)

        earliest = self.clock() + LEAD_TIME
        if day < earliest.date():
            return []
        not_before = 0
        if day == earliest.date():
            not_before = earliest.hour * 60 + earliest.minute + (1 if earliest.second or earliest.microsecond else 0)

        window = self.schedule.window_for(provider, service_type, day, shop=shop)
        key = resource_key(service_type, shop.id if shop else None, provider.id)
        busy = self.conflicts.busy_intervals(conn, key, day.isoformat())
        return [
            AvailableSlot(
                booking_date=day.isoformat(),
                start_time=format_minutes(start),
                end_time=format_minutes(start + service.duration),
                booking_time=BookingTime(hour=start // 60, minute=start % 60),
            )
            for start in iter_free_slots(window, service.duration, busy, not_before=not_before)
        ]

    # remediation primitives

    def remediation_candidates(self, statuses: Iterable[str]) -> List[Booking]:
        return self._read("remediation-scan", lambda conn: self.store.list_by_status(conn, statuses))

    def auto_assign(self, booking_id: int, now: datetime, stale_after: timedelta) -> Optional[Booking]:
        return self._run("auto-assign", lambda conn, outbox: self._auto_assign(conn, outbox, booking_id, now, stale_after))

    def _auto_assign(
        self,
        conn: sqlite3.Connection,
        outbox: Outbox,
        booking_id: int,
        now: datetime,
        stale_after: timedelta,
    ) -> Optional[Booking]:
        booking = self.store.get_by_id(conn, booking_id)
        if booking.status != sm.PENDING or not booking.shop_id or booking.provider_kind != SHOP_OWNER:
            return None
        if now - datetime.fromisoformat(booking.created_at) < stale_after:
            return None

        day = parse_booking_date(booking.booking_date)
        start = start_minute(booking.booking_time)
        chosen: Optional[Provider] = None
        for staff_id in self.directory.list_shop_staff_ids(conn, booking.shop_id):
            staff = self.resolver.resolve_kind(conn, staff_id, STAFF)
            try:
                if self.schedule.excludes(staff, day, start, booking.duration):
                    continue
            except ScheduleLookupError:
                logger.warning("Skipping staff %s for booking %s: unreadable schedule", staff.id, booking.uid)
                continue
            # Home visits already on the staff member's own calendar.
            busy = self.conflicts.busy_intervals(conn, resource_key("homeBased", None, staff.id), booking.booking_date)
            if first_overlap(busy, start, booking.duration) is not None:
                continue
            chosen = staff
            break
        if chosen is None:
            logger.info("No staff available to auto-assign booking %s", booking.uid)
            return None

        owner_id = booking.provider_id
        updated = self._transition(
            conn,
            booking,
            sm.SYSTEM,
            "system",
            sm.ASSIGNED,
            {"provider_id": chosen.id, "provider_name": chosen.display_name(), "provider_kind": chosen.kind},
            note=f"auto-assigned from {owner_id}",
        )
        outbox += booking_intent(
            chosen.id,
            "New booking assigned",
            f"You were assigned {updated.service_name} for {updated.customer_name} on {_when(updated)}.",
            updated.uid,
        )
        outbox += booking_intent(
            updated.customer_id,
            "Staff assigned",
            f"{updated.provider_name} will handle your {updated.service_name} on {_when(updated)}.",
            updated.uid,
        )
        outbox += booking_intent(
            self.directory.shop_owner_id(conn, updated.shop_id),
            "Booking auto-assigned",
            f"Booking {updated.uid} was assigned to {updated.provider_name}.",
            updated.uid,
        )
        return updated

    def auto_reschedule(self, booking_id: int, now: datetime, stale_after: timedelta, shift: timedelta) -> Optional[Booking]:
        return self._run(
            "auto-reschedule",
            lambda conn, outbox: self._auto_reschedule(conn, outbox, booking_id, now, stale_after, shift),
        )

    def _auto_reschedule(
        self,
        conn: sqlite3.Connection,
        outbox: Outbox,
        booking_id: int,
        now: datetime,
        stale_after: timedelta,
        shift: timedelta,
    ) -> Optional[Booking]:
        booking = self.store.get_by_id(conn, booking_id)
        if booking.status not in sm.AUTO_RESCHEDULE_SOURCES:
            return None
        if now - datetime.fromisoformat(booking.created_at) < stale_after:
            return None

        shifted = _starts_at(parse_booking_date(booking.booking_date), start_minute(booking.booking_time)) + shift
        new_date = shifted.date().isoformat()
        new_start = shifted.hour * 60 + shifted.minute
        provider = self.resolver.resolve_kind(conn, booking.provider_id, booking.provider_kind)
        try:
            self._assert_within_hours(
                provider,
                booking.service_type,
                shifted.date(),
                new_start,
                booking.duration,
                self._booking_shop(conn, booking),
            )
        except OutsideWorkingHoursError as exc:
            logger.info("Auto-reschedule of %s deferred: %s", booking.uid, exc)
            return None
        key = resource_key(booking.service_type, booking.shop_id, booking.provider_id)
        busy = self.conflicts.busy_intervals(conn, key, new_date, exclude_booking_id=booking.id)
        if first_overlap(busy, new_start, booking.duration) is not None:
            logger.info("Auto-reschedule of %s deferred: %s %s is taken", booking.uid, new_date, format_minutes(new_start))
            return None

        updated = self._transition(
            conn,
            booking,
            sm.SYSTEM,
            "system",
            sm.RESCHEDULED,
            {"booking_date": new_date, "start_minute": new_start},
            note=f"auto-rescheduled from {_when(booking)}",
        )
        outbox += booking_intent(
            updated.customer_id,
            "Booking rescheduled",
            f"Your {updated.service_name} moved to {_when(updated)} while waiting for confirmation.",
            updated.uid,
        )
        for user_id in self._provider_side(conn, updated):
            outbox += booking_intent(
                user_id,
                "Booking rescheduled",
                f"Booking {updated.uid} moved to {_when(updated)}. Please respond.",
                updated.uid,
            )
        return updated


booking_lifecycle = BookingLifecycle(database, directory)
