import sqlite3
from contextlib import contextmanager
from datetime import datetime

import pytest
from pydantic import ValidationError

from chairbook.models import (
    BookingAcceptRequest,
    BookingApproveRequest,
    BookingCancelRequest,
    BookingFulfillmentRequest,
    BookingRateRequest,
    BookingReassignRequest,
    BookingRejectRequest,
    BookingTime,
    BookingUpdateRequest,
    Customer,
    PaymentSignalRequest,
    ProviderProfile,
    Service,
)
from chairbook.services.errors import (
    BookingConflictError,
    BookingDependencyError,
    BookingNotFoundError,
    BookingPermissionError,
    BookingValidationError,
    DuplicateBookingError,
    InvalidTransitionError,
    OutsideWorkingHoursError,
    ProviderNotFoundError,
    SlotUnavailableError,
)

from conftest import DAY, NOW, SUNDAY, week


def test_shop_slot_scenario_from_fourteen_hundred(engine):
    first = engine.book("owner_1", 14, 0, customer_id="cust_1")
    assert first.status == "pending"
    assert first.shop_id == "shop_1"
    assert first.uid.startswith("BK") and len(first.uid) == 12

    with pytest.raises(SlotUnavailableError):
        engine.book("owner_1", 14, 15, customer_id="cust_2")

    third = engine.book("owner_1", 14, 30, customer_id="cust_3")
    assert third.status == "pending"
    assert third.booking_time == BookingTime(hour=14, minute=30)


def test_shop_capacity_is_shared_across_staff(engine):
    engine.book("staff_1", 11, 0, customer_id="cust_1")
    with pytest.raises(SlotUnavailableError):
        engine.book("staff_2", 11, 0, customer_id="cust_2")


def test_home_visits_key_on_the_individual_provider(engine):
    engine.book("free_1", 11, 0, customer_id="cust_1", service_type="homeBased")
    engine.book("staff_1", 11, 0, customer_id="cust_2", service_type="homeBased")
    with pytest.raises(SlotUnavailableError):
        engine.book("free_1", 11, 15, customer_id="cust_3", service_type="homeBased")


def test_create_snapshots_service_and_names(engine):
    booking = engine.book("staff_1", 10, 0)
    engine.directory.upsert_service(Service(id="svc_cut", name="Premium cut", price=99.0, duration=60, service_types=["shopBased"]))
    engine.directory.upsert_customer(Customer(id="cust_1", name="Anastasia"))

    stored = engine.lifecycle.get_booking(booking.uid)
    assert (stored.service_name, stored.price, stored.duration) == ("Haircut", 25.0, 30)
    assert stored.customer_name == "Ana"
    assert stored.provider_name == "Sam"


def test_create_notifies_customer_and_provider_side(engine):
    booking = engine.book("staff_1", 10, 0)
    assert engine.titles_for("cust_1") == ["Booking received"]
    assert engine.titles_for("staff_1") == ["New booking request"]
    assert engine.titles_for("owner_1") == ["New booking request"]
    assert engine.payments.registered == [booking.uid]


def test_create_enforces_one_hour_lead_time(engine):
    with pytest.raises(BookingValidationError) as excinfo:
        engine.book("owner_1", 8, 30, booking_date="2026-03-02")
    assert "1 hour" in str(excinfo.value)
    assert engine.book("owner_1", 9, 0, booking_date="2026-03-02").status == "pending"


def test_create_rejects_duplicate_customer_slot(engine):
    engine.book("owner_1", 14, 0, customer_id="cust_1")
    with pytest.raises(DuplicateBookingError):
        engine.book("free_1", 14, 0, customer_id="cust_1", service_type="homeBased")


def test_create_rejects_outside_working_hours(engine):
    with pytest.raises(OutsideWorkingHoursError):
        engine.book("owner_1", 17, 45)
    with pytest.raises(OutsideWorkingHoursError):
        engine.book("owner_1", 12, 0, booking_date=SUNDAY)
    # Shop owner home visits follow the owner's own 10:00-16:00 week.
    with pytest.raises(OutsideWorkingHoursError):
        engine.book("owner_1", 9, 0, service_type="homeBased")


def test_create_rejects_self_booking_and_mode_mismatch(engine):
    engine.directory.upsert_customer(Customer(id="free_1", name="Finn"))
    with pytest.raises(BookingValidationError):
        engine.book("free_1", 12, 0, customer_id="free_1", service_type="homeBased")
    with pytest.raises(BookingValidationError):
        engine.book("free_1", 12, 0, service_type="shopBased")
    with pytest.raises(BookingValidationError):
        engine.book("staff_1", 12, 0, service_id="svc_home", service_type="shopBased")


def test_create_reports_missing_references(engine):
    with pytest.raises(ProviderNotFoundError):
        engine.book("ghost", 12, 0)
    with pytest.raises(BookingNotFoundError):
        engine.book("staff_1", 12, 0, service_id="svc_missing")
    with pytest.raises(BookingNotFoundError):
        engine.book("staff_1", 12, 0, customer_id="cust_missing")
    with pytest.raises(BookingValidationError):
        engine.book("staff_1", 12, 0, booking_date="03/03/2026")


def test_resolver_prefers_staff_registration(engine):
    engine.directory.upsert_provider(ProviderProfile(id="dual_1", kind="freelancer", name="Dee", schedule=week()))
    engine.directory.upsert_provider(ProviderProfile(id="dual_1", kind="staff", name="Dee", shop_id="shop_1", schedule=week()))
    booking = engine.book("dual_1", 12, 0)
    assert booking.provider_kind == "staff"
    assert booking.shop_id == "shop_1"


def test_inactive_provider_cannot_be_booked(engine):
    engine.directory.upsert_provider(ProviderProfile(id="staff_1", kind="staff", name="Sam", shop_id="shop_1", is_active=False))
    with pytest.raises(ProviderNotFoundError):
        engine.book("staff_1", 12, 0)


def test_accept_by_provider_confirms_and_appends_note(engine):
    booking = engine.book("staff_1", 10, 0)
    accepted = engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="staff_1", note="Bring photo"))
    assert accepted.status == "confirmed"
    assert accepted.notes == "Bring photo"
    assert "Booking confirmed" in engine.titles_for("cust_1")
    assert "Booking accepted" in engine.titles_for("owner_1")


def test_accept_permissions(engine):
    booking = engine.book("staff_1", 10, 0)
    with pytest.raises(BookingPermissionError):
        engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="staff_2"))
    accepted = engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="owner_1"))
    assert accepted.status == "confirmed"
    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="staff_1"))


def test_owner_takes_over_staff_rejection_through_reassign_only(engine):
    booking = engine.book("staff_1", 10, 0)
    engine.lifecycle.reject_booking(booking.uid, BookingRejectRequest(actor_user_id="staff_1", reason="Off sick"))

    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="owner_1"))

    stored = engine.lifecycle.get_booking(booking.uid)
    assert (stored.status, stored.provider_id) == ("rejected_barber", "staff_1")
    assert "Booking confirmed" not in engine.titles_for("cust_1")


def test_accept_after_rejection_rechecks_the_slot(engine):
    booking = engine.book("staff_1", 10, 0, customer_id="cust_1")
    engine.lifecycle.reject_booking(booking.uid, BookingRejectRequest(actor_user_id="staff_1", reason="Double shift"))
    engine.book("staff_2", 10, 0, customer_id="cust_2")

    with pytest.raises(SlotUnavailableError):
        engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="staff_1"))
    assert engine.lifecycle.get_booking(booking.uid).status == "rejected_barber"


def test_reject_requires_reason(engine):
    booking = engine.book("staff_1", 10, 0)
    with pytest.raises(ValidationError):
        BookingRejectRequest(actor_user_id="staff_1", reason="")
    with pytest.raises(BookingValidationError):
        engine.lifecycle.reject_booking(booking.uid, BookingRejectRequest(actor_user_id="staff_1", reason="   "))


def test_staff_rejection_goes_to_owner_not_customer(engine):
    booking = engine.book("staff_1", 10, 0)
    engine.lifecycle.reject_booking(booking.uid, BookingRejectRequest(actor_user_id="staff_1", reason="Off sick"))
    assert "Booking needs reassignment" in engine.titles_for("owner_1")
    assert "Booking declined" not in engine.titles_for("cust_1")


def test_owner_rejecting_for_staff_is_an_owner_rejection(engine):
    booking = engine.book("staff_1", 10, 0)
    rejected = engine.lifecycle.reject_booking(booking.uid, BookingRejectRequest(actor_user_id="owner_1", reason="Closed early"))
    assert rejected.status == "shop_owner_rejected"
    assert "Booking declined" in engine.titles_for("cust_1")


def test_approve_shop_booking_confirms_and_is_idempotent(engine):
    booking = engine.book("owner_1", 14, 0)
    approved = engine.lifecycle.approve_booking(booking.uid, BookingApproveRequest(actor_user_id="owner_1"))
    assert approved.status == "confirmed"
    again = engine.lifecycle.approve_booking(booking.uid, BookingApproveRequest(actor_user_id="owner_1"))
    assert again.status == "confirmed"
    assert again.updated_at == approved.updated_at


def test_approve_requires_shop_ownership_and_approvable_status(engine):
    booking = engine.book("staff_1", 10, 0)
    with pytest.raises(BookingPermissionError):
        engine.lifecycle.approve_booking(booking.uid, BookingApproveRequest(actor_user_id="staff_1"))
    engine.set_status(booking, "assigned")
    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.approve_booking(booking.uid, BookingApproveRequest(actor_user_id="owner_1"))
    engine.set_status(booking, "rejected_barber")
    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.approve_booking(booking.uid, BookingApproveRequest(actor_user_id="owner_1"))


def test_approve_home_visit_forwards_by_provider_kind(engine):
    engine.directory.upsert_provider(ProviderProfile(id="free_2", kind="freelancer", name="Fay", shop_id="shop_1", schedule=week()))
    freelancer_booking = engine.book("free_2", 10, 0, service_type="homeBased")
    staff_booking = engine.book("staff_1", 10, 0, customer_id="cust_2", service_type="homeBased")

    forwarded = engine.lifecycle.approve_booking(freelancer_booking.uid, BookingApproveRequest(actor_user_id="owner_1"))
    retained = engine.lifecycle.approve_booking(staff_booking.uid, BookingApproveRequest(actor_user_id="owner_1"))

    assert forwarded.status == "assigned"
    assert retained.status == "pending"
    assert "Booking awaiting your response" in engine.titles_for("free_2")


def test_reassign_rejected_booking_to_other_staff(engine):
    booking = engine.book("staff_1", 10, 0)
    engine.lifecycle.reject_booking(booking.uid, BookingRejectRequest(actor_user_id="staff_1", reason="Off sick"))

    reassigned = engine.lifecycle.reassign_booking(
        booking.uid, BookingReassignRequest(actor_user_id="owner_1", provider_id="staff_2")
    )

    assert reassigned.status == "reassigned"
    assert (reassigned.provider_id, reassigned.provider_name, reassigned.provider_kind) == ("staff_2", "Tia", "staff")
    assert "Booking assigned to you" in engine.titles_for("staff_2")
    assert "Booking reassigned" in engine.titles_for("cust_1")

    confirmed = engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="staff_2"))
    assert confirmed.status == "confirmed"


def test_reassign_to_self_confirms(engine):
    booking = engine.book("staff_1", 10, 0)
    reassigned = engine.lifecycle.reassign_booking(
        booking.uid, BookingReassignRequest(actor_user_id="owner_1", provider_id="owner_1")
    )
    assert reassigned.status == "confirmed"
    assert reassigned.provider_kind == "shopOwner"


def test_reassign_validates_owner_provider_time_and_status(engine):
    booking = engine.book("staff_1", 10, 0, customer_id="cust_1")
    engine.book("staff_2", 11, 0, customer_id="cust_2")

    with pytest.raises(BookingPermissionError):
        engine.lifecycle.reassign_booking(booking.uid, BookingReassignRequest(actor_user_id="staff_2", provider_id="staff_2"))
    with pytest.raises(BookingValidationError):
        engine.lifecycle.reassign_booking(booking.uid, BookingReassignRequest(actor_user_id="owner_1", provider_id="free_1"))
    with pytest.raises(SlotUnavailableError):
        engine.lifecycle.reassign_booking(
            booking.uid,
            BookingReassignRequest(actor_user_id="owner_1", provider_id="staff_2", booking_time=BookingTime(hour=11, minute=15)),
        )
    with pytest.raises(OutsideWorkingHoursError):
        engine.lifecycle.reassign_booking(
            booking.uid,
            BookingReassignRequest(actor_user_id="owner_1", provider_id="staff_2", booking_time=BookingTime(hour=17, minute=45)),
        )

    moved = engine.lifecycle.reassign_booking(
        booking.uid,
        BookingReassignRequest(
            actor_user_id="owner_1",
            provider_id="staff_2",
            booking_time=BookingTime(hour=12, minute=0),
            duration=45,
        ),
    )
    assert moved.booking_time == BookingTime(hour=12, minute=0)
    assert moved.duration == 45

    engine.set_status(moved, "confirmed")
    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.reassign_booking(booking.uid, BookingReassignRequest(actor_user_id="owner_1", provider_id="staff_1"))


def test_cancel_pending_frees_slot_and_notifies_both_sides(engine):
    booking = engine.book("owner_1", 14, 0, customer_id="cust_1")
    with pytest.raises(BookingPermissionError):
        engine.lifecycle.cancel_booking(booking.uid, BookingCancelRequest(actor_user_id="cust_2"))

    cancelled = engine.lifecycle.cancel_booking(booking.uid, BookingCancelRequest(actor_user_id="cust_1", reason="Plans changed"))

    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "Plans changed"
    assert "Booking cancelled" in engine.titles_for("cust_1")
    assert "Booking cancelled" in engine.titles_for("owner_1")
    assert engine.book("owner_1", 14, 0, customer_id="cust_2").status == "pending"


def test_cancel_paid_booking_requests_refund(engine):
    booking = engine.book("owner_1", 14, 0)
    with engine.db.transaction() as conn:
        conn.execute("UPDATE bookings SET payment_status = 'paid', payment_id = 'pay_1' WHERE id = ?", (booking.id,))

    cancelled = engine.lifecycle.cancel_booking(booking.uid, BookingCancelRequest(actor_user_id="cust_1", reason="Sick"))

    assert cancelled.payment_status == "refunded"
    assert engine.payments.refunds == [(booking.uid, "Sick")]


def test_cancel_keeps_paid_status_when_refund_is_not_complete(engine):
    engine.payments.refund_result = False
    booking = engine.book("owner_1", 14, 0)
    with engine.db.transaction() as conn:
        conn.execute("UPDATE bookings SET payment_status = 'paid' WHERE id = ?", (booking.id,))
    cancelled = engine.lifecycle.cancel_booking(booking.uid, BookingCancelRequest(actor_user_id="cust_1"))
    assert cancelled.status == "cancelled"
    assert cancelled.payment_status == "paid"


def test_customer_moves_pending_booking_and_provider_side_hears(engine):
    booking = engine.book("staff_1", 10, 0, customer_id="cust_1")

    updated = engine.lifecycle.update_booking(
        booking.uid,
        BookingUpdateRequest(actor_user_id="cust_1", booking_time=BookingTime(hour=11, minute=0), notes="  Running late  "),
    )

    assert (updated.status, updated.booking_time, updated.notes) == ("pending", BookingTime(hour=11, minute=0), "Running late")
    assert "Booking updated" in engine.titles_for("staff_1")
    assert "Booking updated" in engine.titles_for("owner_1")
    assert "Booking updated" not in engine.titles_for("cust_1")
    assert engine.book("staff_2", 10, 0, customer_id="cust_2").status == "pending"
    with engine.db.reader() as conn:
        history = engine.lifecycle.store.history(conn, booking.id)
    assert (history[-1]["from_status"], history[-1]["to_status"]) == ("pending", "pending")


def test_owner_moves_booking_to_another_day_and_customer_hears(engine):
    booking = engine.book("staff_1", 10, 0, customer_id="cust_1")

    updated = engine.lifecycle.update_booking(
        booking.uid,
        BookingUpdateRequest(actor_user_id="owner_1", booking_date="2026-03-04", booking_time=BookingTime(hour=12, minute=30)),
    )

    assert (updated.booking_date, updated.booking_time) == ("2026-03-04", BookingTime(hour=12, minute=30))
    assert "Booking updated" in engine.titles_for("cust_1")
    assert "Booking updated" in engine.titles_for("staff_1")
    assert "Booking updated" not in engine.titles_for("owner_1")


def test_update_is_limited_to_customer_or_shop_owner_while_pending(engine):
    booking = engine.book("staff_1", 10, 0, customer_id="cust_1")
    for outsider in ("cust_2", "staff_1"):
        with pytest.raises(BookingPermissionError):
            engine.lifecycle.update_booking(booking.uid, BookingUpdateRequest(actor_user_id=outsider, notes="Hi"))

    engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="staff_1"))
    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.update_booking(booking.uid, BookingUpdateRequest(actor_user_id="cust_1", notes="Too late"))
    assert engine.lifecycle.get_booking(booking.uid).notes == ""


def test_update_rechecks_lead_time_hours_and_conflicts(engine):
    booking = engine.book("staff_1", 10, 0, customer_id="cust_1")
    engine.book("staff_2", 13, 0, customer_id="cust_2")

    with pytest.raises(BookingValidationError):
        engine.lifecycle.update_booking(
            booking.uid,
            BookingUpdateRequest(actor_user_id="cust_1", booking_date="2026-03-02", booking_time=BookingTime(hour=8, minute=30)),
        )
    with pytest.raises(OutsideWorkingHoursError):
        engine.lifecycle.update_booking(booking.uid, BookingUpdateRequest(actor_user_id="cust_1", booking_time=BookingTime(hour=17, minute=45)))
    with pytest.raises(OutsideWorkingHoursError):
        engine.lifecycle.update_booking(booking.uid, BookingUpdateRequest(actor_user_id="cust_1", booking_date=SUNDAY))
    with pytest.raises(SlotUnavailableError):
        engine.lifecycle.update_booking(booking.uid, BookingUpdateRequest(actor_user_id="cust_1", booking_time=BookingTime(hour=13, minute=15)))

    stored = engine.lifecycle.get_booking(booking.uid)
    assert (stored.booking_date, stored.booking_time) == (DAY, BookingTime(hour=10, minute=0))


def test_update_rejects_moving_onto_customers_other_booking(engine):
    booking = engine.book("staff_1", 10, 0, customer_id="cust_1")
    engine.book("free_1", 12, 0, customer_id="cust_1", service_type="homeBased")
    with pytest.raises(DuplicateBookingError):
        engine.lifecycle.update_booking(booking.uid, BookingUpdateRequest(actor_user_id="cust_1", booking_time=BookingTime(hour=12, minute=0)))


def test_update_without_changes_returns_booking_untouched(engine):
    booking = engine.book("staff_1", 10, 0, customer_id="cust_1")
    same = engine.lifecycle.update_booking(
        booking.uid, BookingUpdateRequest(actor_user_id="cust_1", booking_time=BookingTime(hour=10, minute=0))
    )
    assert same.updated_at == booking.updated_at
    assert "Booking updated" not in engine.titles_for("staff_1")


def _completed_booking(engine, customer_id: str, hour: int):
    booking = engine.book("staff_1", hour, 0, customer_id=customer_id)
    engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="staff_1"))
    return engine.lifecycle.complete_booking(booking.uid, BookingFulfillmentRequest(actor_user_id="staff_1"))


def test_rating_aggregates_provider_and_shop(engine):
    scores = [("cust_1", 10, 5), ("cust_2", 11, 3), ("cust_3", 12, 4)]
    for customer_id, hour, score in scores:
        booking = _completed_booking(engine, customer_id, hour)
        assert booking.status == "completed"
        engine.lifecycle.rate_booking(booking.uid, BookingRateRequest(actor_user_id=customer_id, rating=score, review="ok"))

    staff = engine.directory.get_provider_profile("staff_1", "staff")
    shop = engine.directory.get_shop("shop_1")
    assert (staff.rating, staff.review_count) == (4.0, 3)
    assert (shop.rating, shop.review_count) == (4.0, 3)


def test_rating_rules(engine):
    pending = engine.book("staff_1", 9, 0, customer_id="cust_2")
    with pytest.raises(BookingConflictError):
        engine.lifecycle.rate_booking(pending.uid, BookingRateRequest(actor_user_id="cust_2", rating=5))

    booking = _completed_booking(engine, "cust_1", 10)
    with pytest.raises(BookingPermissionError):
        engine.lifecycle.rate_booking(booking.uid, BookingRateRequest(actor_user_id="cust_2", rating=5))
    engine.lifecycle.rate_booking(booking.uid, BookingRateRequest(actor_user_id="cust_1", rating=2))
    with pytest.raises(BookingConflictError):
        engine.lifecycle.rate_booking(booking.uid, BookingRateRequest(actor_user_id="cust_1", rating=5))
    with pytest.raises(ValidationError):
        BookingRateRequest(actor_user_id="cust_1", rating=6)


def test_fulfillment_only_from_confirmed(engine):
    booking = engine.book("staff_1", 10, 0)
    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.complete_booking(booking.uid, BookingFulfillmentRequest(actor_user_id="staff_1"))
    with pytest.raises(BookingPermissionError):
        engine.lifecycle.mark_no_show(booking.uid, BookingFulfillmentRequest(actor_user_id="cust_1"))
    engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="staff_1"))
    missed = engine.lifecycle.mark_no_show(booking.uid, BookingFulfillmentRequest(actor_user_id="owner_1"))
    assert missed.status == "noShow"


def test_payment_success_confirms_pending_booking(engine):
    booking = engine.book("owner_1", 14, 0)
    paid = engine.lifecycle.record_payment(booking.uid, PaymentSignalRequest(status="paid", payment_id="pay_42"))
    assert paid.status == "confirmed"
    assert (paid.payment_status, paid.payment_id) == ("paid", "pay_42")
    assert "Payment received" in engine.titles_for("cust_1")


def test_payment_failure_only_updates_payment_status(engine):
    booking = engine.book("owner_1", 14, 0)
    failed = engine.lifecycle.record_payment(str(booking.id), PaymentSignalRequest(status="failed"))
    assert failed.status == "pending"
    assert failed.payment_status == "failed"
    assert engine.notifications.list_for_user("cust_1")[0].category == "payment"


def test_get_booking_by_id_or_uid(engine):
    booking = engine.book("owner_1", 14, 0)
    assert engine.lifecycle.get_booking(str(booking.id)).uid == booking.uid
    assert engine.lifecycle.get_booking(booking.uid.lower()).id == booking.id
    with pytest.raises(BookingNotFoundError):
        engine.lifecycle.get_booking("BK0000000000")


def test_list_bookings_filters_and_paginates(engine):
    engine.book("owner_1", 10, 0, customer_id="cust_1")
    engine.clock.advance(minutes=1)
    engine.book("owner_1", 11, 0, customer_id="cust_1")
    engine.clock.advance(minutes=1)
    latest = engine.book("owner_1", 12, 0, customer_id="cust_1")
    engine.book("free_1", 12, 0, customer_id="cust_2", service_type="homeBased")

    first_page = engine.lifecycle.list_bookings(customer_id="cust_1", limit=2)
    assert (first_page.total, first_page.pages, first_page.has_next_page, first_page.has_prev_page) == (3, 2, True, False)
    assert first_page.items[0].uid == latest.uid

    second_page = engine.lifecycle.list_bookings(customer_id="cust_1", limit=2, page=2)
    assert len(second_page.items) == 1
    assert second_page.has_prev_page and not second_page.has_next_page

    assert engine.lifecycle.list_bookings(shop_id="shop_1", status="pending,confirmed").total == 3
    assert engine.lifecycle.list_bookings(provider_id="free_1").total == 1
    assert engine.lifecycle.list_bookings(date_from="2026-03-04").total == 0
    assert engine.lifecycle.list_bookings(limit=500).limit == 100
    with pytest.raises(BookingValidationError):
        engine.lifecycle.list_bookings(status="archived")


def test_available_slots_follow_schedule_bookings_and_lead_time(engine):
    slots = engine.lifecycle.available_slots("owner_1", "svc_cut", DAY)
    assert len(slots) == 18
    assert (slots[0].start_time, slots[-1].start_time, slots[-1].end_time) == ("09:00", "17:30", "18:00")

    engine.book("owner_1", 14, 0)
    after = [slot.start_time for slot in engine.lifecycle.available_slots("owner_1", "svc_cut", DAY)]
    assert "14:00" not in after and len(after) == 17

    home = engine.lifecycle.available_slots("owner_1", "svc_cut", DAY, service_type="homeBased")
    assert (home[0].start_time, home[-1].start_time) == ("10:00", "15:30")

    engine.clock.now = datetime(2026, 3, 2, 10, 10)
    today = engine.lifecycle.available_slots("owner_1", "svc_cut", "2026-03-02")
    assert today[0].start_time == "11:30"
    assert engine.lifecycle.available_slots("owner_1", "svc_cut", "2026-03-01") == []


def test_history_records_each_transition(engine):
    booking = engine.book("staff_1", 10, 0)
    engine.lifecycle.accept_booking(booking.uid, BookingAcceptRequest(actor_user_id="staff_1"))
    with engine.db.reader() as conn:
        history = engine.lifecycle.store.history(conn, booking.id)
    assert [(row["from_status"], row["to_status"]) for row in history] == [("none", "pending"), ("pending", "confirmed")]


def test_notification_failure_never_rolls_back(engine, monkeypatch):
    def broken_create(**_):
        raise RuntimeError("push gateway down")

    monkeypatch.setattr(engine.notifications, "create", broken_create)
    booking = engine.book("owner_1", 14, 0)
    assert engine.lifecycle.get_booking(booking.uid).status == "pending"


def test_storage_contention_is_retried_then_surfaced(engine, monkeypatch):
    calls = []

    @contextmanager
    def locked():
        calls.append(1)
        raise sqlite3.OperationalError("database is locked")
        yield  # pragma: no cover

    monkeypatch.setattr(engine.db, "transaction", locked)
    with pytest.raises(BookingDependencyError):
        engine.book("owner_1", 14, 0)
    assert len(calls) == engine.lifecycle.retry_attempts


def test_storage_contention_recovers_on_retry(engine, monkeypatch):
    real_transaction = engine.db.transaction
    calls = []

    @contextmanager
    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        with real_transaction() as conn:
            yield conn

    monkeypatch.setattr(engine.db, "transaction", flaky)
    booking = engine.book("owner_1", 14, 0)
    assert booking.status == "pending"
    assert len(calls) == 2


def test_store_maps_only_the_active_slot_index_to_slot_unavailable(engine):
    first = engine.book("staff_1", 10, 0, customer_id="cust_1")
    second = engine.book("staff_2", 11, 0, customer_id="cust_2")

    with pytest.raises(SlotUnavailableError):
        with engine.db.transaction() as conn:
            engine.lifecycle.store.update(conn, second.id, {"start_minute": 600}, NOW)
    with pytest.raises(sqlite3.IntegrityError):
        with engine.db.transaction() as conn:
            engine.lifecycle.store.update(conn, first.id, {"start_minute": 1500}, NOW)

    assert engine.lifecycle.get_booking(second.uid).booking_time == BookingTime(hour=11, minute=0)
