import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from chairbook.models import Booking, RemediationReport
from chairbook.services import state_machine as sm
from chairbook.services.errors import BookingError
from chairbook.services.lifecycle import BookingLifecycle, booking_lifecycle

logger = logging.getLogger(__name__)

AUTO_ASSIGN_AFTER = timedelta(minutes=10)
AUTO_RESCHEDULE_AFTER = timedelta(minutes=30)
RESCHEDULE_SHIFT = timedelta(minutes=30)
REMEDIATION_INTERVAL_SECONDS = float(os.getenv("REMEDIATION_INTERVAL_SECONDS", "300"))
REMEDIATION_ENABLED = os.getenv("REMEDIATION_ENABLED", "true").lower() in {"1", "true", "yes"}


def _age(booking: Booking, now: datetime) -> timedelta:
    return now - datetime.fromisoformat(booking.created_at)


class RemediationScheduler:
    """Periodic sweep over stale bookings.

    Auto-assignment runs before auto-reschedule in every pass. Each booking
    is handled in its own transaction through the lifecycle primitives, so a
    failure on one booking is logged and the pass moves on.
    """

    def __init__(
        self,
        lifecycle: BookingLifecycle,
        interval_seconds: float = REMEDIATION_INTERVAL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self.clock = clock or lifecycle.clock

    def run_once(self, now: Optional[datetime] = None) -> RemediationReport:
        now = now or self.clock()
        report = RemediationReport(ran_at=now.isoformat())
        self._auto_assign_pass(now, report)
        self._auto_reschedule_pass(now, report)
        if report.assigned or report.rescheduled or report.failed:
            logger.info(
                "Remediation pass: assigned=%s rescheduled=%s skipped=%s failed=%s",
                len(report.assigned),
                len(report.rescheduled),
                len(report.skipped),
                len(report.failed),
            )
        return report

    def _auto_assign_pass(self, now: datetime, report: RemediationReport) -> None:
        candidates = [
            booking
            for booking in self.lifecycle.remediation_candidates([sm.PENDING])
            if booking.shop_id and booking.provider_kind == "shopOwner" and _age(booking, now) >= AUTO_ASSIGN_AFTER
        ]
        self._apply(
            candidates,
            report.assigned,
            report,
            lambda booking: self.lifecycle.auto_assign(booking.id, now, AUTO_ASSIGN_AFTER),
            "auto-assign",
        )

    def _auto_reschedule_pass(self, now: datetime, report: RemediationReport) -> None:
        candidates = [
            booking
            for booking in self.lifecycle.remediation_candidates(sorted(sm.AUTO_RESCHEDULE_SOURCES))
            if _age(booking, now) >= AUTO_RESCHEDULE_AFTER
        ]
        self._apply(
            candidates,
            report.rescheduled,
            report,
            lambda booking: self.lifecycle.auto_reschedule(booking.id, now, AUTO_RESCHEDULE_AFTER, RESCHEDULE_SHIFT),
            "auto-reschedule",
        )

    def _apply(
        self,
        candidates: List[Booking],
        applied: List[str],
        report: RemediationReport,
        step: Callable[[Booking], Optional[Booking]],
        label: str,
    ) -> None:
        for booking in candidates:
            try:
                result = step(booking)
            except BookingError as exc:
                logger.warning("%s skipped booking %s: %s", label, booking.uid, exc)
                report.skipped.append(booking.uid)
                continue
            except Exception:
                logger.exception("%s failed for booking %s", label, booking.uid)
                report.failed.append(booking.uid)
                continue
            if result is None:
                report.skipped.append(booking.uid)
            else:
                applied.append(booking.uid)

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        logger.info("Remediation loop started (every %ss)", self.interval_seconds)
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("Remediation pass crashed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Remediation loop stopped")


remediation_scheduler = RemediationScheduler(booking_lifecycle)
