import sqlite3
from dataclasses import dataclass
from typing import Iterable, List, Optional

from chairbook.services.database import ACTIVE_STATUS_SQL
from chairbook.services.errors import SlotUnavailableError
from chairbook.services.schedule import format_minutes


@dataclass(frozen=True)
class BusyInterval:
    start: int
    end: int
    booking_id: Optional[int] = None


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and a_end > b_start


def resource_key(service_type: str, shop_id: Optional[str], provider_id: str) -> str:
    """Shop capacity is the constrained resource for shop-based work, the provider otherwise."""
    if service_type == "shopBased" and shop_id:
        return f"shop:{shop_id}"
    return f"provider:{provider_id}"


def first_overlap(busy: Iterable[BusyInterval], start: int, duration: int) -> Optional[BusyInterval]:
    end = start + duration
    for interval in busy:
        if overlaps(start, end, interval.start, interval.end):
            return interval
    return None


class ConflictDetector:
    def busy_intervals(
        self,
        conn: sqlite3.Connection,
        key: str,
        booking_date: str,
        exclude_booking_id: Optional[int] = None,
    ) -> List[BusyInterval]:
        rows = conn.execute(
            f"""
            SELECT id, start_minute, duration FROM bookings
            WHERE resource_key = ? AND booking_date = ? AND status IN {ACTIVE_STATUS_SQL}
            ORDER BY start_minute
            """,
            (key, booking_date),
        ).fetchall()
        return [
            BusyInterval(start=int(row["start_minute"]), end=int(row["start_minute"]) + int(row["duration"]), booking_id=int(row["id"]))
            for row in rows
            if exclude_booking_id is None or int(row["id"]) != exclude_booking_id
        ]

    def assert_free(
        self,
        conn: sqlite3.Connection,
        key: str,
        booking_date: str,
        start: int,
        duration: int,
        exclude_booking_id: Optional[int] = None,
    ) -> None:
        clash = first_overlap(self.busy_intervals(conn, key, booking_date, exclude_booking_id), start, duration)
        if clash is not None:
            raise SlotUnavailableError(
                f"Slot {booking_date} {format_minutes(start)} overlaps an existing booking "
                f"({format_minutes(clash.start)}-{format_minutes(clash.end)})"
            )


conflict_detector = ConflictDetector()
