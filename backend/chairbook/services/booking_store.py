import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from chairbook.models import Booking, BookingAddress, BookingTime
from chairbook.services.database import ACTIVE_STATUS_SQL
from chairbook.services.errors import BookingNotFoundError, SlotUnavailableError

_UPDATABLE_COLUMNS = {
    "provider_id",
    "provider_name",
    "provider_kind",
    "booking_date",
    "start_minute",
    "duration",
    "resource_key",
    "status",
    "notes",
    "cancellation_reason",
    "reject_reason",
    "rating",
    "review",
    "payment_status",
    "payment_id",
}


def generate_uid() -> str:
    return f"BK{uuid4().hex[:10].upper()}"


def _translate_integrity_error(exc: sqlite3.IntegrityError) -> Exception:
    message = str(exc)
    # Only the active-slot index maps to a taken slot; CHECK failures stay integrity errors.
    if "UNIQUE constraint failed" in message and "bookings.resource_key" in message:
        return SlotUnavailableError("Slot was taken by a concurrent booking")
    return exc


class BookingStore:
    """Row mapping and queries for ``bookings``; callers own the transaction."""

    def row_to_booking(self, row: sqlite3.Row) -> Booking:
        start = int(row["start_minute"])
        address = json.loads(row["address_json"]) if row["address_json"] else None
        return Booking(
            id=int(row["id"]),
            uid=row["uid"],
            customer_id=row["customer_id"],
            customer_name=row["customer_name"],
            provider_id=row["provider_id"],
            provider_name=row["provider_name"],
            provider_kind=row["provider_kind"],
            shop_id=row["shop_id"],
            service_id=row["service_id"],
            service_name=row["service_name"],
            service_type=row["service_type"],
            price=float(row["price"]),
            duration=int(row["duration"]),
            booking_date=row["booking_date"],
            booking_time=BookingTime(hour=start // 60, minute=start % 60),
            status=row["status"],
            address=BookingAddress(**address) if address else None,
            notes=row["notes"] or "",
            cancellation_reason=row["cancellation_reason"],
            reject_reason=row["reject_reason"],
            rating=row["rating"],
            review=row["review"],
            payment_status=row["payment_status"],
            payment_id=row["payment_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert(self, conn: sqlite3.Connection, values: Dict[str, Any]) -> Booking:
        row = dict(values)
        row.setdefault("uid", generate_uid())
        address = row.pop("address", None)
        row["address_json"] = json.dumps(address) if address else None
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        try:
            cursor = conn.execute(f"INSERT INTO bookings ({columns}) VALUES ({placeholders})", tuple(row.values()))
        except sqlite3.IntegrityError as exc:
            raise _translate_integrity_error(exc) from exc
        return self.get_by_id(conn, int(cursor.lastrowid))

    def update(self, conn: sqlite3.Connection, booking_id: int, changes: Dict[str, Any], now: datetime) -> Booking:
        unknown = set(changes) - _UPDATABLE_COLUMNS
        if unknown:
            raise KeyError(f"Columns are not updatable: {', '.join(sorted(unknown))}")
        assignments = ", ".join(f"{column} = ?" for column in changes)
        params = [*changes.values(), now.isoformat(), booking_id]
        try:
            conn.execute(f"UPDATE bookings SET {assignments}, updated_at = ? WHERE id = ?", params)
        except sqlite3.IntegrityError as exc:
            raise _translate_integrity_error(exc) from exc
        return self.get_by_id(conn, booking_id)

    def record_transition(
        self,
        conn: sqlite3.Connection,
        booking_id: int,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: Optional[str],
        now: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"bsh_{uuid4().hex[:10]}", booking_id, actor_user_id, from_status, to_status, note, now.isoformat()),
        )

    def history(self, conn: sqlite3.Connection, booking_id: int) -> List[Dict[str, Any]]:
        rows = conn.execute(
            "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at, rowid",
            (booking_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def get_by_id(self, conn: sqlite3.Connection, booking_id: int) -> Booking:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise BookingNotFoundError("Booking not found")
        return self.row_to_booking(row)

    def get(self, conn: sqlite3.Connection, ref: str) -> Booking:
        """Look a booking up by storage id (all digits) or public uid."""
        ref = str(ref).strip()
        if ref.isdigit():
            return self.get_by_id(conn, int(ref))
        row = conn.execute("SELECT * FROM bookings WHERE uid = ?", (ref.upper(),)).fetchone()
        if not row:
            raise BookingNotFoundError("Booking not found")
        return self.row_to_booking(row)

    def customer_has_active_booking_at(
        self,
        conn: sqlite3.Connection,
        customer_id: str,
        booking_date: str,
        start_minute: int,
        exclude_booking_id: Optional[int] = None,
    ) -> bool:
        row = conn.execute(
            f"""
            SELECT 1 FROM bookings
            WHERE customer_id = ? AND booking_date = ? AND start_minute = ? AND status IN {ACTIVE_STATUS_SQL}
              AND id != ?
            LIMIT 1
            """,
            (customer_id, booking_date, start_minute, exclude_booking_id if exclude_booking_id is not None else -1),
        ).fetchone()
        return row is not None

    def list(
        self,
        conn: sqlite3.Connection,
        *,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        shop_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Booking], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if customer_id:
            clauses.append("customer_id = ?")
            params.append(customer_id)
        if provider_id:
            clauses.append("provider_id = ?")
            params.append(provider_id)
        if shop_id:
            clauses.append("shop_id = ?")
            params.append(shop_id)
        status_list = list(statuses or [])
        if status_list:
            clauses.append(f"status IN ({', '.join('?' for _ in status_list)})")
            params.extend(status_list)
        if date_from:
            clauses.append("booking_date >= ?")
            params.append(date_from)
        if date_to:
            clauses.append("booking_date <= ?")
            params.append(date_to)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        total = int(conn.execute(f"SELECT COUNT(*) AS total FROM bookings{where}", tuple(params)).fetchone()["total"])
        rows = conn.execute(
            f"SELECT * FROM bookings{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ).fetchall()
        return [self.row_to_booking(row) for row in rows], total

    def list_by_status(self, conn: sqlite3.Connection, statuses: Iterable[str]) -> List[Booking]:
        status_list = list(statuses)
        rows = conn.execute(
            f"SELECT * FROM bookings WHERE status IN ({', '.join('?' for _ in status_list)}) ORDER BY created_at, id",
            tuple(status_list),
        ).fetchall()
        return [self.row_to_booking(row) for row in rows]

    def refresh_provider_rating(self, conn: sqlite3.Connection, provider_id: str, provider_kind: str) -> Tuple[float, int]:
        average, count = self._rating_aggregate(conn, "provider_id = ? AND provider_kind = ?", (provider_id, provider_kind))
        conn.execute(
            "UPDATE providers SET rating = ?, review_count = ? WHERE id = ? AND kind = ?",
            (average, count, provider_id, provider_kind),
        )
        return average, count

    def refresh_shop_rating(self, conn: sqlite3.Connection, shop_id: str) -> Tuple[float, int]:
        average, count = self._rating_aggregate(conn, "shop_id = ?", (shop_id,))
        conn.execute("UPDATE shops SET rating = ?, review_count = ? WHERE id = ?", (average, count, shop_id))
        return average, count

    def _rating_aggregate(self, conn: sqlite3.Connection, where: str, params: tuple) -> Tuple[float, int]:
        row = conn.execute(
            f"""
            SELECT AVG(rating) AS average, COUNT(rating) AS total
            FROM bookings
            WHERE {where} AND status = 'completed' AND rating IS NOT NULL
            """,
            params,
        ).fetchone()
        count = int(row["total"] or 0)
        average = round(float(row["average"]), 1) if count else 0.0
        return average, count


booking_store = BookingStore()
