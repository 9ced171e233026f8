import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Iterator

logger = logging.getLogger(__name__)

ACTIVE_STATUS_SQL = "('pending', 'assigned', 'confirmed', 'reassigned', 'rescheduled')"


def utcnow() -> datetime:
    """Naive UTC wall clock used for audit timestamps and booking lead times."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """sqlite3 storage shared by the directory and the booking engine.

    Every write path goes through :meth:`transaction`, which opens the
    connection with ``BEGIN IMMEDIATE`` so that concurrent writers, in this
    process or another one, are serialized for the whole read-validate-write
    sequence of a use-case.
    """

    def __init__(self, db_path: str) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._lock = Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS customers (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shops (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    owner_id TEXT,
                    opening_hours_json TEXT NOT NULL DEFAULT '{}',
                    rating REAL NOT NULL DEFAULT 0,
                    review_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS ix_shops_owner_id ON shops (owner_id)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    shop_id TEXT,
                    schedule_json TEXT NOT NULL DEFAULT '{}',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    rating REAL NOT NULL DEFAULT 0,
                    review_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (id, kind)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS ix_providers_shop_kind ON providers (shop_id, kind)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS services (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    price REAL NOT NULL,
                    duration INTEGER NOT NULL,
                    service_types_json TEXT NOT NULL DEFAULT '["shopBased"]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uid TEXT NOT NULL UNIQUE,
                    customer_id TEXT NOT NULL,
                    customer_name TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    provider_name TEXT NOT NULL,
                    provider_kind TEXT NOT NULL,
                    shop_id TEXT,
                    service_id TEXT NOT NULL,
                    service_name TEXT NOT NULL,
                    service_type TEXT NOT NULL,
                    price REAL NOT NULL,
                    duration INTEGER NOT NULL CHECK (duration >= 5),
                    booking_date TEXT NOT NULL,
                    start_minute INTEGER NOT NULL CHECK (start_minute >= 0 AND start_minute < 1440),
                    resource_key TEXT NOT NULL,
                    status TEXT NOT NULL,
                    address_json TEXT,
                    notes TEXT NOT NULL DEFAULT '',
                    cancellation_reason TEXT,
                    reject_reason TEXT,
                    rating INTEGER,
                    review TEXT,
                    payment_status TEXT NOT NULL DEFAULT 'pending',
                    payment_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_status_history (
                    id TEXT PRIMARY KEY,
                    booking_id INTEGER NOT NULL REFERENCES bookings (id),
                    actor_user_id TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    note TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS ix_booking_history_booking ON booking_status_history (booking_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS ix_bookings_status ON bookings (status)")
            conn.execute("CREATE INDEX IF NOT EXISTS ix_bookings_customer ON bookings (customer_id, booking_date)")
            conn.execute("CREATE INDEX IF NOT EXISTS ix_bookings_provider_day ON bookings (provider_id, booking_date, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS ix_bookings_shop_day ON bookings (shop_id, booking_date, status)")
            # Two active bookings on one resource can never share a start minute.
            conn.execute(
                f"""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_bookings_active_slot
                ON bookings (resource_key, booking_date, start_minute)
                WHERE status IN {ACTIVE_STATUS_SQL}
                """
            )
            self._ensure_column(conn, "bookings", "review", "TEXT")
            self._ensure_column(conn, "providers", "is_active", "INTEGER NOT NULL DEFAULT 1")
        logger.info("Booking database ready at %s", self.db_path)

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


default_db = str(Path(__file__).resolve().parents[2] / "data" / "bookings.sqlite3")
database = Database(db_path=os.getenv("BOOKING_DB_PATH", default_db))
