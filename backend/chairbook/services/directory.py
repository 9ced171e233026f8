import json
import logging
import sqlite3
from typing import List, Optional

from chairbook.models import AvailabilityDay, Customer, OpeningHoursDay, ProviderProfile, Service, Shop
from chairbook.services.database import Database, database, utcnow
from chairbook.services.errors import BookingNotFoundError, BookingValidationError
from chairbook.services.schedule import WEEKDAYS

logger = logging.getLogger(__name__)


class Directory:
    """Read side of the profile store, service catalog and shop directory.

    Records here belong to other collaborators. The booking engine only reads
    them inside its own transactions; the sync endpoints upsert them.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # sync writes

    def upsert_customer(self, customer: Customer) -> Customer:
        now = utcnow().isoformat()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO customers (id, name, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name, updated_at = excluded.updated_at
                """,
                (customer.id, customer.name.strip(), now, now),
            )
        return customer

    def upsert_shop(self, shop: Shop) -> Shop:
        self._validate_day_keys(shop.opening_hours.keys())
        now = utcnow().isoformat()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO shops (id, name, owner_id, opening_hours_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    owner_id = excluded.owner_id,
                    opening_hours_json = excluded.opening_hours_json,
                    updated_at = excluded.updated_at
                """,
                (
                    shop.id,
                    shop.name.strip(),
                    shop.owner_id,
                    json.dumps({day: hours.model_dump() for day, hours in shop.opening_hours.items()}),
                    now,
                    now,
                ),
            )
            return self.fetch_shop(conn, shop.id)

    def upsert_provider(self, profile: ProviderProfile) -> ProviderProfile:
        self._validate_day_keys(profile.schedule.keys())
        if profile.kind == "shopOwner" and profile.shop_id:
            raise BookingValidationError("Shop owners are bound through shop ownership, not shop_id")
        now = utcnow().isoformat()
        with self.db.transaction() as conn:
            if profile.shop_id and not self._shop_exists(conn, profile.shop_id):
                raise BookingNotFoundError("Shop not found")
            conn.execute(
                """
                INSERT INTO providers (id, kind, name, shop_id, schedule_json, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id, kind) DO UPDATE SET
                    name = excluded.name,
                    shop_id = excluded.shop_id,
                    schedule_json = excluded.schedule_json,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    profile.id,
                    profile.kind,
                    profile.name.strip(),
                    profile.shop_id,
                    json.dumps({day: window.model_dump() for day, window in profile.schedule.items()}),
                    1 if profile.is_active else 0,
                    now,
                    now,
                ),
            )
            return self.fetch_provider_profile(conn, profile.id, profile.kind)

    def upsert_service(self, service: Service) -> Service:
        if not service.service_types:
            raise BookingValidationError("Service must support at least one service type")
        now = utcnow().isoformat()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO services (id, name, price, duration, service_types_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    price = excluded.price,
                    duration = excluded.duration,
                    service_types_json = excluded.service_types_json,
                    updated_at = excluded.updated_at
                """,
                (
                    service.id,
                    service.name.strip(),
                    float(service.price),
                    int(service.duration),
                    json.dumps(sorted(set(service.service_types))),
                    now,
                    now,
                ),
            )
        logger.info("Service %s synced (duration=%s price=%s)", service.id, service.duration, service.price)
        return service

    def get_shop(self, shop_id: str) -> Shop:
        with self.db.reader() as conn:
            return self.fetch_shop(conn, shop_id)

    def get_provider_profile(self, provider_id: str, kind: str) -> ProviderProfile:
        with self.db.reader() as conn:
            return self.fetch_provider_profile(conn, provider_id, kind)

    # transactional reads

    def fetch_customer(self, conn: sqlite3.Connection, customer_id: str) -> Customer:
        row = conn.execute("SELECT id, name FROM customers WHERE id = ?", (customer_id,)).fetchone()
        if not row:
            raise BookingNotFoundError("Customer not found")
        return Customer(id=row["id"], name=row["name"])

    def fetch_service(self, conn: sqlite3.Connection, service_id: str) -> Service:
        row = conn.execute("SELECT * FROM services WHERE id = ?", (service_id,)).fetchone()
        if not row:
            raise BookingNotFoundError("Service not found")
        return Service(
            id=row["id"],
            name=row["name"],
            price=float(row["price"]),
            duration=int(row["duration"]),
            service_types=json.loads(row["service_types_json"] or "[]"),
        )

    def fetch_shop(self, conn: sqlite3.Connection, shop_id: str) -> Shop:
        row = conn.execute("SELECT * FROM shops WHERE id = ?", (shop_id,)).fetchone()
        if not row:
            raise BookingNotFoundError("Shop not found")
        return self._row_to_shop(row)

    def fetch_provider_profile(self, conn: sqlite3.Connection, provider_id: str, kind: str) -> ProviderProfile:
        row = conn.execute("SELECT * FROM providers WHERE id = ? AND kind = ?", (provider_id, kind)).fetchone()
        if not row:
            raise BookingNotFoundError("Provider not found")
        return ProviderProfile(
            id=row["id"],
            kind=row["kind"],
            name=row["name"],
            shop_id=row["shop_id"],
            schedule={day: AvailabilityDay(**value) for day, value in json.loads(row["schedule_json"] or "{}").items()},
            is_active=bool(row["is_active"]),
            rating=float(row["rating"]),
            review_count=int(row["review_count"]),
        )

    def list_shop_staff_ids(self, conn: sqlite3.Connection, shop_id: str) -> List[str]:
        rows = conn.execute(
            """
            SELECT id FROM providers
            WHERE shop_id = ? AND kind = 'staff' AND is_active = 1
            ORDER BY id
            """,
            (shop_id,),
        ).fetchall()
        return [str(row["id"]) for row in rows]

    def shop_owner_id(self, conn: sqlite3.Connection, shop_id: Optional[str]) -> Optional[str]:
        if not shop_id:
            return None
        row = conn.execute("SELECT owner_id FROM shops WHERE id = ?", (shop_id,)).fetchone()
        return row["owner_id"] if row else None

    def _row_to_shop(self, row: sqlite3.Row) -> Shop:
        return Shop(
            id=row["id"],
            name=row["name"],
            owner_id=row["owner_id"],
            opening_hours={
                day: OpeningHoursDay(**value) for day, value in json.loads(row["opening_hours_json"] or "{}").items()
            },
            rating=float(row["rating"]),
            review_count=int(row["review_count"]),
        )

    def _shop_exists(self, conn: sqlite3.Connection, shop_id: str) -> bool:
        return conn.execute("SELECT 1 FROM shops WHERE id = ?", (shop_id,)).fetchone() is not None

    def _validate_day_keys(self, days) -> None:
        unknown = sorted(set(days) - set(WEEKDAYS))
        if unknown:
            raise BookingValidationError(f"Unknown weekday keys: {', '.join(unknown)}")


directory = Directory(database)
