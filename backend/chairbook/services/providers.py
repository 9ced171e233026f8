import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Dict, Optional

from chairbook.models import AvailabilityDay
from chairbook.services.errors import ProviderNotFoundError

logger = logging.getLogger(__name__)

STAFF = "staff"
FREELANCER = "freelancer"
SHOP_OWNER = "shopOwner"

# Lower rank wins when one identifier is registered under several kinds.
KIND_PRECEDENCE = {STAFF: 0, FREELANCER: 1, SHOP_OWNER: 2}


@dataclass(frozen=True)
class Provider:
    """Resolved provider variant, passed through a use-case instead of re-resolved."""

    id: str
    kind: str
    name: str
    shop_id: Optional[str] = None
    schedule: Dict[str, AvailabilityDay] = field(default_factory=dict)
    is_active: bool = True

    @property
    def is_shop_bound(self) -> bool:
        return bool(self.shop_id)

    @property
    def is_shop_owner(self) -> bool:
        return self.kind == SHOP_OWNER

    def display_name(self) -> str:
        return self.name or self.id


class ProviderResolver:
    _SELECT = """
        SELECT
            p.id,
            p.kind,
            p.name,
            p.schedule_json,
            p.is_active,
            CASE
                WHEN p.kind = 'shopOwner'
                    THEN (SELECT s.id FROM shops s WHERE s.owner_id = p.id ORDER BY s.id LIMIT 1)
                ELSE p.shop_id
            END AS bound_shop_id
        FROM providers p
    """

    def resolve(self, conn: sqlite3.Connection, provider_id: str) -> Provider:
        """Return the highest-precedence active registry entry for ``provider_id``."""
        row = conn.execute(
            self._SELECT
            + """
            WHERE p.id = ? AND p.is_active = 1
            ORDER BY CASE p.kind WHEN 'staff' THEN 0 WHEN 'freelancer' THEN 1 ELSE 2 END
            LIMIT 1
            """,
            (provider_id,),
        ).fetchone()
        if not row:
            raise ProviderNotFoundError(f"Provider not found: {provider_id}")
        return self._row_to_provider(row)

    def resolve_kind(self, conn: sqlite3.Connection, provider_id: str, kind: str) -> Provider:
        """Return one exact registry entry, active or not, for a booking's stored snapshot."""
        row = conn.execute(self._SELECT + " WHERE p.id = ? AND p.kind = ?", (provider_id, kind)).fetchone()
        if not row:
            raise ProviderNotFoundError(f"Provider not found: {provider_id} ({kind})")
        return self._row_to_provider(row)

    def resolve_shop_owner(self, conn: sqlite3.Connection, owner_id: str, shop_id: str) -> Provider:
        """Shop owner acting as provider for their own shop, registered or not."""
        row = conn.execute(
            self._SELECT + " WHERE p.id = ? AND p.kind = 'shopOwner'",
            (owner_id,),
        ).fetchone()
        if row and row["bound_shop_id"] == shop_id:
            return self._row_to_provider(row)
        shop = conn.execute("SELECT name FROM shops WHERE id = ? AND owner_id = ?", (shop_id, owner_id)).fetchone()
        if not shop:
            raise ProviderNotFoundError(f"Shop owner not found: {owner_id}")
        logger.info("Shop owner %s has no registry entry; using shop %s defaults", owner_id, shop_id)
        return Provider(id=owner_id, kind=SHOP_OWNER, name=shop["name"], shop_id=shop_id)

    def _row_to_provider(self, row: sqlite3.Row) -> Provider:
        schedule = {
            day: AvailabilityDay(**value) for day, value in json.loads(row["schedule_json"] or "{}").items()
        }
        return Provider(
            id=row["id"],
            kind=row["kind"],
            name=row["name"],
            shop_id=row["bound_shop_id"],
            schedule=schedule,
            is_active=bool(row["is_active"]),
        )


provider_resolver = ProviderResolver()
