import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from chairbook.models import NotificationRecord
from chairbook.services.push_sender import PushSender, push_sender

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationIntent:
    """A notification a use-case wants sent once its transaction has committed."""

    user_id: str
    title: str
    body: str
    category: str = "booking"
    deep_link: Optional[str] = None


def booking_intent(user_id: Optional[str], title: str, body: str, booking_uid: str) -> List[NotificationIntent]:
    if not user_id:
        return []
    return [NotificationIntent(user_id=user_id, title=title, body=body, category="booking", deep_link=f"booking:{booking_uid}")]


class NotificationStore:
    def __init__(self, sender: PushSender = push_sender, max_records: int = 5000):
        self._lock = Lock()
        self._sender = sender
        self._max_records = max_records
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
            del self._notifications[self._max_records :]
            tokens = sorted(self._device_tokens.get(user_id, set()))
        stale_tokens = self._sender.send(
            tokens=tokens,
            title=title,
            body=body,
            data={"notification_id": record.id, "category": category, "deep_link": deep_link or ""},
        )
        if stale_tokens:
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                current.difference_update(stale_tokens)
        return record

    def dispatch(self, intents: Iterable[NotificationIntent]) -> int:
        """Deliver committed intents. A failing intent is logged and the rest still go out."""
        delivered = 0
        for intent in intents:
            try:
                self.create(
                    user_id=intent.user_id,
                    title=intent.title,
                    body=intent.body,
                    category=intent.category,
                    deep_link=intent.deep_link,
                )
                delivered += 1
            except Exception:
                logger.exception("Notification dispatch failed for user %s (%s)", intent.user_id, intent.title)
        return delivered

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
