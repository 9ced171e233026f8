import logging
import os
from threading import Lock
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

# FCM rejects multicast batches above this size.
MULTICAST_LIMIT = 500


class PushSender:
    """Firebase Cloud Messaging delivery, enabled by ``FIREBASE_CREDENTIALS_PATH``."""

    def __init__(self, credentials_path: Optional[str] = None):
        self._lock = Lock()
        self._credentials_path = credentials_path
        self._loaded = False
        self._messaging: Any = None

    @property
    def enabled(self) -> bool:
        return self._load() is not None

    def _load(self) -> Any:
        if self._loaded:
            return self._messaging
        with self._lock:
            if self._loaded:
                return self._messaging
            self._loaded = True
            path = (self._credentials_path or os.getenv("FIREBASE_CREDENTIALS_PATH", "")).strip()
            if not path:
                logger.info("Booking push disabled: FIREBASE_CREDENTIALS_PATH not set")
                return None
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging

                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(path))
            except Exception:
                logger.exception("Booking push disabled: Firebase init failed for %s", path)
                return None
            self._messaging = messaging
            logger.info("Booking push enabled")
            return self._messaging

    def send(self, tokens: List[str], title: str, body: str, data: dict[str, str]) -> List[str]:
        """Push to every token and return the ones FCM reports as no longer registered."""
        messaging = self._load()
        if messaging is None or not tokens:
            return []
        stale: List[str] = []
        for offset in range(0, len(tokens), MULTICAST_LIMIT):
            batch_tokens = tokens[offset : offset + MULTICAST_LIMIT]
            try:
                batch = messaging.send_each_for_multicast(
                    messaging.MulticastMessage(
                        notification=messaging.Notification(title=title, body=body),
                        tokens=batch_tokens,
                        data=data,
                    )
                )
            except Exception:
                logger.exception("Booking push failed for %s tokens", len(batch_tokens))
                continue
            for token, response in zip(batch_tokens, batch.responses):
                if response.success:
                    continue
                if isinstance(response.exception, (messaging.UnregisteredError, messaging.SenderIdMismatchError)):
                    stale.append(token)
                else:
                    logger.warning("Booking push rejected for one token: %s", response.exception)
        return stale


push_sender = PushSender()
