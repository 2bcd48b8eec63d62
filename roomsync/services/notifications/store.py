from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter

from roomsync.services.logging import setup_logging
from roomsync.services.alarms import firestore_client
from roomsync.services.notifications import models

TAG = __name__
logger = setup_logging()

# Firestore caps a write batch at 500 operations.
MAX_BATCH_SIZE = 500


class NotificationStore:
    """Firestore-backed store for per-member notification records."""

    def __init__(self, collection_name: str = "notifications"):
        self.collection_name = collection_name
        self._firestore_client: Optional[firestore.Client] = None

    def _client(self) -> firestore.Client:
        if self._firestore_client is None:
            self._firestore_client = firestore_client.get_client()
        return self._firestore_client

    def _collection(self):
        return self._client().collection(self.collection_name)

    def _batch(self):
        return self._client().batch()

    def create_notifications(
        self, notifications: Iterable[models.Notification]
    ) -> List[models.Notification]:
        pending = list(notifications)
        if not pending:
            return []
        collection = self._collection()
        for start in range(0, len(pending), MAX_BATCH_SIZE):
            batch = self._batch()
            for notification in pending[start : start + MAX_BATCH_SIZE]:
                doc_ref = collection.document()
                notification.notification_id = doc_ref.id
                batch.set(doc_ref, notification.to_payload())
            batch.commit()
        logger.bind(tag=TAG).info(
            f"Created {len(pending)} notifications "
            f"({pending[0].type} {pending[0].reference_id})"
        )
        return pending

    def list_unread(self, user_id: str, limit: int = 50) -> List[models.Notification]:
        query = self._collection()
        query = query.where(filter=FieldFilter("userId", "==", user_id))
        query = query.where(filter=FieldFilter("isRead", "==", False))
        results: List[models.Notification] = []
        for doc in query.limit(limit).stream():
            notification = self._hydrate(doc.id, doc.to_dict() or {})
            if notification:
                results.append(notification)
        results.sort(key=lambda n: n.created_at, reverse=True)
        return results

    def mark_read(self, notification_id: str) -> None:
        self._collection().document(notification_id).set({"isRead": True}, merge=True)

    def _hydrate(
        self, notification_id: str, payload: Dict[str, Any]
    ) -> Optional[models.Notification]:
        created_at = firestore_client.parse_datetime(payload.get("createdAt"))
        if created_at is None:
            logger.bind(tag=TAG).warning(
                f"Notification {notification_id} has no usable createdAt; using now"
            )
            created_at = datetime.now(timezone.utc)
        try:
            return models.Notification(
                notification_id=notification_id,
                user_id=payload["userId"],
                room_id=payload["roomId"],
                type=payload["type"],
                title=payload["title"],
                body=payload.get("body"),
                reference_type=payload.get("referenceType"),
                reference_id=payload.get("referenceId"),
                is_read=bool(payload.get("isRead", False)),
                created_at=created_at,
            )
        except (KeyError, TypeError) as exc:
            logger.bind(tag=TAG).warning(
                f"Failed to hydrate notification {notification_id}: {exc}"
            )
            return None


_DEFAULT_STORE = NotificationStore()


def get_store() -> NotificationStore:
    return _DEFAULT_STORE


def create_notifications(notifications: Iterable[models.Notification]) -> List[models.Notification]:
    return _DEFAULT_STORE.create_notifications(notifications)


def list_unread(user_id: str, **kwargs) -> List[models.Notification]:
    return _DEFAULT_STORE.list_unread(user_id, **kwargs)


def mark_read(notification_id: str) -> None:
    _DEFAULT_STORE.mark_read(notification_id)
