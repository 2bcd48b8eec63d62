from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter

from roomsync.services.logging import setup_logging
from roomsync.services.alarms import firestore_client
from roomsync.services.alarms.config import REMINDER_TIMING
from roomsync.services.notifications import models as notification_models
from roomsync.services.notifications import store as notification_store
from roomsync.services.reminders import models

TAG = __name__
logger = setup_logging()

REMINDERS_COLLECTION = "reminders"


def fetch_due_reminders(
    now: datetime,
    lookbehind: timedelta,
    lookahead: timedelta,
    client: Optional[firestore.Client] = None,
) -> List[models.Reminder]:
    client = client or firestore_client.get_client()
    query = client.collection_group(REMINDERS_COLLECTION)
    query = query.where(filter=FieldFilter("status", "==", models.ReminderStatus.SCHEDULED.value))
    query = query.where(
        filter=FieldFilter("remindAt", ">=", firestore_client.format_datetime(now - lookbehind))
    )
    query = query.where(
        filter=FieldFilter("remindAt", "<=", firestore_client.format_datetime(now + lookahead))
    )

    reminders: List[models.Reminder] = []
    for doc in query.stream():
        data = doc.to_dict() or {}
        remind_at = firestore_client.parse_datetime(data.get("remindAt"))
        if remind_at is None or not data.get("createdBy"):
            logger.bind(tag=TAG).warning(f"Skipping malformed reminder {doc.reference.path}")
            continue
        parent = doc.reference.parent.parent
        reminders.append(
            models.Reminder(
                reminder_id=doc.id,
                room_id=parent.id if parent else str(data.get("roomId") or ""),
                title=data.get("title") or "Reminder",
                remind_at=remind_at,
                created_by=str(data["createdBy"]),
                description=data.get("description"),
                allowed_completers=list(data.get("allowedCompleters") or []),
                doc_path=doc.reference.path,
            )
        )
    return reminders


@firestore.transactional
def _claim_in_transaction(transaction, doc_ref, notified_at: str) -> bool:
    snapshot = doc_ref.get(transaction=transaction)
    if not snapshot.exists:
        return False
    data = snapshot.to_dict() or {}
    if data.get("status") != models.ReminderStatus.SCHEDULED.value:
        return False
    transaction.update(
        doc_ref,
        {"status": models.ReminderStatus.NOTIFIED.value, "notifiedAt": notified_at},
    )
    return True


def claim_reminder(
    reminder: models.Reminder,
    now: datetime,
    client: Optional[firestore.Client] = None,
) -> bool:
    """Move a reminder from scheduled to notified; False if another probe got there first."""
    client = client or firestore_client.get_client()
    doc_ref = client.document(reminder.doc_path)
    return _claim_in_transaction(
        client.transaction(), doc_ref, firestore_client.format_datetime(now)
    )


def process_due_reminders(now: datetime) -> int:
    try:
        reminders = fetch_due_reminders(
            now,
            lookbehind=REMINDER_TIMING["lookbehind"],
            lookahead=REMINDER_TIMING["lookahead"],
        )
    except gcloud_exceptions.GoogleAPICallError as exc:
        logger.bind(tag=TAG).error(f"Failed to fetch due reminders: {exc}")
        return 0

    notified = 0
    for reminder in reminders:
        try:
            if not claim_reminder(reminder, now):
                logger.bind(tag=TAG).info(
                    f"Reminder {reminder.reminder_id} already claimed; skipping"
                )
                continue
        except gcloud_exceptions.GoogleAPICallError as exc:
            logger.bind(tag=TAG).warning(
                f"Failed to claim reminder {reminder.reminder_id}: {exc}"
            )
            continue
        try:
            member_ids = firestore_client.fetch_room_member_ids(reminder.room_id)
            recipients = reminder.recipients(member_ids)
            notification_store.create_notifications(
                notification_models.Notification(
                    user_id=user_id,
                    room_id=reminder.room_id,
                    type="reminder",
                    title=f"Reminder: {reminder.title}",
                    body=reminder.description or "Reminder is due now!",
                    reference_type="reminder",
                    reference_id=reminder.reminder_id,
                    created_at=now.astimezone(timezone.utc),
                )
                for user_id in recipients
            )
        except gcloud_exceptions.GoogleAPICallError as exc:
            # Already marked notified, so no later scan will pick it up again.
            logger.bind(tag=TAG).error(
                f"Reminder {reminder.reminder_id} in room {reminder.room_id} was claimed "
                f"but no notifications were sent: {exc}"
            )
            continue
        notified += 1
    logger.bind(tag=TAG).info(f"Notified {notified} due reminders")
    return notified
