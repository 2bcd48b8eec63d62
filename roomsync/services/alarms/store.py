from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter

from roomsync.services.logging import setup_logging
from roomsync.services.alarms import firestore_client, models

TAG = __name__
logger = setup_logging()

TriggerCallback = Callable[[models.TriggerChanged], None]


class AlarmNotFound(Exception):
    pass


class TriggerNotFound(Exception):
    pass


@firestore.transactional
def _dismiss_in_transaction(transaction, doc_ref, by_user: str, dismissed_at: str) -> bool:
    snapshot = doc_ref.get(transaction=transaction)
    if not snapshot.exists:
        return False
    data = snapshot.to_dict() or {}
    if data.get("status") != models.TriggerStatus.RINGING.value:
        return False
    transaction.update(
        doc_ref,
        {
            "status": models.TriggerStatus.DISMISSED.value,
            "dismissedBy": by_user,
            "dismissedAt": dismissed_at,
        },
    )
    return True


@firestore.transactional
def _claim_owner_in_transaction(transaction, doc_ref, device_id: str, updated_at: str) -> bool:
    snapshot = doc_ref.get(transaction=transaction)
    if not snapshot.exists:
        return False
    if (snapshot.to_dict() or {}).get("ownerDeviceId"):
        return False
    transaction.update(doc_ref, {"ownerDeviceId": device_id, "updatedAt": updated_at})
    return True


class AlarmStore:
    """Firestore-backed alarm and trigger store used by devices and the HTTP API."""

    def __init__(self, client: Optional[firestore.Client] = None):
        self._firestore_client = client

    def _client(self) -> firestore.Client:
        if self._firestore_client is None:
            self._firestore_client = firestore_client.get_client()
        return self._firestore_client

    def _triggers(self):
        return self._client().collection(firestore_client.TRIGGERS_COLLECTION)

    def _alarms(self, room_id: str):
        return (
            self._client()
            .collection(firestore_client.ROOMS_COLLECTION)
            .document(room_id)
            .collection(firestore_client.ALARMS_COLLECTION)
        )

    # -- triggers -------------------------------------------------------

    def insert_trigger(
        self, alarm: models.Alarm, now: datetime, window
    ):
        return firestore_client.insert_trigger(alarm, now, window, client=self._client())

    def has_recent_trigger(self, alarm_id: str, since: datetime) -> bool:
        return firestore_client.has_recent_trigger(alarm_id, since, client=self._client())

    def get_trigger(self, trigger_id: str) -> models.Trigger:
        snapshot = self._triggers().document(trigger_id).get()
        if not snapshot.exists:
            raise TriggerNotFound(trigger_id)
        trigger = firestore_client.trigger_from_payload(trigger_id, snapshot.to_dict() or {})
        if trigger is None:
            raise TriggerNotFound(trigger_id)
        return trigger

    def list_ringing_triggers(self, room_id: str) -> List[models.Trigger]:
        query = self._triggers()
        query = query.where(filter=FieldFilter("roomId", "==", room_id))
        query = query.where(
            filter=FieldFilter("status", "==", models.TriggerStatus.RINGING.value)
        )
        triggers: List[models.Trigger] = []
        for doc in query.stream():
            trigger = firestore_client.trigger_from_payload(doc.id, doc.to_dict() or {})
            if trigger is not None:
                triggers.append(trigger)
        triggers.sort(key=lambda t: t.triggered_at, reverse=True)
        return triggers

    def update_trigger_status(
        self,
        trigger_id: str,
        status: models.TriggerStatus,
        by_user: str,
        now: Optional[datetime] = None,
    ) -> models.DismissOutcome:
        """Compare-and-swap ``ringing -> dismissed``; never overwrites a dismissal."""
        if status != models.TriggerStatus.DISMISSED:
            raise ValueError("Triggers only transition from ringing to dismissed")
        now = now or datetime.now(timezone.utc)
        doc_ref = self._triggers().document(trigger_id)
        applied = _dismiss_in_transaction(
            self._client().transaction(),
            doc_ref,
            by_user,
            firestore_client.format_datetime(now),
        )
        outcome = models.DismissOutcome.APPLIED if applied else models.DismissOutcome.NOT_APPLIED
        logger.bind(tag=TAG).info(
            f"Dismissal of trigger {trigger_id} by {by_user}: {outcome.value}"
        )
        return outcome

    def dismiss_trigger(self, trigger_id: str, by_user: str) -> models.DismissOutcome:
        return self.update_trigger_status(trigger_id, models.TriggerStatus.DISMISSED, by_user)

    def subscribe_trigger_changes(self, trigger_id: str, on_update: TriggerCallback):
        """Watch one trigger document. Returns the watch; call ``unsubscribe()`` on it."""

        def _on_snapshot(doc_snapshots, changes, read_time):
            for snapshot in doc_snapshots:
                if not snapshot.exists:
                    on_update(models.TriggerChanged(trigger_id=trigger_id, removed=True))
                    continue
                trigger = firestore_client.trigger_from_payload(
                    trigger_id, snapshot.to_dict() or {}
                )
                if trigger is not None:
                    on_update(models.TriggerChanged(trigger_id=trigger_id, trigger=trigger))

        return self._triggers().document(trigger_id).on_snapshot(_on_snapshot)

    def subscribe_room_triggers(self, room_id: str, on_update: TriggerCallback):
        """Watch the room's ringing triggers; a trigger leaving the set arrives as ``removed``."""
        query = self._triggers()
        query = query.where(filter=FieldFilter("roomId", "==", room_id))
        query = query.where(
            filter=FieldFilter("status", "==", models.TriggerStatus.RINGING.value)
        )

        def _on_snapshot(query_snapshot, changes, read_time):
            for change in changes:
                doc = change.document
                removed = change.type.name == "REMOVED"
                trigger = firestore_client.trigger_from_payload(doc.id, doc.to_dict() or {})
                on_update(
                    models.TriggerChanged(trigger_id=doc.id, trigger=trigger, removed=removed)
                )

        return query.on_snapshot(_on_snapshot)

    # -- acknowledgments -------------------------------------------------

    def acknowledge_trigger(self, trigger_id: str, user_id: str) -> bool:
        """Record that ``user_id`` is awake. Returns False for a duplicate acknowledgment."""
        doc_ref = self._acknowledgments(trigger_id).document(user_id)
        try:
            doc_ref.create(
                {"acknowledgedAt": firestore_client.format_datetime(datetime.now(timezone.utc))}
            )
        except gcloud_exceptions.Conflict:
            return False
        return True

    def _acknowledgments(self, trigger_id: str):
        return (
            self._triggers()
            .document(trigger_id)
            .collection(firestore_client.ACKNOWLEDGMENTS_COLLECTION)
        )

    def list_acknowledgments(self, trigger_id: str) -> List[str]:
        return [doc.id for doc in self._acknowledgments(trigger_id).stream()]

    def subscribe_acknowledgments(
        self, trigger_id: str, on_update: Callable[[List[str]], None]
    ):
        """Watch a trigger's acknowledgments; ``on_update`` receives every acknowledging user id."""

        def _on_snapshot(query_snapshot, changes, read_time):
            on_update([doc.id for doc in query_snapshot])

        return self._acknowledgments(trigger_id).on_snapshot(_on_snapshot)

    # -- alarms ----------------------------------------------------------

    def get_alarm(self, room_id: str, alarm_id: str) -> models.Alarm:
        snapshot = self._alarms(room_id).document(alarm_id).get()
        if not snapshot.exists:
            raise AlarmNotFound(alarm_id)
        alarm = firestore_client.alarm_from_snapshot(snapshot)
        if alarm is None:
            raise AlarmNotFound(alarm_id)
        return alarm

    def create_alarm(
        self,
        room_id: str,
        *,
        title: str,
        alarm_time: str,
        created_by: str,
        device_id: str,
        days: Optional[Sequence[str]] = None,
        condition_type: models.DismissCondition = models.DismissCondition.ANYONE_CAN_DISMISS,
        condition_value: int = models.DEFAULT_CONDITION_VALUE,
        timezone_name: Optional[str] = None,
    ) -> models.Alarm:
        try:
            datetime.strptime(alarm_time[:5], "%H:%M")
        except ValueError as exc:
            raise ValueError(f"alarm_time must be HH:MM, got {alarm_time!r}") from exc
        doc_ref = self._alarms(room_id).document()
        now = datetime.now(timezone.utc)
        alarm = models.Alarm(
            alarm_id=doc_ref.id,
            room_id=room_id,
            title=title,
            alarm_time=alarm_time,
            created_by=created_by,
            days=list(days) if days else list(models.DAY_NAMES),
            owner_device_id=device_id,
            condition_type=condition_type,
            condition_value=condition_value,
            timezone=timezone_name,
            created_at=now,
            updated_at=now,
            doc_path=doc_ref.path,
        )
        payload = alarm.to_payload()
        payload["createdAt"] = firestore_client.format_datetime(now)
        payload["updatedAt"] = firestore_client.format_datetime(now)
        doc_ref.set(payload)
        logger.bind(tag=TAG).info(
            f"Created alarm {alarm.alarm_id} in room {room_id} at {alarm.alarm_time} "
            f"owned by device {device_id}"
        )
        return alarm

    def set_alarm_active(self, room_id: str, alarm_id: str, active: bool) -> None:
        self._alarms(room_id).document(alarm_id).set(
            {
                "isActive": bool(active),
                "updatedAt": firestore_client.format_datetime(datetime.now(timezone.utc)),
            },
            merge=True,
        )

    def claim_owner_device(self, room_id: str, alarm_id: str, device_id: str) -> bool:
        """Bind a legacy alarm with no owner device to ``device_id``; first claimer wins."""
        doc_ref = self._alarms(room_id).document(alarm_id)
        claimed = _claim_owner_in_transaction(
            self._client().transaction(),
            doc_ref,
            device_id,
            firestore_client.format_datetime(datetime.now(timezone.utc)),
        )
        if claimed:
            logger.bind(tag=TAG).info(f"Device {device_id} claimed alarm {alarm_id}")
        return claimed

    def delete_alarm(self, room_id: str, alarm_id: str, by_user: str) -> int:
        """Dismiss the alarm's ringing triggers, then delete it. Returns triggers dismissed."""
        query = self._triggers()
        query = query.where(filter=FieldFilter("alarmId", "==", alarm_id))
        query = query.where(
            filter=FieldFilter("status", "==", models.TriggerStatus.RINGING.value)
        )
        dismissed = 0
        for doc in query.stream():
            if self.dismiss_trigger(doc.id, by_user) == models.DismissOutcome.APPLIED:
                dismissed += 1
        self._alarms(room_id).document(alarm_id).delete()
        logger.bind(tag=TAG).info(
            f"Deleted alarm {alarm_id} (room={room_id}); dismissed {dismissed} ringing triggers"
        )
        return dismissed


_DEFAULT_STORE: Optional[AlarmStore] = None


def get_store() -> AlarmStore:
    global _DEFAULT_STORE
    if _DEFAULT_STORE is None:
        _DEFAULT_STORE = AlarmStore()
    return _DEFAULT_STORE
