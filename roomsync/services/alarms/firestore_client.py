from __future__ import annotations

import functools
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter

from roomsync.config.settings import get_firestore_project, get_gcp_credentials_path
from roomsync.services.logging import setup_logging
from roomsync.services.alarms import models

TAG = __name__
logger = setup_logging()

ROOMS_COLLECTION = "rooms"
ALARMS_COLLECTION = "alarms"
MEMBERS_COLLECTION = "members"
TRIGGERS_COLLECTION = "alarmTriggers"
ACKNOWLEDGMENTS_COLLECTION = "acknowledgments"


@functools.lru_cache(maxsize=1)
def _build_client() -> firestore.Client:
    creds_path = get_gcp_credentials_path()
    if creds_path:
        os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", creds_path)
    project_id = get_firestore_project()
    return firestore.Client(project=project_id) if project_id else firestore.Client()


def get_client() -> firestore.Client:
    return _build_client()


def fetch_active_alarms(client: Optional[firestore.Client] = None) -> List[models.Alarm]:
    """Return every active alarm across rooms.

    Day-of-week and minute matching happen in the scheduler because they
    depend on each alarm's own timezone.
    """
    client = client or _build_client()
    query = client.collection_group(ALARMS_COLLECTION)
    query = query.where(filter=FieldFilter("isActive", "==", True))

    alarms: List[models.Alarm] = []
    for doc in query.stream():
        alarm = alarm_from_snapshot(doc)
        if alarm is not None:
            alarms.append(alarm)
    logger.bind(tag=TAG).debug(f"Fetched {len(alarms)} active alarms")
    return alarms


def fetch_room_member_ids(
    room_id: str, client: Optional[firestore.Client] = None
) -> List[str]:
    client = client or _build_client()
    members = (
        client.collection(ROOMS_COLLECTION)
        .document(room_id)
        .collection(MEMBERS_COLLECTION)
        .stream()
    )
    return [doc.id for doc in members]


def has_recent_trigger(
    alarm_id: str,
    since: datetime,
    client: Optional[firestore.Client] = None,
) -> bool:
    client = client or _build_client()
    query = client.collection(TRIGGERS_COLLECTION)
    query = query.where(filter=FieldFilter("alarmId", "==", alarm_id))
    query = query.where(filter=FieldFilter("triggeredAt", ">=", format_datetime(since)))
    for _ in query.limit(1).stream():
        return True
    return False


def build_trigger_id(alarm_id: str, due_at: datetime) -> str:
    due_utc = _as_utc(due_at)
    return f"{alarm_id}_{due_utc:%Y%m%d%H%M}"


def insert_trigger(
    alarm: models.Alarm,
    now: datetime,
    window,
    client: Optional[firestore.Client] = None,
) -> Tuple[models.InsertOutcome, Optional[models.Trigger]]:
    """Create a ringing trigger unless one already fired within ``window``.

    The trigger id is derived from the due minute, so two overlapping probes
    collide on the document create and the loser reports ``already_exists``.
    """
    client = client or _build_client()
    if has_recent_trigger(alarm.alarm_id, now - window, client=client):
        logger.bind(tag=TAG).info(
            f"Alarm {alarm.alarm_id} already triggered within {window}; skipping"
        )
        return models.InsertOutcome.ALREADY_EXISTS, None

    trigger = models.Trigger(
        trigger_id=build_trigger_id(alarm.alarm_id, now),
        alarm_id=alarm.alarm_id,
        room_id=alarm.room_id,
        triggered_at=_as_utc(now),
    )
    doc_ref = client.collection(TRIGGERS_COLLECTION).document(trigger.trigger_id)
    try:
        doc_ref.create(trigger_to_payload(trigger))
    except gcloud_exceptions.Conflict:
        logger.bind(tag=TAG).info(
            f"Trigger {trigger.trigger_id} created concurrently; treating as handled"
        )
        return models.InsertOutcome.ALREADY_EXISTS, None
    logger.bind(tag=TAG).info(
        f"Inserted trigger {trigger.trigger_id} for alarm {alarm.alarm_id} (room={alarm.room_id})"
    )
    return models.InsertOutcome.INSERTED, trigger


def alarm_from_snapshot(doc) -> Optional[models.Alarm]:
    data = doc.to_dict() or {}
    room_id = _resolve_room_id(doc) or data.get("roomId") or ""
    path = doc.reference.path
    try:
        return models.Alarm(
            alarm_id=doc.id,
            room_id=room_id,
            title=data.get("title") or "Alarm",
            alarm_time=str(data["alarmTime"]),
            created_by=str(data["createdBy"]),
            days=list(data.get("days") or models.DAY_NAMES),
            is_active=bool(data.get("isActive", True)),
            owner_device_id=data.get("ownerDeviceId") or None,
            condition_type=models.DismissCondition.parse(
                data.get("conditionType") or models.DismissCondition.ANYONE_CAN_DISMISS.value
            ),
            condition_value=int(data.get("conditionValue") or models.DEFAULT_CONDITION_VALUE),
            timezone=data.get("timezone") or None,
            created_at=parse_datetime(data.get("createdAt")),
            updated_at=parse_datetime(data.get("updatedAt")),
            raw=data,
            doc_path=path,
        )
    except (KeyError, TypeError, ValueError) as exc:
        logger.bind(tag=TAG).warning(f"Skipping malformed alarm {path}: {exc}")
        return None


def trigger_from_payload(trigger_id: str, data: Dict[str, Any]) -> Optional[models.Trigger]:
    triggered_at = parse_datetime(data.get("triggeredAt"))
    if triggered_at is None:
        logger.bind(tag=TAG).warning(f"Trigger {trigger_id} missing triggeredAt; ignoring")
        return None
    try:
        status = models.TriggerStatus(str(data.get("status") or "ringing").lower())
    except ValueError:
        logger.bind(tag=TAG).warning(
            f"Trigger {trigger_id} has unknown status {data.get('status')!r}; ignoring"
        )
        return None
    return models.Trigger(
        trigger_id=trigger_id,
        alarm_id=str(data.get("alarmId") or ""),
        room_id=str(data.get("roomId") or ""),
        triggered_at=triggered_at,
        status=status,
        dismissed_by=data.get("dismissedBy"),
        dismissed_at=parse_datetime(data.get("dismissedAt")),
    )


def trigger_to_payload(trigger: models.Trigger) -> Dict[str, Any]:
    return {
        "alarmId": trigger.alarm_id,
        "roomId": trigger.room_id,
        "status": trigger.status.value,
        "triggeredAt": format_datetime(trigger.triggered_at),
        "dismissedBy": trigger.dismissed_by,
        "dismissedAt": format_datetime(trigger.dismissed_at) if trigger.dismissed_at else None,
    }


def _resolve_room_id(doc) -> str:
    parent = doc.reference.parent.parent
    return parent.id if parent else ""


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        try:
            return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def format_datetime(value: datetime) -> str:
    return _as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")
