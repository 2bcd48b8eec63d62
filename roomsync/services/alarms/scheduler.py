from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from google.api_core import exceptions as gcloud_exceptions

from roomsync.services.logging import setup_logging
from roomsync.services.alarms import firestore_client, models, tasks
from roomsync.services.alarms.config import get_settings
from roomsync.services.notifications import store as notification_store

TAG = __name__
logger = setup_logging()


def local_now(alarm: models.Alarm, now: datetime, default_timezone: str) -> datetime:
    tz_name = alarm.timezone or default_timezone
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name))


def is_alarm_due(
    alarm: models.Alarm, now: datetime, default_timezone: str = "UTC"
) -> bool:
    """True when the alarm's day set holds today and its HH:MM is the current minute."""
    if not alarm.is_active:
        return False
    current = local_now(alarm, now, default_timezone)
    if models.DAY_NAMES[current.weekday()] not in alarm.days:
        return False
    return alarm.alarm_time == current.strftime("%H:%M")


def prepare_triggers(
    now: datetime,
    window: Optional[timedelta] = None,
) -> List[tasks.FiredAlarm]:
    settings = get_settings()
    window = window or settings.idempotency_window
    fired: List[tasks.FiredAlarm] = []
    try:
        alarms = firestore_client.fetch_active_alarms()
    except gcloud_exceptions.GoogleAPICallError as exc:
        logger.bind(tag=TAG).error(f"Failed to fetch active alarms: {exc}")
        return fired

    for alarm in alarms:
        try:
            if not is_alarm_due(alarm, now, settings.default_timezone):
                continue
        except ZoneInfoNotFoundError:
            logger.bind(tag=TAG).warning(
                f"Alarm {alarm.alarm_id} has unknown timezone {alarm.timezone!r}; skipping"
            )
            continue

        try:
            outcome, trigger = firestore_client.insert_trigger(alarm, now, window)
        except gcloud_exceptions.GoogleAPICallError as exc:
            logger.bind(tag=TAG).warning(
                f"Failed to insert trigger for alarm {alarm.alarm_id}: {exc}"
            )
            continue
        if outcome == models.InsertOutcome.ALREADY_EXISTS or trigger is None:
            continue

        fired_alarm = tasks.FiredAlarm(alarm=alarm, trigger=trigger)
        _fan_out(fired_alarm)
        fired.append(fired_alarm)

    logger.bind(tag=TAG).info(f"Prepared {len(fired)} alarm triggers")
    return fired


def _fan_out(fired_alarm: tasks.FiredAlarm) -> None:
    alarm = fired_alarm.alarm
    try:
        member_ids = firestore_client.fetch_room_member_ids(alarm.room_id)
        notification_store.create_notifications(
            fired_alarm.build_notifications(member_ids)
        )
    except gcloud_exceptions.GoogleAPICallError as exc:
        logger.bind(tag=TAG).warning(
            f"Trigger {fired_alarm.trigger.trigger_id} inserted but fan-out failed: {exc}"
        )
        return
    fired_alarm.notified_user_ids = member_ids
