from __future__ import annotations

from datetime import datetime, timedelta, timezone

from google.api_core import exceptions as gcloud_exceptions

from roomsync.services.alarms import models, scheduler


class _FakeFirestore:
    """Stands in for ``firestore_client``; keeps triggers in memory."""

    def __init__(self, alarms, members=None):
        self.alarms = alarms
        self.members = members or {}
        self.triggers = {}
        self.insert_calls = []

    def fetch_active_alarms(self):
        return list(self.alarms)

    def fetch_room_member_ids(self, room_id):
        return list(self.members.get(room_id, []))

    def insert_trigger(self, alarm, now, window):
        self.insert_calls.append(alarm.alarm_id)
        since = now - window
        for trigger in self.triggers.values():
            if trigger.alarm_id == alarm.alarm_id and trigger.triggered_at >= since:
                return models.InsertOutcome.ALREADY_EXISTS, None
        trigger = models.Trigger(
            trigger_id=f"{alarm.alarm_id}_{now:%Y%m%d%H%M}",
            alarm_id=alarm.alarm_id,
            room_id=alarm.room_id,
            triggered_at=now,
        )
        self.triggers[trigger.trigger_id] = trigger
        return models.InsertOutcome.INSERTED, trigger


class _FakeNotificationStore:
    def __init__(self):
        self.created = []

    def create_notifications(self, notifications):
        items = list(notifications)
        self.created.extend(items)
        return items


def _make_alarm(
    alarm_id="alarm-1",
    *,
    alarm_time="07:00",
    days=None,
    is_active=True,
    timezone_name=None,
):
    return models.Alarm(
        alarm_id=alarm_id,
        room_id="room-1",
        title="Morning Wake",
        alarm_time=alarm_time,
        created_by="user-1",
        days=days or ["Mon"],
        is_active=is_active,
        owner_device_id="dev-A",
        timezone=timezone_name,
    )


# 2024-01-01 is a Monday.
MONDAY_7AM = datetime(2024, 1, 1, 7, 0, 12, tzinfo=timezone.utc)


def test_is_alarm_due_matches_day_and_minute():
    alarm = _make_alarm()
    assert scheduler.is_alarm_due(alarm, MONDAY_7AM)
    assert not scheduler.is_alarm_due(alarm, MONDAY_7AM + timedelta(minutes=1))
    assert not scheduler.is_alarm_due(alarm, MONDAY_7AM + timedelta(days=1))
    assert not scheduler.is_alarm_due(_make_alarm(is_active=False), MONDAY_7AM)


def test_is_alarm_due_uses_alarm_timezone():
    alarm = _make_alarm(alarm_time="07:00", timezone_name="America/New_York")
    # 07:00 in New York on a Monday in January is 12:00 UTC.
    assert scheduler.is_alarm_due(alarm, datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))
    assert not scheduler.is_alarm_due(alarm, MONDAY_7AM)


def test_prepare_triggers_inserts_and_fans_out(monkeypatch):
    fake_fs = _FakeFirestore(
        [_make_alarm(), _make_alarm("alarm-2", alarm_time="08:00")],
        members={"room-1": ["user-1", "user-2", "user-3"]},
    )
    fake_notifications = _FakeNotificationStore()
    monkeypatch.setattr(scheduler, "firestore_client", fake_fs)
    monkeypatch.setattr(scheduler, "notification_store", fake_notifications)

    fired = scheduler.prepare_triggers(MONDAY_7AM, window=timedelta(minutes=2))

    assert [item.alarm.alarm_id for item in fired] == ["alarm-1"]
    assert fake_fs.insert_calls == ["alarm-1"]
    assert fired[0].trigger.status == models.TriggerStatus.RINGING
    assert sorted(n.user_id for n in fake_notifications.created) == ["user-1", "user-2", "user-3"]
    assert {n.type for n in fake_notifications.created} == {"alarm"}
    assert fired[0].notified_user_ids == ["user-1", "user-2", "user-3"]


def test_overlapping_probes_fire_once(monkeypatch):
    fake_fs = _FakeFirestore([_make_alarm()], members={"room-1": ["user-1"]})
    fake_notifications = _FakeNotificationStore()
    monkeypatch.setattr(scheduler, "firestore_client", fake_fs)
    monkeypatch.setattr(scheduler, "notification_store", fake_notifications)

    first = scheduler.prepare_triggers(MONDAY_7AM, window=timedelta(minutes=2))
    second = scheduler.prepare_triggers(
        MONDAY_7AM + timedelta(seconds=30), window=timedelta(minutes=2)
    )

    assert len(first) == 1
    assert second == []
    assert len(fake_fs.triggers) == 1
    assert len(fake_notifications.created) == 1


def test_prepare_triggers_skips_failing_alarm(monkeypatch):
    fake_fs = _FakeFirestore(
        [_make_alarm("alarm-bad"), _make_alarm("alarm-good")],
        members={"room-1": ["user-1"]},
    )
    original_insert = fake_fs.insert_trigger

    def flaky_insert(alarm, now, window):
        if alarm.alarm_id == "alarm-bad":
            raise gcloud_exceptions.ServiceUnavailable("backend down")
        return original_insert(alarm, now, window)

    fake_fs.insert_trigger = flaky_insert
    monkeypatch.setattr(scheduler, "firestore_client", fake_fs)
    monkeypatch.setattr(scheduler, "notification_store", _FakeNotificationStore())

    fired = scheduler.prepare_triggers(MONDAY_7AM, window=timedelta(minutes=2))

    assert [item.alarm.alarm_id for item in fired] == ["alarm-good"]


def test_prepare_triggers_skips_unknown_timezone(monkeypatch):
    fake_fs = _FakeFirestore([_make_alarm(timezone_name="Mars/Olympus_Mons")])
    monkeypatch.setattr(scheduler, "firestore_client", fake_fs)
    monkeypatch.setattr(scheduler, "notification_store", _FakeNotificationStore())

    assert scheduler.prepare_triggers(MONDAY_7AM) == []
    assert fake_fs.insert_calls == []
