from __future__ import annotations

from datetime import datetime, timedelta, timezone

from google.api_core import exceptions as gcloud_exceptions

from roomsync.services.alarms import firestore_client, models


class _FakeQuery:
    def __init__(self, docs):
        self._docs = docs
        self.filters = []

    def where(self, *args, **kwargs):
        self.filters.append(kwargs.get("filter"))
        return self

    def limit(self, count):
        return _FakeQuery(self._docs[:count])

    def stream(self):
        return list(self._docs)


class _FakeDocRef:
    def __init__(self, storage: dict, key: str, conflict: bool = False):
        self.storage = storage
        self.key = key
        self.conflict = conflict

    def create(self, data: dict):
        if self.conflict or self.key in self.storage:
            raise gcloud_exceptions.Conflict("Document already exists")
        self.storage[self.key] = data


class _FakeTriggerCollection:
    def __init__(self, recent=None, conflict=False):
        self.storage = {}
        self.recent = recent or []
        self.conflict = conflict

    def where(self, *args, **kwargs):
        return _FakeQuery(self.recent)

    def document(self, key: str):
        return _FakeDocRef(self.storage, key, conflict=self.conflict)


class _FakeClient:
    def __init__(self, docs=None, triggers=None):
        self._docs = docs or []
        self.triggers = triggers or _FakeTriggerCollection()

    def collection_group(self, name):
        assert name == "alarms"
        return _FakeQuery(self._docs)

    def collection(self, name):
        assert name == firestore_client.TRIGGERS_COLLECTION
        return self.triggers


class _FakeDoc:
    def __init__(self, path, data):
        self._data = data
        parts = path.split("/")
        room = type("Room", (), {"id": parts[1]})() if len(parts) >= 4 else None
        self.reference = type(
            "Ref", (), {"path": path, "parent": type("Parent", (), {"parent": room})()}
        )
        self.id = parts[-1]

    def to_dict(self):
        return dict(self._data)


def _alarm(alarm_id="alarm-1"):
    return models.Alarm(
        alarm_id=alarm_id,
        room_id="room-1",
        title="Wake up",
        alarm_time="07:00",
        created_by="user-1",
        owner_device_id="dev-A",
    )


def test_fetch_active_alarms_skips_malformed_docs(monkeypatch):
    monkeypatch.setattr(
        firestore_client, "FieldFilter", lambda field_path, op, value: (field_path, op, value)
    )
    docs = [
        _FakeDoc(
            "rooms/room-1/alarms/alarm-1",
            {
                "title": "Wake up",
                "alarmTime": "07:00",
                "days": ["Mon", "Funday"],
                "isActive": True,
                "createdBy": "user-1",
                "ownerDeviceId": "dev-A",
                "conditionType": "after_rings",
                "conditionValue": 2,
            },
        ),
        # intentionally omit "alarmTime"
        _FakeDoc("rooms/room-1/alarms/alarm-2", {"isActive": True, "createdBy": "user-1"}),
    ]

    alarms = firestore_client.fetch_active_alarms(client=_FakeClient(docs))

    assert [alarm.alarm_id for alarm in alarms] == ["alarm-1"]
    alarm = alarms[0]
    assert alarm.room_id == "room-1"
    assert alarm.days == ["Mon"]
    assert alarm.condition_type == models.DismissCondition.AFTER_RINGS
    assert alarm.condition_value == 2


def test_build_trigger_id_uses_utc_minute():
    due = datetime(2024, 1, 1, 7, 0, 42, tzinfo=timezone.utc)
    assert firestore_client.build_trigger_id("alarm-1", due) == "alarm-1_202401010700"


def test_insert_trigger_creates_ringing_doc(monkeypatch):
    monkeypatch.setattr(
        firestore_client, "FieldFilter", lambda field_path, op, value: (field_path, op, value)
    )
    client = _FakeClient()
    now = datetime(2024, 1, 1, 7, 0, 5, tzinfo=timezone.utc)

    outcome, trigger = firestore_client.insert_trigger(
        _alarm(), now, timedelta(minutes=2), client=client
    )

    assert outcome == models.InsertOutcome.INSERTED
    assert trigger.trigger_id == "alarm-1_202401010700"
    stored = client.triggers.storage["alarm-1_202401010700"]
    assert stored["status"] == "ringing"
    assert stored["roomId"] == "room-1"
    assert stored["triggeredAt"] == "2024-01-01T07:00:05.000Z"
    assert stored["dismissedBy"] is None


def test_insert_trigger_skips_when_recent_trigger_exists(monkeypatch):
    monkeypatch.setattr(
        firestore_client, "FieldFilter", lambda field_path, op, value: (field_path, op, value)
    )
    recent = [_FakeDoc("alarmTriggers/alarm-1_202401010659", {"status": "dismissed"})]
    client = _FakeClient(triggers=_FakeTriggerCollection(recent=recent))

    outcome, trigger = firestore_client.insert_trigger(
        _alarm(), datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc), timedelta(minutes=2), client=client
    )

    assert outcome == models.InsertOutcome.ALREADY_EXISTS
    assert trigger is None
    assert client.triggers.storage == {}


def test_insert_trigger_lost_create_race_is_already_exists(monkeypatch):
    monkeypatch.setattr(
        firestore_client, "FieldFilter", lambda field_path, op, value: (field_path, op, value)
    )
    client = _FakeClient(triggers=_FakeTriggerCollection(conflict=True))

    outcome, trigger = firestore_client.insert_trigger(
        _alarm(), datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc), timedelta(minutes=2), client=client
    )

    assert outcome == models.InsertOutcome.ALREADY_EXISTS
    assert trigger is None


def test_trigger_from_payload_parses_dismissal():
    trigger = firestore_client.trigger_from_payload(
        "t-1",
        {
            "alarmId": "alarm-1",
            "roomId": "room-1",
            "status": "dismissed",
            "triggeredAt": "2024-01-01T07:00:00.000Z",
            "dismissedBy": "user-2",
            "dismissedAt": "2024-01-01T07:00:07.250Z",
        },
    )

    assert trigger.status == models.TriggerStatus.DISMISSED
    assert not trigger.is_ringing
    assert trigger.dismissed_by == "user-2"
    assert trigger.dismissed_at == datetime(2024, 1, 1, 7, 0, 7, 250000, tzinfo=timezone.utc)


def test_trigger_from_payload_rejects_unknown_status():
    assert (
        firestore_client.trigger_from_payload(
            "t-1", {"status": "snoozed", "triggeredAt": "2024-01-01T07:00:00Z"}
        )
        is None
    )
    assert firestore_client.trigger_from_payload("t-2", {"status": "ringing"}) is None
