from __future__ import annotations

import pytest

from roomsync.services.alarms.config import AlarmSettings
from roomsync.services.alarms.tests.fakes import FakeAlarmStore, make_alarm, make_trigger


@pytest.fixture
def fast_settings() -> AlarmSettings:
    return AlarmSettings(
        ring_interval=0.05,
        max_rings=3,
        sound_urls=(),
        beep_interval=0.01,
        beep_duration=0.001,
        vibration_repeat=0.01,
    )


@pytest.fixture
def store() -> FakeAlarmStore:
    fake = FakeAlarmStore()
    fake.add_alarm(make_alarm())
    fake.add_trigger(make_trigger())
    return fake
