from __future__ import annotations

from datetime import timedelta

import pytest

from roomsync.config import config_loader
from roomsync.services.alarms.config import AlarmSettings


def test_merge_configs_is_recursive():
    merged = config_loader.merge_configs(
        {"alarms": {"max_rings": 3, "ring_interval_seconds": 5}, "log": {"log_level": "INFO"}},
        {"alarms": {"max_rings": 5}},
    )
    assert merged == {
        "alarms": {"max_rings": 5, "ring_interval_seconds": 5},
        "log": {"log_level": "INFO"},
    }


def test_custom_config_file_overrides_defaults(tmp_path, monkeypatch):
    custom = tmp_path / "override.yaml"
    custom.write_text("alarms:\n  max_rings: 7\n", encoding="utf-8")
    monkeypatch.setenv(config_loader.CONFIG_ENV_VAR, str(custom))
    monkeypatch.chdir(tmp_path)
    try:
        config = config_loader.reload_config()
        assert config["alarms"]["max_rings"] == 7
        assert config["alarms"]["ring_interval_seconds"] == 5
    finally:
        monkeypatch.delenv(config_loader.CONFIG_ENV_VAR)
        config_loader.reload_config()


def test_alarm_settings_defaults_from_packaged_config(monkeypatch):
    for name in (
        "ALARM_RING_INTERVAL_SECONDS",
        "ALARM_MAX_RINGS",
        "ALARM_IDEMPOTENCY_WINDOW_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    defaults = config_loader.read_config(config_loader.get_default_config_path())

    settings = AlarmSettings.from_config(defaults["alarms"])

    assert settings.idempotency_window == timedelta(minutes=2)
    assert settings.ring_interval == 5
    assert settings.max_rings == 3
    assert len(settings.sound_urls) == 4
    assert settings.beep_frequencies == (880.0, 660.0)
    assert settings.vibration_pattern_ms == (500, 200, 500, 200, 500)


def test_alarm_settings_env_overrides(monkeypatch):
    monkeypatch.setenv("ALARM_RING_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("ALARM_MAX_RINGS", "5")
    monkeypatch.setenv("ALARM_IDEMPOTENCY_WINDOW_SECONDS", "300")

    settings = AlarmSettings.from_config({})

    assert settings.ring_interval == 2.5
    assert settings.max_rings == 5
    assert settings.idempotency_window == timedelta(minutes=5)


@pytest.mark.parametrize(
    "name,value",
    [("ALARM_RING_INTERVAL_SECONDS", "0"), ("ALARM_MAX_RINGS", "0"), ("ALARM_MAX_RINGS", "three")],
)
def test_alarm_settings_rejects_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        AlarmSettings.from_config({})
