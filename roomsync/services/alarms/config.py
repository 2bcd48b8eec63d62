from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from roomsync.config.settings import get_section


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None or val == "":
        return default
    try:
        return float(val)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number") from exc


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


@dataclass(frozen=True)
class AlarmSettings:
    idempotency_window: timedelta = timedelta(minutes=2)
    probe_interval: timedelta = timedelta(seconds=60)
    ring_interval: float = 5.0
    max_rings: int = 3
    default_timezone: str = "UTC"
    sound_urls: Sequence[str] = field(default_factory=tuple)
    sound_load_timeout: float = 2.0
    beep_interval: float = 0.4
    beep_frequencies: Sequence[float] = (880.0, 660.0)
    beep_duration: float = 0.25
    vibration_pattern_ms: Sequence[int] = (500, 200, 500, 200, 500)
    vibration_repeat: float = 2.0

    @classmethod
    def from_config(cls, payload: Optional[Dict[str, Any]] = None) -> "AlarmSettings":
        payload = payload if payload is not None else get_section("alarms")
        window = _env_float(
            "ALARM_IDEMPOTENCY_WINDOW_SECONDS",
            float(payload.get("idempotency_window_seconds", 120)),
        )
        ring_interval = _env_float(
            "ALARM_RING_INTERVAL_SECONDS",
            float(payload.get("ring_interval_seconds", 5)),
        )
        max_rings = _env_int("ALARM_MAX_RINGS", int(payload.get("max_rings", 3)))
        if ring_interval <= 0:
            raise ValueError("ring interval must be positive")
        if max_rings < 1:
            raise ValueError("max rings must be at least 1")
        sound_urls: List[str] = [str(url) for url in payload.get("sound_urls") or []]
        return cls(
            idempotency_window=timedelta(seconds=window),
            probe_interval=timedelta(
                seconds=float(payload.get("probe_interval_seconds", 60))
            ),
            ring_interval=ring_interval,
            max_rings=max_rings,
            default_timezone=str(payload.get("default_timezone") or "UTC"),
            sound_urls=tuple(sound_urls),
            sound_load_timeout=float(payload.get("sound_load_timeout_seconds", 2)),
            beep_interval=float(payload.get("beep_interval_seconds", 0.4)),
            beep_frequencies=tuple(
                float(f) for f in payload.get("beep_frequencies") or (880, 660)
            ),
            beep_duration=float(payload.get("beep_duration_seconds", 0.25)),
            vibration_pattern_ms=tuple(
                int(v)
                for v in payload.get("vibration_pattern_ms") or (500, 200, 500, 200, 500)
            ),
            vibration_repeat=float(payload.get("vibration_repeat_seconds", 2)),
        )


_SETTINGS: Optional[AlarmSettings] = None


def get_settings() -> AlarmSettings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = AlarmSettings.from_config()
    return _SETTINGS


def _reminder_timing() -> Dict[str, timedelta]:
    payload = get_section("reminders")
    return {
        "lookbehind": timedelta(seconds=float(payload.get("lookbehind_seconds", 60))),
        "lookahead": timedelta(seconds=float(payload.get("lookahead_seconds", 30))),
    }


ALARM_TIMING = {
    "idempotency_window": get_settings().idempotency_window,
    "probe_interval": get_settings().probe_interval,
}

REMINDER_TIMING = _reminder_timing()
