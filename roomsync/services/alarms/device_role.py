from __future__ import annotations

from typing import Optional

from roomsync.services.alarms import models


def is_owning_device(
    user_id: Optional[str],
    device_id: Optional[str],
    alarm: models.Alarm,
    trigger: Optional[models.Trigger] = None,
) -> bool:
    """Whether this device is the one entitled to sound the alarm.

    Only the creator's original device qualifies, and only when the alarm has
    an owner device bound. ``trigger`` is accepted so callers recompute the
    role whenever any input changes; the role does not depend on its state.
    """
    if trigger is not None and trigger.alarm_id and trigger.alarm_id != alarm.alarm_id:
        return False
    if not user_id or user_id != alarm.created_by:
        return False
    if not alarm.owner_device_id or not device_id:
        return False
    return alarm.owner_device_id == device_id
