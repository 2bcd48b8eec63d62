from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional, Sequence

from roomsync.services.alarms import models


def elapsed_ring_count(
    triggered_at: datetime, ring_interval: float, now: Optional[datetime] = None
) -> int:
    """Rings elapsed since the trigger fired, from wall-clock time alone.

    Every device derives the same value, unlike the owner's local ring counter.
    """
    now = now or datetime.now(timezone.utc)
    elapsed = (now - triggered_at).total_seconds()
    if elapsed <= 0:
        return 0
    return int(math.floor(elapsed / ring_interval))


def can_dismiss(
    alarm: models.Alarm,
    user_id: Optional[str],
    ring_count: int,
    acknowledgments: Sequence[str] = (),
) -> bool:
    """Evaluate the alarm's dismiss condition for ``user_id``.

    ``ring_count`` is the shared, elapsed-time ring count so every device
    reaches the same answer.
    """
    if not user_id:
        return False
    is_creator = user_id == alarm.created_by
    condition = alarm.condition_type
    if condition == models.DismissCondition.OWNER_ONLY:
        return is_creator
    if condition == models.DismissCondition.AFTER_RINGS:
        return is_creator or ring_count >= alarm.condition_value
    if condition == models.DismissCondition.MULTIPLE_ACK:
        return is_creator or len(set(acknowledgments)) >= alarm.condition_value
    return True


def status_message(
    alarm: models.Alarm,
    user_id: Optional[str],
    ring_count: int,
    acknowledgments: Sequence[str] = (),
) -> Optional[str]:
    if can_dismiss(alarm, user_id, ring_count, acknowledgments):
        return None
    condition = alarm.condition_type
    if condition == models.DismissCondition.AFTER_RINGS:
        return f"Wait for {alarm.condition_value - ring_count} more rings"
    if condition == models.DismissCondition.MULTIPLE_ACK:
        remaining = alarm.condition_value - len(set(acknowledgments))
        return f"Need {remaining} more people to acknowledge"
    if condition == models.DismissCondition.OWNER_ONLY:
        return "Only the owner can dismiss this alarm"
    return "You cannot dismiss this alarm"
