from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from roomsync.services.alarms import models
from roomsync.services.notifications import models as notification_models


@dataclass
class FiredAlarm:
    alarm: models.Alarm
    trigger: models.Trigger
    notified_user_ids: List[str] = field(default_factory=list)

    def build_notifications(self, member_ids: List[str]) -> List[notification_models.Notification]:
        return [
            notification_models.Notification(
                user_id=user_id,
                room_id=self.alarm.room_id,
                type="alarm",
                title=f"Alarm: {self.alarm.title}",
                body=f"It's {self.alarm.alarm_time}! Alarm is ringing.",
                reference_type="alarm",
                reference_id=self.alarm.alarm_id,
                created_at=self.trigger.triggered_at,
            )
            for user_id in member_ids
        ]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "alarmId": self.alarm.alarm_id,
            "roomId": self.alarm.room_id,
            "triggerId": self.trigger.trigger_id,
            "triggeredAt": self.trigger.triggered_at.isoformat(),
            "notified": len(self.notified_user_ids),
        }
