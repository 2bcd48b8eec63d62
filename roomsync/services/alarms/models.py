from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from roomsync.services.logging import setup_logging

TAG = __name__
logger = setup_logging()


class TriggerStatus(str, Enum):
    RINGING = "ringing"
    DISMISSED = "dismissed"


class DismissCondition(str, Enum):
    ANYONE_CAN_DISMISS = "anyone_can_dismiss"
    OWNER_ONLY = "owner_only"
    AFTER_RINGS = "after_rings"
    MULTIPLE_ACK = "multiple_ack"

    @classmethod
    def parse(cls, value: Any) -> "DismissCondition":
        try:
            return cls(str(value).lower())
        except ValueError:
            logger.bind(tag=TAG).warning(
                f"Unknown dismiss condition '{value}'; treating as anyone_can_dismiss"
            )
            return cls.ANYONE_CAN_DISMISS


class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


class DismissOutcome(str, Enum):
    APPLIED = "applied"
    NOT_APPLIED = "not_applied"


DAY_NAMES: Sequence[str] = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
DEFAULT_CONDITION_VALUE = 3


def normalize_days(days: Sequence[Any]) -> List[str]:
    normalized_days: List[str] = []
    for day in days:
        if day in DAY_NAMES:
            if day not in normalized_days:
                normalized_days.append(day)
        else:
            logger.bind(tag=TAG).warning(f"Invalid alarm day '{day}' encountered; dropping")
    return normalized_days


@dataclass
class Alarm:
    alarm_id: str
    room_id: str
    title: str
    alarm_time: str
    created_by: str
    days: List[str] = field(default_factory=lambda: list(DAY_NAMES))
    is_active: bool = True
    owner_device_id: Optional[str] = None
    condition_type: DismissCondition = DismissCondition.ANYONE_CAN_DISMISS
    condition_value: int = DEFAULT_CONDITION_VALUE
    timezone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    doc_path: Optional[str] = None

    def __post_init__(self):
        self.days = normalize_days(self.days)
        self.alarm_time = self.alarm_time[:5]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "alarmTime": self.alarm_time,
            "days": list(self.days),
            "isActive": self.is_active,
            "createdBy": self.created_by,
            "ownerDeviceId": self.owner_device_id,
            "conditionType": self.condition_type.value,
            "conditionValue": self.condition_value,
            "timezone": self.timezone,
        }


@dataclass
class Trigger:
    trigger_id: str
    alarm_id: str
    room_id: str
    triggered_at: datetime
    status: TriggerStatus = TriggerStatus.RINGING
    dismissed_by: Optional[str] = None
    dismissed_at: Optional[datetime] = None

    @property
    def is_ringing(self) -> bool:
        return self.status == TriggerStatus.RINGING


@dataclass
class TriggerChanged:
    """One event from a trigger change feed."""

    trigger_id: str
    trigger: Optional[Trigger] = None
    removed: bool = False

    @property
    def is_dismissal(self) -> bool:
        if self.removed:
            return True
        return self.trigger is not None and self.trigger.status == TriggerStatus.DISMISSED
