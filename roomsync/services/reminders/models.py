from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class ReminderStatus(str, Enum):
    SCHEDULED = "scheduled"
    NOTIFIED = "notified"
    COMPLETED = "completed"


@dataclass
class Reminder:
    reminder_id: str
    room_id: str
    title: str
    remind_at: datetime
    created_by: str
    description: Optional[str] = None
    status: ReminderStatus = ReminderStatus.SCHEDULED
    allowed_completers: List[str] = field(default_factory=list)
    doc_path: Optional[str] = None

    def recipients(self, member_ids: List[str]) -> List[str]:
        """Creator always; everyone else only if no completers are listed or they are listed."""
        allowed = set(self.allowed_completers)
        return [
            user_id
            for user_id in member_ids
            if user_id == self.created_by or not allowed or user_id in allowed
        ]
