from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class Notification:
    """In-app notification record fanned out to one room member."""

    user_id: str
    room_id: str
    type: str
    title: str
    body: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    is_read: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    notification_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "roomId": self.room_id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "referenceType": self.reference_type,
            "referenceId": self.reference_id,
            "isRead": self.is_read,
            "createdAt": self.created_at.astimezone(timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
        }
