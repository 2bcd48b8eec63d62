from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from roomsync.services.logging import setup_logging
from roomsync.services.alarms import firestore_client, scheduler
from roomsync.services.reminders import scheduler as reminder_scheduler

TAG = __name__
logger = setup_logging()


def run_probe(now: Optional[datetime] = None) -> Dict[str, Any]:
    """One scheduler tick: fire due alarms, then notify due reminders."""
    now = now or datetime.now(timezone.utc)
    fired = scheduler.prepare_triggers(now)
    reminders = reminder_scheduler.process_due_reminders(now)
    logger.bind(tag=TAG).info(
        f"Probe at {now.isoformat()}: {len(fired)} alarms triggered, "
        f"{reminders} reminders notified"
    )
    return {
        "ok": True,
        "alarmsTriggered": len(fired),
        "remindersTriggered": reminders,
        "checkedAt": firestore_client.format_datetime(now),
        "triggers": [item.to_payload() for item in fired],
    }


def check_alarms_reminders(request) -> Dict[str, Any]:
    """HTTP entrypoint for Cloud Scheduler."""
    return run_probe()
