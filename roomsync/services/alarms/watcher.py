from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

from google.api_core import exceptions as gcloud_exceptions

from roomsync.services.logging import setup_logging
from roomsync.services.alarms import device_role, models
from roomsync.services.alarms.config import AlarmSettings, get_settings
from roomsync.services.alarms.dismissal import DismissalSynchronizer
from roomsync.services.alarms.effects import DeviceEffects
from roomsync.services.alarms.ring_session import RingSession
from roomsync.services.alarms.store import AlarmNotFound

TAG = __name__
logger = setup_logging()

SessionCallback = Callable[[RingSession], None]

# Trigger ids remembered so a redelivered trigger never opens a second session.
SEEN_LIMIT = 256


@dataclass
class _ActiveAlarm:
    session: RingSession
    synchronizer: DismissalSynchronizer


class RoomAlarmWatcher:
    """Runs ring sessions on this device for every ringing trigger in a room.

    The room-level feed discovers new triggers; each trigger then gets its own
    ``RingSession`` and ``DismissalSynchronizer``. A trigger id only ever gets
    one session, even if the feed redelivers it.
    """

    def __init__(
        self,
        room_id: str,
        user_id: str,
        device_id: str,
        store,
        effects: Optional[DeviceEffects] = None,
        settings: Optional[AlarmSettings] = None,
        on_ringing: Optional[SessionCallback] = None,
        on_dismissed: Optional[Callable[[models.Trigger], None]] = None,
    ):
        self.room_id = room_id
        self.user_id = user_id
        self.device_id = device_id
        self.store = store
        self.effects = effects or DeviceEffects()
        self.settings = settings or get_settings()
        self.on_ringing = on_ringing
        self.on_dismissed = on_dismissed

        self.active: Dict[str, _ActiveAlarm] = {}
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._closing: Set[asyncio.Task] = set()
        self._queue: "asyncio.Queue[Optional[models.TriggerChanged]]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._watch = None
        self._consumer: Optional[asyncio.Task] = None
        self._stopped = False

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            ringing = await asyncio.to_thread(self.store.list_ringing_triggers, self.room_id)
        except gcloud_exceptions.GoogleAPICallError as exc:
            logger.bind(tag=TAG).warning(
                f"Failed to list ringing triggers for room {self.room_id}: {exc}"
            )
            ringing = []
        for trigger in ringing:
            await self._open(trigger)
        self._consumer = asyncio.create_task(self._consume())
        self._watch = await asyncio.to_thread(
            self.store.subscribe_room_triggers, self.room_id, self._on_change
        )
        logger.bind(tag=TAG).info(
            f"Watching alarms for room {self.room_id} on device {self.device_id}"
        )

    def _on_change(self, event: models.TriggerChanged) -> None:
        loop = self._loop
        if loop is None or self._stopped:
            return
        try:
            loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            logger.bind(tag=TAG).debug("Event loop closed; dropping room trigger change")

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            try:
                await self._route(event)
            except Exception:
                logger.bind(tag=TAG).exception(
                    f"Failed to handle change for trigger {event.trigger_id}"
                )

    async def _route(self, event: models.TriggerChanged) -> None:
        entry = self.active.get(event.trigger_id)
        if entry is not None:
            if event.is_dismissal:
                entry.synchronizer.publish(event)
            return
        if event.removed or event.trigger is None or not event.trigger.is_ringing:
            return
        await self._open(event.trigger)

    async def _resolve_alarm(self, trigger: models.Trigger) -> Optional[models.Alarm]:
        try:
            alarm = await asyncio.to_thread(
                self.store.get_alarm, trigger.room_id or self.room_id, trigger.alarm_id
            )
        except AlarmNotFound:
            logger.bind(tag=TAG).warning(
                f"Trigger {trigger.trigger_id} references missing alarm {trigger.alarm_id}"
            )
            return None
        if alarm.owner_device_id is None and alarm.created_by == self.user_id:
            # Alarms created before device binding: the creator's first device claims it.
            claimed = await asyncio.to_thread(
                self.store.claim_owner_device, alarm.room_id, alarm.alarm_id, self.device_id
            )
            if claimed:
                alarm.owner_device_id = self.device_id
            else:
                alarm = await asyncio.to_thread(
                    self.store.get_alarm, alarm.room_id, alarm.alarm_id
                )
        return alarm

    def _remember(self, trigger_id: str) -> None:
        self._seen[trigger_id] = None
        while len(self._seen) > SEEN_LIMIT:
            self._seen.popitem(last=False)

    async def _open(self, trigger: models.Trigger) -> Optional[RingSession]:
        if self._stopped or trigger.trigger_id in self._seen:
            return None
        self._remember(trigger.trigger_id)
        try:
            alarm = await self._resolve_alarm(trigger)
        except gcloud_exceptions.GoogleAPICallError as exc:
            logger.bind(tag=TAG).warning(
                f"Failed to load alarm for trigger {trigger.trigger_id}: {exc}"
            )
            self._seen.pop(trigger.trigger_id, None)
            return None
        if alarm is None:
            return None

        is_owner = device_role.is_owning_device(self.user_id, self.device_id, alarm, trigger)
        session = RingSession(
            trigger,
            alarm,
            user_id=self.user_id,
            is_owner=is_owner,
            store=self.store,
            effects=self.effects,
            settings=self.settings,
            on_dismissed=self._session_dismissed,
        )
        synchronizer = DismissalSynchronizer(session, self.store)
        self.active[trigger.trigger_id] = _ActiveAlarm(session, synchronizer)
        # Subscribe first so a dismissal racing the start is still observed.
        await synchronizer.start()
        await session.start()
        if not session.is_active:
            entry = self.active.pop(trigger.trigger_id, None)
            if entry is not None:
                await entry.synchronizer.stop()
            return session
        if self.on_ringing:
            self.on_ringing(session)
        return session

    def _session_dismissed(self, trigger: models.Trigger) -> None:
        entry = self.active.pop(trigger.trigger_id, None)
        if entry is not None:
            task = asyncio.ensure_future(entry.synchronizer.stop())
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        if self.on_dismissed:
            self.on_dismissed(trigger)

    def session(self, trigger_id: str) -> Optional[RingSession]:
        entry = self.active.get(trigger_id)
        return entry.session if entry else None

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        watch = self._watch
        self._watch = None
        if watch is not None:
            try:
                watch.unsubscribe()
            except Exception as exc:
                logger.bind(tag=TAG).debug(f"Room unsubscribe failed: {exc!r}")
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None
        entries = list(self.active.values())
        self.active.clear()
        for entry in entries:
            entry.session.teardown()
            await entry.synchronizer.stop()
        if self._closing:
            results = await asyncio.gather(*list(self._closing), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.bind(tag=TAG).warning(f"Closing a dismissal watch failed: {result!r}")
        logger.bind(tag=TAG).info(f"Stopped watching alarms for room {self.room_id}")
