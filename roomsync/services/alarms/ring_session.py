from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Set

from google.api_core import exceptions as gcloud_exceptions

from roomsync.services.logging import setup_logging
from roomsync.services.alarms import models, policy
from roomsync.services.alarms.config import AlarmSettings, get_settings
from roomsync.services.alarms.effects import DeviceEffects, NotificationOptions
from roomsync.services.alarms.sounds import AlarmSoundPlayer

TAG = __name__
logger = setup_logging()

DismissedCallback = Callable[[models.Trigger], None]


class SessionState(str, Enum):
    IDLE = "idle"
    OWNER_RINGING = "owner_ringing"
    OBSERVER_SILENT = "observer_silent"
    DISMISSED = "dismissed"


class DismissNotAllowed(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RingSession:
    """Per-device state machine for one ringing trigger.

    The owning device plays sound, vibrates and counts rings, dismissing
    automatically once ``max_rings`` is reached. Every other device stays
    silent and only shows a notification. Any room member may dismiss; the
    local stop always happens before the store is asked to record it.
    """

    def __init__(
        self,
        trigger: models.Trigger,
        alarm: models.Alarm,
        *,
        user_id: str,
        is_owner: bool,
        store,
        effects: Optional[DeviceEffects] = None,
        settings: Optional[AlarmSettings] = None,
        player: Optional[AlarmSoundPlayer] = None,
        on_dismissed: Optional[DismissedCallback] = None,
    ):
        self.trigger = trigger
        self.alarm = alarm
        self.user_id = user_id
        self.is_owner = is_owner
        self.store = store
        self.effects = effects or DeviceEffects()
        self.settings = settings or get_settings()
        self.player = player
        if self.player is None and is_owner:
            self.player = AlarmSoundPlayer.from_settings(self.effects, self.settings)
        self.on_dismissed = on_dismissed

        self.state = SessionState.IDLE
        self.ring_count = 0
        self.in_app_only = False
        self.dismiss_outcome: Optional[models.DismissOutcome] = None
        self.acknowledged: Set[str] = set()
        self._ring_task: Optional[asyncio.Task] = None
        self._ack_task: Optional[asyncio.Task] = None
        self._ack_watch = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._torn_down = False
        self._notified = False

    async def __aenter__(self) -> "RingSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.teardown()

    @property
    def trigger_id(self) -> str:
        return self.trigger.trigger_id

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.OWNER_RINGING, SessionState.OBSERVER_SILENT)

    def display_ring_count(self, now: Optional[datetime] = None) -> int:
        """Rings elapsed since ``triggered_at``; identical on every device.

        Separate from ``ring_count``, which only the owner's local timer drives.
        """
        return policy.elapsed_ring_count(
            self.trigger.triggered_at, self.settings.ring_interval, now
        )

    async def start(self) -> SessionState:
        if self.state != SessionState.IDLE:
            return self.state
        if not self.trigger.is_ringing:
            logger.bind(tag=TAG).info(
                f"Trigger {self.trigger_id} is already {self.trigger.status.value}; not ringing"
            )
            self.teardown()
            return self.state

        self._loop = asyncio.get_running_loop()
        if self.alarm.condition_type == models.DismissCondition.MULTIPLE_ACK:
            self._ack_task = asyncio.create_task(self._watch_acknowledgments())
        if self.is_owner:
            self.state = SessionState.OWNER_RINGING
            self._ring_task = asyncio.create_task(self._ring_loop())
            logger.bind(tag=TAG).info(
                f"Alarm '{self.alarm.title}' ringing on owner device (trigger={self.trigger_id})"
            )
            await self.player.start()
            if self.state != SessionState.OWNER_RINGING:
                return self.state
            await self._notify(
                NotificationOptions(
                    title=f"Alarm: {self.alarm.title}",
                    body=f"It's {self.alarm.alarm_time}! Tap to dismiss.",
                    tag=f"alarm-{self.trigger_id}",
                    require_interaction=True,
                    silent=False,
                    high_priority=True,
                )
            )
        else:
            self.state = SessionState.OBSERVER_SILENT
            logger.bind(tag=TAG).info(
                f"Alarm '{self.alarm.title}' active on another device; observing silently "
                f"(trigger={self.trigger_id})"
            )
            await self._notify(
                NotificationOptions(
                    title=f"Roommate's alarm: {self.alarm.title}",
                    body="A roommate's alarm is ringing. You can dismiss it.",
                    tag=f"alarm-{self.trigger_id}",
                    require_interaction=True,
                    silent=True,
                )
            )
        return self.state

    async def _notify(self, options: NotificationOptions) -> None:
        try:
            shown = await self.effects.show_local_notification(options)
        except Exception as exc:
            logger.bind(tag=TAG).warning(f"Local notification failed: {exc!r}")
            shown = False
        if not shown:
            self.in_app_only = True
            logger.bind(tag=TAG).info(
                f"Notifications unavailable; alerting in-app only (trigger={self.trigger_id})"
            )

    async def _ring_loop(self) -> None:
        while self.state == SessionState.OWNER_RINGING:
            await asyncio.sleep(self.settings.ring_interval)
            if self.state != SessionState.OWNER_RINGING:
                return
            self.ring_count += 1
            logger.bind(tag=TAG).debug(f"Trigger {self.trigger_id} ring #{self.ring_count}")
            if self.ring_count >= self.settings.max_rings:
                logger.bind(tag=TAG).info(
                    f"Trigger {self.trigger_id} reached {self.ring_count} rings; auto-dismissing"
                )
                await self._dismiss(self.user_id)
                return

    @property
    def acknowledgments(self) -> List[str]:
        return sorted(self.acknowledged)

    async def _watch_acknowledgments(self) -> None:
        try:
            watch = await asyncio.to_thread(
                self.store.subscribe_acknowledgments, self.trigger_id, self._on_acknowledgments
            )
        except gcloud_exceptions.GoogleAPICallError as exc:
            logger.bind(tag=TAG).warning(
                f"Failed to watch acknowledgments for {self.trigger_id}: {exc}"
            )
            return
        if self._torn_down:
            self._release_watch(watch)
            return
        self._ack_watch = watch

    def _on_acknowledgments(self, user_ids: List[str]) -> None:
        # Called from the watch thread.
        loop = self._loop
        if loop is None or self._torn_down:
            return
        try:
            loop.call_soon_threadsafe(self.acknowledged.update, user_ids)
        except RuntimeError:
            logger.bind(tag=TAG).debug(
                f"Event loop closed; dropping acknowledgments for {self.trigger_id}"
            )

    def _release_watch(self, watch) -> None:
        try:
            watch.unsubscribe()
        except Exception as exc:
            logger.bind(tag=TAG).debug(
                f"Acknowledgment unsubscribe for {self.trigger_id} failed: {exc!r}"
            )

    async def acknowledge(self, user_id: str) -> bool:
        try:
            created = await asyncio.to_thread(
                self.store.acknowledge_trigger, self.trigger_id, user_id
            )
        except gcloud_exceptions.GoogleAPICallError as exc:
            logger.bind(tag=TAG).warning(f"Failed to acknowledge trigger {self.trigger_id}: {exc}")
            return False
        self.acknowledged.add(user_id)
        return created

    async def dismiss(self, user_id: Optional[str] = None) -> Optional[models.DismissOutcome]:
        """Manual dismissal by ``user_id`` (defaults to this device's user).

        The dismiss condition is evaluated from local state only; acknowledgments
        arrive through the store's feed, so a slow store never delays the stop.
        """
        user_id = user_id or self.user_id
        if self.state == SessionState.DISMISSED:
            return models.DismissOutcome.NOT_APPLIED
        acknowledgments = self.acknowledgments
        ring_count = self.display_ring_count()
        if not policy.can_dismiss(self.alarm, user_id, ring_count, acknowledgments):
            raise DismissNotAllowed(
                policy.status_message(self.alarm, user_id, ring_count, acknowledgments)
            )
        return await self._dismiss(user_id)

    async def _dismiss(self, user_id: str) -> Optional[models.DismissOutcome]:
        if self._torn_down:
            return models.DismissOutcome.NOT_APPLIED
        self.teardown()
        try:
            outcome = await asyncio.to_thread(
                self.store.update_trigger_status,
                self.trigger_id,
                models.TriggerStatus.DISMISSED,
                user_id,
            )
        except gcloud_exceptions.GoogleAPICallError as exc:
            logger.bind(tag=TAG).warning(
                f"Dismissal of {self.trigger_id} not confirmed by the store: {exc}; "
                "local alarm already stopped"
            )
            outcome = None
        else:
            if outcome == models.DismissOutcome.NOT_APPLIED:
                logger.bind(tag=TAG).info(
                    f"Trigger {self.trigger_id} was already dismissed elsewhere"
                )
        self.dismiss_outcome = outcome
        self._finish(
            dismissed_by=user_id if outcome == models.DismissOutcome.APPLIED else None
        )
        return outcome

    def handle_remote_dismissal(self, trigger: Optional[models.Trigger] = None) -> bool:
        """Tear down because the trigger was dismissed elsewhere. False if already handled."""
        if self._torn_down:
            return False
        logger.bind(tag=TAG).info(
            f"Trigger {self.trigger_id} dismissed remotely"
            + (f" by {trigger.dismissed_by}" if trigger and trigger.dismissed_by else "")
        )
        if trigger is not None:
            self.trigger = trigger
        self.teardown()
        self._finish(dismissed_by=trigger.dismissed_by if trigger else None)
        return True

    def _finish(self, dismissed_by: Optional[str]) -> None:
        if self._notified:
            return
        self._notified = True
        if self.trigger.is_ringing:
            self.trigger.status = models.TriggerStatus.DISMISSED
            self.trigger.dismissed_by = dismissed_by
            self.trigger.dismissed_at = datetime.now(timezone.utc)
        if self.on_dismissed:
            try:
                self.on_dismissed(self.trigger)
            except Exception:
                logger.bind(tag=TAG).exception("on_dismissed callback failed")

    def teardown(self) -> None:
        """Stop timers and audio. Safe to call any number of times, from any exit path."""
        if self._torn_down:
            return
        self._torn_down = True
        self.state = SessionState.DISMISSED
        task = self._ring_task
        self._ring_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        watch = self._ack_watch
        self._ack_watch = None
        if watch is not None:
            self._release_watch(watch)
        if self.player is not None:
            self.player.stop()
        try:
            self.effects.stop_audio()
        except Exception as exc:
            logger.bind(tag=TAG).debug(f"Releasing audio failed: {exc!r}")
