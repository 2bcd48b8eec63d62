from __future__ import annotations

import asyncio
from typing import Optional

from roomsync.services.logging import setup_logging
from roomsync.services.alarms import models
from roomsync.services.alarms.ring_session import RingSession

TAG = __name__
logger = setup_logging()


class DismissalSynchronizer:
    """Tear a ring session down when its trigger is dismissed anywhere.

    Firestore invokes watch callbacks on its own thread, so events are handed
    to the session's event loop through an ``asyncio.Queue`` and processed by a
    single consumer task. Delivery is at-least-once; ``handle`` is idempotent.
    """

    def __init__(self, session: RingSession, store):
        self.session = session
        self.store = store
        self._queue: "asyncio.Queue[Optional[models.TriggerChanged]]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._watch = None
        self._consumer: Optional[asyncio.Task] = None
        self._handled = False
        self._stopped = False

    @property
    def trigger_id(self) -> str:
        return self.session.trigger_id

    async def start(self) -> None:
        if self._consumer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._consumer = asyncio.create_task(self._consume())
        self._watch = await asyncio.to_thread(
            self.store.subscribe_trigger_changes, self.trigger_id, self._on_change
        )
        logger.bind(tag=TAG).debug(f"Watching trigger {self.trigger_id} for dismissal")

    def _on_change(self, event: models.TriggerChanged) -> None:
        # Called from the watch thread.
        loop = self._loop
        if loop is None or self._stopped:
            return
        try:
            loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            logger.bind(tag=TAG).debug(
                f"Event loop closed; dropping change for trigger {self.trigger_id}"
            )

    def publish(self, event: models.TriggerChanged) -> None:
        """Feed an event from code already running on the loop (e.g. a room-level watch)."""
        if not self._stopped:
            self._queue.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            if self.handle(event):
                return

    def handle(self, event: models.TriggerChanged) -> bool:
        """Apply one change event. Returns True once the session has been torn down."""
        if event.trigger_id != self.trigger_id:
            return False
        if self._handled:
            return True
        if not event.is_dismissal:
            return False
        self._handled = True
        if self.session.handle_remote_dismissal(event.trigger):
            logger.bind(tag=TAG).info(f"Trigger {self.trigger_id} stopped by remote dismissal")
        else:
            # Our own dismissal echoed back through the feed.
            logger.bind(tag=TAG).debug(f"Ignoring echoed dismissal of {self.trigger_id}")
        self._unsubscribe()
        return True

    def _unsubscribe(self) -> None:
        watch = self._watch
        self._watch = None
        if watch is None:
            return
        try:
            watch.unsubscribe()
        except Exception as exc:
            logger.bind(tag=TAG).debug(f"Unsubscribe for {self.trigger_id} failed: {exc!r}")

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._unsubscribe()
        consumer = self._consumer
        self._consumer = None
        if consumer is not None and not consumer.done():
            if consumer is asyncio.current_task():
                return
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
