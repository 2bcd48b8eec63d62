from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from roomsync.services.logging import setup_logging

TAG = __name__
logger = setup_logging()


@dataclass
class AudioSource:
    """Audio handed to the device sink: a fetched asset or synthesized PCM."""

    data: bytes
    url: Optional[str] = None
    loop: bool = True
    sample_rate: Optional[int] = None
    content_type: Optional[str] = None


@dataclass
class NotificationOptions:
    title: str
    body: str
    tag: str
    require_interaction: bool = True
    silent: bool = False
    high_priority: bool = False


class DeviceEffects:
    """Device-level side effects used by ring sessions.

    The base class is a headless device: it has no speaker, no vibration
    motor and no notification tray, so playback reports failure and the
    rest only logs. Platform integrations subclass it.
    """

    async def play_audio(self, source: AudioSource) -> bool:
        logger.bind(tag=TAG).debug("No audio output on this device")
        return False

    def stop_audio(self) -> None:
        return None

    def vibrate(self, pattern: Sequence[int]) -> None:
        if pattern:
            logger.bind(tag=TAG).info("Alarm ringing...")

    async def show_local_notification(self, options: NotificationOptions) -> bool:
        logger.bind(tag=TAG).info(f"[{options.tag}] {options.title}: {options.body}")
        return True
