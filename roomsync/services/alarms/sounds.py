from __future__ import annotations

import asyncio
import math
from typing import List, Optional, Sequence, Tuple

import aiohttp

from roomsync.services.logging import setup_logging
from roomsync.services.alarms.config import AlarmSettings
from roomsync.services.alarms.effects import AudioSource, DeviceEffects

TAG = __name__
logger = setup_logging()

TONE_SAMPLE_RATE = 24000


def synthesize_beep(
    frequency: float,
    duration: float,
    sample_rate: int = TONE_SAMPLE_RATE,
    amplitude: float = 0.5,
) -> bytes:
    """Mono 16-bit little-endian PCM sine beep that fades out over its duration."""
    samples = max(1, int(duration * sample_rate))
    frames = bytearray()
    for i in range(samples):
        envelope = 1.0 - (i / samples)
        value = int(
            32767 * amplitude * envelope * math.sin(2 * math.pi * frequency * i / sample_rate)
        )
        frames.extend(value.to_bytes(2, byteorder="little", signed=True))
    return bytes(frames)


class SoundStrategy:
    name = "base"

    async def start(self, effects: DeviceEffects) -> bool:
        raise NotImplementedError

    def stop(self, effects: DeviceEffects) -> None:
        effects.stop_audio()


class RemoteSoundStrategy(SoundStrategy):
    """Fetch a hosted alarm sound and loop it on the device."""

    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        self.name = f"remote:{url}"

    async def _fetch(self) -> Tuple[bytes, Optional[str]]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.url) as response:
                response.raise_for_status()
                return await response.read(), response.content_type

    async def start(self, effects: DeviceEffects) -> bool:
        try:
            data, content_type = await self._fetch()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.bind(tag=TAG).warning(f"Failed to load alarm sound {self.url}: {exc!r}")
            return False
        if not data:
            logger.bind(tag=TAG).warning(f"Alarm sound {self.url} was empty")
            return False
        return await effects.play_audio(
            AudioSource(data=data, url=self.url, loop=True, content_type=content_type)
        )


class ToneStrategy(SoundStrategy):
    """Locally synthesized alternating beep, repeated at a fixed cadence."""

    name = "tone"

    def __init__(
        self,
        frequencies: Sequence[float],
        beep_duration: float,
        interval: float,
        sample_rate: int = TONE_SAMPLE_RATE,
    ):
        self.frequencies = list(frequencies) or [880.0]
        self.beep_duration = beep_duration
        self.interval = interval
        self.sample_rate = sample_rate
        self._task: Optional[asyncio.Task] = None

    def _source(self, pcm: bytes) -> AudioSource:
        return AudioSource(data=pcm, loop=False, sample_rate=self.sample_rate)

    async def start(self, effects: DeviceEffects) -> bool:
        beeps = [
            synthesize_beep(freq, self.beep_duration, self.sample_rate)
            for freq in self.frequencies
        ]
        if not await effects.play_audio(self._source(beeps[0])):
            return False
        self._task = asyncio.create_task(self._loop(effects, beeps))
        return True

    async def _loop(self, effects: DeviceEffects, beeps: List[bytes]) -> None:
        index = 1
        while True:
            await asyncio.sleep(self.interval)
            try:
                await effects.play_audio(self._source(beeps[index % len(beeps)]))
            except Exception as exc:
                logger.bind(tag=TAG).debug(f"Beep playback failed inside loop: {exc!r}")
            index += 1

    def stop(self, effects: DeviceEffects) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        super().stop(effects)


class SilentStrategy(SoundStrategy):
    """Last resort: the alarm keeps ringing visually without sound."""

    name = "silent"

    async def start(self, effects: DeviceEffects) -> bool:
        logger.bind(tag=TAG).warning("All alarm sounds failed; ringing visually only")
        return True

    def stop(self, effects: DeviceEffects) -> None:
        return None


class AlarmSoundPlayer:
    """Tries each strategy in order; the first one that starts wins."""

    def __init__(
        self,
        effects: DeviceEffects,
        strategies: Sequence[SoundStrategy],
        vibration_pattern: Sequence[int] = (),
        vibration_repeat: float = 2.0,
    ):
        self.effects = effects
        self.strategies = list(strategies)
        self.vibration_pattern = tuple(vibration_pattern)
        self.vibration_repeat = vibration_repeat
        self._active: Optional[SoundStrategy] = None
        self._vibration_task: Optional[asyncio.Task] = None
        self._start_task: Optional[asyncio.Task] = None
        self._started = False
        self._stopped = False

    @classmethod
    def from_settings(cls, effects: DeviceEffects, settings: AlarmSettings) -> "AlarmSoundPlayer":
        strategies: List[SoundStrategy] = [
            RemoteSoundStrategy(url, settings.sound_load_timeout)
            for url in settings.sound_urls
        ]
        strategies.append(
            ToneStrategy(
                settings.beep_frequencies,
                settings.beep_duration,
                settings.beep_interval,
            )
        )
        strategies.append(SilentStrategy())
        return cls(
            effects,
            strategies,
            vibration_pattern=settings.vibration_pattern_ms,
            vibration_repeat=settings.vibration_repeat,
        )

    @property
    def active_strategy(self) -> Optional[str]:
        return self._active.name if self._active else None

    @property
    def is_playing(self) -> bool:
        return self._started and not self._stopped

    async def start(self) -> Optional[str]:
        if self._started or self._stopped:
            logger.bind(tag=TAG).debug("Alarm sound already started; skipping")
            return self.active_strategy
        self._started = True
        if self.vibration_pattern:
            self._vibration_task = asyncio.create_task(self._vibrate_loop())

        # stop() cancels this task so a strategy still loading never plays afterwards.
        self._start_task = asyncio.create_task(self._start_first())
        try:
            return await self._start_task
        except asyncio.CancelledError:
            if not self._stopped:
                raise
            return None
        finally:
            self._start_task = None

    async def _start_first(self) -> Optional[str]:
        for strategy in self.strategies:
            try:
                ok = await strategy.start(self.effects)
            except asyncio.CancelledError:
                self._safe_stop(strategy)
                raise
            except Exception as exc:
                logger.bind(tag=TAG).warning(f"Sound strategy {strategy.name} failed: {exc!r}")
                ok = False
            if self._stopped:
                # Stopped while this strategy was starting; release what it acquired.
                if ok:
                    self._safe_stop(strategy)
                return None
            if ok:
                self._active = strategy
                logger.bind(tag=TAG).info(f"Alarm sound playing via {strategy.name}")
                return strategy.name
        return None

    async def _vibrate_loop(self) -> None:
        while True:
            try:
                self.effects.vibrate(self.vibration_pattern)
            except Exception as exc:
                logger.bind(tag=TAG).warning(f"Vibration failed: {exc!r}")
            await asyncio.sleep(self.vibration_repeat)

    def _safe_stop(self, strategy: SoundStrategy) -> None:
        try:
            strategy.stop(self.effects)
        except Exception as exc:
            logger.bind(tag=TAG).warning(f"Error stopping {strategy.name}: {exc!r}")

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        task = self._start_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if self._vibration_task and not self._vibration_task.done():
            self._vibration_task.cancel()
        self._vibration_task = None
        if self.vibration_pattern:
            try:
                self.effects.vibrate(())
            except Exception as exc:
                logger.bind(tag=TAG).debug(f"Stopping vibration failed: {exc!r}")
        if self._active is not None:
            self._safe_stop(self._active)
            self._active = None
        logger.bind(tag=TAG).info("Alarm sound stopped")
