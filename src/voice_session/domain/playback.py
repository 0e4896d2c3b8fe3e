import logging
from dataclasses import dataclass

import numpy as np

from voice_session.domain.codec import decode_audio, duration_seconds
from voice_session.domain.errors import DecodeError
from voice_session.domain.slots import SlotKey, SlotMap
from voice_session.ports.audio import AudioPlaybackPort

logger = logging.getLogger(__name__)


@dataclass
class PlaybackChunk:
    samples: np.ndarray
    start_time: float
    duration: float
    handle: object = None


class PlaybackScheduler:
    """Schedules inbound chunks back to back on the output clock.

    The cursor never falls behind the device clock when a chunk arrives, so
    late audio starts "now" instead of queueing behind stale time.
    """

    def __init__(self, device: AudioPlaybackPort, channels: int = 1) -> None:
        self._device = device
        self._sample_rate = device.sample_rate
        self._channels = channels
        self._next_start_time = 0.0
        self._in_flight: SlotMap[PlaybackChunk] = SlotMap()

    @property
    def next_start_time(self) -> float:
        return self._next_start_time

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def in_flight(self) -> list[PlaybackChunk]:
        return self._in_flight.values()

    def enqueue(self, data: bytes, mime_type: str = "") -> PlaybackChunk | None:
        try:
            samples = decode_audio(data, self._sample_rate, self._channels, mime_type)
        except DecodeError as exc:
            logger.warning("Dropping undecodable audio chunk: %s", exc)
            return None

        self._next_start_time = max(self._next_start_time, self._device.current_time)
        duration = duration_seconds(samples, self._sample_rate)
        chunk = PlaybackChunk(samples=samples, start_time=self._next_start_time, duration=duration)
        key = self._in_flight.insert(chunk)
        try:
            chunk.handle = self._device.schedule(
                samples, chunk.start_time, lambda: self._on_chunk_ended(key)
            )
        except Exception:
            self._in_flight.remove(key)
            raise
        self._next_start_time += duration
        logger.debug(
            "Scheduled %.3fs chunk at %.3f (in flight=%d)",
            duration, chunk.start_time, len(self._in_flight),
        )
        return chunk

    def stop_all(self) -> int:
        chunks = self._in_flight.drain()
        for chunk in chunks:
            try:
                self._device.stop(chunk.handle)
            except Exception:
                logger.warning("Failed to stop playback buffer", exc_info=True)
        self._next_start_time = 0.0
        return len(chunks)

    def _on_chunk_ended(self, key: SlotKey) -> None:
        self._in_flight.remove(key)
