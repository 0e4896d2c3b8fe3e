import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from voice_session.domain.codec import encode, pcm_float_to_int16, pcm_mime_type
from voice_session.domain.errors import ChannelError
from voice_session.domain.level_meter import LevelMeter
from voice_session.ports.audio import AudioCapturePort
from voice_session.ports.transport import ChannelPort

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 4096
DEFAULT_SEND_QUEUE_SIZE = 64


@dataclass(frozen=True, eq=False)
class AudioFrame:
    samples: np.ndarray
    data: str
    mime_type: str
    sample_rate: int

    @property
    def num_samples(self) -> int:
        return len(self.samples)


def make_frame(samples: np.ndarray, sample_rate: int) -> AudioFrame:
    pcm = pcm_float_to_int16(samples)
    pcm.flags.writeable = False
    return AudioFrame(
        samples=pcm,
        data=encode(pcm.astype("<i2").tobytes()),
        mime_type=pcm_mime_type(sample_rate),
        sample_rate=sample_rate,
    )


class FrameBuffer:
    def __init__(self, frame_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if frame_size <= 0:
            raise ValueError(f"frame_size must be positive, got {frame_size}")
        self._frame_size = frame_size
        self._pending = np.empty(0, dtype=np.float32)

    @property
    def frame_size(self) -> int:
        return self._frame_size

    @property
    def pending(self) -> int:
        return len(self._pending)

    def push(self, samples: np.ndarray) -> list[np.ndarray]:
        samples = np.asarray(samples, dtype=np.float32).ravel()
        if not self._pending.size and len(samples) == self._frame_size:
            return [samples]

        buffered = np.concatenate((self._pending, samples))
        complete = len(buffered) // self._frame_size
        frames = [
            buffered[i * self._frame_size : (i + 1) * self._frame_size]
            for i in range(complete)
        ]
        self._pending = buffered[complete * self._frame_size :]
        return frames

    def clear(self) -> None:
        self._pending = np.empty(0, dtype=np.float32)


class FrameSender:
    """Bounded outbound queue drained by a background task.

    ``submit`` never blocks the capture side: when the queue is full the
    oldest frame is dropped. A failed send ends ``run`` with ChannelError.
    """

    def __init__(self, channel: ChannelPort, max_queue: int = DEFAULT_SEND_QUEUE_SIZE) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[AudioFrame] = asyncio.Queue(maxsize=max_queue)
        self._sent = 0
        self._dropped = 0

    @property
    def sent_count(self) -> int:
        return self._sent

    @property
    def dropped_count(self) -> int:
        return self._dropped

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def submit(self, frame: AudioFrame) -> None:
        try:
            self._queue.put_nowait(frame)
            return
        except asyncio.QueueFull:
            pass
        self._queue.get_nowait()
        self._dropped += 1
        if self._dropped == 1 or self._dropped % 50 == 0:
            logger.warning("Send queue full, dropped %d frame(s) so far", self._dropped)
        self._queue.put_nowait(frame)

    async def run(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self._channel.send(frame)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise ChannelError(f"Failed to send audio frame: {exc}") from exc
            self._sent += 1

    def clear(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()


class CapturePipeline:
    def __init__(
        self,
        capture: AudioCapturePort,
        send: Callable[[AudioFrame], None],
        can_send: Callable[[], bool],
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        sample_rate: int = 16000,
        level_meter: LevelMeter | None = None,
    ) -> None:
        self._capture = capture
        self._send = send
        self._can_send = can_send
        self._framer = FrameBuffer(buffer_size)
        self._sample_rate = sample_rate
        self._level_meter = level_meter
        self._frames_sent = 0

    @property
    def frames_sent(self) -> int:
        return self._frames_sent

    def process_block(self, samples: np.ndarray) -> int:
        if self._level_meter is not None:
            self._level_meter.push(samples)

        if not self._can_send():
            self._framer.clear()
            return 0

        sent = 0
        for chunk in self._framer.push(samples):
            self._send(make_frame(chunk, self._sample_rate))
            sent += 1
        self._frames_sent += sent
        return sent

    async def run(self) -> None:
        async for block in self._capture.read_blocks():
            self.process_block(block)
        logger.info("Capture stream ended after %d frames", self._frames_sent)
