import asyncio
import itertools
import logging
import os
import threading
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import janus
import numpy as np
import sounddevice as sd

from voice_session.domain.errors import AudioDeviceError, CaptureError, DevicePermissionError

logger = logging.getLogger(__name__)


class SounddeviceCapture:
    def __init__(
        self,
        device: str | int | None = None,
        sample_rate: int = 16000,
        block_size: int = 4096,
        queue_size: int = 32,
    ) -> None:
        self._device = device
        self._sample_rate = sample_rate
        self._block_size = block_size
        self._queue_size = queue_size
        self._stream: sd.InputStream | None = None
        self._queue: janus.Queue[np.ndarray] | None = None

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def block_size(self) -> int:
        return self._block_size

    async def start(self) -> None:
        if self._stream is not None:
            return
        self._queue = janus.Queue(maxsize=self._queue_size)
        queue = self._queue

        def audio_callback(indata: np.ndarray, frames: int, time_info, status) -> None:
            if status:
                logger.warning("Audio capture status: %s", status)
            try:
                queue.sync_q.put_nowait(indata[:, 0].copy())
            except janus.SyncQueueFull:
                pass

        device = _resolve_device(self._device, kind="input")
        try:
            self._stream = sd.InputStream(
                device=device,
                samplerate=self._sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self._block_size,
                callback=audio_callback,
            )
            self._stream.start()
        except PermissionError as exc:
            await self._discard_queue()
            self._stream = None
            raise DevicePermissionError(str(exc)) from exc
        except sd.PortAudioError as exc:
            await self._discard_queue()
            self._stream = None
            if _looks_like_permission_denial(exc):
                raise DevicePermissionError(str(exc)) from exc
            raise CaptureError(f"Audio input unavailable: {exc}") from exc
        logger.info(
            "Audio capture started (device=%s, rate=%d, block=%d)",
            device, self._sample_rate, self._block_size,
        )

    async def stop(self) -> None:
        if self._stream is not None and self._stream.active:
            self._stream.stop()
        await self._discard_queue()

    async def close(self) -> None:
        if self._stream is not None:
            if self._stream.active:
                self._stream.stop()
            self._stream.close()
            self._stream = None
        await self._discard_queue()

    async def read_blocks(self) -> AsyncIterator[np.ndarray]:
        queue = self._queue
        if queue is None:
            return
        while True:
            try:
                block = await asyncio.wait_for(queue.async_q.get(), timeout=1.0)
            except asyncio.TimeoutError:
                if self._stream is None or not self._stream.active:
                    logger.warning("Audio capture stream is no longer active")
                    return
                continue
            except janus.AsyncQueueShutDown:
                return
            yield block

    async def _discard_queue(self) -> None:
        if self._queue is not None:
            self._queue.close()
            await self._queue.wait_closed()
            self._queue = None


@dataclass
class _Voice:
    samples: np.ndarray
    start_frame: int
    on_ended: Callable[[], None]

    @property
    def end_frame(self) -> int:
        return self.start_frame + len(self.samples)


class SounddevicePlayback:
    """Output stream that mixes buffers scheduled against its own clock.

    The clock is the number of frames rendered so far divided by the sample
    rate, so a start time maps onto an exact output frame. Completion
    callbacks are delivered on the event loop, never on the PortAudio thread.
    """

    def __init__(
        self,
        device: str | int | None = None,
        sample_rate: int = 24000,
        channels: int = 1,
    ) -> None:
        self._device = device
        self._sample_rate = sample_rate
        self._channels = channels
        self._stream: sd.OutputStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self._voices: dict[int, _Voice] = {}
        self._handles = itertools.count(1)
        self._frames_rendered = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / self._sample_rate

    async def start(self) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        device = _resolve_device(self._device, kind="output")
        try:
            self._stream = sd.OutputStream(
                device=device,
                samplerate=self._sample_rate,
                channels=self._channels,
                dtype="float32",
                callback=self._render,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            raise AudioDeviceError(f"Audio output unavailable: {exc}") from exc
        logger.info("Audio playback started (device=%s, rate=%d)", device, self._sample_rate)

    def schedule(
        self,
        samples: np.ndarray,
        start_time: float,
        on_ended: Callable[[], None],
    ) -> int:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1, self._channels)
        start_frame = int(round(start_time * self._sample_rate))
        with self._lock:
            handle = next(self._handles)
            self._voices[handle] = _Voice(samples=samples, start_frame=start_frame, on_ended=on_ended)
        return handle

    def stop(self, handle: object) -> None:
        with self._lock:
            self._voices.pop(handle, None)

    async def close(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop()
            except sd.PortAudioError:
                logger.warning("Playback stream stop failed")
            self._stream.close()
            self._stream = None
        with self._lock:
            self._voices.clear()

    def _render(self, outdata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            logger.debug("Audio playback status: %s", status)
        outdata.fill(0)
        finished: list[Callable[[], None]] = []
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            for handle, voice in list(self._voices.items()):
                if voice.start_frame >= block_end:
                    continue
                begin = max(block_start, voice.start_frame)
                end = min(block_end, voice.end_frame)
                if end > begin:
                    outdata[begin - block_start : end - block_start] += voice.samples[
                        begin - voice.start_frame : end - voice.start_frame
                    ]
                if voice.end_frame <= block_end:
                    del self._voices[handle]
                    finished.append(voice.on_ended)
            self._frames_rendered = block_end
        np.clip(outdata, -1.0, 1.0, out=outdata)

        loop = self._loop
        if finished and loop is not None and not loop.is_closed():
            for callback in finished:
                loop.call_soon_threadsafe(callback)


def _resolve_device(device: str | int | None, kind: str) -> str | int | None:
    if device is None or device == "":
        return None
    if isinstance(device, int):
        return device
    try:
        return int(device)
    except ValueError:
        pass
    channel_key = "max_input_channels" if kind == "input" else "max_output_channels"
    for i, dev in enumerate(sd.query_devices()):
        if device.lower() in dev["name"].lower() and dev[channel_key] > 0:
            logger.info("Resolved %s device '%s' -> %d (%s)", kind, device, i, dev["name"])
            return i
    if kind == "input":
        os.environ["PIPEWIRE_NODE"] = device
        logger.info("Device '%s' not in PortAudio, set PIPEWIRE_NODE for PipeWire routing", device)
    else:
        logger.warning("Output device '%s' not found, using default", device)
    return None


def _looks_like_permission_denial(exc: sd.PortAudioError) -> bool:
    text = str(exc).lower()
    return "permission" in text or "not authorized" in text or "access denied" in text
