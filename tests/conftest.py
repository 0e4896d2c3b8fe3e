import asyncio
from collections.abc import AsyncIterator

import numpy as np
import pytest

from voice_session.domain.codec import encode
from voice_session.domain.session import LiveSession
from voice_session.domain.errors import ConnectError
from voice_session.ports.transport import ChannelConfig, ChannelEvent


INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
BUFFER_SIZE = 4096


def generate_sine_block(
    num_samples: int = BUFFER_SIZE,
    frequency: float = 440.0,
    amplitude: float = 0.5,
    sample_rate: int = INPUT_SAMPLE_RATE,
) -> np.ndarray:
    t = np.arange(num_samples) / sample_rate
    return (np.sin(2 * np.pi * frequency * t) * amplitude).astype(np.float32)


def generate_silence_block(num_samples: int = BUFFER_SIZE) -> np.ndarray:
    return np.zeros(num_samples, dtype=np.float32)


def pcm_bytes(duration_s: float, sample_rate: int = OUTPUT_SAMPLE_RATE) -> bytes:
    num_samples = int(round(duration_s * sample_rate))
    t = np.arange(num_samples) / sample_rate
    return (np.sin(2 * np.pi * 220 * t) * 0.3 * 32767).astype("<i2").tobytes()


def encoded_chunk(duration_s: float, sample_rate: int = OUTPUT_SAMPLE_RATE) -> str:
    return encode(pcm_bytes(duration_s, sample_rate))


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeCaptureDevice:
    _END = object()

    def __init__(
        self,
        sample_rate: int = INPUT_SAMPLE_RATE,
        block_size: int = BUFFER_SIZE,
        start_error: Exception | None = None,
    ) -> None:
        self._sample_rate = sample_rate
        self._block_size = block_size
        self._start_error = start_error
        self._queue: asyncio.Queue = asyncio.Queue()
        self.started = False
        self.stopped = False
        self.closed = False
        self.calls: list[str] = []

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def block_size(self) -> int:
        return self._block_size

    async def start(self) -> None:
        self.calls.append("start")
        if self._start_error is not None:
            raise self._start_error
        self.started = True

    async def stop(self) -> None:
        self.calls.append("stop")
        self.stopped = True
        self._queue.put_nowait(self._END)

    async def close(self) -> None:
        self.calls.append("close")
        self.closed = True

    async def read_blocks(self) -> AsyncIterator[np.ndarray]:
        while True:
            block = await self._queue.get()
            if block is self._END:
                return
            yield block

    def feed(self, block: np.ndarray) -> None:
        self._queue.put_nowait(block)

    def end_stream(self) -> None:
        self._queue.put_nowait(self._END)


class FakePlaybackDevice:
    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE) -> None:
        self._sample_rate = sample_rate
        self.now = 0.0
        self.scheduled: list[tuple[int, float, float]] = []
        self.stopped_handles: list[int] = []
        self._callbacks: dict[int, object] = {}
        self._next_handle = 1
        self.started = False
        self.closed = False

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def current_time(self) -> float:
        return self.now

    @property
    def start_times(self) -> list[float]:
        return [start for _, start, _ in self.scheduled]

    async def start(self) -> None:
        self.started = True

    def schedule(self, samples, start_time, on_ended):
        handle = self._next_handle
        self._next_handle += 1
        self.scheduled.append((handle, start_time, len(samples) / self._sample_rate))
        self._callbacks[handle] = on_ended
        return handle

    def stop(self, handle) -> None:
        self.stopped_handles.append(handle)
        self._callbacks.pop(handle, None)

    def finish(self, handle: int) -> None:
        callback = self._callbacks.pop(handle)
        callback()

    async def close(self) -> None:
        self.closed = True


class FakeChannel:
    _END = object()

    def __init__(self, send_error: Exception | None = None) -> None:
        self.sent: list = []
        self.closed = False
        self.close_calls = 0
        self.send_error = send_error
        self._events: asyncio.Queue = asyncio.Queue()

    async def send(self, frame) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(frame)

    async def events(self) -> AsyncIterator[ChannelEvent]:
        while True:
            event = await self._events.get()
            if event is self._END:
                return
            yield event

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        self._events.put_nowait(self._END)

    def push(self, *events: ChannelEvent) -> None:
        for event in events:
            self._events.put_nowait(event)


class FakeTransport:
    def __init__(self, open_error: Exception | None = None) -> None:
        self.open_error = open_error
        self.channels: list[FakeChannel] = []
        self.configs: list[ChannelConfig] = []
        self.gate: asyncio.Event | None = None

    @property
    def channel(self) -> FakeChannel:
        return self.channels[-1]

    async def open(self, config: ChannelConfig) -> FakeChannel:
        self.configs.append(config)
        if self.gate is not None:
            await self.gate.wait()
        if self.open_error is not None:
            raise self.open_error
        channel = FakeChannel()
        self.channels.append(channel)
        return channel


class SessionHarness:
    def __init__(self, transport: FakeTransport | None = None, capture_error: Exception | None = None) -> None:
        self.transport = transport or FakeTransport()
        self.captures: list[FakeCaptureDevice] = []
        self.playbacks: list[FakePlaybackDevice] = []
        self.state_changes: list[tuple] = []
        self.state_listeners: list = []
        self.entries: list = []
        self._capture_error = capture_error
        self.session = LiveSession(
            transport=self.transport,
            create_capture=self._create_capture,
            create_playback=self._create_playback,
            channel_config=ChannelConfig(model="models/test-model"),
            buffer_size=BUFFER_SIZE,
            on_state_change=self._record_state_change,
            on_entry=self.entries.append,
        )

    @property
    def capture(self) -> FakeCaptureDevice:
        return self.captures[-1]

    @property
    def playback(self) -> FakePlaybackDevice:
        return self.playbacks[-1]

    @property
    def channel(self) -> FakeChannel:
        return self.transport.channel

    def _record_state_change(self, old, new) -> None:
        self.state_changes.append((old, new))
        for listener in self.state_listeners:
            listener(old, new)

    def _create_capture(self) -> FakeCaptureDevice:
        device = FakeCaptureDevice(start_error=self._capture_error)
        self.captures.append(device)
        return device

    def _create_playback(self) -> FakePlaybackDevice:
        device = FakePlaybackDevice()
        self.playbacks.append(device)
        return device


@pytest.fixture
def fake_capture():
    return FakeCaptureDevice()


@pytest.fixture
def fake_playback():
    return FakePlaybackDevice()


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def harness():
    return SessionHarness()


@pytest.fixture
def missing_key_harness():
    return SessionHarness(transport=FakeTransport(open_error=ConnectError("API key is not configured")))
