import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from voice_session.domain.capture import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_SEND_QUEUE_SIZE,
    AudioFrame,
    CapturePipeline,
    FrameSender,
)
from voice_session.domain.codec import decode
from voice_session.domain.errors import DecodeError, DevicePermissionError
from voice_session.domain.level_meter import LevelMeter
from voice_session.domain.playback import PlaybackScheduler
from voice_session.domain.state import (
    CLOSE_IGNORED_STATES,
    STARTABLE_STATES,
    ConnectionState,
    status_text,
    validate_transition,
)
from voice_session.domain.turns import TranscriptEntry, TurnAccumulator
from voice_session.ports.audio import AudioCapturePort, AudioPlaybackPort
from voice_session.ports.transport import (
    AudioChunk,
    ChannelClosed,
    ChannelConfig,
    ChannelEvent,
    ChannelFailed,
    ChannelPort,
    InputTranscription,
    Interrupted,
    OutputTranscription,
    TransportPort,
    TurnComplete,
)

logger = logging.getLogger(__name__)

PERMISSION_DENIED_MESSAGE = (
    "Microphone permission was denied. Please allow microphone access and try again."
)
CONNECTION_ERROR_MESSAGE = "A connection error occurred."
UNKNOWN_START_ERROR_MESSAGE = "An unknown error occurred while starting the session."

StateListener = Callable[[ConnectionState, ConnectionState], None]
EntryListener = Callable[[TranscriptEntry], None]


@dataclass
class SessionResources:
    """Everything a live session owns.

    Attached to the session only while CONNECTING, CONNECTED or CLOSING;
    fields fill in as setup progresses and are emptied by teardown.
    """

    level_meter: LevelMeter | None = None
    capture: AudioCapturePort | None = None
    playback_device: AudioPlaybackPort | None = None
    scheduler: PlaybackScheduler | None = None
    channel: ChannelPort | None = None
    sender: FrameSender | None = None
    pipeline: CapturePipeline | None = None
    tasks: list[asyncio.Task] = field(default_factory=list)


@dataclass(frozen=True)
class SessionSnapshot:
    state: ConnectionState
    status: str
    transcript: tuple[TranscriptEntry, ...]
    error_message: str | None
    level: float
    peak: float
    in_flight: int

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "status_text": self.status,
            "transcript": [entry.to_dict() for entry in self.transcript],
            "error": self.error_message,
            "level": round(self.level, 4),
            "peak": round(self.peak, 4),
            "in_flight": self.in_flight,
        }


class LiveSession:
    def __init__(
        self,
        transport: TransportPort,
        create_capture: Callable[[], AudioCapturePort],
        create_playback: Callable[[], AudioPlaybackPort],
        channel_config: ChannelConfig,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        send_queue_size: int = DEFAULT_SEND_QUEUE_SIZE,
        fft_size: int = 2048,
        on_state_change: StateListener | None = None,
        on_entry: EntryListener | None = None,
    ) -> None:
        self._transport = transport
        self._create_capture = create_capture
        self._create_playback = create_playback
        self._channel_config = channel_config
        self._buffer_size = buffer_size
        self._send_queue_size = send_queue_size
        self._fft_size = fft_size
        self._on_state_change = on_state_change
        self._on_entry = on_entry

        self._state = ConnectionState.IDLE
        self._transcript: list[TranscriptEntry] = []
        self._accumulator = TurnAccumulator()
        self._error_message: str | None = None
        self._resources: SessionResources | None = None
        self._generation = 0
        self._teardowns_running = 0
        self._teardown_idle = asyncio.Event()
        self._teardown_idle.set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def transcript(self) -> tuple[TranscriptEntry, ...]:
        return tuple(self._transcript)

    @property
    def error_message(self) -> str | None:
        return self._error_message

    @property
    def status(self) -> str:
        return status_text(self._state, self._error_message)

    @property
    def level_meter(self) -> LevelMeter | None:
        return self._resources.level_meter if self._resources else None

    @property
    def next_start_time(self) -> float:
        scheduler = self._resources.scheduler if self._resources else None
        return scheduler.next_start_time if scheduler else 0.0

    @property
    def in_flight_count(self) -> int:
        scheduler = self._resources.scheduler if self._resources else None
        return scheduler.in_flight_count if scheduler else 0

    def snapshot(self) -> SessionSnapshot:
        meter = self.level_meter
        return SessionSnapshot(
            state=self._state,
            status=self.status,
            transcript=self.transcript,
            error_message=self._error_message,
            level=meter.rms if meter else 0.0,
            peak=meter.peak if meter else 0.0,
            in_flight=self.in_flight_count,
        )

    async def start(self) -> None:
        if self._state not in STARTABLE_STATES:
            logger.debug("Start ignored while %s", self._state.name)
            return

        self._transition_to(ConnectionState.CONNECTING)
        self._transcript.clear()
        self._accumulator.clear()
        self._error_message = None

        self._generation += 1
        generation = self._generation
        resources = SessionResources(level_meter=LevelMeter(self._fft_size))
        self._resources = resources

        opened: list = []
        try:
            await self._teardown_idle.wait()
            if self._superseded(generation):
                return

            await self._open_devices(resources, opened)
            if self._superseded(generation):
                await _close_devices_quietly(opened)
                return
            self._begin_capture(resources, generation)

            channel = await self._transport.open(self._channel_config)
            if self._superseded(generation):
                await _close_channel_quietly(channel)
                return
            resources.channel = channel
        except asyncio.CancelledError:
            if not self._superseded(generation):
                await self._fail("Session start was cancelled.")
            raise
        except Exception as exc:
            if self._superseded(generation):
                logger.warning("Start abandoned after close: %s", exc)
                return
            logger.error("Failed to start session: %s", exc)
            await self._fail(describe_start_failure(exc))
            return

        self._transition_to(ConnectionState.CONNECTED)
        self._begin_streaming(resources, generation)

    async def close(self) -> None:
        if self._state in CLOSE_IGNORED_STATES:
            logger.debug("Close ignored while %s", self._state.name)
            return

        self._transition_to(ConnectionState.CLOSING)
        resources = self._detach()
        if resources is not None:
            await self._teardown(resources)
        await self._teardown_idle.wait()
        self._transition_to(ConnectionState.CLOSED)

    async def _open_devices(self, resources: SessionResources, opened: list) -> None:
        capture = self._create_capture()
        resources.capture = capture
        await capture.start()
        opened.append(capture)

        playback = self._create_playback()
        resources.playback_device = playback
        await playback.start()
        opened.append(playback)
        resources.scheduler = PlaybackScheduler(playback)

    def _begin_capture(self, resources: SessionResources, generation: int) -> None:
        # Runs from CONNECTING on: the meter sees every block, the gate drops
        # frames until CONNECTED.
        pipeline = CapturePipeline(
            capture=resources.capture,
            send=lambda frame: self._submit_frame(resources, frame),
            can_send=lambda: self._can_send(generation),
            buffer_size=self._buffer_size,
            sample_rate=resources.capture.sample_rate,
            level_meter=resources.level_meter,
        )
        resources.pipeline = pipeline
        resources.tasks.append(
            asyncio.create_task(self._run_capture(pipeline, generation), name="capture")
        )

    def _begin_streaming(self, resources: SessionResources, generation: int) -> None:
        sender = FrameSender(resources.channel, max_queue=self._send_queue_size)
        resources.sender = sender
        resources.tasks.extend([
            asyncio.create_task(self._run_sender(sender, generation), name="frame-sender"),
            asyncio.create_task(
                self._receive_events(resources.channel, generation), name="channel-events"
            ),
        ])

    @staticmethod
    def _submit_frame(resources: SessionResources, frame: AudioFrame) -> None:
        if resources.sender is not None:
            resources.sender.submit(frame)

    def _can_send(self, generation: int) -> bool:
        return generation == self._generation and self._state == ConnectionState.CONNECTED

    def _superseded(self, generation: int) -> bool:
        return generation != self._generation

    async def _run_sender(self, sender: FrameSender, generation: int) -> None:
        try:
            await sender.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._can_send(generation):
                logger.error("Channel send failed: %s", exc)
                await self._fail(f"{CONNECTION_ERROR_MESSAGE} ({exc})")

    async def _run_capture(self, pipeline: CapturePipeline, generation: int) -> None:
        try:
            await pipeline.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._superseded(generation):
                logger.error("Microphone capture failed: %s", exc)
                await self._fail(f"Microphone capture failed: {exc}")
            return
        if not self._superseded(generation):
            logger.error("Microphone stream ended unexpectedly")
            await self._fail("Microphone stream ended unexpectedly.")

    async def _receive_events(self, channel: ChannelPort, generation: int) -> None:
        try:
            async for event in channel.events():
                if self._superseded(generation):
                    break
                await self._handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._can_send(generation):
                logger.error("Channel receive failed: %s", exc)
                await self._fail(f"{CONNECTION_ERROR_MESSAGE} ({exc})")
            return
        if self._can_send(generation):
            await self._handle_remote_close("event stream ended")

    async def _handle_event(self, event: ChannelEvent) -> None:
        if self._state != ConnectionState.CONNECTED or self._resources is None:
            return

        if isinstance(event, OutputTranscription):
            self._accumulator.append_output(event.text)
        elif isinstance(event, InputTranscription):
            self._accumulator.append_input(event.text)
        elif isinstance(event, TurnComplete):
            self._finish_turn()
        elif isinstance(event, AudioChunk):
            self._play_chunk(event)
        elif isinstance(event, Interrupted):
            self._interrupt_playback()
        elif isinstance(event, ChannelClosed):
            await self._handle_remote_close(event.reason)
        elif isinstance(event, ChannelFailed):
            logger.error("Channel error: %s", event.cause or "unknown")
            message = CONNECTION_ERROR_MESSAGE
            if event.cause:
                message = f"{CONNECTION_ERROR_MESSAGE} ({event.cause})"
            await self._fail(message)
        else:
            logger.debug("Ignoring channel event %s", type(event).__name__)

    def _finish_turn(self) -> None:
        for entry in self._accumulator.complete_turn():
            self._transcript.append(entry)
            logger.info("Transcript: [%s] %s", entry.role.value, entry.text)
            if self._on_entry is not None:
                try:
                    self._on_entry(entry)
                except Exception:
                    logger.exception("Transcript listener failed")

    def _play_chunk(self, event: AudioChunk) -> None:
        scheduler = self._resources.scheduler
        if scheduler is None:
            return
        try:
            pcm = decode(event.data)
        except DecodeError as exc:
            logger.warning("Dropping audio chunk: %s", exc)
            return
        scheduler.enqueue(pcm, event.mime_type)

    def _interrupt_playback(self) -> None:
        scheduler = self._resources.scheduler
        if scheduler is None:
            return
        stopped = scheduler.stop_all()
        logger.info("Interrupted: stopped %d playback buffer(s)", stopped)

    async def _handle_remote_close(self, reason: str) -> None:
        if self._state != ConnectionState.CONNECTED:
            return
        logger.info("Channel closed by remote%s", f": {reason}" if reason else "")
        resources = self._detach()
        if resources is not None:
            await self._teardown(resources)
        # A local close may have taken over while teardown was running.
        if self._state == ConnectionState.CONNECTED:
            self._transition_to(ConnectionState.CLOSED)

    async def _fail(self, message: str) -> None:
        resources = self._detach()
        self._error_message = message or UNKNOWN_START_ERROR_MESSAGE
        self._transition_to(ConnectionState.ERROR)
        if resources is not None:
            await self._teardown(resources)

    def _detach(self) -> SessionResources | None:
        resources = self._resources
        self._resources = None
        self._generation += 1
        return resources

    async def _teardown(self, resources: SessionResources) -> None:
        self._teardowns_running += 1
        self._teardown_idle.clear()
        try:
            await self._teardown_steps(resources)
        finally:
            self._teardowns_running -= 1
            if not self._teardowns_running:
                self._teardown_idle.set()

    async def _teardown_steps(self, resources: SessionResources) -> None:
        channel, resources.channel = resources.channel, None
        if channel is not None:
            await _close_channel_quietly(channel)

        await _cancel_tasks(resources.tasks)
        resources.tasks = []
        if resources.sender is not None:
            resources.sender.clear()
            resources.sender = None
        resources.pipeline = None

        capture, resources.capture = resources.capture, None
        if capture is not None:
            try:
                await capture.stop()
            except Exception:
                logger.warning("Failed to stop audio capture", exc_info=True)

        meter, resources.level_meter = resources.level_meter, None
        if meter is not None:
            meter.reset()

        playback, resources.playback_device = resources.playback_device, None
        for device, label in ((capture, "input"), (playback, "output")):
            if device is None:
                continue
            try:
                await device.close()
            except Exception:
                logger.warning("Failed to close audio %s device", label, exc_info=True)

        scheduler, resources.scheduler = resources.scheduler, None
        if scheduler is not None:
            stopped = scheduler.stop_all()
            if stopped:
                logger.debug("Stopped %d playback buffer(s) on teardown", stopped)

    def _transition_to(self, target: ConnectionState) -> None:
        validate_transition(self._state, target)
        previous = self._state
        logger.info("State: %s -> %s", previous.name, target.name)
        self._state = target
        if self._on_state_change is not None:
            try:
                self._on_state_change(previous, target)
            except Exception:
                logger.exception("State listener failed")


def describe_start_failure(exc: BaseException) -> str:
    if isinstance(exc, (DevicePermissionError, PermissionError)):
        return PERMISSION_DENIED_MESSAGE
    if str(exc):
        return f"Failed to start session: {exc}"
    return UNKNOWN_START_ERROR_MESSAGE


async def _close_channel_quietly(channel: ChannelPort) -> None:
    try:
        await channel.close()
    except Exception:
        logger.warning("Failed to close channel", exc_info=True)


async def _close_devices_quietly(devices: list) -> None:
    for device in devices:
        try:
            await device.close()
        except Exception:
            logger.warning("Failed to release abandoned audio device", exc_info=True)


async def _cancel_tasks(tasks: list[asyncio.Task]) -> None:
    current = asyncio.current_task()
    pending = [t for t in tasks if t is not current and not t.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
