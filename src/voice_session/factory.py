import logging

from voice_session.config import VoiceSessionConfig
from voice_session.adapters.gemini_live import GeminiLiveTransport
from voice_session.adapters.sounddevice_audio import SounddeviceCapture, SounddevicePlayback
from voice_session.adapters.unix_control import UnixSocketControlServer
from voice_session.domain.session import EntryListener, LiveSession, StateListener
from voice_session.ports.transport import ChannelConfig

logger = logging.getLogger(__name__)


def create_capture(config: VoiceSessionConfig) -> SounddeviceCapture:
    return SounddeviceCapture(
        device=config.capture_device or None,
        sample_rate=config.input_sample_rate,
        block_size=config.buffer_size,
    )


def create_playback(config: VoiceSessionConfig) -> SounddevicePlayback:
    return SounddevicePlayback(
        device=config.playback_device or None,
        sample_rate=config.output_sample_rate,
    )


def create_transport(config: VoiceSessionConfig) -> GeminiLiveTransport:
    return GeminiLiveTransport(
        api_key=config.resolve_api_key(),
        endpoint_url=config.endpoint_url,
        connect_timeout=config.connect_timeout_seconds,
    )


def create_channel_config(config: VoiceSessionConfig) -> ChannelConfig:
    return ChannelConfig(
        model=config.model,
        voice=config.voice,
        system_instruction=config.system_instruction,
    )


def create_session(
    config: VoiceSessionConfig,
    on_state_change: StateListener | None = None,
    on_entry: EntryListener | None = None,
) -> LiveSession:
    return LiveSession(
        transport=create_transport(config),
        create_capture=lambda: create_capture(config),
        create_playback=lambda: create_playback(config),
        channel_config=create_channel_config(config),
        buffer_size=config.buffer_size,
        send_queue_size=config.send_queue_size,
        fft_size=config.fft_size,
        on_state_change=on_state_change,
        on_entry=on_entry,
    )


def create_daemon(config: VoiceSessionConfig) -> tuple[LiveSession, UnixSocketControlServer]:
    session = create_session(config)
    control = UnixSocketControlServer(socket_path=config.socket_path)
    logger.debug("Created session (model=%s) and control socket %s", config.model, config.socket_path)
    return session, control
