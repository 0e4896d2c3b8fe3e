from pydantic_settings import BaseSettings, SettingsConfigDict

from voice_session.adapters.gemini_live import DEFAULT_ENDPOINT_URL


class VoiceSessionConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VOICE_SESSION_")

    api_key: str = ""
    api_key_file: str = ""

    model: str = "models/gemini-2.5-flash-native-audio-preview-09-2025"
    voice: str = "Zephyr"
    system_instruction: str = (
        "You are a friendly and helpful conversational AI. "
        "Keep your responses concise and natural."
    )
    endpoint_url: str = DEFAULT_ENDPOINT_URL
    connect_timeout_seconds: float = 10.0

    input_sample_rate: int = 16000
    output_sample_rate: int = 24000
    buffer_size: int = 4096
    send_queue_size: int = 64
    fft_size: int = 2048

    capture_device: str = ""
    playback_device: str = ""

    socket_path: str = "/tmp/voice-session.sock"
    log_file: str = "/tmp/voice-session.log"

    def read_secret(self, path: str) -> str:
        if not path:
            return ""
        try:
            with open(path) as f:
                return f.read().strip()
        except FileNotFoundError:
            return ""

    def resolve_api_key(self) -> str:
        return self.api_key or self.read_secret(self.api_key_file)
