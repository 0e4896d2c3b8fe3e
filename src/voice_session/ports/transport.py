from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from time import time
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from voice_session.domain.capture import AudioFrame


@dataclass(frozen=True)
class ChannelConfig:
    model: str
    voice: str = "Zephyr"
    system_instruction: str = ""
    input_transcription: bool = True
    output_transcription: bool = True


@dataclass(frozen=True)
class ChannelEvent:
    timestamp: float = field(default_factory=time)


@dataclass(frozen=True)
class OutputTranscription(ChannelEvent):
    text: str = ""


@dataclass(frozen=True)
class InputTranscription(ChannelEvent):
    text: str = ""


@dataclass(frozen=True)
class TurnComplete(ChannelEvent):
    pass


@dataclass(frozen=True)
class AudioChunk(ChannelEvent):
    data: str = ""
    mime_type: str = ""


@dataclass(frozen=True)
class Interrupted(ChannelEvent):
    pass


@dataclass(frozen=True)
class ChannelClosed(ChannelEvent):
    reason: str = ""


@dataclass(frozen=True)
class ChannelFailed(ChannelEvent):
    cause: str = ""


class ChannelPort(Protocol):
    async def send(self, frame: "AudioFrame") -> None: ...
    def events(self) -> AsyncIterator[ChannelEvent]: ...
    async def close(self) -> None: ...


class TransportPort(Protocol):
    async def open(self, config: ChannelConfig) -> ChannelPort: ...
