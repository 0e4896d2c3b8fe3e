import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from voice_session.domain.capture import AudioFrame
from voice_session.domain.errors import ChannelError, ConnectError
from voice_session.ports.transport import (
    AudioChunk,
    ChannelClosed,
    ChannelConfig,
    ChannelEvent,
    ChannelFailed,
    InputTranscription,
    Interrupted,
    OutputTranscription,
    TurnComplete,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)


def build_setup_message(config: ChannelConfig) -> dict[str, Any]:
    setup: dict[str, Any] = {
        "model": config.model,
        "generationConfig": {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": config.voice}},
            },
        },
    }
    if config.system_instruction:
        setup["systemInstruction"] = {"parts": [{"text": config.system_instruction}]}
    if config.input_transcription:
        setup["inputAudioTranscription"] = {}
    if config.output_transcription:
        setup["outputAudioTranscription"] = {}
    return {"setup": setup}


def build_audio_message(frame: AudioFrame) -> dict[str, Any]:
    return {"realtimeInput": {"audio": {"mimeType": frame.mime_type, "data": frame.data}}}


def parse_server_message(message: dict[str, Any]) -> list[ChannelEvent]:
    events: list[ChannelEvent] = []

    go_away = message.get("goAway")
    if go_away is not None:
        logger.warning("Server will disconnect soon (time left: %s)", go_away.get("timeLeft", "?"))

    content = message.get("serverContent")
    if not content:
        return events

    output_text = (content.get("outputTranscription") or {}).get("text")
    if output_text:
        events.append(OutputTranscription(text=output_text))
    input_text = (content.get("inputTranscription") or {}).get("text")
    if input_text:
        events.append(InputTranscription(text=input_text))

    if content.get("turnComplete"):
        events.append(TurnComplete())

    for part in (content.get("modelTurn") or {}).get("parts") or []:
        inline = part.get("inlineData") or {}
        data = inline.get("data")
        mime_type = inline.get("mimeType", "")
        if data and mime_type.startswith("audio/"):
            events.append(AudioChunk(data=data, mime_type=mime_type))

    if content.get("interrupted"):
        events.append(Interrupted())
    return events


class GeminiLiveChannel:
    def __init__(self, websocket) -> None:
        self._ws = websocket
        self._closed = False

    async def send(self, frame: AudioFrame) -> None:
        try:
            await self._ws.send(json.dumps(build_audio_message(frame)))
        except ConnectionClosed as exc:
            raise ChannelError(f"Channel closed while sending: {exc}") from exc

    async def events(self) -> AsyncIterator[ChannelEvent]:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring malformed server message (%d bytes)", len(raw))
                    continue
                if not isinstance(message, dict):
                    logger.warning("Ignoring non-object server message")
                    continue
                for event in parse_server_message(message):
                    yield event
        except ConnectionClosedError as exc:
            yield ChannelFailed(cause=str(exc))
            return
        yield ChannelClosed(reason="closed by server" if not self._closed else "closed locally")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._ws.close()
        logger.info("Live channel closed")


class GeminiLiveTransport:
    def __init__(
        self,
        api_key: str,
        endpoint_url: str = DEFAULT_ENDPOINT_URL,
        connect_timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._endpoint_url = endpoint_url
        self._connect_timeout = connect_timeout

    async def open(self, config: ChannelConfig) -> GeminiLiveChannel:
        if not self._api_key:
            raise ConnectError("API key is not configured")

        url = f"{self._endpoint_url}?key={self._api_key}"
        try:
            websocket = await websockets.connect(
                url,
                max_size=None,
                open_timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise ConnectError(f"Could not reach the live service: {exc}") from exc

        try:
            await websocket.send(json.dumps(build_setup_message(config)))
            reply = await _receive_json(websocket, self._connect_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException, ValueError) as exc:
            await websocket.close()
            raise ConnectError(f"Live session setup failed: {exc}") from exc

        if "setupComplete" not in reply:
            await websocket.close()
            raise ConnectError(f"Unexpected setup reply: {sorted(reply)}")

        logger.info("Live channel open (model=%s, voice=%s)", config.model, config.voice)
        return GeminiLiveChannel(websocket)


async def _receive_json(websocket, timeout: float) -> dict[str, Any]:
    raw = await asyncio.wait_for(websocket.recv(), timeout=timeout)
    message = json.loads(raw)
    if not isinstance(message, dict):
        raise ValueError("setup reply is not a JSON object")
    return message
