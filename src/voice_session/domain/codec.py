"""Conversions between float capture samples, 16-bit PCM and transport text.

Everything here is stateless and safe to call from any thread, including the
PortAudio callback threads.
"""

import base64
import binascii
import io
import re
import wave

import numpy as np

from voice_session.domain.errors import DecodeError

INT16_SCALE = 32768
INT16_MIN = -32768
INT16_MAX = 32767

_RATE_PATTERN = re.compile(r"rate=(\d+)")
_RAW_PCM_TYPES = ("audio/pcm", "audio/l16")
_WAV_TYPES = ("audio/wav", "audio/wave", "audio/x-wav")


def encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode(text: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Invalid base64 payload: {exc}") from exc


def pcm_float_to_int16(samples) -> np.ndarray:
    """Scale [-1, 1] floats by the int16 range, truncating toward zero.

    Full-scale positive input (1.0) would land one past INT16_MAX, so the
    scaled values are clipped into range.
    """
    scaled = np.trunc(np.asarray(samples, dtype=np.float64) * INT16_SCALE)
    return np.clip(scaled, INT16_MIN, INT16_MAX).astype(np.int16)


def pcm_int16_to_float(samples) -> np.ndarray:
    return np.asarray(samples, dtype=np.int16).astype(np.float32) / INT16_SCALE


def pcm_mime_type(sample_rate: int) -> str:
    return f"audio/pcm;rate={sample_rate}"


def parse_sample_rate(mime_type: str, default: int) -> int:
    match = _RATE_PATTERN.search(mime_type or "")
    if not match:
        return default
    return int(match.group(1))


def decode_audio(
    data: bytes,
    target_sample_rate: int,
    channels: int = 1,
    mime_type: str = "audio/pcm",
) -> np.ndarray:
    """Decode inbound audio bytes into float32 samples shaped (frames, channels).

    Raw PCM declares its rate in the mime tag (``audio/pcm;rate=24000``); when
    no rate is given the target rate is assumed. WAV containers carry their own
    format. Audio at a different rate is linearly resampled to the target.
    """
    base_type = (mime_type or "").split(";")[0].strip().lower()

    if data[:4] == b"RIFF" or base_type in _WAV_TYPES:
        pcm, source_rate, source_channels = _read_wav(data)
    elif base_type in _RAW_PCM_TYPES or not base_type:
        pcm = data
        source_rate = parse_sample_rate(mime_type, target_sample_rate)
        source_channels = channels
    else:
        raise DecodeError(f"Unsupported audio format: {mime_type}")

    if not pcm:
        raise DecodeError("Audio chunk is empty")
    frame_bytes = 2 * source_channels
    if len(pcm) % frame_bytes:
        raise DecodeError(
            f"Audio chunk of {len(pcm)} bytes is not a whole number of "
            f"{source_channels}-channel 16-bit frames"
        )

    samples = np.frombuffer(pcm, dtype="<i2").astype(np.float32) / INT16_SCALE
    samples = samples.reshape(-1, source_channels)
    samples = _convert_channels(samples, channels)
    if source_rate != target_sample_rate:
        samples = resample(samples, source_rate, target_sample_rate)
    return samples


def duration_seconds(samples: np.ndarray, sample_rate: int) -> float:
    return len(samples) / sample_rate


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    if source_rate <= 0 or target_rate <= 0:
        raise DecodeError(f"Invalid sample rate conversion {source_rate} -> {target_rate}")
    frames = samples.shape[0]
    target_frames = max(1, int(round(frames * target_rate / source_rate)))
    source_positions = np.arange(frames) / source_rate
    target_positions = np.arange(target_frames) / target_rate
    columns = [
        np.interp(target_positions, source_positions, samples[:, c])
        for c in range(samples.shape[1])
    ]
    return np.stack(columns, axis=1).astype(np.float32)


def _read_wav(data: bytes) -> tuple[bytes, int, int]:
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            if wf.getsampwidth() != 2:
                raise DecodeError(f"Unsupported WAV sample width: {wf.getsampwidth() * 8} bits")
            return wf.readframes(wf.getnframes()), wf.getframerate(), wf.getnchannels()
    except (wave.Error, EOFError) as exc:
        raise DecodeError(f"Malformed WAV data: {exc}") from exc


def _convert_channels(samples: np.ndarray, channels: int) -> np.ndarray:
    source_channels = samples.shape[1]
    if source_channels == channels:
        return samples
    if channels == 1:
        return samples.mean(axis=1, keepdims=True)
    if source_channels == 1:
        return np.repeat(samples, channels, axis=1)
    raise DecodeError(f"Cannot map {source_channels} channels onto {channels}")
