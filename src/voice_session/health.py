import logging
import socket
from dataclasses import dataclass
from urllib.parse import urlparse

import sounddevice as sd

from voice_session.config import VoiceSessionConfig

logger = logging.getLogger(__name__)

CRITICAL_CHECKS = {"audio_input", "audio_output", "api_key"}


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    detail: str


def run_startup_checks(config: VoiceSessionConfig) -> list[HealthCheckResult]:
    results = [
        _check_audio_input(config),
        _check_audio_output(config),
        _check_api_key(config),
        _check_endpoint_resolvable(config),
    ]

    passed = sum(1 for r in results if r.passed)
    logger.info("Health check: %d/%d passed", passed, len(results))
    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        symbol = "OK" if result.passed else "FAIL"
        logger.log(level, "  [%s] %s: %s", symbol, result.name, result.detail)

    return results


def has_critical_failures(results: list[HealthCheckResult]) -> bool:
    return any(not r.passed and r.name in CRITICAL_CHECKS for r in results)


def _check_audio_input(config: VoiceSessionConfig) -> HealthCheckResult:
    return _check_device(
        "audio_input", config.capture_device, "input", "max_input_channels", config.input_sample_rate
    )


def _check_audio_output(config: VoiceSessionConfig) -> HealthCheckResult:
    return _check_device(
        "audio_output", config.playback_device, "output", "max_output_channels", config.output_sample_rate
    )


def _check_device(
    name: str, device_name: str, kind: str, channel_key: str, sample_rate: int
) -> HealthCheckResult:
    try:
        if device_name:
            for dev in sd.query_devices():
                if device_name.lower() in dev["name"].lower() and dev[channel_key] > 0:
                    return HealthCheckResult(name=name, passed=True, detail=f"Device '{dev['name']}' found")
        default = sd.query_devices(kind=kind)
        detail = f"default {kind}: {default['name']} ({int(default['default_samplerate'])} Hz native, {sample_rate} Hz requested)"
        if device_name:
            detail = f"'{device_name}' not in PortAudio, {detail}"
        return HealthCheckResult(name=name, passed=True, detail=detail)
    except sd.PortAudioError:
        return HealthCheckResult(name=name, passed=False, detail=f"No {kind} devices available")
    except Exception as exc:
        return HealthCheckResult(name=name, passed=False, detail=str(exc))


def _check_api_key(config: VoiceSessionConfig) -> HealthCheckResult:
    name = "api_key"
    if config.resolve_api_key():
        return HealthCheckResult(name=name, passed=True, detail="API key loaded")
    source = config.api_key_file or "VOICE_SESSION_API_KEY not set"
    return HealthCheckResult(name=name, passed=False, detail=f"Missing ({source})")


def _check_endpoint_resolvable(config: VoiceSessionConfig) -> HealthCheckResult:
    name = "endpoint"
    host = urlparse(config.endpoint_url).hostname
    if not host:
        return HealthCheckResult(name=name, passed=False, detail=f"Invalid endpoint URL: {config.endpoint_url}")
    try:
        socket.getaddrinfo(host, 443)
        return HealthCheckResult(name=name, passed=True, detail=f"{host} resolves")
    except OSError as exc:
        return HealthCheckResult(name=name, passed=False, detail=f"Cannot resolve {host}: {exc}")
