import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path

from voice_session.config import VoiceSessionConfig
from voice_session.domain.session import LiveSession
from voice_session.domain.state import STARTABLE_STATES
from voice_session.log_format import ColoredFormatter
from voice_session.ports.control import ControlCommand

ENV_FILE_PATH = Path.home() / ".config" / "voice-session" / "env"
CLIENT_COMMANDS = ("start", "stop", "toggle", "status", "transcript", "level")


def _load_env_file(path: Path = ENV_FILE_PATH) -> None:
    if not path.exists():
        return
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key not in os.environ:
                os.environ[key] = value


def _configure_logging(verbose: bool, log_file: str) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    handler = logging.StreamHandler()
    if sys.stderr.isatty():
        handler.setFormatter(ColoredFormatter(datefmt="%H:%M:%S"))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s", datefmt="%H:%M:%S")
        )
    handlers: list[logging.Handler] = [handler]
    if log_file:
        try:
            file_handler = logging.FileHandler(log_file)
        except OSError as exc:
            print(f"Cannot open log file {log_file}: {exc}", file=sys.stderr)
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s")
            )
            handlers.append(file_handler)
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("websockets").setLevel(logging.INFO if verbose else logging.WARNING)


def main() -> None:
    _load_env_file()
    parser = argparse.ArgumentParser(description="Real-time voice conversation session")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    parser.add_argument("--voice", help="Prebuilt voice name")
    parser.add_argument(
        "--no-autostart",
        action="store_true",
        help="Wait for a start command instead of connecting immediately",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("start", help="Start a conversation session")
    subparsers.add_parser("stop", help="Close the current session")
    subparsers.add_parser("toggle", help="Start or close the session")
    subparsers.add_parser("status", help="Query session status")
    subparsers.add_parser("transcript", help="Print the conversation transcript")
    subparsers.add_parser("level", help="Print the live input level and spectrum bytes")

    args = parser.parse_args()

    config = VoiceSessionConfig()
    if args.voice:
        config.voice = args.voice

    if args.command in CLIENT_COMMANDS:
        logging.basicConfig(level=logging.WARNING)
        asyncio.run(_run_client_command(args, config))
    else:
        _configure_logging(args.verbose, config.log_file)
        asyncio.run(_run_daemon(config, autostart=not args.no_autostart))


async def _run_client_command(args: argparse.Namespace, config: VoiceSessionConfig) -> None:
    from voice_session.adapters.unix_control import UnixSocketControlClient

    client = UnixSocketControlClient(socket_path=config.socket_path)

    try:
        result = await client.send_command(args.command)
    except (ConnectionRefusedError, FileNotFoundError):
        print("Voice session daemon is not running", file=sys.stderr)
        sys.exit(1)

    if args.command == "transcript":
        for entry in result.get("transcript", []):
            print(f"{entry['role']}: {entry['text']}")
    else:
        print(json.dumps(result, indent=2))


async def handle_control_command(
    session: LiveSession,
    command: ControlCommand,
    background: set[asyncio.Task],
) -> dict:
    action = command.action
    if action == "toggle":
        action = "start" if session.state in STARTABLE_STATES else "stop"

    if action == "start":
        _spawn(session.start(), background)
    elif action == "stop":
        _spawn(session.close(), background)
    elif action == "transcript":
        return {
            "status": "ok",
            "action": command.action,
            "transcript": [entry.to_dict() for entry in session.transcript],
        }
    elif action == "level":
        meter = session.level_meter
        if meter is None:
            levels = {"rms": 0.0, "peak": 0.0, "time_domain": [], "frequency": []}
        else:
            levels = meter.to_dict()
        return {"status": "ok", "action": command.action, **levels}
    elif action != "status":
        return {"status": "error", "action": command.action, "error": f"unknown action '{action}'"}

    await asyncio.sleep(0)
    snapshot = session.snapshot().to_dict()
    return {"status": "ok", "action": command.action, **snapshot}


def _spawn(coro, background: set[asyncio.Task]) -> None:
    task = asyncio.create_task(coro)
    background.add(task)
    task.add_done_callback(background.discard)


async def _run_daemon(config: VoiceSessionConfig, autostart: bool = True) -> None:
    from voice_session.health import run_startup_checks, has_critical_failures
    from voice_session.factory import create_daemon

    results = run_startup_checks(config)
    if has_critical_failures(results):
        logging.error("Critical health check failures, aborting startup")
        sys.exit(1)

    session, control = create_daemon(config)
    background: set[asyncio.Task] = set()

    shutdown_event = asyncio.Event()
    shutdown_triggered = False

    def handle_signal() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            logging.warning("Forced exit")
            sys.exit(1)
        shutdown_triggered = True
        logging.info("Shutting down...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await control.start()

    async def control_loop() -> None:
        async for cmd in control.commands():
            try:
                response = await handle_control_command(session, cmd, background)
            except Exception as exc:
                logging.exception("Control command '%s' failed", cmd.action)
                response = {"status": "error", "action": cmd.action, "error": str(exc)}
            cmd.respond(response)

    control_task = asyncio.create_task(control_loop())
    if autostart:
        _spawn(session.start(), background)

    try:
        await shutdown_event.wait()
    finally:
        control_task.cancel()
        try:
            await asyncio.wait_for(control_task, timeout=1.0)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        try:
            await asyncio.wait_for(session.close(), timeout=3.0)
        except asyncio.TimeoutError:
            logging.warning("Session teardown timed out")
        for task in list(background):
            task.cancel()
        await control.stop()
