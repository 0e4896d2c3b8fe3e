import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path

from voice_session.ports.control import ControlCommand

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/voice-session.sock"
READ_TIMEOUT_SECONDS = 5.0
RESPONSE_TIMEOUT_SECONDS = 5.0


class UnixSocketControlServer:
    """Line-delimited JSON control socket.

    Each connection carries one request. The command is handed to whoever
    iterates ``commands()`` together with a reply future, and the connection
    stays open until that consumer responds or RESPONSE_TIMEOUT_SECONDS pass.
    """

    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH) -> None:
        self._socket_path = socket_path
        self._server: asyncio.Server | None = None
        self._command_queue: asyncio.Queue[ControlCommand] = asyncio.Queue()

    @property
    def socket_path(self) -> str:
        return self._socket_path

    async def start(self) -> None:
        socket_file = Path(self._socket_path)
        if socket_file.exists():
            socket_file.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=self._socket_path,
        )
        os.chmod(self._socket_path, 0o600)
        logger.info("Control socket listening at %s", self._socket_path)

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        socket_file = Path(self._socket_path)
        if socket_file.exists():
            socket_file.unlink()

    async def commands(self) -> AsyncIterator[ControlCommand]:
        while True:
            yield await self._command_queue.get()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT_SECONDS)
            if not raw:
                return
            try:
                request = json.loads(raw.decode().strip())
            except json.JSONDecodeError:
                logger.warning("Invalid JSON from control client")
                await _write_line(writer, {"status": "error", "error": "invalid request"})
                return
            if not isinstance(request, dict):
                await _write_line(writer, {"status": "error", "error": "invalid request"})
                return

            response = await self._dispatch(request.get("action", ""), request.get("payload"))
            await _write_line(writer, response)
        except asyncio.TimeoutError:
            logger.warning("Control client timed out")
        except ConnectionError:
            logger.warning("Control client disconnected early")
        finally:
            writer.close()
            await writer.wait_closed()

    async def _dispatch(self, action: str, payload: dict | None) -> dict:
        reply = asyncio.get_running_loop().create_future()
        await self._command_queue.put(ControlCommand(action=action, payload=payload, reply=reply))
        try:
            return await asyncio.wait_for(reply, timeout=RESPONSE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("No response to control command '%s'", action)
            return {"status": "error", "action": action, "error": "no response"}


class UnixSocketControlClient:
    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH, timeout: float = 10.0) -> None:
        self._socket_path = socket_path
        self._timeout = timeout

    async def send_command(self, action: str, payload: dict | None = None) -> dict:
        reader, writer = await asyncio.open_unix_connection(self._socket_path)
        try:
            request: dict = {"action": action}
            if payload:
                request["payload"] = payload
            await _write_line(writer, request)

            raw = await asyncio.wait_for(reader.readline(), timeout=self._timeout)
            return json.loads(raw.decode().strip())
        finally:
            writer.close()
            await writer.wait_closed()


async def _write_line(writer: asyncio.StreamWriter, data: dict) -> None:
    writer.write((json.dumps(data) + "\n").encode())
    await writer.drain()
