import asyncio
import logging
from typing import Awaitable, Callable, Optional

import serial
import serial_asyncio

from .errors import TransportError

logger = logging.getLogger(__name__)

RECONNECT_ATTEMPTS = 10
RECONNECT_DELAY = 1.0

Connector = Callable[[Callable[[], asyncio.Protocol]], Awaitable[tuple]]


class SerialLineProtocol(asyncio.Protocol):
    """Split incoming bytes into newline-terminated records."""

    def __init__(self, lines: asyncio.Queue):
        self.lines = lines
        self.buffer = b""
        self.transport = None
        self.connection_lost_future = asyncio.get_running_loop().create_future()

    def connection_made(self, transport):
        self.transport = transport
        logger.info("Serial connection opened")

    def data_received(self, data):
        self.buffer += data
        while b"\n" in self.buffer:
            line, self.buffer = self.buffer.split(b"\n", 1)
            self.lines.put_nowait(line.rstrip(b"\r"))

    def connection_lost(self, exc):
        # whatever is left in the buffer never got its newline
        if self.buffer:
            logger.debug("Dropping %d bytes of partial line", len(self.buffer))
            self.buffer = b""
        if not self.connection_lost_future.done():
            self.connection_lost_future.set_result(exc)


class LineSource:
    """
    Reconnecting line reader for the slider box.

    ``start`` opens the port once, loudly. After that, lines land on ``lines``.
    A dropped connection is reopened up to ``reconnect_attempts`` times; when
    all of them fail a single ``TransportError`` is put on ``errors`` and the
    source stays stopped.
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = 9600,
        *,
        connect: Optional[Connector] = None,
        reconnect_attempts: int = RECONNECT_ATTEMPTS,
        reconnect_delay: float = RECONNECT_DELAY,
    ):
        self.port = port
        self.baud_rate = baud_rate
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self._connect = connect or self._open_serial
        self.lines: asyncio.Queue = asyncio.Queue()
        self.errors: asyncio.Queue = asyncio.Queue()
        self._transport = None
        self._protocol: Optional[SerialLineProtocol] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            raise RuntimeError("line source already started")

        self.lines = asyncio.Queue()
        self.errors = asyncio.Queue()

        logger.info("Connecting to %s at %d baud", self.port, self.baud_rate)
        try:
            await self._open()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"open serial port {self.port}: {e}") from e

        self._task = asyncio.create_task(self._run(), name="serial-lines")

    async def stop(self) -> None:
        task = self._task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._close()

    async def _open_serial(self, protocol_factory):
        loop = asyncio.get_running_loop()
        return await serial_asyncio.create_serial_connection(
            loop, protocol_factory, self.port, baudrate=self.baud_rate
        )

    async def _open(self) -> None:
        lines = self.lines
        transport, protocol = await self._connect(lambda: SerialLineProtocol(lines))
        self._transport = transport
        self._protocol = protocol

    def _close(self) -> None:
        if self._transport is not None:
            self._transport.close()
        self._transport = None
        self._protocol = None

    async def _run(self) -> None:
        try:
            while True:
                exc = await self._protocol.connection_lost_future
                if exc is not None:
                    logger.error("Serial connection lost: %s", exc)
                else:
                    logger.warning("Serial connection closed")
                self._close()

                if not await self._reconnect():
                    logger.error(
                        "Giving up on %s after %d reconnect attempts", self.port, self.reconnect_attempts
                    )
                    self.errors.put_nowait(
                        TransportError(
                            f"failed to reconnect to {self.port} after {self.reconnect_attempts} attempts"
                        )
                    )
                    return
        except Exception as e:
            logger.exception("Serial reader for %s failed", self.port)
            self.errors.put_nowait(TransportError(f"serial reader for {self.port} failed: {e}"))
        finally:
            self._close()

    async def _reconnect(self) -> bool:
        for attempt in range(self.reconnect_attempts):
            if attempt:
                await asyncio.sleep(self.reconnect_delay)
            logger.debug("Reconnecting to %s, attempt %d", self.port, attempt + 1)
            try:
                await self._open()
            except (serial.SerialException, OSError) as e:
                logger.error("Failed to reopen %s: %s", self.port, e)
                continue
            logger.info("Reconnected to %s", self.port)
            return True
        return False
