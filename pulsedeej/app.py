import asyncio
import contextlib
import logging
import signal
from typing import Optional

from .backend import AudioBackend
from .config import Config, ConfigWatcher
from .directory import SessionDirectory
from .dispatch import Dispatcher
from .errors import BackendError
from .notify import VolumeNotifier
from .serial_source import LineSource
from .session import device_predicate
from .sliders import SliderEngine

logger = logging.getLogger(__name__)


class Deej:
    """Wires the serial box, the sliders and the sound server together."""

    def __init__(
        self,
        config: Config,
        backend: Optional[AudioBackend] = None,
        source: Optional[LineSource] = None,
    ):
        self.config = config
        if backend is None:
            # pulsectl loads libpulse on import
            from .pulse import PulseBackend
            backend = PulseBackend()
        self.backend = backend
        self.source = source or LineSource(config.serial_port, config.baud_rate)
        self.notifier = VolumeNotifier() if config.notifications else None
        self.directory = SessionDirectory(self.backend, device_predicate(config.device_pattern))
        self.dispatcher = Dispatcher(self.directory, self.backend, self.notifier)
        self.engine = SliderEngine(config.slider_count, self.directory, self.dispatcher)
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def apply_config(self, config: Config) -> None:
        if (config.serial_port, config.baud_rate) != (self.config.serial_port, self.config.baud_rate):
            logger.warning("Serial port settings changed; restart to apply them")
        if config.slider_count != self.config.slider_count:
            logger.warning("Slider count changed; restart to apply it")
        if config.device_pattern != self.config.device_pattern:
            logger.info("Device name pattern changed to %r", config.device_pattern)
            self.directory.is_device_key = device_predicate(config.device_pattern)
        if config.notifications != self.config.notifications:
            await self._set_notifications(config.notifications)
        self.config = config
        try:
            await self.engine.from_config(config.slider_mapping)
        except BackendError as e:
            logger.warning("Failed to re-acquire audio sessions after config reload: %s", e)

    async def _set_notifications(self, enabled: bool) -> None:
        old = self.notifier
        self.notifier = VolumeNotifier() if enabled else None
        self.dispatcher.notifier = self.notifier
        logger.info("Volume notifications %s", "enabled" if enabled else "disabled")
        if old is not None:
            await old.close()

    async def run(self) -> None:
        """Run until stopped. Raises on startup failures and on a dead serial port."""
        await self.backend.open()

        tasks = []
        try:
            # first refresh happens here, loudly
            await self.engine.from_config(self.config.slider_mapping)
            await self.source.start()

            tasks.append(asyncio.create_task(self._follow_sessions(), name="sessions"))
            if self.config.path is not None:
                watcher = ConfigWatcher(self.config.path, self.apply_config)
                tasks.append(asyncio.create_task(watcher.run(), name="config-watcher"))

            pump = asyncio.create_task(self._pump_lines(), name="lines")
            fatal = asyncio.create_task(self.source.errors.get(), name="serial-errors")
            stopping = asyncio.create_task(self._stopping.wait(), name="stopping")
            tasks += [pump, fatal, stopping]

            await asyncio.wait([pump, fatal, stopping], return_when=asyncio.FIRST_COMPLETED)

            if fatal.done():
                raise fatal.result()
            if pump.done():
                pump.result()
            logger.info("Stopping")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.source.stop()
            await self.engine.close()
            if self.notifier is not None:
                await self.notifier.close()
            self.backend.close()

    async def _pump_lines(self) -> None:
        while True:
            line = await self.source.lines.get()
            logger.debug("Received serial line %r", line)
            try:
                self.engine.handle_line(line)
            except Exception:
                logger.exception("Dropped serial line %r", line)

    async def _follow_sessions(self) -> None:
        try:
            await self.directory.run()
        except BackendError as e:
            logger.error("Stopped following audio session changes: %s", e)


async def run_forever(app: Deej) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, app.stop)
    await app.run()
