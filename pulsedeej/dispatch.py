import logging
from typing import TYPE_CHECKING, Optional

from .backend import AudioBackend
from .directory import SessionDirectory
from .errors import BackendError

if TYPE_CHECKING:
    from .notify import VolumeNotifier
    from .sliders import Slider

logger = logging.getLogger(__name__)

# one step of PulseAudio's integer volume scale
VOLUME_EPSILON = 1 / 0x10000


class Dispatcher:
    """Push a slider's value to every session its targets resolve to."""

    def __init__(
        self,
        directory: SessionDirectory,
        backend: AudioBackend,
        notifier: Optional["VolumeNotifier"] = None,
    ):
        self.directory = directory
        self.backend = backend
        self.notifier = notifier

    async def fire(self, slider: "Slider") -> None:
        # read the value now, not when the task was scheduled
        value, targets = slider.snapshot()
        if value < 0:
            return

        seen = set()
        for target in targets:
            for session in self.directory.resolve(target):
                if session.handle in seen:
                    continue
                seen.add(session.handle)
                await self._apply(session, value)

    async def _apply(self, session, value: float) -> None:
        try:
            current = await self.backend.get_volume(session.handle)
        except BackendError as e:
            logger.warning("Failed to get volume of %s: %s", session, e)
            current = None

        if current is not None and abs(current - value) <= VOLUME_EPSILON:
            return

        try:
            await self.backend.set_volume(session.handle, value, session.channels)
        except BackendError as e:
            logger.warning("Failed to set volume of %s: %s", session, e)
            return

        logger.debug("Set volume of %s to %.3f", session, value)
        if self.notifier is not None:
            self.notifier.notify(session.key, value)
