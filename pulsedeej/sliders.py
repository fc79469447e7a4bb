import asyncio
import logging
from typing import Iterable, Optional, Sequence, Union

from .directory import SessionDirectory
from .dispatch import Dispatcher

logger = logging.getLogger(__name__)

MAX_VALUE = 1023
# minimum normalized change that counts as a real slider move
NOISE_MARGIN = 0.005
FIELD_DELIMITER = b"|"
MAX_DIGITS = len(str(MAX_VALUE))
# new streams ignore volume changes made right after they appear
SESSION_SETTLE_DELAY = 0.15


class Slider:

    def __init__(self, index: int):
        self.index = index
        # impossible value, so the first reading always counts as a change
        self.value = -1.0
        self.targets: tuple = ()

    def __repr__(self):
        return f"<Slider {self.index} value={self.value:.3f} targets={list(self.targets)}>"

    def snapshot(self) -> tuple:
        return self.value, self.targets


class SliderEngine:
    """
    Parse serial lines into slider values and fire dispatches on real changes.

    Every state change here happens between awaits, so one line is applied
    atomically with respect to the dispatch tasks it starts.
    """

    def __init__(self, slider_count: int, directory: SessionDirectory, dispatcher: Dispatcher):
        self.sliders = [Slider(i) for i in range(slider_count)]
        self.directory = directory
        self.dispatcher = dispatcher
        self._tasks: set = set()

        directory.on_update(self._on_sessions_changed)

    def handle_line(self, line: Union[bytes, str]) -> list:
        """Apply one "v0|v1|...|vN" frame. Returns the indexes of sliders that moved."""
        if isinstance(line, str):
            line = line.encode("ascii", errors="replace")

        fields = line.split(FIELD_DELIMITER)
        if len(fields) < len(self.sliders):
            return []

        # validate the whole frame before touching any slider
        values = []
        for field in fields[:len(self.sliders)]:
            raw = field.strip()
            if not raw.isdigit():
                return []
            # int() refuses very long digit strings, leading zeros included
            digits = raw.lstrip(b"0") or b"0"
            if len(digits) > MAX_DIGITS:
                return []
            value = int(digits)
            if value > MAX_VALUE:
                return []
            values.append(value / MAX_VALUE)

        changed = []
        for slider, value in zip(self.sliders, values):
            if abs(value - slider.value) < NOISE_MARGIN:
                continue
            slider.value = value
            logger.debug("Slider %d moved to %.3f, targets %s", slider.index, value, list(slider.targets))
            changed.append(slider)

        for slider in changed:
            self._spawn(slider)

        return [slider.index for slider in changed]

    async def from_config(self, mapping: Sequence[Iterable[str]]) -> None:
        """
        Re-target every slider from a positional mapping, then resync volumes.

        Entries past the slider count are ignored and sliders past the end of
        the mapping end up with no targets. Raises whatever the session refresh
        raises; the new targets are kept either way.
        """
        for slider in self.sliders:
            targets = mapping[slider.index] if slider.index < len(mapping) else ()
            slider.targets = tuple(t for t in targets if t)

        self.directory.set_targets(t for slider in self.sliders for t in slider.targets)
        logger.info("Slider mapping applied: %s", [list(s.targets) for s in self.sliders])

        # refresh notifies listeners, which fires every slider
        await self.directory.refresh()

    def fire_all(self, delay: float = 0.0) -> None:
        for slider in self.sliders:
            if slider.value >= 0:
                self._spawn(slider, delay)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_sessions_changed(self) -> None:
        self.fire_all(SESSION_SETTLE_DELAY)

    def _spawn(self, slider: Slider, delay: float = 0.0) -> None:
        task = asyncio.get_running_loop().create_task(self._fire(slider, delay))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    async def _fire(self, slider: Slider, delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        await self.dispatcher.fire(slider)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc: Optional[BaseException] = task.exception()
        if exc is not None:
            logger.error("Volume dispatch failed", exc_info=exc)
