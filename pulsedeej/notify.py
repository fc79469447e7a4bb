"""
Desktop notifications for volume changes, through ``notify-send``.

Each target name has its own small state machine: idle, or showing a
notification with a known id until it expires. Changes arriving faster than
``NOTIFICATION_MIN_INTERVAL`` are collapsed, and a still-visible notification
is replaced in place instead of stacking a new one.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

NOTIFICATION_LIFETIME = 1.0
NOTIFICATION_MIN_INTERVAL = 0.1

Runner = Callable[[list], Awaitable[bytes]]


async def run_notify_send(args: list) -> bytes:
    proc = await asyncio.create_subprocess_exec(
        "notify-send", *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise RuntimeError(f"notify-send exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}")
    return stdout


class _TargetState:

    def __init__(self, name: str):
        self.name = name
        self.lock = asyncio.Lock()
        self.notification_id = 0
        self.sent_at = float("-inf")
        self.expires_at = float("-inf")


class VolumeNotifier:

    def __init__(self, runner: Optional[Runner] = None, clock: Callable[[], float] = time.monotonic):
        self.runner = runner or run_notify_send
        self.clock = clock
        self._states: dict = {}
        self._tasks: set = set()

    def notify(self, name: str, volume: float) -> None:
        """Fire and forget; safe to call from any coroutine on the loop."""
        task = asyncio.get_running_loop().create_task(self.send(name, volume))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send(self, name: str, volume: float) -> bool:
        state = self._states.get(name)
        if state is None:
            state = self._states[name] = _TargetState(name)

        async with state.lock:
            now = self.clock()
            if now - state.sent_at < NOTIFICATION_MIN_INTERVAL:
                return False
            state.sent_at = now

            if now >= state.expires_at:
                state.notification_id = 0

            args = [
                "-u", "low",
                "-t", str(int(NOTIFICATION_LIFETIME * 1000)),
                "-a", "deej",
                "-i", "deej",
                "-p",
                f"volume for {name} changed to {int(volume * 100)}%",
            ]
            if state.notification_id:
                args += ["-r", str(state.notification_id)]

            try:
                out = await self.runner(args)
                notification_id = int(out.strip() or b"0")
            except (OSError, RuntimeError, ValueError) as e:
                logger.warning("Failed to notify volume change for %s: %s", name, e)
                return False

            state.notification_id = notification_id
            state.expires_at = self.clock() + NOTIFICATION_LIFETIME
            logger.debug("Notification %d for %s", notification_id, name)
            return True

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
