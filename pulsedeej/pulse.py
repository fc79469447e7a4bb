"""
PulseAudio (or pipewire-pulse) backend, driven through pulsectl.

Sessions exposed: the default sink as ``master``, the default source as
``mic``, every sink as a device keyed by its description, and every sink
input that carries a process binary or application name.
"""

import asyncio
import logging
import threading
from typing import AsyncIterator, Optional

import pulsectl
from pulsectl import PulseVolumeInfo

from .backend import AudioBackend
from .errors import BackendError, BackendUnavailable
from .session import (
    MASTER_KEY,
    MIC_KEY,
    Added,
    BackendEvent,
    Handle,
    Removed,
    Session,
    SessionKind,
)

logger = logging.getLogger(__name__)

MASTER_SINK = "master_sink"
MASTER_SOURCE = "master_source"
SINK = "sink"
SINK_INPUT = "sink_input"


class PulseBackend(AudioBackend):
    """
    pulsectl-backed sessions.

    pulsectl is blocking and a ``Pulse`` connection must not be shared between
    threads, so every call runs in a worker thread under ``_lock``. Change
    events are read on a second connection owned by a dedicated thread.
    """

    def __init__(self, client_name: str = "pulsedeej"):
        self.client_name = client_name
        self.pulse: Optional[pulsectl.Pulse] = None
        self._lock = threading.Lock()
        self._listener: Optional[pulsectl.Pulse] = None
        self._stop_listening = threading.Event()

    async def open(self) -> None:
        try:
            self.pulse = await asyncio.to_thread(pulsectl.Pulse, self.client_name)
        except pulsectl.PulseError as e:
            raise BackendUnavailable(f"connect to PulseAudio: {e}") from e
        logger.debug("Connected to PulseAudio as %s", self.client_name)

    def close(self) -> None:
        self._stop_listening.set()
        listener = self._listener
        if listener is not None:
            listener.event_listen_stop()
        if self.pulse is not None:
            with self._lock:
                self.pulse.close()
            self.pulse = None
            logger.debug("Released PulseAudio connection")

    async def _call(self, func, *args):
        def locked():
            if self.pulse is None:
                raise BackendUnavailable("not connected to PulseAudio")
            with self._lock:
                return func(self.pulse, *args)

        try:
            return await asyncio.to_thread(locked)
        except pulsectl.PulseDisconnected as e:
            raise BackendUnavailable(f"PulseAudio connection lost: {e}") from e
        except pulsectl.PulseError as e:
            raise BackendError(str(e)) from e

    async def list_sessions(self) -> list[Session]:
        return await self._call(_enumerate)

    async def lookup(self, handle: Handle) -> Optional[Session]:
        if handle.facility != SINK_INPUT:
            return None
        try:
            return await self._call(_sink_input_session, handle.index)
        except BackendUnavailable:
            raise
        except BackendError as e:
            # already gone again, or never was a stream
            logger.debug("Could not look up %s: %s", handle, e)
            return None

    async def get_volume(self, handle: Handle) -> float:
        info = await self._call(_INFO[handle.facility], handle.index)
        return info.volume.value_flat

    async def set_volume(self, handle: Handle, volume: float, channels: int) -> None:
        new_vol = PulseVolumeInfo([volume] * max(channels, 1))
        await self._call(_VOLUME_SET[handle.facility], handle.index, new_vol)

    async def events(self) -> AsyncIterator[BackendEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        self._stop_listening.clear()
        thread = threading.Thread(
            target=self._listen, args=(loop, queue), name="pulse-events", daemon=True
        )
        thread.start()

        try:
            while True:
                item = await queue.get()
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self._stop_listening.set()
            listener = self._listener
            if listener is not None:
                listener.event_listen_stop()

    def _listen(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
        def callback(ev):
            if ev.t == "new":
                event = Added(Handle(SINK_INPUT, ev.index))
            elif ev.t == "remove":
                event = Removed(Handle(SINK_INPUT, ev.index))
            else:
                return
            logger.debug("Received %s sink input event for #%d", ev.t, ev.index)
            loop.call_soon_threadsafe(queue.put_nowait, event)

        try:
            with pulsectl.Pulse(f"{self.client_name}-events") as pulse:
                self._listener = pulse
                pulse.event_mask_set("sink_input")
                pulse.event_callback_set(callback)
                while not self._stop_listening.is_set():
                    pulse.event_listen(timeout=1.0)
        except pulsectl.PulseError as e:
            if not self._stop_listening.is_set():
                loop.call_soon_threadsafe(
                    queue.put_nowait, BackendUnavailable(f"PulseAudio event stream lost: {e}")
                )
        finally:
            self._listener = None


def _enumerate(pulse: pulsectl.Pulse) -> list[Session]:
    sessions = []
    server = pulse.server_info()

    try:
        sink = pulse.get_sink_by_name(server.default_sink_name)
        sessions.append(
            Session(MASTER_KEY, SessionKind.MASTER_OUTPUT, Handle(MASTER_SINK, sink.index), sink.channel_count)
        )
    except pulsectl.PulseIndexError:
        logger.warning("Failed to get master audio sink session")

    try:
        source = pulse.get_source_by_name(server.default_source_name)
        sessions.append(
            Session(MIC_KEY, SessionKind.MASTER_INPUT, Handle(MASTER_SOURCE, source.index), source.channel_count)
        )
    except pulsectl.PulseIndexError:
        logger.warning("Failed to get master audio source session")

    for sink in pulse.sink_list():
        sessions.append(
            Session(sink.description or sink.name, SessionKind.DEVICE, Handle(SINK, sink.index), sink.channel_count)
        )

    for sink_input in pulse.sink_input_list():
        session = _sink_input_to_session(sink_input)
        if session is None:
            logger.warning("Failed to get process name of sink input #%d", sink_input.index)
            continue
        sessions.append(session)

    return sessions


def _sink_input_to_session(sink_input) -> Optional[Session]:
    name = sink_input.proplist.get("application.process.binary") or sink_input.proplist.get("application.name")
    if not name:
        return None
    return Session(name, SessionKind.PROCESS, Handle(SINK_INPUT, sink_input.index), sink_input.channel_count)


def _sink_input_session(pulse: pulsectl.Pulse, index: int) -> Optional[Session]:
    return _sink_input_to_session(pulse.sink_input_info(index))


_INFO = {
    MASTER_SINK: lambda pulse, index: pulse.sink_info(index),
    SINK: lambda pulse, index: pulse.sink_info(index),
    MASTER_SOURCE: lambda pulse, index: pulse.source_info(index),
    SINK_INPUT: lambda pulse, index: pulse.sink_input_info(index),
}

_VOLUME_SET = {
    MASTER_SINK: lambda pulse, index, vol: pulse.sink_volume_set(index, vol),
    SINK: lambda pulse, index, vol: pulse.sink_volume_set(index, vol),
    MASTER_SOURCE: lambda pulse, index, vol: pulse.source_volume_set(index, vol),
    SINK_INPUT: lambda pulse, index, vol: pulse.sink_input_volume_set(index, vol),
}
