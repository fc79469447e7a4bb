import abc
from typing import AsyncIterator, Optional

from .session import BackendEvent, Handle, Session


class AudioBackend(abc.ABC):
    """What the sliders need from a sound server. See ``pulse.PulseBackend``."""

    @abc.abstractmethod
    async def list_sessions(self) -> list[Session]:
        """Enumerate every controllable session. Raises BackendUnavailable."""

    @abc.abstractmethod
    async def lookup(self, handle: Handle) -> Optional[Session]:
        """Resolve a freshly added object, or None when it is not an output stream."""

    @abc.abstractmethod
    async def get_volume(self, handle: Handle) -> float:
        ...

    @abc.abstractmethod
    async def set_volume(self, handle: Handle, volume: float, channels: int) -> None:
        ...

    @abc.abstractmethod
    def events(self) -> AsyncIterator[BackendEvent]:
        """Unbounded stream of Added/Removed notifications."""

    async def open(self) -> None:
        pass

    def close(self) -> None:
        pass
