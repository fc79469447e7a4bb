"""
Live view of the audio sessions the sliders can reach.

Writers (``refresh`` and ``on_backend_event``) take ``_write_lock`` and build a
new ``DirectoryState`` before swapping it in. ``resolve`` never awaits, so a
reader always sees one complete state, either the old or the new one.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

from .backend import AudioBackend
from .errors import BackendError
from .session import (
    ALWAYS_MAPPED_KINDS,
    RESERVED_KEYS,
    Added,
    BackendEvent,
    DevicePredicate,
    Handle,
    Removed,
    Session,
    device_predicate,
)

logger = logging.getLogger(__name__)

UNMAPPED_TARGET = "deej.unmapped"

_EMPTY: frozenset = frozenset()


@dataclass(frozen=True)
class DirectoryState:
    by_key: Mapping[str, frozenset] = field(default_factory=lambda: MappingProxyType({}))
    by_handle: Mapping[Handle, Session] = field(default_factory=lambda: MappingProxyType({}))
    unmapped: frozenset = _EMPTY

    def __len__(self):
        return len(self.by_handle)


class SessionDirectory:

    def __init__(self, backend: AudioBackend, is_device_key: Optional[DevicePredicate] = None):
        self.backend = backend
        self.is_device_key = is_device_key or device_predicate()
        self._state = DirectoryState()
        self._targets: frozenset = _EMPTY
        self._write_lock = asyncio.Lock()
        self._listeners: list[Callable[[], None]] = []

    def __repr__(self):
        return f"<SessionDirectory {len(self._state)} sessions, {len(self._state.unmapped)} unmapped>"

    @property
    def state(self) -> DirectoryState:
        return self._state

    def sessions(self) -> frozenset:
        return frozenset(self._state.by_handle.values())

    def on_update(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def set_targets(self, targets: Iterable[str]) -> None:
        """Remember which keys sliders point at; those sessions are no longer unmapped."""
        self._targets = frozenset(
            t.lower() for t in targets if t and t.lower() != UNMAPPED_TARGET
        )
        state = self._state
        self._state = DirectoryState(state.by_key, state.by_handle, self._unmapped(state.by_handle.values()))

    def resolve(self, target: str) -> frozenset:
        state = self._state
        key = target.lower()
        if key == UNMAPPED_TARGET:
            return state.unmapped
        return state.by_key.get(key, _EMPTY)

    async def refresh(self) -> None:
        """Re-enumerate everything from the backend. Raises BackendUnavailable."""
        async with self._write_lock:
            sessions = await self.backend.list_sessions()
            by_handle = {session.handle: session for session in sessions}
            self._swap(by_handle)
        logger.info("Got all audio sessions successfully: %r", self)
        self._notify()

    async def on_backend_event(self, event: BackendEvent) -> None:
        async with self._write_lock:
            by_handle = dict(self._state.by_handle)

            if isinstance(event, Removed):
                session = by_handle.pop(event.handle, None)
                if session is None:
                    return
                logger.debug("Session removed: %s", session)

            elif isinstance(event, Added):
                session = await self.backend.lookup(event.handle)
                if session is None:
                    # not an output stream, nothing to control
                    logger.debug("Ignoring add event for %s", event.handle)
                    return
                by_handle[session.handle] = session
                logger.debug("Session added: %s", session)

            else:
                raise TypeError(f"unknown backend event {event!r}")

            self._swap(by_handle)
        self._notify()

    async def run(self) -> None:
        """Follow backend change events until cancelled."""
        async for event in self.backend.events():
            try:
                await self.on_backend_event(event)
            except BackendError as e:
                logger.warning("Failed to apply %s: %s", event, e)

    def _swap(self, by_handle: dict) -> None:
        by_key: dict = {}
        for session in by_handle.values():
            by_key.setdefault(session.key, set()).add(session)

        self._state = DirectoryState(
            by_key=MappingProxyType({key: frozenset(found) for key, found in by_key.items()}),
            by_handle=MappingProxyType(by_handle),
            unmapped=self._unmapped(by_handle.values()),
        )

    def _unmapped(self, sessions: Iterable[Session]) -> frozenset:
        return frozenset(s for s in sessions if not self._is_mapped(s))

    def _is_mapped(self, session: Session) -> bool:
        # master/system/mic and devices always count as mapped
        if session.key in RESERVED_KEYS or session.kind in ALWAYS_MAPPED_KINDS:
            return True
        if self.is_device_key(session.key):
            return True
        return session.key in self._targets

    def _notify(self) -> None:
        for callback in self._listeners:
            try:
                callback()
            except Exception:
                logger.exception("Session update listener failed")
