"""Shared fakes for the pulsedeej test suite."""

import asyncio
import sys
from pathlib import Path

import pytest
import serial

PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pulsedeej.backend import AudioBackend  # noqa: E402
from pulsedeej.directory import SessionDirectory  # noqa: E402
from pulsedeej.dispatch import Dispatcher  # noqa: E402
from pulsedeej.errors import BackendError, BackendUnavailable  # noqa: E402
from pulsedeej.session import Handle, Session, SessionKind  # noqa: E402
from pulsedeej.sliders import SliderEngine  # noqa: E402


def process(name, index, channels=2):
    return Session(name, SessionKind.PROCESS, Handle("sink_input", index), channels)


def master():
    return Session("master", SessionKind.MASTER_OUTPUT, Handle("master_sink", 0))


def mic():
    return Session("mic", SessionKind.MASTER_INPUT, Handle("master_source", 1))


def device(name, index):
    return Session(name, SessionKind.DEVICE, Handle("sink", index))


async def until(predicate, timeout=1.0):
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


class FakeBackend(AudioBackend):
    """In-memory sound server."""

    def __init__(self, sessions=()):
        self.sessions = {s.handle: s for s in sessions}
        self.volumes = {}
        self.set_calls = []
        self.list_calls = 0
        self.failing = set()
        self.failing_get = set()
        self.unavailable = False
        self.event_queue = asyncio.Queue()
        self.closed = False

    def add(self, session):
        self.sessions[session.handle] = session

    def remove(self, handle):
        self.sessions.pop(handle, None)

    async def list_sessions(self):
        self.list_calls += 1
        if self.unavailable:
            raise BackendUnavailable("sound server is down")
        return list(self.sessions.values())

    async def lookup(self, handle):
        return self.sessions.get(handle)

    async def get_volume(self, handle):
        if handle in self.failing_get:
            raise BackendError(f"get {handle} failed")
        return self.volumes.get(handle, 1.0)

    async def set_volume(self, handle, volume, channels):
        self.set_calls.append((handle, volume))
        if handle in self.failing:
            raise BackendError(f"set {handle} failed")
        self.volumes[handle] = volume

    async def events(self):
        while True:
            yield await self.event_queue.get()

    def close(self):
        self.closed = True

    def volumes_set_for(self, handle):
        return [volume for h, volume in self.set_calls if h == handle]


class FakeTransport:

    def __init__(self, protocol):
        self.protocol = protocol
        self.closed = False

    def close(self):
        self.closed = True

    def drop(self, exc=None):
        self.protocol.connection_lost(exc)


class FakeSerial:
    """Stands in for ``serial_asyncio.create_serial_connection``."""

    def __init__(self):
        self.opens = 0
        self.fail_opens = 0
        self.transports = []

    @property
    def transport(self):
        return self.transports[-1]

    @property
    def protocol(self):
        return self.transports[-1].protocol

    async def connect(self, protocol_factory):
        self.opens += 1
        if self.fail_opens:
            self.fail_opens -= 1
            raise serial.SerialException("could not open port /dev/ttyFAKE")
        protocol = protocol_factory()
        transport = FakeTransport(protocol)
        protocol.connection_made(transport)
        self.transports.append(transport)
        return transport, protocol


@pytest.fixture
def backend():
    return FakeBackend([
        master(),
        mic(),
        device("Built-in Audio Analog Stereo", 3),
        process("chrome", 10),
        process("chrome", 11),
        process("Discord", 12),
        process("spotify", 13),
    ])


@pytest.fixture
def directory(backend):
    return SessionDirectory(backend)


@pytest.fixture
def make_engine(backend, directory):
    def factory(slider_count, notifier=None):
        dispatcher = Dispatcher(directory, backend, notifier)
        return SliderEngine(slider_count, directory, dispatcher)

    return factory


@pytest.fixture
def fake_serial():
    return FakeSerial()
