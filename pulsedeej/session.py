import enum
import re
from dataclasses import dataclass, field
from typing import Callable, NamedTuple, Union

MASTER_KEY = "master"  # default output device
SYSTEM_KEY = "system"  # system sounds
MIC_KEY = "mic"  # default input device

RESERVED_KEYS = frozenset({MASTER_KEY, SYSTEM_KEY, MIC_KEY})

# friendly device names look like "Headphones (Realtek Audio)"
DEVICE_KEY_PATTERN = r"^.+ \(.+\)$"

DevicePredicate = Callable[[str], bool]


class SessionKind(enum.Enum):
    MASTER_OUTPUT = "master_output"
    MASTER_INPUT = "master_input"
    SYSTEM_SOUNDS = "system_sounds"
    PROCESS = "process"
    DEVICE = "device"


# kinds that never count as unmapped, whether or not a slider targets them
ALWAYS_MAPPED_KINDS = frozenset({
    SessionKind.MASTER_OUTPUT,
    SessionKind.MASTER_INPUT,
    SessionKind.SYSTEM_SOUNDS,
    SessionKind.DEVICE,
})


class Handle(NamedTuple):
    """Backend identity of a session, e.g. ``Handle("sink_input", 42)``."""

    facility: str
    index: int


@dataclass(frozen=True)
class Session:
    key: str
    kind: SessionKind
    handle: Handle
    channels: int = field(default=2, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "key", self.key.lower())

    def __str__(self):
        return f"{self.key} ({self.kind.value} {self.handle.facility}#{self.handle.index})"


@dataclass(frozen=True)
class Added:
    handle: Handle


@dataclass(frozen=True)
class Removed:
    handle: Handle


BackendEvent = Union[Added, Removed]


def device_predicate(pattern: str = DEVICE_KEY_PATTERN) -> DevicePredicate:
    """Build a predicate telling device friendly names apart from process names."""
    compiled = re.compile(pattern)

    def is_device_key(key: str) -> bool:
        return compiled.match(key) is not None

    return is_device_key
