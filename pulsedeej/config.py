import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import yaml

from .errors import ConfigError
from .session import DEVICE_KEY_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_SERIAL_PORT = "/dev/ttyUSB0"
DEFAULT_BAUD_RATE = 9600


@dataclass(frozen=True)
class Config:
    serial_port: str = DEFAULT_SERIAL_PORT
    baud_rate: int = DEFAULT_BAUD_RATE
    # slider index -> target names, positional
    slider_mapping: tuple = ()
    slider_count: int = 0
    device_pattern: str = DEVICE_KEY_PATTERN
    notifications: bool = False
    path: Optional[Path] = field(default=None, compare=False)


def _targets(value: Any, index: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"slider {index}: expected a name or a list of names, got {value!r}")
    targets = []
    for target in value:
        if not isinstance(target, str):
            raise ConfigError(f"slider {index}: target {target!r} is not a string")
        if target.strip():
            targets.append(target.strip())
    return tuple(targets)


def parse_slider_mapping(raw: Any) -> tuple:
    """
    Normalize ``slider_mapping`` into a positional tuple of target tuples.

    Accepts either a list (entry i is slider i) or a mapping of slider index to
    a single name or a list of names, e.g.::

        slider_mapping:
          0: master
          1: [vlc, mpv]
    """
    if raw is None:
        return ()
    if isinstance(raw, (list, tuple)):
        return tuple(_targets(value, i) for i, value in enumerate(raw))
    if not isinstance(raw, dict):
        raise ConfigError("slider_mapping must be a list or a mapping of index to targets")

    by_index = {}
    for key, value in raw.items():
        try:
            index = int(key)
        except (TypeError, ValueError):
            raise ConfigError(f"slider_mapping key {key!r} is not a slider index") from None
        if index < 0:
            raise ConfigError(f"slider_mapping key {key!r} is negative")
        by_index[index] = _targets(value, index)

    if not by_index:
        return ()
    return tuple(by_index.get(i, ()) for i in range(max(by_index) + 1))


def parse_config(data: Any, path: Optional[Path] = None) -> Config:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")

    mapping = parse_slider_mapping(data.get("slider_mapping"))

    serial_port = data.get("serial_port", DEFAULT_SERIAL_PORT)
    if not isinstance(serial_port, str) or not serial_port:
        raise ConfigError("serial_port must be a non-empty string")

    baud_rate = data.get("baud_rate", DEFAULT_BAUD_RATE)
    if isinstance(baud_rate, bool) or not isinstance(baud_rate, int) or baud_rate <= 0:
        raise ConfigError(f"baud_rate must be a positive integer, got {baud_rate!r}")

    slider_count = data.get("slider_count", len(mapping))
    if isinstance(slider_count, bool) or not isinstance(slider_count, int) or slider_count < 1:
        raise ConfigError("slider_count must be a positive integer (or give a non-empty slider_mapping)")

    device_pattern = data.get("device_pattern", DEVICE_KEY_PATTERN)
    try:
        re.compile(device_pattern)
    except (re.error, TypeError) as e:
        raise ConfigError(f"device_pattern is not a valid regular expression: {e}") from e

    return Config(
        serial_port=serial_port,
        baud_rate=baud_rate,
        slider_mapping=mapping,
        slider_count=slider_count,
        device_pattern=device_pattern,
        notifications=bool(data.get("notifications", False)),
        path=path,
    )


def load_config(path: Union[str, Path] = DEFAULT_CONFIG_PATH) -> Config:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"read {path}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"parse {path}: {e}") from e
    return parse_config(data, path)


class ConfigWatcher:
    """Poll a config file and hand every good reload to ``callback``."""

    def __init__(
        self,
        path: Union[str, Path],
        callback: Callable[[Config], Awaitable[None]],
        interval: float = 1.0,
    ):
        self.path = Path(path)
        self.callback = callback
        self.interval = interval
        self._mtime = self._stat()

    def _stat(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    async def check(self) -> Optional[Config]:
        mtime = self._stat()
        if mtime is None or mtime == self._mtime:
            return None
        self._mtime = mtime

        try:
            config = load_config(self.path)
        except ConfigError as e:
            logger.error("Ignoring config change, keeping the previous one: %s", e)
            return None

        logger.info("Detected config reload")
        await self.callback(config)
        return config

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.check()
