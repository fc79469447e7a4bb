class DeejError(Exception):
    """Base class for everything pulsedeej raises on purpose."""


class ConfigError(DeejError):
    pass


class TransportError(DeejError):
    """The serial port could not be opened, or stayed gone after every retry."""


class BackendError(DeejError):
    """A single call to the sound server failed."""


class BackendUnavailable(BackendError):
    """The connection to the sound server itself is down."""
