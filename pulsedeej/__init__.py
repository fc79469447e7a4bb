"""Drive PulseAudio stream volumes from a serial slider box."""

__version__ = "0.2.0"
