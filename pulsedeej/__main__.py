import argparse
import asyncio
import logging
import sys

from . import __version__
from .app import Deej, run_forever
from .config import DEFAULT_CONFIG_PATH, load_config
from .errors import DeejError
from .logging_config import configure_logging

logger = logging.getLogger("pulsedeej")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pulsedeej",
        description="Control PulseAudio volumes with a serial slider box",
    )
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH, help="path to config.yaml")
    parser.add_argument("--log-level", default="info", help="debug, info, warning or error")
    parser.add_argument("--log-file", default=None, help="also log to this file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level, args.log_file)
    except ValueError as e:
        print(f"pulsedeej: {e}", file=sys.stderr)
        return 2

    try:
        config = load_config(args.config)
        asyncio.run(run_forever(Deej(config)))
    except DeejError as e:
        logger.error("Failed to run deej: %s", e)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
