"""
Entry point for running mjpeg_relay as a module.

Usage:
    python -m mjpeg_relay [options]

Flags override config.yaml and environment variables.
"""

import argparse
import sys
from typing import List, Optional, Tuple

from mjpeg_relay import __version__
from mjpeg_relay.config import Settings, load_config, setup_logging


def parse_listen(value: str) -> Tuple[str, int]:
    """
    Split a listen address like ":3000" or "127.0.0.1:8080".

    Raises:
        argparse.ArgumentTypeError: If the port is missing or invalid
    """
    host, sep, port = value.rpartition(":")
    if not sep or not port.isdigit():
        raise argparse.ArgumentTypeError(f"Invalid listen address: {value!r}")
    return host or "0.0.0.0", int(port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mjpeg-relay",
        description="Serve an MJPEG encoder stream to many HTTP clients",
    )
    parser.add_argument("-i", "--input", dest="device", help="Video device to read from")
    parser.add_argument("-r", "--rate", dest="frame_rate", type=int, help="Frame rate to show in MJPEG")
    parser.add_argument("--height", type=int, help="Height of video frames")
    parser.add_argument("-w", "--width", type=int, help="Width of video frames")
    parser.add_argument("-q", "--quality", type=int, help="Image quality (2..31)")
    parser.add_argument("--source", choices=["ffmpeg", "stdin"], help="Frame source")
    parser.add_argument("--listen", type=parse_listen, help="Port/IP to listen on (e.g. :3000)")
    parser.add_argument("--log-level", help="Log level (debug, info, warning, error, critical)")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument(
        "--version",
        action="version",
        version=f"mjpeg-relay {__version__}",
        help="Prints current version and exits",
    )
    return parser


def apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    """Overlay command line flags on loaded settings."""
    data = settings.model_dump()

    for key in ("device", "frame_rate", "height", "width", "quality", "source"):
        value = getattr(args, key)
        if value is not None:
            data["encoder"][key] = value

    if args.listen is not None:
        data["server"]["host"], data["server"]["port"] = args.listen
    if args.log_level:
        data["logging"]["level"] = args.log_level

    return Settings.model_validate(data)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    import uvicorn

    from mjpeg_relay.main import create_app

    args = build_parser().parse_args(argv)
    settings = apply_args(load_config(args.config), args)
    setup_logging(settings)

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level.lower(),
        timeout_graceful_shutdown=settings.server.shutdown_timeout,
    )


if __name__ == "__main__":
    main(sys.argv[1:])
