"""Command-line interface for running a signaling relay server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence

from aiovoicemesh.relay import RelayServer

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the relay server."""
    parser = argparse.ArgumentParser(description="Run a voice mesh signaling relay")
    parser.add_argument(
        "--host",
        default="0.0.0.0",  # noqa: S104
        help="Address to listen on",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8927,
        help="Port to listen on",
    )
    parser.add_argument(
        "--name",
        default="voicemesh-relay",
        help="Name advertised via mDNS",
    )
    parser.add_argument(
        "--retention",
        type=float,
        default=60.0,
        help="Seconds a signaling message is kept when nobody consumes it",
    )
    parser.add_argument(
        "--no-advertise",
        action="store_true",
        help="Do not advertise the relay via mDNS",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    return parser.parse_args(argv)


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Serve the relay until interrupted."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    server = RelayServer(retention=args.retention)
    try:
        await server.start(
            args.host, args.port, name=args.name, advertise=not args.no_advertise
        )
    except OSError as err:
        logger.error("Could not start relay server: %s", err)  # noqa: TRY400
        await server.stop()
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        logger.info("Shutting down relay server")
        await server.stop()
    return 0


def main() -> int:
    """Run the relay server."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
