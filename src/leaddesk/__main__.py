"""
LeadDesk API server.

Usage:
    python -m leaddesk
    python -m leaddesk --host 127.0.0.1 --port 9000
"""

import argparse
import asyncio
import signal
import sys

from aiohttp import web
from loguru import logger

from .app import create_app
from .config import Settings
from .errors import ConfigurationError


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} - {message}",
    )


async def main(settings: Settings) -> None:
    """Run the server until SIGINT or SIGTERM."""
    app = create_app(settings)
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, settings.host, settings.port)
    await site.start()
    logger.success(f"LeadDesk API listening on http://{settings.host}:{settings.port} ({settings.environment})")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await runner.cleanup()


def run() -> None:
    parser = argparse.ArgumentParser(description="LeadDesk API server")
    parser.add_argument("--host", help="Bind address (overrides HOST)")
    parser.add_argument("--port", type=int, help="Bind port (overrides PORT)")
    args = parser.parse_args()

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port

    configure_logging(settings.log_level)
    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
