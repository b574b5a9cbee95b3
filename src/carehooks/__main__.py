"""Command line entry point.

Usage:
    python -m carehooks serve [--host HOST] [--port PORT]
    python -m carehooks worker [--once]
"""

import argparse
import asyncio
import logging
import signal
from typing import List, Optional

import uvicorn

from .core.logging_config import setup_logging
from .core.settings import get_settings
from .webhooks.runtime import get_runtime

logger = logging.getLogger("carehooks")


async def run_worker(once: bool = False) -> int:
    """Run dispatcher workers until interrupted, or drain once and exit."""
    runtime = get_runtime()
    async with runtime.create_dispatcher() as dispatcher:
        if once:
            processed = await dispatcher.drain(concurrency=runtime.settings.worker_concurrency)
            logger.info(f"Drained {processed} task(s)")
            return processed

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass
        await dispatcher.run(stop)
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="carehooks", description="Webhook dispatch for hospital domain events.")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    serve.add_argument("--port", type=int, default=8000, help="Port to listen on")

    worker = commands.add_parser("worker", help="Run dispatcher workers")
    worker.add_argument("--once", action="store_true", help="Deliver everything ready now, then exit")

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)

    if args.command == "serve":
        logger.info(f"Serving CareHooks API on {args.host}:{args.port}")
        uvicorn.run("carehooks.main:build_app", factory=True, host=args.host, port=args.port, log_config=None)
    else:
        asyncio.run(run_worker(once=args.once))


if __name__ == "__main__":
    main()
