#!/usr/bin/env python3
"""abusewatch runtime entry point.

Wires together:
- Cowrie / Dionaea / Honeytrap log watchers
- report dispatcher (cooldown cache, daily-limit buffering, bulk reports)
- optional status API and Discord notifications

Configuration comes from environment variables (see abusewatch/config.py).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from abusewatch import __version__
from abusewatch.config import Settings, load_settings
from abusewatch.errors import ConfigError
from abusewatch.runtime import Runtime

logger = logging.getLogger("abusewatch")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Report T-Pot honeypot attackers to AbuseIPDB")
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration and exit",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Debug logging (same as EXTENDED_LOGS=true)",
    )
    parser.add_argument("--version", action="version", version=f"abusewatch {__version__}")
    return parser.parse_args()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
    )
    # per-request lines from the HTTP stack drown out our own
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


async def run(settings: Settings) -> None:
    runtime = Runtime(settings)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await runtime.start()
        await stop.wait()
    finally:
        await runtime.shutdown()


def main() -> int:
    args = parse_args()
    try:
        settings = load_settings()
    except ConfigError as exc:
        configure_logging(args.verbose)
        logger.error("%s", exc)
        return 2

    configure_logging(args.verbose or settings.extended_logs)
    if args.check_config:
        print("[main] configuration OK", flush=True)
        return 0

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        logger.exception("Fatal error: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
