# =============================================================================
# HyperWa -- Command Line Entry Point
# =============================================================================
#
#   python -m hyperwa --config config.json --log-level debug
# =============================================================================

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from ._logging import configure_logging, logger
from .bot import HyperWaBot
from .config import BotConfig
from .errors import HyperWaError


async def run(config: BotConfig) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    bot = HyperWaBot(config)
    try:
        await bot.initialize()
    except HyperWaError as exc:
        logger.error("Startup failed: %s", exc)
        await bot.shutdown()
        return 1

    await stop.wait()
    await bot.shutdown()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="hyperwa", description="HyperWa messaging bot")
    parser.add_argument("--config", default=None, help="Path to a JSON config file")
    parser.add_argument("--log-level", default="info", help="debug, info, warning, error")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    config = BotConfig.load(args.config)
    return asyncio.run(run(config))


if __name__ == "__main__":
    sys.exit(main())
