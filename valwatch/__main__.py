"""
valwatch - Entry point.

Usage:
    python -m valwatch                    # settings from the environment and .env
    python -m valwatch --env-file prod.env
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from valwatch.chain import ChainQueryService
from valwatch.config import Settings, get_settings
from valwatch.database import Database
from valwatch.events import EventStreamClient
from valwatch.lifecycle import Application
from valwatch.notifier import TelegramNotifier

logger = logging.getLogger("valwatch")


def build_application(settings: Settings) -> Application:
    """Wire the production collaborators."""
    return Application(
        settings,
        db=Database(settings.database_path),
        notifier=TelegramNotifier(settings.tg_token, settings.telegram_api_url),
        chain=ChainQueryService(settings.mainnet_axelar_lcd_rest_base_urls),
        event_stream=EventStreamClient(
            settings.mainnet_axelar_ws_urls,
            settings.axelar_voter_address,
            reconnect_interval=settings.job_init_retry_interval,
        ),
    )


async def run(settings: Settings) -> int:
    app = build_application(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.request_stop)

    return await app.serve()


def main() -> None:
    parser = argparse.ArgumentParser(description="Axelar validator monitor")
    parser.add_argument("--env-file", default=".env", help="Environment file to read settings from")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    args = parser.parse_args()

    settings = get_settings(args.env_file)
    level = (args.log_level or settings.log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    logger.info("Starting valwatch")
    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
