"""Entry point for the tab relay."""

import argparse
import asyncio
import logging
import os
import sys

from .config import DEFAULT_CDP_URL, DEFAULT_PORT, RelayConfig
from .host import CdpTargetHost
from .relay import Relay


def configure_logging() -> None:
    """Configure logging based on environment."""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Tab Relay - bridge browser tabs' DevTools sessions to a relay server"
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Relay server host (default: 127.0.0.1, env TAB_RELAY_HOST).",
    )
    parser.add_argument(
        "--port",
        type=str,
        default=None,
        help=f"Relay server port (default: {DEFAULT_PORT}, env TAB_RELAY_PORT). "
        "Invalid values fall back to the default.",
    )
    parser.add_argument(
        "--cdp-url",
        type=str,
        default=None,
        help=f"Browser DevTools HTTP endpoint (default: {DEFAULT_CDP_URL}, env TAB_RELAY_CDP_URL).",
    )
    parser.add_argument(
        "--no-auto-attach",
        action="store_true",
        default=False,
        help="Only attach when the controller asks; connect to the relay at startup.",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    configure_logging()
    logger = logging.getLogger(__name__)

    args = parse_args(argv)
    config = RelayConfig.from_args(args)
    logger.info(
        f"Starting Tab Relay (relay: {config.ws_url()}, browser: {config.cdp_url})..."
    )

    relay = Relay(CdpTargetHost(config.cdp_url, config.connect_timeout), config)
    try:
        await relay.run()
    except Exception:
        logger.exception("Relay error")
        raise


def run() -> None:
    """Run the relay."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
