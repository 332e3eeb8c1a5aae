"""Command-line interface for tello-link."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import TelloLinkApp
from .commands import CommandTransport
from .config import LinkConfig, load_config
from .core.models import CommandResult
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tello-link", description="Device session layer for the Tello drone"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Run the drone session service")

    send_parser = subparsers.add_parser(
        "send", help="Enter SDK mode, send one command and print the reply"
    )
    send_parser.add_argument("words", nargs="+", help="Command text, e.g. battery?")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


async def send_once(config: LinkConfig, text: str) -> CommandResult:
    """Run the ``command`` handshake followed by ``text`` on a fresh transport."""

    transport = CommandTransport(config.commands, config.command_address)
    await transport.open()
    try:
        handshake = await transport.send("command")
        if not handshake.success:
            return handshake
        return await transport.send(text)
    finally:
        transport.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        TelloLinkApp.start(config)
        return 0

    if args.command == "send":
        configure_logging(config.logging.level, log_path=None)
        result = asyncio.run(send_once(config, " ".join(args.words)))
        if not result.success:
            LOGGER.error(
                "%s failed after %d attempt(s): %s",
                result.command,
                result.attempts,
                result.error_message,
            )
            return 1
        print(result.response)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
