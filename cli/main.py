"""kvctl entry point."""

import argparse
import os
from pathlib import Path
from typing import List, Optional

from common.logging_config import setup_logging
from cli.config import DEFAULT_CONFIG_PATH, Config
from cli.repl import repl_loop
from cli.syncd_client import SyncdClient


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvctl",
        description="Interactive shell for a kvsync daemon"
    )
    parser.add_argument("--host", help="Sync daemon host (overrides KVSYNC_API_HOST and the config file)")
    parser.add_argument("--port", type=int, help="Sync daemon port (overrides KVSYNC_API_PORT and the config file)")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to config.json")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def build_client(args: argparse.Namespace) -> SyncdClient:
    """Create the daemon client from parsed flags."""
    config = Config(args.config)
    config.override_address(host=args.host, port=args.port)
    return SyncdClient(config)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for kvctl."""
    args = build_parser().parse_args(argv)
    log_level = 'DEBUG' if args.debug else os.getenv('LOG_LEVEL', 'WARNING')
    logger = setup_logging('cli', log_level=log_level)
    if args.debug:
        logger.info("Debug logging enabled")

    client = build_client(args)
    logger.info(f"kvctl starting [daemon={client.config.get_base_url()}]")
    try:
        repl_loop(client)
    except Exception as e:
        logger.error(f"CLI error: {e}", exc_info=True)
        raise
    finally:
        logger.info("kvctl exiting")


if __name__ == "__main__":
    main()
