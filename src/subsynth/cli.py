"""Command line entry point.

Trains the Markov model on names that are known to resolve, asks URLScan
about each target, and prints every new in-scope name that comes back.

    subsynth -d example.com -i resolved.txt -o guesses.txt
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from subsynth.core.eventbus import EventBus
from subsynth.enumeration import Enumeration, default_services
from subsynth.util.config import ConfigurationError, load_config
from subsynth.util.io import read_names, write_names
from subsynth.util.log import setup_logging

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="subsynth",
        description="Guess subdomains with a Markov model trained on resolved names.")
    p.add_argument("-d", "--domain", action="append", default=[],
                   help="target domain (repeatable, overrides DOMAINS from .env)")
    p.add_argument("-i", "--input", type=Path, help="file of resolved names, one per line")
    p.add_argument("-o", "--output", type=Path, help="write discovered names here instead of stdout")
    p.add_argument("--env-file", type=Path, default=None, help="path to .env (default ./.env)")
    p.add_argument("--timeout", type=float, default=300.0, help="give up after this many seconds")
    p.add_argument("--idle", type=float, default=5.0, help="stop after this many quiet seconds")
    p.add_argument("--num-names", type=int, default=None, help="labels generated per burst")
    p.add_argument("--no-urlscan", action="store_true", help="do not query URLScan")
    p.add_argument("--log-file", type=Path, default=None, help="also log to this file")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    config = load_config(env_file=args.env_file, domains=args.domain)
    if args.num_names is not None:
        if args.num_names < 1:
            raise ConfigurationError("--num-names must be >= 1")
        config.num_names = args.num_names
    logger.info(f"Configuration: {config.to_dict()}")

    resolved = read_names(args.input) if args.input else []

    bus = EventBus()
    services = default_services(config, bus, use_urlscan=not args.no_urlscan)
    enum = Enumeration(config, services=services, bus=bus, idle_seconds=args.idle)
    found = await enum.run(resolved, timeout=args.timeout)

    names = sorted(r.name for r in found)
    if args.output:
        count = write_names(args.output, names)
        logger.info(f"Wrote {count} names to {args.output}")
    else:
        for name in names:
            print(name)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(log_file=args.log_file, level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        return asyncio.run(main_async(args))

    except ValueError as e:
        print(f"\n✗ Configuration error: {e}", file=sys.stderr)
        print("\nPass -d example.com or create .env with: DOMAINS=example.com", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\n\n✗ Enumeration interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logging.error(f"Unexpected error: {e}", exc_info=True)
        print(f"\n✗ Unexpected error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
