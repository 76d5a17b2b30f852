# shadowsync/cli.py
"""
Command line entry point.

  shadowsync relay                 run the relay until SIGINT/SIGTERM
  shadowsync resync [--method M]   one-shot resync of existing ownership
  shadowsync serve                 run the shadow HTTP service
  shadowsync show-config           print the effective (redacted) settings

Exit codes: 0 ok, 1 unexpected failure, 2 configuration error,
3 authorization error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from . import __version__
from .config import ENV_PREFIX, Settings, load_settings
from .errors import AuthorizationError, ConfigurationError, TransientIOError
from .logging import configure_json_logging
from .relay import run_relay
from .resync import METHODS, run_resync

logger = logging.getLogger("shadowsync.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_AUTH = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shadowsync",
        description="Mirror token ownership from a primary ledger to a read-only shadow ledger",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        default=None,
        help=f"YAML settings file (default: ${ENV_PREFIX}CONFIG_PATH)",
    )
    parser.add_argument("--log-level", default=None, help="override the configured log level")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("relay", help="run the relay (backfill, then follow the primary)")
    p_resync = sub.add_parser("resync", help="relay the current ownership of every token once")
    p_resync.add_argument("--method", choices=METHODS, default="auto")
    sub.add_parser("serve", help="run the shadow HTTP service")
    sub.add_parser("show-config", help="print effective settings with secrets redacted")
    return parser


def _load(args: argparse.Namespace) -> Settings:
    env = dict(os.environ)
    if args.config:
        env[ENV_PREFIX + "CONFIG_PATH"] = args.config
    if args.log_level:
        env[ENV_PREFIX + "LOG_LEVEL"] = args.log_level
    return load_settings(env)


def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "show-config":
        print(json.dumps(settings.public_view(), indent=2, sort_keys=True))
        return EXIT_OK
    if args.command == "relay":
        asyncio.run(run_relay(settings))
        return EXIT_OK
    if args.command == "resync":
        report = asyncio.run(run_resync(settings, method=args.method))
        print(
            json.dumps(
                {
                    "method": report.method,
                    "collected": report.collected,
                    "relayed": report.relayed,
                    "batches": report.batches,
                    "skipped_batches": report.skipped_batches,
                }
            )
        )
        return EXIT_OK
    if args.command == "serve":
        from .service_http import serve

        serve(settings)
        return EXIT_OK
    raise ConfigurationError(f"unknown command {args.command!r}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = _load(args)
    except ConfigurationError as e:
        print(f"shadowsync: configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    configure_json_logging(settings.log_level)
    try:
        return _dispatch(args, settings)
    except ConfigurationError as e:
        logger.error("configuration error: %s", e)
        print(f"shadowsync: configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except AuthorizationError as e:
        logger.error("authorization error: %s", e, extra={"relayer": e.caller})
        print(f"shadowsync: not authorized: {e}", file=sys.stderr)
        return EXIT_AUTH
    except TransientIOError as e:
        logger.error("giving up after I/O failure: %s", e)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
