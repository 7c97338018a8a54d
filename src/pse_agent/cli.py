#!/usr/bin/env python3
"""Command-line entry point for the PSE build agent.

Usage:
    pse-agent [MODE] [--test-mode] [--debug]

MODE is one of prepare, setup, binary-setup, intercept, cleanup, all,
docker-intercept (or a legacy alias). Without an argument the MODE
environment variable is used, defaulting to `all`. All other inputs are
read from the environment (API_URL, APP_TOKEN, SCAN_ID, PROXY_IP, ...).

Exit codes:
    0 - All phases succeeded (cleanup always reports 0 on teardown problems)
    1 - A phase failed
    2 - Configuration error or unknown mode
"""

import argparse
import os
import sys

from . import logging as agent_logging
from .config import ConfigurationError, Settings
from .phases import MODES, Cleanup, PhaseContext, run_mode
from .state import StateError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pse-agent",
        description="Transparent HTTPS interception for CI builds",
    )
    parser.add_argument(
        "mode",
        nargs="?",
        help=f"Phase or phase sequence to run: {', '.join(MODES)} (default: $MODE or all)",
    )
    parser.add_argument("--test-mode", action="store_true",
                        help="Exercise the flow with synthetic values and no side effects")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--state-file", help="Session state file (default: $RUNNER_TEMP/pse-session.yaml)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    environ = dict(os.environ)
    if args.test_mode:
        environ["TEST_MODE"] = "true"
    if args.debug:
        environ["DEBUG"] = "true"
    if args.state_file:
        environ["PSE_STATE_FILE"] = args.state_file

    try:
        settings = Settings.from_env(environ)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    logger = agent_logging.init_logging(
        debug=settings.debug,
        events_file=environ.get("PSE_EVENTS_FILE", agent_logging.EVENTS_FILE),
    )

    mode = (args.mode or os.environ.get("MODE") or "all").strip()
    if mode not in MODES:
        logger.error(f"Unknown mode {mode!r} (expected one of: {', '.join(MODES)})")
        agent_logging.close_logging()
        return 2

    try:
        # Cleanup must still tear the host down when the state file is damaged
        ctx = PhaseContext(settings, recover_state=Cleanup in MODES[mode])
        results = run_mode(mode, ctx)
    except StateError as e:
        logger.error(f"Cannot read session state: {e}")
        return 1
    finally:
        agent_logging.close_logging()

    failed = [r for r in results if not r.ok]
    if not failed:
        return 0
    result = failed[0]
    if result.config_error:
        return 2
    if result.phase == "cleanup":
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
