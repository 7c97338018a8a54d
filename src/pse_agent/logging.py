"""Logging configuration and phase event logging."""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Configuration from environment
LOG_FILE = os.environ.get("PSE_AGENT_LOG_FILE", "")
EVENTS_FILE = os.environ.get(
    "PSE_EVENTS_FILE", os.environ.get("RUNNER_TEMP", "/tmp") + "/pse-events.jsonl"
)

# Module-level state (handlers attached by init_logging)
logger: logging.Logger = logging.getLogger("pse_agent")
_events_file = None


def init_logging(debug: bool = False, events_file: str | None = EVENTS_FILE) -> logging.Logger:
    """Initialize logging. Returns the main logger."""
    global _events_file

    # Operational logger (human-readable, shown in the CI step output)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False
    logger.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(handler)
    if LOG_FILE:
        file_handler = logging.FileHandler(LOG_FILE)
        file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
        logger.addHandler(file_handler)

    # Phase events file (JSONL format, line-buffered)
    close_logging()
    if events_file:
        try:
            _events_file = open(events_file, "a", buffering=1)
        except OSError as e:
            logger.warning(f"Cannot open events file {events_file}: {e}")

    return logger


def close_logging():
    """Close logging resources."""
    global _events_file
    if _events_file:
        _events_file.close()
        _events_file = None


def log_event(**kwargs) -> None:
    """Log a phase event as JSONL (phase and event first for readability)."""
    if not _events_file:
        return
    event = {"ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds")}
    for key in ("phase", "event"):
        if key in kwargs:
            event[key] = kwargs.pop(key)
    event.update(kwargs)
    _events_file.write(json.dumps(event, separators=(",", ":"), default=str) + "\n")


def redact(value: str | None, keep: int = 0) -> str:
    """Redact a secret for display, optionally keeping a short prefix."""
    if not value:
        return "<unset>"
    if keep <= 0:
        return "***"
    return value[:keep] + "***"


def mask_secret(value: str | None) -> None:
    """Ask the CI host to mask a value in all subsequent step output."""
    if value:
        print(f"::add-mask::{value}", flush=True)
