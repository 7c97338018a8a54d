"""Bounded retry with exponential backoff for network and command operations."""

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("pse_agent")


@dataclass(frozen=True, slots=True)
class Result:
    """Outcome of one attempt.

    `status` is an HTTP status for requests (0 on transport failure) or an
    exit status for commands; `ok` says which convention applies.
    """

    status: int
    body: str = ""
    ok: bool = False

    @classmethod
    def from_http(cls, status: int, body: str = "") -> "Result":
        return cls(status=status, body=body, ok=200 <= status < 300)

    @classmethod
    def from_process(cls, proc: subprocess.CompletedProcess) -> "Result":
        body = (proc.stdout or "") + (proc.stderr or "")
        return cls(status=proc.returncode, body=body, ok=proc.returncode == 0)


def with_retry(
    operation: Callable[[], Result],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> Result:
    """Invoke operation up to max_attempts times with exponential backoff.

    Every failure is retried the same way; there is no distinction between
    permanent and transient errors. Sleeps only between attempts and returns
    the last attempt's result, successful or not.
    """
    delay = initial_delay
    result = Result(status=0, body="not attempted")
    for attempt in range(1, max_attempts + 1):
        result = operation()
        if result.ok:
            if attempt > 1:
                logger.info(f"{description} succeeded on attempt {attempt}")
            return result
        logger.warning(
            f"{description} failed (attempt {attempt}/{max_attempts}, status {result.status})"
        )
        if attempt < max_attempts:
            logger.debug(f"retrying {description} in {delay}s")
            sleep(delay)
            delay *= backoff_factor
    return result
