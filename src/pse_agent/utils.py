"""Shared helpers: command execution, fallback chains, tool installation."""

import logging
import shutil
import subprocess
from typing import Callable, Iterable

logger = logging.getLogger("pse_agent")

# Exit statuses synthesized when a command cannot run at all
EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124

_DEFAULT_TIMEOUT = 300  # seconds

Runner = Callable[..., subprocess.CompletedProcess]


class AgentError(Exception):
    """Base class for errors that abort a phase."""


def run(
    argv: list[str],
    input: str | None = None,
    timeout: float | None = _DEFAULT_TIMEOUT,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
) -> subprocess.CompletedProcess:
    """Run a command, capturing text output. Never raises on failure.

    A missing executable yields exit status 127, a timeout 124.
    """
    logger.debug(f"exec: {' '.join(argv)}")
    try:
        return subprocess.run(
            argv,
            input=input,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        return subprocess.CompletedProcess(argv, EXIT_NOT_FOUND, "", str(e))
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(argv, EXIT_TIMEOUT, "", f"timed out after {timeout}s")


def first_success(strategies: Iterable[tuple[str, Callable[[], object]]]):
    """Try (name, strategy) pairs in order, returning the first non-empty result.

    Returns None if every strategy yields nothing.
    """
    for name, strategy in strategies:
        result = strategy()
        if result:
            logger.debug(f"{name}: {result}")
            return result
        logger.debug(f"{name}: no result")
    return None


# Package managers in preference order: (probe binary, install command prefix)
_PACKAGE_MANAGERS = [
    ("apt-get", ["apt-get", "install", "-y"]),
    ("yum", ["yum", "install", "-y"]),
    ("apk", ["apk", "add", "--no-cache"]),
]


def ensure_tool(
    tool: str,
    package: str | None = None,
    runner: Runner = run,
    which: Callable[[str], str | None] = shutil.which,
) -> tuple[bool, str]:
    """Make sure `tool` is on PATH, installing `package` if needed.

    Returns (success, message).
    """
    from .sudo import run_privileged

    if which(tool):
        return True, f"{tool} present"

    package = package or tool
    for manager, install in _PACKAGE_MANAGERS:
        if not which(manager):
            continue
        logger.info(f"{tool} not found, installing {package} via {manager}")
        if manager == "apt-get":
            run_privileged(["apt-get", "update"], runner=runner)
        result = run_privileged(install + [package], runner=runner)
        if result.returncode == 0:
            return True, f"installed {package} via {manager}"
        return False, f"{manager} failed to install {package}: {result.stderr.strip()}"

    return False, f"{tool} not found and no supported package manager"
