"""
Privileged execution for the runner user.

Commands run directly when the agent is root and through sudo otherwise.
The file helpers below touch host locations (trust store, profile.d,
docker certs) that are usually root-owned, falling back to privileged
commands only when the current user cannot write the target itself.
"""

import os
import shutil

from . import logging as agent_logging
from .utils import Runner, run


def is_root() -> bool:
    return os.geteuid() == 0


def privileged_argv(argv: list[str], preserve_env: bool = False) -> list[str]:
    """Return argv prefixed for privilege elevation when not already root."""
    if is_root():
        return list(argv)
    prefix = ["sudo", "-E"] if preserve_env else ["sudo"]
    return prefix + list(argv)


def run_privileged(argv: list[str], runner: Runner = run, preserve_env: bool = False, **kwargs):
    """Run a command as root. Failure propagates as the command's exit status."""
    return runner(privileged_argv(argv, preserve_env=preserve_env), **kwargs)


def _can_write(path: str) -> bool:
    """Check whether path (or its nearest existing ancestor) is writable."""
    if is_root():
        return True
    target = path
    while not os.path.exists(target):
        parent = os.path.dirname(target)
        if parent == target:
            return False
        target = parent
    return os.access(target, os.W_OK)


def make_dirs(path: str, runner: Runner = run) -> tuple[bool, str]:
    """mkdir -p, privileged if needed.

    Returns (success, message).
    """
    if _can_write(path):
        try:
            os.makedirs(path, exist_ok=True)
            return True, path
        except OSError as e:
            return False, str(e)
    result = run_privileged(["mkdir", "-p", path], runner=runner)
    return result.returncode == 0, result.stderr.strip() or path


def write_file(path: str, content: str, append: bool = False, mode: int | None = None,
               runner: Runner = run) -> tuple[bool, str]:
    """Write (or append) text to a file, privileged if needed.

    Returns (success, message).
    """
    if _can_write(path):
        try:
            with open(path, "a" if append else "w") as f:
                f.write(content)
            if mode is not None:
                os.chmod(path, mode)
            return True, path
        except OSError as e:
            agent_logging.logger.error(f"Failed to write {path}: {e}")
            return False, str(e)

    argv = ["tee", "-a", path] if append else ["tee", path]
    result = run_privileged(argv, runner=runner, input=content)
    if result.returncode != 0:
        return False, result.stderr.strip()
    if mode is not None:
        run_privileged(["chmod", format(mode, "o"), path], runner=runner)
    return True, path


def copy_file(src: str, dst: str, runner: Runner = run) -> tuple[bool, str]:
    """Copy a file, privileged if needed.

    Returns (success, message).
    """
    if _can_write(dst):
        try:
            shutil.copyfile(src, dst)
            return True, dst
        except OSError as e:
            return False, str(e)
    result = run_privileged(["cp", src, dst], runner=runner)
    return result.returncode == 0, result.stderr.strip() or dst


def remove_file(path: str, runner: Runner = run) -> tuple[bool, str]:
    """Remove a file, tolerating its absence.

    Returns (success, message).
    """
    if not os.path.lexists(path):
        return True, "not present"
    if _can_write(os.path.dirname(path) or "."):
        try:
            os.remove(path)
            return True, "removed"
        except FileNotFoundError:
            return True, "not present"
        except OSError as e:
            return False, str(e)
    result = run_privileged(["rm", "-f", path], runner=runner)
    return result.returncode == 0, result.stderr.strip() or "removed"
