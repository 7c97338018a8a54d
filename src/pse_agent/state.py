"""Session state shared across phase invocations.

Each phase is a separate process. Two channels carry state forward:

- The session-state file: a small YAML document with a fixed schema,
  loaded when a phase starts and flushed when it ends. It is the source
  of truth for the agent itself and the only place ephemeral registry
  credentials are ever written.
- Exports: KEY=value lines appended to the CI host's environment file
  (GITHUB_ENV) and a profile.d script, so that *build* steps and new
  shells inherit the proxy/trust settings.
"""

import logging
import os
import re
import shlex
import tempfile
from dataclasses import asdict, dataclass, field, fields
from typing import MutableMapping

import yaml

from . import sudo
from .utils import AgentError, Runner, run

logger = logging.getLogger("pse_agent")

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StateError(AgentError):
    """The session-state file exists but cannot be read."""


@dataclass
class SessionState:
    """Everything one monitored build needs to carry between phases."""

    session_id: str = ""
    api_url: str = ""
    portal_url: str = ""
    app_token: str = ""

    # Ephemeral; written by prepare, dropped by setup (or cleanup if setup never ran)
    registry: dict[str, str] | None = None

    # Proxy process
    proxy_mode: str = ""  # "container", "binary" or "sidecar"
    proxy_address: str = ""
    container_name: str = ""
    binary_path: str = ""
    log_file: str = ""
    pid: int | None = None

    # Host changes made by intercept, reversed by cleanup
    redirect: dict[str, object] | None = None
    http_proxy_env: bool = False
    trust: dict[str, object] | None = None
    ipv6_disabled: bool = False

    completed_phases: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionState":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.debug(f"ignoring unknown state keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)

    def mark_completed(self, phase: str) -> None:
        if phase not in self.completed_phases:
            self.completed_phases.append(phase)


class StateStore:
    """YAML-backed persistence for SessionState."""

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> SessionState:
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            return SessionState()
        except yaml.YAMLError as e:
            raise StateError(f"{self.path}: malformed YAML: {e}") from e
        if data is None:
            return SessionState()
        if not isinstance(data, dict):
            raise StateError(f"{self.path}: expected a mapping, got {type(data).__name__}")
        return SessionState.from_dict(data)

    def save(self, state: SessionState) -> None:
        """Atomically replace the state file (owner-only permissions)."""
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".pse-session-")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(state.to_dict(), f, default_flow_style=False, sort_keys=False)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise


# =============================================================================
# Exports for build steps
# =============================================================================

def _check_export(key: str, value: str) -> None:
    if not _ENV_KEY_RE.match(key):
        raise ValueError(f"invalid environment variable name: {key!r}")
    if "\n" in value or "\r" in value:
        raise ValueError(f"value for {key} must be a single line")


class EnvFile:
    """Appends KEY=value lines to a CI host environment/output file.

    A missing path (not running under the CI host) makes every write a no-op.
    """

    def __init__(self, path: str | None) -> None:
        self.path = path or None

    def write(self, mapping: dict[str, str]) -> None:
        if not self.path or not mapping:
            return
        lines = []
        for key, value in mapping.items():
            _check_export(key, value)
            lines.append(f"{key}={value}\n")
        with open(self.path, "a") as f:
            f.writelines(lines)

    def blank(self, keys) -> None:
        self.write({key: "" for key in keys})


class ProfileScript:
    """A profile.d script applying the same exports to new login shells."""

    def __init__(self, path: str | None, runner: Runner = run) -> None:
        self.path = path or None
        self.runner = runner

    def _append(self, text: str) -> None:
        if not self.path:
            return
        ok, message = sudo.write_file(self.path, text, append=True, runner=self.runner)
        if not ok:
            logger.warning(f"Could not update {self.path}: {message}")

    def export(self, mapping: dict[str, str]) -> None:
        if mapping:
            self._append("".join(f"export {k}={shlex.quote(v)}\n" for k, v in mapping.items()))

    def unset(self, keys) -> None:
        keys = list(keys)
        if keys:
            self._append(f"unset {' '.join(keys)}\n")


class Exports:
    """Fan-out of environment changes to this process, GITHUB_ENV and the profile script."""

    def __init__(self, env_file: EnvFile, profile: ProfileScript,
                 environ: MutableMapping[str, str] | None = None) -> None:
        self.env_file = env_file
        self.profile = profile
        self.environ = os.environ if environ is None else environ

    def set(self, mapping: dict[str, str]) -> None:
        for key, value in mapping.items():
            _check_export(key, value)
        self.environ.update(mapping)
        self.env_file.write(mapping)
        self.profile.export(mapping)

    def clear(self, keys) -> None:
        """Unset keys here and for later steps.

        GITHUB_ENV can only assign, so later steps see an exported key as an
        empty value rather than unset. Keys missing from this environment
        were never exported and are not written there at all.
        """
        keys = list(keys)
        exported = [key for key in keys if key in self.environ]
        for key in exported:
            del self.environ[key]
        self.env_file.blank(exported)
        self.profile.unset(keys)

    def restore(self, previous: dict[str, str | None]) -> None:
        """Put keys back to recorded values (None means unset)."""
        self.set({k: v for k, v in previous.items() if v is not None})
        self.clear(k for k, v in previous.items() if v is None)
