"""Pulling and starting the inspection proxy.

Two launch styles share one image:
- container: `docker run` the image as a long-lived container named `pse`
- binary: copy the embedded `pse` binary and its policy/config out of the
  image and run it as a background host process
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from . import proc
from .api import RegistryCredentials
from .locator import PUBLIC_IMAGE, ProxyLocator
from .retry import Result, with_retry
from .sudo import privileged_argv, run_privileged
from .utils import AgentError, Runner, first_success, run

logger = logging.getLogger("pse_agent")

CONTAINER_NAME = "pse"

# Image pull retry policy (per candidate)
PULL_ATTEMPTS = 3
PULL_DELAY = 5
PULL_BACKOFF = 2

BINARY_SIGNATURE = "pse serve"
BINARY_ASSETS = ("/pse", "/policy.json", "/cfg.yaml", "/leaks.toml")
LEAKS_PATH = "/tmp/leaks.toml"
BINARY_LOG_FILE = "/tmp/pse_binary.log"
STARTUP_GRACE = 5  # seconds before checking the binary is up

_PULL_TIMEOUT = 600  # seconds


class LaunchError(AgentError):
    """The proxy could not be pulled or started."""


@dataclass
class LaunchedProxy:
    """A running proxy, as far as later phases need to know."""

    mode: str
    address: str = ""
    container_name: str = ""
    binary_path: str = ""
    log_file: str = ""
    pid: int | None = None


def proxy_env(app_token: str, portal_url: str, github_token: str = "") -> dict[str, str]:
    """Environment the proxy reads at startup."""
    env = {
        "PSE_DEBUG_FLAG": "--alsologtostderr",
        "POLICY_LOG": "t",
        "INVISIRISK_JWT_TOKEN": app_token,
        "INVISIRISK_PORTAL": portal_url,
    }
    if github_token:
        env["GITHUB_TOKEN"] = github_token
    return env


# =============================================================================
# Registry
# =============================================================================

def registry_login(creds: RegistryCredentials, runner: Runner = run) -> None:
    """docker login with the token on stdin (never on the command line)."""
    result = runner(
        ["docker", "login", "--username", creds.username, "--password-stdin", creds.registry_host],
        input=creds.token,
    )
    if result.returncode != 0:
        raise LaunchError(f"docker login to {creds.registry_host} failed: {result.stderr.strip()}")
    logger.info(f"Logged in to {creds.registry_host}")


def image_candidates(creds: RegistryCredentials | None, tag: str) -> list[str]:
    """Repository paths to try, private registry first."""
    candidates = []
    if creds is not None:
        candidates.append(f"{creds.registry_host}/{PUBLIC_IMAGE}:{tag}")
    candidates.append(f"{PUBLIC_IMAGE}:{tag}")
    return candidates


def pull_image(candidates: list[str], runner: Runner = run,
               sleep: Callable[[float], None] = time.sleep) -> str:
    """Pull the first candidate that succeeds. Returns the image reference."""

    def attempt(image: str) -> str | None:
        result = with_retry(
            lambda: Result.from_process(runner(["docker", "pull", image], timeout=_PULL_TIMEOUT)),
            max_attempts=PULL_ATTEMPTS,
            initial_delay=PULL_DELAY,
            backoff_factor=PULL_BACKOFF,
            sleep=sleep,
            description=f"pull {image}",
        )
        return image if result.ok else None

    image = first_success((f"pull {c}", lambda c=c: attempt(c)) for c in candidates)
    if not image:
        raise LaunchError(f"could not pull proxy image (tried {', '.join(candidates)})")
    logger.info(f"Pulled {image}")
    return image


# =============================================================================
# Container launch
# =============================================================================

class ContainerLauncher:
    """Runs the proxy as a docker container."""

    def __init__(self, runner: Runner = run, name: str = CONTAINER_NAME) -> None:
        self.runner = runner
        self.name = name

    def _running(self) -> bool:
        result = self.runner(["docker", "inspect", "-f", "{{.State.Running}}", self.name])
        return result.returncode == 0 and result.stdout.strip() == "true"

    def start(self, image: str, env: dict[str, str]) -> LaunchedProxy:
        if self._running():
            logger.info(f"Reusing running container {self.name}")
        else:
            # A stopped leftover would block `docker run --name`
            self.runner(["docker", "rm", "-f", self.name])
            argv = ["docker", "run", "-d", "--name", self.name]
            for key in env:
                # Values come from the process env so secrets stay off the command line
                argv += ["-e", key]
            argv.append(image)
            result = self.runner(argv, env={**os.environ, **env})
            if result.returncode != 0:
                raise LaunchError(f"docker run failed: {result.stderr.strip()}")
            logger.info(f"Started container {self.name} from {image}")

        name = self.name
        listing = self.runner(["docker", "ps", "--filter", f"ancestor={image}", "--format", "{{.Names}}"])
        if listing.returncode == 0 and listing.stdout.split():
            name = listing.stdout.split()[0]

        address = ProxyLocator(runner=self.runner).container_address(name)
        if not address:
            logger.warning(f"No network address for container {name}; intercept will discover it")
        return LaunchedProxy(mode="container", address=address or "", container_name=name)

    def logs(self) -> str:
        result = self.runner(["docker", "logs", self.name])
        return (result.stdout or "") + (result.stderr or "")

    def stop(self) -> list[str]:
        """Stop and remove the container. Returns problems (absent container is fine)."""
        problems = []
        for verb in ("stop", "rm"):
            result = self.runner(["docker", verb, self.name])
            if result.returncode != 0 and "no such container" not in result.stderr.lower():
                problems.append(f"docker {verb} {self.name}: {result.stderr.strip()}")
        return problems


# =============================================================================
# Binary launch
# =============================================================================

def host_address(runner: Runner = run) -> str:
    """First address reported by `hostname -I`."""
    result = runner(["hostname", "-I"])
    fields = result.stdout.split() if result.returncode == 0 else []
    return fields[0] if fields else ""


class BinaryLauncher:
    """Extracts the proxy binary from its image and runs it on the host."""

    def __init__(
        self,
        install_dir: str,
        runner: Runner = run,
        spawn: Callable[..., object] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
        proc_root: Path = proc.PROC_ROOT,
        log_file: str = BINARY_LOG_FILE,
        grace: float = STARTUP_GRACE,
    ) -> None:
        self.install_dir = install_dir
        self.runner = runner
        self.spawn = spawn
        self.sleep = sleep
        self.proc_root = proc_root
        self.log_file = log_file
        self.grace = grace

    @property
    def binary_path(self) -> str:
        return os.path.join(self.install_dir, "pse")

    def extract(self, image: str) -> str:
        """Copy the binary and its assets out of the image. Returns the binary path."""
        os.makedirs(self.install_dir, exist_ok=True)
        created = self.runner(["docker", "create", image])
        if created.returncode != 0 or not created.stdout.strip():
            raise LaunchError(f"docker create {image} failed: {created.stderr.strip()}")
        container_id = created.stdout.strip()
        try:
            for asset in BINARY_ASSETS:
                dest = os.path.join(self.install_dir, asset.lstrip("/"))
                result = self.runner(["docker", "cp", f"{container_id}:{asset}", dest])
                if result.returncode != 0:
                    raise LaunchError(f"cannot extract {asset} from {image}: {result.stderr.strip()}")
        finally:
            self.runner(["docker", "rm", container_id])

        for asset in BINARY_ASSETS:
            path = os.path.join(self.install_dir, asset.lstrip("/"))
            if os.path.exists(path):
                os.chmod(path, 0o755 if asset == "/pse" else 0o644)
        leaks = os.path.join(self.install_dir, "leaks.toml")
        result = run_privileged(["cp", leaks, LEAKS_PATH], runner=self.runner)
        if result.returncode != 0:
            raise LaunchError(f"cannot copy leaks config to {LEAKS_PATH}: {result.stderr.strip()}")
        logger.info(f"Extracted proxy binary to {self.binary_path}")
        return self.binary_path

    def serve_argv(self) -> list[str]:
        return [
            self.binary_path, "serve",
            "--policy", "./policy.json",
            "--config", "./cfg.yaml",
            "--leaks", LEAKS_PATH,
            "--global-session", "true",
        ]

    def start(self, image: str, env: dict[str, str]) -> LaunchedProxy:
        binary = self.extract(image)
        with open(self.log_file, "ab") as log:
            self.spawn(
                privileged_argv(self.serve_argv(), preserve_env=True),
                cwd=self.install_dir,
                env={**os.environ, **env},
                stdout=log,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )

        # No readiness endpoint; give the binary a fixed head start
        self.sleep(self.grace)
        pids = proc.find_pids(BINARY_SIGNATURE, self.proc_root)
        if not pids or not proc.is_alive(pids[0], self.proc_root):
            raise LaunchError(f"proxy binary did not stay up (see {self.log_file})")
        pid = pids[0]

        address = host_address(self.runner)
        if not address:
            raise LaunchError("could not determine host address (hostname -I)")
        logger.info(f"Proxy binary running (pid {pid}) at {address}")
        return LaunchedProxy(mode="binary", address=address, binary_path=binary,
                             log_file=self.log_file, pid=pid)

    def stop(self, pid: int | None) -> list[str]:
        if not proc.is_alive(pid, self.proc_root):
            return []
        result = run_privileged(["kill", str(pid)], runner=self.runner)
        if result.returncode != 0:
            return [f"kill {pid}: {result.stderr.strip()}"]
        return []
