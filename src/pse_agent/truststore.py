"""
Proxy CA installation into every trust store build tooling consults.

Install fetches the proxy CA and propagates it to:
- the OS trust store (update-ca-certificates)
- git (http.sslCAInfo)
- Node.js and Python requests (NODE_EXTRA_CA_CERTS, REQUESTS_CA_BUNDLE)
- docker (/etc/docker/certs.d), when docker is installed

Whatever install changed is recorded in a TrustInstallation so remove can
put git and the environment back exactly as they were.
"""

import glob
import logging
import os
import shutil
import time
from dataclasses import asdict, dataclass, field
from typing import Callable

from mitmproxy.certs import Cert

from . import sudo
from .api import ProxyClient
from .retry import with_retry
from .state import Exports
from .sudo import run_privileged
from .utils import AgentError, Runner, run

logger = logging.getLogger("pse_agent")

CERT_NAME = "pse.crt"

# Environment variables pointing language runtimes at the CA
RUNTIME_CA_VARS = ("NODE_EXTRA_CA_CERTS", "REQUESTS_CA_BUNDLE")
DOCKER_CERT_VAR = "DOCKER_CERT_PATH"

# CA fetch retry policy
FETCH_ATTEMPTS = 5
FETCH_DELAY = 3
FETCH_BACKOFF = 2


class TrustStoreError(AgentError):
    """The proxy CA could not be fetched or installed."""


@dataclass(frozen=True)
class TrustPaths:
    """Host locations touched by install/remove."""

    extra_dir: str = "/usr/local/share/ca-certificates/extra"
    certs_dir: str = "/etc/ssl/certs"
    legacy_path: str = "/etc/ssl/certs/pse.pem"
    docker_certs_dir: str = "/etc/docker/certs.d"

    @property
    def source_path(self) -> str:
        return os.path.join(self.extra_dir, CERT_NAME)

    @property
    def installed_path(self) -> str:
        return os.path.join(self.certs_dir, CERT_NAME)

    @property
    def docker_path(self) -> str:
        return os.path.join(self.docker_certs_dir, CERT_NAME)


@dataclass
class TrustInstallation:
    """What install_ca changed, and what was there before."""

    certificate_path: str
    source_path: str
    fingerprint: str = ""
    docker_path: str = ""
    previous_git_ca: str | None = None
    previous_env: dict[str, str | None] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TrustInstallation":
        return cls(**data)


def load_certificate(pem: str) -> Cert:
    """Parse and sanity-check a PEM CA certificate."""
    try:
        cert = Cert.from_pem(pem.encode())
    except ValueError as e:
        raise TrustStoreError(f"proxy CA is not a valid PEM certificate: {e}")
    if cert.has_expired():
        raise TrustStoreError(f"proxy CA expired on {cert.notafter:%Y-%m-%d}")
    return cert


class TrustStore:
    """Installs and removes the proxy CA."""

    def __init__(
        self,
        exports: Exports,
        runner: Runner = run,
        which: Callable[[str], str | None] = shutil.which,
        paths: TrustPaths = TrustPaths(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.exports = exports
        self.runner = runner
        self.which = which
        self.paths = paths
        self.sleep = sleep

    def cert_present(self) -> bool:
        return os.path.exists(self.paths.source_path)

    # -------------------------------------------------------------------------
    # git
    # -------------------------------------------------------------------------

    def _git_ca(self) -> str | None:
        result = self.runner(["git", "config", "--global", "--get", "http.sslCAInfo"])
        value = result.stdout.strip() if result.returncode == 0 else ""
        return value or None

    def _set_git_ca(self, path: str | None) -> tuple[bool, str]:
        if path:
            result = self.runner(["git", "config", "--global", "http.sslCAInfo", path])
        else:
            result = self.runner(["git", "config", "--global", "--unset", "http.sslCAInfo"])
            # 5: key was not set
            if result.returncode == 5:
                return True, "not set"
        return result.returncode == 0, result.stderr.strip()

    # -------------------------------------------------------------------------
    # install / remove
    # -------------------------------------------------------------------------

    def _locate_installed(self) -> str:
        if os.path.exists(self.paths.installed_path):
            return self.paths.installed_path
        matches = sorted(glob.glob(os.path.join(self.paths.certs_dir, "*pse*")))
        if matches:
            logger.debug(f"installed CA found by search: {matches[0]}")
            return matches[0]
        logger.warning(f"installed CA not found under {self.paths.certs_dir}, using {self.paths.source_path}")
        return self.paths.source_path

    def install_ca(self, client: ProxyClient) -> TrustInstallation:
        """Fetch the proxy CA and trust it everywhere. Returns what was changed."""
        result = with_retry(
            client.fetch_ca,
            max_attempts=FETCH_ATTEMPTS,
            initial_delay=FETCH_DELAY,
            backoff_factor=FETCH_BACKOFF,
            sleep=self.sleep,
            description="CA certificate fetch",
        )
        if not result.ok:
            raise TrustStoreError(f"could not fetch proxy CA from {client.base_url}/ca (status {result.status})")

        pem = result.body.strip() + "\n"
        cert = load_certificate(pem)
        fingerprint = cert.fingerprint().hex()
        logger.info(f"Proxy CA: cn={cert.cn} expires={cert.notafter:%Y-%m-%d} sha256={fingerprint}")

        ok, message = sudo.make_dirs(self.paths.extra_dir, runner=self.runner)
        if not ok:
            raise TrustStoreError(f"cannot create {self.paths.extra_dir}: {message}")
        ok, message = sudo.write_file(self.paths.source_path, pem, mode=0o644, runner=self.runner)
        if not ok:
            raise TrustStoreError(f"cannot write {self.paths.source_path}: {message}")

        refresh = run_privileged(["update-ca-certificates"], runner=self.runner)
        if refresh.returncode != 0:
            raise TrustStoreError(f"update-ca-certificates failed: {refresh.stderr.strip()}")

        installed = self._locate_installed()
        installation = TrustInstallation(
            certificate_path=installed,
            source_path=self.paths.source_path,
            fingerprint=fingerprint,
            previous_git_ca=self._git_ca(),
        )

        ok, message = self._set_git_ca(installed)
        if not ok:
            logger.warning(f"git config http.sslCAInfo failed: {message}")

        env = {var: installed for var in RUNTIME_CA_VARS}
        if self.which("docker"):
            if sudo.make_dirs(self.paths.docker_certs_dir, runner=self.runner)[0] and \
                    sudo.copy_file(installed, self.paths.docker_path, runner=self.runner)[0]:
                installation.docker_path = self.paths.docker_path
                env[DOCKER_CERT_VAR] = self.paths.docker_certs_dir
            else:
                logger.warning(f"Could not copy CA into {self.paths.docker_certs_dir}")

        installation.previous_env = {var: self.exports.environ.get(var) for var in env}
        self.exports.set(env)
        logger.info(f"Proxy CA installed at {installed}")
        return installation

    def remove_ca(self, installation: TrustInstallation | None = None) -> list[str]:
        """Undo install_ca. Every step runs even if an earlier one fails.

        Without a recorded installation (state lost), only settings that
        still point at this agent's certificate paths are reverted.
        Returns a list of problems (empty when clean).
        """
        problems = []
        known_paths = {self.paths.source_path, self.paths.installed_path, self.paths.legacy_path}

        if os.path.lexists(self.paths.source_path):
            ok, message = sudo.remove_file(self.paths.source_path, runner=self.runner)
        else:
            ok, message = sudo.remove_file(self.paths.legacy_path, runner=self.runner)
        if not ok:
            problems.append(f"remove certificate: {message}")

        docker_path = installation.docker_path if installation else self.paths.docker_path
        if docker_path:
            ok, message = sudo.remove_file(docker_path, runner=self.runner)
            if not ok:
                problems.append(f"remove docker certificate: {message}")

        refresh = run_privileged(["update-ca-certificates", "--fresh"], runner=self.runner)
        if refresh.returncode != 0:
            problems.append(f"update-ca-certificates --fresh: {refresh.stderr.strip()}")

        if installation is not None:
            known_paths.add(installation.certificate_path)
            ok, message = self._set_git_ca(installation.previous_git_ca)
            previous_env = installation.previous_env
        else:
            ok, message = True, ""
            if self._git_ca() in known_paths:
                ok, message = self._set_git_ca(None)
            previous_env = {
                var: None for var in RUNTIME_CA_VARS + (DOCKER_CERT_VAR,)
                if self.exports.environ.get(var) in known_paths | {self.paths.docker_certs_dir}
            }
        if not ok:
            problems.append(f"git config: {message}")

        self.exports.restore(previous_env)
        return problems
