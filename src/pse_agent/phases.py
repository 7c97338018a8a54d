"""
Session lifecycle phases.

A monitored build runs these as separate process invocations:

    prepare -> setup | binary-setup -> intercept -> (build) -> cleanup

Each phase loads the session-state file, does its work, and flushes the
state back so the next invocation can pick up where it left off. Modes
named on the command line map to a fixed sequence of phases (MODES).
"""

import functools
import os
import shutil
import time
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from urllib.parse import urlparse

from . import gha, host, ipv6, proxyenv
from . import logging as agent_logging
from .api import UUID_RE, PortalClient, ProxyClient, RegistryCredentials
from .config import ConfigurationError, Settings
from .launcher import (
    BinaryLauncher,
    ContainerLauncher,
    LaunchedProxy,
    LaunchError,
    image_candidates,
    proxy_env,
    pull_image,
    registry_login,
)
from .locator import discover_proxy_address
from .redirect import PROXY_PORT, Redirector
from .retry import with_retry
from .state import EnvFile, Exports, ProfileScript, SessionState, StateError, StateStore
from .truststore import TrustInstallation, TrustPaths, TrustStore
from .utils import AgentError, Runner, ensure_tool, run

TEST_REGISTRY = RegistryCredentials(
    username="test-username",
    token="test-token",
    region="us-west-2",
    registry_id="123456789012",
)
TEST_PROXY_ADDRESS = "127.0.0.1"

ECR_VARS = ("ECR_USERNAME", "ECR_TOKEN", "ECR_REGION", "ECR_REGISTRY_ID")

# Retry policies: (attempts, initial delay, backoff factor)
START_RETRY = (3, 5, 2)
END_RETRY = (3, 2, 2)
UPLOAD_RETRY = (3, 1, 2)


def synthetic_session_id(now: datetime) -> str:
    return f"test-scan-{now:%Y%m%d%H%M%S}"


def log_errors(func):
    """Decorator to log exceptions with full traceback before re-raising."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AgentError:
            raise
        except Exception as e:
            agent_logging.logger.error(f"{func.__qualname__} error: {e}")
            agent_logging.logger.error(traceback.format_exc())
            raise
    return wrapper


class PhaseContext:
    """Collaborators and loaded state for one agent invocation.

    Everything that touches the host or network is injectable; defaults are
    the real implementations built from settings. With recover_state an
    unreadable state file is replaced by an empty session so teardown can
    still run.
    """

    def __init__(
        self,
        settings: Settings,
        store: StateStore | None = None,
        exports: Exports | None = None,
        outputs: EnvFile | None = None,
        runner: Runner = run,
        which: Callable[[str], str | None] = shutil.which,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
        proxy_client: ProxyClient | None = None,
        portal_client: PortalClient | None = None,
        hosts: host.HostResources | None = None,
        trust_paths: TrustPaths = TrustPaths(),
        container_launcher: ContainerLauncher | None = None,
        binary_launcher: BinaryLauncher | None = None,
        recover_state: bool = False,
    ) -> None:
        self.settings = settings
        self.store = store or StateStore(settings.state_file)
        self.exports = exports or Exports(
            EnvFile(settings.github_env),
            ProfileScript(settings.profile_script, runner=runner),
        )
        self.outputs = outputs or EnvFile(settings.github_output)
        self.runner = runner
        self.which = which
        self.sleep = sleep
        self.clock = clock
        self.proxy_client = proxy_client or ProxyClient(settings.proxy_url)
        self._portal_client = portal_client
        self.hosts = hosts or host.HostResources(settings.lock_dir, test_mode=settings.test_mode)
        self.trust_paths = trust_paths
        self.container_launcher = container_launcher or ContainerLauncher(runner=runner)
        self.binary_launcher = binary_launcher or BinaryLauncher(
            install_dir=os.path.join(settings.github_workspace or settings.runner_temp, "pse-bin"),
            runner=runner,
            sleep=sleep,
        )
        try:
            self.state: SessionState = self.store.load()
        except StateError as e:
            if not recover_state:
                raise
            agent_logging.logger.warning(f"Unreadable session state, continuing without it: {e}")
            self.state = SessionState()

    @property
    def test_mode(self) -> bool:
        return self.settings.test_mode

    @property
    def api_url(self) -> str:
        return self.settings.api_url or self.state.api_url

    @property
    def app_token(self) -> str:
        return self.settings.app_token or self.state.app_token

    @property
    def portal_url(self) -> str:
        return self.settings.portal_url or self.state.portal_url or self.api_url

    @property
    def portal(self) -> PortalClient:
        if self._portal_client is None:
            self._portal_client = PortalClient(self.api_url, self.app_token)
        return self._portal_client

    @property
    def session_id(self) -> str:
        return self.state.session_id or self.settings.scan_id

    def redirector(self) -> Redirector:
        return Redirector(runner=self.runner, which=self.which)

    def truststore(self) -> TrustStore:
        return TrustStore(self.exports, runner=self.runner, which=self.which,
                          paths=self.trust_paths, sleep=self.sleep)

    def save(self) -> None:
        self.store.save(self.state)


@dataclass
class PhaseResult:
    phase: str
    ok: bool
    message: str = ""
    config_error: bool = False


class Phase:
    """One step of the session lifecycle."""

    name = ""

    def run(self, ctx: PhaseContext) -> PhaseResult:
        logger = agent_logging.logger
        logger.info(f"=== {self.name}{' [TEST MODE]' if ctx.test_mode else ''} ===")
        agent_logging.log_event(phase=self.name, event="start", test_mode=ctx.test_mode)
        try:
            message = self.execute(ctx)
        except ConfigurationError as e:
            logger.error(f"{self.name}: {e}")
            agent_logging.log_event(phase=self.name, event="failed", error=str(e))
            return PhaseResult(self.name, False, str(e), config_error=True)
        except AgentError as e:
            logger.error(f"{self.name}: {e}")
            agent_logging.log_event(phase=self.name, event="failed", error=str(e))
            return PhaseResult(self.name, False, str(e))
        finally:
            ctx.save()

        ctx.state.mark_completed(self.name)
        ctx.save()
        agent_logging.log_event(phase=self.name, event="completed")
        logger.info(f"{self.name} complete{': ' + message if message else ''}")
        return PhaseResult(self.name, True, message or "")

    def execute(self, ctx: PhaseContext) -> str:
        raise NotImplementedError


# =============================================================================
# Prepare
# =============================================================================

class Prepare(Phase):
    """Obtain a session id and registry credentials from the control plane."""

    name = "prepare"

    @log_errors
    def execute(self, ctx: PhaseContext) -> str:
        settings = ctx.settings
        logger = agent_logging.logger

        if ctx.test_mode:
            session_id = settings.scan_id or synthetic_session_id(ctx.clock())
            creds = TEST_REGISTRY
            logger.info("[TEST MODE] using synthetic session id and registry credentials")
        else:
            settings.validate_api()
            creds = ctx.portal.get_registry_credentials()
            if settings.scan_id:
                session_id = settings.scan_id
                logger.info("Using supplied SCAN_ID")
            else:
                session_id = ctx.portal.create_scan()

        agent_logging.mask_secret(settings.app_token)
        agent_logging.mask_secret(creds.token)
        logger.info(f"scan_id: {session_id}")
        logger.info(f"ecr_username: {agent_logging.redact(creds.username, keep=3)}")
        logger.info(f"ecr_token: {agent_logging.redact(creds.token)}")
        logger.info(f"ecr_registry: {creds.registry_host}")

        state = ctx.state
        state.session_id = session_id
        state.api_url = settings.api_url
        state.portal_url = settings.portal_url
        state.app_token = settings.app_token
        state.registry = creds.to_dict()

        values = {
            "SCAN_ID": session_id,
            "PSE_API_URL": settings.api_url,
            "PSE_APP_TOKEN": settings.app_token,
            "PSE_PORTAL_URL": settings.portal_url,
        }
        ctx.exports.env_file.write(values)
        ctx.outputs.write(values)
        return f"session {session_id}"


# =============================================================================
# Setup / Binary setup
# =============================================================================

class Setup(Phase):
    """Pull and start the proxy as a container."""

    name = "setup"
    mode = "container"

    def _credentials(self, ctx: PhaseContext) -> RegistryCredentials:
        if ctx.state.registry:
            return RegistryCredentials.from_dict(ctx.state.registry)
        s = ctx.settings
        if s.ecr_username and s.ecr_token and s.ecr_region and s.ecr_registry_id:
            return RegistryCredentials(s.ecr_username, s.ecr_token, s.ecr_region, s.ecr_registry_id)
        if ctx.test_mode:
            return TEST_REGISTRY
        raise ConfigurationError(
            "registry credentials missing (run prepare first or set "
            + ", ".join(ECR_VARS) + ")"
        )

    def _launch(self, ctx: PhaseContext, image: str, env: dict[str, str]) -> LaunchedProxy:
        return ctx.container_launcher.start(image, env)

    def _drop_credentials(self, ctx: PhaseContext) -> None:
        ctx.state.registry = None
        ctx.save()
        if any(getattr(ctx.settings, var.lower()) for var in ECR_VARS):
            ctx.exports.env_file.blank(ECR_VARS)
            for var in ECR_VARS:
                ctx.exports.environ.pop(var, None)
        agent_logging.logger.info("Registry credentials removed from session state")

    @log_errors
    def execute(self, ctx: PhaseContext) -> str:
        logger = agent_logging.logger
        settings = ctx.settings
        if not ctx.session_id and not ctx.test_mode:
            raise ConfigurationError("SCAN_ID missing (run prepare first)")

        try:
            creds = self._credentials(ctx)
            if ctx.test_mode:
                logger.info(f"[TEST MODE] skipping registry login, pull and {self.mode} launch")
                launched = LaunchedProxy(mode=self.mode, address=TEST_PROXY_ADDRESS)
            elif settings.sidecar:
                logger.info("Proxy runs as a sidecar service, nothing to launch")
                launched = LaunchedProxy(mode="sidecar")
            else:
                ok, message = ensure_tool("docker", "docker.io", runner=ctx.runner, which=ctx.which)
                if not ok:
                    raise LaunchError(message)
                registry_login(creds, runner=ctx.runner)
                image = pull_image(image_candidates(creds, settings.image_tag),
                                   runner=ctx.runner, sleep=ctx.sleep)
                env = proxy_env(ctx.app_token, ctx.portal_url, settings.github_token)
                launched = self._launch(ctx, image, env)
        finally:
            self._drop_credentials(ctx)

        state = ctx.state
        state.proxy_mode = launched.mode
        state.proxy_address = launched.address
        state.container_name = launched.container_name
        state.binary_path = launched.binary_path
        state.log_file = launched.log_file
        state.pid = launched.pid

        if launched.address:
            ctx.exports.set({"PROXY_IP": launched.address})
        if launched.mode == "binary":
            ctx.exports.env_file.write({
                "PSE_BINARY_PATH": launched.binary_path,
                "PSE_LOG_FILE": launched.log_file,
                "PSE_PID": str(launched.pid or ""),
            })
        return f"proxy ({launched.mode}) at {launched.address or 'unknown address'}"


class BinarySetup(Setup):
    """Pull the proxy image and run its embedded binary on the host."""

    name = "binary-setup"
    mode = "binary"

    def _launch(self, ctx: PhaseContext, image: str, env: dict[str, str]) -> LaunchedProxy:
        return ctx.binary_launcher.start(image, env)


# =============================================================================
# Intercept
# =============================================================================

def redirect_methods(setting: str, proxy_mode: str) -> set[str]:
    """Resolve PSE_REDIRECT_METHOD against how the proxy was launched."""
    if setting == "auto":
        return {"proxy-env"} if proxy_mode == "binary" else {"iptables"}
    if setting == "both":
        return {"iptables", "proxy-env"}
    return {setting}


class Intercept(Phase):
    """Route build traffic through the proxy and trust its CA."""

    name = "intercept"

    @log_errors
    def execute(self, ctx: PhaseContext) -> str:
        logger = agent_logging.logger
        settings = ctx.settings
        state = ctx.state

        session_id = ctx.session_id
        if not session_id:
            if not ctx.test_mode:
                raise ConfigurationError("SCAN_ID is required for intercept")
            session_id = synthetic_session_id(ctx.clock())
            state.session_id = session_id

        if ctx.test_mode:
            state.proxy_address = state.proxy_address or settings.proxy_ip or TEST_PROXY_ADDRESS
            logger.info("[TEST MODE] skipping redirect, CA install and start signal")
            return f"session {session_id} (test mode)"

        address = state.proxy_address or settings.proxy_ip
        if not address:
            registry = state.registry or {}
            address = discover_proxy_address(settings, runner=ctx.runner,
                                             registry_id=registry.get("registry_id", ""),
                                             region=registry.get("region", ""))
        state.proxy_address = address

        methods = redirect_methods(settings.redirect_method, state.proxy_mode)
        if "iptables" in methods:
            redirector = ctx.redirector()
            ctx.hosts.acquire(host.REDIRECT, session_id, already_present=redirector.chain_exists())
            redirector.install(address, PROXY_PORT)
            state.redirect = {"address": address, "port": PROXY_PORT}
            ctx.save()
        if "proxy-env" in methods:
            proxy_host = proxyenv.DEFAULT_HOST if state.proxy_mode == "binary" else address
            extra = tuple(urlparse(u).hostname or "" for u in (ctx.api_url, ctx.portal_url))
            proxyenv.set_http_proxy_env(ctx.exports, proxy_host, extra_no_proxy=extra)
            state.http_proxy_env = True
            ctx.save()

        if settings.disable_ipv6 and not state.ipv6_disabled:
            ok, _ = ipv6.disable_ipv6(ctx.runner)
            state.ipv6_disabled = ok

        if state.trust:
            logger.info(f"Proxy CA already installed at {state.trust.get('certificate_path')}")
        else:
            truststore = ctx.truststore()
            ctx.hosts.acquire(host.TRUSTSTORE, session_id, already_present=truststore.cert_present())
            installation = truststore.install_ca(ctx.proxy_client)
            state.trust = installation.to_dict()
            ctx.save()

        fields = gha.build_metadata(settings, session_id, runner=ctx.runner)
        attempts, delay, factor = START_RETRY
        result = with_retry(lambda: ctx.proxy_client.start(fields), attempts, delay, factor,
                            sleep=ctx.sleep, description="start signal")
        if not result.ok:
            raise AgentError(f"start signal failed (status {result.status})")
        agent_logging.log_event(phase=self.name, event="start_signal", id=session_id,
                                build_url=fields["build_url"])
        return f"session {session_id} via {', '.join(sorted(methods))} to {address}"


# =============================================================================
# Cleanup
# =============================================================================

class Cleanup(Phase):
    """Report the end of the session and undo every host change. Never fails the build."""

    name = "cleanup"

    def _step(self, description: str, func: Callable[[], list[str] | None]) -> bool:
        logger = agent_logging.logger
        try:
            problems = func() or []
        except Exception as e:
            logger.warning(f"cleanup: {description} failed: {e}")
            logger.debug(traceback.format_exc())
            return False
        for problem in problems:
            logger.warning(f"cleanup: {description}: {problem}")
        return not problems

    def _end_signal(self, ctx: PhaseContext, session_id: str) -> list[str]:
        fields = {
            "id": session_id,
            "build_url": ctx.settings.build_url,
            "status": ctx.settings.job_status,
        }
        attempts, delay, factor = END_RETRY
        result = with_retry(lambda: ctx.proxy_client.end(fields), attempts, delay, factor,
                            sleep=ctx.sleep, description="end signal")
        agent_logging.log_event(phase=self.name, event="end_signal", id=session_id, ok=result.ok)
        if not result.ok:
            return [f"end signal not delivered (status {result.status})"]
        return []

    def _show_logs(self, ctx: PhaseContext) -> None:
        state = ctx.state
        log_file = state.log_file or ctx.settings.pse_log_file
        if log_file and os.path.exists(log_file):
            with open(log_file, errors="replace") as f:
                content = f.read()
            print("=" * 30 + " PSE binary logs " + "=" * 30)
            print(content, end="" if content.endswith("\n") else "\n")
            print("=" * 30 + " end of PSE binary logs " + "=" * 23, flush=True)
        if state.proxy_mode == "container":
            print("=" * 30 + " PSE container logs " + "=" * 27)
            print(ctx.container_launcher.logs(), flush=True)

    def _upload_reports(self, ctx: PhaseContext, session_id: str) -> list[str]:
        settings = ctx.settings
        problems = []
        attempts, delay, factor = UPLOAD_RETRY

        def upload(file_type: str, filename: str, content: bytes):
            result = with_retry(
                lambda: ctx.portal.upload_file(session_id, file_type, filename, content),
                attempts, delay, factor, sleep=ctx.sleep, description=f"{file_type} upload",
            )
            if not result.ok:
                problems.append(f"{file_type} upload failed (status {result.status})")

        if settings.github_token and settings.github_repository and settings.github_run_id:
            jobs = gha.fetch_jobs(settings)
            if jobs.ok:
                upload("job_status", "job_status.json", jobs.body.encode())
            else:
                problems.append(f"could not fetch workflow jobs (status {jobs.status})")

        log_file = ctx.state.log_file or settings.pse_log_file
        if log_file and os.path.exists(log_file):
            with open(log_file, "rb") as f:
                upload("logs", os.path.basename(log_file), f.read())
        return problems

    def _stop_proxy(self, ctx: PhaseContext) -> list[str]:
        state = ctx.state
        if ctx.settings.sidecar or state.proxy_mode == "sidecar":
            agent_logging.logger.info("Proxy is a sidecar service, leaving it running")
            return []
        if state.proxy_mode == "binary" or ctx.settings.pse_pid:
            pid = state.pid or int(ctx.settings.pse_pid or 0)
            return ctx.binary_launcher.stop(pid)
        return ctx.container_launcher.stop()

    def _remove_redirect(self, ctx: PhaseContext) -> list[str]:
        ok, message = ctx.redirector().remove()
        if ok:
            ctx.state.redirect = None
            return []
        return [message]

    def _remove_http_proxy_env(self, ctx: PhaseContext) -> None:
        if ctx.state.http_proxy_env:
            proxyenv.clear_http_proxy_env(ctx.exports)
            ctx.state.http_proxy_env = False

    def _remove_ca(self, ctx: PhaseContext) -> list[str]:
        installation = TrustInstallation.from_dict(ctx.state.trust) if ctx.state.trust else None
        problems = ctx.truststore().remove_ca(installation)
        if not problems:
            ctx.state.trust = None
        return problems

    def _restore_ipv6(self, ctx: PhaseContext) -> list[str]:
        if not ctx.state.ipv6_disabled:
            return []
        ok, message = ipv6.enable_ipv6(ctx.runner)
        if ok:
            ctx.state.ipv6_disabled = False
            return []
        return [message]

    def _drop_credentials(self, ctx: PhaseContext) -> None:
        if ctx.state.registry:
            agent_logging.logger.info("Dropping registry credentials left by prepare")
            ctx.state.registry = None

    def _release_claims(self, ctx: PhaseContext) -> None:
        ctx.hosts.release(host.REDIRECT)
        ctx.hosts.release(host.TRUSTSTORE)

    @log_errors
    def execute(self, ctx: PhaseContext) -> str:
        logger = agent_logging.logger
        settings = ctx.settings

        missing = [] if ctx.test_mode else [
            name for name, value in (("API_URL", ctx.api_url), ("APP_TOKEN", ctx.app_token)) if not value
        ]

        session_id = ctx.session_id
        if not session_id:
            session_id = f"cleanup_{int(time.time())}_{settings.github_run_id}"
            logger.warning(f"No session id recorded, reporting end as {session_id}")
        elif not UUID_RE.fullmatch(session_id):
            logger.warning(f"Session id {session_id} is not UUID-shaped")

        self._step("drop registry credentials", lambda: self._drop_credentials(ctx))

        if ctx.test_mode:
            logger.info("[TEST MODE] skipping end signal and host teardown")
            return f"session {session_id} (test mode)"

        self._step("end signal", lambda: self._end_signal(ctx, session_id))
        self._step("proxy logs", lambda: self._show_logs(ctx))
        if not missing:
            self._step("report upload", lambda: self._upload_reports(ctx, session_id))
        self._step("stop proxy", lambda: self._stop_proxy(ctx))
        self._step("remove redirect", lambda: self._remove_redirect(ctx))
        self._step("clear http proxy env", lambda: self._remove_http_proxy_env(ctx))
        self._step("remove CA", lambda: self._remove_ca(ctx))
        self._step("restore IPv6", lambda: self._restore_ipv6(ctx))
        self._step("release host claims", lambda: self._release_claims(ctx))

        if missing:
            raise ConfigurationError(
                f"missing required configuration: {', '.join(missing)} (host teardown was still performed)"
            )
        return f"session {session_id} closed"


# =============================================================================
# Modes
# =============================================================================

MODES: dict[str, tuple[type[Phase], ...]] = {
    "prepare": (Prepare,),
    "setup": (Setup,),
    "binary-setup": (BinarySetup,),
    "binary_setup": (BinarySetup,),
    "intercept": (Intercept,),
    "cleanup": (Cleanup,),
    "all": (Prepare, Setup, Intercept),
    "docker-intercept": (Prepare, BinarySetup, Intercept),
    # Legacy names
    "full": (Prepare, Setup, Intercept),
    "pse_only": (Prepare, Setup),
    "build_only": (Intercept,),
    "prepare_only": (Prepare,),
}


def run_mode(mode: str, ctx: PhaseContext) -> list[PhaseResult]:
    """Run the phases of a mode in order, stopping at the first failure."""
    results = []
    for phase_cls in MODES[mode]:
        result = phase_cls().run(ctx)
        results.append(result)
        if not result.ok:
            break
    return results
