"""Agent settings, read from the CI step environment."""

import os
from dataclasses import dataclass

from .utils import AgentError

DEFAULT_PROXY_URL = "https://pse.invisirisk.com"
DEFAULT_PROXY_HOSTNAME = "pse-proxy"
DEFAULT_IMAGE_TAG = "bh-test"
DEFAULT_PROFILE_SCRIPT = "/etc/profile.d/pse-proxy.sh"

REDIRECT_METHODS = ("auto", "iptables", "proxy-env", "both")

_TRUTHY = ("1", "true", "yes")


class ConfigurationError(AgentError):
    """A required setting is missing or invalid."""


def _flag(environ, *names: str, default: bool = False) -> bool:
    for name in names:
        value = environ.get(name)
        if value is not None and value != "":
            return value.strip().lower() in _TRUTHY
    return default


def _first(environ, *names: str, default: str = "") -> str:
    """Return the first non-empty value among names."""
    for name in names:
        value = environ.get(name, "")
        if value:
            return value
    return default


@dataclass(frozen=True)
class Settings:
    """Immutable view of the environment a phase was started with."""

    api_url: str = ""
    app_token: str = ""
    portal_url: str = ""
    scan_id: str = ""
    proxy_ip: str = ""
    proxy_hostname: str = DEFAULT_PROXY_HOSTNAME
    proxy_hostname_is_default: bool = True
    debug: bool = False
    test_mode: bool = False

    # GitHub Actions context
    github_token: str = ""
    github_repository: str = ""
    github_run_id: str = ""
    github_server_url: str = "https://github.com"
    github_workflow: str = ""
    github_sha: str = ""
    github_ref_name: str = ""
    github_workspace: str = ""
    github_env: str = ""
    github_output: str = ""
    runner_temp: str = "/tmp"
    job_status: str = "unknown"

    # Agent behavior
    sidecar: bool = False
    proxy_url: str = DEFAULT_PROXY_URL
    redirect_method: str = "auto"
    image_tag: str = DEFAULT_IMAGE_TAG
    state_file: str = ""
    lock_dir: str = ""
    profile_script: str = DEFAULT_PROFILE_SCRIPT
    disable_ipv6: bool = True

    # Registry credentials inherited from a previous step's environment
    ecr_username: str = ""
    ecr_token: str = ""
    ecr_region: str = ""
    ecr_registry_id: str = ""

    # Written by binary setup for later phases
    pse_log_file: str = ""
    pse_pid: str = ""

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        if environ is None:
            environ = os.environ

        api_url = _first(environ, "API_URL", "PSE_API_URL").rstrip("/")
        portal_url = _first(environ, "PORTAL_URL", "PSE_PORTAL_URL", default=api_url).rstrip("/")
        hostname = environ.get("PROXY_HOSTNAME", "")
        runner_temp = environ.get("RUNNER_TEMP") or "/tmp"

        redirect_method = environ.get("PSE_REDIRECT_METHOD", "auto") or "auto"
        if redirect_method not in REDIRECT_METHODS:
            raise ConfigurationError(
                f"PSE_REDIRECT_METHOD must be one of {', '.join(REDIRECT_METHODS)}, got {redirect_method!r}"
            )

        return cls(
            api_url=api_url,
            app_token=_first(environ, "APP_TOKEN", "PSE_APP_TOKEN"),
            portal_url=portal_url,
            scan_id=environ.get("SCAN_ID", ""),
            proxy_ip=environ.get("PROXY_IP", ""),
            proxy_hostname=hostname or DEFAULT_PROXY_HOSTNAME,
            proxy_hostname_is_default=not hostname,
            debug=_flag(environ, "DEBUG") or _flag(environ, "DEBUG_FORCE"),
            test_mode=_flag(environ, "TEST_MODE"),
            github_token=environ.get("GITHUB_TOKEN", ""),
            github_repository=environ.get("GITHUB_REPOSITORY", ""),
            github_run_id=environ.get("GITHUB_RUN_ID", ""),
            github_server_url=environ.get("GITHUB_SERVER_URL") or "https://github.com",
            github_workflow=environ.get("GITHUB_WORKFLOW", ""),
            github_sha=environ.get("GITHUB_SHA", ""),
            github_ref_name=environ.get("GITHUB_REF_NAME", ""),
            github_workspace=environ.get("GITHUB_WORKSPACE", ""),
            github_env=environ.get("GITHUB_ENV", ""),
            github_output=environ.get("GITHUB_OUTPUT", ""),
            runner_temp=runner_temp,
            job_status=environ.get("INPUT_JOB_STATUS") or "unknown",
            sidecar=bool(environ.get("PSE_PROXY_HOSTNAME")),
            proxy_url=(environ.get("PSE_PROXY_URL") or DEFAULT_PROXY_URL).rstrip("/"),
            redirect_method=redirect_method,
            image_tag=environ.get("PSE_PROXY_IMAGE_TAG") or DEFAULT_IMAGE_TAG,
            state_file=environ.get("PSE_STATE_FILE") or f"{runner_temp}/pse-session.yaml",
            lock_dir=environ.get("PSE_LOCK_DIR") or f"{runner_temp}/pse-locks",
            profile_script=environ.get("PSE_PROFILE_SCRIPT") or DEFAULT_PROFILE_SCRIPT,
            disable_ipv6=_flag(environ, "PSE_DISABLE_IPV6", default=True),
            ecr_username=environ.get("ECR_USERNAME", ""),
            ecr_token=environ.get("ECR_TOKEN", ""),
            ecr_region=environ.get("ECR_REGION", ""),
            ecr_registry_id=environ.get("ECR_REGISTRY_ID", ""),
            pse_log_file=environ.get("PSE_LOG_FILE", ""),
            pse_pid=environ.get("PSE_PID", ""),
        )

    def missing_api_settings(self) -> list[str]:
        """Return names of unset control-plane settings."""
        missing = []
        if not self.api_url:
            missing.append("API_URL")
        if not self.app_token:
            missing.append("APP_TOKEN")
        return missing

    def validate_api(self) -> None:
        """Raise ConfigurationError unless the control-plane endpoint is configured."""
        missing = self.missing_api_settings()
        if missing:
            raise ConfigurationError(f"missing required configuration: {', '.join(missing)}")

    @property
    def build_url(self) -> str:
        return f"{self.github_server_url}/{self.github_repository}/actions/runs/{self.github_run_id}"
