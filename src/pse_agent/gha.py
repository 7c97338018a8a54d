"""GitHub Actions build context: metadata for the start signal, job status for reporting."""

import urllib.request

from .api import send_request
from .config import Settings
from .retry import Result
from .utils import Runner, run


API_BASE = "https://api.github.com"
API_VERSION = "2022-11-28"
BUILDER = "samplegithub"

_TIMEOUT = 30  # seconds


def _git(runner: Runner, *args: str, cwd: str | None = None) -> str:
    result = runner(["git", *args], cwd=cwd or None)
    return result.stdout.strip() if result.returncode == 0 else ""


def build_metadata(settings: Settings, session_id: str, runner: Runner = run) -> dict[str, str]:
    """Form fields for POST /start.

    Git values come from the checkout when there is one, falling back to
    the GITHUB_* context.
    """
    cwd = settings.github_workspace
    origin = _git(runner, "config", "--get", "remote.origin.url", cwd=cwd)
    commit = _git(runner, "rev-parse", "HEAD", cwd=cwd)
    branch = _git(runner, "rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    if branch == "HEAD":  # detached checkout
        branch = ""

    repo = settings.github_repository
    return {
        "builder": BUILDER,
        "id": session_id,
        "build_id": settings.github_run_id,
        "build_url": settings.build_url,
        "project": repo.split("/")[-1] if repo else "",
        "workflow": settings.github_workflow,
        "builder_url": settings.github_server_url,
        "scm": "git",
        "scm_commit": commit or settings.github_sha,
        "scm_branch": branch or settings.github_ref_name,
        "scm_origin": origin or (f"{settings.github_server_url}/{repo}" if repo else ""),
    }


def fetch_jobs(settings: Settings, api_base: str = API_BASE) -> Result:
    """GET the jobs of the current workflow run (raw JSON body)."""
    url = f"{api_base}/repos/{settings.github_repository}/actions/runs/{settings.github_run_id}/jobs"
    req = urllib.request.Request(url, headers={
        "Accept": "application/vnd.github+json",
        "Authorization": f"Bearer {settings.github_token}",
        "X-GitHub-Api-Version": API_VERSION,
        "User-Agent": "pse-action",
    })
    return send_request(req, _TIMEOUT)
