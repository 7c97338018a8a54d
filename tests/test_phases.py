"""Tests for pse_agent.phases: the session lifecycle across separate invocations."""

import os
import re
import sys
from datetime import datetime
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import (
    FakeRunner,
    ForbiddenRunner,
    NoNetworkClient,
    RecordingPortalClient,
    RecordingProxyClient,
    which_all,
)
from pse_agent import host
from pse_agent.api import RegistryCredentials
from pse_agent.config import Settings
from pse_agent.launcher import LaunchedProxy
from pse_agent.phases import (
    MODES,
    Cleanup,
    Intercept,
    PhaseContext,
    Prepare,
    Setup,
    redirect_methods,
    run_mode,
)
from pse_agent.redirect import CHAIN, PROXY_PORT
from pse_agent.state import EnvFile, Exports, ProfileScript, StateError, StateStore

SCAN_ID = "7f0c2a8e-1b3d-4c5e-9f60-123456789abc"
CREDS = RegistryCredentials(username="AWS", token="s3cr3t-registry-token", region="us-west-2",
                            registry_id="111122223333")
INSPECT_IP = ("docker", "inspect", "-f", "{{range .NetworkSettings.Networks}}{{.IPAddress}} {{end}}")
FIXED_NOW = datetime(2026, 3, 4, 5, 6, 7)


class Harness:
    """Builds a fresh PhaseContext per phase, like separate process invocations."""

    def __init__(self, tmp_path, runner, trust_paths, proxy_client=None, portal_client=None):
        self.tmp_path = tmp_path
        self.runner = runner
        self.trust_paths = trust_paths
        self.proxy_client = proxy_client or RecordingProxyClient()
        self.portal_client = portal_client or RecordingPortalClient(CREDS, scan_id=SCAN_ID)
        self.environ = {}
        self.base_env = {
            "RUNNER_TEMP": str(tmp_path),
            "GITHUB_ENV": str(tmp_path / "github_env"),
            "GITHUB_OUTPUT": str(tmp_path / "github_output"),
            "GITHUB_REPOSITORY": "acme/widgets",
            "GITHUB_RUN_ID": "42",
            "GITHUB_SHA": "deadbeef",
            "GITHUB_REF_NAME": "main",
            "GITHUB_WORKFLOW": "build",
            "PSE_PROFILE_SCRIPT": str(tmp_path / "profile.sh"),
        }

    def context(self, recover_state=False, **env) -> PhaseContext:
        settings = Settings.from_env({**self.base_env, **env})
        exports = Exports(EnvFile(settings.github_env), ProfileScript(settings.profile_script, runner=self.runner),
                          environ=self.environ)
        return PhaseContext(
            settings,
            exports=exports,
            runner=self.runner,
            which=which_all,
            sleep=lambda s: None,
            clock=lambda: FIXED_NOW,
            proxy_client=self.proxy_client,
            portal_client=self.portal_client,
            trust_paths=self.trust_paths,
            recover_state=recover_state,
        )

    def run(self, phase_cls, **env):
        ctx = self.context(**env)
        return phase_cls().run(ctx), ctx

    @property
    def state_text(self) -> str:
        path = self.tmp_path / "pse-session.yaml"
        return path.read_text() if path.exists() else ""

    @property
    def github_env_text(self) -> str:
        path = self.tmp_path / "github_env"
        return path.read_text() if path.exists() else ""


API_ENV = {"API_URL": "https://x", "APP_TOKEN": "t"}


@pytest.fixture
def harness(tmp_path, host_runner, trust_paths, ca_pem):
    host_runner.responses[INSPECT_IP] = (0, "10.0.0.5 ", "")
    return Harness(tmp_path, host_runner, trust_paths, proxy_client=RecordingProxyClient(ca_pem=ca_pem))


# ---------------------------------------------------------------------------
# Test mode
# ---------------------------------------------------------------------------

class TestTestMode:
    @pytest.mark.parametrize("mode", ["all", "docker-intercept", "cleanup", "binary-setup"])
    def test_no_commands_or_network(self, tmp_path, trust_paths, mode):
        h = Harness(tmp_path, ForbiddenRunner(), trust_paths,
                    proxy_client=NoNetworkClient(), portal_client=NoNetworkClient())
        ctx = h.context(TEST_MODE="true")
        # The profile script is a host file; keep it out of test mode runs
        ctx.exports.profile = ProfileScript(None)

        results = run_mode(mode, ctx)

        assert all(r.ok for r in results)
        assert [r.phase for r in results] == [cls.name for cls in MODES[mode]]

    def test_synthetic_session_id(self, tmp_path, trust_paths):
        h = Harness(tmp_path, ForbiddenRunner(), trust_paths,
                    proxy_client=NoNetworkClient(), portal_client=NoNetworkClient())
        result, ctx = h.run(Prepare, TEST_MODE="true")

        assert result.ok
        assert re.fullmatch(r"test-scan-\d{14}", ctx.state.session_id)
        assert ctx.state.session_id == "test-scan-20260304050607"
        assert f"SCAN_ID={ctx.state.session_id}" in h.github_env_text

    def test_intercept_alone_generates_session(self, tmp_path, trust_paths):
        h = Harness(tmp_path, ForbiddenRunner(), trust_paths,
                    proxy_client=NoNetworkClient(), portal_client=NoNetworkClient())
        result, ctx = h.run(Intercept, TEST_MODE="1")
        assert result.ok
        assert ctx.state.session_id.startswith("test-scan-")


# ---------------------------------------------------------------------------
# Prepare / Setup
# ---------------------------------------------------------------------------

class TestPrepare:
    def test_missing_config(self, harness):
        result, _ = harness.run(Prepare)
        assert not result.ok
        assert result.config_error
        assert "API_URL" in result.message

    def test_creates_session(self, harness):
        result, ctx = harness.run(Prepare, **API_ENV)

        assert result.ok
        assert ctx.state.session_id == SCAN_ID
        assert harness.portal_client.scans_created == 1
        assert f"SCAN_ID={SCAN_ID}" in harness.github_env_text
        assert f"SCAN_ID={SCAN_ID}" in (harness.tmp_path / "github_output").read_text()

    def test_supplied_scan_id(self, harness):
        result, ctx = harness.run(Prepare, SCAN_ID="given-id", **API_ENV)
        assert result.ok
        assert ctx.state.session_id == "given-id"
        assert harness.portal_client.scans_created == 0

    def test_state_file_is_owner_only(self, harness):
        harness.run(Prepare, **API_ENV)
        mode = os.stat(harness.tmp_path / "pse-session.yaml").st_mode & 0o777
        assert mode == 0o600


class TestSetup:
    def test_without_session(self, harness):
        result, _ = harness.run(Setup, **API_ENV)
        assert not result.ok
        assert result.config_error

    def test_launches_container(self, harness):
        harness.run(Prepare, **API_ENV)
        result, ctx = harness.run(Setup, **API_ENV)

        assert result.ok
        assert ctx.state.proxy_mode == "container"
        assert ctx.state.proxy_address == "10.0.0.5"
        assert harness.environ["PROXY_IP"] == "10.0.0.5"
        assert harness.runner.called("docker", "login")
        assert harness.runner.called("docker", "run")

    def test_credentials_never_leak(self, harness):
        harness.run(Prepare, **API_ENV)
        assert CREDS.token in harness.state_text

        harness.run(Setup, **API_ENV)

        assert CREDS.token not in harness.state_text
        assert CREDS.token not in harness.github_env_text
        assert CREDS.token not in (harness.tmp_path / "profile.sh").read_text()

    def test_credentials_dropped_when_pull_fails(self, harness):
        harness.runner.responses[("docker", "pull")] = (1, "", "manifest unknown")
        harness.run(Prepare, **API_ENV)
        result, ctx = harness.run(Setup, **API_ENV)

        assert not result.ok
        assert ctx.state.registry is None
        assert CREDS.token not in harness.state_text

    def test_inherited_ecr_vars_blanked(self, harness):
        env = {**API_ENV, "SCAN_ID": SCAN_ID, "ECR_USERNAME": "AWS", "ECR_TOKEN": "inherited",
               "ECR_REGION": "us-west-2", "ECR_REGISTRY_ID": "111122223333"}
        result, _ = harness.run(Setup, **env)

        assert result.ok
        lines = harness.github_env_text.splitlines()
        assert "ECR_TOKEN=" in lines
        login = harness.runner.calls.index(harness.runner.called("docker", "login")[0])
        assert harness.runner.inputs[login] == "inherited"

    def test_sidecar_launches_nothing(self, harness):
        harness.run(Prepare, **API_ENV)
        result, ctx = harness.run(Setup, PSE_PROXY_HOSTNAME="pse-proxy", **API_ENV)

        assert result.ok
        assert ctx.state.proxy_mode == "sidecar"
        assert not harness.runner.called("docker", "run")


# ---------------------------------------------------------------------------
# Intercept
# ---------------------------------------------------------------------------

class TestIntercept:
    def test_requires_session(self, harness):
        result, _ = harness.run(Intercept, **API_ENV)
        assert not result.ok
        assert result.config_error
        assert not harness.proxy_client.start_calls

    def test_unreachable_proxy_is_fatal(self, harness):
        harness.runner.responses.update({
            ("docker", "ps"): (0, "", ""),
            ("getent",): (2, "", ""),
            ("host",): (1, "", ""),
            ("nslookup",): (1, "", ""),
            ("ping",): (2, "", ""),
        })
        result, _ = harness.run(Intercept, SCAN_ID=SCAN_ID, **API_ENV)

        assert not result.ok
        assert "pse-proxy" in result.message
        assert CHAIN not in harness.runner.iptables.chains

    def test_start_signal_failure_is_fatal(self, harness):
        harness.proxy_client._start_statuses = [503]
        result, _ = harness.run(Intercept, SCAN_ID=SCAN_ID, PROXY_IP="10.0.0.5", **API_ENV)

        assert not result.ok
        assert "start signal" in result.message
        assert len(harness.proxy_client.start_calls) == 3

    def test_proxy_env_method(self, harness):
        result, ctx = harness.run(Intercept, SCAN_ID=SCAN_ID, PROXY_IP="10.0.0.5",
                                  PSE_REDIRECT_METHOD="proxy-env", **API_ENV)

        assert result.ok
        assert harness.environ["HTTPS_PROXY"] == "http://10.0.0.5:3128"
        assert "x" in harness.environ["NO_PROXY"].split(",")
        assert CHAIN not in harness.runner.iptables.chains
        assert ctx.state.http_proxy_env

    def test_refuses_foreign_chain(self, harness):
        harness.runner.iptables.chains[CHAIN] = []
        result, _ = harness.run(Intercept, SCAN_ID=SCAN_ID, PROXY_IP="10.0.0.5", **API_ENV)

        assert not result.ok
        assert "already in use" in result.message
        assert harness.runner.iptables.diversions() == []

    def test_rerun_is_idempotent(self, harness):
        env = dict(SCAN_ID=SCAN_ID, PROXY_IP="10.0.0.5", **API_ENV)
        assert harness.run(Intercept, **env)[0].ok
        assert harness.run(Intercept, **env)[0].ok

        assert len(harness.runner.iptables.diversions()) == 1
        assert harness.proxy_client.ca_calls == 1

    def test_ipv6_disabled_and_recorded(self, harness):
        result, ctx = harness.run(Intercept, SCAN_ID=SCAN_ID, PROXY_IP="10.0.0.5", **API_ENV)
        assert result.ok
        assert ctx.state.ipv6_disabled
        assert harness.runner.called("sysctl", "-w", "net.ipv6.conf.all.disable_ipv6=1")


class TestRedirectMethods:
    def test_auto(self):
        assert redirect_methods("auto", "container") == {"iptables"}
        assert redirect_methods("auto", "sidecar") == {"iptables"}
        assert redirect_methods("auto", "binary") == {"proxy-env"}

    def test_explicit(self):
        assert redirect_methods("both", "binary") == {"iptables", "proxy-env"}
        assert redirect_methods("iptables", "binary") == {"iptables"}


# ---------------------------------------------------------------------------
# Full lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_end_to_end(self, harness):
        """prepare -> setup -> intercept -> cleanup leaves the host as it was."""
        harness.proxy_client._end_statuses = [500]

        for phase in (Prepare, Setup, Intercept):
            result, ctx = harness.run(phase, **API_ENV)
            assert result.ok, result.message

        iptables = harness.runner.iptables
        assert iptables.chains[CHAIN] == [
            ("-p", "tcp", "--dport", "443", "-j", "DNAT", "--to-destination", f"10.0.0.5:{PROXY_PORT}")
        ]
        assert os.path.exists(harness.trust_paths.source_path)
        assert harness.proxy_client.start_calls[0]["id"] == SCAN_ID
        assert harness.proxy_client.start_calls[0]["build_url"] == "https://github.com/acme/widgets/actions/runs/42"
        assert harness.proxy_client.start_calls[0]["scm_commit"] == "deadbeef"

        result, ctx = harness.run(Cleanup, **API_ENV)

        assert result.ok
        assert [c["id"] for c in harness.proxy_client.end_calls] == [SCAN_ID] * 3
        assert CHAIN not in iptables.chains
        assert iptables.chains["OUTPUT"] == []
        assert not os.path.exists(harness.trust_paths.source_path)
        assert harness.runner.git.values == {}
        assert "NODE_EXTRA_CA_CERTS" not in harness.environ
        assert harness.runner.called("docker", "stop", "pse")
        assert harness.runner.called("sysctl", "-w", "net.ipv6.conf.all.disable_ipv6=0")
        assert ctx.hosts.holder(host.REDIRECT) is None
        assert ctx.hosts.holder(host.TRUSTSTORE) is None
        assert ctx.state.trust is None and ctx.state.redirect is None

    def test_cleanup_twice(self, harness):
        for phase in (Prepare, Setup, Intercept, Cleanup):
            harness.run(phase, **API_ENV)
        result, _ = harness.run(Cleanup, **API_ENV)
        assert result.ok

    def test_cleanup_without_config_still_tears_down(self, harness, tmp_path):
        env = dict(SCAN_ID=SCAN_ID, PROXY_IP="10.0.0.5", **API_ENV)
        assert harness.run(Intercept, **env)[0].ok
        # Fresh state: nothing recorded about API settings
        (tmp_path / "pse-session.yaml").unlink()

        result, _ = harness.run(Cleanup, SCAN_ID=SCAN_ID)

        assert not result.ok
        assert result.config_error
        assert CHAIN not in harness.runner.iptables.chains
        assert not os.path.exists(harness.trust_paths.source_path)

    def test_cleanup_after_prepare_drops_credentials(self, harness):
        assert harness.run(Prepare, **API_ENV)[0].ok
        assert CREDS.token in harness.state_text

        result, ctx = harness.run(Cleanup, **API_ENV)

        assert result.ok
        assert ctx.state.registry is None
        assert CREDS.token not in harness.state_text

    def test_unreadable_state_is_an_error(self, harness, tmp_path):
        (tmp_path / "pse-session.yaml").write_text("- not\n- a mapping\n")
        with pytest.raises(StateError, match="expected a mapping"):
            harness.context(**API_ENV)

    def test_cleanup_recovers_from_unreadable_state(self, harness, tmp_path):
        env = dict(SCAN_ID=SCAN_ID, PROXY_IP="10.0.0.5", **API_ENV)
        assert harness.run(Intercept, **env)[0].ok
        (tmp_path / "pse-session.yaml").write_text("- not\n- a mapping\n")

        ctx = harness.context(recover_state=True, **env)
        result = Cleanup().run(ctx)

        assert result.ok
        assert [c["id"] for c in harness.proxy_client.end_calls] == [SCAN_ID]
        assert CHAIN not in harness.runner.iptables.chains
        assert not os.path.exists(harness.trust_paths.source_path)
        assert StateStore(str(tmp_path / "pse-session.yaml")).load().completed_phases == ["cleanup"]

    def test_cleanup_binary_mode_kills_pid(self, harness):
        ctx = harness.context(**API_ENV)
        ctx.state.session_id = SCAN_ID
        ctx.state.proxy_mode = "binary"
        ctx.state.pid = 4242
        ctx.save()

        stopped = []
        ctx.binary_launcher.stop = lambda pid: stopped.append(pid) or []
        result = Cleanup().run(ctx)

        assert result.ok
        assert stopped == [4242]
        assert not harness.runner.called("docker", "stop")


class TestBinarySetupState:
    def test_exports_binary_details(self, harness):
        harness.run(Prepare, **API_ENV)
        ctx = harness.context(**API_ENV)
        ctx.binary_launcher.start = lambda image, env: LaunchedProxy(
            mode="binary", address="10.1.0.4", binary_path="/w/pse-bin/pse", log_file="/tmp/pse_binary.log", pid=77,
        )
        result = run_mode("binary-setup", ctx)[0]

        assert result.ok
        assert ctx.state.pid == 77
        lines = harness.github_env_text.splitlines()
        assert "PSE_PID=77" in lines
        assert "PSE_LOG_FILE=/tmp/pse_binary.log" in lines


class TestStatePersistence:
    def test_completed_phases_recorded(self, harness):
        harness.run(Prepare, **API_ENV)
        harness.run(Setup, **API_ENV)
        state = StateStore(str(harness.tmp_path / "pse-session.yaml")).load()
        assert state.completed_phases == ["prepare", "setup"]

    def test_failed_phase_not_marked(self, harness):
        harness.run(Setup, **API_ENV)
        state = StateStore(str(harness.tmp_path / "pse-session.yaml")).load()
        assert state.completed_phases == []
