"""Shared test fixtures and fakes for host commands and HTTP collaborators."""

import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pse_agent.retry import Result
from pse_agent.truststore import TrustPaths


def completed(argv, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(argv, returncode, stdout, stderr)


def strip_sudo(argv):
    """Drop a sudo prefix so fakes see the same argv as root or non-root."""
    argv = list(argv)
    if argv[:1] == ["sudo"]:
        argv = argv[1:]
        if argv[:1] == ["-E"]:
            argv = argv[1:]
    return argv


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------

class FakeRunner:
    """Scripted replacement for utils.run.

    Calls are recorded with any sudo prefix stripped, and raw_calls keeps
    the argv as issued. Handlers (callables returning a CompletedProcess or
    None) are consulted first, then prefix responses (longest prefix wins).
    Anything else succeeds with empty output.
    """

    def __init__(self, responses=None, default=0):
        self.calls = []
        self.raw_calls = []
        self.inputs = []
        self.responses = dict(responses or {})
        self.handlers = []
        self.default = default

    def __call__(self, argv, input=None, timeout=None, env=None, cwd=None):
        self.raw_calls.append(list(argv))
        argv = strip_sudo(argv)
        self.calls.append(argv)
        self.inputs.append(input)
        for handler in self.handlers:
            result = handler(argv)
            if result is not None:
                return result
        for prefix in sorted(self.responses, key=len, reverse=True):
            if tuple(argv[:len(prefix)]) == prefix:
                response = self.responses[prefix]
                if callable(response):
                    return response(argv)
                returncode, stdout, stderr = response
                return completed(argv, returncode, stdout, stderr)
        return completed(argv, self.default)

    def called(self, *prefix):
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]


class ForbiddenRunner:
    """Runner that fails the test if any command is executed."""

    def __call__(self, argv, **kwargs):
        raise AssertionError(f"unexpected command: {argv}")


# ---------------------------------------------------------------------------
# Host state models
# ---------------------------------------------------------------------------

class FakeIptables:
    """In-memory model of the iptables nat table."""

    def __init__(self):
        self.chains = {"PREROUTING": [], "OUTPUT": [], "POSTROUTING": []}

    def __call__(self, argv):
        if argv[:3] != ["iptables", "-t", "nat"]:
            return None
        op, chain, rule = argv[3], argv[4], tuple(argv[5:])
        if op == "-N":
            if chain in self.chains:
                return completed(argv, 1, "", "iptables: Chain already exists.")
            self.chains[chain] = []
            return completed(argv)
        if chain not in self.chains:
            return completed(argv, 1, "", "iptables: No chain/target/match by that name.")
        if op == "-L":
            return completed(argv, 0, f"Chain {chain}\n")
        if op == "-C":
            return completed(argv, 0 if rule in self.chains[chain] else 1)
        if op == "-A":
            self.chains[chain].append(rule)
            return completed(argv)
        if op == "-I":
            position = 1
            if rule[:1] and rule[0].isdigit():
                position, rule = int(rule[0]), rule[1:]
            self.chains[chain].insert(position - 1, rule)
            return completed(argv)
        if op == "-D":
            if rule not in self.chains[chain]:
                return completed(argv, 1, "", "iptables: Bad rule (does a matching rule exist in that chain?).")
            self.chains[chain].remove(rule)
            return completed(argv)
        if op == "-F":
            self.chains[chain] = []
            return completed(argv)
        if op == "-X":
            if any(r[-1:] == (chain,) for rules in self.chains.values() for r in rules):
                return completed(argv, 1, "", "iptables: Too many links.")
            del self.chains[chain]
            return completed(argv)
        return completed(argv, 2, "", f"unsupported op {op}")

    def diversions(self, chain="pse"):
        return [r for r in self.chains["OUTPUT"] if r == ("-j", chain)]


class FakeGitConfig:
    """Global git config as a dict; other git commands behave like no repo."""

    def __init__(self, initial=None):
        self.values = dict(initial or {})

    def __call__(self, argv):
        if argv[:1] != ["git"]:
            return None
        if argv[:3] != ["git", "config", "--global"]:
            return completed(argv, 128, "", "fatal: not a git repository")
        args = argv[3:]
        if args[0] == "--get":
            if args[1] in self.values:
                return completed(argv, 0, self.values[args[1]] + "\n")
            return completed(argv, 1)
        if args[0] == "--unset":
            if args[1] not in self.values:
                return completed(argv, 5)
            del self.values[args[1]]
            return completed(argv)
        self.values[args[0]] = args[1]
        return completed(argv)


class FakeCaCertificates:
    """update-ca-certificates: mirrors extra_dir certificates into certs_dir."""

    def __init__(self, paths: TrustPaths):
        self.paths = paths

    def __call__(self, argv):
        if argv[:1] != ["update-ca-certificates"]:
            return None
        extra = set(os.listdir(self.paths.extra_dir)) if os.path.isdir(self.paths.extra_dir) else set()
        os.makedirs(self.paths.certs_dir, exist_ok=True)
        if "--fresh" in argv:
            for name in os.listdir(self.paths.certs_dir):
                if name not in extra:
                    os.remove(os.path.join(self.paths.certs_dir, name))
        for name in extra:
            shutil.copyfile(os.path.join(self.paths.extra_dir, name), os.path.join(self.paths.certs_dir, name))
        return completed(argv)


# ---------------------------------------------------------------------------
# HTTP collaborators
# ---------------------------------------------------------------------------

class RecordingProxyClient:
    """ProxyClient stand-in recording /start and /end calls."""

    def __init__(self, ca_pem="", start_statuses=(200,), end_statuses=(200,), base_url="https://pse.test"):
        self.base_url = base_url
        self.ca_pem = ca_pem
        self.ca_calls = 0
        self.start_calls = []
        self.end_calls = []
        self._start_statuses = list(start_statuses)
        self._end_statuses = list(end_statuses)

    @staticmethod
    def _next(statuses):
        return statuses.pop(0) if len(statuses) > 1 else statuses[0]

    def fetch_ca(self):
        self.ca_calls += 1
        if not self.ca_pem:
            return Result(status=200, body="", ok=False)
        return Result.from_http(200, self.ca_pem)

    def start(self, fields):
        self.start_calls.append(dict(fields))
        return Result.from_http(self._next(self._start_statuses), "ok")

    def end(self, fields):
        self.end_calls.append(dict(fields))
        return Result.from_http(self._next(self._end_statuses), "ok")


class RecordingPortalClient:
    """PortalClient stand-in with fixed responses."""

    def __init__(self, creds, scan_id="7f0c2a8e-1b3d-4c5e-9f60-123456789abc"):
        self.creds = creds
        self.scan_id = scan_id
        self.scans_created = 0
        self.uploads = []

    def get_registry_credentials(self):
        return self.creds

    def create_scan(self):
        self.scans_created += 1
        return self.scan_id

    def upload_file(self, scan_id, file_type, filename, content):
        self.uploads.append((scan_id, file_type, filename, content))
        return Result.from_http(200, "{}")


class NoNetworkClient:
    """Any attribute access fails the test: proves no HTTP call happens."""

    base_url = "https://forbidden.test"

    def __getattr__(self, name):
        raise AssertionError(f"unexpected network call: {name}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def ca_pem():
    """A freshly generated CA certificate in PEM form."""
    from mitmproxy.certs import Cert, create_ca

    _, cert = create_ca(organization="InvisiRisk", cn="PSE Test CA", key_size=2048)
    return Cert(cert).to_pem().decode()


@pytest.fixture
def trust_paths(tmp_path):
    return TrustPaths(
        extra_dir=str(tmp_path / "ca-certificates" / "extra"),
        certs_dir=str(tmp_path / "ssl" / "certs"),
        legacy_path=str(tmp_path / "ssl" / "certs" / "pse.pem"),
        docker_certs_dir=str(tmp_path / "docker" / "certs.d"),
    )


@pytest.fixture
def host_runner(trust_paths):
    """FakeRunner wired to iptables, git config and update-ca-certificates models."""
    runner = FakeRunner()
    runner.iptables = FakeIptables()
    runner.git = FakeGitConfig()
    runner.handlers += [runner.iptables, runner.git, FakeCaCertificates(trust_paths)]
    return runner


def which_all(name):
    return f"/usr/bin/{name}"
