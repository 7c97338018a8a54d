"""Transparent redirection of outbound HTTPS to the proxy via an iptables NAT chain.

All rules live in one dedicated chain, so install and teardown never touch
rules that belong to anyone else:

    OUTPUT -> pse
    pse:   -p tcp --dport 443 -j DNAT --to-destination <proxy>:12345
"""

import logging
import shutil
from typing import Callable

from .sudo import run_privileged
from .utils import AgentError, Runner, ensure_tool, run

logger = logging.getLogger("pse_agent")

CHAIN = "pse"
PROXY_PORT = 12345
HTTPS_PORT = 443


class RedirectError(AgentError):
    """The NAT rules could not be installed."""


class Redirector:
    """Installs and removes the `pse` NAT chain."""

    def __init__(self, runner: Runner = run, which: Callable[[str], str | None] = shutil.which,
                 chain: str = CHAIN) -> None:
        self.runner = runner
        self.which = which
        self.chain = chain

    def _iptables(self, *args: str):
        return run_privileged(["iptables", "-t", "nat", *args], runner=self.runner)

    def _diversion(self) -> list[str]:
        return ["OUTPUT", "-j", self.chain]

    def _dnat(self, address: str, port: int) -> list[str]:
        return [self.chain, "-p", "tcp", "--dport", str(HTTPS_PORT),
                "-j", "DNAT", "--to-destination", f"{address}:{port}"]

    def chain_exists(self) -> bool:
        return self._iptables("-L", self.chain, "-n").returncode == 0

    def install(self, proxy_address: str, proxy_port: int = PROXY_PORT) -> None:
        """Divert outbound TCP/443 to proxy_address:proxy_port. Safe to repeat."""
        ok, message = ensure_tool("iptables", runner=self.runner, which=self.which)
        if not ok:
            raise RedirectError(message)

        result = self._iptables("-N", self.chain)
        if result.returncode != 0 and "exists" not in result.stderr.lower():
            raise RedirectError(f"cannot create chain {self.chain}: {result.stderr.strip()}")

        # Guard the OUTPUT jump so repeated installs never stack diversions.
        # It goes first so jumps added earlier (docker's) cannot take the traffic.
        if self._iptables("-C", *self._diversion()).returncode != 0:
            result = self._iptables("-I", "OUTPUT", "1", "-j", self.chain)
            if result.returncode != 0:
                raise RedirectError(f"cannot divert OUTPUT to {self.chain}: {result.stderr.strip()}")

        # The chain holds exactly one DNAT rule for the current proxy
        self._iptables("-F", self.chain)
        result = self._iptables("-A", *self._dnat(proxy_address, proxy_port))
        if result.returncode != 0:
            raise RedirectError(f"cannot add DNAT rule: {result.stderr.strip()}")
        logger.info(f"Redirecting tcp/{HTTPS_PORT} to {proxy_address}:{proxy_port} (chain {self.chain})")

    def remove(self) -> tuple[bool, str]:
        """Remove the diversion and the chain. Absent rules count as removed.

        Returns (success, message).
        """
        if not self.chain_exists():
            return True, f"chain {self.chain} not present"

        # Drop every diversion in case an older install stacked duplicates
        for _ in range(16):
            if self._iptables("-D", *self._diversion()).returncode != 0:
                break
        self._iptables("-F", self.chain)
        result = self._iptables("-X", self.chain)
        if result.returncode != 0 and self.chain_exists():
            return False, f"chain {self.chain} still present: {result.stderr.strip()}"
        logger.info(f"Removed NAT chain {self.chain}")
        return True, f"chain {self.chain} removed"
