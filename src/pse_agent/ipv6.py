"""IPv6 toggling.

The NAT chain only covers IPv4, so a build could reach the network over
IPv6 without passing through the proxy. Intercept turns IPv6 off at the
kernel level; cleanup turns it back on.
"""

from . import logging as agent_logging
from .sudo import run_privileged
from .utils import Runner, run

INTERFACES = ("all", "default", "lo")


def _set_disable_ipv6(value: int, runner: Runner) -> tuple[bool, str]:
    failed = []
    for iface in INTERFACES:
        result = run_privileged(
            ["sysctl", "-w", f"net.ipv6.conf.{iface}.disable_ipv6={value}"], runner=runner
        )
        if result.returncode != 0:
            failed.append(iface)
    if failed:
        return False, f"sysctl failed for {', '.join(failed)}"
    return True, "ok"


def disable_ipv6(runner: Runner = run) -> tuple[bool, str]:
    """Disable IPv6 on all interfaces.

    Returns (success, message).
    """
    ok, message = _set_disable_ipv6(1, runner)
    if ok:
        agent_logging.logger.info("IPv6 disabled")
    else:
        agent_logging.logger.warning(f"Failed to disable IPv6: {message}")
    return ok, message


def enable_ipv6(runner: Runner = run) -> tuple[bool, str]:
    """Re-enable IPv6 on all interfaces.

    Returns (success, message).
    """
    ok, message = _set_disable_ipv6(0, runner)
    if ok:
        agent_logging.logger.info("IPv6 re-enabled")
    else:
        agent_logging.logger.warning(f"Failed to re-enable IPv6: {message}")
    return ok, message
