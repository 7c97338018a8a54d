"""Proxy address discovery.

The proxy may be a container started by setup, a platform-managed sidecar
reachable by hostname, or an address handed to us explicitly. Discovery
walks an ordered fallback chain and the first method yielding an IPv4
address wins:

1. the explicit address
2. a running container whose image matches a known proxy image
3. resolving the proxy hostname via getent, host, nslookup, then ping
   (each tried on the hostname, then on its `.local` form when the
   hostname is the built-in default)
"""

import ipaddress
import logging
import re

from .config import DEFAULT_PROXY_HOSTNAME
from .utils import AgentError, Runner, first_success, run

logger = logging.getLogger("pse_agent")

PUBLIC_IMAGE = "invisirisk/pse-proxy"
DEFAULT_REGISTRY_IMAGE = "282904853176.dkr.ecr.us-west-2.amazonaws.com/invisirisk/pse-proxy"

_LOOKUP_TIMEOUT = 10  # seconds

_ADDRESS_LINE_RE = re.compile(r"^Address:\s*(\S+)", re.MULTILINE)
_HAS_ADDRESS_RE = re.compile(r"has address (\S+)")
_PING_RE = re.compile(r"\((\d{1,3}(?:\.\d{1,3}){3})\)")


class DiscoveryError(AgentError):
    """No proxy address could be found."""


def _ipv4(candidate: str) -> str | None:
    """Return candidate if it is an IPv4 address (the NAT rules are IPv4-only)."""
    candidate = candidate.strip()
    # nslookup prints the server as "Address: 127.0.0.53#53"
    candidate = candidate.split("#", 1)[0]
    try:
        return candidate if ipaddress.ip_address(candidate).version == 4 else None
    except ValueError:
        return None


def image_patterns(registry_id: str = "", region: str = "") -> list[str]:
    """Known proxy image names, public first."""
    patterns = [PUBLIC_IMAGE, DEFAULT_REGISTRY_IMAGE]
    if registry_id and region:
        private = f"{registry_id}.dkr.ecr.{region}.amazonaws.com/{PUBLIC_IMAGE}"
        if private not in patterns:
            patterns.append(private)
    return patterns


class ProxyLocator:
    """Resolves where intercepted traffic should be sent."""

    def __init__(
        self,
        runner: Runner = run,
        images: list[str] | None = None,
        hostname: str = DEFAULT_PROXY_HOSTNAME,
        hostname_is_default: bool = True,
    ) -> None:
        self.runner = runner
        self.images = images if images is not None else image_patterns()
        self.hostname = hostname
        self.hostname_is_default = hostname_is_default

    def discover(self, explicit: str | None = None) -> str | None:
        strategies = [("explicit address", lambda: explicit or None)]
        strategies.append(("container lookup", self.from_container))
        names = [self.hostname]
        if self.hostname_is_default:
            names.append(f"{self.hostname}.local")
        for method in (self.getent, self.host, self.nslookup, self.ping):
            for name in names:
                strategies.append((f"{method.__name__} {name}", lambda m=method, n=name: m(n)))
        address = first_success(strategies)
        if address:
            logger.info(f"Proxy address: {address}")
        return address

    # -------------------------------------------------------------------------
    # Container runtime
    # -------------------------------------------------------------------------

    def container_address(self, name: str) -> str | None:
        result = self.runner(
            ["docker", "inspect", "-f", "{{range .NetworkSettings.Networks}}{{.IPAddress}} {{end}}", name],
            timeout=_LOOKUP_TIMEOUT,
        )
        if result.returncode != 0:
            return None
        for candidate in result.stdout.split():
            if address := _ipv4(candidate):
                return address
        return None

    def from_container(self) -> str | None:
        for image in self.images:
            result = self.runner(
                ["docker", "ps", "--filter", f"ancestor={image}", "--format", "{{.Names}}"],
                timeout=_LOOKUP_TIMEOUT,
            )
            if result.returncode != 0:
                continue
            names = result.stdout.split()
            if not names:
                continue
            logger.debug(f"found proxy container {names[0]} ({image})")
            address = self.container_address(names[0])
            if address:
                return address
        return None

    # -------------------------------------------------------------------------
    # Name resolution
    # -------------------------------------------------------------------------

    def getent(self, name: str) -> str | None:
        result = self.runner(["getent", "hosts", name], timeout=_LOOKUP_TIMEOUT)
        if result.returncode != 0:
            return None
        for line in result.stdout.splitlines():
            fields = line.split()
            if fields and (address := _ipv4(fields[0])):
                return address
        return None

    def host(self, name: str) -> str | None:
        result = self.runner(["host", "-t", "A", name], timeout=_LOOKUP_TIMEOUT)
        if result.returncode != 0:
            return None
        for match in _HAS_ADDRESS_RE.finditer(result.stdout):
            if address := _ipv4(match.group(1)):
                return address
        return None

    def nslookup(self, name: str) -> str | None:
        result = self.runner(["nslookup", name], timeout=_LOOKUP_TIMEOUT)
        if result.returncode != 0:
            return None
        # The first Address: line is the DNS server; the answer comes last
        matches = _ADDRESS_LINE_RE.findall(result.stdout)
        if len(matches) < 2:
            return None
        return _ipv4(matches[-1])

    def ping(self, name: str) -> str | None:
        result = self.runner(["ping", "-c", "1", "-W", "2", name], timeout=_LOOKUP_TIMEOUT)
        # Unreachable hosts still print the resolved address
        match = _PING_RE.search(result.stdout)
        return _ipv4(match.group(1)) if match else None


def discover_proxy_address(settings, runner: Runner = run, registry_id: str = "", region: str = "") -> str:
    """Find the proxy address or raise DiscoveryError."""
    locator = ProxyLocator(
        runner=runner,
        images=image_patterns(registry_id or settings.ecr_registry_id, region or settings.ecr_region),
        hostname=settings.proxy_hostname,
        hostname_is_default=settings.proxy_hostname_is_default,
    )
    address = locator.discover(settings.proxy_ip or None)
    if not address:
        raise DiscoveryError(
            f"could not locate the proxy (no container, {settings.proxy_hostname} did not resolve)"
        )
    return address
