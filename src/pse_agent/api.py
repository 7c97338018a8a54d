"""HTTP clients for the proxy control endpoints and the control-plane account API."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import ssl
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import dataclass, field

from .config import DEFAULT_PROXY_URL
from .retry import Result
from .utils import AgentError, first_success

logger = logging.getLogger("pse_agent")

_TIMEOUT = 10  # seconds
_USER_AGENT = "pse-action"

UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")


class ApiError(AgentError):
    """The control plane rejected a request or returned something unusable."""


def _unverified_context() -> ssl.SSLContext:
    # The proxy serves its own CA, so nothing can be verified before it is installed
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def send_request(req: urllib.request.Request, timeout: float, context: ssl.SSLContext | None = None) -> Result:
    """Perform a request, folding every failure into a Result (status 0 on transport errors)."""
    try:
        with urllib.request.urlopen(req, timeout=timeout, context=context) as resp:
            return Result.from_http(resp.status, resp.read().decode("utf-8", errors="replace"))
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if e.fp else ""
        logger.debug(f"HTTP {e.code} from {req.full_url.split('?')[0]}")
        return Result.from_http(e.code, body)
    except Exception as e:
        logger.debug(f"request to {req.full_url.split('?')[0]} failed: {e}")
        return Result(status=0, body=str(e))


# =============================================================================
# Proxy control endpoints (/ca, /start, /end)
# =============================================================================

class ProxyClient:
    """Talks to the inspection proxy's own control endpoints.

    TLS verification is disabled: these calls happen before (or while) the
    proxy's CA is being trusted.
    """

    def __init__(self, base_url: str = DEFAULT_PROXY_URL, timeout: float = _TIMEOUT) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._context = _unverified_context()

    def fetch_ca(self) -> Result:
        """GET /ca. An empty body counts as a failed attempt."""
        req = urllib.request.Request(f"{self.base_url}/ca", headers={"User-Agent": _USER_AGENT})
        result = send_request(req, self.timeout, self._context)
        if result.ok and not result.body.strip():
            return Result(status=result.status, body="", ok=False)
        return result

    def start(self, fields: dict[str, str]) -> Result:
        return self._post_form("/start", fields)

    def end(self, fields: dict[str, str]) -> Result:
        return self._post_form("/end", fields)

    def _post_form(self, path: str, fields: dict[str, str]) -> Result:
        data = urllib.parse.urlencode(fields).encode()
        req = urllib.request.Request(
            f"{self.base_url}{path}",
            data=data,
            method="POST",
            headers={
                "User-Agent": _USER_AGENT,
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )
        return send_request(req, self.timeout, self._context)


# =============================================================================
# Control-plane account API
# =============================================================================

@dataclass(frozen=True)
class RegistryCredentials:
    """Short-lived credentials for pulling the proxy image."""

    username: str = field(repr=False)
    token: str = field(repr=False)
    region: str
    registry_id: str

    @property
    def registry_host(self) -> str:
        return f"{self.registry_id}.dkr.ecr.{self.region}.amazonaws.com"

    def to_dict(self) -> dict[str, str]:
        return {
            "username": self.username,
            "token": self.token,
            "region": self.region,
            "registry_id": self.registry_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RegistryCredentials:
        return cls(
            username=data.get("username", ""),
            token=data.get("token", ""),
            region=data.get("region", ""),
            registry_id=data.get("registry_id", ""),
        )


def parse_registry_response(body: str) -> RegistryCredentials:
    """Decode `{data: base64(JSON{username,password,region,registry_id})}`."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, ValueError) as e:
        raise ApiError(f"registry response is not JSON: {e}")
    if not isinstance(payload, dict):
        raise ApiError("registry response is not a JSON object")
    if "error" in payload:
        raise ApiError(f"registry request rejected: {payload['error']}")
    try:
        decoded = json.loads(base64.b64decode(payload["data"]))
    except (KeyError, TypeError, binascii.Error, json.JSONDecodeError, ValueError) as e:
        raise ApiError(f"registry response has no decodable data: {e}")

    creds = RegistryCredentials(
        username=str(decoded.get("username", "")),
        token=str(decoded.get("password", "")),
        region=str(decoded.get("region", "")),
        registry_id=str(decoded.get("registry_id", "")),
    )
    if not all((creds.username, creds.token, creds.region, creds.registry_id)):
        raise ApiError("registry response is missing credential fields")
    return creds


def _json_field(body: str, *path: str) -> str | None:
    try:
        node = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return None
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    if isinstance(node, (str, int)) and str(node):
        return str(node)
    return None


def parse_scan_id(body: str) -> str | None:
    """Extract a scan id, trying structured fields before a UUID pattern match."""
    return first_success([
        ("scan id from 'id'", lambda: _json_field(body, "id")),
        ("scan id from 'data.scan_id'", lambda: _json_field(body, "data", "scan_id")),
        ("scan id from 'data.id'", lambda: _json_field(body, "data", "id")),
        ("scan id by pattern", lambda: (m.group(0) if (m := UUID_RE.search(body)) else None)),
    ])


class PortalClient:
    """Client for the InvisiRisk control-plane API (registry, scans, uploads)."""

    def __init__(self, api_url: str, app_token: str, timeout: float = _TIMEOUT * 3) -> None:
        self.api_url = api_url.rstrip("/")
        self.app_token = app_token
        self.timeout = timeout

    def _url(self, path: str, **params: str) -> str:
        query = urllib.parse.urlencode({"api_key": self.app_token, **params})
        return f"{self.api_url}{path}?{query}"

    def get_registry_credentials(self) -> RegistryCredentials:
        req = urllib.request.Request(
            self._url("/utilityapi/v1/registry"),
            headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
        )
        result = send_request(req, self.timeout)
        if not result.ok:
            raise ApiError(f"registry request failed (status {result.status})")
        return parse_registry_response(result.body)

    def create_scan(self) -> str:
        req = urllib.request.Request(
            f"{self.api_url}/utilityapi/v1/scan",
            data=json.dumps({"api_key": self.app_token}).encode(),
            method="POST",
            headers={"User-Agent": _USER_AGENT, "Content-Type": "application/json"},
        )
        result = send_request(req, self.timeout)
        if not result.ok:
            raise ApiError(f"scan creation failed (status {result.status})")
        scan_id = parse_scan_id(result.body)
        if not scan_id:
            raise ApiError("scan creation response has no scan id")
        return scan_id

    def upload_file(self, scan_id: str, file_type: str, filename: str, content: bytes) -> Result:
        """Multipart upload of an artifact (job status, logs) for a scan."""
        boundary = uuid.uuid4().hex
        body = b"".join([
            f"--{boundary}\r\n".encode(),
            f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'.encode(),
            b"Content-Type: application/octet-stream\r\n\r\n",
            content,
            f"\r\n--{boundary}--\r\n".encode(),
        ])
        req = urllib.request.Request(
            self._url("/ingestionapi/v1/upload-generic-file", scan_id=scan_id, file_type=file_type),
            data=body,
            method="POST",
            headers={
                "User-Agent": _USER_AGENT,
                "Content-Type": f"multipart/form-data; boundary={boundary}",
            },
        )
        return send_request(req, self.timeout)
