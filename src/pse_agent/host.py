"""Single-session guard for host-wide resources.

The NAT chain and the trust-store entry are global to the host, and only
one session may own them at a time. Ownership is recorded as claim files
holding the owning session id.
"""

import logging
import os
from pathlib import Path

from .utils import AgentError

logger = logging.getLogger("pse_agent")

REDIRECT = "redirect"
TRUSTSTORE = "truststore"


class HostResourceBusy(AgentError):
    """A host resource is already held by another session."""


class HostResources:
    """Acquire/release claims on named host resources."""

    def __init__(self, lock_dir: str, test_mode: bool = False) -> None:
        self.lock_dir = Path(lock_dir)
        self.test_mode = test_mode

    def _claim(self, name: str) -> Path:
        return self.lock_dir / f"{name}.claim"

    def holder(self, name: str) -> str | None:
        try:
            return self._claim(name).read_text().strip() or None
        except FileNotFoundError:
            return None

    def acquire(self, name: str, session_id: str, already_present: bool = False) -> bool:
        """Claim a resource for session_id.

        Returns True on a fresh claim and False if this session already holds
        it. `already_present` reports that the underlying host state exists
        without any claim; that is refused like a foreign claim.
        """
        holder = self.holder(name)
        if holder == session_id:
            return False

        if holder is not None or already_present:
            owner = f"session {holder}" if holder else "an unknown owner"
            if not self.test_mode:
                raise HostResourceBusy(f"{name} is already in use on this host by {owner}")
            logger.warning(f"[TEST MODE] taking over {name} from {owner}")

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        tmp = self._claim(name).with_suffix(".tmp")
        tmp.write_text(session_id + "\n")
        os.replace(tmp, self._claim(name))
        return True

    def release(self, name: str) -> None:
        try:
            self._claim(name).unlink()
        except FileNotFoundError:
            pass
