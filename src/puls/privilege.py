"""Capability tier, computed once at startup."""

import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum

from puls.errors import PermissionDenied

logger = logging.getLogger(__name__)

# Sources that safe mode never polls.
SAFE_MODE_DISABLED = frozenset({"gpu", "containers"})


class Capability(Enum):
    """What the process may do for its whole lifetime."""

    FULL = "full"
    READ_ONLY = "read_only"
    SAFE = "safe"


def sudo_available(timeout: float = 2.0) -> bool:
    """Check for passwordless sudo without prompting."""
    try:
        result = subprocess.run(
            ["sudo", "-n", "true"],
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


@dataclass(slots=True, frozen=True)
class PrivilegeGate:
    """
    Immutable capability value.

    Built once by `detect()` and handed to the scheduler and the control
    subsystem; nothing reads privilege from global state afterwards.
    """

    capability: Capability
    use_sudo: bool = False

    @classmethod
    def detect(
        cls,
        safe_mode: bool = False,
        euid: int | None = None,
        allow_sudo: bool = True,
    ) -> "PrivilegeGate":
        """
        Compute the capability from effective identity and the safe-mode request.

        Args:
            safe_mode: Operator asked for safe mode.
            euid: Effective user id; defaults to os.geteuid().
            allow_sudo: Grant FULL to a non-root user with passwordless sudo.
        """
        if safe_mode:
            gate = cls(Capability.SAFE)
        else:
            uid = os.geteuid() if euid is None else euid
            if uid == 0:
                gate = cls(Capability.FULL)
            elif allow_sudo and sudo_available():
                gate = cls(Capability.FULL, use_sudo=True)
            else:
                gate = cls(Capability.READ_ONLY)
        logger.info("Capability: %s%s", gate.capability.value, " (sudo)" if gate.use_sudo else "")
        return gate

    @property
    def can_mutate(self) -> bool:
        return self.capability is Capability.FULL

    def polling_allowed(self, source: str) -> bool:
        """Whether a source may be polled under this capability."""
        if self.capability is Capability.SAFE:
            return source not in SAFE_MODE_DISABLED
        return True

    def require_mutation(self, action: str) -> None:
        """
        Raise PermissionDenied unless mutations are allowed.

        Args:
            action: Human-readable action, used in the message.
        """
        if not self.can_mutate:
            raise PermissionDenied(
                f"Insufficient privilege for {action} (capability: {self.capability.value})"
            )
