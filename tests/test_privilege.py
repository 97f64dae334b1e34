"""Tests for capability detection."""

import pytest

from puls import privilege
from puls.errors import PermissionDenied
from puls.privilege import Capability, PrivilegeGate


class TestDetect:
    """Capability is computed once from identity and the safe-mode request."""

    def test_safe_mode_wins(self):
        gate = PrivilegeGate.detect(safe_mode=True, euid=0)
        assert gate.capability is Capability.SAFE
        assert not gate.can_mutate

    def test_root_is_full(self):
        gate = PrivilegeGate.detect(euid=0)
        assert gate.capability is Capability.FULL
        assert not gate.use_sudo

    def test_unprivileged_without_sudo(self, monkeypatch):
        monkeypatch.setattr(privilege, "sudo_available", lambda timeout=2.0: False)
        gate = PrivilegeGate.detect(euid=1000)
        assert gate.capability is Capability.READ_ONLY

    def test_passwordless_sudo(self, monkeypatch):
        monkeypatch.setattr(privilege, "sudo_available", lambda timeout=2.0: True)
        gate = PrivilegeGate.detect(euid=1000)
        assert gate.capability is Capability.FULL
        assert gate.use_sudo

    def test_sudo_can_be_refused(self, monkeypatch):
        monkeypatch.setattr(privilege, "sudo_available", lambda timeout=2.0: True)
        gate = PrivilegeGate.detect(euid=1000, allow_sudo=False)
        assert gate.capability is Capability.READ_ONLY


class TestGate:
    def test_is_immutable(self):
        gate = PrivilegeGate(Capability.READ_ONLY)
        with pytest.raises(AttributeError):
            gate.capability = Capability.FULL

    def test_safe_mode_blocks_gpu_and_containers(self):
        gate = PrivilegeGate(Capability.SAFE)
        assert not gate.polling_allowed("gpu")
        assert not gate.polling_allowed("containers")
        assert gate.polling_allowed("host")

    def test_read_only_polls_everything(self):
        gate = PrivilegeGate(Capability.READ_ONLY)
        assert gate.polling_allowed("gpu")

    def test_require_mutation(self):
        PrivilegeGate(Capability.FULL).require_mutation("stop ssh.service")
        with pytest.raises(PermissionDenied, match="stop ssh.service"):
            PrivilegeGate(Capability.READ_ONLY).require_mutation("stop ssh.service")
