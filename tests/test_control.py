"""Tests for the control subsystem."""

import json
import os
import subprocess
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import FakeRunner

from puls.bootconfig import BootConfigEditor
from puls.control import (
    MAX_JOURNAL_LINES,
    ControlSubsystem,
    ServiceAction,
    parse_journal,
    parse_unit_files,
    parse_units,
)
from puls.errors import ExternalCommandFailed
from puls.models import NA, ActionStatus
from puls.privilege import Capability, PrivilegeGate

UNIT_FILES = """\
ssh.service                 enabled         enabled
cups.service                disabled        enabled
getty@.service              enabled         enabled
systemd-journald.service    static          -
"""

UNITS = """\
ssh.service              loaded active   running OpenBSD Secure Shell server
systemd-journald.service loaded active   running Journal Service
getty@tty1.service       loaded active   running Getty on tty1
nginx.service            loaded failed   failed  A high performance web server
"""

LIST_FILES = ["systemctl", "list-unit-files"]
LIST_UNITS = ["systemctl", "list-units"]

FULL = PrivilegeGate(Capability.FULL)
READ_ONLY = PrivilegeGate(Capability.READ_ONLY)


def systemd_runner(sudo: bool = False) -> FakeRunner:
    runner = FakeRunner(sudo=sudo)
    runner.add(LIST_FILES, stdout=UNIT_FILES)
    runner.add(LIST_UNITS, stdout=UNITS)
    runner.add(["systemctl", "start"])
    runner.add(["systemctl", "stop"])
    runner.add(["systemctl", "restart"])
    runner.add(["systemctl", "enable"])
    runner.add(["systemctl", "disable"])
    return runner


def control(gate=FULL, runner=None, tmp_path=None) -> ControlSubsystem:
    runner = runner or systemd_runner()
    boot_file = tmp_path / "grub" if tmp_path is not None else Path("/nonexistent/grub")
    boot = BootConfigEditor(gate, boot_file, runner)
    return ControlSubsystem(gate, runner, boot)


def mutating_calls(runner: FakeRunner) -> list[list[str]]:
    return [c for c in runner.calls if c[:2] not in (LIST_FILES, LIST_UNITS)]


class TestEnumeration:
    """Service listing merges installed unit files with loaded units."""

    def test_parse_unit_files_skips_templates(self):
        states = parse_unit_files(UNIT_FILES)
        assert states["cups.service"] == "disabled"
        assert "getty@.service" not in states

    def test_parse_units(self):
        units = parse_units("● nginx.service loaded failed failed A high performance web server\n")
        assert units["nginx.service"] == ("loaded", "failed", "failed", "A high performance web server")

    def test_includes_stopped_installed_unit(self):
        services = {s.name: s for s in control().list_services()}

        cups = services["cups.service"]
        assert cups.active == "inactive"
        assert cups.enabled == "disabled"
        assert not cups.is_running

        assert services["ssh.service"].is_running
        assert services["ssh.service"].enabled == "enabled"
        assert services["getty@tty1.service"].enabled == "-"
        assert services["nginx.service"].active == "failed"
        assert list(services) == sorted(services)

    def test_systemctl_failure_propagates(self):
        runner = FakeRunner()
        runner.add(LIST_FILES, stderr="System has not been booted with systemd", returncode=1)
        with pytest.raises(ExternalCommandFailed, match="not been booted"):
            control(runner=runner).list_services()


class TestServiceActions:
    """Tests for start/stop/restart/enable/disable."""

    @pytest.mark.parametrize("action", list(ServiceAction))
    def test_read_only_runs_nothing(self, action):
        runner = systemd_runner()
        result = control(READ_ONLY, runner).service_action(action, "ssh.service", confirmed=True)

        assert result.status is ActionStatus.PERMISSION_DENIED
        assert runner.calls == []

    def test_safe_mode_runs_nothing(self):
        runner = systemd_runner()
        result = control(PrivilegeGate(Capability.SAFE), runner).service_action(ServiceAction.START, "ssh.service")
        assert result.status is ActionStatus.PERMISSION_DENIED
        assert runner.calls == []

    @pytest.mark.parametrize("action", [ServiceAction.STOP, ServiceAction.RESTART, ServiceAction.DISABLE])
    def test_destructive_actions_need_confirmation(self, action):
        runner = systemd_runner()
        subsystem = control(runner=runner)

        result = subsystem.service_action(action, "ssh.service")
        assert result.status is ActionStatus.CONFIRMATION_REQUIRED
        assert runner.calls == []

        result = subsystem.service_action(action, "ssh.service", confirmed=True)
        assert result.ok
        assert mutating_calls(runner) == [["systemctl", action.value, "ssh.service"]]

    def test_start_needs_no_confirmation(self):
        runner = systemd_runner()
        result = control(runner=runner).service_action(ServiceAction.START, "cups.service")
        assert result.status is ActionStatus.SUCCESS
        assert result.returncode == 0

    def test_failure_keeps_stderr_verbatim(self):
        runner = systemd_runner()
        stderr = "Failed to start nginx.service: Unit nginx.service has a bad unit file setting.\n"
        runner.add(["systemctl", "start", "nginx.service"], stderr=stderr, returncode=1)

        result = control(runner=runner).service_action(ServiceAction.START, "nginx.service")

        assert result.status is ActionStatus.FAILURE
        assert result.message == stderr
        assert result.returncode == 1

    def test_services_are_re_enumerated_after_every_attempt(self):
        runner = systemd_runner()
        runner.add(["systemctl", "start", "nginx.service"], stderr="nope", returncode=1)
        subsystem = control(runner=runner)

        ok = subsystem.service_action(ServiceAction.ENABLE, "cups.service")
        failed = subsystem.service_action(ServiceAction.START, "nginx.service")

        assert ok.services is not None and failed.services is not None
        assert "cups.service" in {s.name for s in failed.services}
        assert runner.calls[-2][:2] == LIST_FILES

    def test_sudo_prefix(self):
        runner = systemd_runner(sudo=True)
        gate = PrivilegeGate(Capability.FULL, use_sudo=True)
        control(gate, runner).service_action(ServiceAction.START, "cups.service")
        assert ["sudo", "-n", "systemctl", "start", "cups.service"] in runner.calls

    def test_rejects_option_like_unit_names(self):
        runner = systemd_runner()
        result = control(runner=runner).service_action(ServiceAction.START, "--now")
        assert result.status is ActionStatus.FAILURE
        assert runner.calls == []


def journal_line(**fields) -> str:
    record = {
        "__REALTIME_TIMESTAMP": "1700000000000000",
        "PRIORITY": "6",
        "_PID": "812",
        "_SYSTEMD_UNIT": "ssh.service",
        "MESSAGE": "Accepted publickey for admin",
    }
    record.update(fields)
    return json.dumps(record)


class TestJournal:
    """Tests for journal queries."""

    def test_parse(self):
        output = "\n".join(
            [
                journal_line(),
                "not json at all",
                journal_line(PRIORITY="3", MESSAGE=[104, 105]),
                journal_line(**{"_PID": None, "__REALTIME_TIMESTAMP": "garbage"}),
            ]
        )
        first, second, third = parse_journal(output)

        assert first.timestamp == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        assert first.unit == "ssh.service"
        assert first.priority == 6
        assert first.pid == 812
        assert second.message == "hi"
        assert second.priority_name == "err"
        assert third.pid is NA
        assert third.timestamp is NA

    def test_query_arguments(self):
        runner = FakeRunner()
        runner.add(["journalctl"], stdout=journal_line() + "\n")

        entries = control(READ_ONLY, runner).query_journal(unit="ssh.service", priority=4, boot=0, lines=50)

        assert len(entries) == 1
        assert runner.calls == [
            ["journalctl", "-o", "json", "--no-pager", "-n", "50", "-u", "ssh.service", "-p", "4", "-b", "0"]
        ]

    def test_line_cap(self):
        runner = FakeRunner()
        runner.add(["journalctl"], stdout="")
        control(READ_ONLY, runner).query_journal(lines=10**6)
        assert runner.calls[0][5] == str(MAX_JOURNAL_LINES)

    def test_allowed_in_safe_mode(self):
        runner = FakeRunner()
        runner.add(["journalctl"], stdout=journal_line())
        assert len(control(PrivilegeGate(Capability.SAFE), runner).query_journal()) == 1


class TestSignalProcess:
    """Tests for terminating a process."""

    def test_read_only_is_denied(self):
        result = control(READ_ONLY).signal_process(os.getpid(), confirmed=True)
        assert result.status is ActionStatus.PERMISSION_DENIED

    def test_needs_confirmation(self):
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            subsystem = control()
            assert subsystem.signal_process(child.pid).status is ActionStatus.CONFIRMATION_REQUIRED
            assert child.poll() is None

            assert subsystem.signal_process(child.pid, confirmed=True).ok
            assert child.wait(timeout=5) != 0
        finally:
            if child.poll() is None:
                child.kill()
                child.wait()

    def test_missing_process(self):
        result = control().signal_process(2**22 + 12345, confirmed=True)
        assert result.status is ActionStatus.FAILURE


class TestBootParameters:
    def test_set_and_list(self, tmp_path):
        (tmp_path / "grub").write_text('GRUB_TIMEOUT=5\nGRUB_CMDLINE_LINUX=""\n')
        subsystem = control(tmp_path=tmp_path)

        assert subsystem.set_boot_parameter("GRUB_TIMEOUT", "2").ok
        assert subsystem.boot_parameters() == [("GRUB_TIMEOUT", "2"), ("GRUB_CMDLINE_LINUX", "")]

    def test_read_only_boot_edit_is_denied(self, tmp_path):
        (tmp_path / "grub").write_text("GRUB_TIMEOUT=5\n")
        result = control(READ_ONLY, tmp_path=tmp_path).set_boot_parameter("GRUB_TIMEOUT", "2")
        assert result.status is ActionStatus.PERMISSION_DENIED
        assert (tmp_path / "grub").read_text() == "GRUB_TIMEOUT=5\n"


class TestSubmit:
    """Operations submitted off the render loop report through the event queue."""

    def test_result_event(self):
        subsystem = control()
        try:
            subsystem.submit("Start cups", subsystem.service_action, ServiceAction.START, "cups.service").result(5)
            event = subsystem.events.get(timeout=5)
        finally:
            subsystem.close()

        assert event.description == "Start cups"
        assert event.result.ok
        assert event.ok

    def test_payload_and_error_events(self):
        subsystem = control()
        try:
            subsystem.submit("Load services", subsystem.list_services)
            failing = subsystem.submit("Broken", subsystem.query_journal)
            with pytest.raises(Exception):
                failing.result(5)
            first = subsystem.events.get(timeout=5)
            second = subsystem.events.get(timeout=5)
        finally:
            subsystem.close()

        assert first.description == "Load services"
        assert any(s.name == "ssh.service" for s in first.payload)
        assert second.description == "Broken"
        assert "journalctl" in second.error

    def test_drain_events(self):
        subsystem = control()
        try:
            subsystem.submit("one", lambda: 1)
            subsystem.submit("two", lambda: 2).result(5)
            deadline = time.monotonic() + 5
            while subsystem.events.qsize() < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            subsystem.close()

        drained = subsystem.drain_events()
        assert [e.payload for e in drained] == [1, 2]
        assert subsystem.drain_events() == []


class OverlapRunner(FakeRunner):
    """Records how many mutating commands were running at the same time."""

    def __init__(self) -> None:
        super().__init__()
        self.active = 0
        self.most_active = 0
        self._count_lock = threading.Lock()

    def run(self, argv, **kwargs):
        if argv[:1] != ["systemctl"] or argv[1].startswith("list-"):
            return super().run(argv, **kwargs)
        with self._count_lock:
            self.active += 1
            self.most_active = max(self.most_active, self.active)
        try:
            time.sleep(0.05)
            return super().run(argv, **kwargs)
        finally:
            with self._count_lock:
                self.active -= 1


class TestSerialization:
    """Mutations never overlap, whether submitted or called directly."""

    def test_direct_and_submitted_calls_do_not_overlap(self):
        runner = OverlapRunner()
        for argv, stdout in ((LIST_FILES, UNIT_FILES), (LIST_UNITS, UNITS), (["systemctl", "restart"], "")):
            runner.add(argv, stdout=stdout)
        subsystem = control(runner=runner)
        try:
            futures = [
                subsystem.submit("Restart", subsystem.service_action, ServiceAction.RESTART, "ssh.service", True)
                for _ in range(3)
            ]
            threads = [
                threading.Thread(
                    target=subsystem.service_action, args=(ServiceAction.RESTART, "cups.service", True)
                )
                for _ in range(3)
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join(5)
            for f in futures:
                assert f.result(5).ok
        finally:
            subsystem.close()

        assert len([c for c in runner.calls if c[1] == "restart"]) == 6
        assert runner.most_active == 1

    def test_boot_edit_waits_for_running_action(self, tmp_path):
        (tmp_path / "grub").write_text("GRUB_TIMEOUT=5\n")
        subsystem = control(tmp_path=tmp_path)
        subsystem._mutation_lock.acquire()
        result = []
        worker = threading.Thread(target=lambda: result.append(subsystem.set_boot_parameter("GRUB_TIMEOUT", "9")))
        worker.start()
        try:
            worker.join(0.2)
            assert worker.is_alive()
            assert (tmp_path / "grub").read_text() == "GRUB_TIMEOUT=5\n"
        finally:
            subsystem._mutation_lock.release()
        worker.join(5)

        assert result[0].ok
        assert (tmp_path / "grub").read_text() == "GRUB_TIMEOUT=9\n"
