"""
Control subsystem: service lifecycle, journal queries, process signals and
boot parameter edits.

Every mutating call checks the PrivilegeGate first and returns
PERMISSION_DENIED without running anything when the capability is not FULL.
"""

import json
import logging
import re
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum
from queue import Empty, Queue
from typing import Any

import psutil

from puls.bootconfig import BootConfigEditor
from puls.commands import CommandRunner
from puls.errors import ExternalCommandFailed, PermissionDenied, PulsError
from puls.models import (
    NA,
    PRIORITY_NAMES,
    ActionResult,
    ActionStatus,
    JournalEntry,
    Sentinel,
    ServiceUnit,
    StatusEvent,
)
from puls.privilege import PrivilegeGate

logger = logging.getLogger(__name__)

DEFAULT_JOURNAL_LINES = 100
MAX_JOURNAL_LINES = 1000
COMMAND_TIMEOUT = 30.0

_UNIT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9:_.@\\-]*$")


class ServiceAction(Enum):
    """Lifecycle operations on a service unit (values are systemctl verbs)."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    ENABLE = "enable"
    DISABLE = "disable"

    @property
    def requires_confirmation(self) -> bool:
        return self in (ServiceAction.STOP, ServiceAction.RESTART, ServiceAction.DISABLE)


def parse_unit_files(output: str) -> dict[str, str]:
    """Parse `systemctl list-unit-files --no-legend` into {unit: enablement state}."""
    states = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2 or not parts[0].endswith(".service"):
            continue
        # Templates (foo@.service) cannot be started without an instance name
        if parts[0].endswith("@.service"):
            continue
        states[parts[0]] = parts[1]
    return states


def parse_units(output: str) -> dict[str, tuple[str, str, str, str]]:
    """Parse `systemctl list-units --plain --no-legend` into {unit: (load, active, sub, description)}."""
    units = {}
    for line in output.splitlines():
        parts = line.lstrip(" ●*").split(None, 4)
        if len(parts) < 4 or not parts[0].endswith(".service"):
            continue
        description = parts[4].strip() if len(parts) > 4 else ""
        units[parts[0]] = (parts[1], parts[2], parts[3], description)
    return units


def _journal_message(value: Any) -> str:
    # journald sends non-UTF-8 messages as a list of byte values
    if isinstance(value, list):
        try:
            return bytes(value).decode("utf-8", errors="replace")
        except (TypeError, ValueError):
            return str(value)
    return "" if value is None else str(value)


def _journal_int(value: Any) -> int | Sentinel:
    try:
        return int(value)
    except (TypeError, ValueError):
        return NA


def parse_journal(output: str) -> list[JournalEntry]:
    """Parse `journalctl -o json` output, skipping malformed lines."""
    entries = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed journal line: %r", line[:200])
            continue
        if not isinstance(record, dict):
            continue

        micros = _journal_int(record.get("__REALTIME_TIMESTAMP"))
        timestamp = NA if micros is NA else datetime.fromtimestamp(micros / 1_000_000, tz=timezone.utc)
        priority = _journal_int(record.get("PRIORITY"))
        if priority is not NA and not 0 <= priority < len(PRIORITY_NAMES):
            priority = NA
        entries.append(
            JournalEntry(
                timestamp=timestamp,
                unit=str(record.get("_SYSTEMD_UNIT") or record.get("SYSLOG_IDENTIFIER") or ""),
                priority=priority,
                pid=_journal_int(record.get("_PID")),
                message=_journal_message(record.get("MESSAGE")),
            )
        )
    return entries


class ControlSubsystem:
    """
    Privileged and read-only system operations.

    Calls are synchronous. `submit()` runs one on a single worker thread, so
    operations never overlap, and posts a StatusEvent when it finishes.
    """

    def __init__(
        self,
        gate: PrivilegeGate,
        runner: CommandRunner | None = None,
        boot_editor: BootConfigEditor | None = None,
        events: Queue[StatusEvent] | None = None,
    ) -> None:
        """
        Initialize the ControlSubsystem.

        Args:
            gate: Capability of this process.
            runner: Command runner, replaceable in tests.
            boot_editor: Editor for the boot parameter file.
            events: Queue receiving StatusEvents from submitted operations.
        """
        self._gate = gate
        self._runner = runner or CommandRunner(sudo=gate.use_sudo)
        self._boot = boot_editor or BootConfigEditor(gate, runner=self._runner)
        self.events: Queue[StatusEvent] = events if events is not None else Queue()
        self._executor: ThreadPoolExecutor | None = None
        # Held while a mutation runs, whichever thread called it
        self._mutation_lock = threading.Lock()

    @property
    def gate(self) -> PrivilegeGate:
        return self._gate

    # Services

    def list_services(self) -> list[ServiceUnit]:
        """
        Enumerate every installed service unit, running or not.

        Raises:
            ExternalCommandFailed: systemctl exited non-zero.
            SourceUnavailable: systemctl is not installed.
        """
        files = parse_unit_files(
            self._runner.check_output(
                ["systemctl", "list-unit-files", "--type=service", "--no-legend", "--no-pager"],
                timeout=COMMAND_TIMEOUT,
            )
        )
        loaded = parse_units(
            self._runner.check_output(
                [
                    "systemctl",
                    "list-units",
                    "--type=service",
                    "--all",
                    "--no-legend",
                    "--no-pager",
                    "--plain",
                ],
                timeout=COMMAND_TIMEOUT,
            )
        )

        services = []
        for name in sorted(set(files) | set(loaded)):
            load, active, sub, description = loaded.get(name, ("not-loaded", "inactive", "dead", ""))
            services.append(
                ServiceUnit(
                    name=name,
                    load=load,
                    active=active,
                    sub=sub,
                    enabled=files.get(name, "-"),
                    description=description,
                )
            )
        return services

    def service_action(self, action: ServiceAction, unit: str, confirmed: bool = False) -> ActionResult:
        """Start, stop, restart, enable or disable a unit."""
        label = f"{action.value} {unit}"
        try:
            self._gate.require_mutation(label)
        except PermissionDenied as e:
            logger.info("Refused: %s", e)
            return ActionResult(ActionStatus.PERMISSION_DENIED, str(e))
        if not _UNIT_RE.match(unit):
            return ActionResult(ActionStatus.FAILURE, f"Invalid unit name: {unit!r}")
        if action.requires_confirmation and not confirmed:
            return ActionResult(ActionStatus.CONFIRMATION_REQUIRED, f"Confirm {label}?")

        with self._mutation_lock:
            return self._run_service_action(action, unit, label)

    def _run_service_action(self, action: ServiceAction, unit: str, label: str) -> ActionResult:
        try:
            result = self._runner.run(
                ["systemctl", action.value, unit], timeout=COMMAND_TIMEOUT, privileged=True
            )
        except PulsError as e:
            logger.warning("%s failed: %s", label, e)
            return ActionResult(ActionStatus.FAILURE, str(e), services=self._reenumerate())

        if result.returncode != 0:
            logger.warning("%s failed with exit status %d", label, result.returncode)
            return ActionResult(
                ActionStatus.FAILURE,
                result.stderr or "",
                returncode=result.returncode,
                services=self._reenumerate(),
            )

        logger.info("%s succeeded", label)
        return ActionResult(
            ActionStatus.SUCCESS, f"{label}: done", returncode=0, services=self._reenumerate()
        )

    def _reenumerate(self) -> tuple[ServiceUnit, ...] | None:
        try:
            return tuple(self.list_services())
        except PulsError as e:
            logger.warning("Could not re-enumerate services: %s", e)
            return None

    # Journal

    def query_journal(
        self,
        unit: str | None = None,
        priority: int | None = None,
        boot: int | str | None = None,
        lines: int = DEFAULT_JOURNAL_LINES,
    ) -> list[JournalEntry]:
        """
        Read recent journal records, newest last.

        Args:
            unit: Only records of this unit.
            priority: Only records at this priority or more severe (0-7).
            boot: Boot offset or id (0 is the current boot).
            lines: Number of records, capped at MAX_JOURNAL_LINES.

        Raises:
            ExternalCommandFailed: journalctl exited non-zero.
            SourceUnavailable: journalctl is not installed.
        """
        count = min(max(int(lines), 1), MAX_JOURNAL_LINES)
        argv = ["journalctl", "-o", "json", "--no-pager", "-n", str(count)]
        if unit:
            argv += ["-u", unit]
        if priority is not None:
            argv += ["-p", str(min(max(int(priority), 0), len(PRIORITY_NAMES) - 1))]
        if boot is not None:
            argv += ["-b", str(boot)]
        return parse_journal(self._runner.check_output(argv, timeout=COMMAND_TIMEOUT))

    # Processes

    def signal_process(self, pid: int, confirmed: bool = False) -> ActionResult:
        """Ask a process to terminate (SIGTERM)."""
        label = f"terminate pid {pid}"
        try:
            self._gate.require_mutation(label)
        except PermissionDenied as e:
            logger.info("Refused: %s", e)
            return ActionResult(ActionStatus.PERMISSION_DENIED, str(e))
        if not confirmed:
            return ActionResult(ActionStatus.CONFIRMATION_REQUIRED, f"Confirm {label}?")

        with self._mutation_lock:
            return self._terminate(pid)

    def _terminate(self, pid: int) -> ActionResult:
        if self._gate.use_sudo:
            try:
                self._runner.check_output(["kill", "-TERM", str(pid)], privileged=True)
            except ExternalCommandFailed as e:
                return ActionResult(ActionStatus.FAILURE, e.stderr, returncode=e.returncode)
            except PulsError as e:
                return ActionResult(ActionStatus.FAILURE, str(e))
        else:
            try:
                psutil.Process(pid).terminate()
            except psutil.NoSuchProcess:
                return ActionResult(ActionStatus.FAILURE, f"No such process: {pid}")
            except psutil.AccessDenied:
                return ActionResult(ActionStatus.PERMISSION_DENIED, f"Access denied to pid {pid}")

        logger.info("Sent SIGTERM to pid %d", pid)
        return ActionResult(ActionStatus.SUCCESS, f"Sent SIGTERM to {pid}")

    # Boot parameters

    def boot_parameters(self) -> list[tuple[str, str]]:
        """
        Current boot parameter assignments in file order. Needs no privilege.

        Raises:
            OSError: The file cannot be read.
            ParseError: The file is malformed.
        """
        return self._boot.load().entries()

    def set_boot_parameter(self, key: str, value: str) -> ActionResult:
        with self._mutation_lock:
            return self._boot.set_parameter(key, value)

    # Asynchronous execution

    def submit(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """
        Run an operation on the control worker thread.

        A StatusEvent carrying its ActionResult (or other return value, or the
        error) is put on `events` when it finishes.
        """
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="puls-control")
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(lambda f: self.events.put(self._event_for(description, f)))
        return future

    @staticmethod
    def _event_for(description: str, future: Future) -> StatusEvent:
        if future.cancelled():
            return StatusEvent(description, error="cancelled")
        error = future.exception()
        if error is not None:
            if isinstance(error, (PulsError, OSError)):
                logger.warning("%s failed: %s", description, error)
            else:
                logger.error("%s failed", description, exc_info=error)
            return StatusEvent(description, error=str(error) or type(error).__name__)
        value = future.result()
        if isinstance(value, ActionResult):
            return StatusEvent(description, result=value)
        return StatusEvent(description, payload=value)

    def drain_events(self) -> list[StatusEvent]:
        """Return every event posted since the last call, oldest first."""
        drained = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except Empty:
                return drained

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

