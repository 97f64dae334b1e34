"""puls - Main Textual application."""

import argparse
import logging
from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.css.query import NoMatches
from textual.screen import ModalScreen
from textual.widgets import (
    Button,
    DataTable,
    Footer,
    Input,
    Label,
    Sparkline,
    Static,
    TabbedContent,
    TabPane,
)

from puls.bootconfig import BootConfigEditor
from puls.commands import CommandRunner
from puls.config import AppConfig, default_log_path, load_config
from puls.control import ControlSubsystem, ServiceAction
from puls.models import (
    NA,
    ContainerEntry,
    GpuDevice,
    JournalEntry,
    Outcome,
    ProcessDetail,
    ProcessEntry,
    ServiceUnit,
    StatusEvent,
    SystemSnapshot,
)
from puls.privilege import PrivilegeGate
from puls.processes import ProcessTable
from puls.scheduler import Scheduler, build_sources
from puls.sources import read_process_detail

logger = logging.getLogger(__name__)

# Descriptions of background loads whose results fill a view
LOAD_SERVICES = "Load services"
LOAD_JOURNAL = "Load journal"
LOAD_BOOT = "Load boot parameters"
LOAD_DETAIL = "Load process details"


def format_bytes(size) -> str:
    """Format bytes as human-readable string."""
    if size is NA:
        return "  N/A"
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{int(size):5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_percent(value) -> str:
    return "  N/A" if value is NA else f"{value:5.1f}"


def format_rate(rate) -> str:
    return "  N/A" if rate is NA else f"{format_bytes(rate)}/s"


def format_reading(value, unit: str) -> str:
    """A sensor reading with its unit, or N/A."""
    return "N/A" if value is NA else f"{value:.0f}{unit}"


def format_uptime(uptime: float) -> str:
    days = int(uptime // 86400)
    hours = int((uptime % 86400) // 3600)
    minutes = int((uptime % 3600) // 60)
    seconds = int(uptime % 60)
    if days > 0:
        return f"{days} days, {hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def _bar(percent: float, color: str) -> str:
    length = min(int(percent / 5), 20)
    # Escaped brackets for the bar container
    return f"\\[[{color}]" + "█" * length + f"[/{color}]" + "[dim]░[/dim]" * (20 - length) + "]"


class HeaderStats(Static):
    """Header widget showing CPU, memory, GPU and source health."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize HeaderStats."""
        super().__init__(*args, **kwargs)
        self._snapshot: SystemSnapshot | None = None

    def compose(self) -> ComposeResult:
        """Compose the header stats layout."""
        yield Horizontal(
            Static(self._get_cpu_info(), id="cpu-info"),
            Vertical(
                Static(self._get_mem_info(), id="mem-info"),
                Sparkline([], summary_function=max, id="cpu-history"),
            ),
        )

    def update_stats(self, snapshot: SystemSnapshot) -> None:
        """Update the statistics from a system snapshot."""
        self._snapshot = snapshot
        try:
            self.query_one("#cpu-info", Static).update(self._get_cpu_info())
            self.query_one("#mem-info", Static).update(self._get_mem_info())
            stream = snapshot.streams.get("cpu")
            self.query_one("#cpu-history", Sparkline).data = list(stream.samples) if stream else []
        except NoMatches:
            pass  # Widget not mounted yet

    def _get_cpu_info(self) -> str:
        """Get CPU info display."""
        if self._snapshot is None:
            return "Loading CPU info..."
        cpu = self._snapshot.cpu
        if cpu is NA:
            return "CPU: N/A"
        lines = [
            f"CPU{i:<2} {_bar(usage, 'green')} {usage:5.1f}%"
            for i, usage in enumerate(cpu.per_core_percent)
        ]
        lines.append(f"Total {cpu.total_percent:5.1f}%  Load average: " + " ".join(f"{x:.2f}" for x in cpu.load_avg))
        return "\n".join(lines)

    def _get_mem_info(self) -> str:
        """Get memory, swap, GPU and network info display."""
        snapshot = self._snapshot
        if snapshot is None:
            return "Loading memory info..."
        lines = []
        for label, stats, color in (("Mem", snapshot.memory, "cyan"), ("Swp", snapshot.swap, "yellow")):
            if stats is NA:
                lines.append(f"{label} N/A")
            else:
                lines.append(
                    f"{label}{_bar(stats.percent, color)} "
                    f"{stats.used / 1024**3:.1f}G/{stats.total / 1024**3:.1f}G"
                )

        if snapshot.gpus is NA:
            lines.append("GPU N/A")
        else:
            for gpu in snapshot.gpus:
                lines.append(
                    f"GPU{gpu.index} {gpu.name[:24]} {format_percent(gpu.utilization_percent)}% "
                    f"{format_bytes(gpu.memory_used)}/{format_bytes(gpu.memory_total)}"
                )

        rx = snapshot.streams.get("net_rx")
        tx = snapshot.streams.get("net_tx")
        if rx is not None and tx is not None and rx.value is not NA and tx.value is not NA:
            lines.append(f"Net rx {format_bytes(rx.value)}/s tx {format_bytes(tx.value)}/s")
        else:
            lines.append("Net N/A")

        uptime = snapshot.uptime_seconds
        lines.append("Uptime: N/A" if uptime is NA else f"Uptime: {format_uptime(uptime)}")

        degraded = [
            f"{name} {status.outcome.value}"
            for name, status in sorted(snapshot.sources.items())
            if status.outcome is not Outcome.OK
        ]
        if degraded:
            lines.append("[dim]" + ", ".join(degraded) + "[/dim]")
        return "\n".join(lines)


class ProcessView(Container):
    """Container for the process data table."""

    DEFAULT_CSS = """
    ProcessView {
        height: 1fr;
    }
    ProcessView Input {
        display: none;
    }
    ProcessView Input.visible {
        display: block;
    }
    """

    def __init__(self, table: ProcessTable, *args, **kwargs) -> None:
        """Initialize ProcessView."""
        super().__init__(*args, **kwargs)
        self.table = table
        self.rows: list[ProcessEntry] = []
        self._latest = NA

    def compose(self) -> ComposeResult:
        """Compose the filter box and process table."""
        yield Input(placeholder="Filter by name, command or pid", id="process-filter")
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("USER", key="user", width=10)
        table.add_column("S", key="status", width=3)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("MEM%", key="mem", width=8)
        table.add_column("RES", key="rss", width=8)
        table.add_column("IO/t", key="io", width=8)
        table.add_column("THR", key="threads", width=5)
        table.add_column("Command", key="command")

    def update_processes(self, processes) -> None:
        """
        Rebuild the table from a fresh process list.

        Sorting and filtering are applied here; the cursor stays on the same
        pid when that process is still listed.
        """
        table = self.query_one("#process-table", DataTable)
        selected = self.selected()
        self._latest = processes
        self.rows = [] if processes is NA else self.table.apply(processes)

        table.clear()
        for proc in self.rows:
            table.add_row(
                str(proc.pid),
                proc.user[:10],
                proc.state[:1].upper(),
                f"{proc.cpu_percent:5.1f}",
                f"{proc.memory_percent:5.1f}",
                format_bytes(proc.memory_rss),
                format_bytes(proc.io_delta),
                str(proc.threads),
                proc.command[:80],
                key=str(proc.pid),
            )
        if selected is not None:
            for index, proc in enumerate(self.rows):
                if proc.pid == selected.pid:
                    table.move_cursor(row=index)
                    break

    def selected(self) -> ProcessEntry | None:
        table = self.query_one("#process-table", DataTable)
        if 0 <= table.cursor_row < len(self.rows):
            return self.rows[table.cursor_row]
        return None

    def toggle_filter(self) -> None:
        box = self.query_one("#process-filter", Input)
        box.toggle_class("visible")
        if box.has_class("visible"):
            box.focus()
        else:
            box.value = ""
            self.query_one("#process-table", DataTable).focus()

    def on_input_changed(self, event: Input.Changed) -> None:
        self.table.filter_text = event.value.strip()
        self.update_processes(self._latest)


class ContainerView(Container):
    """Table of containers."""

    def compose(self) -> ComposeResult:
        yield Static("", id="container-status")
        yield DataTable(id="container-table", cursor_type="row")

    def on_mount(self) -> None:
        table = self.query_one("#container-table", DataTable)
        for label in (
            "ID", "NAME", "IMAGE", "STATE", "CPU%", "MEM", "MEM%", "NET RX", "NET TX", "BLK R", "BLK W", "HEALTH", "PORTS"
        ):
            table.add_column(label, key=label.lower())

    def update_containers(self, containers, detail: str = "") -> None:
        table = self.query_one("#container-table", DataTable)
        table.clear()
        status = self.query_one("#container-status", Static)
        if containers is NA:
            status.update(f"Containers: N/A {detail}".rstrip())
            return
        status.update(f"{len(containers)} containers")
        for c in containers:
            table.add_row(*self._cells(c), key=c.id)

    @staticmethod
    def _cells(c: ContainerEntry) -> tuple[str, ...]:
        return (
            c.id,
            c.name,
            c.image[:30],
            c.state,
            format_percent(c.cpu_percent),
            format_bytes(c.memory_usage),
            format_percent(c.memory_percent),
            format_rate(c.net_rx_rate),
            format_rate(c.net_tx_rate),
            format_rate(c.block_read_rate),
            format_rate(c.block_write_rate),
            str(c.health),
            c.ports[:30],
        )


class SystemView(Container):
    """Host description and per-GPU details."""

    def compose(self) -> ComposeResult:
        yield Static("Loading system info...", id="system-info")
        yield DataTable(id="gpu-table", cursor_type="row")

    def on_mount(self) -> None:
        table = self.query_one("#gpu-table", DataTable)
        for label in ("GPU", "NAME", "UTIL%", "MEM", "TEMP", "POWER", "CORE", "VRAM", "FAN", "DRIVER"):
            table.add_column(label, key=label.lower())

    def update_system(self, snapshot: SystemSnapshot) -> None:
        self.query_one("#system-info", Static).update(self.describe(snapshot))
        table = self.query_one("#gpu-table", DataTable)
        table.clear()
        if snapshot.gpus is not NA:
            for gpu in snapshot.gpus:
                table.add_row(*self._gpu_cells(gpu))

    @staticmethod
    def describe(snapshot: SystemSnapshot) -> str:
        info = snapshot.system
        if info is NA:
            return "System: N/A"
        cores = "N/A"
        if snapshot.cpu is not NA:
            cores = f"{snapshot.cpu.logical_count} threads, {snapshot.cpu.physical_count} cores"
        return "\n".join(
            (
                f"Host:    {info.hostname}",
                f"OS:      {info.os_name}",
                f"Kernel:  {info.kernel} ({info.architecture})",
                f"CPU:     {info.cpu_model} [{cores}]",
                f"Booted:  {info.booted}",
            )
        )

    @staticmethod
    def _gpu_cells(gpu: GpuDevice) -> tuple[str, ...]:
        return (
            f"{gpu.vendor.value} {gpu.index}",
            gpu.name[:30],
            format_percent(gpu.utilization_percent),
            f"{format_bytes(gpu.memory_used)}/{format_bytes(gpu.memory_total)}",
            format_reading(gpu.temperature_c, "°C"),
            format_reading(gpu.power_watts, "W"),
            format_reading(gpu.graphics_clock_mhz, "MHz"),
            format_reading(gpu.memory_clock_mhz, "MHz"),
            format_reading(gpu.fan_percent, "%"),
            str(gpu.driver_version),
        )


class ServiceView(Container):
    """Table of installed service units."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.units: list[ServiceUnit] = []

    def compose(self) -> ComposeResult:
        yield DataTable(id="service-table", cursor_type="row")

    def on_mount(self) -> None:
        table = self.query_one("#service-table", DataTable)
        for label in ("UNIT", "LOAD", "ACTIVE", "SUB", "ENABLED", "DESCRIPTION"):
            table.add_column(label, key=label.lower())

    def update_services(self, units) -> None:
        table = self.query_one("#service-table", DataTable)
        row = table.cursor_row
        self.units = list(units)
        table.clear()
        for unit in self.units:
            table.add_row(unit.name, unit.load, unit.active, unit.sub, unit.enabled, unit.description, key=unit.name)
        if self.units:
            table.move_cursor(row=min(max(row, 0), len(self.units) - 1))

    def selected(self) -> ServiceUnit | None:
        table = self.query_one("#service-table", DataTable)
        if 0 <= table.cursor_row < len(self.units):
            return self.units[table.cursor_row]
        return None


class LogView(Container):
    """Recent journal records."""

    def compose(self) -> ComposeResult:
        yield Static("Journal", id="log-title")
        yield DataTable(id="log-table", cursor_type="row")

    def on_mount(self) -> None:
        table = self.query_one("#log-table", DataTable)
        for label in ("TIME", "UNIT", "PRI", "PID", "MESSAGE"):
            table.add_column(label, key=label.lower())

    def update_entries(self, entries: list[JournalEntry], unit: str | None = None) -> None:
        self.query_one("#log-title", Static).update(f"Journal: {unit or 'all units'}")
        table = self.query_one("#log-table", DataTable)
        table.clear()
        for entry in entries:
            stamp = str(NA) if entry.timestamp is NA else entry.timestamp.astimezone().strftime("%b %d %H:%M:%S")
            table.add_row(stamp, entry.unit, entry.priority_name, str(entry.pid), entry.message[:200])
        if entries:
            table.move_cursor(row=len(entries) - 1)


class BootView(Container):
    """Read-only view of the boot parameters."""

    def compose(self) -> ComposeResult:
        yield DataTable(id="boot-table", cursor_type="row")

    def on_mount(self) -> None:
        table = self.query_one("#boot-table", DataTable)
        table.add_column("KEY", key="key")
        table.add_column("VALUE", key="value")

    def update_entries(self, entries: list[tuple[str, str]]) -> None:
        table = self.query_one("#boot-table", DataTable)
        table.clear()
        for key, value in entries:
            table.add_row(key, value)


class ConfirmScreen(ModalScreen[bool]):
    """Yes/no dialog for destructive operations."""

    DEFAULT_CSS = """
    ConfirmScreen {
        align: center middle;
    }
    #confirm-dialog {
        width: 60;
        height: auto;
        border: thick $warning;
        background: $surface;
        padding: 1 2;
    }
    #confirm-buttons {
        height: auto;
        margin-top: 1;
    }
    """

    BINDINGS = [
        ("y", "answer(True)", "Yes"),
        ("n", "answer(False)", "No"),
        ("escape", "answer(False)", "Cancel"),
    ]

    def __init__(self, question: str) -> None:
        super().__init__()
        self.question = question

    def compose(self) -> ComposeResult:
        with Vertical(id="confirm-dialog"):
            yield Label(self.question)
            with Horizontal(id="confirm-buttons"):
                yield Button("Yes", variant="error", id="yes")
                yield Button("No", variant="primary", id="no")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss(event.button.id == "yes")

    def action_answer(self, answer: bool) -> None:
        self.dismiss(answer)


class ProcessDetailScreen(ModalScreen[None]):
    """Everything readable about one process."""

    DEFAULT_CSS = """
    ProcessDetailScreen {
        align: center middle;
    }
    #detail-dialog {
        width: 80;
        height: auto;
        border: thick $primary;
        background: $surface;
        padding: 1 2;
    }
    """

    BINDINGS = [
        ("escape", "dismiss", "Close"),
        ("i", "dismiss", "Close"),
    ]

    def __init__(self, detail: ProcessDetail) -> None:
        super().__init__()
        self.detail = detail

    def compose(self) -> ComposeResult:
        with Vertical(id="detail-dialog"):
            yield Static(self.describe(self.detail), id="detail-text", markup=False)

    @staticmethod
    def describe(detail: ProcessDetail) -> str:
        parent = str(detail.parent_pid)
        if detail.parent_name is not NA:
            parent += f" ({detail.parent_name})"
        rows = (
            ("PID", str(detail.pid)),
            ("Name", detail.name),
            ("User", str(detail.user)),
            ("State", detail.state),
            ("Parent", parent),
            ("Started", detail.started),
            ("Threads", str(detail.threads)),
            ("Resident", format_bytes(detail.memory_rss).strip()),
            ("Virtual", format_bytes(detail.memory_vms).strip()),
            ("Open files", str(detail.open_files)),
            ("Cwd", str(detail.cwd)),
            ("Command", detail.command),
        )
        return "\n".join(f"{label + ':':<11} {value}" for label, value in rows)


class PulsApp(App):
    """Main puls application."""

    TITLE = "puls"
    SUB_TITLE = "System Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #cpu-info {
        width: 1fr;
        padding-right: 2;
    }

    #mem-info {
        width: 1fr;
        padding-left: 2;
    }

    #cpu-history {
        height: 2;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("p", "pause", "Pause"),
        ("f6", "sort", "Sort"),
        ("slash", "search", "Filter"),
        ("ctrl+s", "toggle_system", "System procs"),
        ("i", "process_detail", "Details"),
        Binding("k", "kill", "Kill", show=False),
        Binding("s", "service('start')", "Start", show=False),
        Binding("t", "service('stop')", "Stop", show=False),
        Binding("r", "service('restart')", "Restart", show=False),
        Binding("e", "service('enable')", "Enable", show=False),
        Binding("d", "service('disable')", "Disable", show=False),
    ]

    def __init__(
        self,
        config: AppConfig | None = None,
        scheduler: Scheduler | None = None,
        control: ControlSubsystem | None = None,
    ) -> None:
        """
        Initialize the PulsApp.

        Args:
            config: Runtime settings.
            scheduler: Source of snapshots; built from config when omitted.
            control: Control subsystem; built with a detected capability when omitted.
        """
        super().__init__()
        self._config = config or AppConfig()
        if control is None:
            gate = PrivilegeGate.detect(safe_mode=self._config.safe_mode)
            runner = CommandRunner(sudo=gate.use_sudo)
            control = ControlSubsystem(
                gate, runner, BootConfigEditor(gate, self._config.boot_config_path, runner)
            )
        self._control = control
        self._scheduler = scheduler or Scheduler(
            build_sources(self._config), self._config, self._control.gate
        )
        self._processes = ProcessTable(show_system=self._config.show_system_processes)
        self._last_tick = -1
        self._journal_unit: str | None = None

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def control(self) -> ControlSubsystem:
        return self._control

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield HeaderStats(id="header-stats")
        with TabbedContent(initial="processes", id="tabs"):
            with TabPane("Processes", id="processes"):
                yield ProcessView(self._processes)
            with TabPane("Containers", id="containers"):
                yield ContainerView()
            with TabPane("Services", id="services"):
                yield ServiceView()
            with TabPane("Logs", id="logs"):
                yield LogView()
            with TabPane("Boot", id="boot"):
                yield BootView()
            with TabPane("System", id="system"):
                yield SystemView()
        yield Footer()

    def on_mount(self) -> None:
        """Start the scheduler and the render timer."""
        self.sub_title = f"System Monitor [{self._control.gate.capability.value}]"
        self._scheduler.start()
        self.set_interval(self._config.frame_interval, self._refresh_frame)
        self._load_services()

    def _refresh_frame(self) -> None:
        """Render the latest snapshot (if new) and any finished control operations."""
        try:
            snapshot = self._scheduler.latest
            if snapshot.tick != self._last_tick:
                self._last_tick = snapshot.tick
                self._update_ui(snapshot)
            for event in self._control.drain_events():
                self._handle_event(event)
        except Exception:
            # A rendering bug must not take the monitor down
            logger.exception("Frame update failed")

    def _update_ui(self, snapshot: SystemSnapshot) -> None:
        """Update the UI with the new system snapshot."""
        self.query_one("#header-stats", HeaderStats).update_stats(snapshot)
        if snapshot.cpu is not NA:
            self._processes.cpu_count = snapshot.cpu.logical_count
        self.query_one(ProcessView).update_processes(snapshot.processes)
        status = snapshot.sources.get("containers")
        detail = f"({status.detail})" if status is not None and status.detail else ""
        self.query_one(ContainerView).update_containers(snapshot.containers, detail)
        self.query_one(SystemView).update_system(snapshot)

    def _handle_event(self, event: StatusEvent) -> None:
        if event.error is not None:
            self.notify(f"{event.description}: {event.error}", severity="error")
            return
        if event.description == LOAD_SERVICES:
            self.query_one(ServiceView).update_services(event.payload)
            return
        if event.description == LOAD_JOURNAL:
            self.query_one(LogView).update_entries(event.payload, self._journal_unit)
            return
        if event.description == LOAD_BOOT:
            self.query_one(BootView).update_entries(event.payload)
            return
        if event.description == LOAD_DETAIL:
            self.push_screen(ProcessDetailScreen(event.payload))
            return

        result = event.result
        if result is None:
            return
        if result.services is not None:
            self.query_one(ServiceView).update_services(result.services)
        if result.ok:
            self.notify(f"{event.description}: {result.message}")
        else:
            message = result.message.strip() or result.status.value
            self.notify(f"{event.description}: {message}", severity="error")

    def _load_services(self) -> None:
        self._control.submit(LOAD_SERVICES, self._control.list_services)

    def on_tabbed_content_tab_activated(self, event: TabbedContent.TabActivated) -> None:
        pane = event.pane.id
        if pane == "services":
            self._load_services()
        elif pane == "logs":
            self._control.submit(LOAD_JOURNAL, self._control.query_journal, unit=self._journal_unit)
        elif pane == "boot":
            self._control.submit(LOAD_BOOT, self._control.boot_parameters)

    def _active_tab(self) -> str | None:
        return self.query_one("#tabs", TabbedContent).active

    def action_pause(self) -> None:
        paused = self._scheduler.toggle_pause()
        self.notify("Paused" if paused else "Resumed")

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        key = self._processes.cycle_sort()
        self.notify(f"Sort: {key.name}")
        self._last_tick = -1

    def action_search(self) -> None:
        self.query_one("#tabs", TabbedContent).active = "processes"
        self.query_one(ProcessView).toggle_filter()

    def action_toggle_system(self) -> None:
        shown = self._processes.toggle_system()
        self.notify("Showing system processes" if shown else "Hiding system processes")
        self._last_tick = -1

    def action_kill(self) -> None:
        if self._active_tab() != "processes":
            return
        proc = self.query_one(ProcessView).selected()
        if proc is None:
            return
        self._confirm_then(
            f"Terminate {proc.name} (pid {proc.pid})?",
            f"Terminate {proc.pid}",
            self._control.signal_process,
            proc.pid,
        )

    def action_process_detail(self) -> None:
        if self._active_tab() != "processes":
            return
        proc = self.query_one(ProcessView).selected()
        if proc is not None:
            self._control.submit(LOAD_DETAIL, read_process_detail, proc.pid)

    def action_service(self, verb: str) -> None:
        """Run a lifecycle action on the selected unit of the services tab."""
        if self._active_tab() != "services":
            return
        unit = self.query_one(ServiceView).selected()
        if unit is None:
            return
        action = ServiceAction(verb)
        self._journal_unit = unit.name
        description = f"{verb.capitalize()} {unit.name}"
        if action.requires_confirmation and self._control.gate.can_mutate:
            self._confirm_then(
                f"{verb.capitalize()} {unit.name}?", description, self._control.service_action, action, unit.name
            )
        else:
            self._control.submit(description, self._control.service_action, action, unit.name)

    def _confirm_then(self, question: str, description: str, fn, *args) -> None:
        def answered(confirmed: bool | None) -> None:
            if confirmed:
                self._control.submit(description, fn, *args, confirmed=True)

        self.push_screen(ConfirmScreen(question), answered)

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._scheduler.stop()
        self._control.close()
        self.exit()

    def on_unmount(self) -> None:
        self._scheduler.stop()
        self._control.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="puls", description="Terminal system monitor")
    parser.add_argument("--safe", action="store_true", help="read-only; no GPU or container polling")
    parser.add_argument("--refresh", type=float, help="seconds between samples (0.1-10)")
    parser.add_argument("--history", type=int, help="samples of history kept (10-300)")
    parser.add_argument("--no-gpu", action="store_true", help="do not poll GPUs")
    parser.add_argument("--no-docker", action="store_true", help="do not poll containers")
    parser.add_argument("--no-network", action="store_true", help="do not poll network interfaces")
    parser.add_argument("--show-system", action="store_true", help="list kernel and system processes")
    parser.add_argument("--config", type=Path, help="config file (JSON)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser.parse_args(argv)


def setup_logging(verbose: bool = False, path: Path | None = None) -> Path:
    """Send log records to a file; the terminal belongs to the UI."""
    log_path = path or default_log_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=log_path,
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return log_path


def main(argv: list[str] | None = None) -> None:
    """Entry point for puls application."""
    args = parse_args(argv)
    setup_logging(args.verbose)
    config = load_config(args.config).with_args(args)
    app = PulsApp(config)
    app.run()


if __name__ == "__main__":
    main()
