"""Host metric sources for puls, backed by psutil."""

import logging
import os
import platform
import socket
import time
from collections.abc import Mapping
from typing import Any

import psutil

from puls.errors import SourceUnavailable
from puls.models import (
    NA,
    CpuStats,
    DiskIO,
    MemoryStats,
    NetInterface,
    Partition,
    ProcessDetail,
    ProcessEntry,
    Sentinel,
    SystemInfo,
)

logger = logging.getLogger(__name__)

Fragment = Mapping[str, Any]

CPUINFO = "/proc/cpuinfo"


def calculate_rate(current: int, previous: int, elapsed: float) -> int:
    """Bytes per second between two counter readings (never negative)."""
    if elapsed <= 0:
        return 0
    return int(max(0, current - previous) / elapsed)


class MetricSource:
    """
    One independently polled subsystem.

    `poll()` returns a fragment mapping snapshot field names (a subset of
    `fields`) to values, or raises. SourceUnavailable means the subsystem is
    absent; anything else is treated as an error for that tick.
    """

    name: str = "source"
    fields: tuple[str, ...] = ()
    timeout: float | None = None  # Per-source override of the scheduler default

    def poll(self) -> Fragment:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class RateTracker:
    """Remembers the previous counters of a source to turn totals into rates."""

    def __init__(self) -> None:
        self._previous: dict[str, Any] = {}
        self._last_time: float | None = None

    def elapsed(self) -> float:
        now = time.monotonic()
        elapsed = 0.0 if self._last_time is None else now - self._last_time
        self._last_time = now
        return elapsed

    def previous(self, key: str) -> Any:
        return self._previous.get(key)

    def replace(self, current: dict[str, Any]) -> None:
        self._previous = current


def cpu_model(cpuinfo: str = CPUINFO) -> str | Sentinel:
    """The CPU brand string, from /proc/cpuinfo on Linux."""
    try:
        with open(cpuinfo, encoding="utf-8", errors="replace") as f:
            for line in f:
                key, _, value = line.partition(":")
                if key.strip() in ("model name", "Hardware", "Processor") and value.strip():
                    return value.strip()
    except OSError:
        pass
    return platform.processor() or NA


def os_name() -> str:
    """Distribution name and version where known, else the platform name."""
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        release = {}
    pretty = release.get("PRETTY_NAME")
    if pretty:
        return pretty
    return " ".join(part for part in (platform.system(), platform.version()) if part)


def read_system_info() -> SystemInfo:
    """Describe the host: name, OS, kernel, CPU and boot time."""
    try:
        boot_time = psutil.boot_time()
    except (OSError, RuntimeError):
        boot_time = NA
    return SystemInfo(
        hostname=socket.gethostname(),
        os_name=os_name(),
        kernel=platform.release(),
        architecture=platform.machine(),
        cpu_model=cpu_model(),
        boot_time=boot_time,
    )


class HostSource(MetricSource):
    """CPU, memory, swap, uptime and the static host description."""

    name = "host"
    fields = ("cpu", "memory", "swap", "uptime_seconds", "system")

    def __init__(self) -> None:
        # Prime the counters; the first call always returns 0.0
        psutil.cpu_percent()
        psutil.cpu_percent(percpu=True)
        self._system = read_system_info()

    def poll(self) -> Fragment:
        total = psutil.cpu_percent()
        per_core = psutil.cpu_percent(percpu=True)
        try:
            freqs = psutil.cpu_freq(percpu=True) or []
        except (AttributeError, NotImplementedError, OSError):
            freqs = []
        try:
            load_avg = psutil.getloadavg()
        except (AttributeError, OSError):
            load_avg = (0.0, 0.0, 0.0)
        physical = psutil.cpu_count(logical=False)

        cpu = CpuStats(
            total_percent=float(total),
            per_core_percent=tuple(float(p) for p in per_core),
            per_core_mhz=tuple(float(f.current) for f in freqs),
            load_avg=tuple(float(x) for x in load_avg),
            logical_count=psutil.cpu_count() or len(per_core) or 1,
            physical_count=physical if physical else NA,
        )

        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return {
            "cpu": cpu,
            "memory": MemoryStats(
                total=mem.total, used=mem.used, available=mem.available, percent=mem.percent
            ),
            "swap": MemoryStats(
                total=swap.total, used=swap.used, available=swap.free, percent=swap.percent
            ),
            "uptime_seconds": time.time() - psutil.boot_time(),
            "system": self._system,
        }


class DiskSource(MetricSource):
    """Per-disk I/O rates and mounted filesystem usage."""

    name = "disk"
    fields = ("disks", "partitions")

    def __init__(self) -> None:
        self._rates = RateTracker()

    def poll(self) -> Fragment:
        counters = psutil.disk_io_counters(perdisk=True)
        if counters is None:
            raise SourceUnavailable("no disk I/O counters on this host")

        elapsed = self._rates.elapsed()
        disks = []
        for name, c in sorted(counters.items()):
            prev = self._rates.previous(name)
            disks.append(
                DiskIO(
                    name=name,
                    read_rate=calculate_rate(c.read_bytes, prev.read_bytes, elapsed) if prev else 0,
                    write_rate=calculate_rate(c.write_bytes, prev.write_bytes, elapsed) if prev else 0,
                    read_bytes=c.read_bytes,
                    write_bytes=c.write_bytes,
                    read_ops=c.read_count,
                    write_ops=c.write_count,
                )
            )
        self._rates.replace(dict(counters))

        return {"disks": tuple(disks), "partitions": tuple(self._partitions())}

    def _partitions(self) -> list[Partition]:
        partitions = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError:
                # Unreadable mount (permission, stale network share)
                continue
            partitions.append(
                Partition(
                    device=part.device,
                    mountpoint=part.mountpoint,
                    fstype=part.fstype,
                    total=usage.total,
                    used=usage.used,
                    free=usage.free,
                    percent=usage.percent,
                )
            )
        return partitions


class NetworkSource(MetricSource):
    """Per-interface traffic rates."""

    name = "network"
    fields = ("networks",)

    def __init__(self) -> None:
        self._rates = RateTracker()

    def poll(self) -> Fragment:
        counters = psutil.net_io_counters(pernic=True)
        if not counters:
            raise SourceUnavailable("no network interfaces")
        try:
            stats = psutil.net_if_stats()
        except OSError:
            stats = {}

        elapsed = self._rates.elapsed()
        interfaces = []
        for name, c in sorted(counters.items()):
            prev = self._rates.previous(name)
            stat = stats.get(name)
            interfaces.append(
                NetInterface(
                    name=name,
                    rx_rate=calculate_rate(c.bytes_recv, prev.bytes_recv, elapsed) if prev else 0,
                    tx_rate=calculate_rate(c.bytes_sent, prev.bytes_sent, elapsed) if prev else 0,
                    rx_total=c.bytes_recv,
                    tx_total=c.bytes_sent,
                    packets_rx=c.packets_recv,
                    packets_tx=c.packets_sent,
                    errors_rx=c.errin,
                    errors_tx=c.errout,
                    is_up=stat.isup if stat is not None else NA,
                )
            )
        self._rates.replace(dict(counters))
        return {"networks": tuple(interfaces)}


class ProcessSource(MetricSource):
    """
    Every live process except puls itself.

    Uses psutil.process_iter() with oneshot() for efficiency. Processes that
    vanish, deny access or are zombies are skipped.
    """

    name = "processes"
    fields = ("processes",)

    # Attributes to fetch in oneshot
    ATTRS = [
        "pid",
        "ppid",
        "name",
        "username",
        "status",
        "cpu_percent",
        "memory_percent",
        "memory_info",
        "io_counters",
        "num_threads",
        "create_time",
        "cmdline",
    ]

    def __init__(self) -> None:
        self._self_pid = os.getpid()
        self._prev_io: dict[int, tuple[int, int]] = {}

    def poll(self) -> Fragment:
        entries: list[ProcessEntry] = []
        current_io: dict[int, tuple[int, int]] = {}

        for proc in psutil.process_iter(attrs=self.ATTRS):
            try:
                with proc.oneshot():
                    info = proc.info
                    pid = info.get("pid", 0)
                    if pid == self._self_pid:
                        continue

                    cmdline = info.get("cmdline") or []
                    name = info.get("name") or ""
                    mem_info = info.get("memory_info")

                    io = info.get("io_counters")
                    read_delta = write_delta = 0
                    if io is not None:
                        current_io[pid] = (io.read_bytes, io.write_bytes)
                        prev = self._prev_io.get(pid)
                        if prev is not None:
                            read_delta = max(0, io.read_bytes - prev[0])
                            write_delta = max(0, io.write_bytes - prev[1])

                    entries.append(
                        ProcessEntry(
                            pid=pid,
                            ppid=info.get("ppid") or 0,
                            user=info.get("username") or "",
                            name=name,
                            command=" ".join(cmdline) if cmdline else name,
                            state=info.get("status") or "?",
                            cpu_percent=info.get("cpu_percent") or 0.0,
                            memory_percent=info.get("memory_percent") or 0.0,
                            memory_rss=mem_info.rss if mem_info else 0,
                            io_read_delta=read_delta,
                            io_write_delta=write_delta,
                            threads=info.get("num_threads") or 0,
                            start_time=info.get("create_time") or 0.0,
                        )
                    )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        # Exited pids drop out here, so the map never grows unbounded
        self._prev_io = current_io
        return {"processes": tuple(entries)}


def read_process_detail(pid: int) -> ProcessDetail:
    """
    Read the full record of one process.

    Fields the caller may not read (another user's cwd, say) are NA.

    Raises:
        SourceUnavailable: The process does not exist or cannot be read at all.
    """
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            mem = proc.memory_info()
            name = proc.name()
            cmdline = _optional(proc.cmdline) or []
            parent_pid = _optional(proc.ppid)
            detail = ProcessDetail(
                pid=pid,
                name=name,
                user=_optional(proc.username),
                state=proc.status(),
                command=" ".join(cmdline) if cmdline else name,
                memory_rss=mem.rss,
                memory_vms=mem.vms,
                threads=proc.num_threads(),
                start_time=proc.create_time(),
                parent_pid=parent_pid,
                parent_name=_parent_name(parent_pid),
                cwd=_optional(proc.cwd),
                open_files=_optional(proc.num_fds if hasattr(proc, "num_fds") else proc.num_handles),
            )
    except psutil.NoSuchProcess as e:
        raise SourceUnavailable(f"No such process: {pid}") from e
    except psutil.AccessDenied as e:
        raise SourceUnavailable(f"Access denied to pid {pid}") from e
    return detail


def _optional(read: Any) -> Any:
    try:
        return read()
    except (psutil.AccessDenied, psutil.ZombieProcess):
        return NA


def _parent_name(ppid: int | Sentinel) -> str | Sentinel:
    if ppid is NA or not ppid:
        return NA
    try:
        return psutil.Process(ppid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return NA
