"""Data models for puls."""

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class Sentinel(Enum):
    """Marker for a value that could not be read (as opposed to a real zero)."""

    NA = "N/A"

    def __str__(self) -> str:
        return self.value

    def __bool__(self) -> bool:
        return False


NA = Sentinel.NA


def is_na(value: object) -> bool:
    """Return True if value is the N/A sentinel."""
    return value is NA


class GpuVendor(Enum):
    """GPU vendors puls knows how to query."""

    NVIDIA = "NVIDIA"
    AMD = "AMD"
    INTEL = "INTEL"


class Outcome(Enum):
    """Result of polling one source during one tick."""

    OK = "ok"
    TIMED_OUT = "timed_out"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class CpuStats:
    """Global and per-core CPU utilization."""

    total_percent: float
    per_core_percent: tuple[float, ...]
    per_core_mhz: tuple[float, ...]
    load_avg: tuple[float, float, float]
    logical_count: int
    physical_count: int | Sentinel


@dataclass(slots=True, frozen=True)
class MemoryStats:
    """RAM or swap usage in bytes."""

    total: int
    used: int
    available: int
    percent: float


@dataclass(slots=True, frozen=True)
class DiskIO:
    """I/O counters and rates for one block device."""

    name: str
    read_rate: int  # Bytes per second
    write_rate: int
    read_bytes: int
    write_bytes: int
    read_ops: int
    write_ops: int


@dataclass(slots=True, frozen=True)
class Partition:
    """Usage of one mounted filesystem."""

    device: str
    mountpoint: str
    fstype: str
    total: int
    used: int
    free: int
    percent: float


@dataclass(slots=True, frozen=True)
class NetInterface:
    """Traffic counters and rates for one network interface."""

    name: str
    rx_rate: int  # Bytes per second
    tx_rate: int
    rx_total: int
    tx_total: int
    packets_rx: int
    packets_tx: int
    errors_rx: int
    errors_tx: int
    is_up: bool | Sentinel


@dataclass(slots=True, frozen=True)
class GpuDevice:
    """One GPU, normalized across vendors. Unreadable fields are NA."""

    vendor: GpuVendor
    index: int
    name: str
    utilization_percent: float | Sentinel
    memory_used: int | Sentinel  # Bytes
    memory_total: int | Sentinel
    temperature_c: float | Sentinel
    power_watts: float | Sentinel
    graphics_clock_mhz: float | Sentinel = NA
    memory_clock_mhz: float | Sentinel = NA
    fan_percent: float | Sentinel = NA
    driver_version: str | Sentinel = NA


@dataclass(slots=True, frozen=True)
class ContainerEntry:
    """State and resource usage of one container."""

    id: str
    name: str
    image: str
    state: str
    status: str
    cpu_percent: float | Sentinel
    memory_usage: int | Sentinel  # Bytes
    memory_percent: float | Sentinel
    health: str | Sentinel
    ports: str
    net_rx_rate: int | Sentinel = NA  # Bytes per second
    net_tx_rate: int | Sentinel = NA
    block_read_rate: int | Sentinel = NA
    block_write_rate: int | Sentinel = NA
    net_rx_bytes: int | Sentinel = NA  # Totals since the container started
    net_tx_bytes: int | Sentinel = NA
    block_read_bytes: int | Sentinel = NA
    block_write_bytes: int | Sentinel = NA


@dataclass(slots=True, frozen=True)
class ProcessEntry:
    """Immutable snapshot of a process state."""

    pid: int
    ppid: int
    user: str
    name: str
    command: str
    state: str  # 'running', 'sleeping', 'zombie', etc.
    cpu_percent: float  # 0.0 - 100.0 * core_count
    memory_percent: float
    memory_rss: int  # Bytes
    io_read_delta: int  # Bytes read since the previous tick
    io_write_delta: int
    threads: int
    start_time: float  # Epoch seconds

    @property
    def io_delta(self) -> int:
        """Total disk I/O since the previous tick."""
        return self.io_read_delta + self.io_write_delta


@dataclass(slots=True, frozen=True)
class ProcessDetail:
    """Everything readable about one process, read on demand."""

    pid: int
    name: str
    user: str | Sentinel
    state: str
    command: str
    memory_rss: int  # Bytes
    memory_vms: int
    threads: int
    start_time: float  # Epoch seconds
    parent_pid: int | Sentinel
    parent_name: str | Sentinel
    cwd: str | Sentinel
    open_files: int | Sentinel  # File descriptors on POSIX, handles on Windows

    @property
    def started(self) -> str:
        """Start time in local time, e.g. '2026-01-31 23:59:59'."""
        return datetime.fromtimestamp(self.start_time).strftime("%Y-%m-%d %H:%M:%S")


@dataclass(slots=True, frozen=True)
class SystemInfo:
    """Static description of the host, read once."""

    hostname: str
    os_name: str
    kernel: str
    architecture: str
    cpu_model: str | Sentinel
    boot_time: float | Sentinel  # Epoch seconds

    @property
    def booted(self) -> str:
        if self.boot_time is NA:
            return str(NA)
        return datetime.fromtimestamp(self.boot_time).strftime("%Y-%m-%d %H:%M:%S")


@dataclass(slots=True, frozen=True)
class ServiceUnit:
    """An installed init-system service unit."""

    name: str
    load: str
    active: str
    sub: str
    enabled: str
    description: str

    @property
    def is_running(self) -> bool:
        return self.active == "active"


@dataclass(slots=True, frozen=True)
class JournalEntry:
    """One record from the system journal."""

    timestamp: datetime | Sentinel
    unit: str
    priority: int | Sentinel
    pid: int | Sentinel
    message: str

    @property
    def priority_name(self) -> str:
        if self.priority is NA:
            return str(NA)
        return PRIORITY_NAMES[self.priority]


PRIORITY_NAMES = ("emerg", "alert", "crit", "err", "warning", "notice", "info", "debug")


@dataclass(slots=True, frozen=True)
class SourceStatus:
    """How one source fared during the latest tick."""

    outcome: Outcome
    detail: str = ""
    elapsed: float = 0.0
    stale_ticks: int = 0


@dataclass(slots=True, frozen=True)
class MetricStream:
    """A named scalar series: latest value plus its history, oldest first."""

    name: str
    value: float | Sentinel
    samples: tuple[float, ...]


def _frozen_mapping() -> Mapping:
    return MappingProxyType({})


@dataclass(slots=True, frozen=True)
class SystemSnapshot:
    """Snapshot of overall system state, replaced wholesale every tick."""

    tick: int
    timestamp: float
    cpu: CpuStats | Sentinel = NA
    memory: MemoryStats | Sentinel = NA
    swap: MemoryStats | Sentinel = NA
    uptime_seconds: float | Sentinel = NA
    system: SystemInfo | Sentinel = NA
    disks: tuple[DiskIO, ...] | Sentinel = NA
    partitions: tuple[Partition, ...] | Sentinel = NA
    networks: tuple[NetInterface, ...] | Sentinel = NA
    gpus: tuple[GpuDevice, ...] | Sentinel = NA
    containers: tuple[ContainerEntry, ...] | Sentinel = NA
    processes: tuple[ProcessEntry, ...] | Sentinel = NA
    sources: Mapping[str, SourceStatus] = field(default_factory=_frozen_mapping)
    streams: Mapping[str, MetricStream] = field(default_factory=_frozen_mapping)


SNAPSHOT_FIELDS = (
    "cpu",
    "memory",
    "swap",
    "uptime_seconds",
    "system",
    "disks",
    "partitions",
    "networks",
    "gpus",
    "containers",
    "processes",
)


class ActionStatus(Enum):
    """Outcome of a control operation."""

    SUCCESS = "success"
    FAILURE = "failure"
    PERMISSION_DENIED = "permission_denied"
    CONFIRMATION_REQUIRED = "confirmation_required"
    BACKUP_FAILED = "backup_failed"
    PARSE_ERROR = "parse_error"


@dataclass(slots=True, frozen=True)
class ActionResult:
    """What a control operation did, or why it did nothing."""

    status: ActionStatus
    message: str = ""
    returncode: int | None = None
    backup_path: str | None = None
    services: tuple[ServiceUnit, ...] | None = None  # Re-enumerated after service actions

    @property
    def ok(self) -> bool:
        return self.status is ActionStatus.SUCCESS


@dataclass(slots=True, frozen=True)
class StatusEvent:
    """Completion notice for an operation run off the render loop."""

    description: str
    result: ActionResult | None = None
    payload: Any = None
    error: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.error is None and (self.result is None or self.result.ok)
