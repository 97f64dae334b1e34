"""Filtering and sorting of the live process list."""

from collections.abc import Iterable
from enum import Enum

from puls.models import ProcessEntry

# Weights of the "general" score; both positive so the score is monotonic.
GENERAL_CPU_WEIGHT = 0.6
GENERAL_MEM_WEIGHT = 0.4

SYSTEM_PROCESS_PREFIXES = (
    "kthreadd",
    "migration",
    "rcu_",
    "watchdog",
    "systemd",
    "kernel",
    "kworker",
    "ksoftirqd",
    "init",
    "swapper",
    "[",
    "dbus",
    "NetworkManager",
)


class SortKey(Enum):
    """Sort keys for the process table."""

    CPU = "cpu"
    MEMORY = "mem"
    GENERAL = "general"
    DISK_IO = "io"
    NAME = "name"
    PID = "pid"


# Keys sorted smallest-first unless the user flips the direction
ASCENDING_BY_DEFAULT = frozenset({SortKey.NAME, SortKey.PID})


def is_system_process(name: str) -> bool:
    """Check whether a process name looks like a kernel thread or system daemon."""
    return name.startswith(SYSTEM_PROCESS_PREFIXES)


def general_score(entry: ProcessEntry, cpu_count: int) -> float:
    """
    Weighted combination of normalized CPU% and memory%.

    CPU% is normalized by the number of logical CPUs; both terms are clamped to
    [0, 1] so a single runaway reading cannot dominate.
    """
    cpu_norm = min(max(entry.cpu_percent / (100.0 * max(cpu_count, 1)), 0.0), 1.0)
    mem_norm = min(max(entry.memory_percent / 100.0, 0.0), 1.0)
    return GENERAL_CPU_WEIGHT * cpu_norm + GENERAL_MEM_WEIGHT * mem_norm


def matches_filter(entry: ProcessEntry, text: str) -> bool:
    """Case-insensitive substring match on name, command line or pid."""
    if not text:
        return True
    needle = text.lower()
    return needle in entry.name.lower() or needle in entry.command.lower() or needle in str(entry.pid)


class ProcessTable:
    """
    Sort and filter settings applied to a fresh process list every tick.

    Nothing is carried over between ticks except the settings themselves.
    """

    def __init__(
        self,
        sort_key: SortKey = SortKey.CPU,
        descending: bool | None = None,
        filter_text: str = "",
        show_system: bool = False,
        cpu_count: int = 1,
    ) -> None:
        """
        Initialize the ProcessTable.

        Args:
            sort_key: Initial sort key.
            descending: Sort direction; defaults per key.
            filter_text: Substring filter.
            show_system: Include kernel threads and system daemons.
            cpu_count: Logical CPUs, used to normalize the general score.
        """
        self._sort_key = sort_key
        self._descending = sort_key not in ASCENDING_BY_DEFAULT if descending is None else descending
        self.filter_text = filter_text
        self.show_system = show_system
        self.cpu_count = cpu_count

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    @property
    def descending(self) -> bool:
        return self._descending

    def set_sort(self, key: SortKey, descending: bool | None = None) -> None:
        """Select a sort key; re-selecting the current key flips the direction."""
        if descending is not None:
            self._descending = descending
        elif key is self._sort_key:
            self._descending = not self._descending
        else:
            self._descending = key not in ASCENDING_BY_DEFAULT
        self._sort_key = key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        next_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self.set_sort(next_key, descending=next_key not in ASCENDING_BY_DEFAULT)
        return next_key

    def toggle_system(self) -> bool:
        self.show_system = not self.show_system
        return self.show_system

    def _key_func(self):
        return {
            SortKey.CPU: lambda p: p.cpu_percent,
            SortKey.MEMORY: lambda p: p.memory_rss,
            SortKey.GENERAL: lambda p: general_score(p, self.cpu_count),
            SortKey.DISK_IO: lambda p: p.io_delta,
            SortKey.NAME: lambda p: p.name.lower(),
            SortKey.PID: lambda p: p.pid,
        }[self._sort_key]

    def apply(self, processes: Iterable[ProcessEntry]) -> list[ProcessEntry]:
        """
        Filter and sort a process list.

        Equal sort values keep ascending pid order in both directions: the list
        is first ordered by pid and Python's sort is stable even with reverse.
        """
        rows = [
            p
            for p in processes
            if (self.show_system or not is_system_process(p.name)) and matches_filter(p, self.filter_text)
        ]
        rows.sort(key=lambda p: p.pid)
        rows.sort(key=self._key_func(), reverse=self._descending)
        return rows
