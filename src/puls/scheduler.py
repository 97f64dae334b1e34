"""Tick scheduler: concurrent source polling, degrade policy and snapshot publishing."""

import logging
import threading
import time
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from queue import Queue
from types import MappingProxyType
from typing import Any

from puls.commands import CommandRunner
from puls.config import AppConfig
from puls.containers import ContainerSource
from puls.errors import SourceTimeout, SourceUnavailable
from puls.gpu import GpuSource, default_adapters, primary_utilization
from puls.history import StreamSet
from puls.models import NA, SNAPSHOT_FIELDS, Outcome, SourceStatus, SystemSnapshot
from puls.privilege import Capability, PrivilegeGate
from puls.sources import DiskSource, HostSource, MetricSource, NetworkSource, ProcessSource

logger = logging.getLogger(__name__)

# Snapshot fields with scalar history, and the streams each one feeds
PROJECTED_FIELDS = {
    "cpu": ("cpu",),
    "memory": ("memory",),
    "swap": ("swap",),
    "networks": ("net_rx", "net_tx"),
    "disks": ("disk_read", "disk_write"),
    "gpus": ("gpu",),
}
STREAM_NAMES = tuple(s for streams in PROJECTED_FIELDS.values() for s in streams)


@dataclass(slots=True)
class _FieldState:
    """Last good value of one snapshot field and how long ago it was refreshed."""

    value: Any = NA
    populated: bool = False
    misses: int = 0


def _project(field: str, value: Any) -> dict[str, float]:
    """Scalar history samples derived from a freshly polled snapshot field."""
    if field == "cpu":
        return {"cpu": value.total_percent}
    if field == "memory":
        return {"memory": value.percent}
    if field == "swap":
        return {"swap": value.percent}
    if field == "networks":
        return {
            "net_rx": float(sum(n.rx_rate for n in value)),
            "net_tx": float(sum(n.tx_rate for n in value)),
        }
    if field == "disks":
        return {
            "disk_read": float(sum(d.read_rate for d in value)),
            "disk_write": float(sum(d.write_rate for d in value)),
        }
    if field == "gpus":
        util = primary_utilization(value)
        return {} if util is NA else {"gpu": float(util)}
    return {}


class Scheduler:
    """
    Owns the published SystemSnapshot and the metric history.

    Every tick polls each enabled source on a thread pool under its own
    timeout, merges the fragments under the degrade policy and publishes a new
    frozen snapshot with one reference assignment. Readers use `latest` (or the
    optional queue) and never lock.
    """

    def __init__(
        self,
        sources: Sequence[MetricSource],
        config: AppConfig | None = None,
        gate: PrivilegeGate | None = None,
        update_queue: Queue[SystemSnapshot] | None = None,
    ) -> None:
        """
        Initialize the Scheduler.

        Args:
            sources: Every source the host could offer.
            config: Runtime settings; defaults to AppConfig().
            gate: Capability of this process; SAFE disables GPU and containers.
            update_queue: Optional queue receiving every published snapshot.
        """
        self._config = config or AppConfig()
        self._gate = gate or PrivilegeGate(Capability.READ_ONLY)
        self._queue = update_queue

        disabled = self._config.disabled_sources()
        self._sources = [
            s for s in sources if s.name not in disabled and self._gate.polling_allowed(s.name)
        ]
        self._disabled = tuple(s.name for s in sources if s not in self._sources)
        for name in self._disabled:
            logger.info("Source %s disabled", name)

        self._fields = {name: _FieldState() for name in SNAPSHOT_FIELDS}
        self._streams = StreamSet(STREAM_NAMES, self._config.history_length)
        self._in_flight: dict[str, Future] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._write_lock = threading.Lock()
        self._tick = 0
        self._latest = SystemSnapshot(tick=0, timestamp=time.time())

        self._stop_event = threading.Event()
        self._paused = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def latest(self) -> SystemSnapshot:
        """The most recently published snapshot."""
        return self._latest

    @property
    def sources(self) -> tuple[str, ...]:
        """Names of the sources polled every tick."""
        return tuple(s.name for s in self._sources)

    @property
    def disabled_sources(self) -> tuple[str, ...]:
        """Names of the sources skipped by flags or capability."""
        return self._disabled

    @property
    def interval(self) -> float:
        return self._config.refresh_interval

    @property
    def is_running(self) -> bool:
        """Check if the scheduler thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def toggle_pause(self) -> bool:
        """Pause or resume polling; returns the new paused state."""
        if self._paused.is_set():
            self._paused.clear()
        else:
            self._paused.set()
        return self._paused.is_set()

    def start(self) -> None:
        """Start the polling thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="Scheduler",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the polling thread and abandon any in-flight source calls.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._in_flight.clear()

    def resize_history(self, capacity: int) -> None:
        """Change the history length; existing samples are discarded."""
        with self._write_lock:
            self._streams.resize(capacity)

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            started = time.monotonic()
            if not self._paused.is_set():
                try:
                    self.tick()
                except Exception:
                    # Keep the loop alive; a broken tick must not end collection
                    logger.exception("Tick failed")
            elapsed = time.monotonic() - started
            self._stop_event.wait(timeout=max(0.0, self.interval - elapsed))

    def _timeout_for(self, source: MetricSource) -> float:
        timeout = self._config.adapter_timeout
        if source.timeout is not None:
            timeout = min(source.timeout, self.interval * 0.9)
        return timeout

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, len(self._sources)),
                thread_name_prefix="puls-source",
            )
        return self._executor

    def tick(self) -> SystemSnapshot:
        """Poll every enabled source once and publish the merged snapshot."""
        with self._write_lock:
            return self._tick_locked()

    def _tick_locked(self) -> SystemSnapshot:
        started = time.monotonic()
        pool = self._pool()
        statuses: dict[str, SourceStatus] = {}
        submitted: list[tuple[MetricSource, Future]] = []

        for source in self._sources:
            pending = self._in_flight.get(source.name)
            if pending is not None and not pending.done():
                # Still stuck in last tick's call; don't pile up another one
                statuses[source.name] = SourceStatus(Outcome.TIMED_OUT, "previous poll still running")
                continue
            future = pool.submit(source.poll)
            self._in_flight[source.name] = future
            submitted.append((source, future))

        fresh: dict[str, Any] = {}
        for source, future in submitted:
            remaining = max(0.0, started + self._timeout_for(source) - time.monotonic())
            try:
                fragment = future.result(timeout=remaining)
            except (FutureTimeout, SourceTimeout) as e:
                statuses[source.name] = SourceStatus(Outcome.TIMED_OUT, str(e) or "timed out")
                logger.debug("Source %s timed out", source.name)
                continue
            except SourceUnavailable as e:
                statuses[source.name] = SourceStatus(Outcome.UNAVAILABLE, str(e))
                logger.debug("Source %s unavailable: %s", source.name, e)
                continue
            except Exception as e:  # noqa: BLE001
                statuses[source.name] = SourceStatus(Outcome.ERROR, f"{type(e).__name__}: {e}")
                logger.warning("Source %s failed: %s", source.name, e)
                continue
            statuses[source.name] = SourceStatus(Outcome.OK, elapsed=time.monotonic() - started)
            for field in source.fields:
                if field in fragment:
                    fresh[field] = fragment[field]

        values = self._merge(fresh)
        for source in self._sources:
            status = statuses[source.name]
            if status.outcome is not Outcome.OK:
                misses = max((self._fields[f].misses for f in source.fields), default=0)
                statuses[source.name] = SourceStatus(
                    status.outcome, status.detail, time.monotonic() - started, misses
                )

        for field, streams in PROJECTED_FIELDS.items():
            samples = _project(field, fresh[field]) if field in fresh else {}
            for stream in streams:
                if stream in samples:
                    self._streams.append(stream, samples[stream])
                else:
                    self._streams.mark_missing(stream)

        self._tick += 1
        snapshot = SystemSnapshot(
            tick=self._tick,
            timestamp=time.time(),
            sources=MappingProxyType(statuses),
            streams=MappingProxyType(self._streams.freeze()),
            **values,
        )
        self._latest = snapshot
        if self._queue is not None:
            self._queue.put(snapshot)

        elapsed = time.monotonic() - started
        if elapsed > self.interval / 2:
            logger.warning("Slow data collection: %.3fs", elapsed)
        return snapshot

    def _merge(self, fresh: dict[str, Any]) -> dict[str, Any]:
        """
        Apply the degrade policy to every snapshot field.

        A fresh value replaces the old one. A missed field keeps its last good
        value for at most `stale_ticks` ticks, then becomes NA; a field never
        populated is NA from the start.
        """
        limit = self._config.stale_ticks
        values = {}
        for name, state in self._fields.items():
            if name in fresh:
                state.value = fresh[name]
                state.populated = True
                state.misses = 0
            else:
                state.misses += 1
                if not state.populated or state.misses > limit:
                    state.value = NA
            values[name] = state.value
        return values


def build_sources(config: AppConfig, runner: CommandRunner | None = None) -> list[MetricSource]:
    """Every source this host could offer; the Scheduler drops the disabled ones."""
    runner = runner or CommandRunner()
    return [
        HostSource(),
        DiskSource(),
        NetworkSource(),
        ProcessSource(),
        GpuSource(default_adapters(runner)),
        ContainerSource(engine=config.container_engine),
    ]
