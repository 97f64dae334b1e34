"""Container engine telemetry through the Docker Engine API (Docker, or Podman's compatible socket)."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import docker
import requests
from docker.errors import DockerException, NotFound

from puls.errors import SourceUnavailable
from puls.models import NA, ContainerEntry, Sentinel
from puls.sources import Fragment, MetricSource, RateTracker, calculate_rate

logger = logging.getLogger(__name__)

DOCKER_SOCKET = Path("/var/run/docker.sock")
PODMAN_SOCKET = Path("/run/podman/podman.sock")


def podman_socket() -> Path:
    """The rootless socket of the current user if it exists, else the system one."""
    rootless = Path(f"/run/user/{os.getuid()}/podman/podman.sock")
    return rootless if rootless.exists() else PODMAN_SOCKET


def parse_health(status: str) -> str | Sentinel:
    """Extract the health check state from a container status string."""
    if "(healthy)" in status:
        return "healthy"
    if "(unhealthy)" in status:
        return "unhealthy"
    if "(health: starting)" in status:
        return "starting"
    return NA


def format_ports(ports: list[dict[str, Any]] | None) -> str:
    """Render published ports the way `docker ps` does, e.g. '0.0.0.0:80->80/tcp'."""
    rendered: list[str] = []
    for port in ports or []:
        private = f"{port.get('PrivatePort')}/{port.get('Type', 'tcp')}"
        if port.get("PublicPort"):
            text = f"{port.get('IP') or '0.0.0.0'}:{port['PublicPort']}->{private}"
        else:
            text = private
        if text not in rendered:
            rendered.append(text)
    return ", ".join(rendered) or "none"


def memory_usage(mem_stats: dict[str, Any]) -> tuple[int | Sentinel, float | Sentinel]:
    """
    Used bytes and percent of the limit, as `docker stats` computes them.

    Page cache is not counted: inactive_file on cgroup v2, cache on v1.
    """
    usage = mem_stats.get("usage")
    if usage is None:
        return NA, NA
    stats = mem_stats.get("stats") or {}
    cached = stats.get("inactive_file", stats.get("total_inactive_file", stats.get("cache", 0)))
    used = max(int(usage) - int(cached or 0), 0)
    limit = mem_stats.get("limit") or 0
    return used, (used / limit * 100.0 if limit > 0 else NA)


def network_bytes(stats: dict[str, Any]) -> tuple[int | Sentinel, int | Sentinel]:
    """Received and sent bytes summed over every interface of the container."""
    networks = stats.get("networks")
    if not networks:
        return NA, NA
    rx = sum(int(n.get("rx_bytes") or 0) for n in networks.values())
    tx = sum(int(n.get("tx_bytes") or 0) for n in networks.values())
    return rx, tx


def block_bytes(stats: dict[str, Any]) -> tuple[int | Sentinel, int | Sentinel]:
    """Bytes read from and written to block devices."""
    entries = (stats.get("blkio_stats") or {}).get("io_service_bytes_recursive")
    if entries is None:
        return NA, NA
    read = write = 0
    for entry in entries:
        op = str(entry.get("op") or "").lower()
        if op == "read":
            read += int(entry.get("value") or 0)
        elif op == "write":
            write += int(entry.get("value") or 0)
    return read, write


def cpu_counters(stats: dict[str, Any]) -> tuple[int, int, int] | None:
    """(container CPU time, host CPU time, online CPUs), or None if not reported."""
    cpu = stats.get("cpu_stats") or {}
    total = (cpu.get("cpu_usage") or {}).get("total_usage")
    system = cpu.get("system_cpu_usage")
    if total is None or system is None:
        return None
    online = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or ()) or 1
    return int(total), int(system), int(online)


def cpu_percent(current: tuple[int, int, int] | None, previous: tuple[int, int, int] | None) -> float | Sentinel:
    """CPU use between two readings, 100% per fully used core."""
    if current is None or previous is None:
        return NA
    cpu_delta = current[0] - previous[0]
    system_delta = current[1] - previous[1]
    if system_delta <= 0 or cpu_delta < 0:
        return NA
    return cpu_delta / system_delta * current[2] * 100.0


class ContainerSource(MetricSource):
    """
    All containers known to the engine, with live usage for running ones.

    Stats are read with one_shot. CPU and I/O rates are computed against the
    previous poll, so they are N/A the first time a container is seen.
    """

    name = "containers"
    fields = ("containers",)

    def __init__(
        self,
        engine: str = "docker",
        socket: Path | None = None,
        client_factory: Callable[[], Any] | None = None,
        timeout: float = 2.0,
    ) -> None:
        """
        Initialize the ContainerSource.

        Args:
            engine: "docker" or "podman".
            socket: Engine socket checked before connecting. Defaults to the
                engine's usual socket; ignored when DOCKER_HOST is set.
            client_factory: Builds the API client, replaceable in tests.
            timeout: Seconds allowed per API request.
        """
        self.engine = engine
        if socket is None:
            socket = podman_socket() if engine == "podman" else DOCKER_SOCKET
        self._socket = socket
        self._factory = client_factory or self._default_client
        self._timeout = timeout
        self._client: Any = None
        self._rates = RateTracker()

    def _default_client(self) -> Any:
        if os.environ.get("DOCKER_HOST"):
            return docker.from_env(timeout=self._timeout)
        return docker.DockerClient(base_url=f"unix://{self._socket}", timeout=self._timeout)

    def _connect(self) -> Any:
        if self._client is not None:
            return self._client
        if not os.environ.get("DOCKER_HOST") and not self._socket.exists():
            raise SourceUnavailable(f"{self.engine} socket {self._socket} not found")
        try:
            client = self._factory()
            client.ping()
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise SourceUnavailable(f"Cannot connect to {self.engine}: {e}") from e
        self._client = client
        return client

    def _disconnect(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except DockerException as e:
                logger.debug("Closing %s client: %s", self.engine, e)
        self._client = None

    def poll(self) -> Fragment:
        client = self._connect()
        try:
            containers = client.containers.list(all=True, sparse=True)
            elapsed = self._rates.elapsed()
            current: dict[str, dict[str, Any]] = {}
            entries = tuple(self._entry(c, current, elapsed) for c in containers)
        except requests.exceptions.ConnectionError as e:
            # Daemon went away; reconnect on a later tick
            self._disconnect()
            raise SourceUnavailable(f"Lost connection to {self.engine}: {e}") from e
        # Removed containers drop out here
        self._rates.replace(current)
        return {"containers": entries}

    def _stats(self, container: Any) -> dict[str, Any] | None:
        try:
            return container.stats(stream=False, one_shot=True)
        except NotFound:
            return None
        except DockerException as e:
            logger.debug("Stats for %s failed: %s", container.id[:12], e)
            return None

    def _entry(self, container: Any, current: dict[str, dict[str, Any]], elapsed: float) -> ContainerEntry:
        attrs = container.attrs
        cid = container.id[:12]
        names = attrs.get("Names") or []
        name = (names[0] if names else attrs.get("Name") or "").lstrip("/")
        state = str(attrs.get("State") or "unknown").lower()
        status = str(attrs.get("Status") or "")

        stats = self._stats(container) if state == "running" else None
        if stats is None:
            usage: dict[str, Any] = {}
        else:
            counters = {
                "cpu": cpu_counters(stats),
                "net": network_bytes(stats),
                "block": block_bytes(stats),
            }
            current[cid] = counters
            previous = self._rates.previous(cid) or {}
            prev_net = previous.get("net", (NA, NA))
            prev_block = previous.get("block", (NA, NA))
            used, percent = memory_usage(stats.get("memory_stats") or {})
            usage = {
                "cpu_percent": cpu_percent(counters["cpu"], previous.get("cpu")),
                "memory_usage": used,
                "memory_percent": percent,
                "net_rx_bytes": counters["net"][0],
                "net_tx_bytes": counters["net"][1],
                "block_read_bytes": counters["block"][0],
                "block_write_bytes": counters["block"][1],
                "net_rx_rate": _rate(counters["net"][0], prev_net[0], elapsed),
                "net_tx_rate": _rate(counters["net"][1], prev_net[1], elapsed),
                "block_read_rate": _rate(counters["block"][0], prev_block[0], elapsed),
                "block_write_rate": _rate(counters["block"][1], prev_block[1], elapsed),
            }

        return ContainerEntry(
            id=cid or str(NA),
            name=name or "unnamed",
            image=str(attrs.get("Image") or "unknown"),
            state=state,
            status=status,
            cpu_percent=usage.pop("cpu_percent", NA),
            memory_usage=usage.pop("memory_usage", NA),
            memory_percent=usage.pop("memory_percent", NA),
            health=parse_health(status),
            ports=format_ports(attrs.get("Ports")),
            **usage,
        )


def _rate(current: int | Sentinel, previous: int | Sentinel, elapsed: float) -> int | Sentinel:
    if current is NA or previous is NA or elapsed <= 0:
        return NA
    return calculate_rate(current, previous, elapsed)
