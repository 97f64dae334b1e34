"""Multi-vendor GPU telemetry for puls."""

import logging
import re
from pathlib import Path

from puls.commands import CommandRunner
from puls.errors import ExternalCommandFailed, SourceUnavailable
from puls.models import NA, GpuDevice, GpuVendor, Sentinel
from puls.sources import Fragment, MetricSource

logger = logging.getLogger(__name__)

DRM_ROOT = Path("/sys/class/drm")
MIB = 1024 * 1024

PCI_VENDOR_IDS = {
    "0x1002": GpuVendor.AMD,
    "0x8086": GpuVendor.INTEL,
}

NVIDIA_QUERY = (
    "index",
    "name",
    "utilization.gpu",
    "memory.used",
    "memory.total",
    "temperature.gpu",
    "power.draw",
    "clocks.gr",
    "clocks.mem",
    "fan.speed",
    "driver_version",
)

# nvidia-smi prints these when a field is not exposed by the board/driver
_NVIDIA_MISSING = {"", "N/A", "[N/A]", "[Not Supported]", "Not Supported", "[Unknown Error]"}

_CARD_RE = re.compile(r"^card(\d+)$")
_MHZ_RE = re.compile(r"(\d+(?:\.\d+)?)\s*mhz", re.IGNORECASE)


def _number(text: str) -> float | Sentinel:
    text = text.strip()
    if text in _NVIDIA_MISSING:
        return NA
    try:
        return float(text)
    except ValueError:
        return NA


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None


def _read_int(path: Path) -> int | None:
    text = _read_text(path)
    if text is None:
        return None
    try:
        return int(text)
    except ValueError:
        return None


class GpuAdapter:
    """Polls every device of one vendor. Raises SourceUnavailable if there are none."""

    vendor: GpuVendor

    def poll(self) -> list[GpuDevice]:
        raise NotImplementedError


class NvidiaAdapter(GpuAdapter):
    """Reads NVIDIA boards through the nvidia-smi CSV query interface."""

    vendor = GpuVendor.NVIDIA

    def __init__(self, runner: CommandRunner | None = None, timeout: float = 2.0) -> None:
        self._runner = runner or CommandRunner()
        self._timeout = timeout

    def poll(self) -> list[GpuDevice]:
        if not self._runner.available("nvidia-smi"):
            raise SourceUnavailable("nvidia-smi not available (no NVIDIA GPU or drivers)")
        result = self._runner.run(
            [
                "nvidia-smi",
                f"--query-gpu={','.join(NVIDIA_QUERY)}",
                "--format=csv,noheader,nounits",
            ],
            timeout=self._timeout,
        )
        if result.returncode != 0:
            text = (result.stderr or "") + (result.stdout or "")
            if "couldn't communicate with the NVIDIA driver" in text or "No devices were found" in text:
                raise SourceUnavailable("NVIDIA driver not loaded")
            raise ExternalCommandFailed(result.args, result.returncode, result.stderr or "")
        devices = self.parse(result.stdout)
        if not devices:
            raise SourceUnavailable("No NVIDIA GPUs found")
        return devices

    @staticmethod
    def parse(output: str) -> list[GpuDevice]:
        """Parse `nvidia-smi --query-gpu ... --format=csv,noheader,nounits` output."""
        devices = []
        for position, line in enumerate(ln for ln in output.splitlines() if ln.strip()):
            parts = [p.strip() for p in line.split(",")]
            parts += [""] * (len(NVIDIA_QUERY) - len(parts))
            index = int(parts[0]) if parts[0].isdigit() else position
            used = _number(parts[3])
            total = _number(parts[4])
            devices.append(
                GpuDevice(
                    vendor=GpuVendor.NVIDIA,
                    index=index,
                    name=parts[1] or f"NVIDIA GPU {index}",
                    utilization_percent=_number(parts[2]),
                    memory_used=NA if used is NA else int(used * MIB),
                    memory_total=NA if total is NA else int(total * MIB),
                    temperature_c=_number(parts[5]),
                    power_watts=_number(parts[6]),
                    graphics_clock_mhz=_number(parts[7]),
                    memory_clock_mhz=_number(parts[8]),
                    fan_percent=_number(parts[9]),
                    driver_version=NA if parts[10] in _NVIDIA_MISSING else parts[10],
                )
            )
        return devices


class _DrmAdapter(GpuAdapter):
    """Shared sysfs enumeration for DRM cards of one PCI vendor."""

    def __init__(self, root: Path = DRM_ROOT) -> None:
        self._root = Path(root)

    def _cards(self) -> list[tuple[str, Path]]:
        try:
            entries = list(self._root.iterdir())
        except OSError as exc:
            raise SourceUnavailable(f"{self._root} not readable") from exc
        cards = []
        for entry in entries:
            match = _CARD_RE.match(entry.name)
            if match is None:
                continue
            device = entry / "device"
            vendor = _read_text(device / "vendor")
            if vendor is not None and PCI_VENDOR_IDS.get(vendor.lower()) is self.vendor:
                cards.append((int(match.group(1)), entry.name, device))
        cards.sort()
        return [(name, device) for _, name, device in cards]

    def poll(self) -> list[GpuDevice]:
        cards = self._cards()
        if not cards:
            raise SourceUnavailable(f"No {self.vendor.value} GPUs found")
        return [self._read_device(index, name, device) for index, (name, device) in enumerate(cards)]

    def _read_device(self, index: int, card: str, device: Path) -> GpuDevice:
        raise NotImplementedError

    @staticmethod
    def _hwmon(device: Path, filename: str) -> int | None:
        try:
            hwmons = sorted((device / "hwmon").iterdir())
        except OSError:
            return None
        for hwmon in hwmons:
            value = _read_int(hwmon / filename)
            if value is not None:
                return value
        return None

    def _temperature(self, device: Path) -> float | Sentinel:
        millic = self._hwmon(device, "temp1_input")
        return NA if millic is None else millic / 1000.0

    def _power(self, device: Path) -> float | Sentinel:
        microw = self._hwmon(device, "power1_average")
        if microw is None:
            microw = self._hwmon(device, "power1_input")
        return NA if microw is None else microw / 1_000_000.0

    def _fan(self, device: Path) -> float | Sentinel:
        pwm = self._hwmon(device, "pwm1")
        if pwm is None:
            return NA
        top = self._hwmon(device, "pwm1_max") or 255
        return round(pwm * 100.0 / top, 1)

    @staticmethod
    def _driver_version(device: Path) -> str | Sentinel:
        return _read_text(device / "driver" / "module" / "version") or NA


def _dpm_clock(path: Path) -> float | Sentinel:
    """Current level of an amdgpu pp_dpm_* table ("1: 1800Mhz *")."""
    text = _read_text(path)
    if text is None:
        return NA
    for line in text.splitlines():
        if line.rstrip().endswith("*"):
            match = _MHZ_RE.search(line)
            if match:
                return float(match.group(1))
    return NA


class AmdAdapter(_DrmAdapter):
    """Reads amdgpu boards from sysfs."""

    vendor = GpuVendor.AMD

    def _read_device(self, index: int, card: str, device: Path) -> GpuDevice:
        busy = _read_int(device / "gpu_busy_percent")
        used = _read_int(device / "mem_info_vram_used")
        total = _read_int(device / "mem_info_vram_total")
        return GpuDevice(
            vendor=self.vendor,
            index=index,
            name=_read_text(device / "product_name") or f"AMD GPU ({card})",
            utilization_percent=NA if busy is None else float(busy),
            memory_used=NA if used is None else used,
            memory_total=NA if total is None else total,
            temperature_c=self._temperature(device),
            power_watts=self._power(device),
            graphics_clock_mhz=_dpm_clock(device / "pp_dpm_sclk"),
            memory_clock_mhz=_dpm_clock(device / "pp_dpm_mclk"),
            fan_percent=self._fan(device),
            driver_version=self._driver_version(device),
        )


class IntelAdapter(_DrmAdapter):
    """
    Reads Intel (i915/xe) GPUs from sysfs.

    The kernel exposes no busy percentage and integrated parts have no
    dedicated VRAM, so those fields are usually N/A.
    """

    vendor = GpuVendor.INTEL

    def _read_device(self, index: int, card: str, device: Path) -> GpuDevice:
        used = _read_int(device / "mem_info_vram_used")
        total = _read_int(device / "mem_info_vram_total")
        # i915 keeps the frequency on the card, xe under the first GT
        freq = _read_int(device.parent / "gt_cur_freq_mhz")
        if freq is None:
            freq = _read_int(device / "tile0" / "gt0" / "freq0" / "cur_freq")
        return GpuDevice(
            vendor=self.vendor,
            index=index,
            name=_read_text(device / "product_name") or f"Intel GPU ({card})",
            utilization_percent=NA,
            memory_used=NA if used is None else used,
            memory_total=NA if total is None else total,
            temperature_c=self._temperature(device),
            power_watts=self._power(device),
            graphics_clock_mhz=NA if freq is None else float(freq),
            fan_percent=self._fan(device),
            driver_version=self._driver_version(device),
        )


def default_adapters(runner: CommandRunner | None = None, drm_root: Path = DRM_ROOT) -> list[GpuAdapter]:
    """One adapter per supported vendor."""
    return [NvidiaAdapter(runner), AmdAdapter(drm_root), IntelAdapter(drm_root)]


class GpuSource(MetricSource):
    """
    Merges the devices of every vendor present on the host.

    Devices are enumerated afresh each tick, so hot-plugged boards show up
    without a restart.
    """

    name = "gpu"
    fields = ("gpus",)

    def __init__(self, adapters: list[GpuAdapter] | None = None) -> None:
        self._adapters = adapters if adapters is not None else default_adapters()

    def poll(self) -> Fragment:
        devices: list[GpuDevice] = []
        failures: list[Exception] = []
        for adapter in self._adapters:
            try:
                devices.extend(adapter.poll())
            except SourceUnavailable as e:
                logger.debug("%s GPUs unavailable: %s", adapter.vendor.value, e)
            except Exception as e:  # noqa: BLE001
                failures.append(e)
                logger.warning("%s GPU query failed: %s", adapter.vendor.value, e)

        if not devices:
            if failures:
                raise failures[0]
            raise SourceUnavailable("No supported GPUs found")
        return {"gpus": tuple(devices)}


def primary_utilization(gpus: tuple[GpuDevice, ...]) -> float | Sentinel:
    """Highest readable utilization across devices, or NA."""
    readings = [g.utilization_percent for g in gpus if g.utilization_percent is not NA]
    return max(readings) if readings else NA
