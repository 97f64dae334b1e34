"""Tests for the GPU adapters."""

import pytest

from conftest import FakeRunner

from puls.errors import ExternalCommandFailed, SourceUnavailable
from puls.gpu import AmdAdapter, GpuSource, IntelAdapter, NvidiaAdapter, primary_utilization
from puls.models import NA, GpuVendor

NVIDIA_OUTPUT = """\
0, NVIDIA GeForce RTX 3080, 37, 2048, 10240, 61, 215.50, 1905, 9501, 45, 550.54.14
1, Tesla T4, [N/A], 15, 15360, 40, [Not Supported], 300, 5000, [N/A], 550.54.14
"""


def make_card(root, number, vendor, files=None, hwmon=None):
    device = root / f"card{number}" / "device"
    device.mkdir(parents=True)
    (device / "vendor").write_text(vendor + "\n")
    for name, value in (files or {}).items():
        (device / name).write_text(f"{value}\n")
    if hwmon:
        mon = device / "hwmon" / "hwmon0"
        mon.mkdir(parents=True)
        for name, value in hwmon.items():
            (mon / name).write_text(f"{value}\n")
    return device


class TestNvidia:
    """Tests for the nvidia-smi adapter."""

    def test_parse(self):
        first, second = NvidiaAdapter.parse(NVIDIA_OUTPUT)

        assert first.vendor is GpuVendor.NVIDIA
        assert first.name == "NVIDIA GeForce RTX 3080"
        assert first.utilization_percent == 37.0
        assert first.memory_used == 2048 * 1024 * 1024
        assert first.temperature_c == 61.0
        assert first.power_watts == 215.5
        assert first.graphics_clock_mhz == 1905.0
        assert first.memory_clock_mhz == 9501.0
        assert first.fan_percent == 45.0
        assert first.driver_version == "550.54.14"

        assert second.index == 1
        assert second.utilization_percent is NA
        assert second.power_watts is NA
        assert second.fan_percent is NA
        assert second.memory_total == 15360 * 1024 * 1024

    def test_missing_binary_is_unavailable(self):
        with pytest.raises(SourceUnavailable):
            NvidiaAdapter(FakeRunner()).poll()

    def test_driver_not_loaded_is_unavailable(self):
        runner = FakeRunner()
        runner.add(
            ["nvidia-smi"],
            stdout="NVIDIA-SMI has failed because it couldn't communicate with the NVIDIA driver.",
            returncode=9,
        )
        with pytest.raises(SourceUnavailable):
            NvidiaAdapter(runner).poll()

    def test_other_failures_are_errors(self):
        runner = FakeRunner()
        runner.add(["nvidia-smi"], stderr="Unknown Error", returncode=15)
        with pytest.raises(ExternalCommandFailed) as info:
            NvidiaAdapter(runner).poll()
        assert info.value.returncode == 15

    def test_poll(self):
        runner = FakeRunner()
        runner.add(["nvidia-smi"], stdout=NVIDIA_OUTPUT)
        devices = NvidiaAdapter(runner).poll()
        assert len(devices) == 2
        assert runner.calls[0][1].startswith("--query-gpu=index,name,utilization.gpu")


class TestSysfs:
    """Tests for the AMD and Intel sysfs adapters."""

    def test_amd_card(self, tmp_path):
        make_card(
            tmp_path,
            0,
            "0x1002",
            {"gpu_busy_percent": 12, "mem_info_vram_used": 1000, "mem_info_vram_total": 8000, "product_name": "Radeon"},
            {"temp1_input": 47000, "power1_average": 35000000},
        )
        (device,) = AmdAdapter(tmp_path).poll()

        assert device.name == "Radeon"
        assert device.utilization_percent == 12.0
        assert device.memory_used == 1000
        assert device.temperature_c == 47.0
        assert device.power_watts == 35.0

    def test_amd_clocks_fan_and_driver(self, tmp_path):
        device = make_card(
            tmp_path,
            0,
            "0x1002",
            {
                "pp_dpm_sclk": "0: 500Mhz\n1: 1800Mhz *\n2: 2400Mhz",
                "pp_dpm_mclk": "0: 96Mhz *\n1: 1000Mhz",
            },
            {"pwm1": 128, "pwm1_max": 255},
        )
        module = device / "driver" / "module"
        module.mkdir(parents=True)
        (module / "version").write_text("6.8.0\n")

        (gpu,) = AmdAdapter(tmp_path).poll()

        assert gpu.graphics_clock_mhz == 1800.0
        assert gpu.memory_clock_mhz == 96.0
        assert gpu.fan_percent == 50.2
        assert gpu.driver_version == "6.8.0"

    def test_amd_missing_files_are_na(self, tmp_path):
        make_card(tmp_path, 1, "0x1002")
        (device,) = AmdAdapter(tmp_path).poll()
        assert device.name == "AMD GPU (card1)"
        assert device.utilization_percent is NA
        assert device.temperature_c is NA
        assert device.graphics_clock_mhz is NA
        assert device.fan_percent is NA
        assert device.driver_version is NA

    def test_intel_frequency(self, tmp_path):
        device = make_card(tmp_path, 0, "0x8086")
        (device.parent / "gt_cur_freq_mhz").write_text("1300\n")
        (gpu,) = IntelAdapter(tmp_path).poll()
        assert gpu.graphics_clock_mhz == 1300.0
        assert gpu.memory_clock_mhz is NA

    def test_xe_frequency(self, tmp_path):
        device = make_card(tmp_path, 0, "0x8086")
        freq = device / "tile0" / "gt0" / "freq0"
        freq.mkdir(parents=True)
        (freq / "cur_freq").write_text("900\n")
        (gpu,) = IntelAdapter(tmp_path).poll()
        assert gpu.graphics_clock_mhz == 900.0

    def test_intel_has_no_utilization(self, tmp_path):
        make_card(tmp_path, 0, "0x8086", hwmon={"temp1_input": 50500})
        (device,) = IntelAdapter(tmp_path).poll()
        assert device.vendor is GpuVendor.INTEL
        assert device.utilization_percent is NA
        assert device.temperature_c == 50.5

    def test_vendor_filtering_and_order(self, tmp_path):
        make_card(tmp_path, 10, "0x1002")
        make_card(tmp_path, 2, "0x1002")
        make_card(tmp_path, 1, "0x8086")
        (tmp_path / "card2-DP-1").mkdir()

        amd = AmdAdapter(tmp_path).poll()
        assert [d.name for d in amd] == ["AMD GPU (card2)", "AMD GPU (card10)"]
        assert [d.index for d in amd] == [0, 1]

    def test_no_cards_is_unavailable(self, tmp_path):
        with pytest.raises(SourceUnavailable):
            AmdAdapter(tmp_path).poll()
        with pytest.raises(SourceUnavailable):
            IntelAdapter(tmp_path / "missing").poll()


class TestGpuSource:
    """Devices from every vendor are merged into one list."""

    def test_merges_vendors(self, tmp_path):
        make_card(tmp_path, 0, "0x1002", {"gpu_busy_percent": 90})
        make_card(tmp_path, 1, "0x8086")
        runner = FakeRunner()
        runner.add(["nvidia-smi"], stdout=NVIDIA_OUTPUT)

        source = GpuSource([NvidiaAdapter(runner), AmdAdapter(tmp_path), IntelAdapter(tmp_path)])
        gpus = source.poll()["gpus"]

        assert [g.vendor for g in gpus] == [GpuVendor.NVIDIA, GpuVendor.NVIDIA, GpuVendor.AMD, GpuVendor.INTEL]
        assert primary_utilization(gpus) == 90.0

    def test_nothing_found_is_unavailable(self, tmp_path):
        source = GpuSource([NvidiaAdapter(FakeRunner()), AmdAdapter(tmp_path)])
        with pytest.raises(SourceUnavailable):
            source.poll()

    def test_failure_with_no_devices_propagates(self, tmp_path):
        runner = FakeRunner()
        runner.add(["nvidia-smi"], stderr="bad", returncode=3)
        with pytest.raises(ExternalCommandFailed):
            GpuSource([NvidiaAdapter(runner), AmdAdapter(tmp_path)]).poll()

    def test_partial_failure_keeps_other_vendors(self, tmp_path):
        make_card(tmp_path, 0, "0x1002")
        runner = FakeRunner()
        runner.add(["nvidia-smi"], stderr="bad", returncode=3)
        gpus = GpuSource([NvidiaAdapter(runner), AmdAdapter(tmp_path)]).poll()["gpus"]
        assert [g.vendor for g in gpus] == [GpuVendor.AMD]

    def test_primary_utilization_without_readings(self):
        gpus = NvidiaAdapter.parse("0, T4, [N/A], 1, 2, 3, 4\n")
        assert primary_utilization(tuple(gpus)) is NA
