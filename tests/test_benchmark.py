"""Benchmarks: parameter validation, sampling cadence, parsing and cancellation."""

import json
import os
import threading
import time

import pytest
from conftest import FakeRunner, FakeSources, result

from sysprobe.modules.benchmark import (BenchmarkCollector, BenchmarkKind, BenchmarkRunner,
                                        parse_throughput, validate_parameters)
from sysprobe.modules.capabilities import CapabilityDetector
from sysprobe.modules.errors import ValidationError
from sysprobe.modules.models import Severity

DD_WRITE = "1024+0 records in\n1024+0 records out\n1073741824 bytes (1.1 GB, 1.0 GiB) copied, 2.5 s, 429 MB/s"
DD_READ = "1073741824 bytes (1.1 GB, 1.0 GiB) copied, 0.5 s, 2.1 GB/s"

FIO_JSON = json.dumps({"fio version": "fio-3.33", "jobs": [{
    "jobname": "random-rw",
    "read": {"bw": 102400, "iops": 25600.0},
    "write": {"bw": 34133, "iops": 8533.3},
}]})

STRESS_NG = """stress-ng: info:  [4242] dispatching hogs: 4 cpu
stress-ng: info:  [4242] stressor       bogo ops real time  usr time  sys time   bogo ops/s
stress-ng: info:  [4242]                           (secs)    (secs)    (secs)   (real time)
stress-ng: info:  [4242] cpu                4000     10.00     39.80      0.02       400.00
stress-ng: info:  [4242] successful run completed in 10.00s"""


def no_wait(seconds):
    return False


def bench(runner, sources, kind, duration=2, interval=1, **kwargs):
    benchmarks = BenchmarkRunner(runner, CapabilityDetector(sources), sources=sources, wait=no_wait, **kwargs)
    return benchmarks, benchmarks.run(kind, duration, interval)


def test_system_benchmark_samples_once_per_interval() -> None:
    sources = FakeSources(cpu_percents=[0.0, 12.5, 37.5])
    runner = FakeRunner()

    _, res = bench(runner, sources, "system", duration=2, interval=1)

    samples = res.samples_for("cpu_percent")
    assert [s.offset for s in samples] == [0.0, 1.0]
    assert [s.value for s in samples] == [12.5, 37.5]
    summary = [f for f in res.findings if f.check == "load_sampling"]
    assert summary[0].metrics == {"min": 12.5, "max": 37.5, "mean": 25.0, "count": 2}
    assert summary[1].message.startswith("memory_percent: min 40")
    assert res.collector == "benchmark_system"
    assert runner.calls == []


def test_unknown_kind_is_rejected_before_anything_runs() -> None:
    runner = FakeRunner()

    with pytest.raises(ValidationError) as excinfo:
        BenchmarkRunner(runner, CapabilityDetector(FakeSources())).run("bogus", 10, 1)

    assert "Unknown benchmark type 'bogus'" in str(excinfo.value)
    assert runner.calls == []


@pytest.mark.parametrize("duration, interval", [(-5, 1), (0, 1), (10, 0), (2, 5)])
def test_invalid_duration_or_interval(duration, interval) -> None:
    with pytest.raises(ValidationError):
        validate_parameters("system", duration, interval)


def test_storage_benchmark_reports_dd_throughput(tmp_path) -> None:
    sources = FakeSources(executables=["dd"], disk_io=[(0, 0), (0, 0), (10485760, 0)])
    runner = FakeRunner().add("dd if=/dev/zero", stderr=DD_WRITE).add("dd", stderr=DD_READ)

    benchmarks, res = bench(runner, sources, "storage", payload_mb=64, directory=str(tmp_path))

    by_check = {f.check: f for f in res.findings}
    assert by_check["sequential_write"].metrics == {"mb_per_s": 429.0}
    assert by_check["sequential_read"].metrics == {"mb_per_s": 2100.0}
    write, read = runner.calls
    assert "count=64" in write and "conv=fdatasync" in write
    assert read[1] == f"if={benchmarks.last_collector.workdir}/test_file"
    assert "fio: fio not available" in res.skipped
    assert not os.path.exists(benchmarks.last_collector.workdir)


def test_storage_benchmark_cleans_up_when_cancelled(tmp_path) -> None:
    runner = FakeRunner()

    def cancel_mid_write(argv):
        runner.token.cancel()
        return result(argv, cancelled=True)

    runner.respond("dd", cancel_mid_write)
    sources = FakeSources(executables=["dd"])

    benchmarks, res = bench(runner, sources, "storage", directory=str(tmp_path))

    assert not os.path.exists(benchmarks.last_collector.workdir)
    assert os.listdir(tmp_path) == []
    assert "sequential_write: run cancelled" in res.skipped
    assert "sequential_read: run cancelled" in res.skipped
    (warning,) = [f for f in res.findings if f.severity == Severity.WARNING]
    assert warning.message == "Benchmark cancelled before completion"
    assert len(runner.calls) == 1


def test_fio_json_is_parsed(tmp_path) -> None:
    sources = FakeSources(executables=["fio"])
    runner = FakeRunner().add("fio", FIO_JSON)

    _, res = bench(runner, sources, "storage", directory=str(tmp_path))

    (fio,) = [f for f in res.findings if f.check == "fio"]
    assert fio.metrics == {"read_kib_per_s": 102400.0, "read_iops": 25600.0,
                           "write_kib_per_s": 34133.0, "write_iops": 8533.3}
    assert fio.message.startswith("Random 4k read/write: read 25600 IOPS (100.0 MiB/s)")
    assert "--output-format=json" in runner.calls[0]


def test_stress_ng_bogo_ops() -> None:
    sources = FakeSources(executables=["stress-ng"], cpu_count=4)
    runner = FakeRunner().add("stress-ng", STRESS_NG)

    _, res = bench(runner, sources, "system", duration=10, interval=5)

    (stress,) = [f for f in res.findings if f.check == "stress_ng"]
    assert stress.metrics == {"bogo_ops_per_s": 400.0, "workers": 4}
    assert runner.commands() == ["stress-ng --cpu 4 --timeout 10s --metrics-brief"]


def test_cancellation_interrupts_sampling_promptly() -> None:
    runner = FakeRunner()
    sources = FakeSources()
    benchmarks = BenchmarkRunner(runner, CapabilityDetector(sources), sources=sources)
    timer = threading.Timer(0.2, runner.token.cancel)

    start = time.monotonic()
    timer.start()
    try:
        res = benchmarks.run(BenchmarkKind.SYSTEM, duration=30, sampling_interval=10)
    finally:
        timer.cancel()

    assert time.monotonic() - start < 5
    assert len(res.samples_for("cpu_percent")) == 1
    assert any(f.message == "Benchmark cancelled before completion" for f in res.findings)


def test_graphics_benchmark_without_tools_is_skipped() -> None:
    runner = FakeRunner()
    sources = FakeSources()

    res = BenchmarkCollector("graphics", 5, 1, sources=sources).run(runner, CapabilityDetector(sources))

    assert res.findings == []
    assert "glxgears not available" in res.skipped
    assert runner.calls == []


def test_throughput_units() -> None:
    assert parse_throughput("copied, 2.5 s, 429 MB/s") == 429.0
    assert parse_throughput("copied, 0.9 s, 1.2 GB/s") == 1200.0
    assert parse_throughput("copied, 9 s, 950 kB/s") == 0.95
    assert parse_throughput("no figures here") is None


def test_gpu_utilisation_sampled_from_drm_sysfs() -> None:
    sources = FakeSources(paths=["/sys/class/drm"],
                          files={"/sys/class/drm/card0/device/gpu_busy_percent": "42\n"})
    runner = FakeRunner()

    _, res = bench(runner, sources, "graphics", duration=3, interval=1)

    samples = res.samples_for("gpu_utilization_percent")
    assert [(s.offset, s.value) for s in samples] == [(0.0, 42.0), (1.0, 42.0), (2.0, 42.0)]
    (gpu,) = [f for f in res.findings if f.check == "gpu_sampling"]
    assert gpu.message.startswith("GPU utilisation via card0")
    assert gpu.metrics["count"] == 3
    assert runner.calls == []


def test_gpu_utilisation_sampled_from_nvidia_smi() -> None:
    sources = FakeSources(executables=["nvidia-smi"])
    runner = FakeRunner().add("nvidia-smi --query-gpu=utilization.gpu", "55\n")

    _, res = bench(runner, sources, "graphics", duration=3, interval=1)

    assert [s.value for s in res.samples_for("gpu_utilization_percent")] == [55.0, 55.0, 55.0]
    assert runner.commands() == ["nvidia-smi --query-gpu=utilization.gpu --format=csv,noheader,nounits"] * 3
    (gpu,) = [f for f in res.findings if f.check == "gpu_sampling"]
    assert gpu.metrics == {"min": 55.0, "max": 55.0, "mean": 55.0, "count": 3}


def test_glxgears_frame_rates() -> None:
    sources = FakeSources(executables=["glxgears"])
    runner = FakeRunner().add("glxgears -info", (
        "GL_RENDERER   = Mesa Intel(R) UHD Graphics 620\n"
        "300 frames in 5.0 seconds = 59.940 FPS\n"
        "301 frames in 5.0 seconds = 60.120 FPS\n"), timed_out=True)

    _, res = bench(runner, sources, "graphics", duration=10, interval=5)

    (gears,) = [f for f in res.findings if f.check == "glxgears"]
    assert gears.severity == Severity.INFO
    assert gears.metrics == {"min": 59.94, "max": 60.12, "mean": 60.03, "count": 2}
    assert "gpu_sampling: none of nvidia-smi, drm-sysfs available" in res.skipped
