#!/usr/bin/env python3
"""
Bounded-duration benchmarks.

A benchmark runs a workload (dd/fio, glxgears, stress-ng) in a single worker
thread while the calling thread samples a metric at a fixed interval. Both
sides honour the runner's cancellation token, and any scratch files live in a
temporary directory that is removed on every exit path.
"""

import json
import logging
import re
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from .base import Collector, evidence
from .capabilities import CapabilityDetector, capability
from .errors import ParseError, ValidationError
from .models import CollectorResult, Severity, summarize
from .runner import CommandRunner
from .sources import SystemSources

logger = logging.getLogger("sysprobe.benchmark")

DEFAULT_DURATION = 30
DEFAULT_INTERVAL = 1.0
DEFAULT_PAYLOAD_MB = 1024
DEFAULT_GRACE = 5.0
FIO_MAX_SIZE_MB = 512
MBW_ARRAY_MB = 256
DRM_BUSY_GLOB = "/sys/class/drm/card[0-9]*/device/gpu_busy_percent"

# dd prints throughput with SI units
THROUGHPUT_UNITS = {"B": 1e-6, "kB": 1e-3, "KB": 1e-3, "MB": 1.0, "GB": 1e3, "TB": 1e6}


class BenchmarkKind(str, Enum):
    STORAGE = "storage"
    GRAPHICS = "graphics"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: Union[str, "BenchmarkKind"]) -> "BenchmarkKind":
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(k.value for k in cls)
            raise ValidationError(f"Unknown benchmark type {value!r}. Available types: {choices}")


# Tools that make a benchmark worth running; system load sampling needs none
KIND_REQUIRES = {
    BenchmarkKind.STORAGE: ("dd", "fio"),
    BenchmarkKind.GRAPHICS: ("glxgears", "nvidia-smi", "drm-sysfs", "vulkaninfo", "vblank_test",
                             "unigine-heaven"),
    BenchmarkKind.SYSTEM: (),
}


def validate_parameters(kind: Union[str, BenchmarkKind], duration: float,
                        interval: float) -> BenchmarkKind:
    """Check benchmark parameters before anything is executed."""
    kind = BenchmarkKind.parse(kind)
    if duration is None or duration <= 0:
        raise ValidationError(f"Benchmark duration must be positive, got {duration!r}")
    if interval is None or interval <= 0:
        raise ValidationError(f"Sampling interval must be positive, got {interval!r}")
    if interval > duration:
        raise ValidationError(f"Sampling interval {interval}s is longer than the duration {duration}s")
    return kind


def parse_throughput(text: str) -> Optional[float]:
    """Last 'N xB/s' figure in dd output, in MB/s."""
    matches = re.findall(r"([\d.]+) ([kKMGT]?B)/s", text)
    if not matches:
        return None
    value, unit = matches[-1]
    return round(float(value) * THROUGHPUT_UNITS[unit], 2)


def describe(metric: str, values: List[float]) -> str:
    stats = summarize(values)
    return (f"{metric}: min {stats['min']:g}, max {stats['max']:g}, mean {stats['mean']:g} "
            f"over {stats['count']} sample(s)")


class BenchmarkCollector(Collector):
    """One benchmark run of a given kind, duration and sampling interval."""

    def __init__(self, kind: Union[str, BenchmarkKind], duration: float = DEFAULT_DURATION,
                 interval: float = DEFAULT_INTERVAL, sources: Optional[SystemSources] = None,
                 payload_mb: int = DEFAULT_PAYLOAD_MB, grace: float = DEFAULT_GRACE,
                 directory: Optional[str] = None, wait: Optional[Callable[[float], bool]] = None):
        self.kind = validate_parameters(kind, duration, interval)
        super().__init__(f"benchmark_{self.kind.value}", f"{self.kind.value.title()} Benchmark", sources)
        self.duration = duration
        self.interval = interval
        self.payload_mb = payload_mb
        self.grace = grace
        self.directory = directory
        self.workdir: Optional[str] = None
        self._wait = wait
        self.subsections = {
            BenchmarkKind.STORAGE: {"sequential_write": True, "sequential_read": True, "fio": True,
                                    "io_sampling": True},
            BenchmarkKind.GRAPHICS: {"glxgears": True, "gpu_sampling": True, "vulkan": True,
                                     "vblank": True, "unigine_heaven": True},
            BenchmarkKind.SYSTEM: {"stress_ng": True, "load_sampling": True, "memory_bandwidth": True},
        }[self.kind]

    def required_capabilities(self):
        return {capability(name) for name in KIND_REQUIRES[self.kind]}

    @property
    def command_timeout(self) -> float:
        return self.duration + self.grace

    def collect(self, result: CollectorResult):
        logger.info("Running %s benchmark for %ss, sampling every %ss", self.kind.value, self.duration,
                    self.interval)
        handler = {
            BenchmarkKind.STORAGE: self._storage,
            BenchmarkKind.GRAPHICS: self._graphics,
            BenchmarkKind.SYSTEM: self._system,
        }[self.kind]
        handler(result)
        if self._runner.token.cancelled:
            result.warning("Benchmark cancelled before completion", check="benchmark")

    # -- sampling --------------------------------------------------------

    def wait(self, seconds: float) -> bool:
        """Sleep between samples; True means the run was cancelled."""
        if self._wait is not None:
            return self._wait(seconds) or self._runner.token.cancelled
        return self._runner.token.wait(seconds)

    def sample_loop(self, result: CollectorResult, metric: str, read_value: Callable[[], Optional[float]],
                    until: Optional[Future] = None) -> List[float]:
        """
        Record one sample of metric per interval for the configured duration.

        Args:
            result: Result that receives the BenchmarkSamples
            metric: Metric name stored with every sample
            read_value: Returns the current value, or None to skip this tick
            until: Stop early once this workload future has finished

        Returns:
            The sampled values
        """
        ticks = int(self.duration / self.interval + 1e-9)
        values = []
        for tick in range(ticks):
            if self._runner.token.cancelled:
                break
            value = read_value()
            if value is not None:
                result.sample(tick * self.interval, metric, value)
                values.append(value)
            if until is not None and until.done():
                break
            if self.wait(self.interval):
                break
        return values

    def _background(self, pool: ThreadPoolExecutor, result: CollectorResult,
                    steps: List[tuple]) -> Future:
        """Run (name, func, requires) sub-checks sequentially in the worker thread."""
        def work():
            for name, func, requires in steps:
                self.check(result, name, func, requires=requires)
        return pool.submit(work)

    # -- storage ---------------------------------------------------------

    def _storage(self, result: CollectorResult):
        with tempfile.TemporaryDirectory(prefix="sysprobe-bench-", dir=self.directory) as workdir:
            self.workdir = workdir
            test_file = f"{workdir}/test_file"
            steps = [
                ("sequential_write", lambda r: self._dd_write(r, test_file), ("dd",)),
                ("sequential_read", lambda r: self._dd_read(r, test_file), ("dd",)),
                ("fio", lambda r: self._fio(r, workdir), ("fio",)),
            ]
            with ThreadPoolExecutor(max_workers=1) as pool:
                workload = self._background(pool, result, steps)
                values: List[float] = []
                self.check(result, "io_sampling",
                           lambda r: values.extend(self._io_sampling(r, workload)))
                workload.result()
            if values:
                result.info(describe("disk_io_mib_per_s", values), check="io_sampling",
                            metrics=summarize(values))

    def _dd_write(self, result: CollectorResult, test_file: str):
        res = self.execute(["dd", "if=/dev/zero", f"of={test_file}", "bs=1M", f"count={self.payload_mb}",
                            "conv=fdatasync"], timeout=self.command_timeout)
        self._dd_report(result, res, "sequential_write", "Sequential write")

    def _dd_read(self, result: CollectorResult, test_file: str):
        res = self.execute(["dd", f"if={test_file}", "of=/dev/null", "bs=1M"], timeout=self.command_timeout)
        self._dd_report(result, res, "sequential_read", "Sequential read")

    def _dd_report(self, result: CollectorResult, res, check: str, label: str):
        if res.exit_code != 0:
            result.warning(f"{label} failed (dd exit {res.exit_code})",
                           evidence=evidence(res.stderr.splitlines()), check=check)
            return
        speed = parse_throughput(res.stderr + "\n" + res.output)
        if speed is None:
            raise ParseError(f"dd reported no {label.lower()} throughput", evidence(res.stderr.splitlines()))
        result.info(f"{label} speed {speed:g} MB/s ({self.payload_mb} MiB payload)", check=check,
                    metrics={"mb_per_s": speed})

    def _fio(self, result: CollectorResult, workdir: str):
        size = min(FIO_MAX_SIZE_MB, self.payload_mb)
        res = self.execute([
            "fio", "--name=random-rw", f"--directory={workdir}", f"--size={size}m", "--time_based",
            f"--runtime={max(1, int(self.duration))}", "--ioengine=libaio", "--direct=1", "--verify=0",
            "--bs=4k", "--iodepth=64", "--rw=randrw", "--rwmixread=75", "--group_reporting",
            "--output-format=json",
        ], timeout=self.command_timeout)
        if res.exit_code != 0:
            result.warning(f"fio random read/write failed (exit {res.exit_code})",
                           evidence=evidence(res.stderr.splitlines()), check="fio")
            return
        text = res.output
        try:
            job = json.loads(text[text.index("{"):])["jobs"][0]
            metrics = {
                "read_kib_per_s": float(job["read"]["bw"]),
                "read_iops": round(float(job["read"]["iops"]), 1),
                "write_kib_per_s": float(job["write"]["bw"]),
                "write_iops": round(float(job["write"]["iops"]), 1),
            }
        except (ValueError, KeyError, IndexError, TypeError):
            raise ParseError("fio output could not be parsed", evidence(res.stdout))
        result.info(f"Random 4k read/write: read {metrics['read_iops']:g} IOPS "
                    f"({metrics['read_kib_per_s'] / 1024:.1f} MiB/s), write {metrics['write_iops']:g} IOPS "
                    f"({metrics['write_kib_per_s'] / 1024:.1f} MiB/s)", check="fio", metrics=metrics)

    def _io_sampling(self, result: CollectorResult, workload: Future) -> List[float]:
        baseline = self.sources.disk_io_bytes()
        if baseline is None:
            result.skip("io_sampling: disk I/O counters not available")
            return []
        state = {"last": sum(baseline)}

        def read_value():
            counters = self.sources.disk_io_bytes()
            if counters is None:
                return None
            total = sum(counters)
            delta, state["last"] = total - state["last"], total
            return round(delta / 1048576 / self.interval, 2)

        return self.sample_loop(result, "disk_io_mib_per_s", read_value, until=workload)

    # -- graphics --------------------------------------------------------

    def _graphics(self, result: CollectorResult):
        with ThreadPoolExecutor(max_workers=1) as pool:
            workload = self._background(pool, result, [("glxgears", self._glxgears, ("glxgears",))])
            self.check(result, "gpu_sampling", self._gpu_sampling, any_of=("nvidia-smi", "drm-sysfs"))
            workload.result()
        self.check(result, "vulkan", self._vulkan, requires=("vulkaninfo",))
        self.check(result, "vblank", self._vblank, requires=("vblank_test",))
        self.check(result, "unigine_heaven", self._unigine_heaven, requires=("unigine-heaven",))

    def _glxgears(self, result: CollectorResult):
        res = self.execute(["glxgears", "-info"], timeout=self.duration, allow_timeout=True)
        fps = [float(m.group(1)) for m in
               (re.search(r"frames in [\d.]+ seconds = ([\d.]+) FPS", line) for line in res.stdout) if m]
        if not fps:
            raise ParseError("glxgears reported no frame rate", evidence(res.stdout + res.stderr.splitlines()))
        result.info(f"glxgears {describe('fps', fps)}", check="glxgears", metrics=summarize(fps))

    def _gpu_sampling(self, result: CollectorResult):
        if self.has("nvidia-smi"):
            def read_value():
                res = self.execute(["nvidia-smi", "--query-gpu=utilization.gpu",
                                    "--format=csv,noheader,nounits"], timeout=self.interval + self.grace)
                try:
                    return float(res.stdout[0].strip())
                except (IndexError, ValueError):
                    return None
            source = "nvidia-smi"
        else:
            paths = self.sources.glob(DRM_BUSY_GLOB)
            if not paths:
                result.skip("gpu_sampling: no DRM device exposes gpu_busy_percent")
                return

            def read_value():
                try:
                    return float((self.sources.read_text(paths[0]) or "").strip())
                except ValueError:
                    return None
            source = paths[0].split("/")[4]

        values = self.sample_loop(result, "gpu_utilization_percent", read_value)
        if not values:
            raise ParseError(f"no GPU utilisation samples could be read from {source}")
        result.info(f"GPU utilisation via {source} {describe('percent', values)}", check="gpu_sampling",
                    metrics=summarize(values))

    def _vulkan(self, result: CollectorResult):
        res = self.execute(["vulkaninfo", "--summary"])
        devices = [line.split("=", 1)[1].strip() for line in res.stdout if "deviceName" in line and "=" in line]
        if res.exit_code != 0 or not devices:
            result.warning("Vulkan is not usable", evidence=evidence(res.stdout + res.stderr.splitlines(), 15),
                           check="vulkan")
        else:
            result.info(f"Vulkan devices: {', '.join(devices)}", check="vulkan")

    def _vblank(self, result: CollectorResult):
        res = self.execute(["vblank_test"], timeout=self.command_timeout, allow_timeout=True)
        severity = Severity.INFO if res.exit_code == 0 or res.timed_out else Severity.WARNING
        result.add(severity, f"VBlank synchronisation test exited {res.exit_code}",
                   evidence=evidence(res.stdout, 15), check="vblank")

    def _unigine_heaven(self, result: CollectorResult):
        res = self.execute(["unigine-heaven", "--benchmark"], timeout=self.command_timeout, allow_timeout=True)
        fps = re.search(r"FPS:\s*([\d.]+)", res.output)
        if not fps:
            raise ParseError("Unigine Heaven reported no FPS", evidence(res.stdout))
        result.info(f"Unigine Heaven {fps.group(1)} FPS", check="unigine_heaven",
                    metrics={"fps": float(fps.group(1))})

    # -- system ----------------------------------------------------------

    def _system(self, result: CollectorResult):
        with ThreadPoolExecutor(max_workers=1) as pool:
            workload = self._background(pool, result, [("stress_ng", self._stress_ng, ("stress-ng",))])
            self.check(result, "load_sampling", self._load_sampling)
            workload.result()
        self.check(result, "memory_bandwidth", self._memory_bandwidth, requires=("mbw",))

    def _stress_ng(self, result: CollectorResult):
        workers = self.sources.cpu_count()
        res = self.execute(["stress-ng", "--cpu", str(workers), "--timeout", f"{max(1, int(self.duration))}s",
                            "--metrics-brief"], timeout=self.command_timeout)
        lines = res.stdout + res.stderr.splitlines()
        rate = None
        for line in lines:
            match = re.search(r"\]\s+cpu\s+(\d+)\s+([\d.]+)\s+([\d.]+)\s+([\d.]+)\s+([\d.]+)", line)
            if match:
                rate = float(match.group(5))
        if res.exit_code != 0:
            result.warning(f"stress-ng exited {res.exit_code}", evidence=evidence(lines, 15), check="stress_ng")
            return
        if rate is None:
            raise ParseError("stress-ng reported no cpu metrics", evidence(lines, 15))
        result.info(f"CPU stress with {workers} worker(s): {rate:g} bogo ops/s", check="stress_ng",
                    metrics={"bogo_ops_per_s": rate, "workers": workers})

    def _load_sampling(self, result: CollectorResult):
        memory: List[float] = []
        # First cpu_percent() call only primes psutil's counter
        self.sources.cpu_percent()

        def read_value():
            memory.append(self.sources.memory_percent())
            return self.sources.cpu_percent()

        values = self.sample_loop(result, "cpu_percent", read_value)
        if not values:
            return
        result.info(describe("cpu_percent", values), check="load_sampling", metrics=summarize(values))
        result.info(describe("memory_percent", memory), check="load_sampling", metrics=summarize(memory))

    def _memory_bandwidth(self, result: CollectorResult):
        res = self.execute(["mbw", "-q", "-n", "3", str(MBW_ARRAY_MB)], timeout=self.command_timeout)
        rates: Dict[str, float] = {}
        for line in res.stdout:
            match = re.search(r"^AVG\s+Method:\s+(\S+).*Copy:\s+([\d.]+) MiB/s", line)
            if match:
                rates[f"{match.group(1).lower()}_mib_per_s"] = float(match.group(2))
        if not rates:
            raise ParseError("mbw reported no averages", evidence(res.stdout))
        summary = ", ".join(f"{k.split('_')[0]} {v:g} MiB/s" for k, v in rates.items())
        result.info(f"Memory bandwidth: {summary}", check="memory_bandwidth", metrics=rates)


class BenchmarkRunner:
    """Runs a benchmark of a given kind against a runner and detector."""

    def __init__(self, runner: CommandRunner, detector: CapabilityDetector,
                 sources: Optional[SystemSources] = None, payload_mb: int = DEFAULT_PAYLOAD_MB,
                 grace: float = DEFAULT_GRACE, directory: Optional[str] = None,
                 wait: Optional[Callable[[float], bool]] = None):
        self.runner = runner
        self.detector = detector
        self.sources = sources or detector.sources
        self.payload_mb = payload_mb
        self.grace = grace
        self.directory = directory
        self.wait = wait
        self.last_collector: Optional[BenchmarkCollector] = None

    def collector(self, kind: Union[str, BenchmarkKind], duration: float = DEFAULT_DURATION,
                  sampling_interval: float = DEFAULT_INTERVAL) -> BenchmarkCollector:
        return BenchmarkCollector(kind, duration, sampling_interval, sources=self.sources,
                                  payload_mb=self.payload_mb, grace=self.grace, directory=self.directory,
                                  wait=self.wait)

    def run(self, kind: Union[str, BenchmarkKind], duration: float = DEFAULT_DURATION,
            sampling_interval: float = DEFAULT_INTERVAL) -> CollectorResult:
        collector = self.collector(kind, duration, sampling_interval)
        self.last_collector = collector
        return collector.run(self.runner, self.detector)
