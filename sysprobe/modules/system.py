#!/usr/bin/env python3
"""
System related diagnostic collectors.
"""

import re
from typing import Optional

from .base import Collector, evidence
from .errors import ParseError
from .models import CollectorResult
from .sources import SystemSources

SYSLOG_PATH = "/var/log/syslog"
MEMORY_WARNING = 90.0


class SystemCollector(Collector):
    """CPU load, memory pressure, top consumers and recent errors."""

    requires = ("top", "free", "ps", "journalctl")

    def __init__(self, sources: Optional[SystemSources] = None):
        super().__init__("system", "System Load & Errors", sources)
        self.subsections = {
            "cpu_load": True,
            "memory": True,
            "top_cpu": True,
            "top_memory": True,
            "system_errors": True,
        }

    def collect(self, result: CollectorResult):
        self.check(result, "cpu_load", self._cpu_load, requires=("top",))
        self.check(result, "memory", self._memory, requires=("free",))
        self.check(result, "top_cpu", lambda r: self._top_processes(r, "top_cpu", "-%cpu", "CPU"),
                   requires=("ps",))
        self.check(result, "top_memory", lambda r: self._top_processes(r, "top_memory", "-%mem", "memory"),
                   requires=("ps",))
        self.check(result, "system_errors", self._system_errors)

    def _cpu_load(self, result: CollectorResult):
        lines = self.output_lines(["top", "-b", "-n", "1"])[:12]
        header = next((line for line in lines if "load average" in line), "")
        match = re.search(r"load average:\s*([\d.]+),?\s*([\d.]+),?\s*([\d.]+)", header)
        if not match:
            raise ParseError("top reported no load average", evidence(lines))

        load1, load5, load15 = (float(v) for v in match.groups())
        cpus = self.sources.cpu_count()
        metrics = {"load1": load1, "load5": load5, "load15": load15, "cpus": cpus}
        message = f"Load average {load1:.2f} {load5:.2f} {load15:.2f} on {cpus} CPU(s)"
        if load5 > cpus:
            result.warning(message + " (overloaded)", evidence=evidence(lines), check="cpu_load",
                           metrics=metrics)
        else:
            result.info(message, evidence=evidence(lines), check="cpu_load", metrics=metrics)

    def _memory(self, result: CollectorResult):
        lines = self.output_lines(["free", "-b"])
        mem = next((line.split() for line in lines if line.startswith("Mem:")), None)
        if not mem or len(mem) < 3:
            raise ParseError("free reported no memory line", evidence(lines))
        total, used = int(mem[1]), int(mem[2])
        # 'available' column on procps >= 3.3.10
        available = int(mem[6]) if len(mem) > 6 else total - used
        percent = round(100.0 * (total - available) / total, 1) if total else 0.0
        swap = next((line.split() for line in lines if line.startswith("Swap:")), None)
        metrics = {"total_mib": total // 1048576, "available_mib": available // 1048576,
                   "used_percent": percent}
        if swap and len(swap) >= 3 and int(swap[1]):
            metrics["swap_used_percent"] = round(100.0 * int(swap[2]) / int(swap[1]), 1)

        message = f"Memory {percent:g}% used ({available // 1048576} MiB available of {total // 1048576} MiB)"
        if percent >= MEMORY_WARNING:
            result.warning(message, check="memory", metrics=metrics)
        else:
            result.info(message, check="memory", metrics=metrics)

    def _top_processes(self, result: CollectorResult, check: str, sort_key: str, label: str):
        lines = self.output_lines(["ps", "aux", f"--sort={sort_key}"])[:6]
        if len(lines) < 2:
            raise ParseError("ps listed no processes", evidence(lines))
        top = lines[1].split(None, 10)
        name = top[10] if len(top) > 10 else top[-1]
        result.info(f"Top {label} consumer: {name[:60]}", evidence=evidence(lines), check=check)

    def _system_errors(self, result: CollectorResult):
        if self.has("journalctl"):
            res = self.execute(["journalctl", "-p", "err..emerg", "--since", "1 hour ago", "--no-pager"])
            lines = [line for line in res.stdout if not line.startswith("-- ")]
            source = "journal"
        else:
            lines = self.sources.read_lines(
                SYSLOG_PATH, trim_lines=10,
                filter_func=lambda line: re.search(r"error|failed", line, re.IGNORECASE) is not None)
            if lines is None:
                result.skip("system_errors: neither journalctl nor a readable syslog available")
                return
            source = "syslog"
        if lines:
            result.warning(f"{len(lines)} error(s) in the {source} during the last hour",
                           evidence=evidence(lines, 20), check="system_errors")
        else:
            result.info(f"No errors in the {source} during the last hour", check="system_errors")
