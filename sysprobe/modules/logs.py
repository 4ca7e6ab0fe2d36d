#!/usr/bin/env python3
"""
Log analysis for authentication, kernel and system logs.
"""

import re
from enum import Enum
from typing import Optional, Union

from .base import Collector, evidence
from .errors import ValidationError
from .models import CollectorResult
from .sources import SystemSources

AUTH_LOG = "/var/log/auth.log"


class LogType(str, Enum):
    AUTH = "auth"
    KERNEL = "kernel"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: Union[str, "LogType"]) -> "LogType":
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(t.value for t in cls)
            raise ValidationError(f"Unknown log type {value!r}. Available types: {choices}")


class LogCollector(Collector):
    """Scans one kind of log over a look-back window."""

    requires = ("auth-log", "dmesg", "journalctl")

    def __init__(self, log_type: Union[str, LogType] = LogType.SYSTEM, hours: float = 1,
                 sources: Optional[SystemSources] = None):
        super().__init__("logs", "Log Analysis", sources)
        self.log_type = LogType.parse(log_type)
        if hours is None or hours <= 0:
            raise ValidationError(f"Look-back window must be positive, got {hours!r} hour(s)")
        self.hours = hours
        self.subsections = {
            "auth": True,
            "kernel": True,
            "system": True,
        }

    def collect(self, result: CollectorResult):
        if self.log_type == LogType.AUTH:
            self.check(result, "auth", self._auth, requires=("auth-log",))
        elif self.log_type == LogType.KERNEL:
            self.check(result, "kernel", self._kernel, requires=("dmesg",))
        else:
            self.check(result, "system", self._system, requires=("journalctl",))

    def _auth(self, result: CollectorResult):
        lines = self.sources.read_lines(AUTH_LOG, trim_lines=20,
                                        filter_func=lambda line: "authentication failure" in line)
        if lines is None:
            result.skip(f"auth: {AUTH_LOG} not readable")
        elif lines:
            result.warning(f"{len(lines)} recent authentication failure(s)", evidence=evidence(lines),
                           check="auth")
        else:
            result.info("No authentication failures logged", check="auth")

    def _kernel(self, result: CollectorResult):
        lines = self.output_lines(["dmesg"], filter_func=lambda line: re.search(
            r"error|fail|warning", line, re.IGNORECASE) is not None)
        if lines:
            result.warning(f"{len(lines)} kernel error/warning message(s)", evidence=evidence(lines),
                           check="kernel")
        else:
            result.info("No kernel errors or warnings", check="kernel")

    def _system(self, result: CollectorResult):
        since = f"{self.hours:g} hour ago"
        res = self.execute(["journalctl", "-p", "err..emerg", "--since", since, "--no-pager"])
        lines = [line for line in res.stdout if line.strip() and not line.startswith("-- ")]
        if lines:
            result.warning(f"{len(lines)} system error(s) in the past {self.hours:g} hour(s)",
                           evidence=evidence(lines), check="system")
        else:
            result.info(f"No system errors in the past {self.hours:g} hour(s)", check="system")
